"""Evaluador de alertas con cooldown.

Para cada parámetro fuera de banda:
- Si existe una alerta no resuelta del mismo (dispositivo, parámetro) creada
  dentro del cooldown de SU severidad -> se incrementa ``occurrence_count``,
  se actualizan último instante y valor, y no se notifica.
- Si no -> se crea una alerta nueva con ``occurrence_count=1`` y se notifica.

El par (dispositivo, parámetro) se serializa con un lock por clave, así dos
workers con lecturas del mismo par nunca crean dos alertas.
"""

from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass
from typing import Callable, List, Optional, Set

from ..ingestion.readings import SensorReading
from ..metrics import ALERTS_RAISED
from ..keyed_lock import KeyedLock
from .models import Alert, AlertSeverity
from .notifier import IAlertNotifier, LoggingNotifier
from .repository import IAlertRepository
from .thresholds import WATER_QUALITY_BANDS, Breach, check_value

logger = logging.getLogger(__name__)


@dataclass
class AlertConfig:
    """Cooldown por severidad, en segundos."""
    critical_cooldown_seconds: float = 300.0
    warning_cooldown_seconds: float = 900.0

    @classmethod
    def from_env(cls) -> "AlertConfig":
        return cls(
            critical_cooldown_seconds=float(os.getenv("ALERT_COOLDOWN_CRITICAL", "300")),
            warning_cooldown_seconds=float(os.getenv("ALERT_COOLDOWN_WARNING", "900")),
        )

    def cooldown_for(self, severity: AlertSeverity) -> float:
        if severity is AlertSeverity.CRITICAL:
            return self.critical_cooldown_seconds
        return self.warning_cooldown_seconds

    @property
    def longest_cooldown(self) -> float:
        return max(self.critical_cooldown_seconds, self.warning_cooldown_seconds)


@dataclass
class AlertOutcome:
    action: str  # created | updated
    alert_id: str
    parameter: str
    severity: AlertSeverity


class AlertEvaluator:
    def __init__(
        self,
        repository: IAlertRepository,
        notifier: Optional[IAlertNotifier] = None,
        config: Optional[AlertConfig] = None,
        bands: Optional[dict] = None,
        clock: Callable[[], float] = time.time,
    ):
        self._repo = repository
        self._notifier = notifier or LoggingNotifier()
        self._config = config or AlertConfig.from_env()
        self._bands = bands or WATER_QUALITY_BANDS
        self._clock = clock
        self._locks = KeyedLock()

        self._created = 0
        self._updated = 0
        self._notify_errors = 0

    def evaluate(self, reading: SensorReading, skip: Optional[Set[str]] = None) -> List[AlertOutcome]:
        """Evalúa todos los parámetros de una lectura.

        ``skip`` lleva los parámetros ya aplicados en un intento anterior; se
        actualiza a medida que cada parámetro queda persistido.
        """
        outcomes = []
        for key, value in reading.values().items():
            if skip is not None and key in skip:
                continue
            breach = check_value(key, value, self._bands)
            if breach is not None:
                outcomes.append(self.apply_breach(reading.device_id, breach))
            if skip is not None:
                skip.add(key)
        return outcomes

    def apply_breach(self, device_id: str, breach: Breach) -> AlertOutcome:
        now = self._clock()

        with self._locks.hold((device_id, breach.parameter)):
            # La ventana la fija la severidad de la alerta abierta, no la del breach
            existing = self._repo.find_open(
                device_id, breach.parameter, since=now - self._config.longest_cooldown,
            )
            if existing is not None and now - existing.first_occurrence > self._config.cooldown_for(existing.severity):
                existing = None

            if existing is not None:
                escalate = breach.severity.rank > existing.severity.rank
                self._repo.record_occurrence(
                    existing.alert_id,
                    value=breach.value,
                    at=now,
                    severity=breach.severity if escalate else None,
                )
                self._updated += 1
                ALERTS_RAISED.labels(parameter=breach.parameter, action="updated").inc()
                logger.debug(
                    "[ALERTS] Occurrence recorded device=%s parameter=%s alert_id=%s count=%d",
                    device_id, breach.parameter, existing.alert_id, existing.occurrence_count + 1,
                )
                if escalate:
                    logger.info(
                        "[ALERTS] Escalated device=%s parameter=%s alert_id=%s %s -> %s",
                        device_id, breach.parameter, existing.alert_id,
                        existing.severity.value, breach.severity.value,
                    )
                return AlertOutcome(
                    "updated",
                    existing.alert_id,
                    breach.parameter,
                    breach.severity if escalate else existing.severity,
                )

            alert = Alert(
                device_id=device_id,
                parameter=breach.parameter,
                severity=breach.severity,
                value=breach.value,
                threshold=breach.threshold,
                message=breach.message,
                first_occurrence=now,
                last_occurrence=now,
                current_value=breach.value,
            )
            self._repo.create(alert)
            self._created += 1

        ALERTS_RAISED.labels(parameter=breach.parameter, action="created").inc()
        logger.warning(
            "[ALERTS] %s device=%s alert_id=%s", alert.message, device_id, alert.alert_id,
        )
        self._notify(alert)
        return AlertOutcome("created", alert.alert_id, breach.parameter, breach.severity)

    def _notify(self, alert: Alert) -> None:
        # Un fallo de notificación no invalida la alerta ya persistida
        try:
            self._notifier.notify(alert)
        except Exception:
            self._notify_errors += 1
            logger.exception("[ALERTS] Notifier failed alert_id=%s", alert.alert_id)

    @property
    def stats(self) -> dict:
        return {
            "created": self._created,
            "updated": self._updated,
            "notify_errors": self._notify_errors,
        }
