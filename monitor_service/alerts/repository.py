"""Repositorio de alertas - operaciones de persistencia.

Mantiene como máximo UNA alerta no resuelta por (dispositivo, parámetro)
dentro de la ventana de cooldown; el evaluador es quien lo garantiza
serializando el par, el repositorio solo ejecuta las operaciones.
"""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from dataclasses import replace
from typing import Dict, List, Optional

from sqlalchemy import text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from ..errors import PersistenceError
from .models import Alert, AlertSeverity, AlertStatus


class IAlertRepository(ABC):
    @abstractmethod
    def find_open(self, device_id: str, parameter: str, since: float) -> Optional[Alert]:
        """Alerta no resuelta más reciente con ``first_occurrence >= since``."""
        pass

    @abstractmethod
    def create(self, alert: Alert) -> None:
        pass

    @abstractmethod
    def record_occurrence(
        self,
        alert_id: str,
        value: float,
        at: float,
        severity: Optional[AlertSeverity] = None,
    ) -> None:
        """Incrementa ``occurrence_count`` y actualiza último valor/instante."""
        pass

    @abstractmethod
    def set_status(self, alert_id: str, status: AlertStatus) -> bool:
        pass

    @abstractmethod
    def list_for_device(self, device_id: str) -> List[Alert]:
        pass

    @abstractmethod
    def delete_for_device(self, device_id: str) -> int:
        pass


class InMemoryAlertRepository(IAlertRepository):
    def __init__(self):
        self._alerts: Dict[str, Alert] = {}
        self._lock = threading.Lock()

    def find_open(self, device_id: str, parameter: str, since: float) -> Optional[Alert]:
        with self._lock:
            candidates = [
                a for a in self._alerts.values()
                if a.device_id == device_id
                and a.parameter == parameter
                and a.status != AlertStatus.RESOLVED
                and a.first_occurrence >= since
            ]
            if not candidates:
                return None
            return replace(max(candidates, key=lambda a: a.first_occurrence))

    def create(self, alert: Alert) -> None:
        with self._lock:
            self._alerts[alert.alert_id] = replace(alert)

    def record_occurrence(self, alert_id, value, at, severity=None) -> None:
        with self._lock:
            alert = self._alerts[alert_id]
            alert.occurrence_count += 1
            alert.last_occurrence = at
            alert.current_value = value
            if severity is not None:
                alert.severity = severity

    def set_status(self, alert_id: str, status: AlertStatus) -> bool:
        with self._lock:
            alert = self._alerts.get(alert_id)
            if alert is None:
                return False
            alert.status = status
            return True

    def list_for_device(self, device_id: str) -> List[Alert]:
        with self._lock:
            alerts = [replace(a) for a in self._alerts.values() if a.device_id == device_id]
        return sorted(alerts, key=lambda a: a.first_occurrence)

    def delete_for_device(self, device_id: str) -> int:
        with self._lock:
            ids = [k for k, a in self._alerts.items() if a.device_id == device_id]
            for k in ids:
                del self._alerts[k]
            return len(ids)


def _row_to_alert(row) -> Alert:
    return Alert(
        alert_id=row["alert_id"],
        device_id=row["device_id"],
        parameter=row["parameter"],
        severity=AlertSeverity(row["severity"]),
        value=row["value"],
        threshold=row["threshold"],
        message=row["message"],
        status=AlertStatus(row["status"]),
        occurrence_count=row["occurrence_count"],
        first_occurrence=row["first_occurrence"],
        last_occurrence=row["last_occurrence"],
        current_value=row["current_value"],
    )


class SqlAlertRepository(IAlertRepository):
    def __init__(self, engine: Engine):
        self._engine = engine

    def find_open(self, device_id: str, parameter: str, since: float) -> Optional[Alert]:
        try:
            with self._engine.connect() as conn:
                row = conn.execute(
                    text(
                        """
                        SELECT *
                        FROM alerts
                        WHERE device_id = :device_id
                          AND parameter = :parameter
                          AND status <> :resolved
                          AND first_occurrence >= :since
                        ORDER BY first_occurrence DESC
                        LIMIT 1
                        """
                    ),
                    {
                        "device_id": device_id,
                        "parameter": parameter,
                        "resolved": AlertStatus.RESOLVED.value,
                        "since": since,
                    },
                ).mappings().first()
        except SQLAlchemyError as e:
            raise PersistenceError(f"find open alert failed: {e}", device_id=device_id) from e
        return _row_to_alert(row) if row else None

    def create(self, alert: Alert) -> None:
        try:
            with self._engine.begin() as conn:
                conn.execute(
                    text(
                        """
                        INSERT INTO alerts (
                            alert_id, device_id, parameter, severity, value, threshold, message,
                            status, occurrence_count, first_occurrence, last_occurrence, current_value
                        )
                        VALUES (
                            :alert_id, :device_id, :parameter, :severity, :value, :threshold, :message,
                            :status, :occurrence_count, :first_occurrence, :last_occurrence, :current_value
                        )
                        """
                    ),
                    {
                        "alert_id": alert.alert_id,
                        "device_id": alert.device_id,
                        "parameter": alert.parameter,
                        "severity": alert.severity.value,
                        "value": alert.value,
                        "threshold": alert.threshold,
                        "message": alert.message,
                        "status": alert.status.value,
                        "occurrence_count": alert.occurrence_count,
                        "first_occurrence": alert.first_occurrence,
                        "last_occurrence": alert.last_occurrence,
                        "current_value": alert.current_value,
                    },
                )
        except SQLAlchemyError as e:
            raise PersistenceError(f"create alert failed: {e}", device_id=alert.device_id) from e

    def record_occurrence(self, alert_id, value, at, severity=None) -> None:
        try:
            with self._engine.begin() as conn:
                conn.execute(
                    text(
                        """
                        UPDATE alerts
                        SET occurrence_count = occurrence_count + 1,
                            last_occurrence = :at,
                            current_value = :value,
                            severity = COALESCE(:severity, severity)
                        WHERE alert_id = :alert_id
                        """
                    ),
                    {
                        "alert_id": alert_id,
                        "at": at,
                        "value": value,
                        "severity": severity.value if severity is not None else None,
                    },
                )
        except SQLAlchemyError as e:
            raise PersistenceError(f"update alert failed: {e}") from e

    def set_status(self, alert_id: str, status: AlertStatus) -> bool:
        try:
            with self._engine.begin() as conn:
                result = conn.execute(
                    text("UPDATE alerts SET status = :status WHERE alert_id = :alert_id"),
                    {"alert_id": alert_id, "status": status.value},
                )
        except SQLAlchemyError as e:
            raise PersistenceError(f"set alert status failed: {e}") from e
        return result.rowcount > 0

    def list_for_device(self, device_id: str) -> List[Alert]:
        try:
            with self._engine.connect() as conn:
                rows = conn.execute(
                    text("SELECT * FROM alerts WHERE device_id = :device_id ORDER BY first_occurrence"),
                    {"device_id": device_id},
                ).mappings().all()
        except SQLAlchemyError as e:
            raise PersistenceError(f"list alerts failed: {e}", device_id=device_id) from e
        return [_row_to_alert(row) for row in rows]

    def delete_for_device(self, device_id: str) -> int:
        try:
            with self._engine.begin() as conn:
                result = conn.execute(
                    text("DELETE FROM alerts WHERE device_id = :device_id"),
                    {"device_id": device_id},
                )
        except SQLAlchemyError as e:
            raise PersistenceError(f"delete alerts failed: {e}", device_id=device_id) from e
        return result.rowcount
