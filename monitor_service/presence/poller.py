"""Poller de presencia.

Cada ``interval_seconds``:
1. Si el circuit breaker está abierto y no pasó el backoff -> saltar ciclo
2. Sin conexión al broker -> fallo
3. Leer ids registrados (refresca la puerta de registro)
4. Timeout adaptativo ``clamp(n * per_device_ms, min, max)``
5. Query de presencia y recolección de respuestas
6. online -> offline en UNA escritura batch; offline -> online solo se loguea
7. Éxito resetea fallos; cualquier excepción suma un fallo
"""

from __future__ import annotations

import logging
import os
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from ..devices.gate import RegistrationGate
from ..devices.models import DeviceStatus
from ..devices.repository import IDeviceRepository
from ..errors import BrokerConnectionError
from ..metrics import PRESENCE_CONSECUTIVE_FAILURES, PRESENCE_ONLINE, PRESENCE_POLLS
from ..transport.mqtt_transport import BrokerTransport
from .circuit_breaker import PollCircuitBreaker
from .circuit_breaker_config import PollCircuitBreakerConfig
from .coordinator import PresenceQueryCoordinator

logger = logging.getLogger(__name__)


@dataclass
class PresenceConfig:
    """Configuración del poller de presencia."""
    interval_seconds: float = 60.0
    per_device_timeout_ms: float = 100.0
    min_timeout_seconds: float = 5.0
    max_timeout_seconds: float = 30.0
    breaker: PollCircuitBreakerConfig = field(default_factory=PollCircuitBreakerConfig)

    @classmethod
    def from_env(cls) -> "PresenceConfig":
        return cls(
            interval_seconds=float(os.getenv("PRESENCE_INTERVAL", "60")),
            per_device_timeout_ms=float(os.getenv("PRESENCE_PER_DEVICE_MS", "100")),
            min_timeout_seconds=float(os.getenv("PRESENCE_MIN_TIMEOUT", "5")),
            max_timeout_seconds=float(os.getenv("PRESENCE_MAX_TIMEOUT", "30")),
            breaker=PollCircuitBreakerConfig.from_env(),
        )


def adaptive_timeout(device_count: int, per_device_ms: float, min_seconds: float, max_seconds: float) -> float:
    """Timeout de recolección proporcional al tamaño de la flota, acotado."""
    return min(max(device_count * per_device_ms / 1000.0, min_seconds), max_seconds)


@dataclass
class PollResult:
    outcome: str  # success | failure | skipped
    online: List[str] = field(default_factory=list)
    went_offline: List[str] = field(default_factory=list)
    came_online: List[str] = field(default_factory=list)
    error: Optional[str] = None


class PresencePoller:
    def __init__(
        self,
        transport: BrokerTransport,
        coordinator: PresenceQueryCoordinator,
        devices: IDeviceRepository,
        gate: RegistrationGate,
        config: Optional[PresenceConfig] = None,
        breaker: Optional[PollCircuitBreaker] = None,
        clock: Callable[[], float] = time.time,
    ):
        self._transport = transport
        self._coordinator = coordinator
        self._devices = devices
        self._gate = gate
        self._config = config or PresenceConfig.from_env()
        self._breaker = breaker or PollCircuitBreaker("presence", self._config.breaker, clock=clock)
        self._clock = clock

        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._last_result: Optional[PollResult] = None

    @property
    def breaker(self) -> PollCircuitBreaker:
        return self._breaker

    @property
    def last_result(self) -> Optional[PollResult]:
        return self._last_result

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, daemon=True, name="presence-poller")
        self._thread.start()
        logger.info("[PRESENCE] Poller started interval=%.0fs", self._config.interval_seconds)

    def stop(self, timeout: float = 5.0) -> None:
        self._stop_event.set()
        self._coordinator.cancel()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None
        logger.info("[PRESENCE] Poller stopped")

    def _loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.run_cycle()
            except Exception:
                logger.exception("[PRESENCE] Unexpected poller error")
            self._stop_event.wait(self._config.interval_seconds)

    def run_cycle(self) -> PollResult:
        """Ejecuta un ciclo de presencia completo."""
        if not self._breaker.allow_attempt():
            result = PollResult("skipped")
        elif self._coordinator.in_progress:
            logger.info("[PRESENCE] Another presence query in progress, skipping cycle")
            result = PollResult("skipped")
        else:
            try:
                result = self._poll()
                self._breaker.record_success()
            except Exception as e:
                self._breaker.record_failure(e)
                logger.error(
                    "[PRESENCE] Poll failed failures=%d err=%s",
                    self._breaker.consecutive_failures, e,
                )
                result = PollResult("failure", error=str(e))

        PRESENCE_POLLS.labels(outcome=result.outcome).inc()
        PRESENCE_CONSECUTIVE_FAILURES.set(self._breaker.consecutive_failures)
        self._last_result = result
        return result

    def _poll(self) -> PollResult:
        if not self._transport.is_connected:
            raise BrokerConnectionError("broker not connected")

        registered = self._devices.list_registered_ids()
        self._gate.replace(registered)
        if not registered:
            logger.debug("[PRESENCE] No registered devices")
            PRESENCE_ONLINE.set(0)
            return PollResult("success")

        timeout = adaptive_timeout(
            len(registered),
            self._config.per_device_timeout_ms,
            self._config.min_timeout_seconds,
            self._config.max_timeout_seconds,
        )
        responders = self._coordinator.query(timeout)
        if responders is None:
            raise BrokerConnectionError("presence query could not be published")

        registered_set = set(registered)
        online = [d for d in responders if d in registered_set]
        online_set = set(online)

        statuses = self._devices.get_statuses(registered)
        went_offline = [
            d for d in registered
            if d not in online_set and statuses.get(d) == DeviceStatus.ONLINE
        ]
        came_online = [d for d in online if statuses.get(d) != DeviceStatus.ONLINE]

        if went_offline:
            self._devices.mark_offline(went_offline, self._clock())
            logger.info("[PRESENCE] Marked offline count=%d devices=%s", len(went_offline), went_offline)
        for device_id in came_online:
            logger.info("[PRESENCE] Device came online device=%s", device_id)

        PRESENCE_ONLINE.set(len(online))
        logger.info(
            "[PRESENCE] Cycle ok registered=%d online=%d offline_transitions=%d timeout=%.1fs",
            len(registered), len(online), len(went_offline), timeout,
        )
        return PollResult("success", online=online, went_offline=went_offline, came_online=came_online)
