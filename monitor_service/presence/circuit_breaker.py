"""Circuit breaker con backoff exponencial para el poller de presencia.

A diferencia de un breaker de llamadas, aquí no se envuelve la operación:
el poller pregunta ``allow_attempt()`` al inicio de cada ciclo y reporta el
resultado con ``record_success()`` / ``record_failure()``.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Optional

from .circuit_breaker_config import CircuitState, PollCircuitBreakerConfig

logger = logging.getLogger(__name__)


class PollCircuitBreaker:
    """Circuit breaker del ciclo de presencia.

    Uso:
        cb = PollCircuitBreaker("presence")

        if cb.allow_attempt():
            try:
                poll()
                cb.record_success()
            except Exception as e:
                cb.record_failure(e)
    """

    def __init__(
        self,
        name: str = "presence",
        config: Optional[PollCircuitBreakerConfig] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.name = name
        self._config = config or PollCircuitBreakerConfig.from_env()
        self._clock = clock

        self._failure_count = 0
        self._created_at = clock()
        self._last_success: Optional[float] = None
        self._skipped = 0
        self._lock = threading.Lock()

        logger.info(
            "CircuitBreaker '%s' initialized: failure_threshold=%d, "
            "base_backoff=%.1fs, max_backoff=%.1fs",
            name,
            self._config.failure_threshold,
            self._config.base_backoff_seconds,
            self._config.max_backoff_seconds,
        )

    @property
    def consecutive_failures(self) -> int:
        with self._lock:
            return self._failure_count

    @property
    def last_success(self) -> Optional[float]:
        with self._lock:
            return self._last_success

    @property
    def is_open(self) -> bool:
        with self._lock:
            return self._failure_count >= self._config.failure_threshold

    @property
    def state(self) -> CircuitState:
        with self._lock:
            if self._failure_count < self._config.failure_threshold:
                return CircuitState.CLOSED
            if self._elapsed() >= self._backoff():
                return CircuitState.HALF_OPEN
            return CircuitState.OPEN

    def _backoff(self) -> float:
        excess = self._failure_count - self._config.failure_threshold
        if excess < 0:
            return 0.0
        return min(
            self._config.base_backoff_seconds * (2 ** excess),
            self._config.max_backoff_seconds,
        )

    def _elapsed(self) -> float:
        reference = self._last_success if self._last_success is not None else self._created_at
        return self._clock() - reference

    def backoff_seconds(self) -> float:
        """Espera actual exigida desde el último éxito (0 si está cerrado)."""
        with self._lock:
            return self._backoff()

    def allow_attempt(self) -> bool:
        """True si el ciclo debe ejecutarse."""
        with self._lock:
            if self._failure_count < self._config.failure_threshold:
                return True
            elapsed = self._elapsed()
            backoff = self._backoff()
            if elapsed >= backoff:
                return True
            self._skipped += 1
            logger.info(
                "CircuitBreaker '%s': OPEN, skipping cycle (failures=%d, backoff=%.0fs, remaining=%.0fs)",
                self.name, self._failure_count, backoff, backoff - elapsed,
            )
            return False

    def record_success(self) -> None:
        with self._lock:
            was_open = self._failure_count >= self._config.failure_threshold
            self._failure_count = 0
            self._last_success = self._clock()
        if was_open:
            logger.info("CircuitBreaker '%s': OPEN -> CLOSED (recovered)", self.name)

    def record_failure(self, error: Exception) -> None:
        with self._lock:
            self._failure_count += 1
            failures = self._failure_count
            opened = failures == self._config.failure_threshold
            backoff = self._backoff()
        if opened:
            logger.warning(
                "CircuitBreaker '%s': CLOSED -> OPEN (failures=%d, threshold=%d, error=%s)",
                self.name, failures, self._config.failure_threshold, str(error)[:100],
            )
        elif failures > self._config.failure_threshold:
            logger.warning(
                "CircuitBreaker '%s': still OPEN (failures=%d, next backoff=%.0fs, error=%s)",
                self.name, failures, backoff, str(error)[:100],
            )

    def reset(self) -> None:
        """Resetea el circuit breaker a estado cerrado."""
        with self._lock:
            self._failure_count = 0
            self._skipped = 0
        logger.info("CircuitBreaker '%s': RESET to CLOSED", self.name)

    def get_stats(self) -> dict:
        """Estadísticas del circuit breaker."""
        state = self.state
        with self._lock:
            return {
                "name": self.name,
                "state": state.value,
                "failure_count": self._failure_count,
                "last_success": self._last_success,
                "backoff_seconds": self._backoff(),
                "skipped_cycles": self._skipped,
                "config": {
                    "failure_threshold": self._config.failure_threshold,
                    "base_backoff_seconds": self._config.base_backoff_seconds,
                    "max_backoff_seconds": self._config.max_backoff_seconds,
                },
            }
