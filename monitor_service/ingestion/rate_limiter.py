"""Token bucket global compartido por los workers de ingesta."""

from __future__ import annotations

import threading
import time
from typing import Callable, Optional


class TokenBucket:
    """Token bucket thread-safe.

    ``rate`` tokens por segundo sostenidos, hasta ``burst`` acumulados.
    """

    def __init__(self, rate: float, burst: Optional[float] = None, clock: Callable[[], float] = time.monotonic):
        if rate <= 0:
            raise ValueError("rate must be > 0")
        self.rate = rate
        self.capacity = burst if burst is not None else rate
        self.tokens = self.capacity
        self._clock = clock
        self.last = clock()
        self._lock = threading.Lock()

    def _refill(self) -> None:
        now = self._clock()
        self.tokens = min(self.capacity, self.tokens + (now - self.last) * self.rate)
        self.last = now

    def consume(self, n: float = 1) -> bool:
        with self._lock:
            self._refill()
            if self.tokens >= n:
                self.tokens -= n
                return True
            return False

    def wait_time(self, n: float = 1) -> float:
        """Segundos hasta que haya ``n`` tokens disponibles."""
        with self._lock:
            self._refill()
            missing = n - self.tokens
        return max(0.0, missing / self.rate)

    def acquire(self, stop_event: Optional[threading.Event] = None, n: float = 1) -> bool:
        """Bloquea hasta obtener un token. False si ``stop_event`` se activa antes."""
        while not self.consume(n):
            delay = max(self.wait_time(n), 0.001)
            if stop_event is not None:
                if stop_event.wait(delay):
                    return False
            else:
                time.sleep(delay)
        return True
