"""Tabla de actividad reciente por dispositivo.

La escribe el transporte (hilo de paho) y la leen el despachador de comandos
y los health checks; todo acceso pasa por un lock.
"""

from __future__ import annotations

import threading
import time
from typing import Callable, Dict, Optional

DEFAULT_ACTIVE_WINDOW_SECONDS = 300.0


class LivenessTable:
    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._last_seen: Dict[str, float] = {}
        self._lock = threading.Lock()

    def touch(self, device_id: str) -> None:
        with self._lock:
            self._last_seen[device_id] = self._clock()

    def last_seen(self, device_id: str) -> Optional[float]:
        with self._lock:
            return self._last_seen.get(device_id)

    def is_active(self, device_id: str, window_seconds: float = DEFAULT_ACTIVE_WINDOW_SECONDS) -> bool:
        seen = self.last_seen(device_id)
        if seen is None:
            return False
        return (self._clock() - seen) <= window_seconds

    def forget(self, device_id: str) -> None:
        with self._lock:
            self._last_seen.pop(device_id, None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._last_seen)
