"""Puerta de registro en memoria.

Conjunto de ids aprobados que el hilo de red consulta antes de encolar datos
de sensores. Se carga al arrancar, se actualiza en approve/deregister y se
refresca con cada ciclo de presencia. El consumidor vuelve a verificar contra
el repositorio.
"""

from __future__ import annotations

import threading
from typing import Iterable, Set


class RegistrationGate:
    def __init__(self, approved: Iterable[str] = ()):
        self._approved: Set[str] = set(approved)
        self._lock = threading.Lock()

    def is_allowed(self, device_id: str) -> bool:
        with self._lock:
            return device_id in self._approved

    def allow(self, device_id: str) -> None:
        with self._lock:
            self._approved.add(device_id)

    def revoke(self, device_id: str) -> None:
        with self._lock:
            self._approved.discard(device_id)

    def replace(self, approved: Iterable[str]) -> None:
        new_set = set(approved)
        with self._lock:
            self._approved = new_set

    def __len__(self) -> int:
        with self._lock:
            return len(self._approved)
