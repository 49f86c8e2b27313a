"""Configuración y estados del circuit breaker del poller de presencia."""

from __future__ import annotations

import os
from dataclasses import dataclass
from enum import Enum


class CircuitState(str, Enum):
    """Estados del circuit breaker."""
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class PollCircuitBreakerConfig:
    """Configuración del circuit breaker.

    Con ``failures >= failure_threshold`` cada ciclo espera
    ``min(base * 2^(failures - threshold), max)`` desde el último éxito.
    """
    failure_threshold: int = 3
    base_backoff_seconds: float = 60.0
    max_backoff_seconds: float = 900.0

    @classmethod
    def from_env(cls) -> "PollCircuitBreakerConfig":
        return cls(
            failure_threshold=int(os.getenv("PRESENCE_CB_FAILURE_THRESHOLD", "3")),
            base_backoff_seconds=float(os.getenv("PRESENCE_CB_BASE_BACKOFF", "60")),
            max_backoff_seconds=float(os.getenv("PRESENCE_CB_MAX_BACKOFF", "900")),
        )
