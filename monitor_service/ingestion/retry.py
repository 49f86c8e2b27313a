"""Política de reintentos con backoff exponencial para jobs de ingesta."""

from __future__ import annotations

import random
from dataclasses import dataclass

from ..errors import MonitorError


@dataclass
class RetryConfig:
    """Configuración para retry con backoff."""

    max_attempts: int = 3
    base_delay: float = 2.0  # segundos
    max_delay: float = 60.0  # segundos
    exponential_base: float = 2.0
    jitter: bool = False  # Añadir variación aleatoria

    def calculate_delay(self, attempt: int) -> float:
        """Calcula el delay tras el intento ``attempt`` (1-indexed).

        Con la configuración por defecto: 2s, 4s, 8s...
        """
        delay = self.base_delay * (self.exponential_base ** (attempt - 1))
        delay = min(delay, self.max_delay)

        if self.jitter:
            # Añadir jitter de ±25%
            jitter_range = delay * 0.25
            delay += random.uniform(-jitter_range, jitter_range)

        return max(0, delay)


def is_retryable(error: Exception) -> bool:
    """Los errores de registro y validación no se reintentan."""
    if isinstance(error, MonitorError):
        return error.retryable
    return True
