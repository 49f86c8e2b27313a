"""Presencia de dispositivos.

- coordinator.py: correlación de queries/respuestas por ciclo
- poller.py: ciclo periódico y transiciones online/offline
- circuit_breaker.py: backoff exponencial ante fallos consecutivos
"""

from .circuit_breaker import PollCircuitBreaker
from .circuit_breaker_config import CircuitState, PollCircuitBreakerConfig
from .coordinator import PresenceQueryCoordinator
from .poller import PollResult, PresenceConfig, PresencePoller, adaptive_timeout

__all__ = [
    "CircuitState",
    "PollCircuitBreaker",
    "PollCircuitBreakerConfig",
    "PollResult",
    "PresenceConfig",
    "PresencePoller",
    "PresenceQueryCoordinator",
    "adaptive_timeout",
]
