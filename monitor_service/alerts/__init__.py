"""Evaluación de alertas de calidad de agua.

- thresholds.py: bandas por parámetro
- evaluator.py: cooldown y deduplicación por (dispositivo, parámetro)
- repository.py: persistencia SQL / en memoria
- notifier.py: aviso de alertas nuevas
"""

from .evaluator import AlertConfig, AlertEvaluator, AlertOutcome
from .models import Alert, AlertSeverity, AlertStatus
from .notifier import IAlertNotifier, LoggingNotifier, RedisStreamNotifier
from .repository import IAlertRepository, InMemoryAlertRepository, SqlAlertRepository

__all__ = [
    "Alert",
    "AlertConfig",
    "AlertEvaluator",
    "AlertOutcome",
    "AlertSeverity",
    "AlertStatus",
    "IAlertNotifier",
    "IAlertRepository",
    "InMemoryAlertRepository",
    "LoggingNotifier",
    "RedisStreamNotifier",
    "SqlAlertRepository",
]
