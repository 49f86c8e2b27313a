"""Notificación de alertas nuevas.

Implementaciones:
- LoggingNotifier: solo log (sin Redis)
- RedisStreamNotifier: publica en un Redis Stream que consume el servicio de email/dashboard
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Optional

import redis

from .models import Alert

logger = logging.getLogger(__name__)

DEFAULT_STREAM = "alerts:new"
DEFAULT_MAX_LEN = 10000


class IAlertNotifier(ABC):
    @abstractmethod
    def notify(self, alert: Alert) -> bool:
        pass


class LoggingNotifier(IAlertNotifier):
    def notify(self, alert: Alert) -> bool:
        logger.info(
            "[ALERTS] NOTIFY alert_id=%s device=%s severity=%s message=%s",
            alert.alert_id, alert.device_id, alert.severity.value, alert.message,
        )
        return True


class RedisStreamNotifier(IAlertNotifier):
    """Publica alertas nuevas a Redis Streams (``maxlen`` aproximado)."""

    def __init__(
        self,
        client: "redis.Redis",
        stream_name: str = DEFAULT_STREAM,
        max_len: int = DEFAULT_MAX_LEN,
        fallback: Optional[IAlertNotifier] = None,
    ):
        self._client = client
        self._stream = stream_name
        self._max_len = max_len
        self._fallback = fallback or LoggingNotifier()
        self._published = 0
        self._errors = 0

    def notify(self, alert: Alert) -> bool:
        data = {
            "alert_id": alert.alert_id,
            "device_id": alert.device_id,
            "parameter": alert.parameter,
            "severity": alert.severity.value,
            "value": str(alert.value),
            "threshold": str(alert.threshold),
            "message": alert.message,
            "first_occurrence": str(alert.first_occurrence),
        }
        try:
            self._client.xadd(self._stream, data, maxlen=self._max_len, approximate=True)
        except redis.RedisError as e:
            self._errors += 1
            logger.warning("[ALERTS] Notify publish failed alert_id=%s err=%s", alert.alert_id, e)
            return self._fallback.notify(alert)

        self._published += 1
        logger.debug("[ALERTS] Published alert_id=%s stream=%s", alert.alert_id, self._stream)
        return True

    @property
    def stats(self) -> dict:
        return {"stream": self._stream, "published": self._published, "errors": self._errors}
