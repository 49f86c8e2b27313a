"""Dead Letter Queue para jobs de ingesta agotados.

Almacena los jobs que agotaron sus reintentos para inspección offline.
Con Redis usa un Stream; sin Redis conserva las últimas entradas en memoria.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from collections import deque
from datetime import datetime, timezone
from typing import Any, Optional

import redis

logger = logging.getLogger(__name__)


class DeadLetterQueue:
    """Dead Letter Queue sobre Redis Streams.

    Attributes:
        stream_name: Nombre del stream en Redis
        max_len: Máximo de entradas (aproximado, usa MAXLEN ~)
    """

    STREAM_NAME = "dlq:sensor_ingest"
    DEFAULT_MAX_LEN = 10000
    MEMORY_MAX_LEN = 500

    def __init__(
        self,
        redis_client: Optional["redis.Redis"] = None,
        stream_name: str = STREAM_NAME,
        max_len: int = DEFAULT_MAX_LEN,
        memory_max_len: int = MEMORY_MAX_LEN,
    ):
        self._redis = redis_client
        self._stream = stream_name
        self._max_len = max_len
        self._memory: deque = deque(maxlen=memory_max_len)
        self._lock = threading.Lock()

        self._total_sent = 0
        self._send_errors = 0

    @property
    def backend(self) -> str:
        return "redis" if self._redis is not None else "memory"

    @property
    def stats(self) -> dict:
        return {
            "backend": self.backend,
            "stream_name": self._stream,
            "total_sent": self._total_sent,
            "send_errors": self._send_errors,
        }

    def send(
        self,
        device_id: str,
        payload: Any,
        error: str,
        error_type: str,
        attempts: int,
    ) -> bool:
        """Envía un job fallido a la DLQ.

        Returns:
            True si quedó almacenado (en Redis o en memoria).
        """
        entry = {
            "device_id": device_id,
            "payload": json.dumps(payload, default=str)[:5000],
            "error": str(error)[:1000],
            "error_type": error_type,
            "attempts": str(attempts),
            "timestamp": str(time.time()),
            "created_at": datetime.now(timezone.utc).isoformat(),
        }

        with self._lock:
            self._total_sent += 1

        if self._redis is None:
            with self._lock:
                self._memory.append(entry)
            logger.warning(
                "DLQ_MEMORY device=%s error_type=%s attempts=%d error=%s",
                device_id, error_type, attempts, error,
            )
            return True

        try:
            self._redis.xadd(self._stream, entry, maxlen=self._max_len, approximate=True)
        except redis.RedisError as e:
            with self._lock:
                self._send_errors += 1
                self._memory.append(entry)
            logger.error("DLQ_SEND_ERROR device=%s err=%s (kept in memory)", device_id, e)
            return True

        logger.info(
            "DLQ_SENT device=%s error_type=%s attempts=%d", device_id, error_type, attempts,
        )
        return True

    def get_recent(self, count: int = 10) -> list[dict]:
        """Mensajes más recientes (más reciente primero)."""
        with self._lock:
            memory = list(reversed(self._memory))[:count]
        if self._redis is None:
            return memory

        try:
            entries = self._redis.xrevrange(self._stream, count=count)
        except redis.RedisError as e:
            logger.error("DLQ_READ_ERROR err=%s", e)
            return memory
        return [
            {
                "id": entry_id.decode() if isinstance(entry_id, bytes) else entry_id,
                **{
                    k.decode() if isinstance(k, bytes) else k: v.decode() if isinstance(v, bytes) else v
                    for k, v in data.items()
                },
            }
            for entry_id, data in entries
        ]
