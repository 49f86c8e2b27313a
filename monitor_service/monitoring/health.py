"""Health checks del monitor."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

import redis
from sqlalchemy import text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError


@dataclass
class HealthStatus:
    """Estado de salud del monitor."""
    circuit_breaker_open: bool
    consecutive_failures: int
    last_successful_poll: Optional[float]
    connected: bool
    details: dict = field(default_factory=dict)

    @property
    def healthy(self) -> bool:
        return self.connected and not self.circuit_breaker_open

    def to_dict(self) -> dict:
        last = None
        if self.last_successful_poll is not None:
            last = datetime.fromtimestamp(self.last_successful_poll, tz=timezone.utc).isoformat()
        return {
            "healthy": self.healthy,
            "circuit_breaker_open": self.circuit_breaker_open,
            "consecutive_failures": self.consecutive_failures,
            "last_successful_poll": last,
            "connected": self.connected,
            **self.details,
        }


class HealthChecker:
    """Verifica dependencias externas (BD y Redis)."""

    def __init__(self, engine: Optional[Engine] = None, redis_client: Optional["redis.Redis"] = None):
        self._engine = engine
        self._redis = redis_client

    def check_database(self) -> Optional[bool]:
        """None si el monitor corre sin BD (modo memoria)."""
        if self._engine is None:
            return None
        try:
            with self._engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            return True
        except SQLAlchemyError:
            return False

    def check_redis(self) -> Optional[bool]:
        if self._redis is None:
            return None
        try:
            return bool(self._redis.ping())
        except redis.RedisError:
            return False
