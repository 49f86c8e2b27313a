"""Cola persistente de comandos pendientes por dispositivo.

Implementaciones:
- RedisPendingCommandStore: lista Redis por dispositivo (RPUSH + EXPIRE)
- InMemoryPendingCommandStore: diccionario con TTL (tests y modo --memory)

Las entradas más viejas que el TTL se descartan al drenar.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from typing import Callable, Dict, List, Optional

import redis

from ..errors import PersistenceError

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 7 * 24 * 3600
KEY_PREFIX = "pending_commands:"


@dataclass
class PendingCommand:
    command: str
    data: Dict = field(default_factory=dict)
    enqueued_at: float = field(default_factory=time.time)

    def to_json(self) -> str:
        return json.dumps(asdict(self), default=str)

    @classmethod
    def from_json(cls, raw) -> "PendingCommand":
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")
        data = json.loads(raw)
        return cls(
            command=data["command"],
            data=data.get("data") or {},
            enqueued_at=float(data.get("enqueued_at", 0)),
        )


class IPendingCommandStore(ABC):
    def __init__(self, ttl_seconds: float = DEFAULT_TTL_SECONDS, clock: Callable[[], float] = time.time):
        self.ttl_seconds = ttl_seconds
        self._clock = clock

    def now(self) -> float:
        return self._clock()

    def _fresh(self, commands: List[PendingCommand], device_id: str) -> List[PendingCommand]:
        cutoff = self._clock() - self.ttl_seconds
        fresh = [c for c in commands if c.enqueued_at >= cutoff]
        expired = len(commands) - len(fresh)
        if expired:
            logger.info("[COMMANDS] Discarded %d expired pending commands device=%s", expired, device_id)
        return fresh

    @abstractmethod
    def push(self, device_id: str, command: PendingCommand) -> None:
        pass

    @abstractmethod
    def pop_all(self, device_id: str) -> List[PendingCommand]:
        """Devuelve y elimina los comandos vigentes, en orden de llegada."""
        pass

    @abstractmethod
    def restore(self, device_id: str, commands: List[PendingCommand]) -> None:
        """Reinserta al frente comandos que no se pudieron entregar."""
        pass

    @abstractmethod
    def count(self, device_id: str) -> int:
        pass


class InMemoryPendingCommandStore(IPendingCommandStore):
    def __init__(self, ttl_seconds: float = DEFAULT_TTL_SECONDS, clock: Callable[[], float] = time.time):
        super().__init__(ttl_seconds, clock)
        self._queues: Dict[str, List[PendingCommand]] = {}
        self._lock = threading.Lock()

    def push(self, device_id: str, command: PendingCommand) -> None:
        with self._lock:
            self._queues.setdefault(device_id, []).append(command)

    def pop_all(self, device_id: str) -> List[PendingCommand]:
        with self._lock:
            commands = self._queues.pop(device_id, [])
        return self._fresh(commands, device_id)

    def restore(self, device_id: str, commands: List[PendingCommand]) -> None:
        if not commands:
            return
        with self._lock:
            self._queues[device_id] = list(commands) + self._queues.get(device_id, [])

    def count(self, device_id: str) -> int:
        with self._lock:
            return len(self._queues.get(device_id, []))


class RedisPendingCommandStore(IPendingCommandStore):
    def __init__(
        self,
        client: "redis.Redis",
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        key_prefix: str = KEY_PREFIX,
        clock: Callable[[], float] = time.time,
    ):
        super().__init__(ttl_seconds, clock)
        self._redis = client
        self._prefix = key_prefix

    def _key(self, device_id: str) -> str:
        return f"{self._prefix}{device_id}"

    def push(self, device_id: str, command: PendingCommand) -> None:
        key = self._key(device_id)
        try:
            pipe = self._redis.pipeline()
            pipe.rpush(key, command.to_json())
            pipe.expire(key, int(self.ttl_seconds))
            pipe.execute()
        except redis.RedisError as e:
            raise PersistenceError(f"pending command push failed: {e}", device_id=device_id) from e

    def pop_all(self, device_id: str) -> List[PendingCommand]:
        key = self._key(device_id)
        try:
            pipe = self._redis.pipeline(transaction=True)
            pipe.lrange(key, 0, -1)
            pipe.delete(key)
            raw_items, _ = pipe.execute()
        except redis.RedisError as e:
            raise PersistenceError(f"pending command drain failed: {e}", device_id=device_id) from e

        commands = []
        for raw in raw_items:
            try:
                commands.append(PendingCommand.from_json(raw))
            except (ValueError, KeyError) as e:
                logger.warning("[COMMANDS] Dropping unreadable pending command device=%s err=%s", device_id, e)
        return self._fresh(commands, device_id)

    def restore(self, device_id: str, commands: List[PendingCommand]) -> None:
        if not commands:
            return
        key = self._key(device_id)
        try:
            pipe = self._redis.pipeline()
            pipe.lpush(key, *[c.to_json() for c in reversed(commands)])
            pipe.expire(key, int(self.ttl_seconds))
            pipe.execute()
        except redis.RedisError as e:
            raise PersistenceError(f"pending command restore failed: {e}", device_id=device_id) from e

    def count(self, device_id: str) -> int:
        try:
            return int(self._redis.llen(self._key(device_id)))
        except redis.RedisError as e:
            raise PersistenceError(f"pending command count failed: {e}", device_id=device_id) from e


def create_pending_store(
    redis_client: Optional["redis.Redis"],
    ttl_seconds: float = DEFAULT_TTL_SECONDS,
) -> IPendingCommandStore:
    if redis_client is None:
        logger.info("[COMMANDS] Redis disabled, pending commands kept in memory")
        return InMemoryPendingCommandStore(ttl_seconds)
    return RedisPendingCommandStore(redis_client, ttl_seconds)
