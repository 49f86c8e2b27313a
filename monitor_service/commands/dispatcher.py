"""Despacho de comandos a dispositivos.

Si el broker está conectado y el dispositivo estuvo activo recientemente, el
comando se publica de inmediato; si no, queda en la cola de pendientes y se
entrega en orden cuando el dispositivo vuelve a dar señales de presencia.
"""

from __future__ import annotations

import logging
import os
import threading
from dataclasses import dataclass
from typing import List, Optional, Set

from ..errors import PayloadValidationError
from ..keyed_lock import KeyedLock
from ..metrics import COMMANDS_SENT
from ..transport.mqtt_transport import BrokerTransport
from .pending_store import DEFAULT_TTL_SECONDS, IPendingCommandStore, PendingCommand

logger = logging.getLogger(__name__)

VALID_COMMANDS = frozenset({"go", "wait", "deregister", "restart", "send_now"})


@dataclass
class CommandQueueConfig:
    ttl_seconds: float = DEFAULT_TTL_SECONDS
    drain_delay_seconds: float = 0.5
    active_window_seconds: float = 300.0

    @classmethod
    def from_env(cls) -> "CommandQueueConfig":
        return cls(
            ttl_seconds=float(os.getenv("COMMAND_PENDING_TTL", str(DEFAULT_TTL_SECONDS))),
            drain_delay_seconds=float(os.getenv("COMMAND_DRAIN_DELAY", "0.5")),
            active_window_seconds=float(os.getenv("COMMAND_ACTIVE_WINDOW", "300")),
        )


class CommandDispatcher:
    def __init__(
        self,
        transport: BrokerTransport,
        store: IPendingCommandStore,
        config: Optional[CommandQueueConfig] = None,
    ):
        self._transport = transport
        self._store = store
        self._config = config or CommandQueueConfig.from_env()
        self._drain_locks = KeyedLock()
        self._state_lock = threading.Lock()
        self._draining: Set[str] = set()
        self._stop_event = threading.Event()

        self._stats = {"sent": 0, "queued": 0, "drained": 0}

    def dispatch(self, device_id: str, command: str, data: Optional[dict] = None) -> str:
        """Envía o encola un comando.

        Returns:
            ``"sent"`` si se publicó, ``"queued"`` si quedó pendiente.
        """
        if command not in VALID_COMMANDS:
            raise PayloadValidationError(f"unknown command '{command}'", device_id=device_id)
        data = data or {}

        with self._state_lock:
            # Con pendientes en cola o un drain en curso se encola detrás para conservar el orden
            if (
                device_id not in self._draining
                and self._transport.is_connected
                and self._transport.liveness.is_active(device_id, self._config.active_window_seconds)
                and self._store.count(device_id) == 0
            ):
                if self._transport.send_command(device_id, command, data):
                    self._stats["sent"] += 1
                    COMMANDS_SENT.labels(command=command, outcome="sent").inc()
                    return "sent"
                logger.warning("[COMMANDS] Immediate send failed, queueing device=%s command=%s", device_id, command)

            self._store.push(device_id, PendingCommand(command=command, data=data, enqueued_at=self._store.now()))
        self._stats["queued"] += 1
        COMMANDS_SENT.labels(command=command, outcome="queued").inc()
        logger.info("[COMMANDS] Queued device=%s command=%s", device_id, command)
        return "queued"

    def drain(self, device_id: str) -> int:
        """Entrega los comandos pendientes en orden, con una pausa entre cada uno.

        Los comandos que llegan durante el drain se encolan y se entregan en
        la misma pasada.

        Returns:
            Número de comandos entregados.
        """
        with self._drain_locks.hold(device_id):
            delivered = 0
            try:
                while True:
                    with self._state_lock:
                        commands = self._store.pop_all(device_id)
                        if not commands:
                            break
                        self._draining.add(device_id)

                    logger.info("[COMMANDS] Draining %d pending commands device=%s", len(commands), device_id)
                    sent = self._deliver(device_id, commands, first=delivered == 0)
                    delivered += sent
                    if sent < len(commands):
                        break
            finally:
                with self._state_lock:
                    self._draining.discard(device_id)

            self._stats["drained"] += delivered
            return delivered

    def _deliver(self, device_id: str, commands: List[PendingCommand], first: bool) -> int:
        for index, pending in enumerate(commands):
            delay = 0 if first and index == 0 else self._config.drain_delay_seconds
            if self._stop_event.wait(delay):
                self._store.restore(device_id, commands[index:])
                logger.warning("[COMMANDS] Drain interrupted by shutdown device=%s", device_id)
                return index
            if not self._transport.send_command(device_id, pending.command, pending.data):
                self._store.restore(device_id, commands[index:])
                COMMANDS_SENT.labels(command=pending.command, outcome="failed").inc()
                logger.warning(
                    "[COMMANDS] Drain stopped, %d commands kept pending device=%s",
                    len(commands) - index, device_id,
                )
                return index
            COMMANDS_SENT.labels(command=pending.command, outcome="sent").inc()
        return len(commands)

    def pending_count(self, device_id: str) -> int:
        return self._store.count(device_id)

    def stop(self) -> None:
        self._stop_event.set()

    @property
    def stats(self) -> dict:
        return dict(self._stats)
