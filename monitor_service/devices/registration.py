"""Máquina de estados de registro de dispositivos.

Estados: desconocido -> pending -> registered, y registered -> pending al
desregistrar. Cada transición publica el comando correspondiente:

- desconocido registra      -> crear pending, publicar ``wait``
- pending registra          -> refrescar metadata, publicar ``wait``
- registered registra       -> refrescar metadata; ``go`` solo en reconexión
- approve                   -> registered, despachar ``go``
- deregister                -> despachar ``deregister``, volver a pending
- delete                    -> despachar ``deregister``, borrar dispositivo y sus datos

Los comandos administrativos pasan por el despachador: si el dispositivo no
está activo quedan en la cola de pendientes en vez de perderse.
"""

from __future__ import annotations

import logging
import os
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Iterable, Optional

from ..commands.dispatcher import CommandDispatcher, CommandQueueConfig
from ..commands.pending_store import InMemoryPendingCommandStore
from ..errors import RegistrationRejected
from ..transport.mqtt_transport import BrokerTransport
from .gate import RegistrationGate
from .models import Device, DeviceMetadata
from .repository import IDeviceRepository

logger = logging.getLogger(__name__)

Purger = Callable[[str], int]


@dataclass
class RegistrationConfig:
    """Configuración del registro de dispositivos."""
    dedup_window_seconds: float = 30.0
    dedup_max_entries: int = 100
    go_interval_seconds: float = 300.0

    @classmethod
    def from_env(cls) -> "RegistrationConfig":
        return cls(
            dedup_window_seconds=float(os.getenv("REGISTRATION_DEDUP_WINDOW", "30")),
            dedup_max_entries=int(os.getenv("REGISTRATION_DEDUP_MAX", "100")),
            go_interval_seconds=float(os.getenv("REGISTRATION_GO_INTERVAL", "300")),
        )


class RegistrationDedupCache:
    """Ignora mensajes de registro repetidos dentro de una ventana.

    CLAVE: ``{device_id}-{mac}-{firmware}``. Tamaño acotado; al superarlo se
    descartan primero las entradas más antiguas.
    """

    def __init__(self, window_seconds: float, max_entries: int, clock: Callable[[], float] = time.time):
        self._window = window_seconds
        self._max_entries = max_entries
        self._clock = clock
        self._entries: "OrderedDict[str, float]" = OrderedDict()
        self._lock = threading.Lock()
        self._hits = 0

    @staticmethod
    def make_key(device_id: str, metadata: DeviceMetadata) -> str:
        return f"{device_id}-{metadata.mac_address or ''}-{metadata.firmware_version or ''}"

    def check_and_mark(self, key: str) -> bool:
        """True si la clave se vio dentro de la ventana; si no, la registra."""
        now = self._clock()
        with self._lock:
            seen = self._entries.get(key)
            if seen is not None and now - seen < self._window:
                self._hits += 1
                return True
            self._entries[key] = now
            self._entries.move_to_end(key)
            while len(self._entries) > self._max_entries:
                self._entries.popitem(last=False)
            return False

    @property
    def stats(self) -> dict:
        with self._lock:
            return {"size": len(self._entries), "duplicates_ignored": self._hits}


class DeviceRegistrar:
    """Aplica las transiciones de registro y publica los comandos asociados."""

    def __init__(
        self,
        repository: IDeviceRepository,
        transport: BrokerTransport,
        gate: RegistrationGate,
        config: Optional[RegistrationConfig] = None,
        purgers: Iterable[Purger] = (),
        clock: Callable[[], float] = time.time,
        dispatcher: Optional[CommandDispatcher] = None,
    ):
        self._repo = repository
        self._transport = transport
        self._dispatcher = dispatcher or CommandDispatcher(
            transport, InMemoryPendingCommandStore(), CommandQueueConfig(),
        )
        self._gate = gate
        self._config = config or RegistrationConfig.from_env()
        self._purgers = list(purgers)
        self._clock = clock
        self._dedup = RegistrationDedupCache(
            self._config.dedup_window_seconds,
            self._config.dedup_max_entries,
            clock=clock,
        )
        self._last_go: dict[str, float] = {}
        self._lock = threading.Lock()

    @property
    def gate(self) -> RegistrationGate:
        return self._gate

    def load_gate(self) -> int:
        ids = self._repo.list_registered_ids()
        self._gate.replace(ids)
        logger.info("[REGISTRATION] Gate loaded approved=%d", len(ids))
        return len(ids)

    # ------------------------------------------------------------------
    # Mensajes de registro
    # ------------------------------------------------------------------

    def handle_registration(self, device_id: str, payload: dict) -> Optional[str]:
        """Procesa ``devices/{id}/register``.

        Returns:
            El comando publicado (``wait``/``go``) o None si no se publicó nada.
        """
        metadata = DeviceMetadata.from_payload(payload)
        if self._dedup.check_and_mark(RegistrationDedupCache.make_key(device_id, metadata)):
            logger.debug("[REGISTRATION] Duplicate registration ignored device=%s", device_id)
            return None

        now = self._clock()
        device = self._repo.get(device_id)

        if device is None:
            self._repo.create_pending(device_id, metadata, now)
            logger.info(
                "[REGISTRATION] New device pending approval device=%s mac=%s firmware=%s",
                device_id, metadata.mac_address, metadata.firmware_version,
            )
            self._transport.send_command(device_id, "wait")
            return "wait"

        self._repo.mark_seen(device_id, now, metadata)

        if not device.is_registered:
            logger.info("[REGISTRATION] Pending device re-registered device=%s", device_id)
            self._transport.send_command(device_id, "wait")
            return "wait"

        if payload.get("requestApproval") or self._go_due(device_id, now):
            if self._send_go(device_id, now):
                return "go"
        return None

    def _go_due(self, device_id: str, now: float) -> bool:
        with self._lock:
            last = self._last_go.get(device_id)
        return last is None or now - last >= self._config.go_interval_seconds

    def _send_go(self, device_id: str, now: float) -> bool:
        sent = self._transport.send_command(device_id, "go")
        if sent:
            with self._lock:
                self._last_go[device_id] = now
        return sent

    # ------------------------------------------------------------------
    # Datos de sensores
    # ------------------------------------------------------------------

    def note_unregistered_data(self, device_id: str) -> None:
        """Auto-provisiona como pending un dispositivo desconocido que envía datos."""
        now = self._clock()
        if self._repo.get(device_id) is None:
            self._repo.create_pending(device_id, DeviceMetadata(), now)
            logger.info("[REGISTRATION] Auto-provisioned pending device from data device=%s", device_id)
        else:
            self._repo.mark_seen(device_id, now)

    def require_registered(self, device_id: str) -> Device:
        """Verifica contra el repositorio que el dispositivo está aprobado.

        Raises:
            RegistrationRejected: ``DEVICE_NOT_REGISTERED`` si es desconocido
                (queda creado como pending) o ``DEVICE_NOT_APPROVED`` si está
                pendiente.
        """
        device = self._repo.get(device_id)
        if device is None:
            self._repo.create_pending(device_id, DeviceMetadata(), self._clock())
            self._gate.revoke(device_id)
            raise RegistrationRejected(device_id, RegistrationRejected.NOT_REGISTERED)
        if not device.is_registered:
            self._gate.revoke(device_id)
            raise RegistrationRejected(device_id, RegistrationRejected.NOT_APPROVED)
        return device

    # ------------------------------------------------------------------
    # Operaciones administrativas
    # ------------------------------------------------------------------

    def approve(self, device_id: str) -> bool:
        now = self._clock()
        if not self._repo.set_registration(device_id, True, now):
            logger.warning("[REGISTRATION] Approve for unknown device=%s", device_id)
            return False
        self._gate.allow(device_id)
        outcome = self._dispatcher.dispatch(device_id, "go")
        if outcome == "sent":
            with self._lock:
                self._last_go[device_id] = now
        logger.info("[REGISTRATION] Device approved device=%s go=%s", device_id, outcome)
        return True

    def deregister(self, device_id: str) -> bool:
        """Despacha ``deregister`` y devuelve el dispositivo a pending."""
        if self._repo.get(device_id) is None:
            logger.warning("[REGISTRATION] Deregister for unknown device=%s", device_id)
            return False
        self._gate.revoke(device_id)
        self._dispatcher.dispatch(device_id, "deregister")
        self._repo.set_registration(device_id, False, self._clock())
        with self._lock:
            self._last_go.pop(device_id, None)
        logger.info("[REGISTRATION] Device reverted to pending device=%s", device_id)
        return True

    def delete(self, device_id: str) -> bool:
        """Despacha ``deregister`` y elimina el dispositivo con sus lecturas y alertas."""
        if self._repo.get(device_id) is None:
            return False
        self._gate.revoke(device_id)
        self._dispatcher.dispatch(device_id, "deregister")
        purged = sum(purge(device_id) for purge in self._purgers)
        self._repo.delete(device_id)
        self._transport.liveness.forget(device_id)
        with self._lock:
            self._last_go.pop(device_id, None)
        logger.info("[REGISTRATION] Device deleted device=%s purged_rows=%d", device_id, purged)
        return True

    @property
    def stats(self) -> dict:
        return {"dedup": self._dedup.stats, "approved": len(self._gate)}
