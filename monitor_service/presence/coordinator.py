"""Correlación de queries de presencia.

Un único ciclo activo a la vez. Cada ciclo tiene un id propio que viaja en la
query; las respuestas se agregan en el mapa del ciclo abierto y las que
llegan después del timeout (ciclo cerrado) se ignoran.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from collections import OrderedDict
from typing import Callable, Dict, List, Optional, Tuple

from ..transport.mqtt_transport import BrokerTransport
from ..transport.topics import PRESENCE_QUERY

logger = logging.getLogger(__name__)

QUERY_MESSAGE = "who_is_online"
RESPONSE_MESSAGE = "i_am_online"
DUPLICATE_WINDOW_SECONDS = 2.0


class _Cycle:
    def __init__(self, cycle_id: str):
        self.cycle_id = cycle_id
        self.responses: "OrderedDict[str, float]" = OrderedDict()
        self.closed = threading.Event()


class PresenceQueryCoordinator:
    def __init__(
        self,
        transport: BrokerTransport,
        server_id: str = "water-monitor",
        on_device_present: Optional[Callable[[str], None]] = None,
        duplicate_window_seconds: float = DUPLICATE_WINDOW_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._transport = transport
        self._server_id = server_id
        self._on_device_present = on_device_present
        self._duplicate_window = duplicate_window_seconds
        self._clock = clock

        self._active: Optional[_Cycle] = None
        # (queryId, deviceId) -> instante de la última respuesta
        self._last_response: Dict[Tuple[str, str], float] = {}
        self._lock = threading.Lock()

        self._stats = {"queries": 0, "responses": 0, "duplicates": 0, "late": 0}

    def set_presence_callback(self, callback: Callable[[str], None]) -> None:
        self._on_device_present = callback

    @property
    def in_progress(self) -> bool:
        with self._lock:
            return self._active is not None

    def query(self, timeout_seconds: float) -> Optional[List[str]]:
        """Publica una query y recoge respuestas hasta el timeout.

        Returns:
            Ids que respondieron, en orden de llegada. None si la query no se
            pudo emitir (sin conexión, otra query en curso o publish fallido).
        """
        if not self._transport.is_connected:
            logger.warning("[PRESENCE] Query skipped, broker not connected")
            return None

        cycle = _Cycle(uuid.uuid4().hex)
        with self._lock:
            if self._active is not None:
                logger.warning("[PRESENCE] Query already in progress cycle=%s", self._active.cycle_id)
                return None
            self._active = cycle

        try:
            published = self._transport.publish(
                PRESENCE_QUERY,
                {
                    "query": QUERY_MESSAGE,
                    "queryId": cycle.cycle_id,
                    "timestamp": int(time.time() * 1000),
                    "serverId": self._server_id,
                },
                retain=False,
            )
            if not published:
                logger.warning("[PRESENCE] Query publish failed cycle=%s", cycle.cycle_id)
                return None

            self._stats["queries"] += 1
            logger.debug("[PRESENCE] Query sent cycle=%s timeout=%.1fs", cycle.cycle_id, timeout_seconds)
            cycle.closed.wait(timeout_seconds)
        finally:
            with self._lock:
                if self._active is cycle:
                    self._active = None
            cycle.closed.set()

        responders = list(cycle.responses)
        logger.info("[PRESENCE] Cycle %s closed responders=%d", cycle.cycle_id, len(responders))
        return responders

    def cancel(self) -> None:
        """Cierra el ciclo activo antes de su timeout."""
        with self._lock:
            cycle = self._active
        if cycle is not None:
            cycle.closed.set()

    def record_response(self, payload: dict) -> bool:
        """Registra una respuesta de ``presence/response``.

        Returns:
            True si la respuesta se contó en el ciclo abierto.
        """
        if payload.get("response") != RESPONSE_MESSAGE:
            return False
        device_id = payload.get("deviceId")
        if not device_id:
            logger.debug("[PRESENCE] Response without deviceId ignored")
            return False
        device_id = str(device_id)

        query_id = payload.get("queryId")

        now = self._clock()
        counted = False
        with self._lock:
            cycle = self._active
            # Sin queryId la respuesta se atribuye al ciclo abierto
            cycle_key = query_id or (cycle.cycle_id if cycle is not None else "")
            key = (str(cycle_key), device_id)
            last = self._last_response.get(key)
            if last is not None and now - last < self._duplicate_window:
                self._stats["duplicates"] += 1
                return False
            self._prune_responses(now)
            self._last_response[key] = now

            if cycle is None or cycle.closed.is_set():
                self._stats["late"] += 1
            elif query_id is not None and query_id != cycle.cycle_id:
                self._stats["late"] += 1
            else:
                cycle.responses[device_id] = now
                self._stats["responses"] += 1
                counted = True

        if not counted:
            logger.debug("[PRESENCE] Late response ignored device=%s", device_id)

        if self._on_device_present is not None:
            self._on_device_present(device_id)
        return counted

    def _prune_responses(self, now: float) -> None:
        expired = [k for k, ts in self._last_response.items() if now - ts >= self._duplicate_window]
        for k in expired:
            del self._last_response[k]

    @property
    def stats(self) -> dict:
        with self._lock:
            return {**self._stats, "in_progress": self._active is not None}
