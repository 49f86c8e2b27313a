"""Adaptador de transporte MQTT.

Único componente con acceso al broker. Responsabilidades:
- Conexión autenticada (y TLS opcional) con reconexión por backoff de paho
- Suscripción a los topics de dispositivos en cada (re)conexión
- Demultiplexado de mensajes entrantes hacia handlers por tipo de topic
- Publicación de comandos y queries (nunca retenidos)
- Actualización de la tabla de actividad por dispositivo

Los handlers se ejecutan en el hilo de red de paho: no deben bloquear.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from enum import Enum
from typing import Any, Callable, Dict, Optional

import paho.mqtt.client as mqtt

from ..errors import BrokerConnectionError
from ..metrics import MQTT_CONNECTED, MQTT_MESSAGES_MALFORMED, MQTT_MESSAGES_RECEIVED
from .liveness import LivenessTable
from .topics import SUBSCRIPTIONS, TopicKind, classify, command_topic

logger = logging.getLogger(__name__)

MessageHandler = Callable[[Optional[str], Dict[str, Any]], None]

RECONNECT_MIN_DELAY = 1
RECONNECT_MAX_DELAY = 60


class ConnectionState(str, Enum):
    """Estados de la conexión al broker."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    OFFLINE = "offline"
    CLOSED = "closed"


def _default_client_factory(client_id: str) -> mqtt.Client:
    return mqtt.Client(
        client_id=client_id,
        protocol=mqtt.MQTTv311,
        callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
    )


class BrokerTransport:
    """Conexión MQTT compartida por todos los componentes del monitor."""

    def __init__(
        self,
        broker_host: str = "localhost",
        broker_port: int = 1883,
        username: Optional[str] = None,
        password: Optional[str] = None,
        client_id: str = "water-monitor",
        keepalive: int = 60,
        tls: bool = False,
        liveness: Optional[LivenessTable] = None,
        connect_timeout: float = 5.0,
        client_factory: Callable[[str], Any] = _default_client_factory,
    ):
        self.broker_host = broker_host
        self.broker_port = broker_port
        self.username = username
        self.password = password
        self.client_id = f"{client_id}-{int(time.time())}"
        self.keepalive = keepalive
        self.tls = tls
        self.liveness = liveness or LivenessTable()
        self._connect_timeout = connect_timeout
        self._client_factory = client_factory

        self._client = None
        self._state = ConnectionState.DISCONNECTED
        self._state_lock = threading.Lock()
        self._connected_event = threading.Event()
        self._closing = False
        self._handlers: Dict[TopicKind, MessageHandler] = {}

        self._stats = {
            "messages_received": 0,
            "messages_malformed": 0,
            "messages_unhandled": 0,
            "published": 0,
            "publish_failures": 0,
            "reconnect_count": 0,
        }

    # ------------------------------------------------------------------
    # Estado
    # ------------------------------------------------------------------

    @property
    def state(self) -> ConnectionState:
        with self._state_lock:
            return self._state

    @property
    def is_connected(self) -> bool:
        return self.state == ConnectionState.CONNECTED

    def _set_state(self, state: ConnectionState) -> None:
        with self._state_lock:
            previous = self._state
            self._state = state
        if previous != state:
            logger.info("[MQTT] State %s -> %s", previous.value, state.value)
        MQTT_CONNECTED.set(1 if state == ConnectionState.CONNECTED else 0)

    @property
    def stats(self) -> dict:
        return {**self._stats, "state": self.state.value}

    # ------------------------------------------------------------------
    # Ciclo de vida
    # ------------------------------------------------------------------

    def register_handler(self, kind: TopicKind, handler: MessageHandler) -> None:
        """Asocia un handler a un tipo de topic (reemplaza el anterior)."""
        self._handlers[kind] = handler

    def connect(self) -> None:
        """Conecta al broker y espera la confirmación.

        Raises:
            BrokerConnectionError: si el broker no acepta la conexión a tiempo.
        """
        self._closing = False
        self._connected_event.clear()
        self._set_state(ConnectionState.CONNECTING)

        client = self._client_factory(self.client_id)
        client.on_connect = self._on_connect
        client.on_disconnect = self._on_disconnect
        client.on_connect_fail = self._on_connect_fail
        client.on_message = self._on_message

        if self.username and self.password:
            client.username_pw_set(self.username, self.password)
        if self.tls:
            client.tls_set()
        client.reconnect_delay_set(min_delay=RECONNECT_MIN_DELAY, max_delay=RECONNECT_MAX_DELAY)
        self._client = client

        logger.info("[MQTT] Connecting to %s:%d", self.broker_host, self.broker_port)
        try:
            client.connect(self.broker_host, self.broker_port, keepalive=self.keepalive)
        except (OSError, ValueError) as e:
            self._set_state(ConnectionState.DISCONNECTED)
            raise BrokerConnectionError(
                f"Cannot connect to {self.broker_host}:{self.broker_port}: {e}"
            ) from e

        client.loop_start()

        if not self._connected_event.wait(self._connect_timeout):
            client.loop_stop()
            self._set_state(ConnectionState.DISCONNECTED)
            raise BrokerConnectionError(
                f"Connection to {self.broker_host}:{self.broker_port} timed out "
                f"after {self._connect_timeout:.1f}s"
            )

    def quiesce(self) -> None:
        """Bloquea nuevas publicaciones antes del apagado; la conexión sigue abierta."""
        self._closing = True

    def disconnect(self) -> None:
        """Cierra la conexión. No publica nada."""
        self._closing = True
        if self._client is not None:
            try:
                self._client.disconnect()
                self._client.loop_stop()
            except Exception as e:
                logger.warning("[MQTT] Disconnect error: %s", e)
        self._set_state(ConnectionState.CLOSED)

    # ------------------------------------------------------------------
    # Callbacks de paho (hilo de red)
    # ------------------------------------------------------------------

    def _on_connect(self, client, userdata, flags, reason_code, properties=None):
        if reason_code == 0:
            for topic in SUBSCRIPTIONS:
                client.subscribe(topic, qos=1)
            self._set_state(ConnectionState.CONNECTED)
            self._connected_event.set()
            logger.info("[MQTT] Connected, subscribed to %s", ", ".join(SUBSCRIPTIONS))
        else:
            self._set_state(ConnectionState.DISCONNECTED)
            logger.error("[MQTT] Connection refused: %s", reason_code)

    def _on_disconnect(self, client, userdata, disconnect_flags, reason_code, properties=None):
        if self._closing:
            self._set_state(ConnectionState.CLOSED)
            return
        self._set_state(ConnectionState.OFFLINE)
        self._stats["reconnect_count"] += 1
        logger.warning("[MQTT] Disconnected (%s), paho will reconnect", reason_code)

    def _on_connect_fail(self, client, userdata):
        logger.warning("[MQTT] Reconnect attempt to %s:%d failed", self.broker_host, self.broker_port)

    def _on_message(self, client, userdata, msg):
        self.handle_message(msg.topic, msg.payload)

    def handle_message(self, topic: str, payload: bytes) -> None:
        """Enruta un mensaje entrante a su handler.

        Nunca lanza: un error en el hilo de red detendría la conexión.
        """
        kind, device_id = classify(topic)
        self._stats["messages_received"] += 1
        MQTT_MESSAGES_RECEIVED.labels(kind=kind.value).inc()

        if device_id:
            self.liveness.touch(device_id)

        handler = self._handlers.get(kind)
        if handler is None:
            self._stats["messages_unhandled"] += 1
            logger.debug("[MQTT] No handler for topic=%s", topic)
            return

        try:
            data = json.loads(payload)
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            self._stats["messages_malformed"] += 1
            MQTT_MESSAGES_MALFORMED.inc()
            logger.warning("[MQTT] Malformed JSON topic=%s err=%s", topic, e)
            return
        if not isinstance(data, dict):
            self._stats["messages_malformed"] += 1
            MQTT_MESSAGES_MALFORMED.inc()
            logger.warning("[MQTT] Payload is not an object topic=%s", topic)
            return

        try:
            handler(device_id, data)
        except Exception:
            logger.exception("[MQTT] Handler error topic=%s device=%s", topic, device_id)

    # ------------------------------------------------------------------
    # Publicación
    # ------------------------------------------------------------------

    def publish(self, topic: str, payload: Dict[str, Any], retain: bool = False, qos: int = 1) -> bool:
        """Publica un mensaje JSON.

        Returns:
            True si la publicación se entregó a paho; no implica entrega al
            dispositivo. False si no hay conexión o paho la rechazó.
        """
        if self._closing or not self.is_connected or self._client is None:
            logger.debug("[MQTT] Publish skipped, not connected topic=%s", topic)
            return False

        try:
            info = self._client.publish(topic, json.dumps(payload, default=str), qos=qos, retain=retain)
        except (ValueError, TypeError) as e:
            self._stats["publish_failures"] += 1
            logger.error("[MQTT] Publish error topic=%s err=%s", topic, e)
            return False

        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            self._stats["publish_failures"] += 1
            logger.warning("[MQTT] Publish failed topic=%s rc=%s", topic, info.rc)
            return False

        self._stats["published"] += 1
        return True

    def send_command(self, device_id: str, command: str, data: Optional[Dict[str, Any]] = None) -> bool:
        """Publica un comando en ``devices/{id}/commands`` (QoS 1, no retenido)."""
        message = {"command": command, "timestamp": int(time.time() * 1000)}
        if data:
            message.update(data)
        sent = self.publish(command_topic(device_id), message, retain=False, qos=1)
        if sent:
            logger.info("[MQTT] Command sent device=%s command=%s", device_id, command)
        return sent
