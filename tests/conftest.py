"""Fixtures compartidas: cliente MQTT falso, reloj controlable, servicio en memoria."""

from __future__ import annotations

import json
import time
from dataclasses import dataclass
from types import SimpleNamespace
from typing import Any, Callable, Dict, List, Optional

import pytest

from common.config import Settings
from monitor_service.transport.mqtt_transport import BrokerTransport


@dataclass
class PublishedMessage:
    topic: str
    payload: Dict[str, Any]
    qos: int
    retain: bool


class FakeMQTTClient:
    """Sustituto de ``paho.mqtt.client.Client`` que entrega callbacks en línea.

    - ``loop_start()`` dispara ``on_connect`` con rc=0 (salvo ``refuse=True``)
    - ``publish()`` registra el mensaje; una query de presencia se responde
      al instante con los ids de ``responders``
    """

    def __init__(self, client_id: str, refuse: bool = False, connect_error: Optional[Exception] = None):
        self.client_id = client_id
        self.refuse = refuse
        self.connect_error = connect_error
        self.published: List[PublishedMessage] = []
        self.subscriptions: List[str] = []
        self.responders: List[str] = []
        self.credentials = None
        self.tls = False
        self.reconnect_delay = None
        self.on_connect = None
        self.on_disconnect = None
        self.on_connect_fail = None
        self.on_message = None

    def username_pw_set(self, username, password=None):
        self.credentials = (username, password)

    def tls_set(self, *args, **kwargs):
        self.tls = True

    def reconnect_delay_set(self, min_delay=1, max_delay=120):
        self.reconnect_delay = (min_delay, max_delay)

    def connect(self, host, port=1883, keepalive=60):
        if self.connect_error is not None:
            raise self.connect_error

    def loop_start(self):
        if not self.refuse:
            self.on_connect(self, None, {}, 0, None)

    def loop_stop(self):
        pass

    def disconnect(self):
        self.on_disconnect(self, None, {}, 0, None)

    def subscribe(self, topic, qos=0):
        self.subscriptions.append(topic)

    def publish(self, topic, payload=None, qos=0, retain=False):
        message = PublishedMessage(topic, json.loads(payload), qos, retain)
        self.published.append(message)
        if topic == "presence/query":
            for device_id in self.responders:
                self.deliver(
                    "presence/response",
                    {"response": "i_am_online", "deviceId": device_id, "queryId": message.payload["queryId"]},
                )
        return SimpleNamespace(rc=0)

    # Helpers de test

    def deliver(self, topic: str, payload) -> None:
        raw = payload if isinstance(payload, bytes) else json.dumps(payload).encode()
        self.on_message(self, None, SimpleNamespace(topic=topic, payload=raw))

    def drop_connection(self, rc: int = 7) -> None:
        self.on_disconnect(self, None, {}, rc, None)

    def reconnect(self) -> None:
        self.on_connect(self, None, {}, 0, None)

    def commands_for(self, device_id: str) -> List[str]:
        return [
            m.payload["command"]
            for m in self.published
            if m.topic == f"devices/{device_id}/commands"
        ]


class FakeClock:
    """Reloj controlable para cooldowns, TTLs y backoff."""

    def __init__(self, start: float = 1_767_225_600.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def wait_for(predicate: Callable[[], bool], timeout: float = 2.0, interval: float = 0.01) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fake_clients() -> List[FakeMQTTClient]:
    return []


@pytest.fixture
def client_factory(fake_clients):
    def factory(client_id: str) -> FakeMQTTClient:
        client = FakeMQTTClient(client_id)
        fake_clients.append(client)
        return client
    return factory


@pytest.fixture
def transport(client_factory) -> BrokerTransport:
    return BrokerTransport(client_factory=client_factory, connect_timeout=0.2)


@pytest.fixture
def connected_transport(transport, fake_clients) -> BrokerTransport:
    transport.connect()
    return transport


@pytest.fixture
def mqtt_client(connected_transport, fake_clients) -> FakeMQTTClient:
    return fake_clients[-1]


@pytest.fixture
def settings() -> Settings:
    return Settings(
        mqtt_host="localhost",
        mqtt_port=1883,
        mqtt_username=None,
        mqtt_password=None,
        mqtt_tls=False,
        mqtt_client_id="test-monitor",
        mqtt_keepalive=60,
        database_url="sqlite://",
        redis_url="redis://localhost:6379/0",
        redis_enabled=False,
        ingest_async_enabled=False,
    )
