"""Tests del adaptador de transporte MQTT.

Ejecutar:
    pytest tests/test_transport.py -v
"""

from unittest.mock import MagicMock

import pytest

from monitor_service.errors import BrokerConnectionError
from monitor_service.transport.liveness import LivenessTable
from monitor_service.transport.mqtt_transport import BrokerTransport, ConnectionState
from monitor_service.transport.topics import SUBSCRIPTIONS, TopicKind, classify, command_topic

from conftest import FakeClock, FakeMQTTClient


# =============================================================================
# TOPICS
# =============================================================================

class TestTopics:
    """Clasificación de topics entrantes."""

    @pytest.mark.parametrize("topic,kind,device_id", [
        ("devices/WQ-01/data", TopicKind.DATA, "WQ-01"),
        ("devices/WQ-01/register", TopicKind.REGISTER, "WQ-01"),
        ("devices/WQ-01/presence", TopicKind.PRESENCE, "WQ-01"),
        ("presence/response", TopicKind.PRESENCE_RESPONSE, None),
        ("devices/WQ-01/commands", TopicKind.UNKNOWN, "WQ-01"),
        ("devices//data", TopicKind.UNKNOWN, None),
        ("other/topic", TopicKind.UNKNOWN, None),
    ])
    def test_classify(self, topic, kind, device_id):
        assert classify(topic) == (kind, device_id)

    def test_command_topic(self):
        assert command_topic("WQ-01") == "devices/WQ-01/commands"

    def test_query_topic_not_subscribed(self):
        """El monitor no se suscribe a sus propias queries."""
        assert "presence/query" not in SUBSCRIPTIONS


# =============================================================================
# CONEXIÓN
# =============================================================================

class TestConnection:
    """Conexión, suscripción y reconexión."""

    def test_connect_subscribes_all_topics(self, connected_transport, mqtt_client):
        assert connected_transport.is_connected
        assert mqtt_client.subscriptions == list(SUBSCRIPTIONS)
        assert mqtt_client.reconnect_delay == (1, 60)

    def test_credentials_and_tls(self, fake_clients, client_factory):
        transport = BrokerTransport(
            username="monitor", password="secret", tls=True,
            client_factory=client_factory, connect_timeout=0.2,
        )
        transport.connect()
        client = fake_clients[-1]
        assert client.credentials == ("monitor", "secret")
        assert client.tls is True

    def test_client_id_is_unique_per_instance(self, client_factory):
        transport = BrokerTransport(client_id="monitor", client_factory=client_factory)
        assert transport.client_id.startswith("monitor-")

    def test_connect_timeout_raises(self):
        transport = BrokerTransport(
            client_factory=lambda cid: FakeMQTTClient(cid, refuse=True),
            connect_timeout=0.05,
        )
        with pytest.raises(BrokerConnectionError):
            transport.connect()
        assert transport.state == ConnectionState.DISCONNECTED

    def test_connect_socket_error_raises(self):
        transport = BrokerTransport(
            client_factory=lambda cid: FakeMQTTClient(cid, connect_error=ConnectionRefusedError("refused")),
        )
        with pytest.raises(BrokerConnectionError):
            transport.connect()

    def test_drop_marks_offline_and_reconnect_resubscribes(self, connected_transport, mqtt_client):
        mqtt_client.drop_connection()
        assert connected_transport.state == ConnectionState.OFFLINE
        assert connected_transport.stats["reconnect_count"] == 1

        mqtt_client.reconnect()
        assert connected_transport.is_connected
        assert mqtt_client.subscriptions == list(SUBSCRIPTIONS) * 2

    def test_disconnect_closes(self, connected_transport):
        connected_transport.disconnect()
        assert connected_transport.state == ConnectionState.CLOSED


# =============================================================================
# MENSAJES ENTRANTES
# =============================================================================

class TestIncomingMessages:
    """Demultiplexado de mensajes hacia handlers."""

    def test_routes_to_handler_and_touches_liveness(self, connected_transport, mqtt_client):
        handler = MagicMock()
        connected_transport.register_handler(TopicKind.DATA, handler)

        mqtt_client.deliver("devices/WQ-01/data", {"pH": 7.1})

        handler.assert_called_once_with("WQ-01", {"pH": 7.1})
        assert connected_transport.liveness.is_active("WQ-01")

    def test_malformed_json_is_dropped(self, connected_transport, mqtt_client):
        handler = MagicMock()
        connected_transport.register_handler(TopicKind.DATA, handler)

        mqtt_client.deliver("devices/WQ-01/data", b"{not json")

        handler.assert_not_called()
        assert connected_transport.stats["messages_malformed"] == 1

    def test_non_object_payload_is_dropped(self, connected_transport, mqtt_client):
        handler = MagicMock()
        connected_transport.register_handler(TopicKind.DATA, handler)

        mqtt_client.deliver("devices/WQ-01/data", [1, 2, 3])

        handler.assert_not_called()
        assert connected_transport.stats["messages_malformed"] == 1

    def test_handler_error_does_not_propagate(self, connected_transport, mqtt_client):
        connected_transport.register_handler(TopicKind.DATA, MagicMock(side_effect=RuntimeError("boom")))

        mqtt_client.deliver("devices/WQ-01/data", {"pH": 7.1})

        assert connected_transport.stats["messages_received"] == 1

    def test_unhandled_topic_counted(self, connected_transport, mqtt_client):
        mqtt_client.deliver("devices/WQ-01/presence", {"status": "online"})
        assert connected_transport.stats["messages_unhandled"] == 1


# =============================================================================
# PUBLICACIÓN
# =============================================================================

class TestPublish:
    """Comandos y publicaciones salientes."""

    def test_send_command_not_retained(self, connected_transport, mqtt_client):
        assert connected_transport.send_command("WQ-01", "go") is True

        message = mqtt_client.published[-1]
        assert message.topic == "devices/WQ-01/commands"
        assert message.payload["command"] == "go"
        assert isinstance(message.payload["timestamp"], int)
        assert message.retain is False
        assert message.qos == 1

    def test_send_command_merges_data(self, connected_transport, mqtt_client):
        connected_transport.send_command("WQ-01", "restart", {"delay": 5})
        assert mqtt_client.published[-1].payload["delay"] == 5

    def test_publish_skipped_when_not_connected(self, transport, fake_clients):
        assert transport.publish("presence/query", {"query": "who_is_online"}) is False
        assert fake_clients == []

    def test_publish_skipped_when_offline(self, connected_transport, mqtt_client):
        mqtt_client.drop_connection()
        assert connected_transport.send_command("WQ-01", "go") is False
        assert mqtt_client.published == []

    def test_publish_skipped_after_quiesce(self, connected_transport, mqtt_client):
        connected_transport.quiesce()
        assert connected_transport.send_command("WQ-01", "go") is False
        assert mqtt_client.published == []

    def test_publish_rc_error(self, connected_transport, mqtt_client):
        mqtt_client.publish = MagicMock(return_value=MagicMock(rc=4))
        assert connected_transport.publish("devices/WQ-01/commands", {"command": "go"}) is False
        assert connected_transport.stats["publish_failures"] == 1


# =============================================================================
# LIVENESS
# =============================================================================

class TestLivenessTable:
    """Tabla de actividad reciente."""

    def test_active_window(self):
        clock = FakeClock()
        table = LivenessTable(clock=clock)
        table.touch("WQ-01")

        clock.advance(299)
        assert table.is_active("WQ-01", 300)
        clock.advance(2)
        assert not table.is_active("WQ-01", 300)

    def test_unknown_device_inactive(self):
        assert not LivenessTable().is_active("nope")

    def test_forget(self):
        table = LivenessTable()
        table.touch("WQ-01")
        table.forget("WQ-01")
        assert len(table) == 0
