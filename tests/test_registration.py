"""Tests de la máquina de estados de registro.

Ejecutar:
    pytest tests/test_registration.py -v
"""

from unittest.mock import MagicMock

import pytest

from monitor_service.commands.dispatcher import CommandDispatcher, CommandQueueConfig
from monitor_service.commands.pending_store import InMemoryPendingCommandStore
from monitor_service.devices.gate import RegistrationGate
from monitor_service.devices.models import DeviceMetadata, DeviceStatus, RegistrationStatus
from monitor_service.devices.registration import (
    DeviceRegistrar,
    RegistrationConfig,
    RegistrationDedupCache,
)
from monitor_service.devices.repository import InMemoryDeviceRepository
from monitor_service.errors import RegistrationRejected


REGISTER_PAYLOAD = {
    "name": "Tank A",
    "firmwareVersion": "1.4.2",
    "macAddress": "AA:BB:CC:DD:EE:01",
    "ipAddress": "10.0.0.21",
    "sensors": ["pH", "turbidity", "tds"],
}


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def devices():
    return InMemoryDeviceRepository()


@pytest.fixture
def gate():
    return RegistrationGate()


@pytest.fixture
def purgers():
    return [MagicMock(return_value=3), MagicMock(return_value=1)]


@pytest.fixture
def registrar(devices, connected_transport, gate, purgers, clock):
    # WQ-01 acaba de hablar por MQTT; los comandos administrativos salen directo
    connected_transport.liveness.touch("WQ-01")
    return DeviceRegistrar(
        devices,
        connected_transport,
        gate,
        RegistrationConfig(dedup_window_seconds=30, dedup_max_entries=100, go_interval_seconds=300),
        purgers=purgers,
        clock=clock,
    )


def _approved(registrar, devices, device_id="WQ-01"):
    registrar.handle_registration(device_id, REGISTER_PAYLOAD)
    registrar.approve(device_id)
    return devices.get(device_id)


# =============================================================================
# MENSAJES DE REGISTRO
# =============================================================================

class TestRegistrationMessages:
    """Transiciones por mensajes ``devices/{id}/register``."""

    def test_unknown_device_becomes_pending_and_waits(self, registrar, devices, mqtt_client):
        result = registrar.handle_registration("WQ-01", REGISTER_PAYLOAD)

        assert result == "wait"
        device = devices.get("WQ-01")
        assert device.registration_status == RegistrationStatus.PENDING
        assert device.is_registered is False
        assert device.status == DeviceStatus.ONLINE
        assert device.metadata.mac_address == "AA:BB:CC:DD:EE:01"
        assert device.metadata.sensors == ["pH", "turbidity", "tds"]
        assert mqtt_client.commands_for("WQ-01") == ["wait"]

    def test_duplicate_within_window_ignored(self, registrar, mqtt_client):
        registrar.handle_registration("WQ-01", REGISTER_PAYLOAD)
        assert registrar.handle_registration("WQ-01", REGISTER_PAYLOAD) is None
        assert mqtt_client.commands_for("WQ-01") == ["wait"]

    def test_pending_device_reregistering_waits_again(self, registrar, mqtt_client, clock):
        registrar.handle_registration("WQ-01", REGISTER_PAYLOAD)
        clock.advance(31)

        assert registrar.handle_registration("WQ-01", REGISTER_PAYLOAD) == "wait"
        assert mqtt_client.commands_for("WQ-01") == ["wait", "wait"]

    def test_pending_device_metadata_refreshed(self, registrar, devices, clock):
        registrar.handle_registration("WQ-01", REGISTER_PAYLOAD)
        clock.advance(31)

        registrar.handle_registration("WQ-01", {**REGISTER_PAYLOAD, "firmwareVersion": "1.5.0"})

        assert devices.get("WQ-01").metadata.firmware_version == "1.5.0"

    def test_registered_device_go_only_after_interval(self, registrar, devices, mqtt_client, clock):
        _approved(registrar, devices)
        assert mqtt_client.commands_for("WQ-01") == ["wait", "go"]

        clock.advance(60)
        assert registrar.handle_registration("WQ-01", REGISTER_PAYLOAD) is None

        clock.advance(300)
        assert registrar.handle_registration("WQ-01", REGISTER_PAYLOAD) == "go"
        assert mqtt_client.commands_for("WQ-01") == ["wait", "go", "go"]

    def test_request_approval_forces_go(self, registrar, devices, mqtt_client, clock):
        _approved(registrar, devices)
        clock.advance(31)

        result = registrar.handle_registration("WQ-01", {**REGISTER_PAYLOAD, "requestApproval": True})

        assert result == "go"
        assert mqtt_client.commands_for("WQ-01")[-1] == "go"


class TestDedupCache:
    """Cache de deduplicación de registros."""

    def test_key_format(self):
        metadata = DeviceMetadata(mac_address="AA", firmware_version="1.0")
        assert RegistrationDedupCache.make_key("WQ-01", metadata) == "WQ-01-AA-1.0"

    def test_bounded_size(self, clock):
        cache = RegistrationDedupCache(window_seconds=30, max_entries=100, clock=clock)
        for i in range(150):
            cache.check_and_mark(f"key-{i}")

        assert cache.stats["size"] == 100
        # la más antigua fue descartada
        assert cache.check_and_mark("key-0") is False
        assert cache.check_and_mark("key-149") is True

    def test_window_expiry(self, clock):
        cache = RegistrationDedupCache(window_seconds=30, max_entries=100, clock=clock)
        cache.check_and_mark("k")
        clock.advance(30)
        assert cache.check_and_mark("k") is False


# =============================================================================
# OPERACIONES ADMINISTRATIVAS
# =============================================================================

class TestAdministration:
    """approve / deregister / delete."""

    def test_approve_sends_go_and_opens_gate(self, registrar, devices, gate, mqtt_client):
        registrar.handle_registration("WQ-01", REGISTER_PAYLOAD)

        assert registrar.approve("WQ-01") is True

        device = devices.get("WQ-01")
        assert device.is_registered is True
        assert device.registration_status == RegistrationStatus.REGISTERED
        assert gate.is_allowed("WQ-01")
        assert mqtt_client.commands_for("WQ-01") == ["wait", "go"]

    def test_approve_unknown_device(self, registrar, mqtt_client):
        assert registrar.approve("ghost") is False
        assert mqtt_client.commands_for("ghost") == []

    def test_deregister_reverts_to_pending(self, registrar, devices, gate, mqtt_client):
        _approved(registrar, devices)

        assert registrar.deregister("WQ-01") is True

        device = devices.get("WQ-01")
        assert device is not None
        assert device.registration_status == RegistrationStatus.PENDING
        assert not gate.is_allowed("WQ-01")
        assert mqtt_client.commands_for("WQ-01")[-1] == "deregister"

    def test_delete_purges_device_and_data(self, registrar, devices, gate, purgers, mqtt_client):
        _approved(registrar, devices)

        assert registrar.delete("WQ-01") is True

        assert devices.get("WQ-01") is None
        assert not gate.is_allowed("WQ-01")
        for purge in purgers:
            purge.assert_called_once_with("WQ-01")
        assert mqtt_client.commands_for("WQ-01")[-1] == "deregister"

    def test_delete_unknown_device(self, registrar, purgers):
        assert registrar.delete("ghost") is False
        purgers[0].assert_not_called()

    def test_delete_forgets_liveness(self, registrar, devices, connected_transport):
        _approved(registrar, devices)

        registrar.delete("WQ-01")

        assert connected_transport.liveness.last_seen("WQ-01") is None

    def test_admin_commands_for_silent_device_are_queued(self, devices, connected_transport, gate, mqtt_client, clock):
        dispatcher = CommandDispatcher(
            connected_transport, InMemoryPendingCommandStore(clock=clock), CommandQueueConfig(drain_delay_seconds=0),
        )
        registrar = DeviceRegistrar(
            devices, connected_transport, gate, RegistrationConfig(), clock=clock, dispatcher=dispatcher,
        )
        registrar.handle_registration("WQ-07", REGISTER_PAYLOAD)

        registrar.approve("WQ-07")
        registrar.deregister("WQ-07")

        assert mqtt_client.commands_for("WQ-07") == ["wait"]
        assert dispatcher.pending_count("WQ-07") == 2
        assert dispatcher.drain("WQ-07") == 2
        assert mqtt_client.commands_for("WQ-07") == ["wait", "go", "deregister"]

    def test_load_gate_from_repository(self, registrar, devices, gate):
        _approved(registrar, devices, "WQ-01")
        gate.replace([])

        assert registrar.load_gate() == 1
        assert gate.is_allowed("WQ-01")


# =============================================================================
# VERIFICACIÓN DE REGISTRO PARA DATOS
# =============================================================================

class TestRequireRegistered:
    """Datos de dispositivos no aprobados."""

    def test_unknown_device_rejected_and_provisioned(self, registrar, devices):
        with pytest.raises(RegistrationRejected) as exc:
            registrar.require_registered("ghost")

        assert exc.value.code == RegistrationRejected.NOT_REGISTERED
        assert devices.get("ghost").is_pending

    def test_pending_device_rejected(self, registrar, devices, gate):
        registrar.handle_registration("WQ-01", REGISTER_PAYLOAD)
        gate.allow("WQ-01")

        with pytest.raises(RegistrationRejected) as exc:
            registrar.require_registered("WQ-01")

        assert exc.value.code == RegistrationRejected.NOT_APPROVED
        assert not gate.is_allowed("WQ-01")

    def test_registered_device_returned(self, registrar, devices):
        _approved(registrar, devices)
        assert registrar.require_registered("WQ-01").device_id == "WQ-01"

    def test_note_unregistered_data_provisions_pending(self, registrar, devices):
        registrar.note_unregistered_data("ghost")
        assert devices.get("ghost").is_pending
