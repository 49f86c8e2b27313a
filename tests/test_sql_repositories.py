"""Tests de los repositorios SQL sobre SQLite en memoria.

El mismo SQL corre en PostgreSQL; aquí se valida contra SQLite con una
única conexión compartida (StaticPool).

Ejecutar:
    pytest tests/test_sql_repositories.py -v
"""

import pytest
from sqlalchemy import create_engine, text
from sqlalchemy.pool import StaticPool

from monitor_service.alerts.evaluator import AlertConfig, AlertEvaluator
from monitor_service.alerts.models import Alert, AlertSeverity, AlertStatus
from monitor_service.alerts.repository import SqlAlertRepository
from monitor_service.devices.models import DeviceMetadata, DeviceStatus, RegistrationStatus
from monitor_service.devices.repository import SqlDeviceRepository
from monitor_service.errors import PersistenceError
from monitor_service.ingestion.readings import SensorReading, SqlReadingRepository
from monitor_service.persistence.schema import ensure_schema


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
        future=True,
    )
    ensure_schema(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def devices(engine):
    return SqlDeviceRepository(engine)


@pytest.fixture
def readings(engine):
    return SqlReadingRepository(engine)


@pytest.fixture
def alerts(engine):
    return SqlAlertRepository(engine)


METADATA = DeviceMetadata(
    name="Tank A",
    firmware_version="1.4.2",
    mac_address="AA:BB:CC:DD:EE:01",
    ip_address="10.0.0.21",
    sensors=["pH", "tds"],
)


def _alert(clock, **overrides):
    values = dict(
        device_id="WQ-01",
        parameter="pH",
        severity=AlertSeverity.WARNING,
        value=6.2,
        threshold=6.5,
        message="Warning Alert: pH level below threshold. Current: 6.20, Threshold: 6.50",
        first_occurrence=clock(),
        last_occurrence=clock(),
        current_value=6.2,
    )
    values.update(overrides)
    return Alert(**values)


# =============================================================================
# ESQUEMA
# =============================================================================

class TestSchema:
    """Creación idempotente de tablas."""

    def test_tables_created(self, engine):
        with engine.connect() as conn:
            names = {
                row[0]
                for row in conn.execute(text("SELECT name FROM sqlite_master WHERE type = 'table'"))
            }
        assert {"devices", "sensor_readings", "alerts"} <= names

    def test_idempotent(self, engine):
        ensure_schema(engine)


# =============================================================================
# DISPOSITIVOS
# =============================================================================

class TestSqlDeviceRepository:
    """Persistencia de dispositivos."""

    def test_create_pending_round_trip(self, devices, clock):
        created = devices.create_pending("WQ-01", METADATA, clock())

        assert created.registration_status == RegistrationStatus.PENDING
        assert created.is_registered is False
        assert created.status == DeviceStatus.ONLINE
        assert created.last_seen == clock()
        assert created.metadata == METADATA

    def test_create_pending_existing_is_noop(self, devices, clock):
        devices.create_pending("WQ-01", METADATA, clock())
        clock.advance(10)
        again = devices.create_pending("WQ-01", DeviceMetadata(), clock())
        assert again.metadata.mac_address == METADATA.mac_address
        assert again.created_at == clock() - 10

    def test_registration_transitions(self, devices, clock):
        devices.create_pending("WQ-01", METADATA, clock())

        assert devices.set_registration("WQ-01", True, clock()) is True
        assert devices.get("WQ-01").registration_status == RegistrationStatus.REGISTERED
        assert devices.list_registered_ids() == ["WQ-01"]

        devices.set_registration("WQ-01", False, clock())
        assert devices.get("WQ-01").is_pending
        assert devices.list_registered_ids() == []

    def test_set_registration_unknown(self, devices, clock):
        assert devices.set_registration("ghost", True, clock()) is False

    def test_mark_seen_keeps_metadata_when_absent(self, devices, clock):
        devices.create_pending("WQ-01", METADATA, clock())
        devices.mark_offline(["WQ-01"], clock())
        clock.advance(30)

        devices.mark_seen("WQ-01", clock())

        device = devices.get("WQ-01")
        assert device.status == DeviceStatus.ONLINE
        assert device.last_seen == clock()
        assert device.metadata.firmware_version == "1.4.2"

    def test_mark_seen_refreshes_metadata(self, devices, clock):
        devices.create_pending("WQ-01", METADATA, clock())
        devices.mark_seen("WQ-01", clock(), DeviceMetadata(firmware_version="2.0.0", sensors=["pH"]))

        device = devices.get("WQ-01")
        assert device.metadata.firmware_version == "2.0.0"
        assert device.metadata.mac_address == METADATA.mac_address
        assert device.metadata.sensors == ["pH"]

    def test_mark_offline_batch(self, devices, clock):
        for device_id in ("WQ-01", "WQ-02", "WQ-03"):
            devices.create_pending(device_id, METADATA, clock())

        assert devices.mark_offline(["WQ-01", "WQ-03"], clock()) == 2

        assert devices.get_statuses(["WQ-01", "WQ-02", "WQ-03", "ghost"]) == {
            "WQ-01": DeviceStatus.OFFLINE,
            "WQ-02": DeviceStatus.ONLINE,
            "WQ-03": DeviceStatus.OFFLINE,
        }

    def test_empty_batches(self, devices, clock):
        assert devices.mark_offline([], clock()) == 0
        assert devices.get_statuses([]) == {}

    def test_delete(self, devices, clock):
        devices.create_pending("WQ-01", METADATA, clock())
        assert devices.delete("WQ-01") is True
        assert devices.get("WQ-01") is None
        assert devices.delete("WQ-01") is False

    def test_database_error_wrapped(self, engine, devices):
        with engine.begin() as conn:
            conn.execute(text("DROP TABLE devices"))

        with pytest.raises(PersistenceError) as exc:
            devices.get("WQ-01")
        assert exc.value.retryable is True


# =============================================================================
# LECTURAS
# =============================================================================

class TestSqlReadingRepository:
    """Persistencia de lecturas."""

    def test_insert_and_list(self, readings, clock):
        reading = SensorReading("WQ-01", ph=7.1, turbidity=None, tds=210, timestamp=clock(), received_at=clock())

        readings.insert(reading)

        assert readings.list_for_device("WQ-01") == [reading]

    def test_delete_for_device(self, readings, clock):
        for device_id in ("WQ-01", "WQ-01", "WQ-02"):
            readings.insert(SensorReading(device_id, 7.0, 1.0, 100, clock(), clock()))

        assert readings.delete_for_device("WQ-01") == 2
        assert len(readings.list_for_device("WQ-02")) == 1


# =============================================================================
# ALERTAS
# =============================================================================

class TestSqlAlertRepository:
    """Persistencia de alertas y consulta de la ventana de cooldown."""

    def test_create_and_find_open(self, alerts, clock):
        alert = _alert(clock)
        alerts.create(alert)

        found = alerts.find_open("WQ-01", "pH", since=clock() - 900)

        assert found == alert

    def test_find_open_respects_window(self, alerts, clock):
        alerts.create(_alert(clock))
        clock.advance(901)
        assert alerts.find_open("WQ-01", "pH", since=clock() - 900) is None

    def test_find_open_skips_resolved(self, alerts, clock):
        alert = _alert(clock)
        alerts.create(alert)
        alerts.set_status(alert.alert_id, AlertStatus.RESOLVED)

        assert alerts.find_open("WQ-01", "pH", since=clock() - 900) is None

    def test_record_occurrence_with_escalation(self, alerts, clock):
        alert = _alert(clock)
        alerts.create(alert)
        clock.advance(60)

        alerts.record_occurrence(alert.alert_id, value=5.5, at=clock(), severity=AlertSeverity.CRITICAL)

        stored = alerts.list_for_device("WQ-01")[0]
        assert stored.occurrence_count == 2
        assert stored.current_value == 5.5
        assert stored.last_occurrence == clock()
        assert stored.severity == AlertSeverity.CRITICAL
        assert stored.value == 6.2

    def test_record_occurrence_keeps_severity(self, alerts, clock):
        alert = _alert(clock)
        alerts.create(alert)
        alerts.record_occurrence(alert.alert_id, value=6.3, at=clock())
        assert alerts.list_for_device("WQ-01")[0].severity == AlertSeverity.WARNING

    def test_evaluator_cooldown_on_sql(self, alerts, clock):
        evaluator = AlertEvaluator(alerts, config=AlertConfig(), clock=clock)
        for ph in (5.5, 5.4):
            evaluator.evaluate(SensorReading("WQ-01", ph, None, None, clock(), clock()))
            clock.advance(30)

        stored = alerts.list_for_device("WQ-01")
        assert len(stored) == 1
        assert stored[0].occurrence_count == 2

    def test_delete_for_device(self, alerts, clock):
        alerts.create(_alert(clock))
        alerts.create(_alert(clock, parameter="TDS"))
        assert alerts.delete_for_device("WQ-01") == 2
