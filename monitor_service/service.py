"""Servicio de monitoreo: raíz de composición.

Se construye una vez (``build_service``) y se pasa explícitamente a quien lo
necesite (CLI, app HTTP de salud). Expone las operaciones para
colaboradores:

- process_sensor_data(device_id, payload)
- approve_device / deregister_device / delete_device
- send_command(device_id, command, data)
- query_presence(timeout_ms)
- get_health_status()

Reparto de hilos:
- hilo de red de paho: solo encola (datos) o delega (registro, drenado)
- executor de control: registro y drenado de comandos pendientes
- workers de ingesta: BD y alertas
- hilo del poller: ciclo de presencia
"""

from __future__ import annotations

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable, List, Optional

import redis
from sqlalchemy.engine import Engine

from common.config import Settings, get_settings
from common.db import get_engine

from .alerts.evaluator import AlertConfig, AlertEvaluator
from .alerts.notifier import IAlertNotifier, LoggingNotifier, RedisStreamNotifier
from .alerts.repository import IAlertRepository, InMemoryAlertRepository, SqlAlertRepository
from .commands.dispatcher import CommandDispatcher, CommandQueueConfig
from .commands.pending_store import create_pending_store
from .devices.gate import RegistrationGate
from .devices.registration import DeviceRegistrar, RegistrationConfig
from .devices.repository import IDeviceRepository, InMemoryDeviceRepository, SqlDeviceRepository
from .errors import ConfigurationError, RegistrationRejected
from .ingestion.dead_letter import DeadLetterQueue
from .ingestion.processor import SensorDataProcessor
from .ingestion.queue import IIngestionQueue, IngestionConfig, create_ingestion_queue
from .ingestion.readings import InMemoryReadingRepository, IReadingRepository, SqlReadingRepository
from .monitoring.health import HealthChecker, HealthStatus
from .persistence.schema import ensure_schema
from .presence.coordinator import PresenceQueryCoordinator
from .presence.poller import PresenceConfig, PresencePoller
from .transport.mqtt_transport import BrokerTransport
from .transport.topics import TopicKind

logger = logging.getLogger(__name__)

CONTROL_WORKERS = 4


class MonitorService:
    def __init__(
        self,
        transport: BrokerTransport,
        devices: IDeviceRepository,
        readings: IReadingRepository,
        alerts: IAlertRepository,
        registrar: DeviceRegistrar,
        ingestion: IIngestionQueue,
        dispatcher: CommandDispatcher,
        coordinator: PresenceQueryCoordinator,
        poller: PresencePoller,
        dlq: DeadLetterQueue,
        health_checker: Optional[HealthChecker] = None,
        control_workers: int = CONTROL_WORKERS,
    ):
        self.transport = transport
        self.devices = devices
        self.readings = readings
        self.alerts = alerts
        self.registrar = registrar
        self.ingestion = ingestion
        self.dispatcher = dispatcher
        self.coordinator = coordinator
        self.poller = poller
        self.dlq = dlq
        self._health = health_checker or HealthChecker()
        self._control_workers = control_workers
        self._executor: Optional[ThreadPoolExecutor] = None
        self._running = False

        transport.register_handler(TopicKind.DATA, self._on_data)
        transport.register_handler(TopicKind.REGISTER, self._on_register)
        transport.register_handler(TopicKind.PRESENCE, self._on_presence_announcement)
        transport.register_handler(TopicKind.PRESENCE_RESPONSE, self._on_presence_response)
        coordinator.set_presence_callback(self._schedule_drain)

    # ------------------------------------------------------------------
    # Ciclo de vida
    # ------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._running

    def start(self, start_poller: bool = True) -> None:
        """Arranca componentes. Un fallo de conexión inicial se propaga."""
        self.registrar.load_gate()
        self._executor = ThreadPoolExecutor(max_workers=self._control_workers, thread_name_prefix="control")
        self.ingestion.start()
        try:
            self.transport.connect()
        except Exception:
            self.ingestion.stop(drain=False, timeout=0)
            self._executor.shutdown(wait=False)
            self._executor = None
            raise
        if start_poller:
            self.poller.start()
        self._running = True
        logger.info("[SERVICE] Monitor started")

    def stop(self) -> None:
        """Detiene en orden: despacho, poller, control, ingesta (drenando), transporte.

        No publica nada durante el apagado.
        """
        if not self._running:
            return
        self._running = False
        self.transport.quiesce()
        self.dispatcher.stop()
        self.poller.stop()
        if self._executor is not None:
            self._executor.shutdown(wait=True, cancel_futures=True)
            self._executor = None
        self.ingestion.stop(drain=True)
        self.transport.disconnect()
        logger.info("[SERVICE] Monitor stopped")

    # ------------------------------------------------------------------
    # Handlers del transporte (hilo de red)
    # ------------------------------------------------------------------

    def _submit(self, fn: Callable, *args) -> Optional[Future]:
        executor = self._executor
        if executor is None:
            logger.debug("[SERVICE] Control executor not running, dropping %s", getattr(fn, "__name__", fn))
            return None
        try:
            future = executor.submit(fn, *args)
        except RuntimeError:
            # executor cerrado durante el apagado
            return None
        future.add_done_callback(self._log_control_error)
        return future

    @staticmethod
    def _log_control_error(future: Future) -> None:
        error = future.exception()
        if error is not None:
            logger.error("[SERVICE] Control task failed: %s", error, exc_info=error)

    def _on_data(self, device_id: Optional[str], payload: dict) -> None:
        if not self.registrar.gate.is_allowed(device_id):
            logger.info("[INGEST] Data rejected, device not approved device=%s", device_id)
            self._submit(self.registrar.note_unregistered_data, device_id)
            return
        self.ingestion.enqueue(device_id, payload)

    def _on_register(self, device_id: Optional[str], payload: dict) -> None:
        self._submit(self.registrar.handle_registration, device_id, payload)

    def _on_presence_announcement(self, device_id: Optional[str], payload: dict) -> None:
        logger.debug("[PRESENCE] Announcement device=%s status=%s", device_id, payload.get("status"))
        self._schedule_drain(device_id)

    def _on_presence_response(self, _device_id: Optional[str], payload: dict) -> None:
        self.coordinator.record_response(payload)

    def _schedule_drain(self, device_id: str) -> None:
        self._submit(self.dispatcher.drain, device_id)

    # ------------------------------------------------------------------
    # Operaciones para colaboradores
    # ------------------------------------------------------------------

    def process_sensor_data(self, device_id: str, payload: dict) -> bool:
        """Verifica el registro y encola la lectura.

        Raises:
            RegistrationRejected: ``DEVICE_NOT_REGISTERED`` / ``DEVICE_NOT_APPROVED``;
                no se persiste nada ni se encola ningún job.
        """
        try:
            self.registrar.require_registered(device_id)
        except RegistrationRejected as e:
            logger.info("[INGEST] Data rejected device=%s code=%s", device_id, e.code)
            raise
        self.registrar.gate.allow(device_id)
        return self.ingestion.enqueue(device_id, payload)

    def approve_device(self, device_id: str) -> bool:
        return self.registrar.approve(device_id)

    def deregister_device(self, device_id: str) -> bool:
        return self.registrar.deregister(device_id)

    def delete_device(self, device_id: str) -> bool:
        return self.registrar.delete(device_id)

    def send_command(self, device_id: str, command: str, data: Optional[dict] = None) -> str:
        return self.dispatcher.dispatch(device_id, command, data)

    def query_presence(self, timeout_ms: int) -> List[str]:
        """Ids que respondieron dentro del timeout; [] sin conexión o con otra query en curso."""
        responders = self.coordinator.query(timeout_ms / 1000.0)
        return responders or []

    def get_health_status(self) -> HealthStatus:
        breaker = self.poller.breaker
        return HealthStatus(
            circuit_breaker_open=breaker.is_open,
            consecutive_failures=breaker.consecutive_failures,
            last_successful_poll=breaker.last_success,
            connected=self.transport.is_connected,
            details={
                "transport": self.transport.stats,
                "ingestion": self.ingestion.metrics,
                "dead_letter": self.dlq.stats,
                "commands": self.dispatcher.stats,
                "registration": self.registrar.stats,
                "database": self._health.check_database(),
                "redis": self._health.check_redis(),
            },
        )


# ----------------------------------------------------------------------
# Construcción
# ----------------------------------------------------------------------


def create_redis_client(settings: Settings) -> Optional["redis.Redis"]:
    if not settings.redis_enabled:
        logger.info("[SERVICE] Redis disabled by REDIS_ENABLED=false")
        return None
    return redis.Redis.from_url(
        settings.redis_url,
        decode_responses=False,
        socket_timeout=5.0,
        socket_connect_timeout=5.0,
    )


def _validate_settings(settings: Settings) -> None:
    if not 0 < settings.mqtt_port < 65536:
        raise ConfigurationError(f"MQTT_BROKER_PORT out of range: {settings.mqtt_port}")
    if not settings.mqtt_host:
        raise ConfigurationError("MQTT_BROKER_HOST is empty")
    if settings.mqtt_keepalive <= 0:
        raise ConfigurationError(f"MQTT_KEEPALIVE must be > 0: {settings.mqtt_keepalive}")


def build_service(
    settings: Optional[Settings] = None,
    memory: bool = False,
    engine: Optional[Engine] = None,
    redis_client: Optional["redis.Redis"] = None,
    transport: Optional[BrokerTransport] = None,
    notifier: Optional[IAlertNotifier] = None,
) -> MonitorService:
    """Construye el servicio completo.

    Con ``memory=True`` usa repositorios en memoria y no abre BD ni Redis.
    """
    settings = settings or get_settings()
    _validate_settings(settings)

    if memory:
        devices: IDeviceRepository = InMemoryDeviceRepository()
        readings: IReadingRepository = InMemoryReadingRepository()
        alerts: IAlertRepository = InMemoryAlertRepository()
        engine = None
        redis_client = None
    else:
        engine = engine or get_engine(settings)
        ensure_schema(engine)
        devices = SqlDeviceRepository(engine)
        readings = SqlReadingRepository(engine)
        alerts = SqlAlertRepository(engine)
        if redis_client is None:
            redis_client = create_redis_client(settings)

    transport = transport or BrokerTransport(
        broker_host=settings.mqtt_host,
        broker_port=settings.mqtt_port,
        username=settings.mqtt_username,
        password=settings.mqtt_password,
        client_id=settings.mqtt_client_id,
        keepalive=settings.mqtt_keepalive,
        tls=settings.mqtt_tls,
    )

    if notifier is None:
        notifier = RedisStreamNotifier(redis_client) if redis_client is not None else LoggingNotifier()

    command_config = CommandQueueConfig.from_env()
    dispatcher = CommandDispatcher(
        transport,
        create_pending_store(redis_client, command_config.ttl_seconds),
        command_config,
    )

    gate = RegistrationGate()
    registrar = DeviceRegistrar(
        devices,
        transport,
        gate,
        RegistrationConfig.from_env(),
        purgers=[readings.delete_for_device, alerts.delete_for_device],
        dispatcher=dispatcher,
    )
    evaluator = AlertEvaluator(alerts, notifier, AlertConfig.from_env())
    processor = SensorDataProcessor(registrar, devices, readings, evaluator)

    dlq = DeadLetterQueue(redis_client)
    ingestion_config = IngestionConfig.from_env()
    ingestion_config.async_enabled = settings.ingest_async_enabled
    ingestion = create_ingestion_queue(processor, dlq, ingestion_config)

    coordinator = PresenceQueryCoordinator(transport, server_id=transport.client_id)
    poller = PresencePoller(transport, coordinator, devices, gate, PresenceConfig.from_env())

    return MonitorService(
        transport=transport,
        devices=devices,
        readings=readings,
        alerts=alerts,
        registrar=registrar,
        ingestion=ingestion,
        dispatcher=dispatcher,
        coordinator=coordinator,
        poller=poller,
        dlq=dlq,
        health_checker=HealthChecker(engine, redis_client),
    )
