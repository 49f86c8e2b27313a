"""Procesamiento de un job de ingesta.

Pasos, en orden:
1. Verificar registro contra el repositorio
2. Validar payload y timestamp (timestamps inválidos -> hora del servidor)
3. Marcar el dispositivo online con ``last_seen``
4. Persistir la lectura
5. Evaluar alertas

En un reintento los pasos 3-4 no se repiten si la lectura ya quedó guardada.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Set

from ..alerts.evaluator import AlertEvaluator, AlertOutcome
from ..devices.registration import DeviceRegistrar
from ..devices.repository import IDeviceRepository
from ..metrics import INGEST_LATENCY
from .readings import IReadingRepository, SensorReading
from .validators import parse_payload, resolve_timestamp

logger = logging.getLogger(__name__)


@dataclass
class IngestionJob:
    device_id: str
    payload: dict
    enqueued_at: float = field(default_factory=time.time)
    attempts: int = 0
    # Estado entre reintentos: la lectura se persiste una sola vez y los
    # parámetros ya evaluados no vuelven a contar ocurrencias
    reading: Optional[SensorReading] = None
    evaluated: Set[str] = field(default_factory=set)


@dataclass
class ProcessResult:
    reading: SensorReading
    alerts: List[AlertOutcome]


class SensorDataProcessor:
    def __init__(
        self,
        registrar: DeviceRegistrar,
        devices: IDeviceRepository,
        readings: IReadingRepository,
        evaluator: AlertEvaluator,
        clock: Callable[[], float] = time.time,
    ):
        self._registrar = registrar
        self._devices = devices
        self._readings = readings
        self._evaluator = evaluator
        self._clock = clock

    def process(self, job: IngestionJob) -> ProcessResult:
        """Procesa un job.

        Raises:
            RegistrationRejected: dispositivo no aprobado (no se reintenta)
            PayloadValidationError: payload inválido (no se reintenta)
            PersistenceError: fallo del repositorio (se reintenta)
        """
        start = time.perf_counter()
        device_id = job.device_id

        self._registrar.require_registered(device_id)
        payload = parse_payload(device_id, job.payload)

        now = self._clock()
        ts = resolve_timestamp(payload.timestamp, now)
        if ts.reason:
            logger.warning(
                "[INGEST] Invalid device timestamp, using server time device=%s reason=%s raw=%s",
                device_id, ts.reason, payload.timestamp,
            )

        reading = job.reading
        if reading is None:
            self._devices.mark_seen(device_id, now)
            reading = SensorReading(
                device_id=device_id,
                ph=payload.ph,
                turbidity=payload.turbidity,
                tds=payload.tds,
                timestamp=ts.timestamp,
                received_at=now,
            )
            self._readings.insert(reading)
            job.reading = reading
        else:
            logger.debug(
                "[INGEST] Retry reuses stored reading device=%s reading_id=%s", device_id, reading.reading_id,
            )

        alerts = self._evaluator.evaluate(reading, skip=job.evaluated)

        INGEST_LATENCY.observe(time.perf_counter() - start)
        logger.debug(
            "[INGEST] Reading stored device=%s reading_id=%s alerts=%d",
            device_id, reading.reading_id, len(alerts),
        )
        return ProcessResult(reading=reading, alerts=alerts)
