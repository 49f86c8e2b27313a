"""Lecturas de sensores y su repositorio."""

from __future__ import annotations

import threading
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from sqlalchemy import text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from ..errors import PersistenceError

PARAMETERS = ("pH", "turbidity", "tds")


@dataclass(frozen=True)
class SensorReading:
    """Lectura inmutable de un dispositivo."""
    device_id: str
    ph: Optional[float]
    turbidity: Optional[float]
    tds: Optional[float]
    timestamp: float
    received_at: float
    reading_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def values(self) -> Dict[str, float]:
        """Parámetros presentes en la lectura, con su nombre de alerta."""
        raw = {"pH": self.ph, "turbidity": self.turbidity, "tds": self.tds}
        return {name: value for name, value in raw.items() if value is not None}


class IReadingRepository(ABC):
    @abstractmethod
    def insert(self, reading: SensorReading) -> None:
        pass

    @abstractmethod
    def list_for_device(self, device_id: str) -> List[SensorReading]:
        pass

    @abstractmethod
    def delete_for_device(self, device_id: str) -> int:
        pass


class InMemoryReadingRepository(IReadingRepository):
    def __init__(self):
        self._readings: List[SensorReading] = []
        self._lock = threading.Lock()

    def insert(self, reading: SensorReading) -> None:
        with self._lock:
            self._readings.append(reading)

    def list_for_device(self, device_id: str) -> List[SensorReading]:
        with self._lock:
            return [r for r in self._readings if r.device_id == device_id]

    def delete_for_device(self, device_id: str) -> int:
        with self._lock:
            before = len(self._readings)
            self._readings = [r for r in self._readings if r.device_id != device_id]
            return before - len(self._readings)

    def __len__(self) -> int:
        with self._lock:
            return len(self._readings)


class SqlReadingRepository(IReadingRepository):
    def __init__(self, engine: Engine):
        self._engine = engine

    def insert(self, reading: SensorReading) -> None:
        try:
            with self._engine.begin() as conn:
                conn.execute(
                    text(
                        """
                        INSERT INTO sensor_readings (
                            reading_id, device_id, ph, turbidity, tds, timestamp, received_at
                        )
                        VALUES (:reading_id, :device_id, :ph, :turbidity, :tds, :timestamp, :received_at)
                        """
                    ),
                    {
                        "reading_id": reading.reading_id,
                        "device_id": reading.device_id,
                        "ph": reading.ph,
                        "turbidity": reading.turbidity,
                        "tds": reading.tds,
                        "timestamp": reading.timestamp,
                        "received_at": reading.received_at,
                    },
                )
        except SQLAlchemyError as e:
            raise PersistenceError(f"insert reading failed: {e}", device_id=reading.device_id) from e

    def list_for_device(self, device_id: str) -> List[SensorReading]:
        try:
            with self._engine.connect() as conn:
                rows = conn.execute(
                    text(
                        """
                        SELECT reading_id, device_id, ph, turbidity, tds, timestamp, received_at
                        FROM sensor_readings
                        WHERE device_id = :device_id
                        ORDER BY timestamp
                        """
                    ),
                    {"device_id": device_id},
                ).mappings().all()
        except SQLAlchemyError as e:
            raise PersistenceError(f"list readings failed: {e}", device_id=device_id) from e
        return [SensorReading(**dict(row)) for row in rows]

    def delete_for_device(self, device_id: str) -> int:
        try:
            with self._engine.begin() as conn:
                result = conn.execute(
                    text("DELETE FROM sensor_readings WHERE device_id = :device_id"),
                    {"device_id": device_id},
                )
        except SQLAlchemyError as e:
            raise PersistenceError(f"delete readings failed: {e}", device_id=device_id) from e
        return result.rowcount
