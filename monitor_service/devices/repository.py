"""Repositorio de dispositivos.

Implementaciones:
- SqlDeviceRepository: SQL plano con SQLAlchemy ``text()``
- InMemoryDeviceRepository: diccionario protegido por lock (tests y modo --memory)
"""

from __future__ import annotations

import json
import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import replace
from typing import Dict, Iterable, List, Optional

from sqlalchemy import bindparam, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from ..errors import PersistenceError
from .models import Device, DeviceMetadata, DeviceStatus, RegistrationStatus

logger = logging.getLogger(__name__)


class IDeviceRepository(ABC):
    """Interfaz de persistencia de dispositivos."""

    @abstractmethod
    def get(self, device_id: str) -> Optional[Device]:
        pass

    @abstractmethod
    def create_pending(self, device_id: str, metadata: DeviceMetadata, now: float) -> Device:
        """Crea un dispositivo en ``pending`` visto ahora."""
        pass

    @abstractmethod
    def mark_seen(self, device_id: str, now: float, metadata: Optional[DeviceMetadata] = None) -> None:
        """Actualiza ``last_seen``, pasa a ``online`` y opcionalmente refresca metadata."""
        pass

    @abstractmethod
    def set_registration(self, device_id: str, registered: bool, now: float) -> bool:
        """Cambia el estado de registro. False si el dispositivo no existe."""
        pass

    @abstractmethod
    def list_registered_ids(self) -> List[str]:
        pass

    @abstractmethod
    def get_statuses(self, device_ids: Iterable[str]) -> Dict[str, DeviceStatus]:
        pass

    @abstractmethod
    def mark_offline(self, device_ids: Iterable[str], now: float) -> int:
        """Pasa a ``offline`` todos los ids en una sola escritura."""
        pass

    @abstractmethod
    def delete(self, device_id: str) -> bool:
        pass


# ----------------------------------------------------------------------
# In-memory
# ----------------------------------------------------------------------


class InMemoryDeviceRepository(IDeviceRepository):
    def __init__(self):
        self._devices: Dict[str, Device] = {}
        self._lock = threading.Lock()
        self.batch_updates = 0

    def get(self, device_id: str) -> Optional[Device]:
        with self._lock:
            device = self._devices.get(device_id)
            return replace(device) if device else None

    def create_pending(self, device_id: str, metadata: DeviceMetadata, now: float) -> Device:
        with self._lock:
            existing = self._devices.get(device_id)
            if existing is not None:
                return replace(existing)
            device = Device(
                device_id=device_id,
                status=DeviceStatus.ONLINE,
                registration_status=RegistrationStatus.PENDING,
                is_registered=False,
                last_seen=now,
                metadata=metadata,
                created_at=now,
                updated_at=now,
            )
            self._devices[device_id] = device
            return replace(device)

    def mark_seen(self, device_id: str, now: float, metadata: Optional[DeviceMetadata] = None) -> None:
        with self._lock:
            device = self._devices.get(device_id)
            if device is None:
                return
            device.last_seen = now
            device.status = DeviceStatus.ONLINE
            device.updated_at = now
            if metadata is not None:
                device.metadata = metadata

    def set_registration(self, device_id: str, registered: bool, now: float) -> bool:
        with self._lock:
            device = self._devices.get(device_id)
            if device is None:
                return False
            device.is_registered = registered
            device.registration_status = (
                RegistrationStatus.REGISTERED if registered else RegistrationStatus.PENDING
            )
            device.updated_at = now
            return True

    def list_registered_ids(self) -> List[str]:
        with self._lock:
            return sorted(d.device_id for d in self._devices.values() if d.is_registered)

    def get_statuses(self, device_ids: Iterable[str]) -> Dict[str, DeviceStatus]:
        with self._lock:
            return {
                device_id: self._devices[device_id].status
                for device_id in device_ids
                if device_id in self._devices
            }

    def mark_offline(self, device_ids: Iterable[str], now: float) -> int:
        ids = list(device_ids)
        if not ids:
            return 0
        with self._lock:
            self.batch_updates += 1
            count = 0
            for device_id in ids:
                device = self._devices.get(device_id)
                if device is not None:
                    device.status = DeviceStatus.OFFLINE
                    device.updated_at = now
                    count += 1
            return count

    def delete(self, device_id: str) -> bool:
        with self._lock:
            return self._devices.pop(device_id, None) is not None


# ----------------------------------------------------------------------
# SQL
# ----------------------------------------------------------------------


def _row_to_device(row) -> Device:
    sensors = json.loads(row["sensors"]) if row["sensors"] else []
    return Device(
        device_id=row["device_id"],
        status=DeviceStatus(row["status"]),
        registration_status=RegistrationStatus(row["registration_status"]),
        is_registered=bool(row["is_registered"]),
        last_seen=row["last_seen"],
        metadata=DeviceMetadata(
            name=row["name"],
            firmware_version=row["firmware_version"],
            mac_address=row["mac_address"],
            ip_address=row["ip_address"],
            sensors=sensors,
        ),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _metadata_params(metadata: DeviceMetadata) -> dict:
    return {
        "name": metadata.name,
        "firmware_version": metadata.firmware_version,
        "mac_address": metadata.mac_address,
        "ip_address": metadata.ip_address,
        "sensors": json.dumps(metadata.sensors),
    }


class SqlDeviceRepository(IDeviceRepository):
    def __init__(self, engine: Engine):
        self._engine = engine

    def get(self, device_id: str) -> Optional[Device]:
        try:
            with self._engine.connect() as conn:
                row = conn.execute(
                    text("SELECT * FROM devices WHERE device_id = :device_id"),
                    {"device_id": device_id},
                ).mappings().first()
        except SQLAlchemyError as e:
            raise PersistenceError(f"get device failed: {e}", device_id=device_id) from e
        return _row_to_device(row) if row else None

    def create_pending(self, device_id: str, metadata: DeviceMetadata, now: float) -> Device:
        try:
            with self._engine.begin() as conn:
                exists = conn.execute(
                    text("SELECT 1 FROM devices WHERE device_id = :device_id"),
                    {"device_id": device_id},
                ).first()
                if not exists:
                    conn.execute(
                        text(
                            """
                            INSERT INTO devices (
                                device_id, name, status, registration_status, is_registered,
                                last_seen, firmware_version, mac_address, ip_address, sensors,
                                created_at, updated_at
                            )
                            VALUES (
                                :device_id, :name, 'online', 'pending', 0,
                                :now, :firmware_version, :mac_address, :ip_address, :sensors,
                                :now, :now
                            )
                            """
                        ),
                        {"device_id": device_id, "now": now, **_metadata_params(metadata)},
                    )
        except SQLAlchemyError as e:
            raise PersistenceError(f"create device failed: {e}", device_id=device_id) from e
        return self.get(device_id)

    def mark_seen(self, device_id: str, now: float, metadata: Optional[DeviceMetadata] = None) -> None:
        if metadata is None:
            sql = """
                UPDATE devices
                SET last_seen = :now, status = 'online', updated_at = :now
                WHERE device_id = :device_id
            """
            params = {"device_id": device_id, "now": now}
        else:
            sql = """
                UPDATE devices
                SET last_seen = :now, status = 'online', updated_at = :now,
                    name = COALESCE(:name, name),
                    firmware_version = COALESCE(:firmware_version, firmware_version),
                    mac_address = COALESCE(:mac_address, mac_address),
                    ip_address = COALESCE(:ip_address, ip_address),
                    sensors = :sensors
                WHERE device_id = :device_id
            """
            params = {"device_id": device_id, "now": now, **_metadata_params(metadata)}
        try:
            with self._engine.begin() as conn:
                conn.execute(text(sql), params)
        except SQLAlchemyError as e:
            raise PersistenceError(f"mark seen failed: {e}", device_id=device_id) from e

    def set_registration(self, device_id: str, registered: bool, now: float) -> bool:
        status = RegistrationStatus.REGISTERED if registered else RegistrationStatus.PENDING
        try:
            with self._engine.begin() as conn:
                result = conn.execute(
                    text(
                        """
                        UPDATE devices
                        SET is_registered = :is_registered,
                            registration_status = :registration_status,
                            updated_at = :now
                        WHERE device_id = :device_id
                        """
                    ),
                    {
                        "device_id": device_id,
                        "is_registered": 1 if registered else 0,
                        "registration_status": status.value,
                        "now": now,
                    },
                )
        except SQLAlchemyError as e:
            raise PersistenceError(f"set registration failed: {e}", device_id=device_id) from e
        return result.rowcount > 0

    def list_registered_ids(self) -> List[str]:
        try:
            with self._engine.connect() as conn:
                rows = conn.execute(
                    text("SELECT device_id FROM devices WHERE is_registered = 1 ORDER BY device_id")
                ).fetchall()
        except SQLAlchemyError as e:
            raise PersistenceError(f"list registered failed: {e}") from e
        return [row[0] for row in rows]

    def get_statuses(self, device_ids: Iterable[str]) -> Dict[str, DeviceStatus]:
        ids = list(device_ids)
        if not ids:
            return {}
        stmt = text(
            "SELECT device_id, status FROM devices WHERE device_id IN :ids"
        ).bindparams(bindparam("ids", expanding=True))
        try:
            with self._engine.connect() as conn:
                rows = conn.execute(stmt, {"ids": ids}).fetchall()
        except SQLAlchemyError as e:
            raise PersistenceError(f"get statuses failed: {e}") from e
        return {row[0]: DeviceStatus(row[1]) for row in rows}

    def mark_offline(self, device_ids: Iterable[str], now: float) -> int:
        ids = list(device_ids)
        if not ids:
            return 0
        stmt = text(
            """
            UPDATE devices
            SET status = 'offline', updated_at = :now
            WHERE device_id IN :ids
            """
        ).bindparams(bindparam("ids", expanding=True))
        try:
            with self._engine.begin() as conn:
                result = conn.execute(stmt, {"ids": ids, "now": now})
        except SQLAlchemyError as e:
            raise PersistenceError(f"mark offline failed: {e}") from e
        return result.rowcount

    def delete(self, device_id: str) -> bool:
        try:
            with self._engine.begin() as conn:
                result = conn.execute(
                    text("DELETE FROM devices WHERE device_id = :device_id"),
                    {"device_id": device_id},
                )
        except SQLAlchemyError as e:
            raise PersistenceError(f"delete device failed: {e}", device_id=device_id) from e
        return result.rowcount > 0
