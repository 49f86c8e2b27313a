"""Modelos de dispositivo."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional


class DeviceStatus(str, Enum):
    ONLINE = "online"
    OFFLINE = "offline"


class RegistrationStatus(str, Enum):
    PENDING = "pending"
    REGISTERED = "registered"


@dataclass
class DeviceMetadata:
    """Datos que el dispositivo anuncia al registrarse."""
    name: Optional[str] = None
    firmware_version: Optional[str] = None
    mac_address: Optional[str] = None
    ip_address: Optional[str] = None
    sensors: List[str] = field(default_factory=list)

    @classmethod
    def from_payload(cls, payload: dict) -> "DeviceMetadata":
        sensors = payload.get("sensors") or []
        if not isinstance(sensors, list):
            sensors = []
        return cls(
            name=payload.get("name"),
            firmware_version=payload.get("firmwareVersion") or payload.get("firmware"),
            mac_address=payload.get("macAddress") or payload.get("mac"),
            ip_address=payload.get("ipAddress") or payload.get("ip"),
            sensors=[str(s) for s in sensors],
        )


@dataclass
class Device:
    device_id: str
    status: DeviceStatus = DeviceStatus.OFFLINE
    registration_status: RegistrationStatus = RegistrationStatus.PENDING
    is_registered: bool = False
    last_seen: Optional[float] = None
    metadata: DeviceMetadata = field(default_factory=DeviceMetadata)
    created_at: float = 0.0
    updated_at: float = 0.0

    @property
    def is_pending(self) -> bool:
        return self.registration_status == RegistrationStatus.PENDING
