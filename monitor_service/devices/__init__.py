from .gate import RegistrationGate
from .models import Device, DeviceMetadata, DeviceStatus, RegistrationStatus
from .registration import DeviceRegistrar, RegistrationConfig
from .repository import IDeviceRepository, InMemoryDeviceRepository, SqlDeviceRepository

__all__ = [
    "Device",
    "DeviceMetadata",
    "DeviceRegistrar",
    "DeviceStatus",
    "IDeviceRepository",
    "InMemoryDeviceRepository",
    "RegistrationConfig",
    "RegistrationGate",
    "RegistrationStatus",
    "SqlDeviceRepository",
]
