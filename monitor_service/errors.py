"""Jerarquía de errores del monitor.

Cada error lleva un ``ErrorKind`` para que los workers y los logs puedan
clasificar el fallo sin inspeccionar el tipo concreto.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    """Categorías de error."""
    TRANSPORT = "transport"
    REGISTRATION = "registration"
    VALIDATION = "validation"
    QUEUE = "queue"
    PERSISTENCE = "persistence"
    CONFIGURATION = "configuration"


class MonitorError(Exception):
    """Base de todos los errores del monitor."""

    kind: ErrorKind = ErrorKind.TRANSPORT
    retryable: bool = False

    def __init__(self, message: str, device_id: Optional[str] = None):
        self.device_id = device_id
        super().__init__(message)


class BrokerConnectionError(MonitorError):
    """Fallo de la conexión inicial al broker. Fatal en el arranque."""
    kind = ErrorKind.TRANSPORT


class RegistrationRejected(MonitorError):
    """Datos de un dispositivo que no está aprobado."""

    kind = ErrorKind.REGISTRATION

    NOT_REGISTERED = "DEVICE_NOT_REGISTERED"
    NOT_APPROVED = "DEVICE_NOT_APPROVED"

    def __init__(self, device_id: str, code: str):
        self.code = code
        super().__init__(f"{code}: device {device_id}", device_id=device_id)


class PayloadValidationError(MonitorError):
    kind = ErrorKind.VALIDATION


class QueueUnavailableError(MonitorError):
    kind = ErrorKind.QUEUE
    retryable = True


class PersistenceError(MonitorError):
    """Fallo del repositorio. Se reintenta dentro del job."""
    kind = ErrorKind.PERSISTENCE
    retryable = True


class ConfigurationError(MonitorError):
    kind = ErrorKind.CONFIGURATION
