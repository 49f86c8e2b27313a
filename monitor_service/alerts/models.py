"""Modelos de alerta."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from enum import Enum


class AlertSeverity(str, Enum):
    WARNING = "Warning"
    CRITICAL = "Critical"

    @property
    def rank(self) -> int:
        return 2 if self is AlertSeverity.CRITICAL else 1


class AlertStatus(str, Enum):
    UNACKNOWLEDGED = "Unacknowledged"
    ACKNOWLEDGED = "Acknowledged"
    RESOLVED = "Resolved"


@dataclass
class Alert:
    device_id: str
    parameter: str
    severity: AlertSeverity
    value: float
    threshold: float
    message: str
    first_occurrence: float
    last_occurrence: float
    current_value: float
    status: AlertStatus = AlertStatus.UNACKNOWLEDGED
    occurrence_count: int = 1
    alert_id: str = field(default_factory=lambda: str(uuid.uuid4()))
