"""Validación de payloads de datos de sensores.

Formato esperado en ``devices/{id}/data``:
{
    "pH": 7.2,
    "turbidity": 1.4,
    "tds": 320,
    "timestamp": 1767225600          # opcional: epoch s/ms o ISO-8601
}
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from ..errors import PayloadValidationError

logger = logging.getLogger(__name__)

# Timestamps de dispositivo anteriores a esta fecha indican reloj sin sincronizar
SANITY_EPOCH = datetime(2020, 1, 1, tzinfo=timezone.utc).timestamp()
MAX_FUTURE_SKEW_SECONDS = 86400.0

PH_RANGE = (0.0, 14.0)


def _check_finite(value: Optional[float], name: str) -> Optional[float]:
    if value is None:
        return None
    if math.isnan(value):
        raise ValueError(f"{name} is NaN")
    if math.isinf(value):
        raise ValueError(f"{name} is infinite")
    return value


class SensorDataPayload(BaseModel):
    """Schema de validación de una lectura de sensores."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    ph: Optional[float] = Field(default=None, alias="pH")
    turbidity: Optional[float] = None
    tds: Optional[float] = None
    timestamp: Any = None

    @field_validator("ph")
    @classmethod
    def validate_ph(cls, v):
        v = _check_finite(v, "pH")
        if v is not None and not (PH_RANGE[0] <= v <= PH_RANGE[1]):
            raise ValueError(f"pH {v} outside {PH_RANGE[0]}-{PH_RANGE[1]}")
        return v

    @field_validator("turbidity", "tds")
    @classmethod
    def validate_non_negative(cls, v, info):
        v = _check_finite(v, info.field_name)
        if v is not None and v < 0:
            raise ValueError(f"{info.field_name} must be >= 0")
        return v

    @model_validator(mode="after")
    def require_one_parameter(self):
        if self.ph is None and self.turbidity is None and self.tds is None:
            raise ValueError("payload has no pH, turbidity or tds value")
        return self


def parse_payload(device_id: str, data: dict) -> SensorDataPayload:
    """Valida el payload.

    Raises:
        PayloadValidationError: si falta algún valor o está fuera de rango.
    """
    try:
        return SensorDataPayload.model_validate(data)
    except ValidationError as e:
        errors = "; ".join(err.get("msg", "") for err in e.errors())
        raise PayloadValidationError(f"invalid sensor payload: {errors}", device_id=device_id) from e


def _parse_raw_timestamp(raw: Any) -> Optional[float]:
    if isinstance(raw, bool):
        return None
    if isinstance(raw, (int, float)):
        value = float(raw)
        if not math.isfinite(value):
            return None
        # Heurística: valores > 1e11 están en milisegundos
        return value / 1000.0 if value > 1e11 else value
    if isinstance(raw, str) and raw.strip():
        try:
            dt = datetime.fromisoformat(raw.strip().replace("Z", "+00:00"))
        except ValueError:
            return None
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return dt.timestamp()
    return None


@dataclass
class TimestampResult:
    timestamp: float
    from_device: bool
    reason: Optional[str] = None


def resolve_timestamp(raw: Any, now: float) -> TimestampResult:
    """Elige el timestamp de la lectura.

    Usa el del dispositivo salvo que falte, no se pueda parsear, sea anterior
    a SANITY_EPOCH o esté más de un día en el futuro; en ese caso usa la hora
    del servidor e informa el motivo.
    """
    if raw is None:
        return TimestampResult(now, from_device=False)

    parsed = _parse_raw_timestamp(raw)
    if parsed is None:
        return TimestampResult(now, from_device=False, reason="unparseable")
    if parsed < SANITY_EPOCH:
        return TimestampResult(now, from_device=False, reason="before_sanity_epoch")
    if parsed > now + MAX_FUTURE_SKEW_SECONDS:
        return TimestampResult(now, from_device=False, reason="too_far_in_future")
    return TimestampResult(parsed, from_device=True)

