"""Umbrales de calidad de agua (guías WHO/EPA).

- pH: warning fuera de [6.5, 8.5], critical fuera de [6.0, 9.0]
- Turbidez: warning > 5 NTU, critical > 10 NTU
- TDS: warning > 500 ppm, critical > 1000 ppm
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from .models import AlertSeverity


@dataclass(frozen=True)
class Band:
    """Banda de un parámetro. ``None`` significa sin límite en ese lado."""
    parameter: str
    warning_min: Optional[float]
    warning_max: Optional[float]
    critical_min: Optional[float]
    critical_max: Optional[float]
    unit: str = ""


@dataclass(frozen=True)
class Breach:
    parameter: str
    severity: AlertSeverity
    value: float
    threshold: float

    @property
    def direction(self) -> str:
        return "above" if self.value > self.threshold else "below"

    @property
    def message(self) -> str:
        return (
            f"{self.severity.value} Alert: {self.parameter} level {self.direction} threshold. "
            f"Current: {self.value:.2f}, Threshold: {self.threshold:.2f}"
        )


# Clave: nombre del campo en SensorReading.values()
WATER_QUALITY_BANDS = {
    "pH": Band("pH", warning_min=6.5, warning_max=8.5, critical_min=6.0, critical_max=9.0),
    "turbidity": Band("Turbidity", None, 5.0, None, 10.0, unit="NTU"),
    "tds": Band("TDS", None, 500.0, None, 1000.0, unit="ppm"),
}


def check_value(key: str, value: float, bands: dict = WATER_QUALITY_BANDS) -> Optional[Breach]:
    """Devuelve la violación más severa del valor, o None si está en rango."""
    band = bands.get(key)
    if band is None:
        return None

    if band.critical_min is not None and value < band.critical_min:
        return Breach(band.parameter, AlertSeverity.CRITICAL, value, band.critical_min)
    if band.critical_max is not None and value > band.critical_max:
        return Breach(band.parameter, AlertSeverity.CRITICAL, value, band.critical_max)
    if band.warning_min is not None and value < band.warning_min:
        return Breach(band.parameter, AlertSeverity.WARNING, value, band.warning_min)
    if band.warning_max is not None and value > band.warning_max:
        return Breach(band.parameter, AlertSeverity.WARNING, value, band.warning_max)
    return None
