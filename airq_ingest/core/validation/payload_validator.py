"""Validación de la lectura canónica.

Nunca lanza excepciones por datos malos: retorna ValidationResult.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from ...errors import RejectReason
from ..clock import ensure_utc, utc_now
from ..domain.reading import CHANNEL_FIELDS, ENVIRONMENTAL_FIELDS, TelemetryReading

DEFAULT_MAX_FUTURE_SKEW = timedelta(minutes=5)


@dataclass(frozen=True)
class ValidationResult:
    """Resultado de validación."""
    valid: bool
    reason: Optional[str] = None
    field: Optional[str] = None
    detail: str = ""

    @classmethod
    def ok(cls) -> "ValidationResult":
        return cls(valid=True)

    @classmethod
    def fail(cls, reason: str, field: Optional[str] = None, detail: str = "") -> "ValidationResult":
        return cls(valid=False, reason=reason, field=field, detail=detail)


def validate_reading(
    reading: TelemetryReading,
    *,
    now: Optional[datetime] = None,
    max_future_skew: timedelta = DEFAULT_MAX_FUTURE_SKEW,
) -> ValidationResult:
    """Valida rangos y reloj de una lectura ya transformada.

    - Canales de partículas/gases: presentes, finitos y >= 0
    - Ambientales: opcionales, finitos si vienen
    - observed_at no más allá de ``max_future_skew`` en el futuro
    """
    if not reading.sensor_id:
        return ValidationResult.fail(RejectReason.MISSING_FIELD, "sensor_id")
    if reading.observed_at is None:
        return ValidationResult.fail(RejectReason.MISSING_FIELD, "observed_at")

    for name in CHANNEL_FIELDS:
        value = getattr(reading, name)
        if value is None:
            return ValidationResult.fail(RejectReason.MISSING_FIELD, name)
        if not math.isfinite(value) or value < 0:
            return ValidationResult.fail(RejectReason.OUT_OF_RANGE, name, f"value={value}")

    for name in ENVIRONMENTAL_FIELDS:
        value = getattr(reading, name)
        if value is not None and not math.isfinite(value):
            return ValidationResult.fail(RejectReason.OUT_OF_RANGE, name, f"value={value}")

    now = ensure_utc(now) if now is not None else utc_now()
    if reading.observed_at - now > max_future_skew:
        return ValidationResult.fail(
            RejectReason.INVALID_TIMESTAMP,
            "observed_at",
            f"{(reading.observed_at - now).total_seconds():.0f}s in the future",
        )

    return ValidationResult.ok()
