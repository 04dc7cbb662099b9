"""Transformación del payload del dispositivo al esquema canónico.

El firmware publica JSON compacto con claves abreviadas::

    {"ts": 1717430400, "PM1": 3, "PM25": 7.5, "PM10": 11,
     "O3": 0.41, "O3c": 12.0, "NO2v": 0.32, "NO2": 18,
     "VOCv": 0.9, "COv": 0.4, "CO": 210, "temp": 21.3, "hum": 48, "pres": 1012}

Reglas:
- El sensorId viene del topic/ruta, nunca del payload.
- Números o strings numéricos → float. Booleanos → malformed_field.
- Canales de gas ausentes o vacíos → 0.0; ambientales → None.
- ``ts`` pequeño es un contador relativo (uptime del firmware) y se
  sustituye por el reloj de ingesta; epoch en segundos o milisegundos
  se distinguen por magnitud.

Es puro: sin I/O. Lo usan el listener MQTT y el webhook por igual.
"""

from __future__ import annotations

import json
import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Mapping, Optional, Tuple, Union

from ...errors import RejectReason
from ..clock import ensure_utc
from ..domain.reading import TelemetryReading


# (clave del dispositivo, campo canónico)
PARTICULATE_FIELD_MAP: Tuple[Tuple[str, str], ...] = (
    ("PM1", "pm1_0"),
    ("PM25", "pm2_5"),
    ("PM10", "pm10"),
)

GAS_FIELD_MAP: Tuple[Tuple[str, str], ...] = (
    ("O3", "o3_raw"),
    ("O3c", "o3_corrige"),
    ("NO2v", "no2_voltage_v"),
    ("NO2", "no2_ppb"),
    ("VOCv", "voc_voltage_v"),
    ("COv", "co_voltage_v"),
    ("CO", "co_ppb"),
)

ENVIRONMENTAL_FIELD_MAP: Tuple[Tuple[str, str], ...] = (
    ("temp", "temperature"),
    ("hum", "humidity"),
    ("pres", "pressure"),
)

TIMESTAMP_KEY = "ts"
REQUIRED_DEVICE_KEYS = (TIMESTAMP_KEY,) + tuple(key for key, _ in PARTICULATE_FIELD_MAP)

# Por debajo: contador relativo (segundos desde arranque del firmware).
# Entre 1e9 y 1e10 se acepta como epoch en segundos (umbrales de ts en DESIGN.md).
RELATIVE_TS_CEILING = 1e9
# Desde aquí: epoch en milisegundos
MILLISECONDS_THRESHOLD = 1e10
# Milisegundos por debajo de esto (antes de 2001-09-09) son contadores en ms
MIN_PLAUSIBLE_EPOCH_MS = 1e12


@dataclass(frozen=True)
class TransformFailure:
    reason: str
    field: Optional[str] = None
    detail: str = ""


TransformResult = Union[TelemetryReading, TransformFailure]


class _Malformed(ValueError):
    pass


def _coerce_number(value: Any, *, empty: Optional[float]) -> Optional[float]:
    if value is None:
        return empty
    if isinstance(value, bool):
        raise _Malformed("boolean is not a measurement")
    if isinstance(value, (int, float)):
        try:
            return float(value)
        except OverflowError:
            raise _Malformed("integer too large for a float") from None
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return empty
        try:
            return float(text)
        except ValueError:
            raise _Malformed(f"not numeric: {value!r}") from None
    raise _Malformed(f"unsupported type {type(value).__name__}")


def resolve_observed_at(value: Any, *, received_at: datetime) -> Union[datetime, TransformFailure]:
    """Convierte ``ts`` del dispositivo en un instante absoluto UTC.

    Args:
        value: ts tal como llegó (número, string numérico o ISO-8601)
        received_at: reloj de ingesta, usado cuando ts es un contador

    Returns:
        datetime UTC o TransformFailure(invalid_timestamp)
    """
    failure = TransformFailure(RejectReason.INVALID_TIMESTAMP, TIMESTAMP_KEY)

    if value is None or isinstance(value, bool):
        return failure

    number: Optional[float] = None
    if isinstance(value, (int, float)):
        try:
            number = float(value)
        except OverflowError:
            return TransformFailure(RejectReason.INVALID_TIMESTAMP, TIMESTAMP_KEY, "integer too large for a float")
    elif isinstance(value, str):
        text = value.strip()
        try:
            number = float(text)
        except ValueError:
            try:
                parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
            except ValueError:
                return TransformFailure(RejectReason.INVALID_TIMESTAMP, TIMESTAMP_KEY, f"unparseable: {value!r}")
            return ensure_utc(parsed)
    else:
        return failure

    if not math.isfinite(number) or number < 0:
        return failure

    if number < RELATIVE_TS_CEILING:
        return ensure_utc(received_at)

    if number < MILLISECONDS_THRESHOLD:
        seconds = number
    elif number < MIN_PLAUSIBLE_EPOCH_MS:
        return ensure_utc(received_at)
    else:
        seconds = number / 1000.0

    try:
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return TransformFailure(RejectReason.INVALID_TIMESTAMP, TIMESTAMP_KEY, "out of calendar range")


def transform_device_payload(
    raw: Mapping[str, Any],
    sensor_id: str,
    *,
    received_at: datetime,
    raw_payload: Optional[str] = None,
) -> TransformResult:
    """Transforma el JSON del dispositivo en una TelemetryReading.

    Args:
        raw: objeto JSON ya parseado
        sensor_id: extraído del topic (no del payload)
        received_at: instante de ingesta
        raw_payload: texto original; si falta se re-serializa ``raw``

    Returns:
        TelemetryReading o TransformFailure
    """
    if not isinstance(raw, Mapping):
        return TransformFailure(RejectReason.INVALID_PAYLOAD, None, "payload is not a JSON object")

    for key in REQUIRED_DEVICE_KEYS:
        if key not in raw:
            return TransformFailure(RejectReason.MISSING_FIELD, key)

    observed_at = resolve_observed_at(raw[TIMESTAMP_KEY], received_at=received_at)
    if isinstance(observed_at, TransformFailure):
        return observed_at

    values: dict = {}
    for device_key, field_name in PARTICULATE_FIELD_MAP + GAS_FIELD_MAP:
        try:
            values[field_name] = _coerce_number(raw.get(device_key), empty=0.0)
        except _Malformed as e:
            return TransformFailure(RejectReason.MALFORMED_FIELD, device_key, str(e))

    for device_key, field_name in ENVIRONMENTAL_FIELD_MAP:
        try:
            values[field_name] = _coerce_number(raw.get(device_key), empty=None)
        except _Malformed as e:
            return TransformFailure(RejectReason.MALFORMED_FIELD, device_key, str(e))

    if raw_payload is None:
        raw_payload = json.dumps(raw, separators=(",", ":"), ensure_ascii=False)

    return TelemetryReading(
        sensor_id=sensor_id,
        observed_at=observed_at,
        raw_payload=raw_payload,
        **values,
    )
