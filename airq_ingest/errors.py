"""Taxonomía de errores de ingesta.

Los errores esperables del cliente (payload mal formado, fuera de rango)
viajan como resultados tipados; las excepciones se reservan para fallos de
infraestructura y para los casos que cortan el flujo del adapter.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    TRANSFORM_ERROR = "transform_error"
    VALIDATION_ERROR = "validation_error"
    UNKNOWN_SENSOR = "unknown_sensor"
    RATE_LIMITED = "rate_limited"
    PERSISTENCE_ERROR = "persistence_error"
    TRANSPORT_ERROR = "transport_error"


class RejectReason:
    """Motivos de rechazo registrados en los eventos de ingesta."""
    MISSING_FIELD = "missing_field"
    MALFORMED_FIELD = "malformed_field"
    INVALID_TIMESTAMP = "invalid_timestamp"
    OUT_OF_RANGE = "out_of_range"
    INVALID_PAYLOAD = "invalid_payload"
    INVALID_TOPIC = "invalid_topic"
    INVALID_ENVELOPE = "invalid_envelope"
    UNAUTHORIZED = "unauthorized"
    UNKNOWN_SENSOR = "unknown_sensor"
    RATE_LIMITED = "rate_limited"
    PERSISTENCE_ERROR = "persistence_error"
    INTERNAL_ERROR = "internal_error"


class IngestError(Exception):
    kind: ErrorKind = ErrorKind.PERSISTENCE_ERROR

    def __init__(self, message: str, *, reason: Optional[str] = None):
        super().__init__(message)
        self.reason = reason


class UnknownSensorError(IngestError):
    kind = ErrorKind.UNKNOWN_SENSOR

    def __init__(self, sensor_id: str):
        super().__init__(f"Unknown sensor {sensor_id}", reason=RejectReason.UNKNOWN_SENSOR)
        self.sensor_id = sensor_id


class PersistenceError(IngestError):
    """Fallo del almacén de documentos (recuperable, outcome=error)."""
    kind = ErrorKind.PERSISTENCE_ERROR

    def __init__(self, message: str):
        super().__init__(message, reason=RejectReason.PERSISTENCE_ERROR)
