"""Modelos de dominio."""

from .events import IngestionEvent, IngestOutcomeKind, IngestSource, new_request_id
from .reading import CHANNEL_FIELDS, ENVIRONMENTAL_FIELDS, TelemetryReading
from .sensor import Sensor, SensorStatus

__all__ = [
    "CHANNEL_FIELDS",
    "ENVIRONMENTAL_FIELDS",
    "IngestionEvent",
    "IngestOutcomeKind",
    "IngestSource",
    "Sensor",
    "SensorStatus",
    "TelemetryReading",
    "new_request_id",
]
