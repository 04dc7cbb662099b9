"""Eventos de ingesta (un registro por intento, solo inserción)."""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional


class IngestOutcomeKind(str, Enum):
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    ERROR = "error"


class IngestSource(str, Enum):
    MQTT = "mqtt"
    WEBHOOK = "webhook"


_REQUEST_ID_PREFIX = {
    IngestSource.MQTT: "mq",
    IngestSource.WEBHOOK: "wh",
}


def new_request_id(source: IngestSource) -> str:
    """Genera ``<prefijo>_<epoch_ms>_<aleatorio>``."""
    return f"{_REQUEST_ID_PREFIX[source]}_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


@dataclass(frozen=True)
class IngestionEvent:
    request_id: str
    received_at: datetime
    processing_duration_ms: float
    outcome: IngestOutcomeKind
    reject_reason: Optional[str] = None
    sensor_id: Optional[str] = None
    payload_size_bytes: int = 0
    source: IngestSource = IngestSource.WEBHOOK
    topic: Optional[str] = None

    def to_row(self) -> Dict[str, Any]:
        return {
            "request_id": self.request_id,
            "received_at": self.received_at,
            "processing_duration_ms": float(self.processing_duration_ms),
            "outcome": self.outcome.value,
            "reject_reason": self.reject_reason,
            "sensor_id": self.sensor_id,
            "payload_size_bytes": int(self.payload_size_bytes),
            "source": self.source.value,
            "topic": self.topic,
        }
