"""Modelo canónico de lectura de calidad del aire."""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

from ..clock import ensure_utc, to_iso_z


# Canales de partículas y gases (siempre presentes tras la transformación)
CHANNEL_FIELDS = (
    "pm1_0",
    "pm2_5",
    "pm10",
    "o3_raw",
    "o3_corrige",
    "no2_voltage_v",
    "no2_ppb",
    "voc_voltage_v",
    "co_voltage_v",
    "co_ppb",
)

# Canales ambientales opcionales
ENVIRONMENTAL_FIELDS = ("temperature", "humidity", "pressure")


@dataclass(frozen=True)
class TelemetryReading:
    """Lectura canónica - contrato único que recorre el pipeline.

    Ambas vías de ingreso (broker MQTT y webhook) convergen a este tipo:
    Transformer → Validator → Dedup → Persistencia → Fan-out.

    Es inmutable: una vez construida no se modifica. ``raw_payload``
    conserva el JSON original del dispositivo para auditoría y replay.
    """
    sensor_id: str
    observed_at: datetime
    pm1_0: float
    pm2_5: float
    pm10: float
    o3_raw: float
    o3_corrige: float
    no2_voltage_v: float
    no2_ppb: float
    voc_voltage_v: float
    co_voltage_v: float
    co_ppb: float
    temperature: Optional[float] = None
    humidity: Optional[float] = None
    pressure: Optional[float] = None
    raw_payload: str = ""

    def __post_init__(self):
        object.__setattr__(self, "observed_at", ensure_utc(self.observed_at))

    def channel_values(self) -> Dict[str, float]:
        return {name: getattr(self, name) for name in CHANNEL_FIELDS}

    def environmental_values(self) -> Dict[str, Optional[float]]:
        return {name: getattr(self, name) for name in ENVIRONMENTAL_FIELDS}

    def to_document(self) -> Dict[str, Any]:
        """Documento persistido / notificado (claves estables)."""
        doc: Dict[str, Any] = {
            "sensorId": self.sensor_id,
            "observedAt": to_iso_z(self.observed_at),
            "rawPayload": self.raw_payload,
        }
        doc.update(self.channel_values())
        doc.update(self.environmental_values())
        return doc

    def canonical_bytes(self) -> bytes:
        """Serialización determinista: misma lectura → mismos bytes."""
        return json.dumps(
            self.to_document(),
            sort_keys=True,
            separators=(",", ":"),
            ensure_ascii=False,
        ).encode("utf-8")
