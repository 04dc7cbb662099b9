"""Regla de topic compartida por el listener y el webhook."""

from __future__ import annotations

import re
from typing import Optional

SENSOR_TOPIC_FILTER = "sensors/+/data"
SENSOR_TOPIC_TEMPLATE = "sensors/{sensorId}/data"
LISTENER_STATUS_TOPIC = "system/air-quality-listener/status"

_SENSOR_ID_RE = re.compile(r"^[A-Za-z0-9_-]+$")


def extract_sensor_id(topic: Optional[str]) -> Optional[str]:
    """Extrae el sensorId de ``sensors/{sensorId}/data``.

    Exige exactamente tres segmentos. Retorna None si el topic no cumple.
    """
    if not topic:
        return None

    parts = topic.split("/")
    if len(parts) != 3 or parts[0] != "sensors" or parts[2] != "data":
        return None

    sensor_id = parts[1]
    if not _SENSOR_ID_RE.match(sensor_id):
        return None
    return sensor_id
