"""Modelo de dominio para sensores."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional


class SensorStatus(str, Enum):
    """Nivel de salud derivado del último dato recibido."""
    FRESH = "FRESH"
    STALE = "STALE"
    DEAD = "DEAD"

    @property
    def rank(self) -> int:
        return _STATUS_RANK[self]

    @classmethod
    def parse(cls, value: Optional[str]) -> "SensorStatus":
        if not value:
            return cls.DEAD
        try:
            return cls(value.strip().upper())
        except ValueError:
            return cls.DEAD


_STATUS_RANK = {
    SensorStatus.DEAD: 0,
    SensorStatus.STALE: 1,
    SensorStatus.FRESH: 2,
}


@dataclass
class Sensor:
    """Sensor registrado. Se crea fuera de este servicio y nunca se borra aquí."""
    id: str
    name: str
    frequency_minutes: float
    last_seen: Optional[datetime] = None
    status: SensorStatus = SensorStatus.DEAD
    is_active: bool = False
