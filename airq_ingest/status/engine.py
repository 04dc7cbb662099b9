"""Derivación de estado de sensores (FRESH / STALE / DEAD).

Función pura y total: depende solo de (last_seen, frecuencia, ahora).

Reglas (umbrales configurables):
- sin last_seen                         → DEAD
- transcurrido >= dead_after_minutes    → DEAD   (default 1440 = un día)
- transcurrido >  stale_multiplier * f  → STALE  (default 4 envíos perdidos)
- en otro caso                          → FRESH
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from ..core.clock import ensure_utc
from ..core.domain.sensor import SensorStatus

DEFAULT_FREQUENCY_MINUTES = 5.0


@dataclass(frozen=True)
class StatusThresholds:
    """Umbrales de derivación de estado."""
    stale_multiplier: float = 4.0
    dead_after_minutes: float = 1440.0

    @classmethod
    def from_env(cls) -> "StatusThresholds":
        return cls(
            stale_multiplier=float(os.getenv("STATUS_STALE_MULTIPLIER", "4")),
            dead_after_minutes=float(os.getenv("STATUS_DEAD_AFTER_MINUTES", "1440")),
        )


DEFAULT_THRESHOLDS = StatusThresholds()


def derive_status(
    last_seen: Optional[datetime],
    frequency_minutes: Optional[float],
    now: datetime,
    thresholds: StatusThresholds = DEFAULT_THRESHOLDS,
) -> SensorStatus:
    """Clasifica un sensor según el tiempo transcurrido desde su último dato.

    Args:
        last_seen: instante del último dato aceptado (None si nunca reportó)
        frequency_minutes: frecuencia nominal de envío del sensor
        now: instante de evaluación
        thresholds: umbrales de STALE / DEAD

    Returns:
        SensorStatus
    """
    if last_seen is None:
        return SensorStatus.DEAD

    if not frequency_minutes or frequency_minutes <= 0:
        frequency_minutes = DEFAULT_FREQUENCY_MINUTES

    elapsed_minutes = (ensure_utc(now) - ensure_utc(last_seen)).total_seconds() / 60.0

    if elapsed_minutes >= thresholds.dead_after_minutes:
        return SensorStatus.DEAD
    if elapsed_minutes > frequency_minutes * thresholds.stale_multiplier:
        return SensorStatus.STALE
    return SensorStatus.FRESH


def promote_status(current: SensorStatus, derived: SensorStatus) -> SensorStatus:
    """En ingesta el estado solo mejora; degradar es tarea del sweep."""
    return derived if derived.rank > current.rank else current
