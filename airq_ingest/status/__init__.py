"""Derivación de estado de sensores y barrido periódico."""

from .engine import DEFAULT_THRESHOLDS, StatusThresholds, derive_status, promote_status
from .sweeper import StatusSweeper, StatusSweepScheduler, SweepResult

__all__ = [
    "DEFAULT_THRESHOLDS",
    "StatusSweepScheduler",
    "StatusSweeper",
    "StatusThresholds",
    "SweepResult",
    "derive_status",
    "promote_status",
]
