"""Barrido periódico de estados de sensores.

Recalcula el estado de todos los sensores y persiste solo los que cambian,
en una única escritura por lote. Es la única vía que degrada estados
(FRESH → STALE → DEAD); la ingesta solo promueve.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Optional

from ..core.clock import utc_now
from ..core.domain.sensor import SensorStatus
from ..errors import PersistenceError
from ..infrastructure.persistence.store import DocumentStore
from ..metrics.prometheus import STATUS_CHANGES
from .engine import DEFAULT_THRESHOLDS, StatusThresholds, derive_status

logger = logging.getLogger(__name__)


@dataclass
class SweepResult:
    evaluated: int = 0
    changes: Dict[str, SensorStatus] = field(default_factory=dict)

    @property
    def changed(self) -> int:
        return len(self.changes)


class StatusSweeper:
    def __init__(self, store: DocumentStore, thresholds: StatusThresholds = DEFAULT_THRESHOLDS):
        self._store = store
        self._thresholds = thresholds

    @property
    def thresholds(self) -> StatusThresholds:
        return self._thresholds

    def sweep(self, now: Optional[datetime] = None) -> SweepResult:
        """Recalcula todos los estados.

        Returns:
            SweepResult con los sensores cuyo estado cambió
        """
        now = now or utc_now()
        result = SweepResult()

        for sensor in self._store.list_all_sensors():
            result.evaluated += 1
            new_status = derive_status(sensor.last_seen, sensor.frequency_minutes, now, self._thresholds)
            if new_status != sensor.status:
                result.changes[sensor.id] = new_status

        if result.changes:
            self._store.batch_update_statuses(result.changes)
            for status in result.changes.values():
                STATUS_CHANGES.labels(status=status.value).inc()
            logger.info("[STATUS] Sweep updated=%d evaluated=%d", result.changed, result.evaluated)
        else:
            logger.debug("[STATUS] Sweep no changes evaluated=%d", result.evaluated)

        return result


class StatusSweepScheduler:
    """Thread daemon que ejecuta el sweep a intervalo fijo."""

    def __init__(self, sweeper: StatusSweeper, interval_seconds: float = 300.0):
        self._sweeper = sweeper
        self._interval = interval_seconds
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

        self.runs = 0
        self.failures = 0
        self.last_result: Optional[SweepResult] = None

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return

        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="airq-status-sweep", daemon=True)
        self._thread.start()
        logger.info("[STATUS] Sweep scheduler started interval=%.0fs", self._interval)

    def stop(self, timeout: float = 5.0) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None
        logger.info("[STATUS] Sweep scheduler stopped runs=%d failures=%d", self.runs, self.failures)

    def run_once(self) -> Optional[SweepResult]:
        try:
            self.last_result = self._sweeper.sweep()
            return self.last_result
        except PersistenceError as e:
            self.failures += 1
            logger.error("[STATUS] Sweep failed: %s", e)
            return None
        finally:
            self.runs += 1

    def _loop(self) -> None:
        # Primer barrido inmediato: corrige estados tras un reinicio
        self.run_once()
        while not self._stop_event.wait(self._interval):
            self.run_once()

    def get_stats(self) -> dict:
        return {
            "running": self._thread is not None and self._thread.is_alive(),
            "interval_seconds": self._interval,
            "runs": self.runs,
            "failures": self.failures,
            "last_changed": self.last_result.changed if self.last_result else None,
        }
