"""Tests de derivación de estado y del sweep periódico."""

import time
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

from airq_ingest.core.domain import Sensor, SensorStatus
from airq_ingest.errors import PersistenceError
from airq_ingest.status import (
    StatusSweeper,
    StatusSweepScheduler,
    StatusThresholds,
    derive_status,
    promote_status,
)

NOW = datetime(2024, 6, 3, 12, 0, tzinfo=timezone.utc)


# =============================================================================
# DERIVACIÓN
# =============================================================================

class TestDeriveStatus:

    def test_never_seen_is_dead(self):
        assert derive_status(None, 5, NOW) is SensorStatus.DEAD

    def test_recent_is_fresh(self):
        assert derive_status(NOW - timedelta(minutes=3), 5, NOW) is SensorStatus.FRESH

    def test_seventy_minutes_with_fifteen_minute_frequency_is_stale(self):
        # 70 > 4 * 15
        assert derive_status(NOW - timedelta(minutes=70), 15, NOW) is SensorStatus.STALE

    def test_boundary_is_still_fresh(self):
        assert derive_status(NOW - timedelta(minutes=20), 5, NOW) is SensorStatus.FRESH

    def test_one_day_is_dead(self):
        assert derive_status(NOW - timedelta(days=1), 5, NOW) is SensorStatus.DEAD

    @pytest.mark.parametrize("frequency", [0, -3, None])
    def test_invalid_frequency_falls_back_to_default(self, frequency):
        assert derive_status(NOW - timedelta(minutes=10), frequency, NOW) is SensorStatus.FRESH
        assert derive_status(NOW - timedelta(minutes=30), frequency, NOW) is SensorStatus.STALE

    def test_future_last_seen_is_fresh(self):
        assert derive_status(NOW + timedelta(minutes=1), 5, NOW) is SensorStatus.FRESH

    def test_naive_datetimes_are_utc(self):
        naive = (NOW - timedelta(minutes=1)).replace(tzinfo=None)
        assert derive_status(naive, 5, NOW) is SensorStatus.FRESH

    def test_custom_thresholds(self):
        strict = StatusThresholds(stale_multiplier=1.0, dead_after_minutes=30)
        assert derive_status(NOW - timedelta(minutes=6), 5, NOW, strict) is SensorStatus.STALE
        assert derive_status(NOW - timedelta(minutes=30), 5, NOW, strict) is SensorStatus.DEAD

    def test_thresholds_from_env(self, monkeypatch):
        monkeypatch.setenv("STATUS_STALE_MULTIPLIER", "2")
        monkeypatch.setenv("STATUS_DEAD_AFTER_MINUTES", "90")
        assert StatusThresholds.from_env() == StatusThresholds(2.0, 90.0)

    def test_promote_only_upgrades(self):
        assert promote_status(SensorStatus.DEAD, SensorStatus.FRESH) is SensorStatus.FRESH
        assert promote_status(SensorStatus.FRESH, SensorStatus.STALE) is SensorStatus.FRESH
        assert promote_status(SensorStatus.STALE, SensorStatus.STALE) is SensorStatus.STALE


# =============================================================================
# SWEEP
# =============================================================================

def _seed(store, sensor_id, *, minutes_ago, status, frequency=5.0):
    last_seen = None if minutes_ago is None else NOW - timedelta(minutes=minutes_ago)
    store.create_sensor(
        Sensor(id=sensor_id, name=sensor_id, frequency_minutes=frequency, last_seen=last_seen, status=status)
    )


class TestStatusSweeper:

    def test_updates_only_changed_sensors(self, store):
        _seed(store, "A", minutes_ago=2, status=SensorStatus.FRESH)
        _seed(store, "B", minutes_ago=70, status=SensorStatus.FRESH, frequency=15)
        _seed(store, "C", minutes_ago=None, status=SensorStatus.STALE)

        result = StatusSweeper(store).sweep(now=NOW)

        assert result.evaluated == 3
        assert result.changes == {"B": SensorStatus.STALE, "C": SensorStatus.DEAD}
        assert store.get_sensor("A").status is SensorStatus.FRESH
        assert store.get_sensor("B").status is SensorStatus.STALE
        assert store.get_sensor("C").status is SensorStatus.DEAD

    def test_no_changes_means_no_write(self):
        fake_store = MagicMock()
        fake_store.list_all_sensors.return_value = [
            Sensor(id="A", name="A", frequency_minutes=5, last_seen=NOW, status=SensorStatus.FRESH),
        ]

        result = StatusSweeper(fake_store).sweep(now=NOW)

        assert result.changed == 0
        fake_store.batch_update_statuses.assert_not_called()

    def test_second_sweep_is_noop(self, store):
        _seed(store, "A", minutes_ago=2000, status=SensorStatus.FRESH)
        sweeper = StatusSweeper(store)

        assert sweeper.sweep(now=NOW).changed == 1
        assert sweeper.sweep(now=NOW).changed == 0

    def test_scheduler_survives_store_failure(self):
        fake_store = MagicMock()
        fake_store.list_all_sensors.side_effect = PersistenceError("down")
        scheduler = StatusSweepScheduler(StatusSweeper(fake_store), interval_seconds=60)

        assert scheduler.run_once() is None
        assert scheduler.get_stats()["failures"] == 1
        assert scheduler.get_stats()["runs"] == 1

    def test_scheduler_runs_immediately_on_start(self, store):
        _seed(store, "A", minutes_ago=None, status=SensorStatus.FRESH)
        scheduler = StatusSweepScheduler(StatusSweeper(store), interval_seconds=3600)

        scheduler.start()
        try:
            deadline = time.monotonic() + 2
            while scheduler.runs == 0 and time.monotonic() < deadline:
                time.sleep(0.01)
        finally:
            scheduler.stop(timeout=2)

        assert scheduler.runs >= 1
        assert store.get_sensor("A").status is SensorStatus.DEAD
