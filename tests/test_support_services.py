"""Tests de servicios de soporte: rate limiter, buffer de métricas, fan-out,
observadores, reportes y autenticación del webhook."""

import json
import threading
import time
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest
import redis

from airq_ingest.auth import verify_bearer
from airq_ingest.core.domain import IngestionEvent, IngestOutcomeKind, IngestSource, SensorStatus
from airq_ingest.fanout import FanoutNotifier, ObserverWorker, ReadingNotification, RedisStreamObserver
from airq_ingest.metrics.buffer import MetricsBuffer, MetricsBufferConfig
from airq_ingest.metrics.report import health_summary, summarize_events
from airq_ingest.pipeline import DedupGuard
from airq_ingest.rate_limiter import (
    InMemoryCounterStore,
    RateLimitConfig,
    RedisCounterStore,
    WebhookRateLimiter,
)

NOW = datetime(2024, 6, 3, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, start: float = 1_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def _event(outcome=IngestOutcomeKind.ACCEPTED, *, minutes_ago=0, duration=10.0, reason=None,
           sensor_id="AQ-001", topic="sensors/AQ-001/data", source=IngestSource.WEBHOOK, request_id="wh_1"):
    return IngestionEvent(
        request_id=request_id,
        received_at=NOW - timedelta(minutes=minutes_ago),
        processing_duration_ms=duration,
        outcome=outcome,
        reject_reason=reason,
        sensor_id=sensor_id,
        payload_size_bytes=120,
        source=source,
        topic=topic,
    )


def _notification(sensor_id="AQ-001") -> ReadingNotification:
    return ReadingNotification(
        sensor_id=sensor_id,
        status=SensorStatus.FRESH,
        observed_at=NOW,
        source_payload={"sensorId": sensor_id, "pm2_5": 7.5},
    )


# =============================================================================
# RATE LIMITER
# =============================================================================

class TestRateLimiter:

    @pytest.fixture
    def clock(self):
        return FakeClock()

    @pytest.fixture
    def limiter(self, clock):
        return WebhookRateLimiter(RateLimitConfig(window_seconds=60, max_requests=3), InMemoryCounterStore(clock))

    def test_allows_up_to_limit(self, limiter):
        decisions = [limiter.check("bridge", "10.0.0.1") for _ in range(3)]
        assert all(d.allowed for d in decisions)
        assert decisions[-1].count == 3

    def test_rejects_n_plus_one(self, limiter):
        for _ in range(3):
            limiter.check("bridge", "10.0.0.1")

        decision = limiter.check("bridge", "10.0.0.1")

        assert decision.allowed is False
        assert decision.retry_after_seconds == 60
        assert limiter.get_stats()["rejected"] == 1

    def test_next_window_allows_again(self, limiter, clock):
        for _ in range(4):
            limiter.check("bridge", "10.0.0.1")

        clock.advance(60)

        assert limiter.check("bridge", "10.0.0.1").allowed is True

    def test_keys_are_independent(self, limiter):
        for _ in range(3):
            limiter.check("bridge", "10.0.0.1")

        assert limiter.check("bridge", "10.0.0.2").allowed is True
        assert limiter.check("other", "10.0.0.1").allowed is True

    def test_disabled(self, clock):
        limiter = WebhookRateLimiter(RateLimitConfig(max_requests=1, enabled=False), InMemoryCounterStore(clock))
        assert all(limiter.check("c", "ip").allowed for _ in range(5))

    def test_store_failure_fails_open(self):
        store = MagicMock()
        store.increment.side_effect = redis.ConnectionError("down")
        limiter = WebhookRateLimiter(RateLimitConfig(max_requests=1), store)

        assert limiter.check("c", "ip").allowed is True
        assert limiter.get_stats()["store_failures"] == 1

    def test_redis_counter_uses_atomic_pipeline(self):
        client = MagicMock()
        pipe = client.pipeline.return_value
        pipe.execute.return_value = [4, True]
        store = RedisCounterStore(client, clock=lambda: 120.0)

        assert store.increment("bridge:10.0.0.1", 60) == 4
        pipe.incr.assert_called_once_with("rate_limit:bridge:10.0.0.1:2")
        pipe.expire.assert_called_once_with("rate_limit:bridge:10.0.0.1:2", 120, nx=True)

    def test_cleanup_old_entries(self, clock):
        store = InMemoryCounterStore(clock)
        store.increment("a", 60)
        clock.advance(7200)

        assert store.cleanup_old_entries(max_age_seconds=3600) == 1

    def test_stale_windows_are_pruned_while_counting(self, clock):
        """Las claves de ventanas pasadas no se acumulan sin límite."""
        store = InMemoryCounterStore(clock, cleanup_interval_seconds=60)
        limiter = WebhookRateLimiter(RateLimitConfig(window_seconds=60, max_requests=10), store)
        for i in range(50):
            limiter.check(f"bridge-{i}", "10.0.0.1")
        assert len(store) == 50

        clock.advance(120)
        limiter.check("bridge-new", "10.0.0.1")

        assert len(store) == 1

    def test_pruning_waits_for_interval(self, clock):
        store = InMemoryCounterStore(clock, cleanup_interval_seconds=600)
        store.increment("a", 60)
        clock.advance(120)
        store.increment("b", 60)

        assert len(store) == 2


# =============================================================================
# BUFFER DE MÉTRICAS
# =============================================================================

class TestMetricsBuffer:

    def test_flush_writes_single_batch(self):
        writer = MagicMock(return_value=3)
        buffer = MetricsBuffer(writer, MetricsBufferConfig(capacity=10))
        for _ in range(3):
            buffer.record(_event())

        assert buffer.flush() == 3
        writer.assert_called_once()
        assert len(writer.call_args[0][0]) == 3
        assert buffer.pending == 0

    def test_failed_flush_requeues_in_order(self):
        writer = MagicMock(side_effect=RuntimeError("db down"))
        buffer = MetricsBuffer(writer, MetricsBufferConfig(capacity=10))
        buffer.record(_event(request_id="wh_a"))
        buffer.record(_event(request_id="wh_b"))

        assert buffer.flush() == 0
        buffer.record(_event(request_id="wh_c"))

        writer.side_effect = None
        buffer.flush()
        written = writer.call_args[0][0]
        assert [e.request_id for e in written] == ["wh_a", "wh_b", "wh_c"]

    def test_cap_drops_oldest(self):
        buffer = MetricsBuffer(MagicMock(), MetricsBufferConfig(capacity=100, max_buffered=2))
        for rid in ("wh_a", "wh_b", "wh_c"):
            buffer.record(_event(request_id=rid))

        assert buffer.pending == 2
        assert buffer.get_stats()["total_dropped"] == 1

    def test_capacity_wakes_flush_thread(self):
        flushed = threading.Event()
        buffer = MetricsBuffer(lambda batch: flushed.set(), MetricsBufferConfig(capacity=2, flush_interval=60.0))
        buffer.start()
        try:
            buffer.record(_event())
            buffer.record(_event())
            assert flushed.wait(timeout=2)
        finally:
            buffer.stop(timeout=2)

    def test_stop_flushes_pending(self):
        writer = MagicMock(return_value=1)
        buffer = MetricsBuffer(writer, MetricsBufferConfig(capacity=100, flush_interval=60.0))
        buffer.start()
        buffer.record(_event())

        assert buffer.stop(timeout=2) is True
        writer.assert_called_once()

    def test_stop_is_bounded_when_writer_hangs(self):
        release = threading.Event()
        buffer = MetricsBuffer(lambda batch: release.wait(5), MetricsBufferConfig(capacity=100))
        buffer.record(_event())

        started = time.monotonic()
        assert buffer.stop(timeout=0.2) is False
        assert time.monotonic() - started < 1.5
        release.set()


# =============================================================================
# FAN-OUT
# =============================================================================

class TestFanout:

    def test_full_subscriber_drops_without_blocking(self):
        notifier = FanoutNotifier()
        slow = notifier.subscribe("slow", maxsize=1)
        fast = notifier.subscribe("fast", maxsize=10)

        for _ in range(3):
            notifier.publish(_notification())

        assert slow.pending() == 1
        assert slow.dropped == 2
        assert fast.pending() == 3

    def test_unsubscribe_stops_delivery(self):
        notifier = FanoutNotifier()
        sub = notifier.subscribe("a")
        notifier.unsubscribe(sub)

        assert notifier.publish(_notification()) == 0
        assert sub.get(timeout=0.01) is None

    def test_observer_failure_is_isolated(self):
        notifier = FanoutNotifier()
        received = []
        done = threading.Event()

        def good(notification):
            received.append(notification.sensor_id)
            if len(received) == 2:
                done.set()

        bad = ObserverWorker(notifier, MagicMock(side_effect=RuntimeError("boom")), name="bad", poll_timeout=0.05)
        ok = ObserverWorker(notifier, good, name="good", poll_timeout=0.05)
        bad.start()
        ok.start()
        try:
            notifier.publish(_notification("AQ-001"))
            notifier.publish(_notification("AQ-002"))
            assert done.wait(timeout=2)
            deadline = time.monotonic() + 2
            while bad.failures < 2 and time.monotonic() < deadline:
                time.sleep(0.01)
        finally:
            bad.stop(timeout=1)
            ok.stop(timeout=1)

        assert received == ["AQ-001", "AQ-002"]
        assert bad.failures == 2

    def test_redis_stream_observer(self):
        client = MagicMock()
        observer = RedisStreamObserver(client)

        observer(_notification())

        args, kwargs = client.xadd.call_args
        assert args[0] == "readings:accepted"
        assert args[1]["sensor_id"] == "AQ-001"
        assert args[1]["status"] == "FRESH"
        assert json.loads(args[1]["payload"])["pm2_5"] == 7.5
        assert kwargs == {"maxlen": 10000, "approximate": True}


# =============================================================================
# REPORTES
# =============================================================================

class TestReports:

    def test_summarize_counts_and_reasons(self):
        events = [
            _event(),
            _event(minutes_ago=30, duration=30.0),
            _event(IngestOutcomeKind.REJECTED, reason="missing_field", sensor_id="AQ-002"),
            _event(IngestOutcomeKind.ERROR, reason="persistence_error", minutes_ago=90, source=IngestSource.MQTT),
        ]

        report = summarize_events(events, hours=2, now=NOW + timedelta(seconds=1))

        assert report["total_messages"] == 4
        assert report["accepted_messages"] == 2
        assert report["rejected_messages"] == 1
        assert report["failed_messages"] == 1
        assert report["unique_sensors"] == 2
        assert report["by_source"] == {"webhook": 3, "mqtt": 1}
        assert report["reasons"] == {"missing_field": 1, "persistence_error": 1}
        assert report["topics"]["sensors/AQ-001/data"]["message_count"] == 4
        assert [h["messages"] for h in report["hourly_breakdown"]] == [1, 3]

    def test_summarize_empty(self):
        report = summarize_events([], hours=1, now=NOW)
        assert report["total_messages"] == 0
        assert report["performance"]["avg_processing_ms"] == 0.0

    def test_health_healthy(self):
        summary = health_summary(now=NOW, db_ok=True, db_response_ms=1.2, active_sensors=3, last_hour_events=[_event()])
        assert summary["status"] == "healthy"

    def test_health_degraded_on_errors(self):
        events = [_event(), _event(IngestOutcomeKind.ERROR, reason="persistence_error")]
        summary = health_summary(now=NOW, db_ok=True, db_response_ms=1.0, active_sensors=3, last_hour_events=events)
        assert summary["status"] == "degraded"

    def test_health_unhealthy_when_db_down(self):
        summary = health_summary(now=NOW, db_ok=False, db_response_ms=0.0, active_sensors=3, last_hour_events=[])
        assert summary["status"] == "unhealthy"

    def test_health_unhealthy_when_listener_fatal(self):
        summary = health_summary(
            now=NOW, db_ok=True, db_response_ms=1.0, active_sensors=3, last_hour_events=[],
            listener={"fatal": True},
        )
        assert summary["status"] == "unhealthy"


# =============================================================================
# AUTENTICACIÓN Y DEDUP
# =============================================================================

class TestWebhookSecret:

    def test_matching_token(self):
        assert verify_bearer("Bearer abc", "abc") is True

    @pytest.mark.parametrize("header", [None, "", "abc", "Basic abc", "Bearer abd"])
    def test_rejected_headers(self, header):
        assert verify_bearer(header, "abc") is False

    def test_no_secret_allowed_in_development(self, monkeypatch):
        monkeypatch.setenv("ENVIRONMENT", "development")
        assert verify_bearer(None, None) is True

    def test_no_secret_rejected_in_production(self, monkeypatch):
        monkeypatch.setenv("ENVIRONMENT", "production")
        assert verify_bearer("Bearer x", None) is False


class TestDedupGuard:

    def test_recall_after_remember(self):
        guard = DedupGuard(ttl_seconds=60)
        guard.remember("AQ-001:1717430400", "id-1")
        assert guard.recall("AQ-001:1717430400") == "id-1"
        assert guard.recall("AQ-001:1717430401") is None

    def test_expired_entries_are_forgotten(self):
        guard = DedupGuard(ttl_seconds=0.01)
        guard.remember("k", "id")
        time.sleep(0.05)
        assert guard.recall("k") is None

    def test_max_size_evicts_oldest(self):
        guard = DedupGuard(ttl_seconds=60, max_size=2)
        for i in range(3):
            guard.remember(f"k{i}", f"id{i}")

        assert guard.recall("k0") is None
        assert guard.recall("k2") == "id2"
