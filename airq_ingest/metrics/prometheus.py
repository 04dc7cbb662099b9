"""Métricas Prometheus del servicio de ingesta."""

from __future__ import annotations

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, generate_latest

MESSAGES_TOTAL = Counter(
    "airq_ingest_messages_total",
    "Ingestion attempts by source and outcome",
    ["source", "outcome"],
)

PROCESSING_SECONDS = Histogram(
    "airq_ingest_processing_seconds",
    "Time spent in the ingestion pipeline",
    ["source"],
    buckets=(0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5),
)

LISTENER_CONNECTED = Gauge(
    "airq_ingest_listener_connected",
    "1 while the broker listener is subscribed",
)

LISTENER_RECONNECTS = Counter(
    "airq_ingest_listener_reconnects_total",
    "Broker reconnect attempts",
)

FANOUT_DROPPED = Counter(
    "airq_ingest_fanout_dropped_total",
    "Notifications dropped because a subscriber queue was full",
    ["subscriber"],
)

METRICS_BUFFER_DROPPED = Counter(
    "airq_ingest_metrics_buffer_dropped_total",
    "Ingestion events dropped by the metrics buffer cap",
)

DEDUP_CACHE_SIZE = Gauge(
    "airq_ingest_dedup_cache_size",
    "Current size of the in-process deduplication cache",
)

STATUS_CHANGES = Counter(
    "airq_ingest_status_changes_total",
    "Sensor status changes written by the sweep",
    ["status"],
)


def render_latest() -> tuple[bytes, str]:
    return generate_latest(), CONTENT_TYPE_LATEST
