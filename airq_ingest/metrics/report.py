"""Agregados sobre eventos de ingesta persistidos (/mqtt/metrics, /mqtt/health)."""

from __future__ import annotations

import math
from collections import Counter
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence

from ..core.clock import ensure_utc, to_iso_z
from ..core.domain.events import IngestionEvent, IngestOutcomeKind

MIN_REPORT_HOURS = 1
MAX_REPORT_HOURS = 168


def _round2(value: float) -> float:
    return round(value, 2)


def _percentile(sorted_values: Sequence[float], fraction: float) -> float:
    if not sorted_values:
        return 0.0
    index = min(len(sorted_values) - 1, int(math.floor(len(sorted_values) * fraction)))
    return _round2(sorted_values[index])


def _rates(events: Sequence[IngestionEvent]) -> tuple[float, float]:
    """(success_rate, error_rate) en porcentaje."""
    total = len(events)
    if total == 0:
        return 100.0, 0.0
    accepted = sum(1 for e in events if e.outcome is IngestOutcomeKind.ACCEPTED)
    errors = sum(1 for e in events if e.outcome is IngestOutcomeKind.ERROR)
    return _round2(accepted * 100.0 / total), _round2(errors * 100.0 / total)


def summarize_events(events: Sequence[IngestionEvent], *, hours: int, now: datetime) -> Dict[str, Any]:
    """Reporte de ingesta para una ventana de ``hours`` horas hasta ``now``."""
    now = ensure_utc(now)
    durations = sorted(e.processing_duration_ms for e in events)

    topics: Dict[str, Dict[str, Any]] = {}
    for e in events:
        if not e.topic:
            continue
        entry = topics.setdefault(e.topic, {"message_count": 0, "last_activity": e.received_at})
        entry["message_count"] += 1
        if e.received_at > entry["last_activity"]:
            entry["last_activity"] = e.received_at
    for entry in topics.values():
        entry["last_activity"] = to_iso_z(entry["last_activity"])

    reasons = Counter(
        e.reject_reason or "unknown"
        for e in events
        if e.outcome is not IngestOutcomeKind.ACCEPTED
    )

    hourly: List[Dict[str, Any]] = []
    for i in range(hours - 1, -1, -1):
        hour_start = now - timedelta(hours=i + 1)
        hour_end = now - timedelta(hours=i)
        bucket = [e for e in events if hour_start <= e.received_at < hour_end]
        success_rate, _ = _rates(bucket)
        hourly.append({
            "hour": hour_start.strftime("%Y-%m-%dT%H:00Z"),
            "messages": len(bucket),
            "errors": sum(1 for e in bucket if e.outcome is IngestOutcomeKind.ERROR),
            "rejected": sum(1 for e in bucket if e.outcome is IngestOutcomeKind.REJECTED),
            "success_rate": success_rate,
        })

    return {
        "timeframe": f"{hours}h",
        "total_messages": len(events),
        "accepted_messages": sum(1 for e in events if e.outcome is IngestOutcomeKind.ACCEPTED),
        "rejected_messages": sum(1 for e in events if e.outcome is IngestOutcomeKind.REJECTED),
        "failed_messages": sum(1 for e in events if e.outcome is IngestOutcomeKind.ERROR),
        "unique_sensors": len({e.sensor_id for e in events if e.sensor_id}),
        "by_source": dict(Counter(e.source.value for e in events)),
        "performance": {
            "avg_processing_ms": _round2(sum(durations) / len(durations)) if durations else 0.0,
            "p95_processing_ms": _percentile(durations, 0.95),
            "p99_processing_ms": _percentile(durations, 0.99),
        },
        "topics": topics,
        "reasons": dict(reasons),
        "hourly_breakdown": hourly,
    }


def health_summary(
    *,
    now: datetime,
    db_ok: bool,
    db_response_ms: float,
    active_sensors: int,
    last_hour_events: Sequence[IngestionEvent],
    listener: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """Estado global: healthy | degraded | unhealthy.

    - BD caída o listener en estado fatal → unhealthy
    - error_rate > 10% o success_rate < 90% o sin sensores activos → degraded
    """
    success_rate, error_rate = _rates(last_hour_events)
    durations = [e.processing_duration_ms for e in last_hour_events]
    last_received = max((e.received_at for e in last_hour_events), default=None)

    if not db_ok or (listener is not None and listener.get("fatal")):
        status = "unhealthy"
    elif error_rate > 10 or success_rate < 90 or active_sensors == 0:
        status = "degraded"
    else:
        status = "healthy"

    return {
        "status": status,
        "timestamp": to_iso_z(now),
        "database": {
            "status": "connected" if db_ok else "error",
            "response_time_ms": _round2(db_response_ms),
        },
        "ingest": {
            "status": "operational" if error_rate < 5 else "error",
            "last_received": to_iso_z(last_received) if last_received else None,
            "success_rate": success_rate,
        },
        "listener": listener,
        "active_sensors": active_sensors,
        "metrics": {
            "messages_last_hour": len(last_hour_events),
            "error_rate": error_rate,
            "avg_processing_ms": _round2(sum(durations) / len(durations)) if durations else 0.0,
        },
    }
