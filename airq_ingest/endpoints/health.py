"""Health, readiness, Prometheus y reportes de ingesta."""

from __future__ import annotations

import logging
from datetime import timedelta

from fastapi import APIRouter, Depends, HTTPException, Query, Response
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse

from ..context import AppContext
from ..core.clock import to_iso_z, utc_now
from ..errors import PersistenceError
from ..metrics.prometheus import render_latest
from ..metrics.report import MAX_REPORT_HOURS, MIN_REPORT_HOURS, health_summary, summarize_events
from .deps import get_context

router = APIRouter(tags=["health"])
logger = logging.getLogger(__name__)


@router.get("/health")
def health():
    """Liveness probe."""
    return {"status": "ok"}


@router.get("/ready")
def ready(ctx: AppContext = Depends(get_context)):
    """Readiness probe: verifica la conexión al almacén."""
    try:
        ctx.store.ping()
    except PersistenceError:
        logger.exception("[HEALTH] Readiness check failed")
        raise HTTPException(status_code=503, detail="not ready")
    return {"status": "ready"}


@router.get("/metrics")
def metrics():
    payload, content_type = render_latest()
    return Response(content=payload, media_type=content_type)


@router.get("/mqtt/status")
def mqtt_status(ctx: AppContext = Depends(get_context)):
    listener = ctx.listener.get_status() if ctx.listener is not None else {"enabled": False}
    return {
        "listener": listener,
        "pipeline": ctx.pipeline.get_stats(),
        "metrics_buffer": ctx.metrics_buffer.get_stats(),
        "fanout": ctx.notifier.get_stats(),
        "rate_limiter": ctx.rate_limiter.get_stats(),
        "sweeper": ctx.scheduler.get_stats() if ctx.scheduler is not None else None,
        "started_at": to_iso_z(ctx.started_at),
        "timestamp": to_iso_z(utc_now()),
    }


def _collect_health(ctx: AppContext) -> dict:
    now = utc_now()
    since = now - timedelta(hours=1)
    listener = ctx.listener.health_check() if ctx.listener is not None else None

    try:
        response_ms = ctx.store.ping()
        active = ctx.store.count_active_sensors_since(since)
        events = ctx.store.list_events_since(since)
    except PersistenceError:
        logger.exception("[HEALTH] Store check failed")
        return health_summary(
            now=now,
            db_ok=False,
            db_response_ms=0.0,
            active_sensors=0,
            last_hour_events=[],
            listener=listener,
        )

    return health_summary(
        now=now,
        db_ok=True,
        db_response_ms=response_ms,
        active_sensors=active,
        last_hour_events=events,
        listener=listener,
    )


@router.get("/mqtt/health")
async def mqtt_health(ctx: AppContext = Depends(get_context)):
    summary = await run_in_threadpool(_collect_health, ctx)
    status_code = 503 if summary["status"] == "unhealthy" else 200
    return JSONResponse(status_code=status_code, content=summary)


@router.get("/mqtt/metrics")
async def mqtt_metrics(
    hours: int = Query(default=1),
    ctx: AppContext = Depends(get_context),
):
    if hours < MIN_REPORT_HOURS or hours > MAX_REPORT_HOURS:
        return JSONResponse(
            status_code=400,
            content={"error": "invalid_hours", "message": f"hours must be between {MIN_REPORT_HOURS} and {MAX_REPORT_HOURS}"},
        )

    def build() -> dict:
        # Incluir lo que aún está en el buffer
        ctx.metrics_buffer.flush()
        now = utc_now()
        events = ctx.store.list_events_since(now - timedelta(hours=hours))
        return summarize_events(events, hours=hours, now=now)

    try:
        return await run_in_threadpool(build)
    except PersistenceError:
        logger.exception("[METRICS] Report failed hours=%d", hours)
        return JSONResponse(status_code=500, content={"error": "internal_error"})
