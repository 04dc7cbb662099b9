"""Webhook de ingesta (vía sin estado, invocada por el bridge del broker).

Orden de chequeos:
1. Bearer                → 401
2. Sobre (pydantic)      → 400 invalid_envelope
3. Topic                 → 400 invalid_topic
4. Rate limit            → 429
5. Sensor                → 404
6. Pipeline compartido   → 400 / 200 / 500

Cada llamada deja exactamente un IngestionEvent.
"""

from __future__ import annotations

import logging
import time
from typing import Optional

from fastapi import APIRouter, Depends, Header, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from ..auth import verify_bearer
from ..context import AppContext
from ..core.clock import to_iso_z, utc_now
from ..core.domain.events import IngestOutcomeKind, IngestSource, new_request_id
from ..core.topics import SENSOR_TOPIC_TEMPLATE, extract_sensor_id
from ..errors import ErrorKind, PersistenceError, RejectReason
from ..rate_limiter import get_client_ip
from ..schemas import WebhookAccepted, WebhookEnvelope, WebhookRejected
from .deps import get_context

router = APIRouter(tags=["ingest"])
logger = logging.getLogger(__name__)


def _rejected(status_code: int, error: str, request_id: str, *, kind: Optional[str] = None,
              field: Optional[str] = None, extra: Optional[dict] = None,
              headers: Optional[dict] = None) -> JSONResponse:
    body = WebhookRejected(error=error, kind=kind, field=field, request_id=request_id).model_dump(by_alias=True)
    if extra:
        body.update(extra)
    return JSONResponse(status_code=status_code, content=body, headers=headers)


@router.post("/ingest")
async def receive_webhook(
    request: Request,
    ctx: AppContext = Depends(get_context),
    authorization: Optional[str] = Header(default=None),
):
    started = time.perf_counter()
    received_at = utc_now()
    request_id = new_request_id(IngestSource.WEBHOOK)
    body = await request.body()
    size = len(body)

    def reject(reason: str, *, sensor_id: Optional[str] = None, topic: Optional[str] = None,
               outcome: IngestOutcomeKind = IngestOutcomeKind.REJECTED) -> None:
        ctx.pipeline.record_rejection(
            request_id=request_id,
            received_at=received_at,
            started=started,
            reason=reason,
            source=IngestSource.WEBHOOK,
            sensor_id=sensor_id,
            topic=topic,
            payload_size=size,
            outcome=outcome,
        )

    # 1. Autenticación
    if not verify_bearer(authorization, ctx.webhook_secret):
        logger.warning("WEBHOOK_UNAUTHORIZED request_id=%s ip=%s", request_id, get_client_ip(request))
        reject(RejectReason.UNAUTHORIZED)
        return _rejected(401, RejectReason.UNAUTHORIZED, request_id)

    # 2. Sobre
    try:
        envelope = WebhookEnvelope.model_validate_json(body)
    except ValidationError as e:
        reject(RejectReason.INVALID_ENVELOPE)
        details = [
            {"loc": ".".join(str(p) for p in err.get("loc", ())), "msg": err.get("msg", "")}
            for err in e.errors()
        ]
        return _rejected(400, RejectReason.INVALID_ENVELOPE, request_id, extra={"details": details})

    # 3. Topic
    sensor_id = extract_sensor_id(envelope.topic)
    if sensor_id is None:
        reject(RejectReason.INVALID_TOPIC, topic=envelope.topic)
        return _rejected(
            400,
            RejectReason.INVALID_TOPIC,
            request_id,
            extra={"expected": SENSOR_TOPIC_TEMPLATE, "received": envelope.topic},
        )

    # 4. Rate limit
    decision = ctx.rate_limiter.check(envelope.clientid, get_client_ip(request))
    if not decision.allowed:
        reject(RejectReason.RATE_LIMITED, sensor_id=sensor_id, topic=envelope.topic)
        return _rejected(
            429,
            RejectReason.RATE_LIMITED,
            request_id,
            kind=ErrorKind.RATE_LIMITED.value,
            headers={"Retry-After": str(decision.retry_after_seconds)},
        )

    # 5. Sensor
    try:
        sensor = await run_in_threadpool(ctx.pipeline.lookup_sensor, sensor_id)
    except PersistenceError:
        logger.exception("WEBHOOK_LOOKUP_FAILED request_id=%s sensor=%s", request_id, sensor_id)
        reject(RejectReason.PERSISTENCE_ERROR, sensor_id=sensor_id, topic=envelope.topic,
               outcome=IngestOutcomeKind.ERROR)
        return JSONResponse(status_code=500, content={"success": False, "error": RejectReason.INTERNAL_ERROR,
                                                      "requestId": request_id})
    if sensor is None:
        reject(RejectReason.UNKNOWN_SENSOR, sensor_id=sensor_id, topic=envelope.topic)
        return _rejected(404, RejectReason.UNKNOWN_SENSOR, request_id,
                         kind=ErrorKind.UNKNOWN_SENSOR.value, extra={"sensorId": sensor_id})

    # 6. Pipeline compartido
    outcome = await run_in_threadpool(
        lambda: ctx.pipeline.ingest(
            envelope.payload,
            sensor_id=sensor_id,
            source=IngestSource.WEBHOOK,
            topic=envelope.topic,
            sensor=sensor,
            received_at=received_at,
            request_id=request_id,
            started=started,
            payload_size=size,
        )
    )

    if outcome.accepted:
        return WebhookAccepted(
            request_id=request_id,
            data_id=outcome.data_id,
            status=outcome.status.value,
            duplicate=outcome.duplicate,
            observed_at=to_iso_z(outcome.reading.observed_at),
            received_at=to_iso_z(received_at),
        ).model_dump(by_alias=True)

    if outcome.outcome is IngestOutcomeKind.ERROR:
        # Sin detalles internos al cliente
        logger.error("WEBHOOK_PIPELINE_ERROR request_id=%s sensor=%s reason=%s",
                     request_id, sensor_id, outcome.reason)
        return JSONResponse(status_code=500, content={"success": False, "error": RejectReason.INTERNAL_ERROR,
                                                      "requestId": request_id})

    status_code = 404 if outcome.error_kind is ErrorKind.UNKNOWN_SENSOR else 400
    logger.info("WEBHOOK_REJECTED request_id=%s sensor=%s reason=%s field=%s",
                request_id, sensor_id, outcome.reason, outcome.field)
    return _rejected(
        status_code,
        outcome.reason,
        request_id,
        kind=outcome.error_kind.value if outcome.error_kind else None,
        field=outcome.field,
    )


@router.get("/ingest")
def webhook_descriptor():
    """Descriptor estático de liveness del webhook."""
    return {
        "service": "MQTT Webhook",
        "status": "active",
        "endpoint": "/ingest",
        "method": "POST",
        "timestamp": to_iso_z(utc_now()),
    }
