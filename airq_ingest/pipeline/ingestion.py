"""Pipeline de ingesta compartido por el listener MQTT y el webhook.

Flujo único (ambos adapters delegan aquí, sin lógica duplicada):

    payload → JSON → Transformer → Validator → lookup sensor →
    Dedup → persistencia + estado → evento de métricas → fan-out

Cada intento produce exactamente un IngestionEvent.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional, Union

from ..core.clock import utc_now
from ..core.domain.events import IngestionEvent, IngestOutcomeKind, IngestSource, new_request_id
from ..core.domain.reading import TelemetryReading
from ..core.domain.sensor import Sensor, SensorStatus
from ..core.transform import TransformFailure, transform_device_payload
from ..core.validation import DEFAULT_MAX_FUTURE_SKEW, validate_reading
from ..errors import ErrorKind, IngestError, PersistenceError, RejectReason, UnknownSensorError
from ..fanout.notifier import FanoutNotifier, ReadingNotification
from ..infrastructure.persistence.store import DocumentStore
from ..metrics.buffer import MetricsBuffer
from ..metrics.prometheus import MESSAGES_TOTAL, PROCESSING_SECONDS
from ..status.engine import DEFAULT_THRESHOLDS, StatusThresholds, derive_status, promote_status
from .dedup import DedupGuard

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IngestOutcome:
    """Resultado tipado de un intento de ingesta."""
    outcome: IngestOutcomeKind
    request_id: str
    received_at: datetime
    sensor_id: Optional[str] = None
    reason: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    field: Optional[str] = None
    detail: str = ""
    data_id: Optional[str] = None
    status: Optional[SensorStatus] = None
    duplicate: bool = False
    reading: Optional[TelemetryReading] = None

    @property
    def accepted(self) -> bool:
        return self.outcome is IngestOutcomeKind.ACCEPTED


class IngestionPipeline:
    def __init__(
        self,
        store: DocumentStore,
        *,
        dedup: Optional[DedupGuard] = None,
        metrics_buffer: Optional[MetricsBuffer] = None,
        notifier: Optional[FanoutNotifier] = None,
        thresholds: StatusThresholds = DEFAULT_THRESHOLDS,
        max_future_skew: timedelta = DEFAULT_MAX_FUTURE_SKEW,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._store = store
        self._dedup = dedup or DedupGuard()
        self._metrics_buffer = metrics_buffer
        self._notifier = notifier
        self._thresholds = thresholds
        self._max_future_skew = max_future_skew
        self._clock = clock

        self._stats = {
            "accepted": 0,
            "duplicates": 0,
            "rejected": 0,
            "errors": 0,
        }

    @property
    def store(self) -> DocumentStore:
        return self._store

    @property
    def dedup(self) -> DedupGuard:
        return self._dedup

    def lookup_sensor(self, sensor_id: str) -> Optional[Sensor]:
        """Raises PersistenceError si el almacén falla."""
        return self._store.get_sensor(sensor_id)

    # ------------------------------------------------------------------
    # Entrada principal
    # ------------------------------------------------------------------

    def ingest(
        self,
        payload: Union[str, bytes],
        *,
        sensor_id: str,
        source: IngestSource,
        topic: Optional[str] = None,
        sensor: Optional[Sensor] = None,
        received_at: Optional[datetime] = None,
        request_id: Optional[str] = None,
        started: Optional[float] = None,
        payload_size: Optional[int] = None,
    ) -> IngestOutcome:
        """Procesa un payload de dispositivo de punta a punta.

        Args:
            payload: JSON del dispositivo (texto o bytes UTF-8)
            sensor_id: extraído del topic
            source: vía de ingreso (mqtt / webhook)
            topic: topic original, para métricas
            sensor: sensor ya resuelto por el adapter (evita un segundo lookup)
            received_at: instante de recepción (default: ahora)
            request_id: id del intento (default: generado)
            started: perf_counter del inicio del request (para la duración)
            payload_size: tamaño del cuerpo recibido en bytes

        Returns:
            IngestOutcome (nunca lanza por datos inválidos ni fallos del almacén)
        """
        started = started if started is not None else time.perf_counter()
        received_at = received_at or self._clock()
        request_id = request_id or new_request_id(source)
        if payload_size is None:
            payload_size = len(payload) if isinstance(payload, bytes) else len(payload.encode("utf-8"))

        outcome = self._process(
            payload,
            sensor_id=sensor_id,
            source=source,
            sensor=sensor,
            received_at=received_at,
            request_id=request_id,
        )

        self._record(
            outcome,
            source=source,
            topic=topic,
            started=started,
            payload_size=payload_size,
        )
        return outcome

    def handle_broker_message(self, sensor_id: str, payload: bytes, topic: str) -> IngestOutcome:
        """Adapter del listener MQTT: los fallos se loggean y se descartan."""
        outcome = self.ingest(payload, sensor_id=sensor_id, source=IngestSource.MQTT, topic=topic)

        if outcome.accepted:
            logger.info(
                "[MQTT] Reading accepted sensor=%s data_id=%s status=%s duplicate=%s",
                sensor_id,
                outcome.data_id,
                outcome.status.value if outcome.status else None,
                outcome.duplicate,
            )
        elif outcome.outcome is IngestOutcomeKind.REJECTED:
            logger.warning(
                "[MQTT] Reading rejected sensor=%s reason=%s field=%s",
                sensor_id,
                outcome.reason,
                outcome.field,
            )
        else:
            logger.error("[MQTT] Reading dropped sensor=%s reason=%s", sensor_id, outcome.reason)
        return outcome

    def record_rejection(
        self,
        *,
        request_id: str,
        received_at: datetime,
        started: float,
        reason: str,
        source: IngestSource,
        sensor_id: Optional[str] = None,
        topic: Optional[str] = None,
        payload_size: int = 0,
        outcome: IngestOutcomeKind = IngestOutcomeKind.REJECTED,
    ) -> None:
        """Registra un intento cortado por el adapter (auth, envelope, topic, rate limit...)."""
        self._record(
            IngestOutcome(
                outcome=outcome,
                request_id=request_id,
                received_at=received_at,
                sensor_id=sensor_id,
                reason=reason,
            ),
            source=source,
            topic=topic,
            started=started,
            payload_size=payload_size,
        )

    # ------------------------------------------------------------------
    # Internos
    # ------------------------------------------------------------------

    def _reject(self, base: dict, kind: ErrorKind, reason: str, field: Optional[str] = None, detail: str = "") -> IngestOutcome:
        return IngestOutcome(
            outcome=IngestOutcomeKind.REJECTED,
            error_kind=kind,
            reason=reason,
            field=field,
            detail=detail,
            **base,
        )

    def _error(self, base: dict, error: IngestError, reading: TelemetryReading) -> IngestOutcome:
        return IngestOutcome(
            outcome=IngestOutcomeKind.ERROR,
            error_kind=error.kind,
            reason=error.reason,
            reading=reading,
            **base,
        )

    def _process(
        self,
        payload: Union[str, bytes],
        *,
        sensor_id: str,
        source: IngestSource,
        sensor: Optional[Sensor],
        received_at: datetime,
        request_id: str,
    ) -> IngestOutcome:
        base = {"request_id": request_id, "received_at": received_at, "sensor_id": sensor_id}

        # 1. JSON
        try:
            text = payload.decode("utf-8") if isinstance(payload, bytes) else payload
            raw = json.loads(text)
        except (UnicodeDecodeError, ValueError) as e:
            return self._reject(base, ErrorKind.TRANSFORM_ERROR, RejectReason.INVALID_PAYLOAD, detail=type(e).__name__)

        # 2. Transformer
        transformed = transform_device_payload(raw, sensor_id, received_at=received_at, raw_payload=text)
        if isinstance(transformed, TransformFailure):
            return self._reject(base, ErrorKind.TRANSFORM_ERROR, transformed.reason, transformed.field, transformed.detail)
        reading = transformed

        # 3. Validator
        validation = validate_reading(reading, now=received_at, max_future_skew=self._max_future_skew)
        if not validation.valid:
            return self._reject(base, ErrorKind.VALIDATION_ERROR, validation.reason, validation.field, validation.detail)

        # 4. Sensor
        try:
            if sensor is None:
                sensor = self._store.get_sensor(sensor_id)
        except PersistenceError as e:
            return self._error(base, e, reading)
        if sensor is None:
            return self._reject(base, ErrorKind.UNKNOWN_SENSOR, RejectReason.UNKNOWN_SENSOR)

        # 5. Dedup (cache en proceso)
        key = self._dedup.key_for(reading)
        cached_id = self._dedup.recall(key)
        if cached_id is not None:
            return IngestOutcome(
                outcome=IngestOutcomeKind.ACCEPTED,
                data_id=cached_id,
                status=sensor.status,
                duplicate=True,
                reading=reading,
                **base,
            )

        # 6. Persistencia + estado (una transacción)
        try:
            result = self._store.accept_reading(
                reading,
                dedup_key=key,
                received_at=received_at,
                source=source,
                resolve_status=self._status_resolver(received_at),
            )
        except UnknownSensorError as e:
            return self._reject(base, e.kind, e.reason)
        except PersistenceError as e:
            return self._error(base, e, reading)

        self._dedup.remember(key, result.data_id)

        # 7. Fan-out (solo lecturas nuevas)
        if not result.duplicate:
            self._notify(reading, result.status)

        return IngestOutcome(
            outcome=IngestOutcomeKind.ACCEPTED,
            data_id=result.data_id,
            status=result.status,
            duplicate=result.duplicate,
            reading=reading,
            **base,
        )

    def _status_resolver(self, now: datetime):
        thresholds = self._thresholds

        def resolve(sensor: Sensor, last_seen: datetime) -> SensorStatus:
            derived = derive_status(last_seen, sensor.frequency_minutes, now, thresholds)
            return promote_status(sensor.status, derived)

        return resolve

    def _notify(self, reading: TelemetryReading, status: SensorStatus) -> None:
        if self._notifier is None:
            return
        try:
            self._notifier.publish(
                ReadingNotification(
                    sensor_id=reading.sensor_id,
                    status=status,
                    observed_at=reading.observed_at,
                    source_payload=reading.to_document(),
                )
            )
        except Exception:
            logger.exception("[FANOUT] Publish failed sensor=%s", reading.sensor_id)

    def _record(
        self,
        outcome: IngestOutcome,
        *,
        source: IngestSource,
        topic: Optional[str],
        started: float,
        payload_size: int,
    ) -> None:
        elapsed = time.perf_counter() - started

        if outcome.outcome is IngestOutcomeKind.ACCEPTED:
            self._stats["duplicates" if outcome.duplicate else "accepted"] += 1
        elif outcome.outcome is IngestOutcomeKind.REJECTED:
            self._stats["rejected"] += 1
        else:
            self._stats["errors"] += 1

        MESSAGES_TOTAL.labels(source=source.value, outcome=outcome.outcome.value).inc()
        PROCESSING_SECONDS.labels(source=source.value).observe(elapsed)

        if self._metrics_buffer is None:
            return
        self._metrics_buffer.record(
            IngestionEvent(
                request_id=outcome.request_id,
                received_at=outcome.received_at,
                processing_duration_ms=round(elapsed * 1000, 3),
                outcome=outcome.outcome,
                reject_reason=outcome.reason,
                sensor_id=outcome.sensor_id,
                payload_size_bytes=payload_size,
                source=source,
                topic=topic,
            )
        )

    def get_stats(self) -> dict:
        return dict(self._stats, dedup=self._dedup.stats)
