"""Almacén de documentos sobre SQLAlchemy.

Contrato mínimo que usa el pipeline (DocumentStore) y su implementación
SQL. Toda excepción de SQLAlchemy se traduce a PersistenceError para que
los adapters la mapeen a outcome=error (500 en webhook, drop en MQTT).
"""

from __future__ import annotations

import logging
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, Iterator, List, Mapping, Optional, Protocol, Sequence

from sqlalchemy import and_, bindparam, delete, func, insert, or_, select, text, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from ...core.clock import ensure_utc, utc_now
from ...core.domain.events import IngestionEvent, IngestOutcomeKind, IngestSource
from ...core.domain.reading import TelemetryReading
from ...core.domain.sensor import Sensor, SensorStatus
from ...errors import PersistenceError, UnknownSensorError
from .tables import ingestion_events, sensor_readings, sensors

logger = logging.getLogger(__name__)

# (sensor, last_seen efectivo) -> estado a persistir
StatusResolver = Callable[[Sensor, datetime], SensorStatus]


@dataclass(frozen=True)
class AcceptResult:
    data_id: str
    duplicate: bool
    status: SensorStatus
    last_seen: Optional[datetime]


class DocumentStore(Protocol):
    """Operaciones del almacén que necesita la ingesta."""

    def get_sensor(self, sensor_id: str) -> Optional[Sensor]: ...

    def update_sensor(self, sensor_id: str, **changes) -> bool: ...

    def create_reading(
        self,
        reading: TelemetryReading,
        *,
        dedup_key: str,
        received_at: datetime,
        source: IngestSource,
    ) -> str: ...

    def find_reading_by_dedup_key(self, sensor_id: str, dedup_key: str) -> Optional[str]: ...

    def list_all_sensors(self) -> List[Sensor]: ...

    def batch_update_statuses(self, changes: Mapping[str, SensorStatus]) -> int: ...

    def write_events(self, events: Sequence[IngestionEvent]) -> int: ...

    def accept_reading(
        self,
        reading: TelemetryReading,
        *,
        dedup_key: str,
        received_at: datetime,
        source: IngestSource,
        resolve_status: StatusResolver,
    ) -> AcceptResult: ...


@contextmanager
def _db_errors(operation: str) -> Iterator[None]:
    try:
        yield
    except SQLAlchemyError as e:
        logger.error("[DB] %s failed err=%s", operation, type(e).__name__)
        raise PersistenceError(f"{operation} failed") from e


def _row_to_sensor(row: Mapping) -> Sensor:
    last_seen = row["last_seen"]
    return Sensor(
        id=row["id"],
        name=row["name"] or "",
        frequency_minutes=float(row["frequency_minutes"]),
        last_seen=ensure_utc(last_seen) if last_seen is not None else None,
        status=SensorStatus.parse(row["status"]),
        is_active=bool(row["is_active"]),
    )


def _row_to_event(row: Mapping) -> IngestionEvent:
    return IngestionEvent(
        request_id=row["request_id"],
        received_at=ensure_utc(row["received_at"]),
        processing_duration_ms=float(row["processing_duration_ms"]),
        outcome=IngestOutcomeKind(row["outcome"]),
        reject_reason=row["reject_reason"],
        sensor_id=row["sensor_id"],
        payload_size_bytes=int(row["payload_size_bytes"] or 0),
        source=IngestSource(row["source"]),
        topic=row["topic"],
    )


class SqlDocumentStore:
    """Implementación SQL del almacén (SQL Server en producción, SQLite en tests)."""

    def __init__(self, engine: Engine):
        self._engine = engine

    @property
    def engine(self) -> Engine:
        return self._engine

    # ------------------------------------------------------------------
    # Sensores
    # ------------------------------------------------------------------

    def create_sensor(self, sensor: Sensor) -> None:
        """Alta de sensor (el aprovisionamiento real vive fuera del servicio)."""
        with _db_errors("create_sensor"), self._engine.begin() as conn:
            conn.execute(
                insert(sensors).values(
                    id=sensor.id,
                    name=sensor.name,
                    frequency_minutes=float(sensor.frequency_minutes),
                    last_seen=ensure_utc(sensor.last_seen) if sensor.last_seen else None,
                    status=sensor.status.value,
                    is_active=sensor.is_active,
                    updated_at=utc_now(),
                )
            )

    def get_sensor(self, sensor_id: str) -> Optional[Sensor]:
        with _db_errors("get_sensor"), self._engine.connect() as conn:
            row = conn.execute(select(sensors).where(sensors.c.id == sensor_id)).mappings().first()
        return _row_to_sensor(row) if row is not None else None

    def update_sensor(self, sensor_id: str, **changes) -> bool:
        if not changes:
            return False
        if isinstance(changes.get("status"), SensorStatus):
            changes["status"] = changes["status"].value
        if changes.get("last_seen") is not None:
            changes["last_seen"] = ensure_utc(changes["last_seen"])
        changes["updated_at"] = utc_now()

        with _db_errors("update_sensor"), self._engine.begin() as conn:
            result = conn.execute(update(sensors).where(sensors.c.id == sensor_id).values(**changes))
        return result.rowcount > 0

    def advance_last_seen(self, sensor_id: str, last_seen: datetime) -> bool:
        """Avanza last_seen solo hacia adelante. Retorna True si cambió."""
        ts = ensure_utc(last_seen)
        with _db_errors("advance_last_seen"), self._engine.begin() as conn:
            result = conn.execute(
                update(sensors)
                .where(
                    and_(
                        sensors.c.id == sensor_id,
                        or_(sensors.c.last_seen.is_(None), sensors.c.last_seen < ts),
                    )
                )
                .values(last_seen=ts, updated_at=utc_now())
            )
        return result.rowcount > 0

    def list_all_sensors(self) -> List[Sensor]:
        with _db_errors("list_all_sensors"), self._engine.connect() as conn:
            rows = conn.execute(select(sensors).order_by(sensors.c.id)).mappings().all()
        return [_row_to_sensor(r) for r in rows]

    def batch_update_statuses(self, changes: Mapping[str, SensorStatus]) -> int:
        """Escribe todos los cambios de estado en una sola transacción."""
        if not changes:
            return 0

        now = utc_now()
        params = [
            {"b_id": sensor_id, "b_status": status.value, "b_updated_at": now}
            for sensor_id, status in changes.items()
        ]
        stmt = (
            update(sensors)
            .where(sensors.c.id == bindparam("b_id"))
            .values(status=bindparam("b_status"), updated_at=bindparam("b_updated_at"))
        )
        with _db_errors("batch_update_statuses"), self._engine.begin() as conn:
            conn.execute(stmt, params)
        return len(params)

    def count_active_sensors_since(self, since: datetime) -> int:
        with _db_errors("count_active_sensors"), self._engine.connect() as conn:
            count = conn.execute(
                select(func.count()).select_from(sensors).where(sensors.c.last_seen >= ensure_utc(since))
            ).scalar_one()
        return int(count)

    # ------------------------------------------------------------------
    # Lecturas
    # ------------------------------------------------------------------

    @staticmethod
    def _reading_row(
        reading: TelemetryReading,
        *,
        data_id: str,
        dedup_key: str,
        received_at: datetime,
        source: IngestSource,
    ) -> dict:
        row = {
            "id": data_id,
            "sensor_id": reading.sensor_id,
            "dedup_key": dedup_key,
            "observed_at": reading.observed_at,
            "received_at": ensure_utc(received_at),
            "source": source.value,
            "raw_payload": reading.raw_payload,
            "document": reading.canonical_bytes().decode("utf-8"),
        }
        row.update(reading.channel_values())
        row.update(reading.environmental_values())
        return row

    def create_reading(
        self,
        reading: TelemetryReading,
        *,
        dedup_key: str,
        received_at: datetime,
        source: IngestSource,
    ) -> str:
        data_id = str(uuid.uuid4())
        row = self._reading_row(
            reading, data_id=data_id, dedup_key=dedup_key, received_at=received_at, source=source
        )
        with _db_errors("create_reading"), self._engine.begin() as conn:
            conn.execute(insert(sensor_readings).values(**row))
        return data_id

    def find_reading_by_dedup_key(self, sensor_id: str, dedup_key: str) -> Optional[str]:
        with _db_errors("find_reading_by_dedup_key"), self._engine.connect() as conn:
            return conn.execute(
                select(sensor_readings.c.id).where(
                    and_(
                        sensor_readings.c.sensor_id == sensor_id,
                        sensor_readings.c.dedup_key == dedup_key,
                    )
                )
            ).scalar()

    def get_reading_document(self, data_id: str) -> Optional[str]:
        """Documento canónico almacenado (JSON determinista)."""
        with _db_errors("get_reading_document"), self._engine.connect() as conn:
            return conn.execute(
                select(sensor_readings.c.document).where(sensor_readings.c.id == data_id)
            ).scalar()

    def count_readings(self, sensor_id: Optional[str] = None) -> int:
        stmt = select(func.count()).select_from(sensor_readings)
        if sensor_id is not None:
            stmt = stmt.where(sensor_readings.c.sensor_id == sensor_id)
        with _db_errors("count_readings"), self._engine.connect() as conn:
            return int(conn.execute(stmt).scalar_one())

    def latest_observed_at_by_sensor(self) -> Dict[str, datetime]:
        stmt = select(
            sensor_readings.c.sensor_id,
            func.max(sensor_readings.c.observed_at).label("latest"),
        ).group_by(sensor_readings.c.sensor_id)
        with _db_errors("latest_observed_at"), self._engine.connect() as conn:
            rows = conn.execute(stmt).all()
        return {sensor_id: ensure_utc(latest) for sensor_id, latest in rows if latest is not None}

    def accept_reading(
        self,
        reading: TelemetryReading,
        *,
        dedup_key: str,
        received_at: datetime,
        source: IngestSource,
        resolve_status: StatusResolver,
    ) -> AcceptResult:
        """Inserta la lectura y actualiza el sensor en una misma transacción.

        - Clave de dedup existente → duplicado idempotente, sin escribir nada
        - last_seen solo avanza (UPDATE condicionado)
        - status lo decide ``resolve_status`` con el last_seen efectivo

        Raises:
            UnknownSensorError: el sensor no existe
            PersistenceError: fallo del almacén
        """
        data_id = str(uuid.uuid4())
        observed_at = reading.observed_at

        try:
            with self._engine.begin() as conn:
                row = conn.execute(
                    select(sensors).where(sensors.c.id == reading.sensor_id)
                ).mappings().first()
                if row is None:
                    raise UnknownSensorError(reading.sensor_id)
                sensor = _row_to_sensor(row)

                existing = conn.execute(
                    select(sensor_readings.c.id).where(
                        and_(
                            sensor_readings.c.sensor_id == reading.sensor_id,
                            sensor_readings.c.dedup_key == dedup_key,
                        )
                    )
                ).scalar()
                if existing is not None:
                    return AcceptResult(existing, True, sensor.status, sensor.last_seen)

                conn.execute(
                    insert(sensor_readings).values(
                        **self._reading_row(
                            reading,
                            data_id=data_id,
                            dedup_key=dedup_key,
                            received_at=received_at,
                            source=source,
                        )
                    )
                )

                if sensor.last_seen is None or observed_at > sensor.last_seen:
                    effective_last_seen = observed_at
                else:
                    effective_last_seen = sensor.last_seen
                new_status = resolve_status(sensor, effective_last_seen)

                conn.execute(
                    update(sensors)
                    .where(
                        and_(
                            sensors.c.id == reading.sensor_id,
                            or_(sensors.c.last_seen.is_(None), sensors.c.last_seen < observed_at),
                        )
                    )
                    .values(last_seen=observed_at)
                )
                conn.execute(
                    update(sensors)
                    .where(sensors.c.id == reading.sensor_id)
                    .values(status=new_status.value, is_active=True, updated_at=ensure_utc(received_at))
                )

            return AcceptResult(data_id, False, new_status, effective_last_seen)

        except IntegrityError:
            # Otro proceso insertó la misma clave entre el check y el insert
            existing = self.find_reading_by_dedup_key(reading.sensor_id, dedup_key)
            if existing is None:
                raise PersistenceError("accept_reading integrity failure")
            sensor = self.get_sensor(reading.sensor_id)
            logger.info("[DB] Dedup race resolved sensor=%s key=%s", reading.sensor_id, dedup_key)
            return AcceptResult(
                existing,
                True,
                sensor.status if sensor else SensorStatus.DEAD,
                sensor.last_seen if sensor else None,
            )
        except SQLAlchemyError as e:
            logger.error("[DB] accept_reading failed sensor=%s err=%s", reading.sensor_id, type(e).__name__)
            raise PersistenceError("accept_reading failed") from e

    # ------------------------------------------------------------------
    # Eventos de ingesta
    # ------------------------------------------------------------------

    def write_events(self, events: Sequence[IngestionEvent]) -> int:
        """Inserción en lote (executemany) de eventos de ingesta."""
        if not events:
            return 0
        rows = [e.to_row() for e in events]
        for row in rows:
            row["received_at"] = ensure_utc(row["received_at"])
        with _db_errors("write_events"), self._engine.begin() as conn:
            conn.execute(insert(ingestion_events), rows)
        return len(rows)

    def list_events_since(self, since: datetime) -> List[IngestionEvent]:
        stmt = (
            select(ingestion_events)
            .where(ingestion_events.c.received_at >= ensure_utc(since))
            .order_by(ingestion_events.c.received_at)
        )
        with _db_errors("list_events_since"), self._engine.connect() as conn:
            rows = conn.execute(stmt).mappings().all()
        return [_row_to_event(r) for r in rows]

    def delete_events_before(self, cutoff: datetime) -> int:
        with _db_errors("delete_events_before"), self._engine.begin() as conn:
            result = conn.execute(
                delete(ingestion_events).where(ingestion_events.c.received_at < ensure_utc(cutoff))
            )
        return result.rowcount or 0

    # ------------------------------------------------------------------
    # Salud
    # ------------------------------------------------------------------

    def ping(self) -> float:
        """Round-trip SELECT 1 en milisegundos."""
        start = time.perf_counter()
        with _db_errors("ping"), self._engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return (time.perf_counter() - start) * 1000
