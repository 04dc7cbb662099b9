"""Esquema del almacén de documentos (SQLAlchemy Core).

Tres colecciones:
- sensors           → registro de sensores + last_seen/status
- sensor_readings   → lecturas canónicas, única por (sensor_id, dedup_key)
- ingestion_events  → un registro por intento de ingesta (solo inserción)
"""

from __future__ import annotations

import logging

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Float,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
)
from sqlalchemy.engine import Engine

logger = logging.getLogger(__name__)

metadata = MetaData()

sensors = Table(
    "sensors",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("name", String(200), nullable=False, default=""),
    Column("frequency_minutes", Float, nullable=False, default=5.0),
    Column("last_seen", DateTime(timezone=True), nullable=True),
    Column("status", String(8), nullable=False, default="DEAD"),
    Column("is_active", Boolean, nullable=False, default=False),
    Column("updated_at", DateTime(timezone=True), nullable=True),
)

sensor_readings = Table(
    "sensor_readings",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("sensor_id", String(64), nullable=False),
    Column("dedup_key", String(100), nullable=False),
    Column("observed_at", DateTime(timezone=True), nullable=False),
    Column("received_at", DateTime(timezone=True), nullable=False),
    Column("source", String(16), nullable=False),
    Column("pm1_0", Float, nullable=False),
    Column("pm2_5", Float, nullable=False),
    Column("pm10", Float, nullable=False),
    Column("o3_raw", Float, nullable=False),
    Column("o3_corrige", Float, nullable=False),
    Column("no2_voltage_v", Float, nullable=False),
    Column("no2_ppb", Float, nullable=False),
    Column("voc_voltage_v", Float, nullable=False),
    Column("co_voltage_v", Float, nullable=False),
    Column("co_ppb", Float, nullable=False),
    Column("temperature", Float, nullable=True),
    Column("humidity", Float, nullable=True),
    Column("pressure", Float, nullable=True),
    Column("raw_payload", Text, nullable=False),
    Column("document", Text, nullable=False),
    UniqueConstraint("sensor_id", "dedup_key", name="uq_sensor_readings_dedup"),
    Index("ix_sensor_readings_sensor_observed", "sensor_id", "observed_at"),
)

ingestion_events = Table(
    "ingestion_events",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("request_id", String(64), nullable=False),
    Column("received_at", DateTime(timezone=True), nullable=False),
    Column("processing_duration_ms", Float, nullable=False),
    Column("outcome", String(16), nullable=False),
    Column("reject_reason", String(64), nullable=True),
    Column("sensor_id", String(64), nullable=True),
    Column("payload_size_bytes", Integer, nullable=False, default=0),
    Column("source", String(16), nullable=False),
    Column("topic", String(200), nullable=True),
    Index("ix_ingestion_events_received_at", "received_at"),
)


def create_schema(engine: Engine) -> None:
    """Crea las tablas que falten (idempotente)."""
    metadata.create_all(engine)
    logger.info("[DB] Schema ready tables=%s", ",".join(sorted(metadata.tables)))
