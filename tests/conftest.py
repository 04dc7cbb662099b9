"""Fixtures compartidos: almacén SQLite en memoria y pipeline armado."""

import json
import time
from datetime import datetime, timezone
from typing import Any, Dict

import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from airq_ingest.core.domain import Sensor
from airq_ingest.fanout import FanoutNotifier
from airq_ingest.infrastructure.persistence import SqlDocumentStore, create_schema
from airq_ingest.metrics.buffer import MetricsBuffer, MetricsBufferConfig
from airq_ingest.pipeline import DedupGuard, IngestionPipeline

SENSOR_ID = "AQ-001"


def device_payload(ts: Any = None, **overrides) -> Dict[str, Any]:
    """Payload del firmware con todos los canales."""
    payload = {
        "ts": int(time.time()) if ts is None else ts,
        "PM1": 3,
        "PM25": 7.5,
        "PM10": 11,
        "O3": 0.41,
        "O3c": 12.0,
        "NO2v": 0.32,
        "NO2": 18,
        "VOCv": 0.9,
        "COv": 0.4,
        "CO": 210,
        "temp": 21.3,
        "hum": 48,
        "pres": 1012,
    }
    payload.update(overrides)
    return payload


def device_json(ts: Any = None, **overrides) -> str:
    return json.dumps(device_payload(ts, **overrides))


@pytest.fixture
def engine():
    eng = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    create_schema(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def store(engine) -> SqlDocumentStore:
    return SqlDocumentStore(engine)


@pytest.fixture
def sensor(store) -> Sensor:
    s = Sensor(id=SENSOR_ID, name="Estación Centro", frequency_minutes=5.0)
    store.create_sensor(s)
    return s


@pytest.fixture
def metrics_buffer(store) -> MetricsBuffer:
    # Sin start(): los tests hacen flush explícito
    return MetricsBuffer(store.write_events, MetricsBufferConfig(capacity=100, flush_interval=60.0))


@pytest.fixture
def notifier() -> FanoutNotifier:
    return FanoutNotifier(default_queue_size=10)


@pytest.fixture
def pipeline(store, metrics_buffer, notifier) -> IngestionPipeline:
    return IngestionPipeline(
        store,
        dedup=DedupGuard(ttl_seconds=60, max_size=100),
        metrics_buffer=metrics_buffer,
        notifier=notifier,
    )


@pytest.fixture
def received_at() -> datetime:
    return datetime.now(timezone.utc).replace(microsecond=0)
