"""Guardia de idempotencia.

CLAVE DE DEDUPLICACIÓN: ``{sensor_id}:{epoch_seconds(observed_at)}``
- observed_at truncado al segundo
- idéntica para MQTT y webhook (la entrada es la lectura canónica)

Dos niveles:
1. Cache en proceso (TTL) que corta redeliveries inmediatas del broker
2. Re-chequeo en el almacén + constraint único (sensor_id, dedup_key)
   como árbitro final
"""

from __future__ import annotations

import logging
import math
import threading
import time
from collections import OrderedDict
from datetime import datetime
from typing import Optional

from ..core.clock import ensure_utc
from ..core.domain.reading import TelemetryReading
from ..metrics.prometheus import DEDUP_CACHE_SIZE

logger = logging.getLogger(__name__)


def dedup_key_for(sensor_id: str, observed_at: datetime) -> str:
    seconds = math.floor(ensure_utc(observed_at).timestamp())
    return f"{sensor_id}:{seconds}"


class DedupGuard:
    """Cache de claves ya persistidas (clave → data_id)."""

    def __init__(self, ttl_seconds: float = 300.0, max_size: int = 10000):
        self._ttl = ttl_seconds
        self._max_size = max_size
        self._cache: "OrderedDict[str, tuple[str, float]]" = OrderedDict()
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0

    @staticmethod
    def key_for(reading: TelemetryReading) -> str:
        return dedup_key_for(reading.sensor_id, reading.observed_at)

    def recall(self, key: str) -> Optional[str]:
        """Retorna el data_id si la clave se persistió hace poco."""
        now = time.monotonic()
        with self._lock:
            entry = self._cache.get(key)
            if entry is not None and now - entry[1] <= self._ttl:
                self._hits += 1
                return entry[0]
            if entry is not None:
                del self._cache[key]
            self._misses += 1
            return None

    def remember(self, key: str, data_id: str) -> None:
        """Marca la clave como vista. Solo tras una persistencia exitosa."""
        with self._lock:
            self._cache[key] = (data_id, time.monotonic())
            self._cache.move_to_end(key)
            while len(self._cache) > self._max_size:
                self._cache.popitem(last=False)
            DEDUP_CACHE_SIZE.set(len(self._cache))

    @property
    def stats(self) -> dict:
        total = self._hits + self._misses
        return {
            "size": len(self._cache),
            "max_size": self._max_size,
            "ttl_seconds": self._ttl,
            "hits": self._hits,
            "misses": self._misses,
            "hit_rate": self._hits / total if total > 0 else 0,
        }
