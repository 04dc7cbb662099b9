"""Rate Limiter para el webhook de ingesta.

Ventana fija por (clientId, IP de origen):
- RATE_LIMIT_WINDOW_SECONDS (default: 60)
- RATE_LIMIT_MAX_REQUESTS (default: 1000)
- RATE_LIMIT_ENABLED (default: 1)

Contadores:
- InMemoryCounterStore → un solo proceso (Lock)
- RedisCounterStore    → varios procesos (INCR + EXPIRE en pipeline atómico)

Si el almacén de contadores falla, se deja pasar la request (fail-open):
un limitador caído no debe tumbar la ingesta.
"""

from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass
from threading import Lock
from typing import Callable, Dict, Optional, Protocol, Tuple

import redis
from fastapi import Request

logger = logging.getLogger(__name__)


@dataclass
class RateLimitConfig:
    """Configuración de rate limiting."""
    window_seconds: int = 60
    max_requests: int = 1000
    enabled: bool = True

    @classmethod
    def from_env(cls) -> "RateLimitConfig":
        return cls(
            window_seconds=int(os.getenv("RATE_LIMIT_WINDOW_SECONDS", "60")),
            max_requests=int(os.getenv("RATE_LIMIT_MAX_REQUESTS", "1000")),
            enabled=os.getenv("RATE_LIMIT_ENABLED", "1").strip() in ("1", "true", "yes"),
        )


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    count: int
    limit: int
    retry_after_seconds: int = 0


class CounterStore(Protocol):
    def increment(self, key: str, window_seconds: int) -> int:
        """Incrementa y retorna el conteo de la ventana actual."""
        ...


class InMemoryCounterStore:
    """Contadores por ventana fija en memoria."""

    def __init__(self, clock: Callable[[], float] = time.time, cleanup_interval_seconds: float = 60.0):
        self._clock = clock
        self._lock = Lock()
        # key -> (window_start, count)
        self._counters: Dict[str, Tuple[float, int]] = {}
        self._cleanup_interval = cleanup_interval_seconds
        self._last_cleanup = clock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._counters)

    def increment(self, key: str, window_seconds: int) -> int:
        now = self._clock()
        window_start = (now // window_seconds) * window_seconds

        with self._lock:
            if now - self._last_cleanup > self._cleanup_interval:
                self._prune_before(window_start)
                self._last_cleanup = now

            stored_start, count = self._counters.get(key, (window_start, 0))
            if stored_start < window_start:
                count = 0
            count += 1
            self._counters[key] = (window_start, count)
            return count

    def cleanup_old_entries(self, max_age_seconds: int = 3600) -> int:
        """Limpia ventanas antiguas para evitar memory leak.

        Returns:
            Número de entradas eliminadas
        """
        cutoff = self._clock() - max_age_seconds
        with self._lock:
            return self._prune_before(cutoff)

    def _prune_before(self, cutoff: float) -> int:
        # Llamar con el lock tomado
        old_keys = [k for k, (start, _) in self._counters.items() if start < cutoff]
        for k in old_keys:
            del self._counters[k]
        if old_keys:
            logger.debug("RATE_LIMIT_CLEANUP removed=%d entries", len(old_keys))
        return len(old_keys)


class RedisCounterStore:
    """Contadores compartidos en Redis (INCR + EXPIRE NX atómicos)."""

    KEY_PREFIX = "rate_limit"

    def __init__(self, client: "redis.Redis", clock: Callable[[], float] = time.time):
        self._client = client
        self._clock = clock

    @classmethod
    def from_url(cls, url: str) -> "RedisCounterStore":
        return cls(redis.Redis.from_url(url, socket_timeout=5.0))

    def increment(self, key: str, window_seconds: int) -> int:
        window_index = int(self._clock() // window_seconds)
        redis_key = f"{self.KEY_PREFIX}:{key}:{window_index}"

        pipe = self._client.pipeline(transaction=True)
        pipe.incr(redis_key)
        pipe.expire(redis_key, window_seconds * 2, nx=True)
        count, _ = pipe.execute()
        return int(count)


class WebhookRateLimiter:
    """Limitador por (clientId, IP). Un rechazo no muta ningún otro estado."""

    def __init__(self, config: Optional[RateLimitConfig] = None, store: Optional[CounterStore] = None):
        self.config = config or RateLimitConfig.from_env()
        self._store: CounterStore = store if store is not None else InMemoryCounterStore()
        self._rejected = 0
        self._store_failures = 0

    @staticmethod
    def key_for(client_id: str, source_address: str) -> str:
        return f"{client_id}:{source_address}"

    def check(self, client_id: str, source_address: str) -> RateLimitDecision:
        limit = self.config.max_requests
        if not self.config.enabled:
            return RateLimitDecision(True, 0, limit)

        key = self.key_for(client_id, source_address)
        try:
            count = self._store.increment(key, self.config.window_seconds)
        except (redis.RedisError, OSError) as e:
            self._store_failures += 1
            logger.warning("RATE_LIMIT_STORE_UNAVAILABLE key=%s err=%s (fail-open)", key, type(e).__name__)
            return RateLimitDecision(True, 0, limit)

        if count > limit:
            self._rejected += 1
            logger.warning("RATE_LIMIT_EXCEEDED key=%s count=%d limit=%d", key, count, limit)
            return RateLimitDecision(False, count, limit, retry_after_seconds=self.config.window_seconds)

        return RateLimitDecision(True, count, limit)

    def get_stats(self) -> dict:
        return {
            "enabled": self.config.enabled,
            "window_seconds": self.config.window_seconds,
            "max_requests": self.config.max_requests,
            "rejected": self._rejected,
            "store_failures": self._store_failures,
            "store": type(self._store).__name__,
        }


def get_client_ip(request: Request) -> str:
    """Obtiene la IP del cliente considerando proxies."""
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()

    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip.strip()

    if request.client:
        return request.client.host

    return "unknown"
