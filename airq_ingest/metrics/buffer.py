"""Buffer de eventos de ingesta con flush periódico.

Características:
- Flush por cantidad (capacity) o por tiempo (flush_interval)
- Una sola escritura en lote por flush
- Si el flush falla, los eventos vuelven al frente del buffer
- Tope total (max_buffered): al superarlo se descartan los más antiguos
- stop() intenta un flush final acotado por timeout
"""

from __future__ import annotations

import logging
import os
import threading
import time
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence

from ..core.domain.events import IngestionEvent
from .prometheus import METRICS_BUFFER_DROPPED

logger = logging.getLogger(__name__)

EventWriter = Callable[[Sequence[IngestionEvent]], int]


@dataclass
class MetricsBufferConfig:
    capacity: int = 100
    flush_interval: float = 30.0  # segundos
    max_buffered: int = 1000

    @classmethod
    def from_env(cls) -> "MetricsBufferConfig":
        return cls(
            capacity=int(os.getenv("METRICS_BUFFER_CAPACITY", "100")),
            flush_interval=float(os.getenv("METRICS_FLUSH_INTERVAL_SECONDS", "30")),
            max_buffered=int(os.getenv("METRICS_MAX_BUFFERED", "1000")),
        )


class MetricsBuffer:
    """Acumula IngestionEvents y los escribe en lote."""

    def __init__(self, writer: EventWriter, config: Optional[MetricsBufferConfig] = None):
        """Inicializa el buffer.

        Args:
            writer: escritura en lote (p.ej. SqlDocumentStore.write_events)
            config: capacidad, intervalo y tope
        """
        self._writer = writer
        self._config = config or MetricsBufferConfig()

        self._buffer: List[IngestionEvent] = []
        self._lock = threading.Lock()
        self._flush_lock = threading.Lock()
        self._wake = threading.Event()
        self._stop_event = threading.Event()
        self._flush_thread: Optional[threading.Thread] = None

        # Métricas
        self._total_recorded = 0
        self._total_flushed = 0
        self._total_dropped = 0
        self._flush_failures = 0

    @property
    def config(self) -> MetricsBufferConfig:
        return self._config

    def start(self) -> None:
        """Inicia el thread de flush periódico."""
        if self._flush_thread is not None and self._flush_thread.is_alive():
            return

        self._stop_event.clear()
        self._flush_thread = threading.Thread(target=self._flush_loop, name="airq-metrics-flush", daemon=True)
        self._flush_thread.start()
        logger.info(
            "MetricsBuffer started capacity=%d flush_interval=%.1fs max_buffered=%d",
            self._config.capacity,
            self._config.flush_interval,
            self._config.max_buffered,
        )

    def stop(self, timeout: float = 5.0) -> bool:
        """Detiene el buffer con un flush final acotado.

        Returns:
            True si no quedaron eventos pendientes
        """
        deadline = time.monotonic() + timeout
        self._stop_event.set()
        self._wake.set()

        if self._flush_thread is not None:
            self._flush_thread.join(timeout=max(0.0, deadline - time.monotonic()))
            self._flush_thread = None

        final = threading.Thread(target=self.flush, name="airq-metrics-final-flush", daemon=True)
        final.start()
        final.join(timeout=max(0.0, deadline - time.monotonic()))

        pending = self.pending
        if final.is_alive() or pending:
            logger.warning("MetricsBuffer stopped with pending=%d events", pending)
        logger.info(
            "MetricsBuffer stopped. Stats: recorded=%d, flushed=%d, dropped=%d",
            self._total_recorded,
            self._total_flushed,
            self._total_dropped,
        )
        return not final.is_alive() and pending == 0

    def record(self, event: IngestionEvent) -> None:
        """Encola un evento. Nunca bloquea la ingesta."""
        with self._lock:
            self._buffer.append(event)
            self._total_recorded += 1
            self._enforce_cap_locked()
            reached_capacity = len(self._buffer) >= self._config.capacity

        if reached_capacity:
            self._wake.set()

    def flush(self) -> int:
        """Escribe todo lo pendiente en una sola operación.

        Returns:
            Número de eventos escritos (0 si falló o no había nada)
        """
        with self._flush_lock:
            with self._lock:
                if not self._buffer:
                    return 0
                batch = self._buffer
                self._buffer = []

            try:
                self._writer(batch)
            except Exception as e:
                # Cualquier fallo del writer: re-encolar al frente
                self._flush_failures += 1
                logger.error("MetricsBuffer flush error (%d events re-queued): %s", len(batch), e)
                with self._lock:
                    self._buffer = batch + self._buffer
                    self._enforce_cap_locked()
                return 0

            self._total_flushed += len(batch)
            logger.debug("MetricsBuffer flushed %d events", len(batch))
            return len(batch)

    def _enforce_cap_locked(self) -> None:
        overflow = len(self._buffer) - self._config.max_buffered
        if overflow > 0:
            del self._buffer[:overflow]
            self._total_dropped += overflow
            METRICS_BUFFER_DROPPED.inc(overflow)
            logger.warning("MetricsBuffer full, dropped %d oldest events", overflow)

    def _flush_loop(self) -> None:
        while not self._stop_event.is_set():
            self._wake.wait(self._config.flush_interval)
            self._wake.clear()
            if self._stop_event.is_set():
                break
            self.flush()

    @property
    def pending(self) -> int:
        with self._lock:
            return len(self._buffer)

    def get_stats(self) -> dict:
        return {
            "pending": self.pending,
            "total_recorded": self._total_recorded,
            "total_flushed": self._total_flushed,
            "total_dropped": self._total_dropped,
            "flush_failures": self._flush_failures,
            "capacity": self._config.capacity,
            "flush_interval": self._config.flush_interval,
            "max_buffered": self._config.max_buffered,
        }
