"""Hub de notificaciones en proceso (fan-out de lecturas aceptadas).

- Cada suscriptor tiene su propia cola acotada.
- publish() nunca bloquea ni lanza: si la cola de un suscriptor está
  llena, esa notificación se descarta solo para ese suscriptor.
- Un observador lento o caído no afecta a la ingesta ni a los demás.
"""

from __future__ import annotations

import itertools
import logging
import queue
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional

from ..core.clock import to_iso_z
from ..core.domain.sensor import SensorStatus
from ..metrics.prometheus import FANOUT_DROPPED

logger = logging.getLogger(__name__)

DEFAULT_SUBSCRIBER_QUEUE_SIZE = 1000

_CLOSED = object()


@dataclass(frozen=True)
class ReadingNotification:
    sensor_id: str
    status: SensorStatus
    observed_at: datetime
    source_payload: Mapping[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sensorId": self.sensor_id,
            "status": self.status.value,
            "observedAt": to_iso_z(self.observed_at),
            "sourcePayload": dict(self.source_payload),
        }


class Subscription:
    """Cola acotada de un suscriptor."""

    def __init__(self, name: str, maxsize: int):
        self.name = name
        self._queue: "queue.Queue[Any]" = queue.Queue(maxsize=maxsize)
        self._closed = threading.Event()
        self.delivered = 0
        self.dropped = 0

    @property
    def maxsize(self) -> int:
        return self._queue.maxsize

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def offer(self, notification: ReadingNotification) -> bool:
        if self.closed:
            return False
        try:
            self._queue.put(notification, block=False)
        except queue.Full:
            self.dropped += 1
            FANOUT_DROPPED.labels(subscriber=self.name).inc()
            return False
        self.delivered += 1
        return True

    def get(self, timeout: Optional[float] = None) -> Optional[ReadingNotification]:
        """Siguiente notificación o None (timeout o suscripción cerrada)."""
        if self.closed and self._queue.empty():
            return None
        try:
            item = self._queue.get(timeout=timeout)
        except queue.Empty:
            return None
        if item is _CLOSED:
            return None
        return item

    def close(self) -> None:
        self._closed.set()
        try:
            # Despierta a un consumidor bloqueado en get()
            self._queue.put(_CLOSED, block=False)
        except queue.Full:
            pass

    def pending(self) -> int:
        return self._queue.qsize()


class FanoutNotifier:
    """Publicación best-effort hacia N suscriptores."""

    def __init__(self, default_queue_size: int = DEFAULT_SUBSCRIBER_QUEUE_SIZE):
        self._default_queue_size = default_queue_size
        self._subscriptions: List[Subscription] = []
        self._lock = threading.Lock()
        self._ids = itertools.count(1)
        self._published = 0

    def subscribe(self, name: Optional[str] = None, maxsize: Optional[int] = None) -> Subscription:
        sub = Subscription(
            name or f"subscriber-{next(self._ids)}",
            maxsize if maxsize is not None else self._default_queue_size,
        )
        with self._lock:
            self._subscriptions.append(sub)
        logger.info("[FANOUT] Subscribed name=%s maxsize=%d", sub.name, sub.maxsize)
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        sub.close()
        with self._lock:
            if sub in self._subscriptions:
                self._subscriptions.remove(sub)
        logger.info("[FANOUT] Unsubscribed name=%s dropped=%d", sub.name, sub.dropped)

    def publish(self, notification: ReadingNotification) -> int:
        """Entrega a cada suscriptor con hueco. Retorna cuántos la recibieron."""
        with self._lock:
            subscribers = list(self._subscriptions)

        self._published += 1
        delivered = 0
        for sub in subscribers:
            if sub.offer(notification):
                delivered += 1
            else:
                logger.debug("[FANOUT] Dropped notification sensor=%s subscriber=%s",
                             notification.sensor_id, sub.name)
        return delivered

    def close(self) -> None:
        with self._lock:
            subscribers = list(self._subscriptions)
            self._subscriptions.clear()
        for sub in subscribers:
            sub.close()

    def get_stats(self) -> dict:
        with self._lock:
            subscribers = list(self._subscriptions)
        return {
            "published": self._published,
            "subscribers": [
                {
                    "name": s.name,
                    "pending": s.pending(),
                    "delivered": s.delivered,
                    "dropped": s.dropped,
                }
                for s in subscribers
            ],
        }
