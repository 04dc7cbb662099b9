"""Observadores del hub de notificaciones."""

from __future__ import annotations

import json
import logging
import threading
from typing import Callable, Optional

import redis

from .notifier import FanoutNotifier, ReadingNotification, Subscription

logger = logging.getLogger(__name__)

DEFAULT_STREAM = "readings:accepted"
DEFAULT_MAX_LEN = 10000


class ObserverWorker:
    """Thread que drena una suscripción hacia un callback.

    Los errores del callback se loggean y no detienen el worker.
    """

    def __init__(
        self,
        notifier: FanoutNotifier,
        callback: Callable[[ReadingNotification], None],
        *,
        name: str,
        maxsize: Optional[int] = None,
        poll_timeout: float = 0.5,
    ):
        self._notifier = notifier
        self._callback = callback
        self._name = name
        self._maxsize = maxsize
        self._poll_timeout = poll_timeout
        self._subscription: Optional[Subscription] = None
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()

        self.handled = 0
        self.failures = 0

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._subscription = self._notifier.subscribe(self._name, self._maxsize)
        self._thread = threading.Thread(target=self._run, name=f"airq-observer-{self._name}", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 2.0) -> None:
        self._stop_event.set()
        if self._subscription is not None:
            self._notifier.unsubscribe(self._subscription)
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None
        logger.info("[FANOUT] Observer %s stopped handled=%d failures=%d",
                    self._name, self.handled, self.failures)

    def _run(self) -> None:
        sub = self._subscription
        while not self._stop_event.is_set() and sub is not None:
            notification = sub.get(timeout=self._poll_timeout)
            if notification is None:
                if sub.closed:
                    break
                continue
            try:
                self._callback(notification)
                self.handled += 1
            except Exception:
                self.failures += 1
                logger.exception("[FANOUT] Observer %s failed sensor=%s", self._name, notification.sensor_id)


class RedisStreamObserver:
    """Publica cada lectura aceptada en un Redis Stream (puente al dashboard)."""

    def __init__(
        self,
        client: "redis.Redis",
        stream_name: str = DEFAULT_STREAM,
        max_len: int = DEFAULT_MAX_LEN,
    ):
        self._client = client
        self._stream = stream_name
        self._max_len = max_len

    @classmethod
    def from_url(cls, url: str, **kwargs) -> "RedisStreamObserver":
        client = redis.Redis.from_url(url, socket_timeout=5.0, socket_connect_timeout=5.0)
        return cls(client, **kwargs)

    @property
    def stream_name(self) -> str:
        return self._stream

    def __call__(self, notification: ReadingNotification) -> None:
        data = notification.to_dict()
        self._client.xadd(
            self._stream,
            {
                "sensor_id": notification.sensor_id,
                "status": notification.status.value,
                "observed_at": data["observedAt"],
                "payload": json.dumps(data["sourcePayload"], sort_keys=True),
            },
            maxlen=self._max_len,
            approximate=True,
        )
        logger.debug("[REDIS] Published: sensor_id=%s stream=%s", notification.sensor_id, self._stream)
