"""Fan-out de lecturas aceptadas hacia observadores."""

from .notifier import FanoutNotifier, ReadingNotification, Subscription
from .observers import ObserverWorker, RedisStreamObserver

__all__ = [
    "FanoutNotifier",
    "ObserverWorker",
    "ReadingNotification",
    "RedisStreamObserver",
    "Subscription",
]
