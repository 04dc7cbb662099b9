"""Estadísticas del listener MQTT."""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional

from ..core.clock import to_iso_z, utc_now


@dataclass
class ListenerStats:
    started_at: Optional[datetime] = None
    connected_at: Optional[datetime] = None
    last_message_at: Optional[datetime] = None
    messages_received: int = 0
    messages_dropped: int = 0
    reconnect_count: int = 0
    errors: int = 0
    last_error: Optional[str] = None
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)
    _started_monotonic: Optional[float] = field(default=None, repr=False)

    def mark_started(self) -> None:
        with self._lock:
            self.started_at = utc_now()
            self._started_monotonic = time.monotonic()

    def mark_connected(self) -> None:
        with self._lock:
            self.connected_at = utc_now()

    def mark_disconnected(self) -> None:
        with self._lock:
            self.connected_at = None

    def record_message(self) -> None:
        with self._lock:
            self.messages_received += 1
            self.last_message_at = utc_now()

    def record_dropped(self) -> None:
        with self._lock:
            self.messages_dropped += 1

    def record_reconnect(self) -> None:
        with self._lock:
            self.reconnect_count += 1

    def record_error(self, message: str) -> None:
        with self._lock:
            self.errors += 1
            self.last_error = message

    def to_dict(self) -> Dict[str, Any]:
        with self._lock:
            uptime = time.monotonic() - self._started_monotonic if self._started_monotonic else 0.0
            return {
                "started_at": to_iso_z(self.started_at) if self.started_at else None,
                "connected_at": to_iso_z(self.connected_at) if self.connected_at else None,
                "last_message_at": to_iso_z(self.last_message_at) if self.last_message_at else None,
                "messages_received": self.messages_received,
                "messages_dropped": self.messages_dropped,
                "reconnect_count": self.reconnect_count,
                "errors": self.errors,
                "last_error": self.last_error,
                "uptime_seconds": round(uptime, 1),
            }
