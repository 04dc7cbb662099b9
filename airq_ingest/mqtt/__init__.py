"""Listener MQTT (vía persistente de ingreso)."""

from .listener import BrokerListener, ListenerConfig, ListenerState
from .stats import ListenerStats

__all__ = ["BrokerListener", "ListenerConfig", "ListenerState", "ListenerStats"]
