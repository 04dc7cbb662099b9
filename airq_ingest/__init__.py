"""Servicio de ingesta de telemetría de calidad del aire."""

__version__ = "0.4.0"
