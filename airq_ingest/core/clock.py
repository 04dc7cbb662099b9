"""Utilidades de tiempo: todo instante interno es UTC con tzinfo."""

from __future__ import annotations

from datetime import datetime, timezone


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Normaliza a UTC. Un datetime naive se interpreta como UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_iso_z(value: datetime) -> str:
    """ISO-8601 en UTC con milisegundos y sufijo Z (formato de los documentos)."""
    return ensure_utc(value).isoformat(timespec="milliseconds").replace("+00:00", "Z")
