from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv


def _default_env_file() -> str:
    # .env junto al repo; las variables reales del entorno siempre ganan.
    repo_root = Path(__file__).resolve().parents[1]
    return str(repo_root / ".env")


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


def _env_optional(name: str) -> Optional[str]:
    value = os.getenv(name, "").strip()
    return value or None


@dataclass(frozen=True)
class Settings:
    database_url: Optional[str]

    # Partes para SQL Server cuando DATABASE_URL no está definido
    db_host: str
    db_port: int
    db_user: str
    db_password: str
    db_name: str
    odbc_driver: str

    redis_url: Optional[str]
    redis_stream_enabled: bool

    mqtt_listener_enabled: bool

    webhook_secret: Optional[str]
    max_future_skew_seconds: float
    status_sweep_interval_seconds: float


def get_settings() -> Settings:
    # Carga el .env (si existe) sin pisar variables ya definidas.
    env_file = os.getenv("AIRQ_ENV_FILE", _default_env_file())
    if env_file and Path(env_file).exists():
        load_dotenv(env_file, override=False)

    return Settings(
        database_url=_env_optional("DATABASE_URL"),
        db_host=os.getenv("DB_HOST", "localhost"),
        db_port=int(os.getenv("DB_PORT", "1433")),
        db_user=os.getenv("DB_USER", "sa"),
        db_password=os.getenv("DB_PASSWORD", ""),
        db_name=os.getenv("DB_NAME", "air_quality"),
        # Depende de la imagen: "ODBC Driver 17 for SQL Server" o 18
        odbc_driver=os.getenv("ODBC_DRIVER", "ODBC Driver 17 for SQL Server"),
        redis_url=_env_optional("REDIS_URL"),
        redis_stream_enabled=_env_bool("REDIS_STREAM_ENABLED", "0"),
        mqtt_listener_enabled=_env_bool("MQTT_LISTENER_ENABLED", "0"),
        webhook_secret=_env_optional("MQTT_WEBHOOK_SECRET"),
        max_future_skew_seconds=float(os.getenv("INGEST_MAX_FUTURE_SKEW_SECONDS", "300")),
        status_sweep_interval_seconds=float(os.getenv("STATUS_SWEEP_INTERVAL_SECONDS", "300")),
    )
