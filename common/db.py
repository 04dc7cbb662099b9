from __future__ import annotations

from typing import Optional
from urllib.parse import quote_plus
import logging

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine

from .config import Settings, get_settings


logger = logging.getLogger(__name__)


def build_sqlalchemy_url(settings: Settings) -> str:
    if settings.database_url:
        return settings.database_url

    # Forma odbc_connect: soporta contraseñas con caracteres especiales,
    # drivers con espacios y la sintaxis SERVER=host,port.
    odbc_str = (
        f"DRIVER={{{settings.odbc_driver}}};"
        f"SERVER={settings.db_host},{settings.db_port};"
        f"DATABASE={settings.db_name};"
        f"UID={settings.db_user};"
        f"PWD={settings.db_password};"
        "TrustServerCertificate=yes;"
    )

    return f"mssql+pyodbc:///?odbc_connect={quote_plus(odbc_str)}"


def get_engine(settings: Optional[Settings] = None, *, probe: bool = True) -> Engine:
    settings = settings or get_settings()
    url = build_sqlalchemy_url(settings)

    if settings.database_url:
        logger.info("[DB] Crear engine desde DATABASE_URL dialect=%s", url.split(":", 1)[0])
    else:
        # Sin contraseña en logs
        logger.info(
            "[DB] Crear engine SQL Server host=%s port=%s db=%s user=%s driver=%s",
            settings.db_host,
            settings.db_port,
            settings.db_name,
            settings.db_user,
            settings.odbc_driver,
        )

    engine = create_engine(url, pool_pre_ping=True)

    if probe:
        try:
            with engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            logger.info("[DB] Test de conexión OK")
        except Exception:
            logger.exception("[DB] Test de conexión FALLÓ")

    return engine
