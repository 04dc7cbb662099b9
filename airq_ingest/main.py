"""Aplicación FastAPI del servicio de ingesta de calidad de aire."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from . import __version__
from .context import AppContext
from .endpoints import health_router, live_router, webhook_router

logger = logging.getLogger(__name__)


def create_app(context: Optional[AppContext] = None) -> FastAPI:
    """Construye la app.

    Si no se inyecta ``context``, el lifespan lo arma desde el entorno.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if app.state.context is None:
            app.state.context = AppContext.from_settings()
        ctx: AppContext = app.state.context
        ctx.start()
        logger.info("[APP] Air quality ingest service v%s ready", __version__)
        try:
            yield
        finally:
            await ctx.stop()

    app = FastAPI(title="Air Quality Ingest Service", version=__version__, lifespan=lifespan)
    app.state.context = context

    app.include_router(health_router)
    app.include_router(webhook_router)
    app.include_router(live_router)
    return app
