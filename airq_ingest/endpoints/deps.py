from __future__ import annotations

from fastapi import HTTPException, Request, WebSocket

from ..context import AppContext


def get_context(request: Request) -> AppContext:
    ctx = getattr(request.app.state, "context", None)
    if ctx is None:
        raise HTTPException(status_code=503, detail="service not ready")
    return ctx


def get_ws_context(websocket: WebSocket) -> AppContext | None:
    return getattr(websocket.app.state, "context", None)
