"""Feed en vivo de lecturas aceptadas (observer WebSocket del fan-out)."""

from __future__ import annotations

import asyncio
import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect, status

from ..fanout.notifier import Subscription
from .deps import get_ws_context

router = APIRouter(tags=["live"])
logger = logging.getLogger(__name__)

_POLL_TIMEOUT = 1.0
# Etiqueta fija: una serie de métricas para todas las conexiones
SUBSCRIBER_NAME = "websocket"


@router.websocket("/ws/readings")
async def readings_feed(websocket: WebSocket):
    ctx = get_ws_context(websocket)
    if ctx is None:
        await websocket.close(code=status.WS_1013_TRY_AGAIN_LATER)
        return

    conn_id = f"{id(websocket):x}"
    # Suscrito antes del handshake: nada publicado tras el accept se pierde
    sub = ctx.notifier.subscribe(name=SUBSCRIBER_NAME)
    try:
        await websocket.accept()
        logger.info("[WS] Subscriber connected conn=%s", conn_id)
        await _stream(websocket, sub, conn_id)
    finally:
        ctx.notifier.unsubscribe(sub)
        logger.info("[WS] Subscriber disconnected conn=%s dropped=%d", conn_id, sub.dropped)


async def _stream(websocket: WebSocket, sub: Subscription, conn_id: str) -> None:
    async def pump() -> None:
        while not sub.closed:
            notification = await asyncio.to_thread(sub.get, _POLL_TIMEOUT)
            if notification is None:
                continue
            await websocket.send_json(notification.to_dict())

    async def drain() -> None:
        # Solo detecta la desconexión del cliente
        while True:
            await websocket.receive_text()

    pump_task = asyncio.create_task(pump())
    drain_task = asyncio.create_task(drain())
    try:
        done, _ = await asyncio.wait({pump_task, drain_task}, return_when=asyncio.FIRST_COMPLETED)
        for task in done:
            exc = task.exception()
            if exc is not None and not isinstance(exc, WebSocketDisconnect):
                logger.warning("[WS] Feed ended conn=%s err=%s", conn_id, type(exc).__name__)
    finally:
        pump_task.cancel()
        drain_task.cancel()
