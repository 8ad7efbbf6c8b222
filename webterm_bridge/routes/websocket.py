"""WebSocket endpoint — terminal I/O and session events for browser clients."""

from __future__ import annotations

import json
import logging

from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect

from ..auth import authorize_websocket
from ..connections import ConnectionManager, ConnectionMetadata
from ..errors import InvalidIntent
from ..handlers import IntentDispatcher
from ..models import WSEventType

logger = logging.getLogger(__name__)

router = APIRouter(tags=["websocket"])


@router.websocket("/api/ws")
async def websocket_endpoint(
    websocket: WebSocket,
    token: str = Query(default=""),
):
    """WebSocket endpoint for terminal sessions.

    Clients send JSON intents (``{"type": ..., "id": ..., "data": {...}}``)
    and receive event envelopes.  Intents from one client are handled in
    the order they arrive.  Authentication is via the `token` query parameter.
    """
    if not await authorize_websocket(websocket, token):
        return

    manager: ConnectionManager = websocket.app.state.connections
    dispatcher: IntentDispatcher = websocket.app.state.dispatcher

    client = websocket.client
    metadata = ConnectionMetadata(
        remote_addr=f"{client.host}:{client.port}" if client else "",
        user_agent=websocket.headers.get("user-agent", ""),
    )
    conn = await manager.connect(websocket, metadata)
    reason = "client disconnected"
    try:
        while True:
            text = await websocket.receive_text()
            # Bare "ping" keepalive from simple clients
            if text.strip().lower() == "ping":
                manager.send(conn.id, WSEventType.PONG)
                continue
            try:
                message = json.loads(text)
            except ValueError:
                manager.send(conn.id, WSEventType.ERROR, InvalidIntent("Message is not valid JSON").to_payload())
                continue
            if not isinstance(message, dict):
                manager.send(conn.id, WSEventType.ERROR, InvalidIntent("Message must be a JSON object").to_payload())
                continue
            await dispatcher.dispatch(conn.id, message)
    except WebSocketDisconnect:
        pass
    except Exception:
        reason = "error"
        logger.debug("WebSocket error", exc_info=True)
    finally:
        await manager.disconnect(conn.id, reason)
