"""Signaling websocket endpoint."""
from __future__ import annotations

import json
import logging
from uuid import uuid4

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from ..schemas import signaling as schemas
from ..services.signaling import SignalingConnection, SignalingRelay

router = APIRouter()

logger = logging.getLogger(__name__)


def get_relay(websocket: WebSocket) -> SignalingRelay:
    return websocket.app.state.relay


@router.websocket("/ws")
async def signaling_endpoint(websocket: WebSocket) -> None:
    """Pair hosts and viewers by sharing code and relay SDP/ICE between them."""

    relay = get_relay(websocket)
    connection_id = str(uuid4())
    await websocket.accept()

    connection = SignalingConnection(connection_id=connection_id, send=websocket.send_json)
    await relay.connect(connection)
    await connection.deliver({"type": schemas.CONNECTED, "id": connection_id})

    try:
        while True:
            raw = await websocket.receive_text()
            try:
                message = json.loads(raw)
            except json.JSONDecodeError:
                logger.warning("Ignoring non-JSON frame from %s", connection_id)
                continue
            if not isinstance(message, dict):
                continue
            reply = await relay.handle(connection_id, message)
            if reply is not None:
                await connection.deliver(reply)
    except WebSocketDisconnect:
        pass
    finally:
        await relay.disconnect(connection_id)
