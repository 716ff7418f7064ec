"""WebSocket signaling endpoint."""
from __future__ import annotations

import json
import logging
from typing import Any, Optional

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect

from ..services.signaling import SignalingHub
from .deps import get_hub

logger = logging.getLogger(__name__)

router = APIRouter()


def decode_frame(frame: dict[str, Any]) -> Optional[dict]:
    """Return the JSON object carried by a text or binary frame, or None."""

    raw = frame.get("text")
    if raw is None:
        raw = frame.get("bytes")
    if raw is None:
        return None
    try:
        message = json.loads(raw)
    except ValueError:
        return None
    return message if isinstance(message, dict) else None


@router.websocket("/ws")
async def signaling_endpoint(websocket: WebSocket, hub: SignalingHub = Depends(get_hub)) -> None:
    """Relay join/offer/answer/ICE/chat envelopes between the two members of a room."""

    await websocket.accept()
    connection_id = hub.registry.register(websocket.send_json)

    try:
        while True:
            frame = await websocket.receive()
            if frame["type"] == "websocket.disconnect":
                break
            message = decode_frame(frame)
            if message is None:
                logger.warning("Ignoring frame from %s that is not a JSON object", connection_id)
                continue
            await hub.relay.handle(connection_id, message)
    except WebSocketDisconnect:
        pass
    finally:
        await hub.registry.unregister(connection_id)
