"""WebSocket transport for realtime chat events.

Endpoint: ``/ws/chat?user_id=...``

On connect the socket receives ``{"type": "connected", "user_id": ...}`` and
is subscribed to ``user:{user_id}:rooms``. Notifier payloads are forwarded
unchanged (``{"topic", "event", "data"}``).

Client frames:
    - ``{"type": "subscribe", "room_id": 1}``      follow a room (participants only)
    - ``{"type": "unsubscribe", "room_id": 1}``
    - ``{"type": "typing", "room_id": 1, "is_typing": true}``
    - ``{"type": "read", "room_id": 1, "message_id": 42}``
    - ``{"type": "ping"}``

Errors are reported as ``{"type": "error", "error": ..., "error_type": ...}``
and never close the socket.
"""
import json
import logging
from typing import Optional

from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect

from schoolchat.deps import get_service, verify_gateway_token
from schoolchat.errors import ChatError, NotifierUnavailable
from schoolchat.realtime.connections import manager

logger = logging.getLogger(__name__)

router = APIRouter(tags=["realtime"])


async def _send_error(websocket: WebSocket, error: str, error_type: str = "InvalidFrame") -> None:
    await websocket.send_json({"type": "error", "error": error, "error_type": error_type})


def _room_id(data: dict) -> Optional[int]:
    try:
        return int(data.get("room_id"))
    except (TypeError, ValueError):
        return None


@router.websocket("/ws/chat")
async def websocket_chat_endpoint(
    websocket: WebSocket,
    user_id: str = Query(...),
    token: Optional[str] = Query(None),
):
    """Realtime chat socket for one user."""
    if not user_id.strip() or not verify_gateway_token(token):
        await websocket.close(code=1008)  # 1008 = Policy Violation
        return

    service = get_service()
    await websocket.accept()
    try:
        connection = manager.connect(websocket, user_id, service.notifier)
    except NotifierUnavailable:
        await websocket.close(code=1011)
        return

    await websocket.send_json({"type": "connected", "user_id": user_id})

    try:
        while True:
            raw = await websocket.receive_text()
            try:
                data = json.loads(raw)
            except ValueError:
                await _send_error(websocket, "Frames must be valid JSON")
                continue
            if not isinstance(data, dict):
                await _send_error(websocket, "Frames must be JSON objects")
                continue
            frame_type = data.get("type")

            if frame_type == "ping":
                await websocket.send_json({"type": "pong"})
                continue

            room_id = _room_id(data)
            if room_id is None:
                await _send_error(websocket, f"room_id is required for {frame_type!r} frames")
                continue

            try:
                if frame_type == "subscribe":
                    service.store.require_participant(room_id, user_id)
                    connection.subscribe_room(room_id)
                    await websocket.send_json({"type": "subscribed", "room_id": room_id})
                    continue

                if frame_type == "unsubscribe":
                    connection.unsubscribe_room(room_id)
                    await websocket.send_json({"type": "unsubscribed", "room_id": room_id})
                    continue

                if frame_type == "typing":
                    await service.set_typing(room_id, user_id, bool(data.get("is_typing", True)))
                    continue

                if frame_type == "read":
                    message_id = data.get("message_id")
                    if not isinstance(message_id, int):
                        await _send_error(websocket, "message_id must be an integer")
                        continue
                    cursor = await service.mark_read(room_id, user_id, message_id)
                    await websocket.send_json({
                        "type": "read_ack",
                        "room_id": room_id,
                        "last_read_message_id": cursor,
                    })
                    continue

                await _send_error(websocket, f"Invalid frame type: {frame_type}")
            except ChatError as exc:
                await _send_error(websocket, exc.message, type(exc).__name__)

    except WebSocketDisconnect:
        logger.debug("Socket for %s closed by client", user_id)
    finally:
        manager.disconnect(connection)
