from __future__ import annotations

import json
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, WebSocket, WebSocketDisconnect, status

from src.therapy_sessions.config import settings
from src.therapy_sessions.security import authenticate_websocket, provision_from_gateway
from src.therapy_sessions.services.directory.service import directory_service
from src.therapy_sessions.services.presence.registry import WebSocketChannel, presence_registry

logger = logging.getLogger(__name__)

router = APIRouter(tags=["realtime"])


def _error(message: str) -> Dict[str, Any]:
    return {"type": "error", "payload": {"message": message}}


def _register(
    channel: WebSocketChannel,
    message: Dict[str, Any],
    connection_user_id: Optional[str] = None,
) -> Dict[str, Any]:
    """Handle the registration handshake and return the reply frame.

    The user must exist in the directory. A declared role is optional but
    must agree with the directory when present. When the gateway identified
    the connection, only that user may register on it.
    """

    user_id: Optional[str] = message.get("user_id")
    if not user_id:
        return _error("user_id is required")
    if connection_user_id is not None and str(user_id) != connection_user_id:
        return _error("user_id does not match connection identity")

    user = directory_service.get_user(str(user_id))
    if user is None:
        return _error("Unknown user")

    declared_role = message.get("role")
    if declared_role is not None and declared_role != user.role.value:
        return _error("Role does not match user")

    # One connection carries one identity; drop any earlier binding first.
    presence_registry.unregister(channel)
    presence_registry.register(user.id, user.role, channel)
    logger.info("Registered %s %s for push delivery", user.role.value, user.id)
    return {"type": "registered", "payload": {"user_id": user.id, "role": user.role.value}}


@router.websocket("/ws")
async def realtime_channel(websocket: WebSocket) -> None:
    """Push channel for session request events.

    When ENABLE_API_AUTH is on, the handshake must carry the key in
    ``X-API-Key`` or the ``api_key`` query parameter, otherwise it is
    refused with 1008.

    Protocol (JSON text frames):

    - Client -> server ``{"type": "register", "user_id": ..., "role": ...}``
      after every connect; the server answers ``{"type": "registered"}``.
      Presence is not kept across reconnects, so clients should re-read
      their state (``GET /session-requests/my`` or ``GET /session-requests``)
      once registered.
    - Client -> server ``{"type": "ping"}``; server answers ``{"type": "pong"}``.
    - Server -> client ``{"type": <event>, "payload": {...}}`` for
      ``new_session_request``, ``session_request_updated`` and
      ``session_request_deleted``.
    """

    if not await authenticate_websocket(websocket):
        return

    connection_user_id = websocket.headers.get("x-user-id")
    try:
        provision_from_gateway(
            connection_user_id,
            websocket.headers.get("x-user-role"),
            name=websocket.headers.get("x-user-name"),
            child_ids=websocket.headers.get("x-child-ids"),
        )
    except ValueError:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason="Unknown user role")
        return

    await websocket.accept()
    channel = WebSocketChannel(websocket)

    try:
        while True:
            frame = await websocket.receive()
            if frame["type"] == "websocket.disconnect":
                break

            text_msg = frame.get("text")
            if text_msg is None:
                await websocket.send_json(_error("Only JSON text frames are supported"))
                continue

            if len(text_msg.encode("utf-8")) > settings.max_ws_bytes:
                await websocket.send_json(_error("Message too large"))
                await websocket.close(code=status.WS_1009_MESSAGE_TOO_BIG)
                break

            try:
                message = json.loads(text_msg)
            except json.JSONDecodeError:
                await websocket.send_json(_error("Invalid JSON"))
                continue
            if not isinstance(message, dict):
                await websocket.send_json(_error("Expected a JSON object"))
                continue

            msg_type = message.get("type")
            if msg_type == "register":
                await websocket.send_json(_register(channel, message, connection_user_id))
            elif msg_type == "ping":
                await websocket.send_json({"type": "pong"})
            else:
                await websocket.send_json(_error(f"Unsupported message type: {msg_type}"))
    except WebSocketDisconnect:
        # Client went away; presence is cleaned up below.
        pass
    finally:
        user_id = presence_registry.unregister(channel)
        if user_id is not None:
            logger.info("Unregistered %s after disconnect", user_id)
