"""WebSocket endpoint carrying the real-time chat protocol."""

from __future__ import annotations

import json
import logging
from typing import Annotated

from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect, status

from sealed_chat.core.errors import AuthorizationError
from sealed_chat.core.security import decode_access_token
from sealed_chat.services.connections import Connection
from sealed_chat.services.gateway import ClientSession

from ..dependencies import GatewayDep

logger = logging.getLogger(__name__)

router = APIRouter(tags=["socket"])


@router.websocket("/ws")
async def chat_socket(
    websocket: WebSocket,
    gateway: GatewayDep,
    token: Annotated[str | None, Query()] = None,
) -> None:
    """Authenticate the handshake, then feed every frame to the gateway."""
    try:
        user_id = decode_access_token(token or "")
    except AuthorizationError:
        logger.warning("Rejected socket handshake with invalid token")
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    if not await gateway.user_exists(user_id):
        logger.warning("Rejected socket handshake for unknown user %s", user_id)
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await websocket.accept()
    session = ClientSession(Connection(user_id, websocket))
    logger.info("Socket connected for %s", user_id)

    try:
        while True:
            raw = await websocket.receive_text()
            try:
                frame = json.loads(raw)
            except ValueError:
                await session.connection.send("error", {"error": "Frame is not valid JSON"})
                continue
            try:
                await gateway.dispatch(session, frame)
            except AuthorizationError:
                await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
                break
    except WebSocketDisconnect:
        logger.info("Socket disconnected for %s", user_id)
    finally:
        await gateway.disconnect(session)
