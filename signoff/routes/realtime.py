"""
WebSocket feed of approval events.

Clients connect to ``/ws/approvals?token=<access token>`` and receive
``{"event": "approval:...", "data": {...}}`` frames for their organisation.
A text frame of ``ping`` is answered with ``pong``.
"""

from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect, status
from jose import JWTError
import structlog

from signoff.dependencies import broadcast_hub
from signoff.middleware.auth import actor_from_token

logger = structlog.get_logger()
router = APIRouter()


@router.websocket("/ws/approvals")
async def approvals_feed(websocket: WebSocket, token: str = Query(...)):
    try:
        actor = actor_from_token(token)
    except (JWTError, ValueError) as e:
        logger.warning("ws_auth_failed", error=str(e))
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await websocket.accept()
    broadcast_hub.connect(actor.organisation_id, websocket)
    try:
        while True:
            message = await websocket.receive_text()
            if message == "ping":
                await websocket.send_text("pong")
    except WebSocketDisconnect:
        pass
    finally:
        broadcast_hub.disconnect(actor.organisation_id, websocket)
