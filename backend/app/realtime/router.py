"""WebSocket endpoint for realtime messaging.

Connect with ``ws://<host>/ws?token=<jwt>`` (or an ``Authorization: Bearer``
header). See ``app.realtime.events`` for the frame types.
"""
import logging

from fastapi import APIRouter, WebSocket

from app.services import get_services

logger = logging.getLogger(__name__)

router = APIRouter(tags=["realtime"])

# Sent when the messaging services are not running yet
SERVICE_UNAVAILABLE_CLOSE_CODE = 1013


@router.websocket("/ws")
async def realtime_socket(websocket: WebSocket) -> None:
    services = get_services()
    if services is None:
        logger.warning("[WS] Connection refused: messaging services not started")
        await websocket.close(code=SERVICE_UNAVAILABLE_CLOSE_CODE)
        return
    await services.sessions.serve(websocket)
