"""WebSocket endpoint for live sessions.

Clients connect to ``/ws?token=<jwt>`` (or send ``Authorization: Bearer``)
and then exchange JSON frames tagged by ``type``. See ``chatpulse.protocol``
for the command and notification shapes.
"""
import logging

from fastapi import APIRouter, WebSocket

from chatpulse.runtime import get_runtime

from .session import ChatSession

logger = logging.getLogger(__name__)

router = APIRouter(tags=["session"])


@router.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket) -> None:
    """Run one session from handshake to teardown."""
    session = ChatSession(websocket, get_runtime())
    logger.debug("[WS] New connection, session %s", session.session_id)
    await session.run()
