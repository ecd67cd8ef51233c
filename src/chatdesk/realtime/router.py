"""WebSocket endpoint for the realtime gateway."""

import json
import logging
from typing import Optional

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect

from chatdesk.auth.context import RequestContext
from chatdesk.auth.dependencies import bearer_token
from chatdesk.common.responses import ok
from chatdesk.policy.gate import require_master

logger = logging.getLogger(__name__)

router = APIRouter(tags=["realtime"])


def _get_gateway():
    from chatdesk.deps import get_gateway
    return get_gateway()


def _socket_token(websocket: WebSocket) -> Optional[str]:
    return websocket.query_params.get("token") or bearer_token(websocket.headers.get("authorization"))


@router.websocket("/realtime")
async def realtime_socket(websocket: WebSocket):
    """Frames are JSON objects ``{"event": str, "data": object}`` in both directions."""
    gateway = _get_gateway()
    await websocket.accept()
    session = await gateway.connect(websocket, _socket_token(websocket))
    if session is None:
        return

    try:
        while True:
            raw = await websocket.receive_text()
            try:
                message = json.loads(raw)
            except ValueError:
                await websocket.send_json({
                    "event": "error",
                    "data": {"code": "VALIDATION_ERROR", "message": "Frames must be JSON"},
                })
                continue
            await gateway.handle(session, message)
            if session.state != "connected":
                break
    except WebSocketDisconnect:
        logger.debug("Socket %s disconnected", session.socket_id)
    finally:
        await gateway.disconnect(session)


@router.get("/realtime/stats")
async def realtime_stats(ctx: RequestContext = Depends(require_master())):
    return ok(_get_gateway().stats())
