import json
import logging
from typing import Optional

from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect, status

from app.core.realtime import manager
from app.core.security import verify_access_token


logger = logging.getLogger(__name__)

router = APIRouter()


@router.websocket("/ws")
async def realtime_socket(
    websocket: WebSocket,
    tables: Optional[str] = Query(None, description="Comma separated, e.g. orders,inventory"),
    token: Optional[str] = Query(None, description="Access token"),
):
    """
    Table-change events for dashboard clients.

    Clients may send ``{"subscribe": ["returns"]}`` to add tables after
    connecting. Messages have the shape ``{table, event, record,
    commit_timestamp}``.
    """
    if not token or verify_access_token(token) is None:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    requested = [t.strip() for t in tables.split(",")] if tables else None
    await manager.connect(websocket, requested)
    try:
        while True:
            try:
                message = json.loads(await websocket.receive_text())
            except json.JSONDecodeError:
                continue
            if isinstance(message, dict) and isinstance(message.get("subscribe"), list):
                manager.subscribe(websocket, message["subscribe"])
    except WebSocketDisconnect:
        logger.debug("Realtime client disconnected")
    finally:
        manager.disconnect(websocket)
