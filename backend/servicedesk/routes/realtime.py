import asyncio
import json
import logging
from types import SimpleNamespace
from typing import Any

from fastapi import APIRouter, WebSocket, WebSocketDisconnect, status

from ..auth import resolve_session
from ..database import SessionLocal
from ..rbac import STAFF_ROOM, can_join_room
from ..realtime import CLOSE_SERVER_ERROR, ConnectionSession, RealtimeGateway

logger = logging.getLogger(__name__)

router = APIRouter(tags=["realtime"])


def _token_from(websocket: WebSocket) -> str | None:
    token = websocket.query_params.get("token")
    if token:
        return token
    header = websocket.headers.get("authorization", "")
    scheme, _, credentials = header.partition(" ")
    if scheme.lower() == "bearer" and credentials:
        return credentials
    return None


def _lookup_principal(token: str | None) -> SimpleNamespace | None:
    db = SessionLocal()
    try:
        user = resolve_session(db, token)
        if user is None:
            return None
        return SimpleNamespace(id=user.id, role=user.role)
    finally:
        db.close()


async def _handle_client_event(
    gateway: RealtimeGateway,
    connection: ConnectionSession,
    principal: SimpleNamespace,
    message: Any,
) -> None:
    if not isinstance(message, dict):
        connection.enqueue({"event": "error", "detail": "Expected a JSON object"})
        return
    event = message.get("event")
    room = message.get("room")
    if event == "join_room":
        if not isinstance(room, str) or not can_join_room(principal, room):
            connection.enqueue({"event": "error", "detail": "Forbidden room", "room": room})
            return
        await gateway.join(connection, room)
        connection.enqueue({"event": "joined", "room": room})
    elif event == "leave_room":
        if isinstance(room, str):
            await gateway.leave(connection, room)
        connection.enqueue({"event": "left", "room": room})
    elif event == "status_update":
        # a client changed something; nudge every staff dashboard to reload
        await gateway.broadcast(
            STAFF_ROOM, "refresh_dashboard", {"source": "client", "user_id": str(principal.id)}
        )
    elif event == "ping":
        connection.enqueue({"event": "pong"})
    else:
        connection.enqueue({"event": "error", "detail": f"Unknown event {event!r}"})


@router.websocket("/ws")
async def live_updates(websocket: WebSocket):
    # the lookup is blocking database work; keep it off the event loop
    principal = await asyncio.to_thread(_lookup_principal, _token_from(websocket))
    if principal is None:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return
    await websocket.accept()
    gateway: RealtimeGateway = websocket.app.state.gateway
    connection = await gateway.connect(
        websocket.send_json, user_id=principal.id, close=websocket.close
    )
    client_gone = False
    try:
        while not connection.closed:
            raw = await websocket.receive_text()
            if connection.closed:
                break
            try:
                message = json.loads(raw)
            except ValueError:
                connection.enqueue({"event": "error", "detail": "Malformed JSON"})
                continue
            await _handle_client_event(gateway, connection, principal, message)
    except WebSocketDisconnect:
        client_gone = True
        logger.debug("Connection %s closed by client", connection.id)
    finally:
        await gateway.on_disconnect(connection, code=None if client_gone else CLOSE_SERVER_ERROR)
