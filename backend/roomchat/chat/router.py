"""Chat WebSocket endpoint.

    WebSocket /ws/chat?token=<jwt>

The token may also be sent as ``Authorization: Bearer <jwt>``. Connections
without a valid token are closed with 1008 (Policy Violation) before they
are accepted.

Every frame in both directions is a JSON envelope:

    {"event": "<name>", "data": <payload>}

On connect the server sends ``connected`` with the assigned session id,
then forwards inbound events to the room broadcast router.
"""
import asyncio
import json
import logging
import uuid
from typing import Any, Dict, Optional

from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect

from roomchat.errors import AuthError, StorageError

logger = logging.getLogger(__name__)

router = APIRouter()


def _bearer_token(websocket: WebSocket, token: Optional[str]) -> Optional[str]:
    if token:
        return token
    header = websocket.headers.get("authorization", "")
    scheme, _, credential = header.partition(" ")
    if scheme.lower() == "bearer" and credential:
        return credential.strip()
    return None


async def _read_envelope(websocket: WebSocket) -> Optional[Dict[str, Any]]:
    """Receive one frame; None if it is not a JSON ``{"event", "data"}`` object.

    Raises:
        WebSocketDisconnect: When the client goes away.
    """
    message = await websocket.receive()
    if message["type"] == "websocket.disconnect":
        raise WebSocketDisconnect(message.get("code", 1000))

    raw = message.get("text")
    if raw is None:
        raw = message.get("bytes")
    try:
        frame = json.loads(raw) if raw is not None else None
    except ValueError:
        return None
    if not isinstance(frame, dict) or not isinstance(frame.get("event"), str):
        return None
    return frame


@router.websocket("/ws/chat")
async def websocket_chat_endpoint(
    websocket: WebSocket,
    token: Optional[str] = Query(None),
):
    """Authenticated real-time chat connection.

    Inbound events: join_room, send_message, typing_start, typing_stop,
    disconnect. Outbound events: connected, room_joined, user_joined,
    new_message, user_typing, user_stopped_typing, error.
    """
    state = websocket.app.state
    try:
        identity = state.verifier.verify(_bearer_token(websocket, token))
    except AuthError as e:
        logger.info(f"[WS] Rejected connection: {e.message}")
        await websocket.close(code=1008)  # 1008 = Policy Violation
        return

    await websocket.accept()
    try:
        await asyncio.to_thread(state.store.upsert_user, identity.user_id, identity.user_name)
    except StorageError as e:
        logger.error(f"[WS] Could not record user {identity.user_id}: {e.message}")
        await websocket.close(code=1011)
        return

    broadcaster = state.broadcaster
    session = broadcaster.register(str(uuid.uuid4()), identity.user_id, identity.user_name)
    session.deliver("connected", {
        "sessionId": session.session_id,
        "userId": identity.user_id,
        "userName": identity.user_name,
    })
    pump = asyncio.create_task(session.outbox.pump(websocket.send_json))

    close_code = 1000
    try:
        while not session.closed:
            frame = await _read_envelope(websocket)
            if frame is None:
                session.deliver("error", {
                    "message": "Frames must be {\"event\": ..., \"data\": ...}",
                    "code": "validation_error",
                    "event": None,
                    "roomId": None,
                })
                continue
            await broadcaster.dispatch(session, frame["event"], frame.get("data"))
    except WebSocketDisconnect:
        logger.info(f"[WS] Session {session.session_id} closed by client")
        close_code = None
    except Exception as e:
        logger.error(f"[WS] Session {session.session_id} failed: {e}", exc_info=True)
        close_code = 1011
    finally:
        broadcaster.disconnect(session)
        pump.cancel()

    if close_code is not None:
        # Client asked to leave or the session failed: flush, then close
        try:
            for envelope in session.outbox.drain_nowait():
                await websocket.send_json(envelope)
            await websocket.close(code=close_code)
        except Exception as e:
            logger.debug(f"[WS] Session {session.session_id} socket already gone: {e}")
