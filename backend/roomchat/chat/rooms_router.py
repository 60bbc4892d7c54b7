"""Room REST endpoints.

    GET  /api/chat/users                   known users
    GET  /api/chat/rooms                   public rooms + caller's private rooms
    POST /api/chat/rooms                   create a room (creator joins)
    GET  /api/chat/rooms/{id}/messages     paginated history (auto-joins public)
    POST /api/chat/rooms/{id}/join         explicit join
    GET  /api/chat/rooms/{id}/online       users with a live session in the room

All endpoints require a Bearer token. Access rules are the same
``AccessPolicy`` the live router applies.
"""
import asyncio
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from roomchat.auth.dependencies import get_current_user
from roomchat.auth.service import Identity
from roomchat.errors import ValidationError
from roomchat.policy.access import AccessPolicy

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/chat", tags=["chat"])

_policy = AccessPolicy()


class RoomCreate(BaseModel):
    """Body of POST /api/chat/rooms."""
    name: str = Field(..., max_length=100)
    description: Optional[str] = None
    isPrivate: bool = False


def _store(request: Request):
    return request.app.state.store


async def _authorize_read(request: Request, room_id: int, user: Identity) -> None:
    """Apply can_read and perform the auto-join it asks for."""
    store = _store(request)
    access = await asyncio.to_thread(store.fetch_room_access, room_id, user.user_id)
    decision = _policy.can_read(access).raise_for_outcome()
    if decision.auto_join_required:
        await asyncio.to_thread(store.insert_membership, room_id, user.user_id)


@router.get("/users")
async def list_users(
    request: Request, user: Identity = Depends(get_current_user)
) -> JSONResponse:
    users = await asyncio.to_thread(_store(request).list_users)
    return JSONResponse([u.model_dump(mode="json") for u in users])


@router.get("/rooms")
async def list_rooms(
    request: Request, user: Identity = Depends(get_current_user)
) -> JSONResponse:
    """List public rooms and the caller's private rooms, newest first."""
    rooms = await asyncio.to_thread(_store(request).list_rooms_for_user, user.user_id)
    return JSONResponse([r.model_dump(mode="json") for r in rooms])


@router.post("/rooms", status_code=201)
async def create_room(
    body: RoomCreate,
    request: Request,
    user: Identity = Depends(get_current_user),
) -> JSONResponse:
    """Create a room; the creator becomes its first member.

    Returns:
        The created room (201 Created).
    """
    name = body.name.strip()
    if not name:
        raise ValidationError("Room name is required")
    room = await asyncio.to_thread(
        _store(request).create_room, name, body.description, body.isPrivate, user.user_id
    )
    logger.info(f"[Router] {user.user_id} created room {room.id}")
    return JSONResponse(room.model_dump(mode="json"), status_code=201)


@router.get("/rooms/{room_id}/messages")
async def get_room_messages(
    room_id: int,
    request: Request,
    page: int = Query(1, ge=1),
    limit: Optional[int] = Query(None, ge=1),
    user: Identity = Depends(get_current_user),
) -> JSONResponse:
    """Return one page of history in chronological order.

    Page 1 holds the newest ``limit`` messages. ``limit`` defaults to
    ``chat.default_page_size`` and is capped at ``chat.max_page_size``.
    """
    await _authorize_read(request, room_id, user)

    settings = request.app.state.config.chat
    page_size = min(limit or settings.default_page_size, settings.max_page_size)
    messages = await asyncio.to_thread(
        _store(request).fetch_history, room_id, page, page_size
    )
    return JSONResponse([m.to_history_row() for m in messages])


@router.post("/rooms/{room_id}/join")
async def join_room(
    room_id: int,
    request: Request,
    user: Identity = Depends(get_current_user),
) -> JSONResponse:
    """Persist membership in a room.

    Public rooms accept anyone; a private room only accepts its existing
    members, for whom the call is a no-op.
    """
    store = _store(request)
    access = await asyncio.to_thread(store.fetch_room_access, room_id, user.user_id)
    _policy.can_join(access).raise_for_outcome()
    await asyncio.to_thread(store.insert_membership, room_id, user.user_id)
    room = await asyncio.to_thread(store.fetch_room, room_id)
    return JSONResponse({
        "message": "Joined room successfully",
        "room": room.model_dump(mode="json"),
    })


@router.get("/rooms/{room_id}/online")
async def get_online_users(
    room_id: int,
    request: Request,
    user: Identity = Depends(get_current_user),
) -> JSONResponse:
    """Users with at least one live session joined to the room."""
    store = _store(request)
    access = await asyncio.to_thread(store.fetch_room_access, room_id, user.user_id)
    _policy.can_read(access).raise_for_outcome()
    registry = request.app.state.broadcaster.registry
    return JSONResponse({"roomId": room_id, "onlineUsers": registry.online_users(room_id)})
