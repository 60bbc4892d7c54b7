"""Inbound event handlers.

Each inbound event name maps to an ``EventHandler``: a ``parse`` function
that validates the raw payload, and an async ``handle`` function taking
``(session, request, context)`` and returning the deliveries to perform.
Handlers never touch sockets; the broadcast router executes the returned
``Delivery`` list right after the handler, on the same room pipeline.

Protocol (inbound):
    join_room      roomId | {"roomId"}
    send_message   {"roomId", "message", "messageType"?}
    typing_start   roomId | {"roomId"}
    typing_stop    roomId | {"roomId"}
    disconnect     (handled by the router itself)

Protocol (outbound):
    room_joined, user_joined, new_message, user_typing,
    user_stopped_typing, error
"""
import asyncio
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

from pydantic import BaseModel

from roomchat.config import ChatSettings
from roomchat.errors import ValidationError
from roomchat.policy.access import AccessPolicy
from roomchat.storage.schemas import DEFAULT_MESSAGE_KIND, MAX_KIND_LENGTH

from .registry import Session, SessionRegistry


# =============================================================================
# Requests and deliveries
# =============================================================================


class RoomRequest(BaseModel):
    """Payload of join_room / typing_start / typing_stop."""
    room_id: int


class SendMessageRequest(BaseModel):
    """Validated payload of send_message."""
    room_id: int
    body: str
    kind: str = DEFAULT_MESSAGE_KIND


@dataclass
class Delivery:
    """One outbound event.

    ``broadcast_room`` None means a reply to the originating session only;
    otherwise the event goes to every session joined to that room at the
    moment of delivery, minus ``exclude_session``.
    """
    event: str
    data: Dict[str, Any]
    broadcast_room: Optional[int] = None
    exclude_session: Optional[str] = None

    @classmethod
    def reply(cls, event: str, data: Dict[str, Any]) -> "Delivery":
        return cls(event, data)

    @classmethod
    def to_room(
        cls,
        room_id: int,
        event: str,
        data: Dict[str, Any],
        exclude_session: Optional[str] = None,
    ) -> "Delivery":
        return cls(event, data, broadcast_room=room_id, exclude_session=exclude_session)


@dataclass
class HandlerContext:
    """Collaborators handed to every handler."""
    store: Any
    policy: AccessPolicy
    registry: SessionRegistry
    settings: ChatSettings = field(default_factory=ChatSettings)

    async def call_store(self, fn: Callable[..., Any], *args: Any) -> Any:
        """Run a blocking store call off the event loop."""
        return await asyncio.to_thread(fn, *args)


# =============================================================================
# Parsing
# =============================================================================


def parse_room_id(raw: Any) -> int:
    """Accept an int or a numeric string room id."""
    if raw is None or raw == "":
        raise ValidationError("Room id is required")
    if isinstance(raw, bool):
        raise ValidationError("Invalid room id")
    if isinstance(raw, int):
        return raw
    if isinstance(raw, str):
        # isdigit() accepts characters like "²" that int() rejects
        try:
            return int(raw.strip())
        except ValueError:
            raise ValidationError("Invalid room id")
    raise ValidationError("Invalid room id")


def parse_room_request(raw: Any, settings: ChatSettings) -> RoomRequest:
    room_raw = raw.get("roomId") if isinstance(raw, dict) else raw
    return RoomRequest(room_id=parse_room_id(room_raw))


def parse_send_message(raw: Any, settings: ChatSettings) -> SendMessageRequest:
    if not isinstance(raw, dict):
        raise ValidationError("Invalid message data")
    room_id = parse_room_id(raw.get("roomId"))

    body = raw.get("message")
    if not isinstance(body, str) or not body.strip():
        raise ValidationError("Message body is required")
    if len(body) > settings.max_message_length:
        raise ValidationError(
            f"Message exceeds {settings.max_message_length} characters"
        )

    kind = raw.get("messageType") or DEFAULT_MESSAGE_KIND
    if not isinstance(kind, str) or len(kind) > MAX_KIND_LENGTH:
        raise ValidationError("Invalid message type")

    return SendMessageRequest(room_id=room_id, body=body, kind=kind)


# =============================================================================
# Handlers
# =============================================================================


def _user_ref(session: Session, room_id: int) -> Dict[str, Any]:
    return {"userId": session.user_id, "userName": session.user_name, "roomId": room_id}


async def handle_join_room(
    session: Session, request: RoomRequest, ctx: HandlerContext
) -> List[Delivery]:
    """Authorize, auto-join public rooms, then enter the live group."""
    room_id = request.room_id
    access = await ctx.call_store(ctx.store.fetch_room_access, room_id, session.user_id)
    decision = ctx.policy.can_read(access).raise_for_outcome()
    if decision.auto_join_required:
        await ctx.call_store(ctx.store.insert_membership, room_id, session.user_id)

    newly_joined = ctx.registry.add_room(session.session_id, room_id)
    deliveries = [
        Delivery.reply("room_joined", {
            "roomId": room_id,
            "onlineUsers": ctx.registry.online_users(room_id),
        })
    ]
    if newly_joined:
        deliveries.append(Delivery.to_room(
            room_id,
            "user_joined",
            {**_user_ref(session, room_id), "message": f"{session.user_name} joined the room"},
            exclude_session=session.session_id,
        ))
    return deliveries


async def handle_send_message(
    session: Session, request: SendMessageRequest, ctx: HandlerContext
) -> List[Delivery]:
    """Authorize, persist, then broadcast to every joined session."""
    room_id = request.room_id
    access = await ctx.call_store(ctx.store.fetch_room_access, room_id, session.user_id)
    decision = ctx.policy.can_post(access).raise_for_outcome()
    if decision.auto_join_required:
        await ctx.call_store(ctx.store.insert_membership, room_id, session.user_id)

    message = await ctx.call_store(
        ctx.store.append_message, session.user_id, room_id, request.body, request.kind
    )
    return [Delivery.to_room(room_id, "new_message", message.to_event())]


def _typing_handler(outbound_event: str):
    async def handle(
        session: Session, request: RoomRequest, ctx: HandlerContext
    ) -> List[Delivery]:
        # Only sessions already in the room's live group may signal typing
        if not ctx.registry.is_joined(session.session_id, request.room_id):
            return []
        return [Delivery.to_room(
            request.room_id,
            outbound_event,
            _user_ref(session, request.room_id),
            exclude_session=session.session_id,
        )]
    return handle


handle_typing_start = _typing_handler("user_typing")
handle_typing_stop = _typing_handler("user_stopped_typing")


# =============================================================================
# Dispatch table
# =============================================================================


@dataclass(frozen=True)
class EventHandler:
    """Parser + handler for one inbound event.

    Attributes:
        parse: Validates the raw payload; raises ValidationError.
        handle: Produces deliveries; raises ChatError on refusal.
        droppable: May be discarded when the room is backed up.
    """
    parse: Callable[[Any, ChatSettings], BaseModel]
    handle: Callable[[Session, Any, HandlerContext], Awaitable[List[Delivery]]]
    droppable: bool = False


EVENT_HANDLERS: Dict[str, EventHandler] = {
    "join_room": EventHandler(parse_room_request, handle_join_room),
    "send_message": EventHandler(parse_send_message, handle_send_message),
    "typing_start": EventHandler(parse_room_request, handle_typing_start, droppable=True),
    "typing_stop": EventHandler(parse_room_request, handle_typing_stop, droppable=True),
}
