"""Pydantic schemas for persisted chat records.

These mirror the four tables owned by ``ChatStore``:

    users         identity cache (id, username) for sender names
    rooms         id, name, description, is_private, created_by
    room_members  unique (room_id, user_id)
    messages      id, room_id, sender_id, body, kind, created_at

Records are immutable once written; the models are the only shape in
which rows leave the store.
"""
from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

# Message kind used when the client does not send one
DEFAULT_MESSAGE_KIND = "text"

# Column width of messages.kind
MAX_KIND_LENGTH = 20


class User(BaseModel):
    """A user known to the store.

    Attributes:
        id: Opaque identity from the credential verifier.
        username: Display name at last sign-in.
        last_seen: When the user last connected (UTC).
    """
    id: str = Field(..., description="Opaque user ID")
    username: str = Field(..., description="Display name")
    last_seen: Optional[datetime] = Field(None, description="Last connection (UTC)")


class Room(BaseModel):
    """A chat room.

    Attributes:
        id: Store-assigned room identifier.
        name: Human-readable room name.
        description: Optional free text.
        is_private: Visibility flag, fixed at creation.
        created_by: User ID of the creator.
        created_at: Creation time (UTC).
    """
    id: int
    name: str
    description: Optional[str] = None
    is_private: bool = False
    created_by: Optional[str] = None
    created_at: datetime


class RoomListing(Room):
    """A room as listed for a particular user."""
    is_member: bool = False


class RoomAccess(BaseModel):
    """Access-relevant state of a room for one user.

    This is the queried state the access policy decides over.
    """
    room_id: int
    is_private: bool
    is_member: bool


class ChatMessage(BaseModel):
    """A persisted message.

    Attributes:
        id: Store-assigned message identifier.
        room_id: Room the message belongs to.
        sender_id: User ID of the sender.
        sender_name: Sender display name (joined from users on read).
        body: Message text.
        kind: Message kind, e.g. "text".
        created_at: Persistence time (UTC).
    """
    id: int
    room_id: int
    sender_id: str
    sender_name: str = ""
    body: str
    kind: str = DEFAULT_MESSAGE_KIND
    created_at: datetime

    def to_event(self) -> Dict[str, Any]:
        """Shape broadcast to clients as a ``new_message`` event."""
        return {
            "id": self.id,
            "senderId": self.sender_id,
            "senderName": self.sender_name,
            "message": self.body,
            "messageType": self.kind,
            "timestamp": self.created_at.isoformat(),
            "roomId": self.room_id,
        }

    def to_history_row(self) -> Dict[str, Any]:
        """Shape returned by the history endpoint."""
        return {
            "id": self.id,
            "message": self.body,
            "message_type": self.kind,
            "created_at": self.created_at.isoformat(),
            "sender_id": self.sender_id,
            "sender_name": self.sender_name,
        }
