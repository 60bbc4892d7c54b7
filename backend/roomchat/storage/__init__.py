"""Persistence gateway backed by DuckDB."""

from .schemas import ChatMessage, Room, RoomAccess, RoomListing, User
from .service import ChatStore

__all__ = [
    "ChatMessage",
    "ChatStore",
    "Room",
    "RoomAccess",
    "RoomListing",
    "User",
]
