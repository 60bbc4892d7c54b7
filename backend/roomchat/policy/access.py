"""Room access policy.

Decides whether a user may read, join or post in a room, given the room's
queried state (``RoomAccess``: visibility + the user's membership).

Policy Rules:
    1. Unknown room: NOT_FOUND, distinct from a denial.
    2. Public room: always allowed. A non-member gets
       ``auto_join_required=True``; the caller inserts the membership.
    3. Private room: allowed only for existing members.

The policy never writes. It is a pure function of its input so that the
REST handlers and the live router apply exactly the same rules.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from roomchat.errors import AccessDeniedError, NotFoundError
from roomchat.storage.schemas import RoomAccess


class AccessOutcome(str, Enum):
    ALLOWED = "allowed"
    NOT_FOUND = "not_found"
    DENIED = "denied"


@dataclass
class AccessDecision:
    """Result of an access check.

    Attributes:
        outcome: allowed, not_found or denied.
        auto_join_required: The caller must insert a membership first.
        reason: Human-readable explanation for a refusal.
    """
    outcome: AccessOutcome
    auto_join_required: bool = False
    reason: str = ""

    @property
    def allowed(self) -> bool:
        return self.outcome == AccessOutcome.ALLOWED

    def __bool__(self) -> bool:
        """Allow using AccessDecision in boolean context."""
        return self.allowed

    def raise_for_outcome(self) -> "AccessDecision":
        """Raise the matching ChatError for a refusal, else return self."""
        if self.outcome == AccessOutcome.NOT_FOUND:
            raise NotFoundError(self.reason or "Room not found")
        if self.outcome == AccessOutcome.DENIED:
            raise AccessDeniedError(self.reason or "Access denied")
        return self


class AccessPolicy:
    """Read/join/post rules for public and private rooms."""

    def can_read(self, room: Optional[RoomAccess]) -> AccessDecision:
        return self._evaluate(room, "Access denied to private room")

    def can_join(self, room: Optional[RoomAccess]) -> AccessDecision:
        return self._evaluate(room, "Cannot join private room")

    def can_post(self, room: Optional[RoomAccess]) -> AccessDecision:
        return self._evaluate(room, "Cannot post to private room")

    def _evaluate(self, room: Optional[RoomAccess], denied_reason: str) -> AccessDecision:
        if room is None:
            return AccessDecision(AccessOutcome.NOT_FOUND, reason="Room not found")
        if room.is_member:
            return AccessDecision(AccessOutcome.ALLOWED)
        if room.is_private:
            return AccessDecision(AccessOutcome.DENIED, reason=denied_reason)
        return AccessDecision(AccessOutcome.ALLOWED, auto_join_required=True)
