"""Live session registry.

Tracks which connected session belongs to which room's live broadcast group.
This is delivery state, not authorization: a user who is a persisted member
of a room still receives nothing until one of their sessions joins it.

Each session moves through, per room:

    NOT_JOINED --add_room--> JOINED --unregister--> LEFT (terminal)

All mutations are plain synchronous code, so on a single event loop a
broadcast that snapshots ``members_of`` can never observe a session that is
half-way through ``unregister``.

Thread Safety:
    Designed for a single asyncio event loop. NOT thread-safe.
"""
import logging
from enum import Enum
from typing import Dict, List, Optional, Set

from .outbox import SessionOutbox

logger = logging.getLogger(__name__)


class JoinState(str, Enum):
    NOT_JOINED = "not_joined"
    JOINED = "joined"
    LEFT = "left"


class Session:
    """One live connection and the rooms it has joined."""

    def __init__(
        self,
        session_id: str,
        user_id: str,
        user_name: str,
        outbox: Optional[SessionOutbox] = None,
    ) -> None:
        self.session_id = session_id
        self.user_id = user_id
        self.user_name = user_name
        self.outbox = outbox or SessionOutbox()
        self.rooms: Set[int] = set()
        self.closed = False

    def deliver(self, event: str, data: dict) -> bool:
        return self.outbox.offer(event, data)

    def state_for(self, room_id: int) -> JoinState:
        if room_id not in self.rooms:
            return JoinState.NOT_JOINED
        return JoinState.LEFT if self.closed else JoinState.JOINED

    def __repr__(self) -> str:
        return f"Session({self.session_id!r}, user={self.user_id!r})"


class SessionRegistry:
    """Maps live sessions to identities and room broadcast groups."""

    def __init__(self) -> None:
        # session_id -> Session
        self._sessions: Dict[str, Session] = {}

        # room_id -> set of session_ids currently joined
        self._rooms: Dict[int, Set[str]] = {}

    def register(
        self,
        session_id: str,
        user_id: str,
        user_name: str,
        outbox: Optional[SessionOutbox] = None,
    ) -> Session:
        """Create the entry for a new connection.

        Raises:
            ValueError: If the session id is already registered.
        """
        if session_id in self._sessions:
            raise ValueError(f"Session {session_id} is already registered")
        session = Session(session_id, user_id, user_name, outbox)
        self._sessions[session_id] = session
        logger.debug(f"[Registry] Registered session {session_id} for user {user_id}")
        return session

    def get(self, session_id: str) -> Optional[Session]:
        return self._sessions.get(session_id)

    def add_room(self, session_id: str, room_id: int) -> bool:
        """Join a session to a room's live group.

        Returns:
            True if the session was newly joined; False if it was already
            joined or is no longer registered.
        """
        session = self._sessions.get(session_id)
        if session is None or room_id in session.rooms:
            return False
        session.rooms.add(room_id)
        self._rooms.setdefault(room_id, set()).add(session_id)
        return True

    def remove_room(self, session_id: str, room_id: int) -> bool:
        session = self._sessions.get(session_id)
        if session is None or room_id not in session.rooms:
            return False
        session.rooms.discard(room_id)
        self._discard(room_id, session_id)
        return True

    def is_joined(self, session_id: str, room_id: int) -> bool:
        return session_id in self._rooms.get(room_id, ())

    def sessions_in_room(self, room_id: int) -> Set[str]:
        """Snapshot of session ids currently joined to a room."""
        return set(self._rooms.get(room_id, ()))

    def all_sessions(self) -> List[Session]:
        return list(self._sessions.values())

    def members_of(self, room_id: int) -> List[Session]:
        """Snapshot of the sessions currently joined to a room."""
        return [self._sessions[sid] for sid in self._rooms.get(room_id, ())]

    def online_users(self, room_id: int) -> List[dict]:
        """Distinct users with at least one live session in the room."""
        users: Dict[str, dict] = {}
        for session in self.members_of(room_id):
            entry = users.setdefault(
                session.user_id,
                {"userId": session.user_id, "userName": session.user_name, "sessions": 0},
            )
            entry["sessions"] += 1
        return sorted(users.values(), key=lambda u: u["userName"])

    def unregister(self, session_id: str) -> Optional[Session]:
        """Remove a session from every room and close its outbox.

        Returns:
            The removed Session, or None if it was not registered.
        """
        session = self._sessions.pop(session_id, None)
        if session is None:
            return None
        for room_id in session.rooms:
            self._discard(room_id, session_id)
        session.closed = True
        session.outbox.close()
        logger.debug(f"[Registry] Unregistered session {session_id} ({len(session.rooms)} rooms)")
        return session

    def _discard(self, room_id: int, session_id: str) -> None:
        members = self._rooms.get(room_id)
        if members is None:
            return
        members.discard(session_id)
        if not members:
            del self._rooms[room_id]

    @property
    def room_count(self) -> int:
        return len(self._rooms)
