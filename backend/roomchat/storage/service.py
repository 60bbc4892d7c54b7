"""DuckDB-based persistence gateway for rooms, memberships and messages.

The service implements the singleton pattern so one database handle exists
per process. Every call runs on its own cursor (a duplicate connection onto
the same database), so calls may be issued from worker threads in parallel.

Database Schema:
    users:        id (PK), username, last_seen
    rooms:        id (seq), name, description, is_private, created_by, created_at
    room_members: (room_id, user_id) primary key, joined_at
    messages:     id (seq), room_id, sender_id, body, kind, created_at

Error Handling:
    Every ``duckdb.Error`` is re-raised as ``StorageError``. Nothing is
    retried here; callers report the failure and the client resubmits.

Usage:
    store = ChatStore.get_instance()
    room = store.create_room("team", None, True, created_by="u1")
    msg = store.append_message("u1", room.id, "hi", "text")
"""
import logging
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator, List, Optional

import duckdb

from roomchat.errors import StorageError

from .schemas import ChatMessage, Room, RoomAccess, RoomListing, User

logger = logging.getLogger(__name__)

_ROOM_COLUMNS = "id, name, description, is_private, created_by, created_at"


def utcnow() -> datetime:
    """Naive UTC timestamp, the form stored in TIMESTAMP columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _is_conflict(error: StorageError) -> bool:
    """True if the wrapped driver error is a write-write or key conflict."""
    return isinstance(
        error.__cause__, (duckdb.TransactionException, duckdb.ConstraintException)
    )


def _room_from_row(row) -> Room:
    return Room(
        id=row[0],
        name=row[1],
        description=row[2],
        is_private=row[3],
        created_by=row[4],
        created_at=row[5],
    )


class ChatStore:
    """Singleton store for users, rooms, memberships and messages.

    Attributes:
        _instance: Singleton instance of the store.
        _db_path: Path to the DuckDB database file.
    """

    _instance: Optional["ChatStore"] = None
    _db_path: str = "roomchat.duckdb"

    def __init__(self, db_path: Optional[str] = None) -> None:
        """Open the database and create the schema if needed.

        Args:
            db_path: Path to DuckDB file, or ":memory:".
        """
        if db_path:
            self._db_path = db_path
        self._connection: Optional[duckdb.DuckDBPyConnection] = None
        self._lock = threading.Lock()
        self._initialize_db()

    @classmethod
    def get_instance(cls, db_path: Optional[str] = None) -> "ChatStore":
        """Get or create the singleton instance.

        Args:
            db_path: Optional database path (only used on first call).
        """
        if cls._instance is None:
            cls._instance = cls(db_path)
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        """Close and forget the singleton (used by tests and shutdown)."""
        if cls._instance is not None:
            cls._instance.close()
            cls._instance = None

    def _get_connection(self) -> duckdb.DuckDBPyConnection:
        if self._connection is None:
            try:
                self._connection = duckdb.connect(self._db_path)
            except duckdb.Error as e:
                raise StorageError(f"Database unavailable: {e}") from e
            logger.info(f"[Store] Opened database {self._db_path}")
        return self._connection

    @contextmanager
    def _cursor(self) -> Iterator[duckdb.DuckDBPyConnection]:
        """Yield a per-call cursor, translating driver errors."""
        with self._lock:
            cursor = self._get_connection().cursor()
        try:
            yield cursor
        except duckdb.Error as e:
            logger.error(f"[Store] Database error: {e}")
            raise StorageError(f"Storage failure: {e}") from e
        finally:
            cursor.close()

    def _initialize_db(self) -> None:
        """Create sequences and tables. Idempotent."""
        with self._cursor() as cur:
            cur.execute("CREATE SEQUENCE IF NOT EXISTS rooms_seq START 1")
            cur.execute("CREATE SEQUENCE IF NOT EXISTS messages_seq START 1")
            cur.execute("""
                CREATE TABLE IF NOT EXISTS users (
                    id VARCHAR PRIMARY KEY,
                    username VARCHAR NOT NULL,
                    last_seen TIMESTAMP
                )
            """)
            cur.execute("""
                CREATE TABLE IF NOT EXISTS rooms (
                    id INTEGER DEFAULT nextval('rooms_seq') PRIMARY KEY,
                    name VARCHAR NOT NULL,
                    description VARCHAR,
                    is_private BOOLEAN NOT NULL DEFAULT false,
                    created_by VARCHAR,
                    created_at TIMESTAMP NOT NULL
                )
            """)
            cur.execute("""
                CREATE TABLE IF NOT EXISTS room_members (
                    room_id INTEGER NOT NULL,
                    user_id VARCHAR NOT NULL,
                    joined_at TIMESTAMP NOT NULL,
                    PRIMARY KEY (room_id, user_id)
                )
            """)
            cur.execute("""
                CREATE TABLE IF NOT EXISTS messages (
                    id INTEGER DEFAULT nextval('messages_seq') PRIMARY KEY,
                    room_id INTEGER NOT NULL,
                    sender_id VARCHAR NOT NULL,
                    body VARCHAR NOT NULL,
                    kind VARCHAR(20) NOT NULL DEFAULT 'text',
                    created_at TIMESTAMP NOT NULL
                )
            """)

    # =========================================================================
    # Users
    # =========================================================================

    def upsert_user(self, user_id: str, username: str) -> User:
        """Record a verified identity and bump its last_seen.

        Several sessions of one user may connect at once. When a concurrent
        upsert of the same id wins, the row it wrote is returned instead.
        """
        now = utcnow()
        try:
            with self._cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO users (id, username, last_seen) VALUES (?, ?, ?)
                    ON CONFLICT (id) DO UPDATE SET
                        username = excluded.username,
                        last_seen = excluded.last_seen
                    """,
                    [user_id, username, now],
                )
        except StorageError as e:
            if not _is_conflict(e):
                raise
            existing = self.fetch_user(user_id)
            if existing is None:
                raise
            logger.debug(f"[Store] Concurrent upsert of user {user_id}, keeping winner")
            return existing
        return User(id=user_id, username=username, last_seen=now)

    def fetch_user(self, user_id: str) -> Optional[User]:
        with self._cursor() as cur:
            row = cur.execute(
                "SELECT id, username, last_seen FROM users WHERE id = ?", [user_id]
            ).fetchone()
        return User(id=row[0], username=row[1], last_seen=row[2]) if row else None

    def list_users(self) -> List[User]:
        with self._cursor() as cur:
            rows = cur.execute(
                "SELECT id, username, last_seen FROM users ORDER BY username"
            ).fetchall()
        return [User(id=r[0], username=r[1], last_seen=r[2]) for r in rows]

    # =========================================================================
    # Rooms and memberships
    # =========================================================================

    def create_room(
        self,
        name: str,
        description: Optional[str],
        is_private: bool,
        created_by: str,
    ) -> Room:
        """Create a room and insert the creator's membership atomically."""
        now = utcnow()
        with self._cursor() as cur:
            cur.begin()
            try:
                row = cur.execute(
                    f"""
                    INSERT INTO rooms (name, description, is_private, created_by, created_at)
                    VALUES (?, ?, ?, ?, ?)
                    RETURNING {_ROOM_COLUMNS}
                    """,
                    [name, description, is_private, created_by, now],
                ).fetchone()
                cur.execute(
                    "INSERT INTO room_members (room_id, user_id, joined_at) VALUES (?, ?, ?)",
                    [row[0], created_by, now],
                )
                cur.commit()
            except duckdb.Error:
                cur.rollback()
                raise
        room = _room_from_row(row)
        logger.info(f"[Store] Room created: {room.name} (ID: {room.id}), private: {room.is_private}")
        return room

    def fetch_room(self, room_id: int) -> Optional[Room]:
        with self._cursor() as cur:
            row = cur.execute(
                f"SELECT {_ROOM_COLUMNS} FROM rooms WHERE id = ?", [room_id]
            ).fetchone()
        return _room_from_row(row) if row else None

    def fetch_membership(self, room_id: int, user_id: str) -> bool:
        with self._cursor() as cur:
            row = cur.execute(
                "SELECT 1 FROM room_members WHERE room_id = ? AND user_id = ?",
                [room_id, user_id],
            ).fetchone()
        return row is not None

    def fetch_room_access(self, room_id: int, user_id: str) -> Optional[RoomAccess]:
        """Room visibility plus the user's membership in one query.

        Returns:
            RoomAccess, or None if the room does not exist.
        """
        with self._cursor() as cur:
            row = cur.execute(
                """
                SELECT r.is_private, rm.user_id IS NOT NULL
                FROM rooms r
                LEFT JOIN room_members rm ON r.id = rm.room_id AND rm.user_id = ?
                WHERE r.id = ?
                """,
                [user_id, room_id],
            ).fetchone()
        if row is None:
            return None
        return RoomAccess(room_id=room_id, is_private=row[0], is_member=row[1])

    def insert_membership(self, room_id: int, user_id: str) -> bool:
        """Insert a membership; a duplicate is a no-op.

        Returns:
            True if a new row was written, False if it already existed.
        """
        try:
            with self._cursor() as cur:
                rows = cur.execute(
                    """
                    INSERT INTO room_members (room_id, user_id, joined_at) VALUES (?, ?, ?)
                    ON CONFLICT DO NOTHING
                    RETURNING room_id
                    """,
                    [room_id, user_id, utcnow()],
                ).fetchall()
        except StorageError as e:
            # A concurrent writer may have inserted the same pair first
            if _is_conflict(e) and self.fetch_membership(room_id, user_id):
                return False
            raise
        if rows:
            logger.info(f"[Store] User {user_id} joined room {room_id}")
        return bool(rows)

    def list_members(self, room_id: int) -> List[str]:
        with self._cursor() as cur:
            rows = cur.execute(
                "SELECT user_id FROM room_members WHERE room_id = ? ORDER BY joined_at, user_id",
                [room_id],
            ).fetchall()
        return [r[0] for r in rows]

    def list_rooms_for_user(self, user_id: str) -> List[RoomListing]:
        """Public rooms plus the private rooms the user belongs to, newest first."""
        with self._cursor() as cur:
            rows = cur.execute(
                """
                SELECT r.id, r.name, r.description, r.is_private, r.created_by, r.created_at,
                       rm.user_id IS NOT NULL AS is_member
                FROM rooms r
                LEFT JOIN room_members rm ON r.id = rm.room_id AND rm.user_id = ?
                WHERE r.is_private = false OR rm.user_id IS NOT NULL
                ORDER BY r.created_at DESC, r.id DESC
                """,
                [user_id],
            ).fetchall()
        return [
            RoomListing(**_room_from_row(r).model_dump(), is_member=r[6])
            for r in rows
        ]

    # =========================================================================
    # Messages
    # =========================================================================

    def append_message(
        self, sender_id: str, room_id: int, body: str, kind: str
    ) -> ChatMessage:
        """Persist a message and return it with its id and timestamp.

        Raises:
            StorageError: If the room or sender does not exist, or the
                database fails.
        """
        now = utcnow()
        with self._cursor() as cur:
            row = cur.execute(
                """
                INSERT INTO messages (room_id, sender_id, body, kind, created_at)
                SELECT ?, ?, ?, ?, ?
                WHERE EXISTS (SELECT 1 FROM rooms WHERE id = ?)
                  AND EXISTS (SELECT 1 FROM users WHERE id = ?)
                RETURNING id, created_at
                """,
                [room_id, sender_id, body, kind, now, room_id, sender_id],
            ).fetchone()
            if row is None:
                raise StorageError(
                    f"Invalid room {room_id} or sender {sender_id} reference"
                )
            name_row = cur.execute(
                "SELECT username FROM users WHERE id = ?", [sender_id]
            ).fetchone()
        return ChatMessage(
            id=row[0],
            room_id=room_id,
            sender_id=sender_id,
            sender_name=name_row[0] if name_row else "",
            body=body,
            kind=kind,
            created_at=row[1],
        )

    def fetch_history(
        self, room_id: int, page: int = 1, page_size: int = 50
    ) -> List[ChatMessage]:
        """Return one page of history, oldest first.

        Page 1 is the newest ``page_size`` messages; page 2 the ones before
        those, and so on. Each page is returned in chronological order.
        """
        offset = (max(page, 1) - 1) * page_size
        with self._cursor() as cur:
            rows = cur.execute(
                """
                SELECT m.id, m.room_id, m.sender_id, COALESCE(u.username, ''),
                       m.body, m.kind, m.created_at
                FROM messages m
                LEFT JOIN users u ON u.id = m.sender_id
                WHERE m.room_id = ?
                ORDER BY m.created_at DESC, m.id DESC
                LIMIT ? OFFSET ?
                """,
                [room_id, page_size, offset],
            ).fetchall()
        messages = [
            ChatMessage(
                id=r[0],
                room_id=r[1],
                sender_id=r[2],
                sender_name=r[3],
                body=r[4],
                kind=r[5],
                created_at=r[6],
            )
            for r in rows
        ]
        messages.reverse()
        return messages

    def count_messages(self, room_id: int) -> int:
        with self._cursor() as cur:
            row = cur.execute(
                "SELECT COUNT(*) FROM messages WHERE room_id = ?", [room_id]
            ).fetchone()
        return row[0]

    def close(self) -> None:
        """Close the database connection."""
        if self._connection is not None:
            self._connection.close()
            self._connection = None
