"""Room broadcast router.

Owns the live side of the chat: it registers sessions, routes inbound events
through the dispatch table, and fans the resulting deliveries out to the
sessions of a room.

Ordering:
    Every event carrying a room id runs as a job on that room's
    ``RoomPipeline``. A job authorizes, persists and then offers its
    deliveries to recipient outboxes before the next job of the same room
    starts, so all members observe a room's messages in persistence order.

Failure isolation:
    A ``ChatError`` raised while parsing or handling an event becomes an
    ``error`` event for the originating session only. A full recipient
    outbox drops that one envelope for that one recipient.
"""
import logging
from typing import Any, Dict, List, Optional

from roomchat.config import ChatSettings
from roomchat.errors import ChatError, ValidationError
from roomchat.policy.access import AccessPolicy

from .handlers import EVENT_HANDLERS, Delivery, EventHandler, HandlerContext
from .outbox import SessionOutbox
from .pipeline import RoomPipeline
from .registry import Session, SessionRegistry

logger = logging.getLogger(__name__)


class RoomBroadcastRouter:
    """Routes inbound events and fans deliveries out to room members."""

    def __init__(
        self,
        store: Any,
        registry: Optional[SessionRegistry] = None,
        policy: Optional[AccessPolicy] = None,
        settings: Optional[ChatSettings] = None,
    ) -> None:
        self.settings = settings or ChatSettings()
        self.registry = registry or SessionRegistry()
        self.context = HandlerContext(
            store=store,
            policy=policy or AccessPolicy(),
            registry=self.registry,
            settings=self.settings,
        )
        self._pipelines: Dict[int, RoomPipeline] = {}

    # -------------------------------------------------------------------------
    # Session lifecycle
    # -------------------------------------------------------------------------

    def register(self, session_id: str, user_id: str, user_name: str) -> Session:
        """Register a new live session with a bounded outbox."""
        outbox = SessionOutbox(maxsize=self.settings.outbox_size)
        session = self.registry.register(session_id, user_id, user_name, outbox)
        logger.info(f"[Chat] User {user_name} ({user_id}) connected as session {session_id}")
        return session

    def disconnect(self, session: Session) -> None:
        """Remove the session from every room; later broadcasts skip it."""
        removed = self.registry.unregister(session.session_id)
        if removed is not None:
            logger.info(
                f"[Chat] Session {session.session_id} for user {session.user_id} disconnected"
            )

    # -------------------------------------------------------------------------
    # Inbound events
    # -------------------------------------------------------------------------

    async def dispatch(self, session: Session, event: str, raw: Any) -> None:
        """Route one inbound event.

        Raises:
            Exception: Any non-ChatError failure inside a handler. The
                caller is expected to close the session.
        """
        if event == "disconnect":
            self.disconnect(session)
            return

        handler = EVENT_HANDLERS.get(event)
        if handler is None:
            self._report(session, event, ValidationError(f"Unknown event: {event}"))
            return

        try:
            request = handler.parse(raw, self.settings)
        except ChatError as e:
            self._report(session, event, e)
            return

        room_id = request.room_id
        pipeline = self._pipeline_for(room_id)
        if handler.droppable and pipeline.backlog >= self.settings.typing_backlog_limit:
            logger.debug(
                f"[Chat] Dropping {event} for room {room_id}, backlog={pipeline.backlog}"
            )
            return

        future = pipeline.submit(
            lambda: self._execute(session, event, handler, request)
        )
        await future

    async def join(self, session: Session, room_id: Any) -> None:
        await self.dispatch(session, "join_room", room_id)

    async def send(
        self,
        session: Session,
        room_id: Any,
        message: Any,
        message_type: Optional[str] = None,
    ) -> None:
        await self.dispatch(session, "send_message", {
            "roomId": room_id,
            "message": message,
            "messageType": message_type,
        })

    async def typing_start(self, session: Session, room_id: Any) -> None:
        await self.dispatch(session, "typing_start", room_id)

    async def typing_stop(self, session: Session, room_id: Any) -> None:
        await self.dispatch(session, "typing_stop", room_id)

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _pipeline_for(self, room_id: int) -> RoomPipeline:
        pipeline = self._pipelines.get(room_id)
        if pipeline is None or pipeline.closed:
            pipeline = RoomPipeline(
                room_id,
                idle_seconds=self.settings.pipeline_idle_seconds,
                on_idle=self._drop_pipeline,
            )
            pipeline.start()
            self._pipelines[room_id] = pipeline
        return pipeline

    def _drop_pipeline(self, pipeline: RoomPipeline) -> None:
        if self._pipelines.get(pipeline.room_id) is pipeline:
            del self._pipelines[pipeline.room_id]

    @property
    def active_rooms(self) -> List[int]:
        """Rooms that currently have a running pipeline."""
        return sorted(self._pipelines)

    async def _execute(
        self,
        session: Session,
        event: str,
        handler: EventHandler,
        request: Any,
    ) -> None:
        try:
            deliveries = await handler.handle(session, request, self.context)
        except ChatError as e:
            self._report(session, event, e, room_id=request.room_id)
            return
        for delivery in deliveries:
            self._deliver(session, delivery)

    def _deliver(self, origin: Session, delivery: Delivery) -> None:
        if delivery.broadcast_room is None:
            origin.deliver(delivery.event, delivery.data)
            return

        recipients = self.registry.members_of(delivery.broadcast_room)
        for recipient in recipients:
            if recipient.session_id == delivery.exclude_session:
                continue
            if recipient.deliver(delivery.event, delivery.data):
                continue
            if delivery.event == "new_message":
                logger.warning(
                    f"[Chat] Outbox full, dropped {delivery.event} for session "
                    f"{recipient.session_id} in room {delivery.broadcast_room}"
                )
            else:
                logger.debug(
                    f"[Chat] Dropped {delivery.event} for session {recipient.session_id}"
                )

    def _report(
        self,
        session: Session,
        event: str,
        error: ChatError,
        room_id: Optional[int] = None,
    ) -> None:
        logger.info(f"[Chat] {event} from {session.user_id} rejected: {error.message}")
        session.deliver("error", {
            "message": error.message,
            "code": error.code.value,
            "event": event,
            "roomId": room_id,
        })

    async def shutdown(self) -> None:
        """Stop every room pipeline and close all live sessions."""
        pipelines = list(self._pipelines.values())
        self._pipelines.clear()
        for pipeline in pipelines:
            await pipeline.close()
        for session in self.registry.all_sessions():
            self.registry.unregister(session.session_id)
        logger.info(f"[Chat] Shut down {len(pipelines)} room pipelines")
