"""Per-session outbound event queue.

Fan-out never awaits a client socket. Broadcasts ``offer`` an envelope into
each recipient's bounded outbox and move on; a separate pump task per
connection drains the outbox into the WebSocket. A full or closed outbox
rejects the envelope and the drop is counted, so one slow client cannot
stall a room.

Envelope shape (also the wire format):
    {"event": "<name>", "data": {...}}
"""
import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List

logger = logging.getLogger(__name__)

Envelope = Dict[str, Any]


class SessionOutbox:
    """Bounded FIFO of envelopes for one live session."""

    def __init__(self, maxsize: int = 256) -> None:
        self._queue: "asyncio.Queue[Envelope]" = asyncio.Queue(maxsize=maxsize)
        self.closed = False
        self.dropped = 0

    def offer(self, event: str, data: Dict[str, Any]) -> bool:
        """Enqueue an envelope without waiting.

        Returns:
            False if the outbox is closed or full.
        """
        if self.closed:
            return False
        try:
            self._queue.put_nowait({"event": event, "data": data})
        except asyncio.QueueFull:
            self.dropped += 1
            return False
        return True

    def pending(self) -> int:
        return self._queue.qsize()

    async def get(self) -> Envelope:
        return await self._queue.get()

    def drain_nowait(self) -> List[Envelope]:
        """Pop everything currently queued."""
        items = []
        while not self._queue.empty():
            items.append(self._queue.get_nowait())
        return items

    async def pump(self, send: Callable[[Envelope], Awaitable[None]]) -> None:
        """Forward envelopes to ``send`` until the outbox closes or send fails."""
        while not self.closed:
            envelope = await self._queue.get()
            try:
                await send(envelope)
            except Exception as e:
                logger.debug(f"Failed to send to connection: {e}")
                self.close()
                return

    def close(self) -> None:
        self.closed = True
