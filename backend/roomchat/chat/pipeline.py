"""Sequential per-room job pipeline.

Every join, send and typing event for a room runs as a job on that room's
pipeline: one queue and one worker task. Jobs of the same room never
overlap, so "persist then broadcast" for message A completes before message
B is persisted. Pipelines of different rooms are independent tasks.

A pipeline that stays idle for ``idle_seconds`` retires itself and calls
``on_idle``; the owner creates a fresh one on the next submit.
"""
import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional, Tuple

logger = logging.getLogger(__name__)

Job = Callable[[], Awaitable[Any]]


class RoomPipeline:
    """Single-writer queue for one room."""

    def __init__(
        self,
        room_id: int,
        idle_seconds: float = 60.0,
        on_idle: Optional[Callable[["RoomPipeline"], None]] = None,
    ) -> None:
        self.room_id = room_id
        self.idle_seconds = idle_seconds
        self._on_idle = on_idle
        self._queue: "asyncio.Queue[Tuple[Job, asyncio.Future]]" = asyncio.Queue()
        self._task: Optional[asyncio.Task] = None
        self._current: Optional[asyncio.Future] = None
        self.closed = False

    def start(self) -> None:
        self._task = asyncio.create_task(self._run(), name=f"room-pipeline-{self.room_id}")

    @property
    def backlog(self) -> int:
        """Jobs waiting behind the one currently running."""
        return self._queue.qsize()

    def submit(self, job: Job) -> asyncio.Future:
        """Queue a job; the returned future resolves with its result."""
        if self.closed:
            raise RuntimeError(f"Pipeline for room {self.room_id} is closed")
        future = asyncio.get_running_loop().create_future()
        self._queue.put_nowait((job, future))
        return future

    async def _run(self) -> None:
        while True:
            try:
                job, future = await asyncio.wait_for(
                    self._queue.get(), timeout=self.idle_seconds
                )
            except asyncio.TimeoutError:
                if self._queue.empty():
                    self.closed = True
                    logger.debug(f"[Pipeline] Room {self.room_id} idle, retiring")
                    if self._on_idle is not None:
                        self._on_idle(self)
                    return
                continue

            if future.cancelled():
                continue
            self._current = future
            try:
                result = await job()
            except Exception as e:
                logger.error(f"[Pipeline] Job failed in room {self.room_id}: {e}", exc_info=True)
                if not future.done():
                    future.set_exception(e)
            else:
                if not future.done():
                    future.set_result(result)
            finally:
                self._current = None

    async def close(self) -> None:
        """Stop the worker and cancel any queued jobs."""
        self.closed = True
        running = self._current
        if self._task is not None and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        if running is not None:
            running.cancel()
        while not self._queue.empty():
            _, future = self._queue.get_nowait()
            future.cancel()
