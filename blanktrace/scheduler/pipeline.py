"""
Event pipeline for BlankTrace.

Bounded multi-producer / single-consumer queue that decouples policy
decisions on the request path from storage writes.

Delivery semantics:
- publish() never raises and never waits on storage I/O
- a full queue drops the event (overflow="drop") or waits up to
  block_timeout first (overflow="block"); every drop is counted and logged
- one consumer applies events in arrival order; a failed application is
  logged and discarded
- at-most-once: events still queued when the consumer stops are lost
"""

import asyncio
from typing import TYPE_CHECKING, Any, Literal

from blanktrace.scheduler.events import Event
from blanktrace.utils.logging import get_logger

if TYPE_CHECKING:
    from blanktrace.storage.database import Database
    from blanktrace.utils.config import PipelineConfig

logger = get_logger(__name__)

OverflowPolicy = Literal["drop", "block"]


class EventPipeline:
    """Bounded event queue drained into the persistent store."""

    def __init__(
        self,
        db: "Database",
        *,
        maxsize: int = 1024,
        overflow: OverflowPolicy = "drop",
        block_timeout: float = 0.05,
    ):
        if overflow not in ("drop", "block"):
            raise ValueError(f"Unknown overflow policy: {overflow}")
        self._db = db
        self._queue: asyncio.Queue[Event] = asyncio.Queue(maxsize=maxsize)
        self._overflow = overflow
        self._block_timeout = block_timeout
        self._consumer: asyncio.Task[None] | None = None

        self.published = 0
        self.applied = 0
        self.failed = 0
        self.dropped = 0

    @classmethod
    def from_config(cls, db: "Database", config: "PipelineConfig") -> "EventPipeline":
        return cls(
            db,
            maxsize=config.queue_size,
            overflow=config.overflow,
            block_timeout=config.block_timeout,
        )

    @property
    def is_running(self) -> bool:
        return self._consumer is not None and not self._consumer.done()

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    async def publish(self, event: Event) -> bool:
        """Enqueue an event without waiting on storage.

        Returns:
            True if queued, False if dropped.
        """
        try:
            if self._overflow == "block":
                await asyncio.wait_for(self._queue.put(event), timeout=self._block_timeout)
            else:
                self._queue.put_nowait(event)
        except (asyncio.QueueFull, TimeoutError):
            self.dropped += 1
            logger.warning(
                "Event dropped, pipeline queue full",
                kind=event.kind,
                dropped_total=self.dropped,
                queue_size=self._queue.maxsize,
            )
            return False

        self.published += 1
        return True

    def start(self) -> None:
        """Start the single consumer task."""
        if self.is_running:
            return
        self._consumer = asyncio.create_task(self._consume(), name="blanktrace_event_consumer")
        logger.info("Event pipeline started", queue_size=self._queue.maxsize, overflow=self._overflow)

    async def stop(self) -> None:
        """Stop the consumer. Events still queued are discarded."""
        if self._consumer is None:
            return

        self._consumer.cancel()
        try:
            await self._consumer
        except asyncio.CancelledError:
            pass
        self._consumer = None

        lost = self._queue.qsize()
        while not self._queue.empty():
            self._queue.get_nowait()
            self._queue.task_done()

        logger.info("Event pipeline stopped", lost=lost, **self.stats())

    async def join(self) -> None:
        """Wait until every queued event has been applied (or failed)."""
        await self._queue.join()

    def stats(self) -> dict[str, Any]:
        return {
            "published": self.published,
            "applied": self.applied,
            "failed": self.failed,
            "dropped": self.dropped,
            "pending": self._queue.qsize(),
        }

    async def _consume(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                await event.apply(self._db)
                self.applied += 1
            except Exception as e:
                self.failed += 1
                logger.error(
                    "Failed to apply event",
                    kind=event.kind,
                    error=str(e),
                    failed_total=self.failed,
                )
            finally:
                self._queue.task_done()
