"""
Periodic retention cleanup.

Runs PersistentStore.cleanup on a fixed interval. A failed tick is logged
and the loop waits for the next tick; there is no backoff and no retry.
"""

import asyncio
from typing import TYPE_CHECKING

from blanktrace.utils.errors import StorageError
from blanktrace.utils.logging import get_logger

if TYPE_CHECKING:
    from blanktrace.storage.database import Database
    from blanktrace.utils.config import CleanupConfig

logger = get_logger(__name__)


class CleanupScheduler:
    """Fixed-interval retention cleanup task."""

    def __init__(self, db: "Database", *, retention_days: int = 7, interval_seconds: float = 3600):
        self._db = db
        self.retention_days = retention_days
        self.interval_seconds = interval_seconds
        self._task: asyncio.Task[None] | None = None
        self.runs = 0
        self.failures = 0
        self.total_deleted = 0

    @classmethod
    def from_config(cls, db: "Database", config: "CleanupConfig") -> "CleanupScheduler":
        return cls(db, retention_days=config.retention_days, interval_seconds=config.interval_seconds)

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_once(self) -> int | None:
        """Run one cleanup tick.

        Returns:
            Rows deleted, or None if the cleanup failed.
        """
        self.runs += 1
        try:
            deleted = await self._db.cleanup(self.retention_days)
        except StorageError as e:
            self.failures += 1
            logger.error("Database cleanup failed", error=str(e), retention_days=self.retention_days)
            return None

        self.total_deleted += deleted
        if deleted > 0:
            logger.info("Cleaned up old records", deleted=deleted, retention_days=self.retention_days)
        return deleted

    def start(self) -> None:
        if self.is_running:
            return
        self._task = asyncio.create_task(self._run(), name="blanktrace_cleanup")
        logger.info(
            "Starting cleanup task",
            retention_days=self.retention_days,
            interval_seconds=self.interval_seconds,
        )

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Cleanup task stopped", runs=self.runs, total_deleted=self.total_deleted)

    async def _run(self) -> None:
        loop = asyncio.get_running_loop()
        next_tick = loop.time()
        while True:
            await self.run_once()
            # Fixed schedule: the next tick does not drift with cleanup duration
            next_tick += self.interval_seconds
            await asyncio.sleep(max(0.0, next_tick - loop.time()))
