"""
Engagement tracking.

Events are queued and written by a single background worker so that the
tracking endpoint never waits on, or fails because of, the store.
"""
import asyncio
from typing import Optional

import structlog

from devfeed.errors import StoreError
from devfeed.models.domain import EngagementEvent
from devfeed.store import FeedStore

logger = structlog.get_logger(__name__)


class EngagementTracker:
    """Bounded queue of engagement events drained by one worker task."""

    def __init__(self, store: Optional[FeedStore], max_queue_size: int = 1000):
        self.store = store
        self._queue: asyncio.Queue[EngagementEvent] = asyncio.Queue(maxsize=max_queue_size)
        self._worker: Optional[asyncio.Task] = None
        self.recorded = 0
        self.dropped = 0

    @property
    def running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    def start(self) -> None:
        if not self.running:
            self._worker = asyncio.create_task(self._drain())
            logger.info("Engagement tracker started")

    async def stop(self) -> None:
        """Write out queued events, then stop the worker."""
        if self._worker is None:
            return
        await self._queue.join()
        self._worker.cancel()
        try:
            await self._worker
        except asyncio.CancelledError:
            pass
        self._worker = None
        logger.info("Engagement tracker stopped", recorded=self.recorded, dropped=self.dropped)

    def submit(self, event: EngagementEvent) -> bool:
        """Queue an event. Returns False if it was dropped."""
        if self.store is None:
            self.dropped += 1
            return False
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning("Engagement queue full, dropping event", item_id=event.item_id)
            return False
        return True

    async def flush(self) -> None:
        """Wait until every queued event has been handled."""
        await self._queue.join()

    async def _drain(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                await self.store.record_engagement(event)
                self.recorded += 1
            except StoreError as e:
                self.dropped += 1
                logger.warning("Failed to record engagement", item_id=event.item_id, error=str(e))
            except Exception:
                # The worker must outlive any single bad write
                self.dropped += 1
                logger.exception("Unexpected error recording engagement", item_id=event.item_id)
            finally:
                self._queue.task_done()

    def get_stats(self) -> dict:
        return {
            "running": self.running,
            "queued": self._queue.qsize(),
            "recorded": self.recorded,
            "dropped": self.dropped,
        }
