"""
Periodic background sync.

Each run:
1. Refreshes every active profile without AI (forced, bypassing the cache)
2. Enriches pending stored items in batches until none remain or the batch
   limit is reached (skipped when no AI provider is ready)
"""
import time
from typing import Optional

import structlog

from devfeed.config import Settings, get_settings
from devfeed.errors import NoProviderAvailable
from devfeed.services.sync import SyncService

logger = structlog.get_logger(__name__)


class BackgroundSyncJob:
    """Scheduled refresh-then-enrich job."""

    def __init__(self, sync_service: SyncService, settings: Optional[Settings] = None):
        self.sync_service = sync_service
        self.settings = settings or get_settings()
        self.last_stats: Optional[dict] = None

    async def run(self) -> dict:
        """Run the full job once and return its statistics."""
        started = time.monotonic()
        logger.info("Background sync started")

        stats: dict = {"refresh": await self.sync_service.full_sync()}

        try:
            stats["enrichment"] = await self.sync_service.process_until_done(
                batch_size=self.settings.sync_batch_size,
                max_batches=self.settings.sync_max_batches,
            )
        except NoProviderAvailable:
            logger.info("No AI provider ready, skipping batch enrichment")
            stats["enrichment"] = None

        stats["duration_seconds"] = round(time.monotonic() - started, 2)
        self.last_stats = stats
        logger.info("Background sync completed", stats=stats)
        return stats
