"""
Sync operations: catch-up enrichment of stored items and forced refreshes.

These back the /sync endpoint, the background job and the CLI.
"""
import time
from typing import Optional

import structlog

from devfeed.core.config_loader import ConfigLoader
from devfeed.errors import AggregationError, NoProviderAvailable
from devfeed.models.domain import ProcessingStatus, Profile
from devfeed.services.aggregator import Aggregator
from devfeed.store import FeedStore, enrichment_patch

logger = structlog.get_logger(__name__)


class SyncService:
    """Batch enrichment and profile refreshes."""

    def __init__(
        self,
        aggregator: Aggregator,
        store: FeedStore,
        config_loader: ConfigLoader,
    ):
        self.aggregator = aggregator
        self.store = store
        self.config_loader = config_loader

    async def ai_batch_process(
        self,
        profile_id: Optional[str] = None,
        batch_size: int = 10,
    ) -> dict:
        """
        Enrich up to batch_size pending items from the store.

        Args:
            profile_id: Limit to items stored for this profile
            batch_size: Maximum items to process in this call

        Returns:
            Dict with processed_count, failed_count, remaining_unprocessed, duration_ms

        Raises:
            NoProviderAvailable: if no AI provider is ready
        """
        started = time.monotonic()
        enricher = self.aggregator.create_enricher()
        if enricher is None:
            raise NoProviderAvailable("batch processing needs a configured AI provider")

        items = await self.store.get_unprocessed_items(profile_id, limit=batch_size)
        profile = self.config_loader.get_profile(profile_id) if profile_id else None

        processed_count = failed_count = 0
        if items:
            batch = await enricher.process_batch(items, profile)
            for item in batch.processed:
                await self.store.update_feed_item(item.id, enrichment_patch(item))
            for failure in batch.failed:
                await self.store.update_feed_item(
                    failure.item.id, {"processing_status": ProcessingStatus.FAILED}
                )
            processed_count = len(batch.processed)
            failed_count = len(batch.failed)

        remaining = await self.store.count_unprocessed(profile_id)
        result = {
            "processed_count": processed_count,
            "failed_count": failed_count,
            "remaining_unprocessed": remaining,
            "duration_ms": int((time.monotonic() - started) * 1000),
        }
        logger.info("AI batch processed", profile=profile_id, **result)
        return result

    async def process_until_done(
        self,
        profile_id: Optional[str] = None,
        batch_size: int = 10,
        max_batches: int = 5,
    ) -> dict:
        """Repeat ai_batch_process until nothing remains or max_batches is reached."""
        totals = {"batches": 0, "processed_count": 0, "failed_count": 0, "remaining_unprocessed": 0}
        for _ in range(max_batches):
            result = await self.ai_batch_process(profile_id, batch_size)
            totals["batches"] += 1
            totals["processed_count"] += result["processed_count"]
            totals["failed_count"] += result["failed_count"]
            totals["remaining_unprocessed"] = result["remaining_unprocessed"]
            if result["remaining_unprocessed"] == 0 or result["processed_count"] + result["failed_count"] == 0:
                break
        return totals

    async def profile_sync(self, profile_id: str) -> dict:
        """
        Non-AI forced refresh of one profile.

        Raises:
            KeyError: if the profile is unknown or inactive
        """
        profile = self.config_loader.get_profile(profile_id)
        if profile is None or not self.config_loader.is_active(profile):
            raise KeyError(profile_id)
        return await self._refresh(profile)

    async def full_sync(self) -> dict:
        """Non-AI forced refresh of every active profile."""
        started = time.monotonic()
        profiles = {}
        for profile in self.config_loader.get_active_profiles():
            try:
                profiles[profile.id] = await self._refresh(profile)
            except AggregationError as e:
                logger.warning("Profile sync failed", profile=profile.id, error=str(e))
                profiles[profile.id] = {"success": False, "error": str(e)}

        return {
            "profiles": profiles,
            "synced": sum(1 for p in profiles.values() if p["success"]),
            "duration_ms": int((time.monotonic() - started) * 1000),
        }

    async def health_check(self) -> dict:
        enricher = self.aggregator.create_enricher()
        return {
            "status": "healthy",
            "ai_provider": enricher.provider.name if enricher else None,
            "unprocessed_items": await self.store.count_unprocessed() if self.store else None,
            "active_profiles": [p.id for p in self.config_loader.get_active_profiles()],
        }

    async def _refresh(self, profile: Profile) -> dict:
        result = await self.aggregator.run(profile, ai_enabled=False, force_refresh=True)
        return {
            "success": True,
            "total_items": result.total_items,
            "processed_items": result.processed_items,
            "failed_sources": [r.source_id for r in result.fetch_results if not r.success],
            "stale": result.stale,
        }
