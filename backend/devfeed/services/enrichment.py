"""
AI enrichment of feed items.

Items are enriched independently with bounded concurrency. A failing item
is reported in the batch result and marked failed; it never fails the
batch.
"""
import asyncio
import re
from dataclasses import dataclass, field
from typing import Optional

import structlog

from devfeed.config import Settings, get_settings
from devfeed.errors import EnrichError, EnrichErrorKind
from devfeed.models.domain import (
    EnrichedFields,
    FeedItem,
    ProcessingStatus,
    Profile,
    merge_tags,
)
from devfeed.providers.base import Provider
from devfeed.providers.registry import ProviderRegistry, default_registry

logger = structlog.get_logger(__name__)

RELEVANCE_STEP = 0.05


@dataclass
class FailedEnrichment:
    """An item the provider could not enrich."""
    item: FeedItem
    reason: EnrichErrorKind
    detail: Optional[str] = None


@dataclass
class BatchResult:
    processed: list[FeedItem] = field(default_factory=list)
    failed: list[FailedEnrichment] = field(default_factory=list)


class AIEnricher:
    """
    Runs items through an AI provider.

    Features:
    - Bounded concurrency sized for provider rate limits
    - Per-item timeout plus an optional batch deadline
    - Forward-only status updates (processing -> processed | failed)
    - Upward-only relevance refinement from AI tags
    """

    def __init__(
        self,
        provider: Provider,
        concurrency: int = 3,
        item_timeout: float = 30.0,
    ):
        self.provider = provider
        self.concurrency = concurrency
        self.item_timeout = item_timeout
        self._processed_count = 0
        self._failed_count = 0

    @classmethod
    def create_default(
        cls,
        settings: Optional[Settings] = None,
        registry: Optional[ProviderRegistry] = None,
    ) -> "AIEnricher":
        """
        Enricher backed by the first ready provider.

        Raises:
            NoProviderAvailable: if no provider is configured
        """
        settings = settings or get_settings()
        provider = (registry or default_registry).create_default(settings)
        return cls(
            provider,
            concurrency=settings.pipeline.enrichment_concurrency,
            item_timeout=settings.pipeline.enrichment_timeout_seconds,
        )

    async def process_batch(
        self,
        items: list[FeedItem],
        profile: Optional[Profile] = None,
        deadline: Optional[float] = None,
    ) -> BatchResult:
        """
        Enrich a batch of items in place.

        Args:
            items: Items to enrich
            profile: Supplies the focus and which fields to fill; None fills all
            deadline: Event-loop time after which remaining items fail with Timeout

        Returns:
            BatchResult with processed items and failures with reasons
        """
        semaphore = asyncio.Semaphore(self.concurrency)

        async def run(item: FeedItem) -> Optional[FailedEnrichment]:
            async with semaphore:
                return await self._process_item(item, profile, deadline)

        outcomes = await asyncio.gather(*(run(item) for item in items))

        result = BatchResult()
        for item, failure in zip(items, outcomes):
            if failure is None:
                result.processed.append(item)
            else:
                result.failed.append(failure)

        self._processed_count += len(result.processed)
        self._failed_count += len(result.failed)
        logger.info(
            "Enrichment batch finished",
            provider=self.provider.name,
            processed=len(result.processed),
            failed=len(result.failed),
        )
        return result

    async def _process_item(
        self,
        item: FeedItem,
        profile: Optional[Profile],
        deadline: Optional[float],
    ) -> Optional[FailedEnrichment]:
        if item.processing_status == ProcessingStatus.PROCESSED:
            return None
        if item.processing_status == ProcessingStatus.FAILED:
            return FailedEnrichment(item, EnrichErrorKind.PROVIDER_ERROR, "previously failed")

        timeout = self.item_timeout
        if deadline is not None:
            timeout = min(timeout, deadline - asyncio.get_running_loop().time())
        if timeout <= 0:
            item.advance_status(ProcessingStatus.FAILED)
            return FailedEnrichment(item, EnrichErrorKind.TIMEOUT, "run budget exhausted")

        item.advance_status(ProcessingStatus.PROCESSING)
        focus = (profile.focus.description or None) if profile else None

        try:
            fields = await asyncio.wait_for(self.provider.summarize(item, focus), timeout=timeout)
        except asyncio.TimeoutError:
            failure = FailedEnrichment(item, EnrichErrorKind.TIMEOUT, f"no response within {timeout:.1f}s")
        except EnrichError as e:
            failure = FailedEnrichment(item, e.kind, e.detail)
        except Exception as e:
            logger.warning("Provider raised unexpectedly", url=item.url, error=str(e))
            failure = FailedEnrichment(item, EnrichErrorKind.PROVIDER_ERROR, str(e))
        else:
            self.apply(item, fields, profile)
            return None

        item.advance_status(ProcessingStatus.FAILED)
        logger.debug("Item enrichment failed", url=item.url, reason=failure.reason.value)
        return failure

    def apply(self, item: FeedItem, fields: EnrichedFields, profile: Optional[Profile]) -> None:
        """Copy provider output onto an item according to the profile's policy."""
        want_summary = profile is None or profile.processing.generate_summary
        want_tags = profile is None or profile.processing.enhance_tags

        if want_summary:
            item.ai_summary = fields.summary
            item.key_points = fields.key_points or None
            item.insights = fields.insights or None
        if want_tags:
            item.ai_tags = fields.tags
            item.tags = merge_tags(item.tags, fields.tags)

        item.ai_confidence = fields.confidence
        item.ai_model = fields.model
        item.ai_processed = True
        item.relevance_score = self.refine_score(item.relevance_score, fields.tags, profile)
        item.advance_status(ProcessingStatus.PROCESSED)

    @staticmethod
    def refine_score(score: float, ai_tags: list[str], profile: Optional[Profile]) -> float:
        """Raise a score for AI tags matching the profile keywords. Never lowers it."""
        if profile is None or not profile.focus.keywords:
            return score

        matches = 0
        for tag in ai_tags:
            tag = tag.lower().replace("-", " ")
            if any(_overlaps(tag, keyword) for keyword in profile.focus.keywords):
                matches += 1

        refined = min(1.0, score + RELEVANCE_STEP * matches)
        return round(max(score, refined), 4)

    def get_stats(self) -> dict:
        return {
            "provider": self.provider.name,
            "model": self.provider.model,
            "concurrency": self.concurrency,
            "processed": self._processed_count,
            "failed": self._failed_count,
        }


def _overlaps(tag: str, keyword: str) -> bool:
    """Whole-word containment either way ("machine learning" ~ "learning")."""
    def contains(text: str, phrase: str) -> bool:
        return re.search(rf"(?<!\w){re.escape(phrase)}(?!\w)", text) is not None
    return contains(tag, keyword) or contains(keyword, tag)
