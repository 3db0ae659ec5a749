"""
Manual URL submission.

A submitted URL becomes a feed item of the manual-submissions source. The
operation is idempotent: a URL that is already stored is returned as-is.
"""
from dataclasses import dataclass
from typing import Callable, Optional
from urllib.parse import urlparse

import structlog

from devfeed.config import Settings, get_settings
from devfeed.errors import InvalidSubmission
from devfeed.models.domain import FeedItem, Source, SourceKind
from devfeed.services.enrichment import AIEnricher
from devfeed.sources.manual import MANUAL_SOURCE_ID, ManualAdapter
from devfeed.store import FeedStore, enrichment_patch

logger = structlog.get_logger(__name__)

MANUAL_SOURCE = Source(
    id=MANUAL_SOURCE_ID,
    name="Manual Submissions",
    kind=SourceKind.MANUAL,
    url="manual://user-submissions",
    fetch_interval_seconds=0,
    weight=1.5,
)
MANUAL_RELEVANCE = 0.8


@dataclass
class SubmissionResult:
    item: FeedItem
    already_exists: bool
    message: str
    enriched: bool = False


class SubmissionService:
    """
    Stores user-submitted URLs.

    Features:
    - Scheme validation before any network call
    - Metadata extraction from the fetched page
    - Optional immediate enrichment; otherwise left pending for sync
    """

    def __init__(
        self,
        store: FeedStore,
        adapter: ManualAdapter,
        enricher_factory: Optional[Callable[[], Optional[AIEnricher]]] = None,
        settings: Optional[Settings] = None,
    ):
        self.store = store
        self.adapter = adapter
        self.enricher_factory = enricher_factory
        self.settings = settings or get_settings()

    async def submit(self, url: str, profile_id: Optional[str] = None) -> SubmissionResult:
        """
        Submit a URL.

        Args:
            url: Absolute http(s) URL
            profile_id: Profile to associate the item with

        Returns:
            SubmissionResult with the stored item

        Raises:
            InvalidSubmission: if the URL is not http(s)
            FetchError: if the page cannot be fetched
            StoreError: if the item cannot be stored
        """
        url = url.strip()
        parsed = urlparse(url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise InvalidSubmission(f"Only http(s) URLs can be submitted: {url!r}")

        existing = await self.store.search_items_by_url(url)
        if existing:
            logger.info("Submitted URL already stored", url=url, item_id=existing[0].id)
            return SubmissionResult(
                item=existing[0],
                already_exists=True,
                message="URL already exists",
            )

        raw = await self.adapter.fetch_submission(url)
        # Key by the submitted URL rather than the post-redirect one
        raw.url = url

        await self.store.create_source(MANUAL_SOURCE)

        item = raw.to_feed_item(MANUAL_SOURCE)
        item.profile_id = profile_id
        item.relevance_score = MANUAL_RELEVANCE
        item = await self.store.create_feed_item(item)
        logger.info("URL submitted", url=url, item_id=item.id, title=item.title)

        enriched = False
        enricher = self._enricher()
        if enricher is not None:
            batch = await enricher.process_batch([item])
            if batch.processed:
                item = await self.store.update_feed_item(item.id, enrichment_patch(item)) or item
                enriched = True
            else:
                failure = batch.failed[0]
                logger.warning(
                    "Submission enrichment failed",
                    url=url,
                    reason=failure.reason.value,
                    detail=failure.detail,
                )
                item = await self.store.update_feed_item(
                    item.id, {"processing_status": item.processing_status}
                ) or item

        message = "URL submitted and enriched" if enriched else "URL submitted"
        return SubmissionResult(item=item, already_exists=False, message=message, enriched=enriched)

    def _enricher(self) -> Optional[AIEnricher]:
        if not self.settings.auto_enrich_submissions or self.enricher_factory is None:
            return None
        return self.enricher_factory()
