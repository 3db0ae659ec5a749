"""
Aggregation orchestrator.

Runs one profile through the pipeline:
fetch (all sources, bounded fan-out) -> merge -> age filter -> dedupe ->
score -> relevance filter -> enrich (optional) -> persist -> sort -> cache.

Per-source and per-item failures are reported in the result. Only a run in
which every source failed, with nothing stale to fall back on, raises.
"""
import asyncio
import time
from datetime import timedelta
from typing import Callable, Optional

import structlog

from devfeed.config import Settings, get_settings
from devfeed.core.config_loader import ConfigLoader
from devfeed.errors import (
    AggregationError,
    FetchError,
    FetchErrorKind,
    NoProviderAvailable,
    StoreError,
)
from devfeed.models.domain import (
    AggregationResult,
    FeedItem,
    FetchResult,
    ProcessingStatus,
    Profile,
    Source,
    SourceKind,
    merge_tags,
)
from devfeed.services.cache import CacheAndQuota, CacheEntry
from devfeed.services.deduplication import Deduplicator
from devfeed.services.enrichment import AIEnricher
from devfeed.services.relevance import RelevanceScorer
from devfeed.sources import SourceAdapter, create_adapters
from devfeed.store import FeedStore

logger = structlog.get_logger(__name__)

EnricherFactory = Callable[[], AIEnricher]

NOTE_NO_PROVIDER = "AI requested but no provider is configured; returning non-AI results"
NOTE_QUOTA_STALE = "AI quota exhausted for today; serving the last AI result"
NOTE_QUOTA_FALLBACK = "AI quota exhausted for today; returning non-AI results"
NOTE_ALL_FAILED_STALE = "All sources failed; serving the last successful result"

SAMPLE_SIZE = 5


class Aggregator:
    """
    Orchestrates aggregation runs for profiles.

    Features:
    - Cache-first with single-flight per (profile, ai_mode)
    - Degrades to non-AI when no provider is ready or the quota is spent
    - Bounded source fan-out inside a run-level time budget
    - Weighted dedupe, keyword scoring and optional AI enrichment
    - Best-effort persistence (store failures never fail a run)
    """

    def __init__(
        self,
        config_loader: ConfigLoader,
        cache: CacheAndQuota,
        store: Optional[FeedStore] = None,
        enricher_factory: Optional[EnricherFactory] = None,
        adapters: Optional[dict[SourceKind, SourceAdapter]] = None,
        settings: Optional[Settings] = None,
        scorer: Optional[RelevanceScorer] = None,
        deduplicator: Optional[Deduplicator] = None,
    ):
        self.settings = settings or get_settings()
        self.config_loader = config_loader
        self.cache = cache
        self.store = store
        self.enricher_factory = enricher_factory or (lambda: AIEnricher.create_default(self.settings))
        self.adapters = adapters if adapters is not None else create_adapters(self.settings)
        self.scorer = scorer or RelevanceScorer()
        self.deduplicator = deduplicator or Deduplicator()
        self._last_run: Optional[dict] = None

    # =========================================================================
    # Runs
    # =========================================================================

    async def run(
        self,
        profile: Profile,
        ai_enabled: bool = False,
        force_refresh: bool = False,
        include_items: bool = False,
    ) -> AggregationResult:
        """
        Aggregate one profile.

        Args:
            profile: Active profile to aggregate
            ai_enabled: Request AI enrichment (subject to provider and quota)
            force_refresh: Skip the live-cache check
            include_items: Include processed_feed_items in the result

        Returns:
            AggregationResult, possibly served from cache

        Raises:
            AggregationError: if every source failed and nothing is cached
        """
        if ai_enabled and self.create_enricher() is None:
            # Served from the non-AI key so degraded requests share its cache
            result = await self.run(profile, False, force_refresh, include_items)
            result.notes.append(NOTE_NO_PROVIDER)
            result.remaining_quota = self.cache.remaining_quota()
            return result

        if not force_refresh:
            entry = self.cache.get(profile.id, ai_enabled)
            if entry is not None:
                logger.info("Aggregation cache hit", profile=profile.id, ai=ai_enabled)
                return self._present(self._from_entry(entry, ai_enabled), include_items)

        result = await self.cache.coalesce(
            (profile.id, ai_enabled),
            lambda: self._run_fresh(profile, ai_enabled),
        )
        return self._present(result, include_items)

    async def _run_fresh(self, profile: Profile, ai_requested: bool) -> AggregationResult:
        notes: list[str] = []
        enricher: Optional[AIEnricher] = None

        if ai_requested:
            enricher = self.create_enricher()
            if enricher is None:
                notes.append(NOTE_NO_PROVIDER)
            elif not self.cache.try_consume_quota():
                enricher = None
                fallback = self._quota_fallback(profile)
                if fallback is not None:
                    return fallback
                notes.append(NOTE_QUOTA_FALLBACK)

        result = await self._execute(profile, enricher, notes)
        if not result.cached:
            self.cache.put(profile.id, result.ai_enabled, result)
        if ai_requested:
            result.remaining_quota = self.cache.remaining_quota()
        return result

    def _quota_fallback(self, profile: Profile) -> Optional[AggregationResult]:
        """Last AI result, else a live non-AI result, when the quota is spent."""
        entry = self.cache.get(profile.id, True, allow_stale=True)
        if entry is not None:
            result = self._from_entry(entry, ai_requested=True)
            result.stale = entry.is_expired(self.cache.now())
            result.notes.append(NOTE_QUOTA_STALE)
            logger.info("AI quota exhausted, serving last AI result", profile=profile.id)
            return result

        entry = self.cache.get(profile.id, False)
        if entry is not None:
            result = self._from_entry(entry, ai_requested=True)
            result.notes.append(NOTE_QUOTA_FALLBACK)
            logger.info("AI quota exhausted, serving cached non-AI result", profile=profile.id)
            return result

        return None

    async def _execute(
        self,
        profile: Profile,
        enricher: Optional[AIEnricher],
        notes: list[str],
    ) -> AggregationResult:
        started = time.monotonic()
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.settings.pipeline.run_timeout_seconds

        sources = self.config_loader.get_sources_for_profile(profile)
        logger.info(
            "Aggregation started",
            profile=profile.id,
            sources=len(sources),
            ai=enricher is not None,
        )

        fetch_results, items = await self._fetch_all(sources, deadline)
        total_items = len(items)

        if sources and not items and not any(r.success for r in fetch_results):
            return self._all_sources_failed(profile, enricher is not None, fetch_results)

        # Filter, dedupe, score
        policy = profile.processing
        if policy.max_age_days:
            cutoff = self.cache.now() - timedelta(days=policy.max_age_days)
            items = [item for item in items if item.published_at >= cutoff]

        weights = {source.id: source.weight for source in sources}
        unique, duplicates_removed = self.deduplicator.dedupe(items, weights)

        relevant = []
        for item in unique:
            item.profile_id = profile.id
            item.relevance_score = self.scorer.score(item, profile, weights.get(item.source_id, 1.0))
            if not self.scorer.is_relevant(item.relevance_score, profile):
                continue
            if policy.enhance_tags:
                item.tags = RelevanceScorer.extract_tags(item)
            relevant.append(item)

        # Enrich
        enrichment_failures = 0
        if enricher is not None and relevant and (policy.generate_summary or policy.enhance_tags):
            pending = await self._reuse_stored_enrichment(relevant, profile)
            if pending:
                batch = await enricher.process_batch(pending, profile, deadline=deadline)
                enrichment_failures = len(batch.failed)
                if enrichment_failures:
                    notes.append(f"{enrichment_failures} item(s) could not be enriched")

        await self._persist(relevant)

        relevant.sort(key=lambda i: (-i.relevance_score, -i.published_at.timestamp(), i.url))
        avg_score = (
            round(sum(i.relevance_score for i in relevant) / len(relevant), 3)
            if relevant else 0.0
        )

        result = AggregationResult(
            profile_id=profile.id,
            profile_name=profile.name,
            total_items=total_items,
            processed_items=len(relevant),
            avg_relevance_score=avg_score,
            duplicates_removed=duplicates_removed,
            fetch_results=fetch_results,
            processed_feed_items=relevant,
            ai_enabled=enricher is not None,
            notes=notes,
            enrichment_failures=enrichment_failures,
            duration_ms=int((time.monotonic() - started) * 1000),
        )
        self._record_run(result)
        logger.info(
            "Aggregation finished",
            profile=profile.id,
            total=total_items,
            processed=len(relevant),
            duplicates=duplicates_removed,
            failed_sources=sum(1 for r in fetch_results if not r.success),
            duration_ms=result.duration_ms,
        )
        return result

    def _all_sources_failed(
        self,
        profile: Profile,
        ai_mode: bool,
        fetch_results: list[FetchResult],
    ) -> AggregationResult:
        entry = self.cache.get(profile.id, ai_mode, allow_stale=True)
        if entry is None and ai_mode:
            entry = self.cache.get(profile.id, False, allow_stale=True)

        if entry is None:
            logger.error("All sources failed", profile=profile.id)
            raise AggregationError(
                f"All {len(fetch_results)} source(s) failed for profile {profile.id}",
                fetch_results=fetch_results,
            )

        logger.warning("All sources failed, serving stale result", profile=profile.id)
        result = self._from_entry(entry, ai_requested=ai_mode)
        result.stale = True
        result.fetch_results = fetch_results
        result.notes.append(NOTE_ALL_FAILED_STALE)
        return result

    # =========================================================================
    # Fetching
    # =========================================================================

    async def _fetch_all(
        self,
        sources: list[Source],
        deadline: float,
    ) -> tuple[list[FetchResult], list[FeedItem]]:
        """Fetch every source; exactly one FetchResult per source, in source order."""
        if not sources:
            return [], []

        semaphore = asyncio.Semaphore(self.settings.pipeline.source_concurrency)

        async def fetch_one(source: Source) -> tuple[FetchResult, list[FeedItem]]:
            async with semaphore:
                return await self.fetch_source(source)

        tasks = [asyncio.ensure_future(fetch_one(source)) for source in sources]
        timeout = max(0.0, deadline - asyncio.get_running_loop().time())
        _, pending = await asyncio.wait(tasks, timeout=timeout)

        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        fetch_results: list[FetchResult] = []
        items: list[FeedItem] = []
        for source, task in zip(sources, tasks):
            if task in pending:
                fetch_results.append(FetchResult(
                    source_id=source.id,
                    success=False,
                    error=FetchErrorKind.TIMEOUT.value,
                    error_detail="run time budget exhausted",
                    duration_ms=int(self.settings.pipeline.run_timeout_seconds * 1000),
                ))
                continue
            fetch_result, source_items = task.result()
            fetch_results.append(fetch_result)
            items.extend(source_items)

        return fetch_results, items

    async def fetch_source(self, source: Source) -> tuple[FetchResult, list[FeedItem]]:
        """Fetch one source. Failures come back as an unsuccessful FetchResult."""
        started = time.monotonic()

        def elapsed() -> int:
            return int((time.monotonic() - started) * 1000)

        adapter = self.adapters.get(source.kind)
        if adapter is None:
            return FetchResult(
                source_id=source.id,
                success=False,
                error=FetchErrorKind.UNREACHABLE.value,
                error_detail=f"no adapter for kind {source.kind.value}",
            ), []

        try:
            raw_items = await adapter.fetch(source)
        except FetchError as e:
            logger.warning(
                "Source fetch failed",
                source=source.id,
                error=e.kind.value,
                detail=e.detail,
            )
            return FetchResult(
                source_id=source.id,
                success=False,
                duration_ms=elapsed(),
                error=e.kind.value,
                error_detail=e.detail,
            ), []

        items = [raw.to_feed_item(source) for raw in raw_items]
        return FetchResult(
            source_id=source.id,
            success=True,
            item_count=len(items),
            duration_ms=elapsed(),
        ), items

    # =========================================================================
    # Enrichment and persistence
    # =========================================================================

    def create_enricher(self) -> Optional[AIEnricher]:
        """Enricher for the first ready provider, or None."""
        try:
            return self.enricher_factory()
        except NoProviderAvailable as e:
            logger.info("No AI provider available", detail=e.detail)
            return None

    async def _reuse_stored_enrichment(
        self,
        items: list[FeedItem],
        profile: Profile,
    ) -> list[FeedItem]:
        """Copy enrichment from stored copies; return the items still needing a provider."""
        if self.store is None:
            return list(items)

        pending = []
        for item in items:
            try:
                stored = await self.store.search_items_by_url(item.url)
            except StoreError as e:
                logger.warning("Store lookup failed, enriching without it", error=str(e))
                return [i for i in items if not i.ai_processed]

            if stored and stored[0].ai_processed:
                previous = stored[0]
                item.ai_processed = True
                item.ai_summary = previous.ai_summary
                item.ai_tags = previous.ai_tags
                item.key_points = previous.key_points
                item.insights = previous.insights
                item.ai_confidence = previous.ai_confidence
                item.ai_model = previous.ai_model
                item.tags = merge_tags(item.tags, previous.ai_tags)
                item.relevance_score = AIEnricher.refine_score(
                    item.relevance_score, previous.ai_tags or [], profile
                )
                item.processing_status = ProcessingStatus.PROCESSED
            else:
                pending.append(item)

        reused = len(items) - len(pending)
        if reused:
            logger.debug("Reused stored enrichment", items=reused)
        return pending

    async def _persist(self, items: list[FeedItem]) -> None:
        if self.store is None:
            return
        failed = 0
        for item in items:
            try:
                stored = await self.store.upsert_feed_item(item)
            except StoreError as e:
                failed += 1
                logger.warning("Persisting item failed", url=item.url, error=str(e))
                continue
            item.id = stored.id
        if failed:
            logger.error("Some aggregation results were not persisted", failed=failed, total=len(items))

    # =========================================================================
    # Results
    # =========================================================================

    def _from_entry(self, entry: CacheEntry, ai_requested: bool) -> AggregationResult:
        result = entry.result.model_copy(deep=True)
        result.cached = True
        result.cache_age_seconds = entry.age_seconds(self.cache.now())
        if ai_requested:
            result.remaining_quota = self.cache.remaining_quota()
        return result

    @staticmethod
    def _present(result: AggregationResult, include_items: bool) -> AggregationResult:
        if include_items:
            return result.model_copy(deep=True)
        return result.model_copy(update={"processed_feed_items": None}, deep=True)

    def _record_run(self, result: AggregationResult) -> None:
        self._last_run = {
            "profile_id": result.profile_id,
            "ai_enabled": result.ai_enabled,
            "finished_at": result.generated_at.isoformat(),
            "duration_ms": result.duration_ms,
            "total_items": result.total_items,
            "processed_items": result.processed_items,
            "duplicates_removed": result.duplicates_removed,
            "enrichment_failures": result.enrichment_failures,
            "failed_sources": [
                {"source_id": r.source_id, "error": r.error}
                for r in result.fetch_results if not r.success
            ],
        }

    def get_last_run_metrics(self) -> Optional[dict]:
        return dict(self._last_run) if self._last_run else None

    # =========================================================================
    # Status and diagnostics
    # =========================================================================

    def get_status(self) -> dict:
        """Readiness snapshot. Performs no fetches."""
        enricher = self.create_enricher()
        return {
            "config": self.config_loader.get_config_summary(),
            "adapters": sorted(kind.value for kind in self.adapters),
            "ai": {
                "ready": enricher is not None,
                "provider": enricher.provider.name if enricher else None,
                "model": enricher.provider.model if enricher else None,
            },
            "store": self.store is not None,
            "cache": self.cache.get_status(),
            "last_run": self.get_last_run_metrics(),
        }

    async def test_source(self, source_id: str) -> dict:
        """
        Fetch a single configured source and return its result plus a sample.

        Raises:
            KeyError: if the source is not configured
        """
        source = self.config_loader.get_source(source_id)
        if source is None:
            raise KeyError(source_id)

        fetch_result, items = await self.fetch_source(source)
        return {
            "fetch_result": fetch_result,
            "sample": [
                {"title": item.title, "url": item.url, "published_at": item.published_at.isoformat()}
                for item in items[:SAMPLE_SIZE]
            ],
        }
