"""
Tests for the aggregation orchestrator.

Sources and providers are faked; the cache runs on a settable clock.
"""
import asyncio

import pytest

from devfeed.config import PipelineLimits
from devfeed.core.config_loader import ConfigLoader
from devfeed.errors import (
    AggregationError,
    FetchError,
    FetchErrorKind,
    NoProviderAvailable,
    StoreError,
)
from devfeed.models.database import Database
from devfeed.models.domain import ProcessingStatus, SourceKind
from devfeed.services.aggregator import (
    NOTE_NO_PROVIDER,
    NOTE_QUOTA_FALLBACK,
    NOTE_QUOTA_STALE,
    Aggregator,
)
from devfeed.services.cache import CacheAndQuota
from devfeed.services.enrichment import AIEnricher
from devfeed.sources.base import RawItem
from devfeed.store import SQLFeedStore

from conftest import (
    FakeAdapter,
    FakeProvider,
    make_item,
    make_profile,
    make_settings,
    make_source,
)


def no_provider():
    raise NoProviderAvailable("none configured")


def build(loader, cache, adapter, enricher=None, store=None, settings=None):
    return Aggregator(
        config_loader=loader,
        cache=cache,
        store=store,
        enricher_factory=(lambda: enricher) if enricher else no_provider,
        adapters={SourceKind.FEED: adapter},
        settings=settings or make_settings(),
    )


def two_items():
    return {
        "sA": [RawItem(title="Python 3.13 released with a new JIT", url="https://blog.example.com/py313")],
        "sB": [RawItem(title="Rust async traits stabilized", url="https://blog.example.com/rust")],
    }


class TestEndToEnd:
    """The two reference scenarios."""

    @pytest.mark.asyncio
    async def test_duplicate_resolved_by_source_weight(self, loader, cache):
        """Same URL from two sources keeps the higher-weight source's copy."""
        adapter = FakeAdapter(items={
            "sA": [RawItem(title="Foo", url="https://x/1")],
            "sB": [RawItem(title="Foo (mirror)", url="https://x/1")],
        })
        aggregator = build(loader, cache, adapter)

        result = await aggregator.run(loader.get_profile("p1"), include_items=True)

        assert result.total_items == 2
        assert result.duplicates_removed == 1
        assert result.processed_items == 1
        assert result.processed_feed_items[0].title == "Foo"
        assert result.processed_feed_items[0].source_id == "sA"

    @pytest.mark.asyncio
    async def test_one_source_times_out(self, loader, cache):
        """A hanging source becomes a Timeout result; the other source's items survive."""
        adapter = FakeAdapter(
            items={"sA": [RawItem(title="Working item", url="https://a.example.com/1")]},
            hang=("sB",),
        )
        aggregator = build(loader, cache, adapter)

        result = await aggregator.run(loader.get_profile("p1"), include_items=True)

        by_source = {r.source_id: r for r in result.fetch_results}
        assert len(result.fetch_results) == 2
        assert by_source["sA"].success is True
        assert by_source["sA"].item_count == 1
        assert by_source["sB"].success is False
        assert by_source["sB"].error == "Timeout"
        assert [i.url for i in result.processed_feed_items] == ["https://a.example.com/1"]


class TestFailures:
    """Source failures are data; only total failure raises."""

    @pytest.mark.asyncio
    async def test_error_kinds_are_reported(self, loader, cache):
        adapter = FakeAdapter(
            items={"sA": [RawItem(title="ok", url="https://a.example.com/1")]},
            fail={"sB": FetchError(FetchErrorKind.RATE_LIMITED, "sB", "HTTP 429")},
        )
        result = await build(loader, cache, adapter).run(loader.get_profile("p1"))

        failed = [r for r in result.fetch_results if not r.success]
        assert [(r.source_id, r.error, r.error_detail) for r in failed] == [
            ("sB", "RateLimited", "HTTP 429"),
        ]

    @pytest.mark.asyncio
    async def test_all_sources_failed_raises(self, loader, cache):
        adapter = FakeAdapter(hang=("sA", "sB"))
        aggregator = build(loader, cache, adapter)

        with pytest.raises(AggregationError) as exc_info:
            await aggregator.run(loader.get_profile("p1"))

        assert len(exc_info.value.fetch_results) == 2

    @pytest.mark.asyncio
    async def test_all_sources_failed_serves_stale(self, loader, cache, clock):
        adapter = FakeAdapter(items=two_items())
        aggregator = build(loader, cache, adapter)
        profile = loader.get_profile("p1")
        await aggregator.run(profile)

        clock.advance(hours=2)
        adapter.hang = {"sA", "sB"}
        result = await aggregator.run(profile)

        assert result.stale is True
        assert result.cached is True
        assert result.processed_items == 2
        assert all(not r.success for r in result.fetch_results)

    @pytest.mark.asyncio
    async def test_run_budget_cancels_pending_sources(self, loader, cache):
        """Sources still running at the run deadline are recorded as Timeout."""
        settings = make_settings(pipeline=PipelineLimits(
            source_timeout_seconds=30,
            run_timeout_seconds=0.1,
        ))
        adapter = FakeAdapter(
            items={"sA": [RawItem(title="fast", url="https://a.example.com/1")]},
            hang=("sB",),
            timeout=30,
        )
        result = await build(loader, cache, adapter, settings=settings).run(loader.get_profile("p1"))

        by_source = {r.source_id: r for r in result.fetch_results}
        assert by_source["sA"].success is True
        assert by_source["sB"].error == "Timeout"
        assert by_source["sB"].error_detail == "run time budget exhausted"


class TestPipeline:
    """Filtering, scoring and ordering."""

    @pytest.mark.asyncio
    async def test_relevance_filter_and_ordering(self, cache):
        loader = ConfigLoader.from_definitions(
            sources=[make_source("sA")],
            profiles=[make_profile("p1", source_ids=("sA",), keywords=("python",), min_relevance_score=0.1)],
        )
        adapter = FakeAdapter(items={"sA": [
            RawItem(title="Gardening tips", url="https://a.example.com/garden"),
            RawItem(title="Python packaging", url="https://a.example.com/pkg"),
            RawItem(title="Python typing in Python 3.13", url="https://a.example.com/typing"),
        ]})
        result = await build(loader, cache, adapter).run(loader.get_profile("p1"), include_items=True)

        urls = [i.url for i in result.processed_feed_items]
        assert urls == ["https://a.example.com/typing", "https://a.example.com/pkg"]
        assert result.total_items == 3
        assert result.processed_items == 2
        scores = [i.relevance_score for i in result.processed_feed_items]
        assert result.avg_relevance_score == round(sum(scores) / 2, 3)

    @pytest.mark.asyncio
    async def test_include_items_false_omits_items(self, loader, cache):
        result = await build(loader, cache, FakeAdapter(items=two_items())).run(loader.get_profile("p1"))

        assert result.processed_items == 2
        assert result.processed_feed_items is None


class TestCacheAndQuota:
    """Cache hits, single flight and quota fallback."""

    @pytest.mark.asyncio
    async def test_second_run_is_served_from_cache(self, loader, cache, clock):
        adapter = FakeAdapter(items=two_items())
        aggregator = build(loader, cache, adapter)
        profile = loader.get_profile("p1")

        first = await aggregator.run(profile)
        clock.advance(minutes=5)
        second = await aggregator.run(profile)

        assert first.cached is False
        assert second.cached is True
        assert second.cache_age_seconds == 300
        assert adapter.calls.count("sA") == 1

    @pytest.mark.asyncio
    async def test_force_refresh_bypasses_cache(self, loader, cache):
        adapter = FakeAdapter(items=two_items())
        aggregator = build(loader, cache, adapter)
        profile = loader.get_profile("p1")

        await aggregator.run(profile)
        result = await aggregator.run(profile, force_refresh=True)

        assert result.cached is False
        assert adapter.calls.count("sA") == 2

    @pytest.mark.asyncio
    async def test_concurrent_runs_share_one_fetch(self, loader, cache):
        class SlowAdapter(FakeAdapter):
            async def _fetch(self, source):
                await asyncio.sleep(0.05)
                return await super()._fetch(source)

        adapter = SlowAdapter(items=two_items())
        aggregator = build(loader, cache, adapter)
        profile = loader.get_profile("p1")

        first, second = await asyncio.gather(aggregator.run(profile), aggregator.run(profile))

        assert adapter.calls.count("sA") == 1
        assert first.processed_items == second.processed_items == 2

    @pytest.mark.asyncio
    async def test_no_provider_degrades_to_non_ai(self, loader, cache):
        aggregator = build(loader, cache, FakeAdapter(items=two_items()))

        result = await aggregator.run(loader.get_profile("p1"), ai_enabled=True)

        assert result.ai_enabled is False
        assert NOTE_NO_PROVIDER in result.notes

    @pytest.mark.asyncio
    async def test_no_provider_runs_share_the_non_ai_cache(self, loader, cache):
        adapter = FakeAdapter(items=two_items())
        aggregator = build(loader, cache, adapter)
        profile = loader.get_profile("p1")

        results = [await aggregator.run(profile, ai_enabled=True) for _ in range(3)]
        plain = await aggregator.run(profile)

        assert adapter.calls.count("sA") == 1
        assert [r.cached for r in results] == [False, True, True]
        assert all(r.notes.count(NOTE_NO_PROVIDER) == 1 for r in results)
        assert NOTE_NO_PROVIDER not in plain.notes
        assert cache.remaining_quota() == 2

    @pytest.mark.asyncio
    async def test_ai_run_enriches_and_consumes_quota(self, loader, cache, enricher):
        aggregator = build(loader, cache, FakeAdapter(items=two_items()), enricher=enricher)

        result = await aggregator.run(loader.get_profile("p1"), ai_enabled=True, include_items=True)

        assert result.ai_enabled is True
        assert result.remaining_quota == 1
        assert all(i.ai_processed for i in result.processed_feed_items)
        assert all(i.processing_status == ProcessingStatus.PROCESSED for i in result.processed_feed_items)

    @pytest.mark.asyncio
    async def test_quota_exhausted_serves_last_ai_result(self, loader, cache, enricher, clock):
        adapter = FakeAdapter(items=two_items())
        aggregator = build(loader, cache, adapter, enricher=enricher)
        profile = loader.get_profile("p1")

        await aggregator.run(profile, ai_enabled=True, force_refresh=True)
        await aggregator.run(profile, ai_enabled=True, force_refresh=True)
        clock.advance(hours=2)
        result = await aggregator.run(profile, ai_enabled=True)

        assert result.ai_enabled is True
        assert result.cached is True
        assert result.stale is True
        assert result.remaining_quota == 0
        assert NOTE_QUOTA_STALE in result.notes
        assert adapter.calls.count("sA") == 2

    @pytest.mark.asyncio
    async def test_quota_exhausted_without_ai_entry_runs_non_ai(self, loader, clock, enricher):
        cache = CacheAndQuota(ttl_seconds=3600, quota_limit=0, clock=clock)
        aggregator = build(loader, cache, FakeAdapter(items=two_items()), enricher=enricher)

        result = await aggregator.run(loader.get_profile("p1"), ai_enabled=True)

        assert result.ai_enabled is False
        assert result.remaining_quota == 0
        assert NOTE_QUOTA_FALLBACK in result.notes
        assert cache.get("p1", False) is not None

    @pytest.mark.asyncio
    async def test_quota_resets_next_day(self, loader, cache, enricher, clock):
        aggregator = build(loader, cache, FakeAdapter(items=two_items()), enricher=enricher)
        profile = loader.get_profile("p1")

        for _ in range(2):
            await aggregator.run(profile, ai_enabled=True, force_refresh=True)
        assert cache.remaining_quota() == 0

        clock.advance(days=1)
        result = await aggregator.run(profile, ai_enabled=True, force_refresh=True)

        assert result.cached is False
        assert result.remaining_quota == 1


class TestEnrichmentInRuns:
    """Enrichment failures and reuse of stored enrichment."""

    @pytest.mark.asyncio
    async def test_enrichment_failures_do_not_fail_run(self, loader, cache):
        provider = FakeProvider(fail_urls=("https://blog.example.com/rust",))
        enricher = AIEnricher(provider, concurrency=2, item_timeout=1.0)
        aggregator = build(loader, cache, FakeAdapter(items=two_items()), enricher=enricher)

        result = await aggregator.run(loader.get_profile("p1"), ai_enabled=True, include_items=True)

        assert result.enrichment_failures == 1
        statuses = {i.url: i.processing_status for i in result.processed_feed_items}
        assert statuses["https://blog.example.com/rust"] == ProcessingStatus.FAILED
        assert statuses["https://blog.example.com/py313"] == ProcessingStatus.PROCESSED

    @pytest.mark.asyncio
    async def test_stored_enrichment_is_reused(self, loader, cache, tmp_path):
        database = Database(f"sqlite+aiosqlite:///{tmp_path / 'feed.db'}")
        await database.create_tables()
        store = SQLFeedStore(database)
        try:
            stored = make_item(
                url="https://blog.example.com/py313",
                title="Python 3.13 released with a new JIT",
                ai_processed=True,
                ai_summary="Stored summary",
                ai_tags=["python"],
                processing_status=ProcessingStatus.PROCESSED,
            )
            await store.create_feed_item(stored)

            provider = FakeProvider()
            enricher = AIEnricher(provider, concurrency=2, item_timeout=1.0)
            aggregator = build(loader, cache, FakeAdapter(items=two_items()), enricher=enricher, store=store)

            result = await aggregator.run(loader.get_profile("p1"), ai_enabled=True, include_items=True)

            by_url = {i.url: i for i in result.processed_feed_items}
            assert provider.calls == ["https://blog.example.com/rust"]
            assert by_url["https://blog.example.com/py313"].ai_summary == "Stored summary"
            assert all(i.id for i in result.processed_feed_items)
        finally:
            await database.close()

    @pytest.mark.asyncio
    async def test_non_ai_items_are_stored_pending(self, loader, cache, tmp_path):
        database = Database(f"sqlite+aiosqlite:///{tmp_path / 'feed.db'}")
        await database.create_tables()
        store = SQLFeedStore(database)
        try:
            aggregator = build(loader, cache, FakeAdapter(items=two_items()), store=store)
            await aggregator.run(loader.get_profile("p1"))

            assert await store.count_unprocessed("p1") == 2
        finally:
            await database.close()

    @pytest.mark.asyncio
    async def test_one_failed_write_does_not_stop_persistence(self, loader, cache, tmp_path):
        class FlakyStore(SQLFeedStore):
            async def upsert_feed_item(self, item):
                if item.url == "https://blog.example.com/py313":
                    raise StoreError("disk full")
                return await super().upsert_feed_item(item)

        database = Database(f"sqlite+aiosqlite:///{tmp_path / 'feed.db'}")
        await database.create_tables()
        store = FlakyStore(database)
        try:
            aggregator = build(loader, cache, FakeAdapter(items=two_items()), store=store)

            result = await aggregator.run(loader.get_profile("p1"), include_items=True)

            ids = {i.url: i.id for i in result.processed_feed_items}
            assert result.processed_items == 2
            assert ids["https://blog.example.com/py313"] is None
            assert ids["https://blog.example.com/rust"] is not None
            assert len(await store.search_items_by_url("https://blog.example.com/rust")) == 1
        finally:
            await database.close()
