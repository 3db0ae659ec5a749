"""
Shared fixtures and fakes.

Adapters and providers are faked by subclassing the real ABCs so the
pipeline code under test runs unchanged.
"""
import asyncio
from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest

from devfeed.config import CacheQuotaSettings, PipelineLimits, Settings
from devfeed.core.config_loader import ConfigLoader
from devfeed.errors import EnrichError, EnrichErrorKind
from devfeed.models.domain import EnrichedFields, FeedItem, Profile, Source, SourceKind
from devfeed.providers.base import Provider
from devfeed.services.cache import CacheAndQuota
from devfeed.services.enrichment import AIEnricher
from devfeed.sources.base import RawItem, SourceAdapter

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


def make_settings(**overrides) -> Settings:
    values = {
        "_env_file": None,
        "environment": "development",
        "ai_provider": None,
        "anthropic_api_key": None,
        "openai_api_key": None,
        "extractive_provider_enabled": False,
        "cron_secret": None,
        "pipeline": PipelineLimits(
            source_concurrency=4,
            source_timeout_seconds=0.2,
            enrichment_concurrency=2,
            enrichment_timeout_seconds=1.0,
            run_timeout_seconds=5.0,
        ),
        "cache": CacheQuotaSettings(ttl_hours=1, ai_quota_production=2, ai_quota_development=2),
    }
    values.update(overrides)
    return Settings(**values)


def make_item(
    url: str = "https://example.com/a",
    title: str = "An article about Python",
    source_id: str = "sA",
    **fields,
) -> FeedItem:
    values = {
        "source_id": source_id,
        "source_url": f"https://{source_id}.example.com",
        "title": title,
        "url": url,
        "content": fields.pop("content", ""),
        "published_at": fields.pop("published_at", NOW),
    }
    values.update(fields)
    return FeedItem(**values)


def make_source(source_id: str, weight: float = 1.0, kind: SourceKind = SourceKind.FEED, **fields) -> Source:
    return Source(
        id=source_id,
        name=source_id.upper(),
        kind=kind,
        url=f"https://{source_id}.example.com/feed",
        weight=weight,
        **fields,
    )


def make_profile(
    profile_id: str = "p1",
    source_ids=("sA", "sB"),
    keywords=(),
    **processing,
) -> Profile:
    return Profile(
        id=profile_id,
        name=f"Profile {profile_id}",
        source_ids=set(source_ids),
        focus={"description": "test focus", "keywords": list(keywords)},
        processing=processing,
    )


class FakeAdapter(SourceAdapter):
    """Serves canned RawItems per source id, optionally hanging or failing."""

    kind = SourceKind.FEED

    def __init__(
        self,
        items: Optional[dict[str, list[RawItem]]] = None,
        hang: tuple[str, ...] = (),
        fail: Optional[dict[str, Exception]] = None,
        timeout: float = 0.2,
    ):
        super().__init__(timeout=timeout)
        self.items = items or {}
        self.hang = set(hang)
        self.fail = fail or {}
        self.calls: list[str] = []

    async def _fetch(self, source: Source) -> list[RawItem]:
        self.calls.append(source.id)
        if source.id in self.hang:
            await asyncio.sleep(3600)
        if source.id in self.fail:
            raise self.fail[source.id]
        return list(self.items.get(source.id, []))


class FakeProvider(Provider):
    """Deterministic provider; fails for URLs listed in `fail_urls`."""

    name = "fake"

    def __init__(
        self,
        tags: tuple[str, ...] = ("python",),
        fail_urls: tuple[str, ...] = (),
        delay: float = 0.0,
        ready: bool = True,
    ):
        super().__init__("fake-model")
        self.tags = list(tags)
        self.fail_urls = set(fail_urls)
        self.delay = delay
        self.ready = ready
        self.calls: list[str] = []

    def is_ready(self) -> bool:
        return self.ready

    async def summarize(self, item: FeedItem, focus: Optional[str] = None) -> EnrichedFields:
        self.calls.append(item.url)
        if self.delay:
            await asyncio.sleep(self.delay)
        if item.url in self.fail_urls:
            raise EnrichError(EnrichErrorKind.PROVIDER_ERROR, "boom")
        return EnrichedFields(
            summary=f"Summary of {item.title}",
            key_points=["point one"],
            insights=["insight"],
            tags=self.tags,
            confidence=0.9,
            model=self.model,
        )


class FakeClock:
    """Settable clock for cache and quota tests."""

    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta) -> None:
        self.now += timedelta(**delta)


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def cache(clock) -> CacheAndQuota:
    return CacheAndQuota(ttl_seconds=3600, quota_limit=2, clock=clock)


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def enricher(provider) -> AIEnricher:
    return AIEnricher(provider, concurrency=2, item_timeout=1.0)


@pytest.fixture
def loader() -> ConfigLoader:
    return ConfigLoader.from_definitions(
        sources=[make_source("sA", weight=2.0), make_source("sB", weight=1.0)],
        profiles=[make_profile("p1")],
    )
