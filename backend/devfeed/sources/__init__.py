"""
Source adapters for devfeed.

Adapters are looked up by SourceKind through ADAPTERS; there is exactly one
adapter class per kind.
"""
from typing import Optional

import httpx

from devfeed.config import Settings, get_settings
from devfeed.models.domain import SourceKind
from devfeed.sources.base import RawItem, SourceAdapter
from devfeed.sources.feed import FeedAdapter
from devfeed.sources.github import GitHubAdapter
from devfeed.sources.hackernews import HackerNewsAdapter
from devfeed.sources.manual import MANUAL_SOURCE_ID, ManualAdapter
from devfeed.sources.reddit import RedditAdapter

ADAPTERS: dict[SourceKind, type[SourceAdapter]] = {
    SourceKind.FEED: FeedAdapter,
    SourceKind.GITHUB: GitHubAdapter,
    SourceKind.HACKER_NEWS: HackerNewsAdapter,
    SourceKind.REDDIT: RedditAdapter,
    SourceKind.MANUAL: ManualAdapter,
}


def create_adapters(
    settings: Optional[Settings] = None,
    client: Optional[httpx.AsyncClient] = None,
) -> dict[SourceKind, SourceAdapter]:
    """Instantiate one adapter per kind with the configured budgets."""
    settings = settings or get_settings()
    common = {
        "timeout": settings.pipeline.source_timeout_seconds,
        "user_agent": settings.user_agent,
        "client": client,
        "max_items": settings.pipeline.max_items_per_source,
    }
    extra = {SourceKind.GITHUB: {"token": settings.github_token}}
    return {
        kind: adapter_cls(**common, **extra.get(kind, {}))
        for kind, adapter_cls in ADAPTERS.items()
    }


__all__ = [
    "ADAPTERS",
    "MANUAL_SOURCE_ID",
    "FeedAdapter",
    "GitHubAdapter",
    "HackerNewsAdapter",
    "ManualAdapter",
    "RawItem",
    "RedditAdapter",
    "SourceAdapter",
    "create_adapters",
]
