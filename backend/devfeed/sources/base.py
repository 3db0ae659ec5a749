"""
Base classes for source adapters.

Each adapter fetches one kind of source and maps its native format to
RawItem. The base class owns the parts every adapter shares: the per-call
time budget, failure classification and item normalization.
"""

import asyncio
import html
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Awaitable, ClassVar, Optional, TypeVar
from urllib.parse import urljoin, urlparse
from xml.etree import ElementTree

import httpx
from tenacity import (
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from devfeed.errors import FetchError, FetchErrorKind
from devfeed.models.domain import FeedItem, Source, SourceKind, ensure_utc

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = "devfeed/0.1 (content aggregator)"
MAX_CONTENT_LENGTH = 2000

T = TypeVar("T")


@dataclass
class RawItem:
    """
    Item data from a source before it becomes a FeedItem.

    Adapters fill in whatever their format provides; normalization fixes up
    the rest (absolute URL, timestamps, trimmed text).
    """
    title: str
    url: str
    content: str = ""
    author: Optional[str] = None
    published_at: Optional[datetime] = None
    tags: list[str] = field(default_factory=list)
    external_id: Optional[str] = None

    def to_feed_item(self, source: Source) -> FeedItem:
        return FeedItem(
            source_id=source.id,
            source_url=source.url,
            title=self.title,
            url=self.url,
            content=self.content,
            author=self.author,
            published_at=self.published_at or datetime.now(timezone.utc),
            tags=self.tags,
        )


def _is_transient(exc: BaseException) -> bool:
    """Server errors and dropped connections are worth one more try."""
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code >= 500
    return isinstance(exc, (httpx.ConnectError, httpx.RemoteProtocolError))


class SourceAdapter(ABC):
    """
    Abstract base class for source adapters.

    Each adapter handles:
    - Fetching from its specific API/feed
    - Parsing the source-specific format, skipping malformed entries
    - Mapping to RawItem

    The base class enforces the per-call timeout and turns every failure
    into a FetchError with a kind.
    """

    kind: ClassVar[SourceKind]

    def __init__(
        self,
        timeout: float = 10.0,
        user_agent: str = DEFAULT_USER_AGENT,
        client: Optional[httpx.AsyncClient] = None,
        max_items: int = 30,
    ):
        self.timeout = timeout
        self.user_agent = user_agent
        self.max_items = max_items
        self._client = client

    async def fetch(
        self,
        source: Source,
        since: Optional[datetime] = None,
    ) -> list[RawItem]:
        """
        Fetch and normalize items from a source.

        Args:
            source: Source definition (never modified)
            since: Only return items published after this instant

        Returns:
            Normalized RawItem list, at most `max_items` long

        Raises:
            FetchError: classified as Timeout, Unreachable, ParseError or RateLimited
        """
        fetched_at = datetime.now(timezone.utc)
        raw_items = await self._guarded(source.id, self._fetch(source))
        items = self.normalize(raw_items, source, fetched_at)

        if since is not None:
            since = ensure_utc(since)
            items = [i for i in items if i.published_at > since]

        limit = int(source.options.get("max_items", self.max_items))
        logger.debug(f"Fetched {len(items)} items from {source.id}")
        return items[:limit]

    @abstractmethod
    async def _fetch(self, source: Source) -> list[RawItem]:
        """Fetch raw entries in the source's native shape."""
        pass

    async def _guarded(self, source_id: str, call: Awaitable[T]) -> T:
        """Run a fetch coroutine under the time budget and classify failures."""
        try:
            return await asyncio.wait_for(call, timeout=self.timeout)
        except asyncio.TimeoutError as e:
            raise FetchError(
                FetchErrorKind.TIMEOUT, source_id, f"no response within {self.timeout:.1f}s"
            ) from e
        except httpx.TimeoutException as e:
            raise FetchError(FetchErrorKind.TIMEOUT, source_id, str(e) or "HTTP timeout") from e
        except httpx.HTTPStatusError as e:
            raise FetchError(
                self._classify_status(e.response),
                source_id,
                f"HTTP {e.response.status_code}",
            ) from e
        except httpx.HTTPError as e:
            raise FetchError(FetchErrorKind.UNREACHABLE, source_id, str(e) or type(e).__name__) from e
        except (ElementTree.ParseError, ValueError, KeyError, TypeError) as e:
            raise FetchError(FetchErrorKind.PARSE_ERROR, source_id, str(e)) from e

    @staticmethod
    def _classify_status(response: httpx.Response) -> FetchErrorKind:
        if response.status_code == 429:
            return FetchErrorKind.RATE_LIMITED
        if response.status_code == 403 and response.headers.get("x-ratelimit-remaining") == "0":
            return FetchErrorKind.RATE_LIMITED
        return FetchErrorKind.UNREACHABLE

    @retry(
        retry=retry_if_exception(_is_transient),
        stop=stop_after_attempt(2),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=2),
        reraise=True,
    )
    async def _get(
        self,
        url: str,
        params: Optional[dict] = None,
        headers: Optional[dict] = None,
    ) -> httpx.Response:
        """GET a URL, raising for non-2xx responses."""
        request_headers = {"User-Agent": self.user_agent, **(headers or {})}

        if self._client is not None:
            response = await self._client.get(url, params=params, headers=request_headers)
        else:
            async with httpx.AsyncClient(timeout=self.timeout, follow_redirects=True) as client:
                response = await client.get(url, params=params, headers=request_headers)

        response.raise_for_status()
        return response

    def normalize(
        self,
        raw_items: list[RawItem],
        source: Source,
        fetched_at: datetime,
    ) -> list[RawItem]:
        """Trim text, absolutize URLs and fill missing timestamps."""
        normalized = []
        for raw in raw_items:
            title = " ".join((raw.title or "").split())
            url = urljoin(source.url, (raw.url or "").strip())
            if not title or urlparse(url).scheme not in ("http", "https"):
                logger.warning(f"Skipping entry without title or usable URL from {source.id}")
                continue

            content = clean_html(raw.content or "")[:MAX_CONTENT_LENGTH]
            author = raw.author.strip() if raw.author and raw.author.strip() else None
            published_at = ensure_utc(raw.published_at) if raw.published_at else fetched_at

            normalized.append(RawItem(
                title=title,
                url=url,
                content=content,
                author=author,
                published_at=published_at,
                tags=[t.strip() for t in raw.tags if t and t.strip()],
                external_id=raw.external_id,
            ))
        return normalized

    async def health_check(self, source: Source) -> bool:
        """Check if the source is accessible."""
        try:
            await self.fetch(source)
            return True
        except FetchError:
            return False


# =============================================================================
# Parsing helpers shared by adapters
# =============================================================================

def clean_html(text: str) -> str:
    """Strip HTML tags and collapse whitespace."""
    if not text:
        return ""
    clean = re.sub(r"<[^>]+>", " ", text)
    clean = html.unescape(clean)
    return " ".join(clean.split())


def parse_date(date_str: Optional[str]) -> Optional[datetime]:
    """Parse RFC 822 (RSS) or ISO 8601 (Atom, JSON APIs) timestamps."""
    if not date_str:
        return None
    date_str = date_str.strip()

    try:
        return ensure_utc(parsedate_to_datetime(date_str))
    except (ValueError, TypeError):
        pass

    try:
        return ensure_utc(datetime.fromisoformat(date_str.replace("Z", "+00:00")))
    except ValueError:
        pass

    try:
        # Try without timezone
        return ensure_utc(datetime.fromisoformat(date_str[:19]))
    except ValueError:
        return None


def parse_epoch(value) -> Optional[datetime]:
    """Parse a unix timestamp in seconds."""
    if value is None:
        return None
    try:
        return datetime.fromtimestamp(float(value), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError, OSError):
        return None
