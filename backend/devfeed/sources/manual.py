"""
Manual submissions.

Manual sources are never polled; their items arrive one at a time through
the submit-url endpoint. This adapter fetches the submitted page and pulls
best-effort metadata out of its <head>.
"""

import logging
from typing import Optional
from urllib.parse import urlparse

from bs4 import BeautifulSoup

from devfeed.models.domain import Source, SourceKind
from devfeed.sources.base import RawItem, SourceAdapter, clean_html, parse_date

logger = logging.getLogger(__name__)

MANUAL_SOURCE_ID = "manual-submissions"
SUBMISSION_CONTENT_LENGTH = 500


class ManualAdapter(SourceAdapter):
    """Adapter for user-submitted URLs."""

    kind = SourceKind.MANUAL

    async def _fetch(self, source: Source) -> list[RawItem]:
        # Nothing to poll
        return []

    async def fetch_submission(self, url: str) -> RawItem:
        """
        Fetch a submitted page and extract its metadata.

        Raises:
            FetchError: if the page cannot be retrieved
        """
        response = await self._guarded(
            MANUAL_SOURCE_ID,
            self._get(url, headers={"Accept": "text/html,application/xhtml+xml"}),
        )
        return self.extract_metadata(response.text, str(response.url))

    def extract_metadata(self, html: str, url: str) -> RawItem:
        """Title, description, author and publish time from page metadata."""
        soup = BeautifulSoup(html, "html.parser")

        title = (
            _meta(soup, property="og:title")
            or _meta(soup, name="twitter:title")
            or (soup.title.string.strip() if soup.title and soup.title.string else None)
            or urlparse(url).netloc
        )

        description = (
            _meta(soup, property="og:description")
            or _meta(soup, name="description")
            or _meta(soup, name="twitter:description")
        )
        if not description:
            for tag in soup(["script", "style", "nav", "header", "footer"]):
                tag.decompose()
            body = soup.body or soup
            description = clean_html(body.get_text(" "))

        author = _meta(soup, name="author") or _meta(soup, property="article:author")

        published_at = parse_date(
            _meta(soup, property="article:published_time")
            or _meta(soup, name="date")
            or _meta(soup, itemprop="datePublished")
        )

        keywords = _meta(soup, name="keywords") or ""
        tags = [k.strip() for k in keywords.split(",") if k.strip()][:5]

        return RawItem(
            title=title,
            url=url,
            content=description[:SUBMISSION_CONTENT_LENGTH],
            author=author,
            published_at=published_at,
            tags=tags,
        )


def _meta(soup: BeautifulSoup, **attrs) -> Optional[str]:
    tag = soup.find("meta", attrs=attrs)
    if tag and tag.get("content"):
        return tag["content"].strip() or None
    return None
