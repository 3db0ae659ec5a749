"""
Hacker News adapter.

Two modes, chosen by source options:
- `query` set: Algolia search API (one request)
- otherwise: official Firebase API, top stories plus one request per story
"""

import asyncio
import logging
import re
from typing import Optional

from devfeed.models.domain import Source, SourceKind
from devfeed.sources.base import RawItem, SourceAdapter, parse_epoch

logger = logging.getLogger(__name__)

FIREBASE_API = "https://hacker-news.firebaseio.com/v0"
ALGOLIA_SEARCH_API = "https://hn.algolia.com/api/v1/search"
ITEM_URL = "https://news.ycombinator.com/item?id={id}"

STORY_PREFIXES = {
    "show hn": "show-hn",
    "ask hn": "ask-hn",
    "tell hn": "tell-hn",
    "launch hn": "launch-hn",
}

# Coarse topic hints pulled from titles
TOPIC_PATTERNS = {
    "ai": r"\b(ai|llm|gpt|machine learning|neural|transformer)s?\b",
    "rust": r"\brust\b",
    "python": r"\bpython\b",
    "javascript": r"\b(javascript|typescript|node\.?js|react)\b",
    "security": r"\b(security|vulnerability|exploit|cve|breach)\b",
    "database": r"\b(database|postgres|sqlite|mysql|sql)\b",
    "startup": r"\b(startup|yc|founder|funding)\b",
    "open-source": r"\bopen[- ]source\b",
}


class HackerNewsAdapter(SourceAdapter):
    """Fetches stories from Hacker News."""

    kind = SourceKind.HACKER_NEWS

    async def _fetch(self, source: Source) -> list[RawItem]:
        count = int(source.options.get("count", self.max_items))
        query = source.options.get("query")

        if query:
            return await self._search(query, count, source.options.get("min_points"))
        return await self._top_stories(count)

    async def _search(
        self,
        query: str,
        count: int,
        min_points: Optional[int] = None,
    ) -> list[RawItem]:
        params = {"query": query, "tags": "story", "hitsPerPage": count}
        if min_points:
            params["numericFilters"] = f"points>{int(min_points)}"

        response = await self._get(ALGOLIA_SEARCH_API, params=params)
        hits = response.json()["hits"]

        items = []
        for hit in hits:
            try:
                items.append(self._from_search_hit(hit))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping malformed HN search hit: {e}")
        return items

    async def _top_stories(self, count: int) -> list[RawItem]:
        response = await self._get(f"{FIREBASE_API}/topstories.json")
        story_ids = response.json()[:count]

        stories = await asyncio.gather(
            *(self._get_story(story_id) for story_id in story_ids),
            return_exceptions=True,
        )

        items = []
        for story_id, story in zip(story_ids, stories):
            if isinstance(story, Exception):
                logger.warning(f"Failed to fetch HN story {story_id}: {story}")
                continue
            if story is None or story.get("type") != "story" or story.get("dead") or story.get("deleted"):
                continue
            try:
                items.append(self._from_story(story))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping malformed HN story {story_id}: {e}")
        return items

    async def _get_story(self, story_id: int) -> Optional[dict]:
        response = await self._get(f"{FIREBASE_API}/item/{story_id}.json")
        return response.json()

    def _from_search_hit(self, hit: dict) -> RawItem:
        story_id = hit["objectID"]
        title = hit["title"]
        points = hit.get("points") or 0
        comments = hit.get("num_comments") or 0
        return RawItem(
            title=title,
            url=hit.get("url") or ITEM_URL.format(id=story_id),
            content=hit.get("story_text") or f"{points} points, {comments} comments",
            author=hit.get("author"),
            published_at=parse_epoch(hit.get("created_at_i")),
            tags=self.categorize(title),
            external_id=str(story_id),
        )

    def _from_story(self, story: dict) -> RawItem:
        story_id = story["id"]
        title = story["title"]
        points = story.get("score") or 0
        comments = story.get("descendants") or 0
        return RawItem(
            title=title,
            url=story.get("url") or ITEM_URL.format(id=story_id),
            content=story.get("text") or f"{points} points, {comments} comments",
            author=story.get("by"),
            published_at=parse_epoch(story.get("time")),
            tags=self.categorize(title),
            external_id=str(story_id),
        )

    @staticmethod
    def categorize(title: str) -> list[str]:
        """Story type (Show/Ask/Tell HN) and topic hints from a title."""
        tags = ["hackernews"]
        lowered = title.lower()
        for prefix, tag in STORY_PREFIXES.items():
            if lowered.startswith(prefix):
                tags.append(tag)
                break
        for topic, pattern in TOPIC_PATTERNS.items():
            if re.search(pattern, lowered):
                tags.append(topic)
        return tags
