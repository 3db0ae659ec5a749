"""
Reddit adapter (social source).

Reads a subreddit's public JSON listing. The subreddit comes from the
`subreddit` option or from the source URL (https://www.reddit.com/r/<name>).
"""

import logging
import re

from devfeed.models.domain import Source, SourceKind
from devfeed.sources.base import RawItem, SourceAdapter, parse_epoch

logger = logging.getLogger(__name__)

REDDIT_BASE = "https://www.reddit.com"
SUBREDDIT_RE = re.compile(r"/r/([A-Za-z0-9_]+)")


class RedditAdapter(SourceAdapter):
    """Fetches posts from one subreddit listing (hot, new, top)."""

    kind = SourceKind.REDDIT

    async def _fetch(self, source: Source) -> list[RawItem]:
        subreddit = self.subreddit_for(source)
        listing = source.options.get("listing", "hot")
        params = {"limit": int(source.options.get("count", self.max_items)), "raw_json": 1}
        if listing == "top":
            params["t"] = source.options.get("period", "day")

        response = await self._get(f"{REDDIT_BASE}/r/{subreddit}/{listing}.json", params=params)

        items = []
        for child in response.json()["data"]["children"]:
            post = child.get("data") or {}
            if post.get("stickied"):
                continue
            try:
                items.append(self._from_post(post, subreddit))
            except (KeyError, TypeError) as e:
                logger.warning(f"Skipping malformed post from r/{subreddit}: {e}")
        return items

    @staticmethod
    def subreddit_for(source: Source) -> str:
        if source.options.get("subreddit"):
            return str(source.options["subreddit"])
        match = SUBREDDIT_RE.search(source.url)
        if not match:
            raise ValueError(f"No subreddit configured for source {source.id}")
        return match.group(1)

    def _from_post(self, post: dict, subreddit: str) -> RawItem:
        permalink = f"{REDDIT_BASE}{post['permalink']}"
        url = permalink if post.get("is_self") else post.get("url") or permalink

        tags = ["reddit", subreddit.lower()]
        if post.get("link_flair_text"):
            tags.append(post["link_flair_text"].lower())

        return RawItem(
            title=post["title"],
            url=url,
            content=post.get("selftext") or f"{post.get('score', 0)} points on r/{subreddit}",
            author=post.get("author"),
            published_at=parse_epoch(post.get("created_utc")),
            tags=tags,
            external_id=post.get("name") or post.get("id"),
        )
