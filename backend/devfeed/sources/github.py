"""
GitHub repository search adapter.

Source options:
- query: raw search query (e.g. "topic:llm stars:>50")
- language: restrict to a language
- trending_days: when no query is given, repositories created in the last N days
- min_stars: star floor for the trending search
"""

import logging
from datetime import date, timedelta
from typing import Optional

import httpx

from devfeed.models.domain import Source, SourceKind
from devfeed.sources.base import DEFAULT_USER_AGENT, RawItem, SourceAdapter, parse_date

logger = logging.getLogger(__name__)

GITHUB_API = "https://api.github.com"


class GitHubAdapter(SourceAdapter):
    """Search GitHub repositories by query or by recent creation date."""

    kind = SourceKind.GITHUB

    def __init__(
        self,
        timeout: float = 10.0,
        user_agent: str = DEFAULT_USER_AGENT,
        client: Optional[httpx.AsyncClient] = None,
        max_items: int = 30,
        token: Optional[str] = None,
    ):
        super().__init__(timeout=timeout, user_agent=user_agent, client=client, max_items=max_items)
        self.token = token

    async def _fetch(self, source: Source) -> list[RawItem]:
        options = source.options
        response = await self._get(
            f"{options.get('api_url', GITHUB_API)}/search/repositories",
            params={
                "q": self.build_query(options),
                "sort": options.get("sort", "stars"),
                "order": "desc",
                "per_page": min(int(options.get("count", self.max_items)), 100),
            },
            headers=self._headers(),
        )

        items = []
        for repo in response.json()["items"]:
            try:
                items.append(self._from_repository(repo))
            except (KeyError, TypeError) as e:
                logger.warning(f"Skipping malformed repository from {source.id}: {e}")
        return items

    @staticmethod
    def build_query(options: dict) -> str:
        """Compose the search `q` parameter from source options."""
        query = options.get("query")
        if not query:
            days = int(options.get("trending_days", 7))
            since = date.today() - timedelta(days=days)
            query = f"created:>{since.isoformat()}"
            if options.get("min_stars"):
                query += f" stars:>={int(options['min_stars'])}"
        if options.get("language"):
            query += f" language:{options['language']}"
        return query

    def _headers(self) -> dict[str, str]:
        headers = {
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        }
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    def _from_repository(self, repo: dict) -> RawItem:
        description = repo.get("description") or ""
        stars = repo.get("stargazers_count", 0)

        tags = [topic.lower() for topic in repo.get("topics") or []]
        if repo.get("language"):
            tags.append(repo["language"].lower())
        tags.append("github")

        content = description
        if stars:
            content = f"{description} ({stars} stars)".strip()

        return RawItem(
            title=repo["full_name"],
            url=repo["html_url"],
            content=content,
            author=(repo.get("owner") or {}).get("login"),
            published_at=parse_date(repo.get("created_at")),
            tags=tags,
            external_id=str(repo["id"]),
        )
