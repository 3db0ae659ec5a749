"""
Tests for source adapters.

HTTP is served by httpx.MockTransport so parsing and failure
classification run without network access.
"""
from datetime import datetime, timezone

import httpx
import pytest

from devfeed.errors import FetchError, FetchErrorKind
from devfeed.models.domain import Source, SourceKind
from devfeed.sources import (
    FeedAdapter,
    GitHubAdapter,
    HackerNewsAdapter,
    ManualAdapter,
    RedditAdapter,
    create_adapters,
)

from conftest import make_settings, make_source


SAMPLE_RSS = """<?xml version="1.0" encoding="UTF-8"?>
<rss version="2.0" xmlns:dc="http://purl.org/dc/elements/1.1/">
  <channel>
    <title>Python Insider</title>
    <item>
      <title>Python 3.13.0 released</title>
      <link>https://blog.python.org/2024/10/python-3130.html</link>
      <description>&lt;p&gt;The final release of &lt;b&gt;Python 3.13&lt;/b&gt;.&lt;/p&gt;</description>
      <pubDate>Mon, 07 Oct 2024 18:00:00 GMT</pubDate>
      <dc:creator>Thomas</dc:creator>
      <category>release</category>
    </item>
    <item>
      <title>Entry without a link</title>
      <description>Nothing to point at.</description>
    </item>
    <item>
      <title>Relative link entry</title>
      <link>/2024/09/security-update.html</link>
      <pubDate>Fri, 06 Sep 2024 10:00:00 GMT</pubDate>
    </item>
  </channel>
</rss>
"""

SAMPLE_ATOM = """<?xml version="1.0" encoding="UTF-8"?>
<feed xmlns="http://www.w3.org/2005/Atom">
  <title>Rust Blog</title>
  <entry>
    <id>https://blog.rust-lang.org/2024/09/05/Rust-1.81.0.html</id>
    <title>Announcing Rust 1.81.0</title>
    <link rel="alternate" href="https://blog.rust-lang.org/2024/09/05/Rust-1.81.0.html"/>
    <summary>Rust 1.81 stabilizes the Error trait in core.</summary>
    <author><name>The Rust Release Team</name></author>
    <published>2024-09-05T00:00:00Z</published>
    <category term="release"/>
  </entry>
  <entry>
    <id>tag:blog.rust-lang.org,2024:no-link</id>
    <title>Entry with no usable link</title>
  </entry>
</feed>
"""


def client_for(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def serve(body, status_code: int = 200, headers=None):
    """Handler that answers every request with the same response."""
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        if isinstance(body, (dict, list)):
            return httpx.Response(status_code, json=body, headers=headers)
        return httpx.Response(status_code, text=body, headers=headers)

    handler.calls = calls
    return handler


def feed_source(**options) -> Source:
    return Source(
        id="python-insider",
        name="Python Insider",
        kind=SourceKind.FEED,
        url="https://blog.python.org/feeds/posts/default",
        options=options,
    )


# =============================================================================
# RSS / Atom
# =============================================================================

class TestFeedAdapter:

    @pytest.mark.asyncio
    async def test_rss_entries_are_normalized(self):
        adapter = FeedAdapter(timeout=5, client=client_for(serve(SAMPLE_RSS)))

        items = await adapter.fetch(feed_source())

        assert [i.title for i in items] == ["Python 3.13.0 released", "Relative link entry"]
        release = items[0]
        assert release.content == "The final release of Python 3.13 ."
        assert release.author == "Thomas"
        assert release.tags == ["release"]
        assert release.published_at == datetime(2024, 10, 7, 18, 0, tzinfo=timezone.utc)
        assert items[1].url == "https://blog.python.org/2024/09/security-update.html"

    def test_atom_is_detected(self):
        items = FeedAdapter().parse(SAMPLE_ATOM, "rust-blog")

        assert len(items) == 1
        entry = items[0]
        assert entry.title == "Announcing Rust 1.81.0"
        assert entry.url == "https://blog.rust-lang.org/2024/09/05/Rust-1.81.0.html"
        assert entry.author == "The Rust Release Team"
        assert entry.tags == ["release"]
        assert entry.published_at == datetime(2024, 9, 5, tzinfo=timezone.utc)

    @pytest.mark.asyncio
    async def test_since_filter_and_item_cap(self):
        adapter = FeedAdapter(timeout=5, client=client_for(serve(SAMPLE_RSS)))

        recent = await adapter.fetch(feed_source(), since=datetime(2024, 10, 1, tzinfo=timezone.utc))
        capped = await adapter.fetch(feed_source(max_items=1))

        assert [i.title for i in recent] == ["Python 3.13.0 released"]
        assert len(capped) == 1

    @pytest.mark.asyncio
    async def test_invalid_document_is_a_parse_error(self):
        adapter = FeedAdapter(timeout=5, client=client_for(serve("<html><body>not a feed")))

        with pytest.raises(FetchError) as exc_info:
            await adapter.fetch(feed_source())

        assert exc_info.value.kind == FetchErrorKind.PARSE_ERROR
        assert exc_info.value.source_id == "python-insider"


# =============================================================================
# Failure classification
# =============================================================================

class TestFailureClassification:

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status, headers, kind", [
        (429, None, FetchErrorKind.RATE_LIMITED),
        (403, {"x-ratelimit-remaining": "0"}, FetchErrorKind.RATE_LIMITED),
        (403, None, FetchErrorKind.UNREACHABLE),
        (404, None, FetchErrorKind.UNREACHABLE),
    ])
    async def test_http_status(self, status, headers, kind):
        handler = serve("nope", status_code=status, headers=headers)
        adapter = FeedAdapter(timeout=5, client=client_for(handler))

        with pytest.raises(FetchError) as exc_info:
            await adapter.fetch(feed_source())

        assert exc_info.value.kind == kind
        assert len(handler.calls) == 1

    @pytest.mark.asyncio
    async def test_server_error_is_retried_once(self):
        handler = serve("down", status_code=503)
        adapter = FeedAdapter(timeout=5, client=client_for(handler))

        with pytest.raises(FetchError) as exc_info:
            await adapter.fetch(feed_source())

        assert exc_info.value.kind == FetchErrorKind.UNREACHABLE
        assert len(handler.calls) == 2

    @pytest.mark.asyncio
    async def test_http_timeout(self):
        def handler(request):
            raise httpx.ReadTimeout("read timed out", request=request)

        adapter = FeedAdapter(timeout=5, client=client_for(handler))

        with pytest.raises(FetchError) as exc_info:
            await adapter.fetch(feed_source())

        assert exc_info.value.kind == FetchErrorKind.TIMEOUT

    @pytest.mark.asyncio
    async def test_connection_failure_is_unreachable(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        adapter = FeedAdapter(timeout=5, client=client_for(handler))

        with pytest.raises(FetchError) as exc_info:
            await adapter.fetch(feed_source())

        assert exc_info.value.kind == FetchErrorKind.UNREACHABLE


# =============================================================================
# Hacker News
# =============================================================================

class TestHackerNewsAdapter:

    @pytest.mark.asyncio
    async def test_search_mode(self):
        handler = serve({"hits": [
            {
                "objectID": "101",
                "title": "Show HN: A Rust database in 500 lines",
                "url": "https://example.com/tinydb",
                "points": 250,
                "num_comments": 80,
                "author": "pg",
                "created_at_i": 1717243200,
            },
            {
                "objectID": "102",
                "title": "Ask HN: How do you review Python code?",
                "url": None,
                "points": 12,
                "num_comments": 30,
                "author": "dang",
                "created_at_i": 1717243100,
            },
        ]})
        adapter = HackerNewsAdapter(timeout=5, client=client_for(handler))
        source = make_source("hn-rust", kind=SourceKind.HACKER_NEWS, options={"query": "rust", "count": 5})

        items = await adapter.fetch(source)

        request = handler.calls[0]
        assert request.url.params["query"] == "rust"
        assert request.url.params["hitsPerPage"] == "5"
        assert items[0].tags == ["hackernews", "show-hn", "rust", "database"]
        assert items[0].content == "250 points, 80 comments"
        assert items[0].published_at == datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)
        assert items[1].url == "https://news.ycombinator.com/item?id=102"
        assert "ask-hn" in items[1].tags

    @pytest.mark.asyncio
    async def test_top_stories_skip_jobs_and_dead_items(self):
        stories = {
            1: {"id": 1, "type": "story", "title": "Postgres 17 released", "url": "https://pg.example/17",
                "score": 400, "descendants": 120, "by": "alice", "time": 1717243200},
            2: {"id": 2, "type": "job", "title": "Hiring engineers", "url": "https://jobs.example"},
            3: {"id": 3, "type": "story", "title": "Removed", "dead": True},
            4: {"id": 4, "type": "story", "title": "Tell HN: I quit", "by": "bob", "time": 1717243000},
        }

        def handler(request):
            path = request.url.path
            if path.endswith("topstories.json"):
                return httpx.Response(200, json=[1, 2, 3, 4])
            story_id = int(path.rsplit("/", 1)[-1].removesuffix(".json"))
            return httpx.Response(200, json=stories[story_id])

        adapter = HackerNewsAdapter(timeout=5, client=client_for(handler))

        items = await adapter.fetch(make_source("hn", kind=SourceKind.HACKER_NEWS))

        assert [i.external_id for i in items] == ["1", "4"]
        assert "database" in items[0].tags
        assert items[1].url == "https://news.ycombinator.com/item?id=4"
        assert items[1].tags == ["hackernews", "tell-hn"]


# =============================================================================
# GitHub
# =============================================================================

class TestGitHubAdapter:

    def test_query_from_options(self):
        assert GitHubAdapter.build_query({"query": "topic:llm"}) == "topic:llm"
        assert GitHubAdapter.build_query({"query": "topic:llm", "language": "python"}) == (
            "topic:llm language:python"
        )

        trending = GitHubAdapter.build_query({"trending_days": 7, "min_stars": 50})
        assert trending.startswith("created:>")
        assert trending.endswith(" stars:>=50")

    @pytest.mark.asyncio
    async def test_repositories_become_items(self):
        handler = serve({"items": [
            {
                "id": 42,
                "full_name": "astral-sh/uv",
                "html_url": "https://github.com/astral-sh/uv",
                "description": "An extremely fast Python package manager.",
                "stargazers_count": 1500,
                "topics": ["Packaging", "python"],
                "language": "Rust",
                "owner": {"login": "astral-sh"},
                "created_at": "2024-05-30T10:00:00Z",
            },
            {"id": 43, "html_url": "https://github.com/broken/repo"},
        ]})
        adapter = GitHubAdapter(timeout=5, client=client_for(handler), token="ghp_test")
        source = make_source("github-python", kind=SourceKind.GITHUB, options={"query": "stars:>100"})

        items = await adapter.fetch(source)

        request = handler.calls[0]
        assert request.headers["Authorization"] == "Bearer ghp_test"
        assert request.url.params["q"] == "stars:>100"
        assert len(items) == 1
        repo = items[0]
        assert repo.title == "astral-sh/uv"
        assert repo.content == "An extremely fast Python package manager. (1500 stars)"
        assert repo.tags == ["packaging", "python", "rust", "github"]
        assert repo.author == "astral-sh"

    @pytest.mark.asyncio
    async def test_exhausted_rate_limit(self):
        handler = serve({"message": "API rate limit exceeded"}, status_code=403,
                        headers={"x-ratelimit-remaining": "0"})
        adapter = GitHubAdapter(timeout=5, client=client_for(handler))

        with pytest.raises(FetchError) as exc_info:
            await adapter.fetch(make_source("github-trending", kind=SourceKind.GITHUB))

        assert exc_info.value.kind == FetchErrorKind.RATE_LIMITED


# =============================================================================
# Reddit
# =============================================================================

def reddit_source(url: str = "https://www.reddit.com/r/Python", **options) -> Source:
    return Source(id="reddit-python", name="r/Python", kind=SourceKind.REDDIT, url=url, options=options)


class TestRedditAdapter:

    @pytest.mark.asyncio
    async def test_listing_skips_stickied_posts(self):
        handler = serve({"data": {"children": [
            {"data": {"stickied": True, "title": "Weekly thread", "permalink": "/r/Python/comments/a/"}},
            {"data": {
                "name": "t3_b",
                "title": "FastAPI 1.0 is out",
                "url": "https://fastapi.example/release",
                "permalink": "/r/Python/comments/b/fastapi/",
                "score": 900,
                "author": "tiangolo",
                "created_utc": 1717243200,
                "link_flair_text": "News",
            }},
            {"data": {
                "name": "t3_c",
                "title": "How do you structure tests?",
                "is_self": True,
                "selftext": "Curious what layouts people use.",
                "url": "https://www.reddit.com/r/Python/comments/c/",
                "permalink": "/r/Python/comments/c/tests/",
            }},
        ]}})
        adapter = RedditAdapter(timeout=5, client=client_for(handler))

        items = await adapter.fetch(reddit_source(listing="top"))

        request = handler.calls[0]
        assert request.url.path == "/r/Python/top.json"
        assert request.url.params["t"] == "day"
        assert [i.external_id for i in items] == ["t3_b", "t3_c"]
        assert items[0].url == "https://fastapi.example/release"
        assert items[0].tags == ["reddit", "python", "news"]
        assert items[1].url == "https://www.reddit.com/r/Python/comments/c/tests/"
        assert items[1].content == "Curious what layouts people use."

    def test_subreddit_resolution(self):
        assert RedditAdapter.subreddit_for(reddit_source()) == "Python"
        assert RedditAdapter.subreddit_for(reddit_source(subreddit="rust")) == "rust"

    @pytest.mark.asyncio
    async def test_missing_subreddit_is_a_parse_error(self):
        adapter = RedditAdapter(timeout=5, client=client_for(serve({})))

        with pytest.raises(FetchError) as exc_info:
            await adapter.fetch(reddit_source(url="https://www.reddit.com/"))

        assert exc_info.value.kind == FetchErrorKind.PARSE_ERROR


# =============================================================================
# Manual submissions
# =============================================================================

ARTICLE_HTML = """<html>
<head>
  <title>Fallback title</title>
  <meta property="og:title" content="Understanding asyncio cancellation">
  <meta name="description" content="How task cancellation propagates through gather and wait_for.">
  <meta name="author" content="Jane Dev">
  <meta property="article:published_time" content="2024-05-20T08:30:00Z">
  <meta name="keywords" content="python, asyncio, concurrency">
</head>
<body><p>Body text</p></body>
</html>"""


class TestManualAdapter:

    def test_metadata_from_head(self):
        raw = ManualAdapter().extract_metadata(ARTICLE_HTML, "https://dev.example/asyncio")

        assert raw.title == "Understanding asyncio cancellation"
        assert raw.content.startswith("How task cancellation propagates")
        assert raw.author == "Jane Dev"
        assert raw.published_at == datetime(2024, 5, 20, 8, 30, tzinfo=timezone.utc)
        assert raw.tags == ["python", "asyncio", "concurrency"]

    def test_bare_page_falls_back_to_body_and_host(self):
        raw = ManualAdapter().extract_metadata(
            "<html><body><script>x()</script><p>Just some text.</p></body></html>",
            "https://bare.example/post",
        )

        assert raw.title == "bare.example"
        assert raw.content == "Just some text."
        assert raw.published_at is None

    @pytest.mark.asyncio
    async def test_fetch_submission(self):
        adapter = ManualAdapter(timeout=5, client=client_for(serve(ARTICLE_HTML)))

        raw = await adapter.fetch_submission("https://dev.example/asyncio")

        assert raw.url == "https://dev.example/asyncio"
        assert raw.title == "Understanding asyncio cancellation"

    @pytest.mark.asyncio
    async def test_manual_sources_are_not_polled(self):
        adapter = ManualAdapter(client=client_for(serve("unused")))
        assert await adapter.fetch(make_source("manual-submissions", kind=SourceKind.MANUAL)) == []


def test_create_adapters_covers_every_kind():
    adapters = create_adapters(make_settings(github_token="ghp_x"))

    assert set(adapters) == set(SourceKind)
    assert adapters[SourceKind.GITHUB].token == "ghp_x"
    assert adapters[SourceKind.FEED].timeout == 0.2
