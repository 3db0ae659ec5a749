"""
Duplicate removal within and across sources.

Two items are duplicates when they share a fingerprint:
1. Normalized URL (scheme/host/path, query stripped), or
2. Normalized title, for syndicated content republished under another URL.

Duplicates chain transitively. Each group keeps one survivor chosen by a
total order (source weight, then earliest publish time), so the outcome
never depends on input order.
"""
import re
from datetime import datetime
from typing import Mapping, Optional
from urllib.parse import parse_qsl, urlencode, urlparse

from devfeed.models.domain import FeedItem

# Query keys that identify the resource rather than track the visitor
IDENTITY_QUERY_KEYS = frozenset({"id", "v", "p"})

# Shorter titles ("Weekly update", "Release notes") collide by accident
MIN_TITLE_FINGERPRINT_LENGTH = 12

DEFAULT_PORTS = {"http": "80", "https": "443"}


def normalize_url(url: str) -> str:
    """
    Reduce a URL to scheme://host/path.

    Lower-cases scheme and host, drops `www.`, default ports, fragments,
    trailing slashes and every query parameter except identity keys.
    """
    parsed = urlparse(url.strip())
    scheme = parsed.scheme.lower()

    host = (parsed.hostname or "").lower()
    if host.startswith("www."):
        host = host[4:]
    try:
        port = parsed.port
    except ValueError:
        port = None
    if port is not None and str(port) != DEFAULT_PORTS.get(scheme):
        host = f"{host}:{port}"

    path = re.sub(r"/{2,}", "/", parsed.path).rstrip("/")

    kept = sorted(
        (k, v) for k, v in parse_qsl(parsed.query, keep_blank_values=False)
        if k.lower() in IDENTITY_QUERY_KEYS
    )
    query = f"?{urlencode(kept)}" if kept else ""

    return f"{scheme}://{host}{path}{query}"


def normalize_title(title: str) -> str:
    """Lower-case, strip punctuation and collapse whitespace."""
    title = re.sub(r"[^\w\s]", " ", title.lower())
    return " ".join(title.split())


class Deduplicator:
    """
    Removes duplicate feed items.

    Features:
    - URL fingerprint with tracking parameters stripped
    - Title fingerprint for syndicated copies
    - Survivor from the highest-weight source, earliest publish time on ties
    """

    def __init__(self, use_title_fingerprint: bool = True):
        self.use_title_fingerprint = use_title_fingerprint

    def fingerprints(self, item: FeedItem) -> list[str]:
        keys = [f"url:{normalize_url(item.url)}"]
        if self.use_title_fingerprint:
            title = normalize_title(item.title)
            if len(title) >= MIN_TITLE_FINGERPRINT_LENGTH:
                keys.append(f"title:{title}")
        return keys

    def dedupe(
        self,
        items: list[FeedItem],
        weights: Optional[Mapping[str, float]] = None,
    ) -> tuple[list[FeedItem], int]:
        """
        Remove duplicates.

        Args:
            items: Items from one or more sources
            weights: source_id -> source weight (missing sources weigh 1.0)

        Returns:
            Tuple of (unique items in first-seen group order, number removed)
        """
        weights = weights or {}

        # Union-find over item indexes, joined through shared fingerprints
        parent = list(range(len(items)))

        def find(i: int) -> int:
            while parent[i] != i:
                parent[i] = parent[parent[i]]
                i = parent[i]
            return i

        owner: dict[str, int] = {}
        for index, item in enumerate(items):
            for key in self.fingerprints(item):
                if key in owner:
                    a, b = find(owner[key]), find(index)
                    if a != b:
                        parent[max(a, b)] = min(a, b)
                else:
                    owner[key] = index

        groups: dict[int, list[FeedItem]] = {}
        for index, item in enumerate(items):
            groups.setdefault(find(index), []).append(item)

        def rank(item: FeedItem) -> tuple[float, datetime, str, str]:
            return (-weights.get(item.source_id, 1.0), item.published_at, item.source_id, item.url)

        unique = [min(group, key=rank) for _, group in sorted(groups.items())]
        return unique, len(items) - len(unique)
