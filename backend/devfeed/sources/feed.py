"""
RSS 2.0 and Atom feed adapter.

Handles blogs, newsletters and news outlets that publish a feed. The whole
document must parse; individual broken entries are skipped.
"""

import hashlib
import logging
from typing import Optional
from xml.etree import ElementTree

from devfeed.models.domain import Source, SourceKind
from devfeed.sources.base import RawItem, SourceAdapter, parse_date

logger = logging.getLogger(__name__)

# XML namespaces
ATOM_NS = "{http://www.w3.org/2005/Atom}"
DC_NS = "{http://purl.org/dc/elements/1.1/}"
CONTENT_NS = "{http://purl.org/rss/1.0/modules/content/}"


class FeedAdapter(SourceAdapter):
    """
    RSS/Atom feed adapter.

    Fetches a single feed URL and normalizes entries to RawItem format.
    """

    kind = SourceKind.FEED

    async def _fetch(self, source: Source) -> list[RawItem]:
        response = await self._get(
            source.url,
            headers={"Accept": "application/rss+xml, application/atom+xml, application/xml;q=0.9, */*;q=0.8"},
        )
        return self.parse(response.content, source.id)

    def parse(self, document: bytes | str, source_id: str) -> list[RawItem]:
        """
        Parse a feed document, detecting RSS vs Atom from the root element.

        Raises:
            ElementTree.ParseError: if the document is not XML at all
        """
        root = ElementTree.fromstring(document)

        if root.tag == f"{ATOM_NS}feed":
            entries = root.findall(f"{ATOM_NS}entry")
            parse_entry = self._parse_atom_entry
        else:
            entries = root.findall(".//item")
            parse_entry = self._parse_rss_item

        items = []
        for entry in entries:
            try:
                item = parse_entry(entry)
                if item:
                    items.append(item)
            except Exception as e:
                logger.warning(f"Failed to parse feed entry from {source_id}: {e}")
                continue

        return items

    def _parse_rss_item(self, item: ElementTree.Element) -> Optional[RawItem]:
        """Parse a single RSS item."""
        title = (item.findtext("title") or "").strip()
        link = (item.findtext("link") or "").strip()
        guid = (item.findtext("guid") or "").strip()
        if not link and guid.startswith("http"):
            link = guid
        if not title or not link:
            return None

        description = item.findtext("description") or ""
        content = item.findtext(f"{CONTENT_NS}encoded") or ""

        author = item.findtext("author") or item.findtext(f"{DC_NS}creator")

        published_at = parse_date(item.findtext("pubDate") or item.findtext(f"{DC_NS}date"))

        categories = [cat.text.strip() for cat in item.findall("category") if cat.text]

        return RawItem(
            title=title,
            url=link,
            content=content or description,
            author=author,
            published_at=published_at,
            tags=categories,
            external_id=hashlib.md5((guid or link).encode()).hexdigest()[:16],
        )

    def _parse_atom_entry(self, entry: ElementTree.Element) -> Optional[RawItem]:
        """Parse a single Atom entry."""
        title = (entry.findtext(f"{ATOM_NS}title") or "").strip()
        if not title:
            return None

        link = None
        for link_elem in entry.findall(f"{ATOM_NS}link"):
            if link_elem.get("rel", "alternate") == "alternate":
                link = link_elem.get("href")
                break
        entry_id = entry.findtext(f"{ATOM_NS}id") or ""
        if not link and entry_id.startswith("http"):
            link = entry_id
        if not link:
            return None

        summary = entry.findtext(f"{ATOM_NS}summary") or ""
        content = entry.findtext(f"{ATOM_NS}content") or ""

        authors = [
            name for name in (a.findtext(f"{ATOM_NS}name") for a in entry.findall(f"{ATOM_NS}author"))
            if name
        ]

        published_at = parse_date(
            entry.findtext(f"{ATOM_NS}published") or entry.findtext(f"{ATOM_NS}updated")
        )

        categories = []
        for cat in entry.findall(f"{ATOM_NS}category"):
            term = cat.get("term") or cat.get("label")
            if term:
                categories.append(term)

        return RawItem(
            title=title,
            url=link,
            content=content or summary,
            author=", ".join(authors) or None,
            published_at=published_at,
            tags=categories,
            external_id=hashlib.md5((entry_id or link).encode()).hexdigest()[:16],
        )
