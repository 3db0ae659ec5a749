"""
Offline extractive provider.

Builds a summary from the lead sentences of the item's content and tags
from the technology vocabulary. Deterministic and network-free, so it only
takes part in provider selection when explicitly enabled.
"""
import re
import time
from typing import Optional

from devfeed.models.domain import EnrichedFields, FeedItem
from devfeed.providers.base import MAX_TAGS, Provider
from devfeed.services.relevance import RelevanceScorer

SUMMARY_WORD_LIMIT = 60
CONFIDENCE = 0.4


class ExtractiveProvider(Provider):
    """Lead-sentence summarizer."""

    name = "extractive"

    def __init__(self, enabled: bool = True, model: str = "extractive-v1"):
        super().__init__(model)
        self.enabled = enabled

    def is_ready(self) -> bool:
        return self.enabled

    async def summarize(self, item: FeedItem, focus: Optional[str] = None) -> EnrichedFields:
        start = time.perf_counter()
        sentences = split_sentences(item.content) or [item.title]

        summary_sentences = []
        word_count = 0
        for sentence in sentences:
            words = len(sentence.split())
            if summary_sentences and word_count + words > SUMMARY_WORD_LIMIT:
                break
            summary_sentences.append(sentence)
            word_count += words
            if len(summary_sentences) >= 3:
                break

        tags = [t.lower() for t in RelevanceScorer.extract_tags(item)][:MAX_TAGS]

        return EnrichedFields(
            summary=" ".join(summary_sentences),
            key_points=sentences[:3],
            insights=[],
            tags=tags,
            confidence=CONFIDENCE,
            model=self.model,
            processing_time_ms=int((time.perf_counter() - start) * 1000),
        )


def split_sentences(text: str) -> list[str]:
    text = " ".join(text.split())
    if not text:
        return []
    return [s.strip() for s in re.split(r"(?<=[.!?])\s+", text) if s.strip()]
