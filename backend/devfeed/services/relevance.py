"""
Relevance scoring of feed items against a profile's focus.

score = keyword_signal * source_weight ** WEIGHT_DAMPING, clamped to [0, 1]

The keyword signal saturates: repeating a keyword beyond SATURATION_COUNT
adds nothing, and several distinct keywords add up with diminishing
returns (1 - e^-x). Source weight only scales an existing signal, so an
off-topic item from a heavily weighted source still scores 0.
"""
import math
import re
from functools import lru_cache

from devfeed.models.domain import FeedItem, Profile, merge_tags

SATURATION_COUNT = 3
TITLE_MULTIPLIER = 2
WEIGHT_DAMPING = 0.25
NEUTRAL_SIGNAL = 0.5  # Profiles without keywords

TECH_TERMS = (
    "ai", "artificial intelligence", "machine learning", "deep learning",
    "neural networks", "nlp", "natural language processing", "computer vision",
    "transformers", "openai", "anthropic", "claude", "gpt", "llm", "large language model",
    "react", "vue", "angular", "svelte", "nextjs", "nodejs", "javascript", "typescript",
    "python", "rust", "golang", "java", "swift", "kotlin",
    "aws", "azure", "gcp", "docker", "kubernetes", "serverless",
    "api", "graphql", "database", "postgresql", "mysql", "sqlite", "mongodb",
    "startup", "saas", "open source", "security", "webassembly",
    "blockchain", "crypto",
)

TECH_PATTERNS = (
    re.compile(r"\b\w+\.js\b", re.IGNORECASE),
    re.compile(r"\b\w+(?:API|SDK|DB)\b"),
)

MAX_EXTRACTED_TAGS = 10


@lru_cache(maxsize=1024)
def _phrase_pattern(phrase: str) -> re.Pattern:
    return re.compile(rf"(?<!\w){re.escape(phrase)}(?!\w)")


def _count(phrase: str, text: str) -> int:
    return len(_phrase_pattern(phrase).findall(text))


class RelevanceScorer:
    """
    Scores items against a profile. Pure: no state, no I/O.
    """

    def keyword_signal(self, item: FeedItem, profile: Profile) -> float:
        """Keyword overlap in [0, 1) before source weighting."""
        title = item.title.lower()
        body = " ".join([item.content.lower(), " ".join(item.tags).lower()])

        for phrase in profile.focus.exclude_keywords:
            if _count(phrase, title) or _count(phrase, body):
                return 0.0

        keywords = profile.focus.keywords
        if not keywords:
            return NEUTRAL_SIGNAL

        total = 0.0
        for phrase in keywords:
            tf = TITLE_MULTIPLIER * _count(phrase, title) + _count(phrase, body)
            total += min(tf, SATURATION_COUNT) / SATURATION_COUNT

        return 1.0 - math.exp(-total)

    def score(self, item: FeedItem, profile: Profile, source_weight: float = 1.0) -> float:
        """
        Relevance of an item to a profile.

        Args:
            item: Item to score (not modified)
            profile: Profile whose focus keywords are matched
            source_weight: Weight of the item's source (> 0)

        Returns:
            Score in [0, 1], rounded to 4 decimals
        """
        signal = self.keyword_signal(item, profile)
        if signal <= 0.0:
            return 0.0
        weighted = signal * max(source_weight, 0.0) ** WEIGHT_DAMPING
        return round(min(1.0, max(0.0, weighted)), 4)

    @staticmethod
    def is_relevant(score: float, profile: Profile) -> bool:
        return score >= profile.processing.min_relevance_score

    @staticmethod
    def extract_tags(item: FeedItem) -> list[str]:
        """Known technology terms mentioned in an item, merged after its own tags."""
        text = f"{item.title} {item.content}"
        lowered = text.lower()

        found = [term for term in TECH_TERMS if _count(term, lowered)]
        for pattern in TECH_PATTERNS:
            found.extend(match.lower() for match in pattern.findall(text))

        return merge_tags(item.tags, found[:MAX_EXTRACTED_TAGS])
