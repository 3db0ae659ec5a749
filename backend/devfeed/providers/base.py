"""
AI provider abstraction.

A provider turns one feed item into EnrichedFields. LLM-backed providers
share prompt construction and response parsing through LLMProvider and only
implement the raw completion call.
"""
import json
import re
import time
from abc import ABC, abstractmethod
from typing import ClassVar, Optional

from devfeed.models.domain import EnrichedFields, FeedItem

MAX_TAGS = 8
MAX_KEY_POINTS = 5
MAX_INSIGHTS = 3
FALLBACK_CONFIDENCE = 0.3
PROMPT_CONTENT_LIMIT = 4000


class Provider(ABC):
    """Capability interface: summarize(item) -> EnrichedFields."""

    name: ClassVar[str]

    def __init__(self, model: str):
        self.model = model

    @abstractmethod
    def is_ready(self) -> bool:
        """Whether the provider can serve requests (credentials present etc.)."""
        pass

    @abstractmethod
    async def summarize(self, item: FeedItem, focus: Optional[str] = None) -> EnrichedFields:
        """
        Enrich one item.

        Raises:
            EnrichError: ProviderError, Timeout or QuotaExceeded
        """
        pass

    def __repr__(self) -> str:
        return f"<{type(self).__name__} model={self.model}>"


class LLMProvider(Provider):
    """Provider backed by a chat-completion style API."""

    def __init__(self, model: str, max_tokens: int = 800, temperature: float = 0.2):
        super().__init__(model)
        self.max_tokens = max_tokens
        self.temperature = temperature

    @abstractmethod
    async def _complete(self, prompt: str) -> str:
        """Send one prompt and return the text response."""
        pass

    async def summarize(self, item: FeedItem, focus: Optional[str] = None) -> EnrichedFields:
        start = time.perf_counter()
        response = await self._complete(build_summary_prompt(item, focus))
        elapsed_ms = int((time.perf_counter() - start) * 1000)
        return parse_summary_response(response, model=self.model, processing_time_ms=elapsed_ms)


def build_summary_prompt(item: FeedItem, focus: Optional[str] = None) -> str:
    """Build the structured summary prompt."""
    focus_line = f"Focus area: {focus}\n" if focus else ""
    content = item.content[:PROMPT_CONTENT_LIMIT] or "No content available."
    return f"""{focus_line}Analyze this article and return a structured summary as JSON.

Title: {item.title}
URL: {item.url}

Content:
{content}

Return a JSON object with these fields:
- summary: a concise 2-3 sentence summary
- keyPoints: array of 3-5 key points
- tags: array of relevant lower-case topic tags
- insights: array of 2-3 takeaways for the focus area
- confidence: number from 0.0 to 1.0

Example:
{{"summary": "...", "keyPoints": ["..."], "tags": ["python"], "insights": ["..."], "confidence": 0.85}}"""


def parse_summary_response(text: str, model: str, processing_time_ms: int = 0) -> EnrichedFields:
    """
    Parse a provider response into EnrichedFields.

    Takes the first JSON object in the text; when there is none, the whole
    response becomes the summary with low confidence.
    """
    match = re.search(r"\{.*\}", text, re.DOTALL)
    if match:
        try:
            data = json.loads(match.group(0))
        except json.JSONDecodeError:
            data = None
        if isinstance(data, dict) and data.get("summary"):
            return EnrichedFields(
                summary=str(data["summary"]).strip(),
                key_points=_string_list(data.get("keyPoints") or data.get("key_points"))[:MAX_KEY_POINTS],
                insights=_string_list(data.get("insights"))[:MAX_INSIGHTS],
                tags=parse_tags(data.get("tags")),
                confidence=_clamp(data.get("confidence", 0.5)),
                model=model,
                processing_time_ms=processing_time_ms,
            )

    return EnrichedFields(
        summary=text.strip(),
        confidence=FALLBACK_CONFIDENCE,
        model=model,
        processing_time_ms=processing_time_ms,
    )


def parse_tags(value) -> list[str]:
    """Tags from a list or a comma/newline separated string, at most MAX_TAGS."""
    if isinstance(value, str):
        value = re.split(r"[,\n]", value)
    tags = []
    for tag in _string_list(value):
        tag = tag.strip().lower()
        if 0 < len(tag) < 50 and tag not in tags:
            tags.append(tag)
    return tags[:MAX_TAGS]


def _string_list(value) -> list[str]:
    if not isinstance(value, list):
        return []
    return [str(v).strip() for v in value if str(v).strip()]


def _clamp(value) -> float:
    try:
        return max(0.0, min(1.0, float(value)))
    except (TypeError, ValueError):
        return 0.5
