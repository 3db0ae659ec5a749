"""
Domain models for devfeed.
These are the core business entities, independent of database/API representation.
"""
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


# =============================================================================
# Enums
# =============================================================================

class SourceKind(str, Enum):
    """Kinds of content source, each served by one adapter."""
    FEED = "feed"
    GITHUB = "github"
    HACKER_NEWS = "hackernews"
    REDDIT = "reddit"
    MANUAL = "manual"

    @classmethod
    def _missing_(cls, value):
        aliases = {"rss": cls.FEED, "atom": cls.FEED, "hn": cls.HACKER_NEWS}
        if isinstance(value, str):
            return aliases.get(value.lower())
        return None

    @property
    def family(self) -> str:
        """Feed, DevNews, Social or Manual."""
        return _SOURCE_FAMILIES[self]


_SOURCE_FAMILIES = {
    SourceKind.FEED: "Feed",
    SourceKind.GITHUB: "DevNews",
    SourceKind.HACKER_NEWS: "DevNews",
    SourceKind.REDDIT: "Social",
    SourceKind.MANUAL: "Manual",
}


class ProcessingStatus(str, Enum):
    """Enrichment lifecycle of a feed item. Only ever moves forward."""
    PENDING = "pending"
    PROCESSING = "processing"
    PROCESSED = "processed"
    FAILED = "failed"

    def can_advance_to(self, other: "ProcessingStatus") -> bool:
        if self == other:
            return True
        return _STATUS_RANK[other] > _STATUS_RANK[self]


_STATUS_RANK = {
    ProcessingStatus.PENDING: 0,
    ProcessingStatus.PROCESSING: 1,
    ProcessingStatus.PROCESSED: 2,
    ProcessingStatus.FAILED: 2,
}


class EngagementAction(str, Enum):
    """User interactions recorded by the tracking endpoint."""
    VIEW = "view"
    CLICK = "click"
    READ = "read"
    UNREAD = "unread"


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC so they compare with aware ones."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# =============================================================================
# Configuration entities
# =============================================================================

class Source(BaseModel):
    """A configured external content origin."""
    id: str = Field(min_length=1)
    name: str
    kind: SourceKind
    url: str
    enabled: bool = True
    fetch_interval_seconds: int = Field(default=3600, ge=0)
    weight: float = Field(default=1.0, gt=0)
    options: dict[str, Any] = Field(default_factory=dict)  # Kind-specific settings

    @field_validator("kind", mode="before")
    @classmethod
    def resolve_kind_alias(cls, v: Any) -> Any:
        if isinstance(v, str):
            return SourceKind(v.lower())
        return v


class ProfileFocus(BaseModel):
    """What an audience profile cares about."""
    description: str = ""
    keywords: list[str] = Field(default_factory=list)
    exclude_keywords: list[str] = Field(default_factory=list)

    @field_validator("keywords", "exclude_keywords")
    @classmethod
    def normalize_keywords(cls, v: list[str]) -> list[str]:
        seen: list[str] = []
        for keyword in v:
            keyword = " ".join(keyword.lower().split())
            if keyword and keyword not in seen:
                seen.append(keyword)
        return seen


class ProcessingPolicy(BaseModel):
    """Filtering and enrichment policy for a profile."""
    min_relevance_score: float = Field(default=0.0, ge=0.0, le=1.0)
    generate_summary: bool = True
    enhance_tags: bool = True
    max_age_days: Optional[int] = Field(default=None, ge=1)


class Profile(BaseModel):
    """Named audience configuration selecting sources and enrichment policy."""
    id: str = Field(min_length=1)
    name: str
    enabled: bool = True
    source_ids: set[str] = Field(default_factory=set)
    focus: ProfileFocus = Field(default_factory=ProfileFocus)
    processing: ProcessingPolicy = Field(default_factory=ProcessingPolicy)


# =============================================================================
# Feed items
# =============================================================================

class FeedItem(BaseModel):
    """Normalized unit of content with relevance and enrichment state."""
    id: Optional[str] = None  # Assigned by the store
    source_id: str
    source_url: str
    profile_id: Optional[str] = None

    title: str
    url: str
    content: str = ""
    author: Optional[str] = None
    published_at: datetime
    tags: list[str] = Field(default_factory=list)

    relevance_score: float = Field(default=0.0, ge=0.0, le=1.0)
    processing_status: ProcessingStatus = ProcessingStatus.PENDING

    # Enrichment
    ai_processed: bool = False
    ai_summary: Optional[str] = None
    ai_tags: Optional[list[str]] = None
    key_points: Optional[list[str]] = None
    insights: Optional[list[str]] = None
    ai_confidence: Optional[float] = None
    ai_model: Optional[str] = None

    @field_validator("tags")
    @classmethod
    def dedupe_tags(cls, v: list[str]) -> list[str]:
        return merge_tags(v)

    @field_validator("published_at")
    @classmethod
    def published_at_utc(cls, v: datetime) -> datetime:
        return ensure_utc(v)

    def advance_status(self, status: ProcessingStatus) -> None:
        """Move to a later processing status; regressions raise ValueError."""
        if not self.processing_status.can_advance_to(status):
            raise ValueError(
                f"Cannot move item {self.url} from "
                f"{self.processing_status.value} to {status.value}"
            )
        self.processing_status = status


def merge_tags(*groups: Optional[list[str]]) -> list[str]:
    """Concatenate tag lists, keeping the first occurrence of each tag."""
    merged: list[str] = []
    seen: set[str] = set()
    for group in groups:
        for tag in group or []:
            tag = tag.strip()
            key = tag.lower()
            if tag and key not in seen:
                seen.add(key)
                merged.append(tag)
    return merged


# =============================================================================
# Enrichment
# =============================================================================

class EnrichedFields(BaseModel):
    """Provider output for one item."""
    summary: str
    key_points: list[str] = Field(default_factory=list)
    insights: list[str] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    model: str
    processing_time_ms: int = 0


# =============================================================================
# Aggregation
# =============================================================================

class FetchResult(BaseModel):
    """Outcome of one (profile, source) fetch attempt."""
    source_id: str
    success: bool
    item_count: int = 0
    duration_ms: int = 0
    error: Optional[str] = None  # FetchErrorKind value
    error_detail: Optional[str] = None


class AggregationResult(BaseModel):
    """Result of one profile aggregation run."""
    profile_id: str
    profile_name: str
    total_items: int = 0
    processed_items: int = 0
    avg_relevance_score: float = 0.0
    duplicates_removed: int = 0
    fetch_results: list[FetchResult] = Field(default_factory=list)
    processed_feed_items: Optional[list[FeedItem]] = None

    ai_enabled: bool = False
    cached: bool = False
    cache_age_seconds: Optional[int] = None
    stale: bool = False
    notes: list[str] = Field(default_factory=list)
    enrichment_failures: int = 0
    remaining_quota: Optional[int] = None

    generated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    duration_ms: int = 0


# =============================================================================
# Engagement
# =============================================================================

class EngagementEvent(BaseModel):
    """A single user interaction with an item."""
    item_id: str
    action: EngagementAction
    profile_id: str
    occurred_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class EngagementSummary(BaseModel):
    """Per-item engagement counts."""
    item_id: str
    title: Optional[str] = None
    url: Optional[str] = None
    views: int = 0
    clicks: int = 0
    reads: int = 0
    click_through_rate: float = 0.0


# =============================================================================
# API Request Models
# =============================================================================

class ApiRequest(BaseModel):
    """Request bodies accept camelCase keys as well as snake_case."""
    model_config = ConfigDict(populate_by_name=True)


class SubmitUrlRequest(ApiRequest):
    url: str
    profile_id: Optional[str] = Field(default=None, alias="profileId")


class TrackRequest(ApiRequest):
    item_id: str = Field(alias="itemId")
    action: EngagementAction
    profile_id: str = Field(alias="profileId")


class SyncRequest(ApiRequest):
    operation: Literal["ai_batch_process", "profile_sync", "full_sync", "health_check"]
    profile_id: Optional[str] = Field(default=None, alias="profileId")
    batch_size: int = Field(default=10, ge=1, le=100, alias="batchSize")


class AggregateAction(ApiRequest):
    action: Literal["refresh", "test_source"]
    profile_id: Optional[str] = Field(default=None, alias="profileId")
    source_id: Optional[str] = Field(default=None, alias="sourceId")
