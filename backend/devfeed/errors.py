"""
Error taxonomy for the aggregation pipeline.

Source and item level failures are normally caught by the orchestrator and
reported as data (FetchResult, FailedEnrichment). Only configuration errors
and "no data at all" conditions reach the caller as exceptions.
"""

from enum import Enum
from typing import Optional


class DevfeedError(Exception):
    """Base class for all pipeline errors."""


class ConfigError(DevfeedError):
    """Invalid source or profile definitions. Fatal at startup."""


# =============================================================================
# Fetching
# =============================================================================

class FetchErrorKind(str, Enum):
    """Classification of a failed source fetch."""
    TIMEOUT = "Timeout"
    UNREACHABLE = "Unreachable"
    PARSE_ERROR = "ParseError"
    RATE_LIMITED = "RateLimited"


class FetchError(DevfeedError):
    """A single source could not be fetched."""

    def __init__(
        self,
        kind: FetchErrorKind,
        source_id: Optional[str] = None,
        detail: Optional[str] = None,
    ):
        self.kind = kind
        self.source_id = source_id
        self.detail = detail
        message = kind.value
        if source_id:
            message = f"{source_id}: {message}"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)


# =============================================================================
# Enrichment
# =============================================================================

class EnrichErrorKind(str, Enum):
    """Classification of a failed enrichment call."""
    PROVIDER_ERROR = "ProviderError"
    TIMEOUT = "Timeout"
    QUOTA_EXCEEDED = "QuotaExceeded"
    NO_PROVIDER_AVAILABLE = "NoProviderAvailable"


class EnrichError(DevfeedError):
    """An AI provider call failed for one item."""

    def __init__(self, kind: EnrichErrorKind, detail: Optional[str] = None):
        self.kind = kind
        self.detail = detail
        super().__init__(f"{kind.value}: {detail}" if detail else kind.value)


class NoProviderAvailable(EnrichError):
    """No configured AI provider is ready to serve requests."""

    def __init__(self, detail: Optional[str] = None):
        super().__init__(EnrichErrorKind.NO_PROVIDER_AVAILABLE, detail)


# =============================================================================
# Cache, store, orchestration
# =============================================================================

class QuotaExhausted(DevfeedError):
    """The AI run quota for the current period has been used up."""

    def __init__(self, period_key: str, limit: int):
        self.period_key = period_key
        self.limit = limit
        super().__init__(f"AI quota of {limit} exhausted for period {period_key}")


class StoreError(DevfeedError):
    """Persistence failure in the feed store."""


class AggregationError(DevfeedError):
    """An aggregation run produced no data at all."""

    def __init__(self, message: str, fetch_results: Optional[list] = None):
        self.fetch_results = fetch_results or []
        super().__init__(message)


class InvalidSubmission(DevfeedError):
    """A submitted URL was rejected before any fetch."""
