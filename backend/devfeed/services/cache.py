"""
Aggregation result cache and AI run quota.

One instance is owned by the Aggregator and shared by all requests in the
process. Entries are keyed by (profile_id, ai_mode). Expired entries are
kept so they can be served stale when a fresh AI run is not allowed.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Optional, TypeVar

import structlog

from devfeed.config import Settings, get_settings
from devfeed.errors import QuotaExhausted
from devfeed.models.domain import AggregationResult

logger = structlog.get_logger(__name__)

T = TypeVar("T")
CacheKey = tuple[str, bool]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class CacheEntry:
    """A cached aggregation result."""
    profile_key: str
    ai_mode: bool
    result: AggregationResult
    stored_at: datetime
    ttl: timedelta

    def is_expired(self, now: datetime) -> bool:
        return now > self.stored_at + self.ttl

    def age_seconds(self, now: datetime) -> int:
        return max(0, int((now - self.stored_at).total_seconds()))


@dataclass
class QuotaCounter:
    """AI-enabled runs consumed in one period."""
    period_key: str
    count: int
    limit: int

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.count)


class CacheAndQuota:
    """
    TTL cache of aggregation results plus a per-period AI quota.

    Features:
    - Separate entries for AI and non-AI results of a profile
    - Stale entries retained for quota fallback
    - Calendar-day quota that resets when the period rolls over
    - Single-flight: one fresh run per key, concurrent callers share it
    """

    def __init__(
        self,
        ttl_seconds: float = 12 * 3600,
        quota_limit: int = 2,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.ttl = timedelta(seconds=ttl_seconds)
        self.quota_limit = quota_limit
        self._clock = clock or utc_now
        self._entries: dict[CacheKey, CacheEntry] = {}
        self._quota: Optional[QuotaCounter] = None
        self._inflight: dict[CacheKey, asyncio.Task] = {}

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "CacheAndQuota":
        settings = settings or get_settings()
        return cls(ttl_seconds=settings.cache_ttl_seconds, quota_limit=settings.ai_quota_limit)

    def now(self) -> datetime:
        return self._clock()

    # =========================================================================
    # Cache
    # =========================================================================

    def get(
        self,
        profile_id: str,
        ai_mode: bool,
        allow_stale: bool = False,
    ) -> Optional[CacheEntry]:
        """Cached entry for a key; expired entries only with allow_stale."""
        entry = self._entries.get((profile_id, ai_mode))
        if entry is None:
            return None
        if not allow_stale and entry.is_expired(self.now()):
            return None
        return entry

    def put(self, profile_id: str, ai_mode: bool, result: AggregationResult) -> CacheEntry:
        """Store a result, superseding any previous entry for the key."""
        entry = CacheEntry(
            profile_key=profile_id,
            ai_mode=ai_mode,
            result=result.model_copy(deep=True),
            stored_at=self.now(),
            ttl=self.ttl,
        )
        self._entries[(profile_id, ai_mode)] = entry
        return entry

    def invalidate(self, profile_id: Optional[str] = None) -> int:
        """Drop entries for one profile, or all of them. Returns the count removed."""
        keys = [k for k in self._entries if profile_id is None or k[0] == profile_id]
        for key in keys:
            del self._entries[key]
        return len(keys)

    # =========================================================================
    # Quota
    # =========================================================================

    def current_period_key(self) -> str:
        """Calendar day (UTC) of the cache clock."""
        return self.now().date().isoformat()

    def _counter(self, period_key: str) -> QuotaCounter:
        if self._quota is None or self._quota.period_key != period_key:
            self._quota = QuotaCounter(period_key=period_key, count=0, limit=self.quota_limit)
        return self._quota

    def consume_quota(self, period_key: Optional[str] = None) -> QuotaCounter:
        """
        Count one AI-enabled run against the period.

        Raises:
            QuotaExhausted: if the period's limit has been reached
        """
        counter = self._counter(period_key or self.current_period_key())
        if counter.count >= counter.limit:
            raise QuotaExhausted(counter.period_key, counter.limit)
        counter.count += 1
        logger.info(
            "AI quota consumed",
            period=counter.period_key,
            count=counter.count,
            limit=counter.limit,
        )
        return counter

    def try_consume_quota(self, period_key: Optional[str] = None) -> bool:
        try:
            self.consume_quota(period_key)
        except QuotaExhausted:
            return False
        return True

    def remaining_quota(self, period_key: Optional[str] = None) -> int:
        return self._counter(period_key or self.current_period_key()).remaining

    # =========================================================================
    # Single flight
    # =========================================================================

    async def coalesce(self, key: CacheKey, factory: Callable[[], Awaitable[T]]) -> T:
        """
        Run factory() unless a run for the same key is already in flight,
        in which case wait for that run's result instead.
        """
        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(factory())
            self._inflight[key] = task

            def _done(finished: asyncio.Task) -> None:
                if self._inflight.get(key) is finished:
                    del self._inflight[key]
                if not finished.cancelled():
                    finished.exception()  # Mark retrieved

            task.add_done_callback(_done)
        else:
            logger.debug("Joining in-flight aggregation", profile=key[0], ai=key[1])

        return await asyncio.shield(task)

    def in_flight(self) -> list[CacheKey]:
        return list(self._inflight)

    def get_status(self) -> dict:
        now = self.now()
        return {
            "entries": [
                {
                    "profile_id": entry.profile_key,
                    "ai_mode": entry.ai_mode,
                    "age_seconds": entry.age_seconds(now),
                    "expired": entry.is_expired(now),
                }
                for entry in self._entries.values()
            ],
            "ttl_seconds": int(self.ttl.total_seconds()),
            "quota": {
                "period": self.current_period_key(),
                "limit": self.quota_limit,
                "remaining": self.remaining_quota(),
            },
            "in_flight": len(self._inflight),
        }
