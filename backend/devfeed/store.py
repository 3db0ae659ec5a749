"""
Feed store: the persistence boundary of the pipeline.

FeedStore is the interface the aggregator, submission and sync services
write through. Every write is safe to retry: sources and items are created
only if absent (items keyed by URL), and processing status never moves
backwards.
"""
import functools
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Optional

import structlog
from sqlalchemy import case, func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from devfeed.errors import StoreError
from devfeed.models.database import Database, DBEngagementEvent, DBFeedItem, DBSource
from devfeed.models.domain import (
    EngagementAction,
    EngagementEvent,
    EngagementSummary,
    FeedItem,
    ProcessingStatus,
    Source,
    SourceKind,
    merge_tags,
)

logger = structlog.get_logger(__name__)

# Fields update_feed_item accepts; url and id are identity
PATCHABLE_FIELDS = frozenset(FeedItem.model_fields) - {"id", "url"}


class FeedStore(ABC):
    """Interface to durable feed storage."""

    @abstractmethod
    async def search_items_by_url(self, url: str) -> list[FeedItem]:
        pass

    @abstractmethod
    async def get_item(self, item_id: str) -> Optional[FeedItem]:
        pass

    @abstractmethod
    async def get_source_by_id(self, source_id: str) -> Optional[Source]:
        pass

    @abstractmethod
    async def create_source(self, source: Source) -> Source:
        """Create a source unless one with the same id exists; return the stored one."""
        pass

    @abstractmethod
    async def create_feed_item(self, item: FeedItem) -> FeedItem:
        """Create an item unless one with the same URL exists; return the stored one."""
        pass

    @abstractmethod
    async def update_feed_item(self, item_id: str, patch: dict[str, Any]) -> Optional[FeedItem]:
        """Apply a partial update. Status regressions in the patch are ignored."""
        pass

    @abstractmethod
    async def get_unprocessed_items(
        self,
        profile_id: Optional[str] = None,
        limit: int = 10,
    ) -> list[FeedItem]:
        pass

    @abstractmethod
    async def count_unprocessed(self, profile_id: Optional[str] = None) -> int:
        pass

    @abstractmethod
    async def record_engagement(self, event: EngagementEvent) -> None:
        pass

    @abstractmethod
    async def get_engagement_summary(
        self,
        profile_id: Optional[str] = None,
        limit: int = 10,
    ) -> list[EngagementSummary]:
        pass

    async def upsert_feed_item(self, item: FeedItem) -> FeedItem:
        """Insert a new item, or fold a re-fetched copy into the stored one."""
        existing = await self.search_items_by_url(item.url)
        if not existing:
            return await self.create_feed_item(item)

        current = existing[0]
        patch: dict[str, Any] = {}
        if item.ai_processed and not current.ai_processed:
            patch.update(enrichment_patch(item))
        elif item.processing_status != current.processing_status:
            patch["processing_status"] = item.processing_status
        if current.ai_processed:
            patch["relevance_score"] = max(current.relevance_score, item.relevance_score)
        else:
            patch["relevance_score"] = item.relevance_score
        patch["tags"] = merge_tags(current.tags, item.tags)

        return await self.update_feed_item(current.id, patch) or current


def enrichment_patch(item: FeedItem) -> dict[str, Any]:
    """Fields written back after enrichment."""
    return {
        "ai_processed": item.ai_processed,
        "ai_summary": item.ai_summary,
        "ai_tags": item.ai_tags,
        "key_points": item.key_points,
        "insights": item.insights,
        "ai_confidence": item.ai_confidence,
        "ai_model": item.ai_model,
        "tags": item.tags,
        "relevance_score": item.relevance_score,
        "processing_status": item.processing_status,
    }


def _store_errors(method):
    """Wrap SQLAlchemy failures in StoreError."""
    @functools.wraps(method)
    async def wrapper(self, *args, **kwargs):
        try:
            return await method(self, *args, **kwargs)
        except SQLAlchemyError as e:
            raise StoreError(f"{method.__name__} failed: {e}") from e
    return wrapper


def _naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


class SQLFeedStore(FeedStore):
    """
    FeedStore backed by async SQLAlchemy.

    Features:
    - Create-if-absent semantics with unique-constraint race handling
    - Monotonic processing status on update
    - Engagement aggregation in SQL
    """

    def __init__(self, database: Database):
        self.database = database

    # =========================================================================
    # Items
    # =========================================================================

    @_store_errors
    async def search_items_by_url(self, url: str) -> list[FeedItem]:
        async with self.database.async_session() as session:
            result = await session.execute(select(DBFeedItem).where(DBFeedItem.url == url))
            return [self._to_item(row) for row in result.scalars()]

    @_store_errors
    async def get_item(self, item_id: str) -> Optional[FeedItem]:
        async with self.database.async_session() as session:
            row = await session.get(DBFeedItem, item_id)
            return self._to_item(row) if row else None

    @_store_errors
    async def create_feed_item(self, item: FeedItem) -> FeedItem:
        async with self.database.async_session() as session:
            existing = await session.execute(select(DBFeedItem).where(DBFeedItem.url == item.url))
            row = existing.scalar_one_or_none()
            if row is not None:
                return self._to_item(row)

            row = DBFeedItem(id=item.id or str(uuid.uuid4()))
            self._apply(row, item.model_dump(exclude={"id"}))
            session.add(row)
            try:
                await session.commit()
            except IntegrityError:
                # Concurrent insert of the same URL
                await session.rollback()
                existing = await session.execute(select(DBFeedItem).where(DBFeedItem.url == item.url))
                return self._to_item(existing.scalar_one())
            return self._to_item(row)

    @_store_errors
    async def update_feed_item(self, item_id: str, patch: dict[str, Any]) -> Optional[FeedItem]:
        async with self.database.async_session() as session:
            row = await session.get(DBFeedItem, item_id)
            if row is None:
                logger.warning("Update for unknown feed item", item_id=item_id)
                return None

            patch = {k: v for k, v in patch.items() if k in PATCHABLE_FIELDS}
            if "processing_status" in patch:
                current = ProcessingStatus(row.processing_status)
                new = ProcessingStatus(patch["processing_status"])
                if not current.can_advance_to(new):
                    logger.debug(
                        "Ignoring status regression",
                        item_id=item_id,
                        current=current.value,
                        requested=new.value,
                    )
                    del patch["processing_status"]

            self._apply(row, patch)
            await session.commit()
            return self._to_item(row)

    @_store_errors
    async def get_unprocessed_items(
        self,
        profile_id: Optional[str] = None,
        limit: int = 10,
    ) -> list[FeedItem]:
        query = (
            self._unprocessed_query(select(DBFeedItem), profile_id)
            .order_by(DBFeedItem.relevance_score.desc(), DBFeedItem.published_at.desc())
            .limit(limit)
        )
        async with self.database.async_session() as session:
            result = await session.execute(query)
            return [self._to_item(row) for row in result.scalars()]

    @_store_errors
    async def count_unprocessed(self, profile_id: Optional[str] = None) -> int:
        query = self._unprocessed_query(select(func.count(DBFeedItem.id)), profile_id)
        async with self.database.async_session() as session:
            result = await session.execute(query)
            return result.scalar() or 0

    @staticmethod
    def _unprocessed_query(query, profile_id: Optional[str]):
        query = query.where(
            DBFeedItem.processing_status == ProcessingStatus.PENDING.value,
            DBFeedItem.ai_processed.is_(False),
        )
        if profile_id:
            query = query.where(DBFeedItem.profile_id == profile_id)
        return query

    # =========================================================================
    # Sources
    # =========================================================================

    @_store_errors
    async def get_source_by_id(self, source_id: str) -> Optional[Source]:
        async with self.database.async_session() as session:
            row = await session.get(DBSource, source_id)
            return self._to_source(row) if row else None

    @_store_errors
    async def create_source(self, source: Source) -> Source:
        async with self.database.async_session() as session:
            row = await session.get(DBSource, source.id)
            if row is not None:
                return self._to_source(row)

            row = DBSource(
                id=source.id,
                name=source.name,
                kind=source.kind.value,
                url=source.url,
                enabled=source.enabled,
                fetch_interval_seconds=source.fetch_interval_seconds,
                weight=source.weight,
                options_json=source.options,
            )
            session.add(row)
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                row = await session.get(DBSource, source.id)
            return self._to_source(row)

    # =========================================================================
    # Engagement
    # =========================================================================

    @_store_errors
    async def record_engagement(self, event: EngagementEvent) -> None:
        async with self.database.async_session() as session:
            session.add(DBEngagementEvent(
                item_id=event.item_id,
                action=event.action.value,
                profile_id=event.profile_id,
                occurred_at=_naive_utc(event.occurred_at),
            ))
            await session.commit()

    @_store_errors
    async def get_engagement_summary(
        self,
        profile_id: Optional[str] = None,
        limit: int = 10,
    ) -> list[EngagementSummary]:
        def count_of(action: EngagementAction):
            return func.sum(case((DBEngagementEvent.action == action.value, 1), else_=0))

        views = count_of(EngagementAction.VIEW).label("views")
        clicks = count_of(EngagementAction.CLICK).label("clicks")
        reads = count_of(EngagementAction.READ).label("reads")

        query = (
            select(DBEngagementEvent.item_id, DBFeedItem.title, DBFeedItem.url, views, clicks, reads)
            .outerjoin(DBFeedItem, DBFeedItem.id == DBEngagementEvent.item_id)
            .group_by(DBEngagementEvent.item_id, DBFeedItem.title, DBFeedItem.url)
            .order_by((clicks + views).desc())
            .limit(limit)
        )
        if profile_id:
            query = query.where(DBEngagementEvent.profile_id == profile_id)

        async with self.database.async_session() as session:
            result = await session.execute(query)
            summaries = []
            for row in result:
                n_views, n_clicks = int(row.views or 0), int(row.clicks or 0)
                summaries.append(EngagementSummary(
                    item_id=row.item_id,
                    title=row.title,
                    url=row.url,
                    views=n_views,
                    clicks=n_clicks,
                    reads=int(row.reads or 0),
                    click_through_rate=round(n_clicks / n_views, 3) if n_views else 0.0,
                ))
            return summaries

    # =========================================================================
    # Row mapping
    # =========================================================================

    @staticmethod
    def _apply(row: DBFeedItem, values: dict[str, Any]) -> None:
        json_columns = {
            "tags": "tags_json",
            "ai_tags": "ai_tags_json",
            "key_points": "key_points_json",
            "insights": "insights_json",
        }
        for name, value in values.items():
            if name in json_columns:
                setattr(row, json_columns[name], list(value) if value is not None else None)
            elif name == "processing_status":
                row.processing_status = ProcessingStatus(value).value
            elif name == "published_at":
                row.published_at = _naive_utc(value)
            else:
                setattr(row, name, value)

    @staticmethod
    def _to_item(row: DBFeedItem) -> FeedItem:
        return FeedItem(
            id=row.id,
            source_id=row.source_id,
            source_url=row.source_url,
            profile_id=row.profile_id,
            title=row.title,
            url=row.url,
            content=row.content or "",
            author=row.author,
            published_at=row.published_at,
            tags=row.tags_json or [],
            relevance_score=row.relevance_score,
            processing_status=ProcessingStatus(row.processing_status),
            ai_processed=row.ai_processed,
            ai_summary=row.ai_summary,
            ai_tags=row.ai_tags_json,
            key_points=row.key_points_json,
            insights=row.insights_json,
            ai_confidence=row.ai_confidence,
            ai_model=row.ai_model,
        )

    @staticmethod
    def _to_source(row: DBSource) -> Source:
        return Source(
            id=row.id,
            name=row.name,
            kind=SourceKind(row.kind),
            url=row.url,
            enabled=row.enabled,
            fetch_interval_seconds=row.fetch_interval_seconds,
            weight=row.weight,
            options=row.options_json or {},
        )
