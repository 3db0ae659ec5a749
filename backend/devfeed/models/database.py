"""
SQLAlchemy database models for devfeed.
Uses SQLAlchemy 2.0 async patterns.
"""
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Float,
    Index,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.ext.asyncio import AsyncAttrs, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# =============================================================================
# Base
# =============================================================================

class Base(AsyncAttrs, DeclarativeBase):
    """Base class for all database models."""
    pass


# =============================================================================
# Sources
# =============================================================================

class DBSource(Base):
    """Source created at run time (manual submissions)."""
    __tablename__ = "sources"

    id: Mapped[str] = mapped_column(String(255), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    kind: Mapped[str] = mapped_column(String(50), nullable=False)
    url: Mapped[str] = mapped_column(Text, nullable=False)
    enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    fetch_interval_seconds: Mapped[int] = mapped_column(Integer, default=0)
    weight: Mapped[float] = mapped_column(Float, default=1.0)
    options_json: Mapped[Optional[dict]] = mapped_column(JSON)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=func.now())


# =============================================================================
# Feed items
# =============================================================================

class DBFeedItem(Base):
    """Stored feed item. The URL is the natural key."""
    __tablename__ = "feed_items"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    url: Mapped[str] = mapped_column(String(2048), nullable=False, unique=True)
    source_id: Mapped[str] = mapped_column(String(255), nullable=False)
    source_url: Mapped[str] = mapped_column(Text, nullable=False)
    profile_id: Mapped[Optional[str]] = mapped_column(String(255))

    # Content
    title: Mapped[str] = mapped_column(Text, nullable=False)
    content: Mapped[str] = mapped_column(Text, default="")
    author: Mapped[Optional[str]] = mapped_column(String(255))
    published_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    tags_json: Mapped[Optional[list]] = mapped_column(JSON)

    # Scoring and processing state
    relevance_score: Mapped[float] = mapped_column(Float, default=0.0)
    processing_status: Mapped[str] = mapped_column(String(20), default="pending")

    # Enrichment
    ai_processed: Mapped[bool] = mapped_column(Boolean, default=False)
    ai_summary: Mapped[Optional[str]] = mapped_column(Text)
    ai_tags_json: Mapped[Optional[list]] = mapped_column(JSON)
    key_points_json: Mapped[Optional[list]] = mapped_column(JSON)
    insights_json: Mapped[Optional[list]] = mapped_column(JSON)
    ai_confidence: Mapped[Optional[float]] = mapped_column(Float)
    ai_model: Mapped[Optional[str]] = mapped_column(String(100))

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(DateTime, default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=func.now(), onupdate=func.now())

    __table_args__ = (
        Index("ix_feed_items_status", "processing_status", "ai_processed"),
        Index("ix_feed_items_profile_status", "profile_id", "processing_status"),
        Index("ix_feed_items_published_at", "published_at"),
    )


# =============================================================================
# Engagement
# =============================================================================

class DBEngagementEvent(Base):
    """View/click/read events recorded by the tracking endpoint."""
    __tablename__ = "engagement_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    item_id: Mapped[str] = mapped_column(String(36), nullable=False)
    action: Mapped[str] = mapped_column(String(20), nullable=False)
    profile_id: Mapped[str] = mapped_column(String(255), nullable=False)
    occurred_at: Mapped[datetime] = mapped_column(DateTime, default=func.now())

    __table_args__ = (
        Index("ix_engagement_item", "item_id"),
        Index("ix_engagement_profile_item", "profile_id", "item_id"),
    )


# =============================================================================
# Database Connection
# =============================================================================

class Database:
    """Database connection manager."""

    def __init__(self, database_url: str):
        self.engine = create_async_engine(
            database_url,
            echo=False,  # Set to True for SQL logging
        )
        self.async_session = async_sessionmaker(
            self.engine,
            expire_on_commit=False,
        )

    async def create_tables(self):
        """Create all tables."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def close(self):
        await self.engine.dispose()
