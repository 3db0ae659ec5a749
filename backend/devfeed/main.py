"""
Main FastAPI application for devfeed.
"""
from contextlib import asynccontextmanager
from typing import Optional

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from devfeed.api.routes import (
    ServiceContainer,
    devfeed_error_handler,
    router,
    set_services,
)
from devfeed.config import Settings, get_settings
from devfeed.core.config_loader import ConfigLoader
from devfeed.core.logging_setup import configure_logging
from devfeed.errors import DevfeedError
from devfeed.jobs.background_sync import BackgroundSyncJob
from devfeed.models.database import Database
from devfeed.models.domain import SourceKind
from devfeed.services.aggregator import Aggregator
from devfeed.services.cache import CacheAndQuota
from devfeed.services.submission import SubmissionService
from devfeed.services.sync import SyncService
from devfeed.services.tracking import EngagementTracker
from devfeed.sources import create_adapters
from devfeed.store import SQLFeedStore

logger = structlog.get_logger()

# Global instances
database: Optional[Database] = None
scheduler: Optional[AsyncIOScheduler] = None


def create_services(settings: Settings, database: Optional[Database] = None) -> ServiceContainer:
    """Wire the pipeline components. Config errors surface here, at startup."""
    config_loader = ConfigLoader(settings.config_dir)
    config_loader.reload()

    store = SQLFeedStore(database) if database is not None else None
    adapters = create_adapters(settings)
    aggregator = Aggregator(
        config_loader=config_loader,
        cache=CacheAndQuota.from_settings(settings),
        store=store,
        adapters=adapters,
        settings=settings,
    )
    submission = None
    if store is not None:
        submission = SubmissionService(
            store,
            adapters[SourceKind.MANUAL],
            enricher_factory=aggregator.create_enricher,
            settings=settings,
        )

    return ServiceContainer(
        settings=settings,
        config_loader=config_loader,
        aggregator=aggregator,
        sync=SyncService(aggregator, store, config_loader),
        tracker=EngagementTracker(store, max_queue_size=settings.tracking_queue_size),
        store=store,
        submission=submission,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager - handles startup and shutdown."""
    global database, scheduler

    settings = get_settings()
    configure_logging(settings.log_level, json_output=settings.environment != "development")

    logger.info("Initializing database", url=settings.database_url)
    database = Database(settings.database_url)
    await database.create_tables()

    services = create_services(settings, database)
    services.tracker.start()
    set_services(services)
    logger.info("Configuration loaded", **services.config_loader.get_config_summary())

    if settings.background_sync_enabled:
        job = BackgroundSyncJob(services.sync, settings)
        scheduler = AsyncIOScheduler()
        scheduler.add_job(
            job.run,
            IntervalTrigger(minutes=settings.background_sync_interval_minutes),
            id="background_sync",
            name="Background Sync",
            replace_existing=True,
            max_instances=1,
        )
        scheduler.start()
        logger.info("Scheduler started", interval_minutes=settings.background_sync_interval_minutes)

    yield

    # Shutdown
    logger.info("Shutting down")
    if scheduler:
        scheduler.shutdown()
        scheduler = None
    await services.tracker.stop()
    set_services(None)
    await database.close()


settings = get_settings()

# Create FastAPI app
app = FastAPI(
    title="devfeed",
    description="Developer content aggregation with optional AI enrichment.",
    version=settings.app_version,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_exception_handler(DevfeedError, devfeed_error_handler)

# Include API routes
app.include_router(router, prefix="/api/v1")


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "service": "devfeed",
        "version": settings.app_version,
    }


@app.get("/")
async def root():
    """Root endpoint with API info."""
    return {
        "name": "devfeed API",
        "version": settings.app_version,
        "docs": "/docs",
        "endpoints": {
            "aggregate": "/api/v1/aggregate?profile={profile_id}&ai={bool}",
            "submit_url": "/api/v1/submit-url",
            "track": "/api/v1/track",
            "sync": "/api/v1/sync",
            "status": "/api/v1/status",
        },
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "devfeed.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
    )
