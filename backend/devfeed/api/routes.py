"""
FastAPI routes for the devfeed API.
"""
import hmac
from dataclasses import dataclass
from typing import Annotated, Optional

import structlog
from fastapi import APIRouter, Depends, Header, HTTPException, Query, status
from fastapi.responses import JSONResponse

from devfeed.config import Settings
from devfeed.core.config_loader import ConfigLoader
from devfeed.errors import (
    AggregationError,
    FetchError,
    InvalidSubmission,
    NoProviderAvailable,
    StoreError,
)
from devfeed.models.domain import (
    AggregateAction,
    AggregationResult,
    EngagementEvent,
    EngagementSummary,
    Profile,
    SubmitUrlRequest,
    SyncRequest,
    TrackRequest,
)
from devfeed.services.aggregator import Aggregator
from devfeed.services.submission import SubmissionService
from devfeed.services.sync import SyncService
from devfeed.services.tracking import EngagementTracker
from devfeed.store import FeedStore

logger = structlog.get_logger(__name__)
router = APIRouter()


@dataclass
class ServiceContainer:
    """Everything the routes need, wired once at startup."""
    settings: Settings
    config_loader: ConfigLoader
    aggregator: Aggregator
    sync: SyncService
    tracker: EngagementTracker
    store: Optional[FeedStore] = None
    submission: Optional[SubmissionService] = None


_services: Optional[ServiceContainer] = None


def set_services(services: Optional[ServiceContainer]) -> None:
    global _services
    _services = services


def get_services() -> ServiceContainer:
    """Dependency returning the wired services."""
    if _services is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Service is starting up",
        )
    return _services


ServicesDep = Annotated[ServiceContainer, Depends(get_services)]


def _active_profile(services: ServiceContainer, profile_id: Optional[str]) -> Profile:
    if not profile_id:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Profile is required")
    profile = services.config_loader.get_profile(profile_id)
    if profile is None or not services.config_loader.is_active(profile):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Profile not found or inactive: {profile_id}",
        )
    return profile


# ============================================================================
# Aggregation Routes
# ============================================================================


@router.get("/aggregate", response_model=AggregationResult)
async def aggregate(
    services: ServicesDep,
    profile: Optional[str] = None,
    ai: bool = False,
    include_items: Annotated[bool, Query(alias="includeItems")] = False,
    refresh: bool = False,
):
    """
    Aggregate a profile's sources.

    Served from cache when a live entry exists unless refresh is set.
    """
    active = _active_profile(services, profile)
    try:
        return await services.aggregator.run(
            active,
            ai_enabled=ai,
            force_refresh=refresh,
            include_items=include_items,
        )
    except AggregationError as e:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))


@router.post("/aggregate")
async def aggregate_action(body: AggregateAction, services: ServicesDep):
    """Administrative actions: forced non-AI refresh or a single-source test."""
    if body.action == "refresh":
        active = _active_profile(services, body.profile_id)
        try:
            result = await services.aggregator.run(active, ai_enabled=False, force_refresh=True)
        except AggregationError as e:
            raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))
        return result

    if not body.source_id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="sourceId is required")
    try:
        return await services.aggregator.test_source(body.source_id)
    except KeyError:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Source not found: {body.source_id}",
        )


# ============================================================================
# Submission Routes
# ============================================================================


@router.post("/submit-url")
async def submit_url(body: SubmitUrlRequest, services: ServicesDep):
    """Store a user-submitted URL as a feed item."""
    if services.submission is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Submissions need a configured store",
        )

    try:
        result = await services.submission.submit(body.url, body.profile_id)
    except InvalidSubmission as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except FetchError as e:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=f"Could not fetch URL: {e}",
        )

    return {
        "success": True,
        "item": result.item,
        "already_exists": result.already_exists,
        "enriched": result.enriched,
        "message": result.message,
    }


# ============================================================================
# Engagement Routes
# ============================================================================


@router.post("/track", status_code=status.HTTP_202_ACCEPTED)
async def track(body: TrackRequest, services: ServicesDep):
    """Queue an engagement event. Never fails because of storage."""
    accepted = services.tracker.submit(EngagementEvent(
        item_id=body.item_id,
        action=body.action,
        profile_id=body.profile_id,
    ))
    return {"accepted": accepted}


@router.get("/track", response_model=list[EngagementSummary])
async def engagement_summary(
    services: ServicesDep,
    profile_id: Annotated[Optional[str], Query(alias="profileId")] = None,
    limit: Annotated[int, Query(ge=1, le=100)] = 10,
):
    """Most engaged items, optionally for one profile."""
    if services.store is None:
        return []
    return await services.store.get_engagement_summary(profile_id, limit)


# ============================================================================
# Sync Routes
# ============================================================================


def require_cron_secret(
    services: ServicesDep,
    authorization: Annotated[Optional[str], Header()] = None,
) -> None:
    secret = services.settings.cron_secret
    if not secret:
        return
    if not authorization or not hmac.compare_digest(authorization, f"Bearer {secret}"):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")


@router.post("/sync", dependencies=[Depends(require_cron_secret)])
async def sync(body: SyncRequest, services: ServicesDep):
    """Batch enrichment and profile refreshes, usually triggered by cron."""
    try:
        if body.operation == "ai_batch_process":
            return await services.sync.ai_batch_process(body.profile_id, body.batch_size)
        if body.operation == "profile_sync":
            if not body.profile_id:
                raise HTTPException(
                    status_code=status.HTTP_400_BAD_REQUEST,
                    detail="profileId is required",
                )
            return await services.sync.profile_sync(body.profile_id)
        if body.operation == "full_sync":
            return await services.sync.full_sync()
        return await services.sync.health_check()
    except NoProviderAvailable as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))
    except KeyError:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Profile not found or inactive: {body.profile_id}",
        )
    except AggregationError as e:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))


# ============================================================================
# Status Routes
# ============================================================================


@router.get("/status")
async def get_status(services: ServicesDep):
    """Readiness snapshot. Performs no fetches."""
    snapshot = services.aggregator.get_status()
    snapshot["tracking"] = services.tracker.get_stats()
    if services.store is not None:
        try:
            snapshot["unprocessed_items"] = await services.store.count_unprocessed()
        except StoreError as e:
            logger.warning("Status could not read the store", error=str(e))
            snapshot["unprocessed_items"] = None
    return snapshot


async def devfeed_error_handler(request, exc) -> JSONResponse:
    """Map uncaught pipeline errors to a JSON 500."""
    logger.error("Unhandled pipeline error", path=request.url.path, error=str(exc))
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": str(exc)},
    )
