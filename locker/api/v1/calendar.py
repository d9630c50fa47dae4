# ============================================================================
# FILE: locker/api/v1/calendar.py
# JWT authenticated endpoints - thin HTTP layer
# ============================================================================
import logging

from fastapi import APIRouter, Depends, HTTPException, Query

from locker.api.dependencies import get_current_tenant, require_coach
from locker.core.exceptions import FeedMalformed, FeedUnreachable
from locker.db.tenant import TenantContext
from locker.schemas.calendar_events import (
    EventListResponse,
    FeedImportRequest,
    FeedImportResponse,
    LinkGoogleRequest,
    PracticeEventRequest,
    SyncOutcomeResponse,
)
from locker.services.calendar.event_query_service import EventQueryService
from locker.services.calendar.feed_importer import FeedImporter
from locker.services.calendar.link_service import CalendarLinkService
from locker.services.calendar.practice_service import PracticeEventService
from locker.services.calendar.sync_service import CalendarSyncService
from locker.tasks.calendar_tasks import ensure_watch_channel, sync_user_calendar

router = APIRouter(tags=["calendar"])
logger = logging.getLogger(__name__)


# ========== SERVICE PROVIDERS (overridable in tests) ==========

def get_event_query_service() -> EventQueryService:
    return EventQueryService()


def get_feed_importer() -> FeedImporter:
    return FeedImporter()


def get_sync_service() -> CalendarSyncService:
    return CalendarSyncService()


def get_link_service() -> CalendarLinkService:
    return CalendarLinkService()


def get_practice_service() -> PracticeEventService:
    return PracticeEventService()


# ========== EVENTS ==========

@router.get("/events", response_model=EventListResponse)
def list_events(
        include_cancelled: bool = Query(False),
        context: TenantContext = Depends(get_current_tenant),
        service: EventQueryService = Depends(get_event_query_service),
):
    """Events visible to the caller, ordered by start time."""
    return service.list_events(context, include_cancelled=include_cancelled)


@router.post("/ical/import", response_model=FeedImportResponse)
def import_ical_feed(
        request: FeedImportRequest,
        context: TenantContext = Depends(get_current_tenant),
        importer: FeedImporter = Depends(get_feed_importer),
):
    try:
        result = importer.import_feed(context.user_id, request.url)
    except FeedUnreachable as e:
        raise HTTPException(status_code=502, detail=str(e))
    except FeedMalformed as e:
        raise HTTPException(status_code=422, detail=str(e))
    except LookupError as e:
        raise HTTPException(status_code=404, detail=str(e))

    return FeedImportResponse(added=result.added, updated=result.updated, errors=result.errors)


@router.post("/sync", response_model=SyncOutcomeResponse)
def trigger_sync(
        context: TenantContext = Depends(get_current_tenant),
        service: CalendarSyncService = Depends(get_sync_service),
):
    """Run a sync pass for the caller right away."""
    outcome = service.sync_user(context.user_id)
    return SyncOutcomeResponse(
        status=outcome.status,
        pages=outcome.pages,
        upserted=outcome.upserted,
        tombstoned=outcome.tombstoned,
        full_resync=outcome.full_resync,
        error=outcome.error,
    )


# ========== GOOGLE CALENDAR ==========

@router.post("/google/link")
def link_google_calendar(
        request: LinkGoogleRequest,
        context: TenantContext = Depends(get_current_tenant),
        service: CalendarLinkService = Depends(get_link_service),
):
    service.link(
        context,
        refresh_token=request.refresh_token,
        access_token=request.access_token,
        expires_at=request.expires_at,
        calendar_id=request.calendar_id,
    )
    ensure_watch_channel.delay(str(context.user_id))
    # Fresh credential has no cursor; first pass is a full listing
    sync_user_calendar.delay(str(context.user_id))
    return {"status": "linked", "calendar_id": request.calendar_id}


@router.delete("/google/link")
def unlink_google_calendar(
        context: TenantContext = Depends(get_current_tenant),
        service: CalendarLinkService = Depends(get_link_service),
):
    if not service.unlink(context):
        raise HTTPException(status_code=404, detail="No linked calendar")
    return {"status": "unlinked"}


# ========== TEAM PRACTICE ==========

@router.post("/practice")
def create_practice_event(
        request: PracticeEventRequest,
        coach: TenantContext = Depends(require_coach),
        service: PracticeEventService = Depends(get_practice_service),
):
    """Put a practice session on every linked athlete calendar of the coach's team."""
    result = service.create_practice_event(
        coach, request.title, request.start, request.end, athlete_ids=request.athlete_ids
    )
    return {
        "created": [str(a) for a in result.created],
        "skipped": [str(a) for a in result.skipped],
        "failed": [str(a) for a in result.failed],
    }
