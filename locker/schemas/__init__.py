# locker/schemas/__init__.py
from .calendar_events import (
    SyncStatus,
    GoogleEventTime,
    GoogleCancelledEvent,
    GoogleLiveEvent,
    NormalizedEvent,
    EventOut,
    EventListResponse,
    FeedImportRequest,
    FeedImportResponse,
    LinkGoogleRequest,
    PracticeEventRequest,
    SyncOutcomeResponse
)

__all__ = [
    "SyncStatus",
    "GoogleEventTime",
    "GoogleCancelledEvent",
    "GoogleLiveEvent",
    "NormalizedEvent",
    "EventOut",
    "EventListResponse",
    "FeedImportRequest",
    "FeedImportResponse",
    "LinkGoogleRequest",
    "PracticeEventRequest",
    "SyncOutcomeResponse",
]
