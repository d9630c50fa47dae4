# locker/schemas/calendar_events.py
from __future__ import annotations
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from typing import Optional, Dict, Any, List, Literal
from datetime import date, datetime, timezone
from enum import Enum
from uuid import UUID


class SyncStatus(str, Enum):
    COMPLETED = "completed"
    SKIPPED_NO_CREDENTIAL = "skipped_no_credential"
    SKIPPED_LOCKED = "skipped_locked"
    CREDENTIAL_REVOKED = "credential_revoked"
    RECOVERABLE_FAILURE = "recoverable_failure"


# ---------------------------------------------------------------------------
# Google Calendar event resource
# ---------------------------------------------------------------------------

class GoogleEventTime(BaseModel):
    """Either a timed instant (dateTime) or an all-day date, never both."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    date_time: Optional[datetime] = Field(None, alias="dateTime")
    all_day: Optional[date] = Field(None, alias="date")
    time_zone: Optional[str] = Field(None, alias="timeZone")

    @model_validator(mode="after")
    def exactly_one_form(self) -> "GoogleEventTime":
        if (self.date_time is None) == (self.all_day is None):
            raise ValueError("event time needs exactly one of dateTime or date")
        if self.date_time is not None and self.date_time.tzinfo is None:
            raise ValueError("dateTime must carry a UTC offset")
        return self

    def as_utc(self) -> datetime:
        if self.date_time is not None:
            return self.date_time.astimezone(timezone.utc)
        return datetime(self.all_day.year, self.all_day.month, self.all_day.day, tzinfo=timezone.utc)


class GoogleCancelledEvent(BaseModel):
    """Deleted or cancelled event as reported in an incremental page."""
    model_config = ConfigDict(extra="ignore")

    id: str = Field(..., min_length=1)
    status: Literal["cancelled"]
    updated: Optional[datetime] = None


class GoogleLiveEvent(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str = Field(..., min_length=1)
    status: Literal["confirmed", "tentative"] = "confirmed"
    summary: Optional[str] = None
    description: Optional[str] = None
    location: Optional[str] = None
    start: GoogleEventTime
    end: GoogleEventTime
    updated: datetime

    @model_validator(mode="after")
    def end_not_before_start(self) -> "GoogleLiveEvent":
        if self.end.as_utc() < self.start.as_utc():
            raise ValueError("event ends before it starts")
        return self


# ---------------------------------------------------------------------------
# Normalized event (shared by provider and feed paths)
# ---------------------------------------------------------------------------

class NormalizedEvent(BaseModel):
    """Internal event shape before it reaches storage."""
    source: Literal["provider", "feed"]
    external_key: str
    title: str = "Untitled Event"
    description: Optional[str] = None
    location: Optional[str] = None
    start_at: Optional[datetime] = None
    end_at: Optional[datetime] = None
    source_updated_at: Optional[datetime] = None
    is_cancelled: bool = False
    feed_uid: Optional[str] = None
    feed_start: Optional[datetime] = None
    raw: Dict[str, Any] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# API payloads
# ---------------------------------------------------------------------------

class EventOut(BaseModel):
    """Event as exposed to the dashboard; internal ids only."""
    id: UUID
    title: str
    description: Optional[str] = None
    location: Optional[str] = None
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    source: str
    last_updated: Optional[datetime] = None
    cancelled: bool = False


class EventListResponse(BaseModel):
    events: List[EventOut] = Field(default_factory=list)
    last_synced_at: Optional[datetime] = None


class FeedImportRequest(BaseModel):
    url: str = Field(..., description="iCal feed URL")

    @field_validator("url")
    @classmethod
    def http_url(cls, v: str) -> str:
        if not v.lower().startswith(("http://", "https://", "webcal://")):
            raise ValueError("Feed URL must be http(s) or webcal")
        return v


class FeedImportResponse(BaseModel):
    added: int
    updated: int
    errors: List[str] = Field(default_factory=list)


class LinkGoogleRequest(BaseModel):
    """Tokens handed over by the identity provider after consent."""
    refresh_token: str = Field(..., min_length=1)
    access_token: Optional[str] = None
    expires_at: Optional[int] = Field(None, description="Access-token expiry, epoch seconds")
    calendar_id: str = Field("primary")


class PracticeEventRequest(BaseModel):
    title: str = Field(..., min_length=1)
    start: datetime
    end: datetime
    athlete_ids: Optional[List[UUID]] = None

    @field_validator("end")
    @classmethod
    def end_after_start(cls, v: datetime, info) -> datetime:
        start = info.data.get("start")
        if start and v <= start:
            raise ValueError("End must be after start")
        return v


class SyncOutcomeResponse(BaseModel):
    status: SyncStatus
    pages: int = 0
    upserted: int = 0
    tombstoned: int = 0
    full_resync: bool = False
    error: Optional[str] = None
