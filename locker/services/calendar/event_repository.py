# locker/services/calendar/event_repository.py
"""Storage operations on calendar_events. Callers pass a tenant-scoped session."""
import enum
import logging
from datetime import datetime
from typing import Iterable, List, Optional
from uuid import UUID

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from locker.models.base import utcnow
from locker.models.calendar_event import CalendarEvent, EventSource
from locker.schemas.calendar_events import NormalizedEvent

logger = logging.getLogger(__name__)

_CONTENT_FIELDS = ("title", "description", "location", "start_at", "end_at", "is_cancelled")


class UpsertResult(str, enum.Enum):
    INSERTED = "inserted"
    UPDATED = "updated"
    UNCHANGED = "unchanged"


class EventRepository:
    """Idempotent writes keyed by (owner_id, source, external_key)."""

    def find(self, db: Session, owner_id: UUID, source: str, external_key: str) -> Optional[CalendarEvent]:
        return (
            db.query(CalendarEvent)
            .filter(
                CalendarEvent.owner_id == owner_id,
                CalendarEvent.source == source,
                CalendarEvent.external_key == external_key,
            )
            .with_for_update()
            .one_or_none()
        )

    def upsert(self, db: Session, owner_id: UUID, event: NormalizedEvent) -> CalendarEvent:
        row, _ = self.upsert_with_result(db, owner_id, event)
        return row

    def upsert_with_result(self, db: Session, owner_id: UUID, event: NormalizedEvent):
        existing = self.find(db, owner_id, event.source, event.external_key)
        if existing is None:
            inserted = self._insert(db, owner_id, event)
            if inserted is not None:
                return inserted, UpsertResult.INSERTED
            # Lost an insert race to a concurrent writer; fall back to update
            existing = self.find(db, owner_id, event.source, event.external_key)

        if event.source == EventSource.PROVIDER.value:
            changed = self._apply_provider_change(existing, event)
        else:
            changed = self._apply_feed_change(existing, event)

        if not changed:
            return existing, UpsertResult.UNCHANGED
        existing.updated_at = utcnow()
        db.flush()
        return existing, UpsertResult.UPDATED

    def _insert(self, db: Session, owner_id: UUID, event: NormalizedEvent) -> Optional[CalendarEvent]:
        now = utcnow()
        row = CalendarEvent(
            owner_id=owner_id,
            source=event.source,
            external_key=event.external_key,
            feed_uid=event.feed_uid,
            feed_start=event.feed_start,
            title=event.title,
            description=event.description,
            location=event.location,
            start_at=event.start_at,
            end_at=event.end_at,
            source_updated_at=event.source_updated_at,
            is_cancelled=event.is_cancelled,
            raw=event.raw,
            created_at=now,
            updated_at=now,
        )
        try:
            with db.begin_nested():
                db.add(row)
                db.flush()
        except IntegrityError:
            logger.info(f"Concurrent insert for {event.source}:{event.external_key}; updating instead")
            return None
        return row

    @staticmethod
    def _is_newer(incoming: Optional[datetime], stored: Optional[datetime]) -> bool:
        if stored is None:
            return True
        if incoming is None:
            return False
        return incoming > stored

    def _apply_provider_change(self, row: CalendarEvent, event: NormalizedEvent) -> bool:
        if event.is_cancelled:
            if row.is_cancelled:
                return False
            if event.source_updated_at is not None and not self._is_newer(event.source_updated_at, row.source_updated_at):
                return False
            row.is_cancelled = True
            row.source_updated_at = event.source_updated_at or row.source_updated_at
            row.raw = event.raw
            return True

        # Last modification wins; replays and stale deliveries are no-ops
        if not self._is_newer(event.source_updated_at, row.source_updated_at):
            return False
        for field in _CONTENT_FIELDS:
            setattr(row, field, getattr(event, field))
        row.source_updated_at = event.source_updated_at
        row.raw = event.raw
        return True

    def _apply_feed_change(self, row: CalendarEvent, event: NormalizedEvent) -> bool:
        if all(getattr(row, field) == getattr(event, field) for field in _CONTENT_FIELDS):
            return False
        for field in _CONTENT_FIELDS:
            setattr(row, field, getattr(event, field))
        row.source_updated_at = event.source_updated_at
        row.raw = event.raw
        return True

    def tombstone_missing(self, db: Session, owner_id: UUID, source: str, live_keys: Iterable[str]) -> int:
        """Tombstone every live row of this source whose key is not in live_keys."""
        stmt = (
            update(CalendarEvent)
            .where(
                CalendarEvent.owner_id == owner_id,
                CalendarEvent.source == source,
                CalendarEvent.is_cancelled.is_(False),
                CalendarEvent.external_key.not_in(list(live_keys)),
            )
            .values(is_cancelled=True, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        return db.execute(stmt).rowcount or 0

    def list_for_owner(self, db: Session, owner_id: UUID, include_cancelled: bool = False) -> List[CalendarEvent]:
        query = db.query(CalendarEvent).filter(CalendarEvent.owner_id == owner_id)
        if not include_cancelled:
            query = query.filter(CalendarEvent.is_cancelled.is_(False))
        return query.order_by(CalendarEvent.start_at.asc()).all()
