# locker/services/calendar/event_query_service.py
from typing import Optional

from locker.db.tenant import TenantContext, TransactionGuard, default_guard
from locker.schemas.calendar_events import EventListResponse, EventOut
from locker.services.calendar.event_repository import EventRepository
from locker.services.calendar.token_store import TokenStore


class EventQueryService:
    """Read side for the dashboard. Provider and feed identifiers stay internal."""

    def __init__(
            self,
            events: Optional[EventRepository] = None,
            token_store: Optional[TokenStore] = None,
            guard: Optional[TransactionGuard] = None,
    ):
        self.events = events or EventRepository()
        self.token_store = token_store or TokenStore()
        self.guard = guard or default_guard

    def list_events(self, context: TenantContext, include_cancelled: bool = False) -> EventListResponse:
        def load(db):
            rows = self.events.list_for_owner(db, context.user_id, include_cancelled=include_cancelled)
            credential = self.token_store.get(db, context.user_id)
            return EventListResponse(
                events=[
                    EventOut(
                        id=row.id,
                        title=row.title,
                        description=row.description,
                        location=row.location,
                        start=row.start_at,
                        end=row.end_at,
                        source=row.source,
                        last_updated=row.source_updated_at or row.updated_at,
                        cancelled=row.is_cancelled,
                    )
                    for row in rows
                ],
                last_synced_at=credential.last_synced_at if credential else None,
            )

        return self.guard.with_tenant(context, load)
