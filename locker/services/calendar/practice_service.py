# locker/services/calendar/practice_service.py
"""Coach-created practice sessions pushed to each athlete's own calendar."""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional, Sequence
from uuid import UUID

from locker.core.exceptions import CalendarSyncError, EntryMalformed
from locker.db.tenant import TenantContext, TransactionGuard, default_guard
from locker.models.user import UserRole
from locker.services.calendar.access_tokens import AccessTokenManager
from locker.services.calendar.event_repository import EventRepository
from locker.services.calendar.google_calendar_service import GoogleCalendarService
from locker.services.calendar.normalizer import normalize_provider_event
from locker.services.calendar.token_store import TokenStore
from locker.services.user.user_service import UserService

logger = logging.getLogger(__name__)


@dataclass
class PracticeFanoutResult:
    created: List[UUID] = field(default_factory=list)
    skipped: List[UUID] = field(default_factory=list)
    failed: List[UUID] = field(default_factory=list)


class PracticeEventService:
    def __init__(
            self,
            provider: Optional[GoogleCalendarService] = None,
            token_store: Optional[TokenStore] = None,
            events: Optional[EventRepository] = None,
            guard: Optional[TransactionGuard] = None,
    ):
        self.provider = provider or GoogleCalendarService()
        self.token_store = token_store or TokenStore()
        self.events = events or EventRepository()
        self.guard = guard or default_guard
        self.tokens = AccessTokenManager(self.provider, self.token_store, self.guard)

    def create_practice_event(
            self,
            coach: TenantContext,
            title: str,
            start: datetime,
            end: datetime,
            athlete_ids: Optional[Sequence[UUID]] = None,
    ) -> PracticeFanoutResult:
        """Insert the event on every linked athlete calendar of the coach's team."""
        if coach.role != UserRole.COACH:
            raise PermissionError("Only coaches can schedule practice")
        if coach.team_id is None:
            raise PermissionError("Coach is not on a team")
        if end <= start:
            raise ValueError("End must be after start")

        athletes = self.guard.with_system_access(
            lambda db: [
                TenantContext(user_id=a.id, role=a.role, team_id=a.team_id)
                for a in UserService.team_athletes(db, coach.team_id, athlete_ids)
            ]
        )

        body = {
            "summary": title,
            "start": {"dateTime": start.astimezone(timezone.utc).isoformat()},
            "end": {"dateTime": end.astimezone(timezone.utc).isoformat()},
        }
        result = PracticeFanoutResult()
        for athlete in athletes:
            try:
                created = self._create_for(athlete, body)
            except CalendarSyncError as exc:
                logger.error(f"Failed to create practice event for athlete {athlete.user_id}: {exc}")
                result.failed.append(athlete.user_id)
                continue
            (result.created if created else result.skipped).append(athlete.user_id)
        return result

    def _create_for(self, athlete: TenantContext, body: dict) -> bool:
        snapshot = self.tokens.snapshot(athlete)
        if snapshot is None:
            return False
        access_token = self.tokens.ensure(athlete, snapshot)
        created = self.provider.insert_event(access_token, snapshot.resource_id, body)
        try:
            event = normalize_provider_event(created)
        except EntryMalformed as exc:
            # The next sync pass picks the event up from the change stream
            logger.warning(f"Created practice event not recorded locally: {exc}")
            return True
        self.guard.with_tenant(athlete, lambda db: self.events.upsert(db, athlete.user_id, event))
        return True
