# locker/services/calendar/feed_importer.py
import logging
from dataclasses import dataclass, field
from typing import List, Optional, Set
from uuid import UUID

import requests
from icalendar import Calendar
from sqlalchemy.exc import SQLAlchemyError

from locker.config.settings import Settings, get_settings
from locker.core.exceptions import EntryMalformed, FeedMalformed, FeedUnreachable
from locker.db.tenant import TransactionGuard, default_guard
from locker.services.calendar.event_repository import EventRepository, UpsertResult
from locker.services.calendar.normalizer import normalize_feed_occurrence
from locker.services.user.user_service import UserService

logger = logging.getLogger(__name__)


@dataclass
class FeedImportResult:
    added: int = 0
    updated: int = 0
    errors: List[str] = field(default_factory=list)


class FeedImporter:
    """Imports a user-supplied iCal feed into the event store."""

    def __init__(
            self,
            events: Optional[EventRepository] = None,
            guard: Optional[TransactionGuard] = None,
            settings: Optional[Settings] = None,
            http: Optional[requests.Session] = None,
    ):
        self.settings = settings or get_settings()
        self.events = events or EventRepository()
        self.guard = guard or default_guard
        self.http = http or requests.Session()

    def fetch(self, feed_url: str) -> bytes:
        """GET the feed, bounded in time and size"""
        if feed_url.lower().startswith("webcal://"):
            feed_url = "https://" + feed_url[len("webcal://"):]

        try:
            response = self.http.get(
                feed_url,
                timeout=self.settings.FEED_FETCH_TIMEOUT_SECONDS,
                stream=True,
                headers={"Accept": "text/calendar, text/plain;q=0.9, */*;q=0.5"},
            )
        except requests.RequestException as exc:
            raise FeedUnreachable(f"Could not fetch feed: {exc}") from exc

        with response:
            if response.status_code != 200:
                raise FeedUnreachable(f"Feed returned HTTP {response.status_code}")
            body = bytearray()
            try:
                for chunk in response.iter_content(chunk_size=64 * 1024):
                    body.extend(chunk)
                    if len(body) > self.settings.FEED_MAX_BYTES:
                        raise FeedMalformed(f"Feed exceeds {self.settings.FEED_MAX_BYTES} bytes")
            except requests.RequestException as exc:
                raise FeedUnreachable(f"Feed download interrupted: {exc}") from exc
        return bytes(body)

    @staticmethod
    def parse(body: bytes) -> List:
        """Return the VEVENT components of an iCal document"""
        try:
            calendar = Calendar.from_ical(body)
        except ValueError as exc:
            raise FeedMalformed(f"Feed is not a valid calendar: {exc}") from exc
        if getattr(calendar, "name", None) != "VCALENDAR":
            raise FeedMalformed("Feed has no VCALENDAR component")
        return list(calendar.walk("VEVENT"))

    def import_feed(self, user_id: UUID, feed_url: str) -> FeedImportResult:
        context = self.guard.with_system_access(lambda db: UserService.tenant_context(db, user_id))
        if context is None:
            raise LookupError(f"User {user_id} not found")

        occurrences = self.parse(self.fetch(feed_url))
        result = FeedImportResult()
        seen: Set[str] = set()

        with self.guard.tenant(context) as db:
            for component in occurrences:
                try:
                    event = normalize_feed_occurrence(component)
                except EntryMalformed as exc:
                    result.errors.append(str(exc))
                    continue

                if event.external_key in seen:
                    result.errors.append(f"event {event.feed_uid} repeats start {event.feed_start.isoformat()}")
                    continue
                seen.add(event.external_key)

                try:
                    with db.begin_nested():
                        _, outcome = self.events.upsert_with_result(db, user_id, event)
                except SQLAlchemyError as exc:
                    logger.warning(f"Could not store feed event {event.external_key} for user {user_id}: {exc}")
                    result.errors.append(f"event {event.feed_uid} could not be stored")
                    continue

                if outcome == UpsertResult.UPDATED:
                    result.updated += 1
                else:
                    result.added += 1

        logger.info(
            f"Imported feed for user {user_id}: {result.added} added, "
            f"{result.updated} updated, {len(result.errors)} skipped"
        )
        return result
