# locker/services/calendar/sync_service.py
"""
One user's reconciliation pass against the provider's change stream.

Incremental passes read pages with the stored sync cursor. Each page is
applied in its own tenant transaction together with the cursor that follows
it, so a crash between pages re-fetches the unapplied page on the next run.
When the provider rejects the cursor the pass falls back to a full listing
of the sync window, and rows missing from that listing are tombstoned.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional, Set
from uuid import UUID

from sqlalchemy.orm import Session

from locker.config.settings import Settings, get_settings
from locker.core.exceptions import (
    CredentialRevoked,
    EntryMalformed,
    ProviderError,
    RecoverableSyncFailure,
    SyncCursorRejected,
)
from locker.db.tenant import TenantContext, TransactionGuard, default_guard
from locker.models.calendar_event import EventSource
from locker.schemas.calendar_events import SyncStatus
from locker.services.calendar.access_tokens import AccessTokenManager, CredentialSnapshot
from locker.services.calendar.event_repository import EventRepository, UpsertResult
from locker.services.calendar.google_calendar_service import ChangePage, GoogleCalendarService
from locker.services.calendar.normalizer import normalize_provider_event
from locker.services.calendar.sync_lock import UserSyncLock
from locker.services.calendar.token_store import TokenStore
from locker.services.user.user_service import UserService

logger = logging.getLogger(__name__)


@dataclass
class SyncOutcome:
    user_id: UUID
    status: SyncStatus
    pages: int = 0
    upserted: int = 0
    tombstoned: int = 0
    skipped_entries: int = 0
    full_resync: bool = False
    cursor: Optional[str] = None
    error: Optional[str] = None


class CalendarSyncService:
    def __init__(
            self,
            provider: Optional[GoogleCalendarService] = None,
            token_store: Optional[TokenStore] = None,
            events: Optional[EventRepository] = None,
            guard: Optional[TransactionGuard] = None,
            lock: Optional[UserSyncLock] = None,
            settings: Optional[Settings] = None,
    ):
        self.settings = settings or get_settings()
        self.provider = provider or GoogleCalendarService(self.settings)
        self.token_store = token_store or TokenStore()
        self.events = events or EventRepository()
        self.guard = guard or default_guard
        self.lock = lock or UserSyncLock()
        self.tokens = AccessTokenManager(self.provider, self.token_store, self.guard, self.settings)

    def sync_user(self, user_id: UUID) -> SyncOutcome:
        """Run one pass for the user; a pass already in progress wins."""
        with self.lock.hold(user_id) as acquired:
            if not acquired:
                logger.info(f"Sync already running for user {user_id}; skipping")
                return SyncOutcome(user_id=user_id, status=SyncStatus.SKIPPED_LOCKED)
            return self._sync_locked(user_id)

    def _sync_locked(self, user_id: UUID) -> SyncOutcome:
        context = self.guard.with_system_access(lambda db: UserService.tenant_context(db, user_id))
        if context is None:
            logger.info(f"Sync requested for unknown user {user_id}")
            return SyncOutcome(user_id=user_id, status=SyncStatus.SKIPPED_NO_CREDENTIAL)

        snapshot = self.tokens.snapshot(context)
        if snapshot is None:
            return SyncOutcome(user_id=user_id, status=SyncStatus.SKIPPED_NO_CREDENTIAL)

        outcome = SyncOutcome(user_id=user_id, status=SyncStatus.COMPLETED, cursor=snapshot.sync_cursor)
        try:
            access_token = self.tokens.ensure(context, snapshot)
            if snapshot.sync_cursor is None:
                self._full_resync(context, snapshot, access_token, snapshot.cursor_version, outcome)
            else:
                self._incremental(context, snapshot, access_token, outcome)
        except CredentialRevoked as exc:
            logger.warning(f"Calendar credential for user {user_id} revoked: {exc}")
            outcome.status = SyncStatus.CREDENTIAL_REVOKED
            outcome.error = str(exc)
            return outcome
        except RecoverableSyncFailure as exc:
            logger.warning(f"Sync for user {user_id} aborted, cursor kept: {exc}")
            outcome.status = SyncStatus.RECOVERABLE_FAILURE
            outcome.error = str(exc)

        self.guard.with_tenant(
            context,
            lambda db: self.token_store.record_outcome(db, snapshot.id, outcome.status.value, outcome.error),
        )
        logger.info(
            f"Sync for user {user_id}: {outcome.status.value}, {outcome.pages} pages, "
            f"{outcome.upserted} upserted, {outcome.tombstoned} tombstoned"
        )
        return outcome

    # ------------------------------------------------------------------
    # Passes
    # ------------------------------------------------------------------

    def _incremental(
            self, context: TenantContext, snapshot: CredentialSnapshot, access_token: str, outcome: SyncOutcome,
    ) -> None:
        cursor = snapshot.sync_cursor
        page_token = snapshot.page_cursor
        version = snapshot.cursor_version

        while True:
            try:
                page = self._fetch(access_token, snapshot.resource_id, sync_token=cursor, page_token=page_token)
            except SyncCursorRejected:
                logger.warning(f"Sync cursor rejected for user {context.user_id}; running full resync")
                version = self.guard.with_tenant(
                    context,
                    lambda db: self.token_store.advance_cursor(db, snapshot.id, version, None, None),
                )
                self._full_resync(context, snapshot, access_token, version, outcome)
                return

            if page.next_page_token:
                next_pair = (cursor, page.next_page_token)
            elif page.next_sync_token:
                next_pair = (page.next_sync_token, None)
            else:
                raise RecoverableSyncFailure("Provider page carried neither a page token nor a sync token")

            current_pair = (cursor, page_token)

            def apply(db: Session) -> int:
                self._apply_items(db, context.user_id, page, outcome, live_keys=None)
                if next_pair == current_pair:
                    return version
                return self.token_store.advance_cursor(db, snapshot.id, version, next_pair[0], next_pair[1])

            version = self.guard.with_tenant(context, apply)
            outcome.pages += 1
            cursor, page_token = next_pair
            outcome.cursor = cursor
            if page_token is None:
                return

    def _full_resync(
            self,
            context: TenantContext,
            snapshot: CredentialSnapshot,
            access_token: str,
            version: int,
            outcome: SyncOutcome,
    ) -> None:
        outcome.full_resync = True
        now = datetime.now(timezone.utc)
        time_min = now - timedelta(days=self.settings.SYNC_WINDOW_PAST_DAYS)
        time_max = now + timedelta(days=self.settings.SYNC_WINDOW_FUTURE_DAYS)
        live_keys: Set[str] = set()
        page_token: Optional[str] = None

        while True:
            try:
                page = self._fetch(
                    access_token, snapshot.resource_id, page_token=page_token, time_min=time_min, time_max=time_max,
                )
            except SyncCursorRejected as exc:
                raise RecoverableSyncFailure(f"Full listing rejected: {exc}") from exc

            terminal = not page.next_page_token
            if terminal and not page.next_sync_token:
                raise RecoverableSyncFailure("Full listing ended without a sync token")

            def apply(db: Session) -> int:
                self._apply_items(db, context.user_id, page, outcome, live_keys=live_keys)
                if not terminal:
                    return version
                outcome.tombstoned += self.events.tombstone_missing(
                    db, context.user_id, EventSource.PROVIDER.value, live_keys
                )
                return self.token_store.advance_cursor(db, snapshot.id, version, page.next_sync_token, None)

            version = self.guard.with_tenant(context, apply)
            outcome.pages += 1
            if terminal:
                outcome.cursor = page.next_sync_token
                return
            page_token = page.next_page_token

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _fetch(self, access_token: str, resource_id: str, **kwargs) -> ChangePage:
        try:
            return self.provider.list_changes(access_token, resource_id, **kwargs)
        except SyncCursorRejected:
            raise
        except ProviderError as exc:
            raise RecoverableSyncFailure(f"Provider request failed: {exc}") from exc

    def _apply_items(
            self, db: Session, owner_id: UUID, page: ChangePage, outcome: SyncOutcome, live_keys: Optional[Set[str]],
    ) -> None:
        for item in page.items:
            try:
                event = normalize_provider_event(item)
            except EntryMalformed as exc:
                logger.warning(f"Skipping provider event for user {owner_id}: {exc}")
                outcome.skipped_entries += 1
                # Present upstream even if unreadable; never tombstone it
                if live_keys is not None and isinstance(item, dict) and item.get("id") \
                        and item.get("status") != "cancelled":
                    live_keys.add(str(item["id"]))
                continue

            if live_keys is not None and not event.is_cancelled:
                live_keys.add(event.external_key)
            _, result = self.events.upsert_with_result(db, owner_id, event)
            if result != UpsertResult.UNCHANGED:
                outcome.upserted += 1
