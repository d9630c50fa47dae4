# locker/services/calendar/watch_service.py
"""Push-notification channel lifecycle: create, renew, supersede, expire."""
import logging
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional
from uuid import UUID

from locker.config.settings import Settings, get_settings
from locker.core.exceptions import CalendarSyncError, ProviderError, RecoverableSyncFailure
from locker.db.tenant import TenantContext, TransactionGuard, default_guard
from locker.services.calendar.access_tokens import AccessTokenManager
from locker.services.calendar.google_calendar_service import GoogleCalendarService
from locker.services.calendar.token_store import TokenStore
from locker.services.user.user_service import UserService

logger = logging.getLogger(__name__)

WEBHOOK_PATH = "/webhooks/calendar/google"


@dataclass
class WatchState:
    user_id: UUID
    channel_id: Optional[str]
    expires_at: Optional[datetime]
    renewed: bool = False


class WatchChannelService:
    def __init__(
            self,
            provider: Optional[GoogleCalendarService] = None,
            token_store: Optional[TokenStore] = None,
            guard: Optional[TransactionGuard] = None,
            settings: Optional[Settings] = None,
    ):
        self.settings = settings or get_settings()
        self.provider = provider or GoogleCalendarService(self.settings)
        self.token_store = token_store or TokenStore()
        self.guard = guard or default_guard
        self.tokens = AccessTokenManager(self.provider, self.token_store, self.guard, self.settings)

    @property
    def callback_url(self) -> str:
        return self.settings.PUBLIC_BASE_URL.rstrip("/") + WEBHOOK_PATH

    def _context(self, user_id: UUID) -> Optional[TenantContext]:
        return self.guard.with_system_access(lambda db: UserService.tenant_context(db, user_id))

    def ensure_watch(self, user_id: UUID) -> Optional[WatchState]:
        """Make sure the user has a channel that outlives the renewal threshold.

        Returns None when the user has no linked credential.
        """
        context = self._context(user_id)
        if context is None:
            return None
        snapshot = self.tokens.snapshot(context)
        if snapshot is None:
            return None

        now = datetime.now(timezone.utc)
        threshold = now + timedelta(minutes=self.settings.WATCH_RENEWAL_THRESHOLD_MINUTES)
        if snapshot.watch_channel_id and snapshot.watch_expires_at and snapshot.watch_expires_at > threshold:
            return WatchState(user_id, snapshot.watch_channel_id, snapshot.watch_expires_at)

        access_token = self.tokens.ensure(context, snapshot)
        channel_id = str(uuid.uuid4())
        channel_token = secrets.token_urlsafe(32)
        try:
            channel = self.provider.watch(
                access_token,
                snapshot.resource_id,
                channel_id=channel_id,
                address=self.callback_url,
                channel_token=channel_token,
                ttl_seconds=self.settings.WATCH_TTL_SECONDS,
            )
        except ProviderError as exc:
            raise RecoverableSyncFailure(f"Watch request failed for user {user_id}: {exc}") from exc

        def store(db):
            credential = self.token_store.get_linked(db, user_id)
            if credential is None:
                return None
            self.token_store.set_watch(
                db, credential, channel.channel_id, channel.resource_id, channel_token, channel.expires_at
            )
            return credential.superseded_channel_id, credential.superseded_resource_id

        superseded = self.guard.with_tenant(context, store)
        logger.info(f"Watch channel {channel.channel_id} active for user {user_id} until {channel.expires_at}")

        if superseded and superseded[0]:
            self._stop_superseded(context, snapshot.id, access_token, *superseded)

        return WatchState(user_id, channel.channel_id, channel.expires_at, renewed=True)

    def _stop_superseded(
            self, context: TenantContext, credential_id: UUID, access_token: str,
            channel_id: str, resource_id: Optional[str],
    ) -> None:
        # Best effort: an unreferenced channel is ignored by the receiver anyway
        if not resource_id:
            return
        try:
            self.provider.stop_channel(access_token, channel_id, resource_id)
        except ProviderError as exc:
            logger.warning(f"Could not stop superseded channel {channel_id}: {exc}")
            return
        self.guard.with_tenant(context, lambda db: self.token_store.clear_superseded(db, credential_id))

    def revoke_expired_watch_channels(self) -> int:
        """Clear subscription fields whose expiry has passed. Safe to repeat."""
        now = datetime.now(timezone.utc)
        cleared = self.guard.with_system_access(lambda db: self.token_store.clear_expired_watches(db, now))
        if cleared:
            logger.info(f"Cleared {cleared} expired watch channels")
        return cleared

    def renew_expiring_watch_channels(self) -> int:
        """Run ensure_watch for every linked user whose channel is near expiry."""
        cutoff = datetime.now(timezone.utc) + timedelta(minutes=self.settings.WATCH_RENEWAL_THRESHOLD_MINUTES)
        user_ids = self.guard.with_system_access(
            lambda db: [c.user_id for c in self.token_store.find_expiring_watches(db, cutoff)]
        )
        renewed = 0
        for user_id in user_ids:
            try:
                state = self.ensure_watch(user_id)
            except CalendarSyncError as exc:
                logger.error(f"Failed to renew watch channel for user {user_id}: {exc}")
                continue
            if state is not None and state.renewed:
                renewed += 1
        return renewed
