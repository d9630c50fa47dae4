# locker/services/calendar/link_service.py
import logging
from datetime import datetime, timezone
from typing import Optional

from locker.core.exceptions import ProviderError
from locker.db.tenant import TenantContext, TransactionGuard, default_guard
from locker.services.calendar.access_tokens import AccessTokenManager
from locker.services.calendar.google_calendar_service import GoogleCalendarService
from locker.services.calendar.token_store import TokenStore

logger = logging.getLogger(__name__)


class CalendarLinkService:
    """Attach and detach a user's provider calendar."""

    def __init__(
            self,
            provider: Optional[GoogleCalendarService] = None,
            token_store: Optional[TokenStore] = None,
            guard: Optional[TransactionGuard] = None,
    ):
        self.provider = provider or GoogleCalendarService()
        self.token_store = token_store or TokenStore()
        self.guard = guard or default_guard
        self.tokens = AccessTokenManager(self.provider, self.token_store, self.guard)

    def link(
            self,
            context: TenantContext,
            refresh_token: str,
            access_token: Optional[str] = None,
            expires_at: Optional[int] = None,
            calendar_id: str = "primary",
    ) -> None:
        token_expires_at = datetime.fromtimestamp(expires_at, tz=timezone.utc) if expires_at else None
        self.guard.with_tenant(
            context,
            lambda db: self.token_store.link(
                db, context.user_id, refresh_token, access_token, token_expires_at, calendar_id
            ),
        )

    def unlink(self, context: TenantContext) -> bool:
        """Stop the push channel (best effort) and clear the credential.

        Returns False when nothing was linked.
        """
        snapshot = self.tokens.snapshot(context)
        if snapshot is None:
            return False

        if snapshot.watch_channel_id and snapshot.watch_resource_id and snapshot.access_token:
            try:
                self.provider.stop_channel(snapshot.access_token, snapshot.watch_channel_id, snapshot.watch_resource_id)
            except ProviderError as exc:
                logger.warning(f"Could not stop channel {snapshot.watch_channel_id} on unlink: {exc}")

        self.guard.with_tenant(context, lambda db: self.token_store.revoke(db, snapshot.id, "unlinked by user"))
        return True
