# locker/services/calendar/access_tokens.py
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional
from uuid import UUID

from locker.config.settings import Settings, get_settings
from locker.core.exceptions import CredentialRevoked, ProviderAuthError, ProviderError, RecoverableSyncFailure
from locker.db.tenant import TenantContext, TransactionGuard
from locker.services.calendar.token_store import TokenStore

logger = logging.getLogger(__name__)


@dataclass
class CredentialSnapshot:
    """Detached copy of a credential row, safe to use after the session closes."""
    id: UUID
    user_id: UUID
    resource_id: str
    sync_cursor: Optional[str]
    page_cursor: Optional[str]
    cursor_version: int
    refresh_token: Optional[str]
    access_token: Optional[str]
    token_expires_at: Optional[datetime]
    watch_channel_id: Optional[str] = None
    watch_resource_id: Optional[str] = None
    watch_expires_at: Optional[datetime] = None


class AccessTokenManager:
    """Loads credentials and refreshes access tokens lazily."""

    def __init__(self, provider, token_store: TokenStore, guard: TransactionGuard, settings: Optional[Settings] = None):
        self.provider = provider
        self.token_store = token_store
        self.guard = guard
        self.settings = settings or get_settings()

    def snapshot(self, context: TenantContext) -> Optional[CredentialSnapshot]:
        def load(db):
            credential = self.token_store.get_linked(db, context.user_id)
            if credential is None:
                return None
            return CredentialSnapshot(
                id=credential.id,
                user_id=credential.user_id,
                resource_id=credential.resource_id,
                sync_cursor=credential.sync_cursor,
                page_cursor=credential.page_cursor,
                cursor_version=credential.cursor_version,
                refresh_token=self.token_store.refresh_token(credential),
                access_token=self.token_store.access_token(credential),
                token_expires_at=credential.token_expires_at,
                watch_channel_id=credential.watch_channel_id,
                watch_resource_id=credential.watch_resource_id,
                watch_expires_at=credential.watch_expires_at,
            )

        return self.guard.with_tenant(context, load)

    def _still_valid(self, snapshot: CredentialSnapshot) -> bool:
        if not snapshot.access_token or snapshot.token_expires_at is None:
            return False
        margin = timedelta(minutes=self.settings.TOKEN_REFRESH_MARGIN_MINUTES)
        return snapshot.token_expires_at > datetime.now(timezone.utc) + margin

    def ensure(self, context: TenantContext, snapshot: CredentialSnapshot) -> str:
        """Return a usable access token, refreshing it when expired.

        Raises CredentialRevoked (after clearing the credential) when the
        refresh token is rejected, RecoverableSyncFailure on anything else.
        """
        if self._still_valid(snapshot):
            return snapshot.access_token

        try:
            refreshed = self.provider.refresh_access_token(snapshot.refresh_token)
        except ProviderAuthError as exc:
            self.guard.with_tenant(context, lambda db: self.token_store.revoke(db, snapshot.id, str(exc)))
            raise CredentialRevoked(str(exc)) from exc
        except ProviderError as exc:
            raise RecoverableSyncFailure(f"Access token refresh failed: {exc}") from exc

        self.guard.with_tenant(
            context,
            lambda db: self.token_store.store_access_token(
                db, snapshot.id, refreshed.access_token, refreshed.expires_at, refreshed.refresh_token
            ),
        )
        snapshot.access_token = refreshed.access_token
        snapshot.token_expires_at = refreshed.expires_at
        logger.info(f"Refreshed access token for user {context.user_id}")
        return refreshed.access_token
