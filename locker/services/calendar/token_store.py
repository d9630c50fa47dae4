# locker/services/calendar/token_store.py
"""Per-user provider credentials, sync position and watch-channel metadata."""
import logging
from datetime import datetime
from typing import List, Optional
from uuid import UUID

from sqlalchemy import or_, update
from sqlalchemy.orm import Session

from locker.core.exceptions import RecoverableSyncFailure
from locker.models.base import utcnow
from locker.models.sync_credential import SyncCredential
from locker.utils.encryption import decrypt_token, encrypt_token

logger = logging.getLogger(__name__)

GOOGLE = "google"


class TokenStore:
    """All methods expect a session opened through the transaction guard."""

    def __init__(self, provider: str = GOOGLE):
        self.provider = provider

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def get(self, db: Session, user_id: UUID) -> Optional[SyncCredential]:
        return (
            db.query(SyncCredential)
            .filter(SyncCredential.user_id == user_id, SyncCredential.provider == self.provider)
            .one_or_none()
        )

    def get_linked(self, db: Session, user_id: UUID) -> Optional[SyncCredential]:
        credential = self.get(db, user_id)
        if credential is None or not credential.is_linked:
            return None
        return credential

    def find_by_channel(self, db: Session, channel_id: str) -> List[SyncCredential]:
        return (
            db.query(SyncCredential)
            .filter(
                SyncCredential.provider == self.provider,
                SyncCredential.watch_channel_id == channel_id,
            )
            .all()
        )

    def find_expiring_watches(self, db: Session, before: datetime) -> List[SyncCredential]:
        """Linked credentials with no channel or a channel expiring before the cutoff."""
        return (
            db.query(SyncCredential)
            .filter(
                SyncCredential.provider == self.provider,
                SyncCredential.refresh_token_encrypted.is_not(None),
                SyncCredential.revoked_at.is_(None),
                or_(SyncCredential.watch_expires_at.is_(None), SyncCredential.watch_expires_at < before),
            )
            .all()
        )

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    def link(
            self,
            db: Session,
            user_id: UUID,
            refresh_token: str,
            access_token: Optional[str] = None,
            token_expires_at: Optional[datetime] = None,
            resource_id: str = "primary",
    ) -> SyncCredential:
        """Store tokens handed over by the identity provider."""
        credential = self.get(db, user_id)
        if credential is None:
            credential = SyncCredential(user_id=user_id, provider=self.provider, cursor_version=0)
            db.add(credential)

        if credential.resource_id != resource_id or credential.revoked_at is not None:
            credential.sync_cursor = None
            credential.page_cursor = None
        credential.resource_id = resource_id
        credential.refresh_token_encrypted = encrypt_token(refresh_token)
        credential.access_token_encrypted = encrypt_token(access_token)
        credential.token_expires_at = token_expires_at
        credential.revoked_at = None
        db.flush()
        logger.info(f"Linked {self.provider} calendar {resource_id} for user {user_id}")
        return credential

    @staticmethod
    def refresh_token(credential: SyncCredential) -> Optional[str]:
        return decrypt_token(credential.refresh_token_encrypted)

    @staticmethod
    def access_token(credential: SyncCredential) -> Optional[str]:
        return decrypt_token(credential.access_token_encrypted)

    def store_access_token(
            self, db: Session, credential_id: UUID, access_token: str, expires_at: Optional[datetime],
            refresh_token: Optional[str] = None,
    ) -> None:
        values = {
            "access_token_encrypted": encrypt_token(access_token),
            "token_expires_at": expires_at,
            "updated_at": utcnow(),
        }
        # Providers may rotate the refresh token on use
        if refresh_token:
            values["refresh_token_encrypted"] = encrypt_token(refresh_token)
        db.execute(
            update(SyncCredential)
            .where(SyncCredential.id == credential_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )

    def revoke(self, db: Session, credential_id: UUID, reason: str) -> None:
        """Clear tokens, sync position and subscription; the user must re-link."""
        db.execute(
            update(SyncCredential)
            .where(SyncCredential.id == credential_id)
            .values(
                access_token_encrypted=None,
                refresh_token_encrypted=None,
                token_expires_at=None,
                sync_cursor=None,
                page_cursor=None,
                watch_channel_id=None,
                watch_resource_id=None,
                watch_channel_token=None,
                watch_expires_at=None,
                revoked_at=utcnow(),
                last_sync_status="credential_revoked",
                last_sync_error=reason,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        logger.warning(f"Revoked {self.provider} credential {credential_id}: {reason}")

    # ------------------------------------------------------------------
    # Sync position
    # ------------------------------------------------------------------

    def advance_cursor(
            self,
            db: Session,
            credential_id: UUID,
            expected_version: int,
            sync_cursor: Optional[str],
            page_cursor: Optional[str],
    ) -> int:
        """Compare-and-set the cursor pair; returns the new version.

        A concurrent pass that already moved the cursor makes the update
        match no row, and this pass gives up instead of overwriting it.
        """
        result = db.execute(
            update(SyncCredential)
            .where(
                SyncCredential.id == credential_id,
                SyncCredential.cursor_version == expected_version,
            )
            .values(
                sync_cursor=sync_cursor,
                page_cursor=page_cursor,
                cursor_version=expected_version + 1,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise RecoverableSyncFailure(
                f"sync cursor of credential {credential_id} moved concurrently"
            )
        return expected_version + 1

    def record_outcome(self, db: Session, credential_id: UUID, status: str, error: Optional[str] = None) -> None:
        values = {"last_sync_status": status, "last_sync_error": error}
        if error is None:
            values["last_synced_at"] = utcnow()
        db.execute(
            update(SyncCredential)
            .where(SyncCredential.id == credential_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )

    # ------------------------------------------------------------------
    # Watch channels
    # ------------------------------------------------------------------

    def set_watch(
            self,
            db: Session,
            credential: SyncCredential,
            channel_id: str,
            resource_id: str,
            channel_token: str,
            expires_at: datetime,
    ) -> None:
        """Install a new channel; the previous one is kept as superseded."""
        if credential.watch_channel_id and credential.watch_channel_id != channel_id:
            credential.superseded_channel_id = credential.watch_channel_id
            credential.superseded_resource_id = credential.watch_resource_id
        credential.watch_channel_id = channel_id
        credential.watch_resource_id = resource_id
        credential.watch_channel_token = channel_token
        credential.watch_expires_at = expires_at
        db.flush()

    def clear_superseded(self, db: Session, credential_id: UUID) -> None:
        db.execute(
            update(SyncCredential)
            .where(SyncCredential.id == credential_id)
            .values(superseded_channel_id=None, superseded_resource_id=None)
            .execution_options(synchronize_session=False)
        )

    def clear_expired_watches(self, db: Session, now: datetime) -> int:
        result = db.execute(
            update(SyncCredential)
            .where(
                SyncCredential.provider == self.provider,
                SyncCredential.watch_expires_at.is_not(None),
                SyncCredential.watch_expires_at <= now,
            )
            .values(
                watch_channel_id=None,
                watch_resource_id=None,
                watch_channel_token=None,
                watch_expires_at=None,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0
