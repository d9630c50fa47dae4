# ===== locker/models/sync_credential.py =====
from sqlalchemy import Column, String, Integer, Text, ForeignKey, LargeBinary, UniqueConstraint, Uuid
import uuid

from locker.models.base import Base, UTCDateTime, utcnow


class SyncCredential(Base):
    __tablename__ = "sync_credentials"
    __table_args__ = (
        UniqueConstraint("user_id", "provider", name="uq_sync_credentials_user_provider"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    provider = Column(String(32), nullable=False, default="google")

    # OAuth tokens (Fernet encrypted)
    access_token_encrypted = Column(LargeBinary, nullable=True)
    refresh_token_encrypted = Column(LargeBinary, nullable=True)
    token_expires_at = Column(UTCDateTime, nullable=True)

    resource_id = Column(String(255), nullable=False, default="primary")

    # Sync position. Null sync_cursor means a full sync is needed;
    # page_cursor is set while an incremental pass is between pages.
    sync_cursor = Column(Text, nullable=True)
    page_cursor = Column(Text, nullable=True)
    cursor_version = Column(Integer, nullable=False, default=0)

    # Push-notification channel
    watch_channel_id = Column(String(255), nullable=True, index=True)
    watch_resource_id = Column(String(255), nullable=True)
    watch_channel_token = Column(String(255), nullable=True)
    watch_expires_at = Column(UTCDateTime, nullable=True)
    superseded_channel_id = Column(String(255), nullable=True)
    superseded_resource_id = Column(String(255), nullable=True)

    last_synced_at = Column(UTCDateTime, nullable=True)
    last_sync_status = Column(String(32), nullable=True)
    last_sync_error = Column(Text, nullable=True)
    revoked_at = Column(UTCDateTime, nullable=True)

    created_at = Column(UTCDateTime, default=utcnow, nullable=False)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow, nullable=False)

    @property
    def is_linked(self) -> bool:
        return self.refresh_token_encrypted is not None and self.revoked_at is None
