# ===== locker/models/calendar_event.py =====
from sqlalchemy import Column, String, Boolean, Text, ForeignKey, JSON, Index, UniqueConstraint, Uuid
import uuid
import enum

from locker.models.base import Base, UTCDateTime, utcnow


class EventSource(str, enum.Enum):
    PROVIDER = "provider"
    FEED = "feed"


class CalendarEvent(Base):
    """Normalized calendar entry, one row per (owner, source, external key)."""
    __tablename__ = "calendar_events"
    __table_args__ = (
        UniqueConstraint("owner_id", "source", "external_key", name="uq_calendar_events_owner_source_key"),
        Index("idx_calendar_events_owner_start", "owner_id", "start_at"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    owner_id = Column(Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)

    # Provenance
    source = Column(String(16), nullable=False)  # 'provider' | 'feed'
    external_key = Column(String(1024), nullable=False)
    feed_uid = Column(String(1024), nullable=True)
    feed_start = Column(UTCDateTime, nullable=True)

    title = Column(String(1024), nullable=False)
    description = Column(Text, nullable=True)
    location = Column(String(1024), nullable=True)
    start_at = Column(UTCDateTime, nullable=True)
    end_at = Column(UTCDateTime, nullable=True)

    source_updated_at = Column(UTCDateTime, nullable=True)
    is_cancelled = Column(Boolean, default=False, nullable=False)
    raw = Column(JSON, nullable=True)

    # Both stamps are written by the application; equal means never updated
    created_at = Column(UTCDateTime, default=utcnow, nullable=False)
    updated_at = Column(UTCDateTime, default=utcnow, nullable=False)

    def __repr__(self):
        return f"<CalendarEvent {self.source}:{self.external_key} owner={self.owner_id}>"
