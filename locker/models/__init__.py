# locker/models/__init__.py
from .base import Base
from .user import User, UserRole
from .calendar_event import CalendarEvent, EventSource
from .sync_credential import SyncCredential

__all__ = [
    "Base",
    "User",
    "UserRole",
    "CalendarEvent",
    "EventSource",
    "SyncCredential",
]
