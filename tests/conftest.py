"""Shared fixtures: SQLite-backed guard, fake provider, fake lock, factories.

Tokens are encrypted with a throwaway Fernet key set before any locker
module reads the settings.
"""

from __future__ import annotations

import os
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple
from uuid import UUID, uuid4

from cryptography.fernet import Fernet

os.environ.setdefault("CALENDAR_ENCRYPTION_KEY", Fernet.generate_key().decode())

import pytest  # noqa: E402
from sqlalchemy import create_engine, event  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from locker.config.settings import Settings  # noqa: E402
from locker.db.tenant import TransactionGuard  # noqa: E402
from locker.models import Base, SyncCredential, User, UserRole  # noqa: E402
from locker.services.calendar.google_calendar_service import (  # noqa: E402
    ChangePage,
    RefreshedToken,
    WatchChannel,
)
from locker.services.calendar.token_store import TokenStore  # noqa: E402


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )

    # pysqlite defers BEGIN on its own; let SQLAlchemy own the transaction so
    # SAVEPOINT and rollback behave as they do on PostgreSQL.
    @event.listens_for(engine, "connect")
    def _connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin(conn):
        conn.exec_driver_sql("BEGIN")

    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False)


class RecordingGuard(TransactionGuard):
    """TransactionGuard whose tenant settings are recorded instead of sent.

    SQLite has no set_config; the scope, commit and rollback behaviour is
    the real one.
    """

    def __init__(self, session_factory):
        super().__init__(session_factory)
        self.applied: List[Dict[str, str]] = []

    def apply_settings(self, db, values):
        self.applied.append(dict(values))


@pytest.fixture
def guard(session_factory) -> RecordingGuard:
    return RecordingGuard(session_factory)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


@pytest.fixture
def settings() -> Settings:
    return Settings(
        CALENDAR_ENCRYPTION_KEY=os.environ["CALENDAR_ENCRYPTION_KEY"],
        PUBLIC_BASE_URL="https://locker.example.com",
        SYNC_MAX_ATTEMPTS=3,
        SYNC_BACKOFF_MIN_SECONDS=0.0,
        SYNC_BACKOFF_MAX_SECONDS=0.0,
        WEBHOOK_FANOUT_DEADLINE_SECONDS=2.0,
        WEBHOOK_FANOUT_WORKERS=2,
        FEED_MAX_BYTES=64 * 1024,
    )


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class FakeLock:
    """Stand-in for UserSyncLock."""

    def __init__(self, acquired: bool = True) -> None:
        self.acquired = acquired
        self.held: List[UUID] = []

    @contextmanager
    def hold(self, user_id):
        self.held.append(user_id)
        yield self.acquired


@dataclass
class FakeProvider:
    """Scripted GoogleCalendarService.

    ``responses`` maps (sync_token, page_token) to a ChangePage, an exception
    instance, or a callable returning one of those.
    """

    responses: Dict[Tuple[Optional[str], Optional[str]], Any] = field(default_factory=dict)
    calls: List[Dict[str, Any]] = field(default_factory=list)
    refresh_result: Any = None
    watch_calls: List[Dict[str, Any]] = field(default_factory=list)
    stopped: List[Tuple[str, str]] = field(default_factory=list)
    stop_error: Optional[Exception] = None
    inserted: List[Tuple[str, Dict[str, Any]]] = field(default_factory=list)
    insert_error: Optional[Exception] = None

    def list_changes(self, access_token, resource_id, sync_token=None, page_token=None,
                     time_min=None, time_max=None):
        self.calls.append({
            "access_token": access_token,
            "resource_id": resource_id,
            "sync_token": sync_token,
            "page_token": page_token,
            "time_min": time_min,
            "time_max": time_max,
        })
        response = self.responses[(sync_token, page_token)]
        if callable(response):
            response = response()
        if isinstance(response, Exception):
            raise response
        return response

    def refresh_access_token(self, refresh_token):
        if isinstance(self.refresh_result, Exception):
            raise self.refresh_result
        if self.refresh_result is None:
            return RefreshedToken(
                access_token="refreshed-token",
                expires_at=datetime.now(timezone.utc) + timedelta(hours=1),
            )
        return self.refresh_result

    def watch(self, access_token, resource_id, channel_id, address, channel_token, ttl_seconds):
        self.watch_calls.append({
            "channel_id": channel_id,
            "address": address,
            "channel_token": channel_token,
            "ttl_seconds": ttl_seconds,
        })
        return WatchChannel(
            channel_id=channel_id,
            resource_id=f"res-{len(self.watch_calls)}",
            expires_at=datetime.now(timezone.utc) + timedelta(seconds=ttl_seconds),
        )

    def stop_channel(self, access_token, channel_id, resource_id):
        if self.stop_error is not None:
            raise self.stop_error
        self.stopped.append((channel_id, resource_id))

    def insert_event(self, access_token, resource_id, body):
        if self.insert_error is not None:
            raise self.insert_error
        self.inserted.append((access_token, body))
        return {
            "id": f"practice-{len(self.inserted)}",
            "status": "confirmed",
            "summary": body["summary"],
            "start": body["start"],
            "end": body["end"],
            "updated": datetime.now(timezone.utc).isoformat(),
        }


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def lock() -> FakeLock:
    return FakeLock()


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------


def google_event(event_id: str, updated: datetime, summary: str = "Practice",
                 start: Optional[datetime] = None, minutes: int = 60, status: str = "confirmed") -> dict:
    start = start or datetime(2026, 10, 20, 16, 0, tzinfo=timezone.utc)
    return {
        "id": event_id,
        "status": status,
        "summary": summary,
        "start": {"dateTime": start.isoformat()},
        "end": {"dateTime": (start + timedelta(minutes=minutes)).isoformat()},
        "updated": updated.isoformat(),
    }


def cancelled_event(event_id: str) -> dict:
    return {"id": event_id, "status": "cancelled"}


def terminal(items, sync_token: str) -> ChangePage:
    return ChangePage(items=list(items), next_sync_token=sync_token)


def continued(items, page_token: str) -> ChangePage:
    return ChangePage(items=list(items), next_page_token=page_token)


@pytest.fixture
def make_user(session_factory):
    def _make(role: UserRole = UserRole.ATHLETE, team_id: Optional[UUID] = None, email: Optional[str] = None) -> UUID:
        session = session_factory()
        try:
            user = User(
                id=uuid4(),
                email=email or f"{uuid4().hex[:10]}@example.com",
                full_name="Test User",
                role=role,
                team_id=team_id,
            )
            session.add(user)
            session.commit()
            return user.id
        finally:
            session.close()

    return _make


@pytest.fixture
def make_credential(session_factory):
    def _make(
            user_id: UUID,
            sync_cursor: Optional[str] = None,
            page_cursor: Optional[str] = None,
            access_token: Optional[str] = "valid-token",
            expires_in: timedelta = timedelta(hours=1),
            **fields,
    ) -> UUID:
        session = session_factory()
        try:
            credential = TokenStore().link(
                session,
                user_id,
                refresh_token="refresh-token",
                access_token=access_token,
                token_expires_at=datetime.now(timezone.utc) + expires_in,
            )
            credential.sync_cursor = sync_cursor
            credential.page_cursor = page_cursor
            for name, value in fields.items():
                setattr(credential, name, value)
            session.commit()
            return credential.id
        finally:
            session.close()

    return _make


@pytest.fixture
def load_credential(session_factory):
    def _load(credential_id: UUID) -> SyncCredential:
        session = session_factory()
        try:
            credential = session.get(SyncCredential, credential_id)
            session.expunge(credential)
            return credential
        finally:
            session.close()

    return _load
