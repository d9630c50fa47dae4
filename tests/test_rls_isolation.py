"""Row-level isolation on a real PostgreSQL.

The migration is applied to a throwaway container and the tests connect as
a non-superuser role, since superusers bypass row-level security.
"""

from __future__ import annotations

import importlib.util
import shutil
from datetime import datetime, timezone
from pathlib import Path
from uuid import uuid4

import pytest
from sqlalchemy import create_engine, text
from sqlalchemy.exc import DBAPIError
from sqlalchemy.orm import sessionmaker

from locker.db.tenant import TenantContext, TransactionGuard
from locker.models.calendar_event import CalendarEvent
from locker.models.sync_credential import SyncCredential
from locker.models.user import User, UserRole

docker_available = shutil.which("docker") is not None

pytestmark = [
    pytest.mark.integration,
    pytest.mark.skipif(not docker_available, reason="Docker not available"),
]

MIGRATION = Path(__file__).resolve().parents[1] / "alembic" / "versions" / "5c2f8a91d4e7_calendar_sync_tables.py"
APP_ROLE = "locker_app"
APP_PASSWORD = "locker_app_pw"


def _apply_migration(engine) -> None:
    from alembic.migration import MigrationContext
    from alembic.operations import Operations

    spec = importlib.util.spec_from_file_location("calendar_sync_tables", MIGRATION)
    migration = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(migration)

    with engine.begin() as conn:
        context = MigrationContext.configure(conn)
        with Operations.context(context):
            migration.upgrade()


@pytest.fixture(scope="module")
def app_engine():
    from testcontainers.postgres import PostgresContainer

    with PostgresContainer("postgres:16", driver="psycopg2") as pg:
        admin = create_engine(pg.get_connection_url())
        _apply_migration(admin)
        with admin.begin() as conn:
            conn.execute(text(f"CREATE ROLE {APP_ROLE} LOGIN PASSWORD '{APP_PASSWORD}'"))
            conn.execute(text(f"GRANT SELECT, INSERT, UPDATE, DELETE ON ALL TABLES IN SCHEMA public TO {APP_ROLE}"))
        admin.dispose()

        url = pg.get_connection_url().replace(f"{pg.username}:{pg.password}@", f"{APP_ROLE}:{APP_PASSWORD}@")
        engine = create_engine(url)
        yield engine
        engine.dispose()


@pytest.fixture(scope="module")
def pg_guard(app_engine):
    return TransactionGuard(sessionmaker(bind=app_engine, autoflush=False))


@pytest.fixture(scope="module")
def world(pg_guard):
    """Two athletes on one team, a coach on that team and an outsider."""
    team = uuid4()
    people = {
        "alice": User(id=uuid4(), email="alice@x.example", role=UserRole.ATHLETE, team_id=team),
        "bob": User(id=uuid4(), email="bob@x.example", role=UserRole.ATHLETE, team_id=team),
        "coach": User(id=uuid4(), email="coach@x.example", role=UserRole.COACH, team_id=team),
        "eve": User(id=uuid4(), email="eve@x.example", role=UserRole.ATHLETE, team_id=uuid4()),
    }
    now = datetime.now(timezone.utc)

    def seed(db):
        db.add_all(people.values())
        db.flush()
        for name in ("alice", "bob", "eve"):
            user = people[name]
            db.add(CalendarEvent(
                owner_id=user.id, source="provider", external_key=f"{name}-event",
                title=f"{name} practice", start_at=now, end_at=now, created_at=now, updated_at=now,
            ))
            db.add(SyncCredential(user_id=user.id, provider="google", resource_id="primary", cursor_version=0,
                                  created_at=now, updated_at=now))
        return {name: (u.id, u.role, u.team_id) for name, u in people.items()}

    snapshot = pg_guard.with_system_access(seed)
    return {name: TenantContext(user_id=uid, role=role, team_id=tid) for name, (uid, role, tid) in snapshot.items()}


def _visible_events(guard, context):
    return guard.with_tenant(context, lambda db: sorted(e.external_key for e in db.query(CalendarEvent).all()))


def test_athlete_sees_only_own_events(pg_guard, world):
    assert _visible_events(pg_guard, world["alice"]) == ["alice-event"]
    assert _visible_events(pg_guard, world["eve"]) == ["eve-event"]


def test_coach_reads_team_athletes_only(pg_guard, world):
    assert _visible_events(pg_guard, world["coach"]) == ["alice-event", "bob-event"]


def test_credentials_are_private_even_to_coaches(pg_guard, world):
    visible = pg_guard.with_tenant(world["coach"], lambda db: db.query(SyncCredential).count())
    assert visible == 0


def test_writing_another_users_row_is_refused(pg_guard, world):
    now = datetime.now(timezone.utc)

    def forge(db):
        db.add(CalendarEvent(
            owner_id=world["bob"].user_id, source="provider", external_key="forged",
            title="forged", created_at=now, updated_at=now,
        ))
        db.flush()

    with pytest.raises(DBAPIError):
        pg_guard.with_tenant(world["alice"], forge)


def test_settings_do_not_leak_past_the_transaction(pg_guard, world, app_engine):
    pg_guard.with_tenant(world["alice"], lambda db: None)

    with app_engine.connect() as conn:
        assert conn.execute(text("SELECT count(*) FROM calendar_events")).scalar() == 0


def test_system_scope_sees_everything(pg_guard, world):
    count = pg_guard.with_system_access(lambda db: db.query(CalendarEvent).count())
    assert count == 3
