"""Repository tests against SQLite: upsert semantics and tombstoning."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from conftest import cancelled_event, google_event
from locker.models.calendar_event import CalendarEvent
from locker.services.calendar.event_repository import EventRepository, UpsertResult
from locker.services.calendar.normalizer import normalize_provider_event

pytestmark = pytest.mark.unit

T0 = datetime(2026, 10, 18, 9, 0, tzinfo=timezone.utc)


@pytest.fixture
def repo():
    return EventRepository()


@pytest.fixture
def owner(make_user):
    return make_user()


def _provider(payload):
    return normalize_provider_event(payload)


def _rows(db, owner_id):
    db.expire_all()
    return db.query(CalendarEvent).filter(CalendarEvent.owner_id == owner_id).all()


def test_first_write_inserts(repo, db, owner):
    row, result = repo.upsert_with_result(db, owner, _provider(google_event("e1", T0)))
    db.commit()

    assert result == UpsertResult.INSERTED
    assert row.created_at == row.updated_at
    assert len(_rows(db, owner)) == 1


def test_identical_replay_writes_nothing(repo, db, owner):
    repo.upsert(db, owner, _provider(google_event("e1", T0)))
    db.commit()

    row, result = repo.upsert_with_result(db, owner, _provider(google_event("e1", T0)))

    assert result == UpsertResult.UNCHANGED
    assert row.created_at == row.updated_at


def test_newer_modification_wins_regardless_of_arrival_order(repo, db, owner):
    older = _provider(google_event("e1", T0, summary="Practice"))
    newer = _provider(google_event("e1", T0 + timedelta(minutes=5), summary="Practice (moved)"))

    repo.upsert(db, owner, newer)
    _, result = repo.upsert_with_result(db, owner, older)
    db.commit()

    assert result == UpsertResult.UNCHANGED
    [row] = _rows(db, owner)
    assert row.title == "Practice (moved)"
    assert row.source_updated_at == T0 + timedelta(minutes=5)


def test_same_timestamp_does_not_overwrite(repo, db, owner):
    repo.upsert(db, owner, _provider(google_event("e1", T0, summary="First")))
    _, result = repo.upsert_with_result(db, owner, _provider(google_event("e1", T0, summary="Second")))

    assert result == UpsertResult.UNCHANGED


def test_cancellation_tombstones_existing_row(repo, db, owner):
    repo.upsert(db, owner, _provider(google_event("e1", T0)))
    _, result = repo.upsert_with_result(db, owner, _provider(cancelled_event("e1")))
    db.commit()

    assert result == UpsertResult.UPDATED
    [row] = _rows(db, owner)
    assert row.is_cancelled is True
    assert row.title == "Practice"


def test_cancellation_of_unknown_event_stores_tombstone(repo, db, owner):
    _, result = repo.upsert_with_result(db, owner, _provider(cancelled_event("ghost")))
    db.commit()

    assert result == UpsertResult.INSERTED
    [row] = _rows(db, owner)
    assert row.is_cancelled is True
    assert repo.list_for_owner(db, owner) == []


def test_tombstone_missing_only_touches_absent_rows_of_that_source(repo, db, owner, make_user):
    other = make_user()
    for event_id in ("keep", "drop"):
        repo.upsert(db, owner, _provider(google_event(event_id, T0)))
    repo.upsert(db, other, _provider(google_event("drop", T0)))
    db.commit()

    count = repo.tombstone_missing(db, owner, "provider", {"keep"})
    db.commit()

    assert count == 1
    state = {r.external_key: r.is_cancelled for r in _rows(db, owner)}
    assert state == {"keep": False, "drop": True}
    assert [r.is_cancelled for r in _rows(db, other)] == [False]


def test_tombstone_missing_with_empty_live_set_cancels_everything(repo, db, owner):
    repo.upsert(db, owner, _provider(google_event("a", T0)))
    repo.upsert(db, owner, _provider(google_event("b", T0)))
    db.commit()

    assert repo.tombstone_missing(db, owner, "provider", set()) == 2


def test_list_for_owner_orders_by_start_and_hides_cancelled(repo, db, owner):
    late = T0 + timedelta(days=2)
    repo.upsert(db, owner, _provider(google_event("late", T0, start=late)))
    repo.upsert(db, owner, _provider(google_event("early", T0, start=T0)))
    repo.upsert(db, owner, _provider(cancelled_event("gone")))
    db.commit()

    assert [r.external_key for r in repo.list_for_owner(db, owner)] == ["early", "late"]
    assert len(repo.list_for_owner(db, owner, include_cancelled=True)) == 3
