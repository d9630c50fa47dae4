"""Unit tests for locker.services.calendar.normalizer."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from icalendar import Calendar

from locker.core.exceptions import EntryMalformed
from locker.services.calendar.normalizer import (
    feed_external_key,
    normalize_feed_occurrence,
    normalize_provider_event,
)

pytestmark = pytest.mark.unit

UPDATED = "2026-10-18T09:30:00Z"


def _vevent(body: str):
    ics = "BEGIN:VCALENDAR\r\nVERSION:2.0\r\nPRODID:-//test//EN\r\n" + body + "END:VCALENDAR\r\n"
    return next(iter(Calendar.from_ical(ics).walk("VEVENT")))


# ---------------------------------------------------------------------------
# Provider events
# ---------------------------------------------------------------------------


class TestProviderEvents:
    def test_timed_event_is_converted_to_utc(self):
        event = normalize_provider_event({
            "id": "evt-1",
            "status": "confirmed",
            "summary": "Film session",
            "location": "Room 4",
            "start": {"dateTime": "2026-10-20T10:00:00-04:00"},
            "end": {"dateTime": "2026-10-20T11:30:00-04:00"},
            "updated": UPDATED,
        })

        assert event.source == "provider"
        assert event.external_key == "evt-1"
        assert event.title == "Film session"
        assert event.location == "Room 4"
        assert event.start_at == datetime(2026, 10, 20, 14, 0, tzinfo=timezone.utc)
        assert event.end_at == datetime(2026, 10, 20, 15, 30, tzinfo=timezone.utc)
        assert event.source_updated_at == datetime(2026, 10, 18, 9, 30, tzinfo=timezone.utc)
        assert event.is_cancelled is False

    def test_all_day_event_starts_at_midnight_utc(self):
        event = normalize_provider_event({
            "id": "evt-2",
            "start": {"date": "2026-10-21"},
            "end": {"date": "2026-10-22"},
            "updated": UPDATED,
        })

        assert event.start_at == datetime(2026, 10, 21, tzinfo=timezone.utc)
        assert event.end_at == datetime(2026, 10, 22, tzinfo=timezone.utc)

    def test_missing_summary_gets_placeholder_title(self):
        event = normalize_provider_event({
            "id": "evt-3",
            "start": {"dateTime": "2026-10-20T10:00:00Z"},
            "end": {"dateTime": "2026-10-20T11:00:00Z"},
            "updated": UPDATED,
        })
        assert event.title == "Untitled Event"

    def test_overlong_summary_is_malformed(self):
        with pytest.raises(EntryMalformed, match="title longer than"):
            normalize_provider_event({
                "id": "evt-4",
                "summary": "x" * 1025,
                "start": {"dateTime": "2026-10-20T10:00:00Z"},
                "end": {"dateTime": "2026-10-20T11:00:00Z"},
                "updated": UPDATED,
            })

    def test_cancelled_event_is_a_tombstone_carrying_only_the_id(self):
        event = normalize_provider_event({"id": "evt-4", "status": "cancelled"})

        assert event.is_cancelled is True
        assert event.external_key == "evt-4"
        assert event.start_at is None

    @pytest.mark.parametrize(
        "payload",
        [
            {"status": "confirmed", "start": {"dateTime": "2026-10-20T10:00:00Z"},
             "end": {"dateTime": "2026-10-20T11:00:00Z"}, "updated": UPDATED},
            {"id": "no-start", "end": {"dateTime": "2026-10-20T11:00:00Z"}, "updated": UPDATED},
            {"id": "bad-date", "start": {"dateTime": "next tuesday"},
             "end": {"dateTime": "2026-10-20T11:00:00Z"}, "updated": UPDATED},
            {"id": "both-forms", "start": {"date": "2026-10-20", "dateTime": "2026-10-20T10:00:00Z"},
             "end": {"date": "2026-10-21"}, "updated": UPDATED},
            {"id": "backwards", "start": {"dateTime": "2026-10-20T11:00:00Z"},
             "end": {"dateTime": "2026-10-20T10:00:00Z"}, "updated": UPDATED},
            {"id": "no-updated", "start": {"dateTime": "2026-10-20T10:00:00Z"},
             "end": {"dateTime": "2026-10-20T11:00:00Z"}},
            "not-an-object",
        ],
        ids=["missing-id", "missing-start", "bad-datetime", "two-time-forms", "ends-before-start",
             "missing-updated", "not-a-dict"],
    )
    def test_malformed_payloads_raise_entry_malformed(self, payload):
        with pytest.raises(EntryMalformed):
            normalize_provider_event(payload)


# ---------------------------------------------------------------------------
# Feed occurrences
# ---------------------------------------------------------------------------


class TestFeedOccurrences:
    def test_occurrence_is_keyed_by_uid_and_start(self):
        component = _vevent(
            "BEGIN:VEVENT\r\n"
            "UID:lift-123@school.example\r\n"
            "SUMMARY:Weight room\r\n"
            "DTSTART:20261020T130000Z\r\n"
            "DTEND:20261020T140000Z\r\n"
            "LAST-MODIFIED:20261001T080000Z\r\n"
            "END:VEVENT\r\n"
        )

        event = normalize_feed_occurrence(component)
        start = datetime(2026, 10, 20, 13, 0, tzinfo=timezone.utc)

        assert event.source == "feed"
        assert event.feed_uid == "lift-123@school.example"
        assert event.feed_start == start
        assert event.external_key == feed_external_key("lift-123@school.example", start)
        assert event.end_at == start + timedelta(hours=1)
        assert event.source_updated_at == datetime(2026, 10, 1, 8, 0, tzinfo=timezone.utc)
        assert "BEGIN:VEVENT" in event.raw["ical"]

    def test_floating_time_is_read_as_utc(self):
        event = normalize_feed_occurrence(_vevent(
            "BEGIN:VEVENT\r\nUID:f1\r\nDTSTART:20261020T090000\r\nEND:VEVENT\r\n"
        ))
        assert event.start_at == datetime(2026, 10, 20, 9, 0, tzinfo=timezone.utc)
        assert event.end_at == event.start_at

    def test_all_day_occurrence_without_end_lasts_one_day(self):
        event = normalize_feed_occurrence(_vevent(
            "BEGIN:VEVENT\r\nUID:d1\r\nDTSTART;VALUE=DATE:20261025\r\nEND:VEVENT\r\n"
        ))
        assert event.start_at == datetime(2026, 10, 25, tzinfo=timezone.utc)
        assert event.end_at == datetime(2026, 10, 26, tzinfo=timezone.utc)

    def test_duration_is_used_when_dtend_is_absent(self):
        event = normalize_feed_occurrence(_vevent(
            "BEGIN:VEVENT\r\nUID:d2\r\nDTSTART:20261020T090000Z\r\nDURATION:PT45M\r\nEND:VEVENT\r\n"
        ))
        assert event.end_at - event.start_at == timedelta(minutes=45)

    def test_missing_uid_is_derived_from_summary_and_start(self):
        event = normalize_feed_occurrence(_vevent(
            "BEGIN:VEVENT\r\nSUMMARY:Scrimmage\r\nDTSTART:20261020T090000Z\r\nEND:VEVENT\r\n"
        ))
        start_ms = int(datetime(2026, 10, 20, 9, 0, tzinfo=timezone.utc).timestamp() * 1000)
        assert event.feed_uid == f"Scrimmage-{start_ms}"

    def test_cancelled_status_yields_tombstone(self):
        event = normalize_feed_occurrence(_vevent(
            "BEGIN:VEVENT\r\nUID:c1\r\nDTSTART:20261020T090000Z\r\nSTATUS:CANCELLED\r\nEND:VEVENT\r\n"
        ))
        assert event.is_cancelled is True

    def test_missing_dtstart_is_malformed(self):
        with pytest.raises(EntryMalformed, match="DTSTART"):
            normalize_feed_occurrence(_vevent("BEGIN:VEVENT\r\nUID:x\r\nSUMMARY:No start\r\nEND:VEVENT\r\n"))

    def test_end_before_start_is_malformed(self):
        with pytest.raises(EntryMalformed, match="ends before"):
            normalize_feed_occurrence(_vevent(
                "BEGIN:VEVENT\r\nUID:x\r\nDTSTART:20261020T100000Z\r\nDTEND:20261020T090000Z\r\nEND:VEVENT\r\n"
            ))

    def test_unparseable_dtstart_is_malformed(self):
        with pytest.raises(EntryMalformed, match="DTSTART"):
            normalize_feed_occurrence(_vevent("BEGIN:VEVENT\r\nUID:x\r\nDTSTART:notadate\r\nEND:VEVENT\r\n"))

    def test_overlong_uid_is_malformed(self):
        with pytest.raises(EntryMalformed, match="longer than"):
            normalize_feed_occurrence(_vevent(
                "BEGIN:VEVENT\r\nUID:" + "u" * 1100 + "\r\nDTSTART:20261020T100000Z\r\nEND:VEVENT\r\n"
            ))

    def test_external_key_normalizes_offsets(self):
        utc = datetime(2026, 10, 20, 14, 0, tzinfo=timezone.utc)
        shifted = utc.astimezone(timezone(timedelta(hours=-4)))
        assert feed_external_key("u", utc) == feed_external_key("u", shifted)

