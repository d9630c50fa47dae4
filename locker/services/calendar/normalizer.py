# locker/services/calendar/normalizer.py
"""
Maps provider events and feed occurrences onto the internal event shape.

Each source has its own explicit parser. Anything that does not match the
expected shape is rejected with EntryMalformed instead of being guessed at.
Sources are never merged: a provider event and a feed occurrence describing
the same meeting become two rows, each keyed by its own (source, external_key).
"""
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, Optional

from icalendar import Event as ICalEvent
from pydantic import ValidationError

from locker.core.exceptions import EntryMalformed
from locker.models.calendar_event import EventSource
from locker.schemas.calendar_events import GoogleCancelledEvent, GoogleLiveEvent, NormalizedEvent

UNTITLED = "Untitled Event"

# Width of the bounded text columns on calendar_events
MAX_FIELD_LENGTH = 1024


def _describe(exc: ValidationError) -> str:
    first = exc.errors()[0]
    where = ".".join(str(part) for part in first.get("loc", ()))
    return f"{where}: {first.get('msg')}" if where else first.get("msg", str(exc))


def normalize_provider_event(payload: Dict[str, Any]) -> NormalizedEvent:
    """Google Calendar event resource -> NormalizedEvent."""
    if not isinstance(payload, dict):
        raise EntryMalformed("provider event is not an object")

    event_id = payload.get("id") or "<missing id>"
    try:
        if payload.get("status") == "cancelled":
            cancelled = GoogleCancelledEvent.model_validate(payload)
            return NormalizedEvent(
                source=EventSource.PROVIDER.value,
                external_key=cancelled.id,
                source_updated_at=cancelled.updated.astimezone(timezone.utc) if cancelled.updated else None,
                is_cancelled=True,
                raw=payload,
            )
        event = GoogleLiveEvent.model_validate(payload)
    except ValidationError as exc:
        raise EntryMalformed(f"provider event {event_id}: {_describe(exc)}") from exc

    return _bounded(NormalizedEvent(
        source=EventSource.PROVIDER.value,
        external_key=event.id,
        title=event.summary or UNTITLED,
        description=event.description,
        location=event.location,
        start_at=event.start.as_utc(),
        end_at=event.end.as_utc(),
        source_updated_at=event.updated.astimezone(timezone.utc),
        raw=payload,
    ), f"provider event {event.id}")


def _ical_instant(value: Any) -> datetime:
    if isinstance(value, datetime):
        # Floating times carry no zone; they are read as UTC
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    raise EntryMalformed(f"unsupported date value {value!r}")


def _decoded(component: ICalEvent, name: str) -> Optional[Any]:
    prop = component.get(name)
    if prop is None:
        return None
    try:
        dt = getattr(prop, "dt", None)
    except ValueError as exc:
        # icalendar keeps unparseable values as broken properties that raise on access
        raise EntryMalformed(f"{name} could not be parsed: {exc}") from exc
    if dt is None:
        raise EntryMalformed(f"{name} is not a date or date-time")
    return dt


def _bounded(event: NormalizedEvent, label: str) -> NormalizedEvent:
    for name in ("external_key", "feed_uid", "title", "location"):
        value = getattr(event, name)
        if value is not None and len(value) > MAX_FIELD_LENGTH:
            raise EntryMalformed(f"{label}: {name} longer than {MAX_FIELD_LENGTH} characters")
    return event


def feed_external_key(uid: str, start: datetime) -> str:
    return f"{uid}|{start.astimezone(timezone.utc).isoformat()}"


def normalize_feed_occurrence(component: ICalEvent) -> NormalizedEvent:
    """VEVENT -> NormalizedEvent keyed by (uid, start)."""
    summary = str(component.get("SUMMARY")) if component.get("SUMMARY") is not None else None

    raw_start = _decoded(component, "DTSTART")
    if raw_start is None:
        raise EntryMalformed(f"event {component.get('UID') or summary or '<unnamed>'} has no DTSTART")
    start = _ical_instant(raw_start)

    uid = str(component.get("UID")) if component.get("UID") else None
    if not uid:
        uid = f"{summary or 'untitled'}-{int(start.timestamp() * 1000)}"

    raw_end = _decoded(component, "DTEND")
    if raw_end is not None:
        end = _ical_instant(raw_end)
    else:
        duration = _decoded(component, "DURATION")
        if duration is not None:
            if not isinstance(duration, timedelta):
                raise EntryMalformed(f"event {uid} has an invalid DURATION")
            end = start + duration
        elif isinstance(raw_start, datetime):
            end = start
        else:
            end = start + timedelta(days=1)

    if end < start:
        raise EntryMalformed(f"event {uid} ends before it starts")

    modified = _decoded(component, "LAST-MODIFIED") or _decoded(component, "DTSTAMP")
    status = str(component.get("STATUS") or "").upper()

    return _bounded(NormalizedEvent(
        source=EventSource.FEED.value,
        external_key=feed_external_key(uid, start),
        title=summary or UNTITLED,
        description=str(component.get("DESCRIPTION")) if component.get("DESCRIPTION") is not None else None,
        location=str(component.get("LOCATION")) if component.get("LOCATION") is not None else None,
        start_at=start,
        end_at=end,
        source_updated_at=_ical_instant(modified) if modified is not None else None,
        is_cancelled=status == "CANCELLED",
        feed_uid=uid,
        feed_start=start,
        raw={"ical": component.to_ical().decode("utf-8", errors="replace")},
    ), f"event {uid}")
