"""VEVENT extraction from raw iCalendar text.

Each VEVENT block is parsed on its own with ``icalendar`` so that one broken
event does not take down the rest of a REPORT response.

Date values are normalized three ways:

* a ``DATE`` value (bare ``20250101`` or ``VALUE=DATE``) is an all-day event at UTC midnight.
* ``20250101T100000Z`` is that exact UTC instant.
* ``20250101T100000`` (floating, or with a ``TZID``) keeps its wall-clock time and is read as UTC.
  No timezone conversion is performed; this is a known limitation.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import date, datetime, timezone

from icalendar import Event as ICEvent

from calsync.models import BUSY_TITLE, UNTITLED, Calendar, NormalizedEvent


_VEVENT_PATTERN = re.compile(r"BEGIN:VEVENT\r?\n(.*?)END:VEVENT", re.DOTALL | re.IGNORECASE)
_DATE_PROPERTIES = ("DTSTART", "DTEND")

logger = logging.getLogger(__name__)


@dataclass
class ParsedDate:
    value: datetime
    all_day: bool


def normalize_ical_time(value: date | datetime) -> ParsedDate:
    if isinstance(value, datetime):
        return ParsedDate(value.replace(tzinfo=timezone.utc), False)
    if isinstance(value, date):
        return ParsedDate(datetime(value.year, value.month, value.day, tzinfo=timezone.utc), True)
    raise ValueError(f"Unsupported iCalendar date value: {value!r}")


def split_vevents(ical_data: str) -> list[ICEvent]:
    """Parse every VEVENT block. Blocks icalendar cannot read at all are skipped."""
    events: list[ICEvent] = []
    for match in _VEVENT_PATTERN.finditer(ical_data or ""):
        block = f"BEGIN:VEVENT\r\n{match.group(1)}END:VEVENT\r\n"
        try:
            events.append(ICEvent.from_ical(block))
        except ValueError as exc:
            logger.warning("Skipping unparseable VEVENT block: %s", exc)
    return events


def _text(vevent: ICEvent, name: str) -> str | None:
    value = vevent.get(name)
    if value is None:
        return None
    return str(value).strip() or None


def parse_vevent(vevent: ICEvent, calendar: Calendar) -> NormalizedEvent | None:
    uid = _text(vevent, "UID")
    if not uid:
        return None

    status = _text(vevent, "STATUS")
    if status and status.upper() == "CANCELLED":
        return NormalizedEvent.tombstone(uid)

    # icalendar drops properties it cannot decode and records them in ``errors``.
    broken = [name for name, _ in vevent.errors if name in _DATE_PROPERTIES]
    if broken:
        raise ValueError(f"Unreadable {', '.join(broken)} in event {uid}")
    if vevent.get("DTSTART") is None:
        return None
    start = normalize_ical_time(vevent.decoded("DTSTART"))
    end_at = normalize_ical_time(vevent.decoded("DTEND")).value if vevent.get("DTEND") is not None else start.value

    if calendar.is_busy_free_only:
        title, description, location = BUSY_TITLE, None, None
    else:
        title = _text(vevent, "SUMMARY") or UNTITLED
        description = _text(vevent, "DESCRIPTION")
        location = _text(vevent, "LOCATION")

    return NormalizedEvent(
        external_id=uid,
        title=title,
        description=description,
        location=location,
        start_at=start.value,
        end_at=end_at,
        all_day=start.all_day,
    )


def parse_ical_events(ical_data: str, calendar: Calendar) -> list[NormalizedEvent]:
    events: list[NormalizedEvent] = []
    for vevent in split_vevents(ical_data):
        try:
            event = parse_vevent(vevent, calendar)
        except ValueError as exc:
            logger.warning("Skipping VEVENT with unreadable dates in calendar %s: %s", calendar.id, exc)
            continue
        if event is not None:
            events.append(event)
    return events
