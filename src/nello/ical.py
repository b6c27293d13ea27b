from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from icalendar import Calendar, vRecur, vText

from .datetimes import FieldState, resolve_field
from .models import ParsedEvent, RecurrenceRule, ScheduleDescription
from .result import Result

logger = logging.getLogger(__name__)

CRLF = "\r\n"
PRODUCT_ID = "io.nello"
CALENDAR_HEADER = ["BEGIN:VCALENDAR", "VERSION:2.0", f"PRODID:{PRODUCT_ID}", "BEGIN:VEVENT"]
CALENDAR_FOOTER = ["END:VEVENT", "END:VCALENDAR"]
REQUIRED_MARKERS = ("BEGIN:VCALENDAR", "END:VCALENDAR", "BEGIN:VEVENT", "END:VEVENT")

_TEXT_PROPERTIES = ("UID", "SUMMARY")
_DATE_PROPERTIES = ("DTSTAMP", "DTSTART", "DTEND")


class MalformedScheduleError(ValueError):
    """Raised when calendar text cannot be parsed or holds no event."""


def has_calendar_markers(text: str) -> bool:
    return all(marker in text for marker in REQUIRED_MARKERS)


def _summary(description: ScheduleDescription) -> str:
    if description.name is not None:
        return description.name
    if description.summary is not None:
        return description.summary
    return ""


def _encode_rule(recurrence: Union[RecurrenceRule, str, None], now: datetime) -> Optional[str]:
    if recurrence is None:
        return None
    if isinstance(recurrence, str):
        return recurrence
    if recurrence.raw is not None:
        return recurrence.raw
    if not recurrence:
        return None

    parts: List[str] = []
    if recurrence.frequency:
        freq = recurrence.frequency
        parts.append(freq if "=" in freq else f"FREQ={freq}")

    state, until = resolve_field(recurrence.until, now=now)
    if state is FieldState.PRESENT:
        parts.append(f"UNTIL={until}")
    elif state is FieldState.INVALID:
        logger.info("Dropping UNTIL from recurrence rule; could not resolve %r", recurrence.until)

    parts.extend(f"{key}={value}" for key, value in recurrence.parts.items())
    return ";".join(parts) or None


def encode(description: ScheduleDescription, now: Optional[datetime] = None) -> Result:
    """Render ``description`` as a single-event calendar text block.

    Start and end values that cannot be resolved are left out. The stamp
    falls back to the current time when absent; an unresolvable stamp makes
    the whole encode fail.
    """
    now = now or datetime.now(timezone.utc)

    stamp_value = description.stamp if description.stamp is not None else now
    state, stamp = resolve_field(stamp_value, now=now)
    if state is not FieldState.PRESENT:
        return Result.failure(f"Could not resolve DTSTAMP from {stamp_value!r}")

    lines = [f"DTSTAMP:{stamp}"]
    for key, value in (("DTSTART", description.start), ("DTEND", description.end)):
        state, text = resolve_field(value, now=now)
        if state is FieldState.PRESENT:
            lines.append(f"{key}:{text}")
        elif state is FieldState.INVALID:
            logger.info("Omitting %s; could not resolve %r", key, value)

    rule = _encode_rule(description.recurrence, now)
    if rule:
        lines.append(f"RRULE:{rule}")

    lines.append("SUMMARY:" + vText(_summary(description)).to_ical().decode("utf-8"))

    return Result.success(CRLF.join(CALENDAR_HEADER + lines + CALENDAR_FOOTER) + CRLF)


def _first(value: Any) -> Any:
    # Repeated properties come back as a list.
    if isinstance(value, list):
        return value[0] if value else None
    return value


def _ical_text(value: Any) -> str:
    raw = value.to_ical()
    return raw.decode("utf-8") if isinstance(raw, bytes) else str(raw)


def _decode_rule(value: Any) -> RecurrenceRule:
    value = _first(value)
    if value is None:
        return RecurrenceRule()
    if not isinstance(value, vRecur):
        return RecurrenceRule(raw=str(value))

    frequency: Optional[str] = None
    until: Optional[str] = None
    parts: Dict[str, str] = {}
    for key, items in value.items():
        key = key.upper()
        items = items if isinstance(items, list) else [items]
        text = _ical_text(vRecur({key: items})).split("=", 1)[-1]
        if key == "FREQ":
            frequency = text
        elif key == "UNTIL":
            until = text
        else:
            parts[key] = text
    return RecurrenceRule(frequency=frequency, until=until, parts=parts)


def decode(text: str) -> ParsedEvent:
    try:
        # Bytes, so a single-line string is never probed as a file path.
        component = Calendar.from_ical(text.encode("utf-8"))
    except (ValueError, IndexError, KeyError) as exc:
        raise MalformedScheduleError(f"Could not parse calendar data: {exc}") from exc

    vevent = next((c for c in component.subcomponents if c.name == "VEVENT"), None)
    if vevent is None:
        raise MalformedScheduleError("Calendar data contains no VEVENT")

    values: Dict[str, Optional[str]] = {}
    for key in _TEXT_PROPERTIES:
        value = _first(vevent.get(key))
        values[key] = str(value) if value is not None else None
    for key in _DATE_PROPERTIES:
        value = _first(vevent.get(key))
        values[key] = _ical_text(value) if value is not None else None

    return ParsedEvent(
        uid=values["UID"],
        summary=values["SUMMARY"],
        stamp=values["DTSTAMP"],
        start=values["DTSTART"],
        end=values["DTEND"],
        recurrence=_decode_rule(vevent.get("RRULE")),
        raw=text,
    )
