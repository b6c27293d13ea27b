from __future__ import annotations

from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Optional, Tuple

from dateutil import parser as date_parser

CANONICAL_FORMAT = "%Y%m%dT%H%M%SZ"

# Instants earlier than now - PAST_TOLERANCE are rejected.
PAST_TOLERANCE = timedelta(hours=1)


class FieldState(Enum):
    PRESENT = "present"
    INVALID = "invalid"
    ABSENT = "absent"


def is_canonical(text: str) -> bool:
    return len(text) == 16 and text[8] == "T" and text[15] == "Z"


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _from_unix(value: Any, text: str) -> Optional[datetime]:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        seconds = float(value)
    else:
        try:
            seconds = int(text)
        except ValueError:
            return None
    try:
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None


def _parse_text(text: str) -> Optional[datetime]:
    try:
        return _as_utc(date_parser.parse(text))
    except (ValueError, OverflowError):
        return None


def normalize(value: Any, now: Optional[datetime] = None) -> Optional[str]:
    """Convert ``value`` to a canonical ``YYYYMMDDTHHMMSSZ`` timestamp.

    Already-canonical text is returned untouched. Integers (or their decimal
    text) are unix seconds; when that instant lies before the tolerance
    window the value is re-read as a free-form date string. Returns ``None``
    when nothing usable at or after ``now - PAST_TOLERANCE`` comes out.
    """
    if value is None:
        return None

    floor = (_as_utc(now) if now else datetime.now(timezone.utc)) - PAST_TOLERANCE

    if isinstance(value, datetime):
        candidate: Optional[datetime] = _as_utc(value)
    else:
        text = str(value)
        if is_canonical(text):
            return text
        candidate = _from_unix(value, text)
        if candidate is None or candidate < floor:
            candidate = _parse_text(text)

    if candidate is None or candidate < floor:
        return None
    return candidate.strftime(CANONICAL_FORMAT)


def resolve_field(value: Any, now: Optional[datetime] = None) -> Tuple[FieldState, Optional[str]]:
    if value is None:
        return FieldState.ABSENT, None
    normalized = normalize(value, now=now)
    if normalized is None:
        return FieldState.INVALID, None
    return FieldState.PRESENT, normalized
