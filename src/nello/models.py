from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional, Union

DateInput = Any  # canonical text, unix seconds, datetime or a parsable date string


@dataclass(frozen=True)
class RecurrenceRule:
    frequency: Optional[str] = None
    until: Optional[DateInput] = None
    parts: Dict[str, str] = field(default_factory=dict)
    raw: Optional[str] = None         # pre-formed rule text, passed through verbatim

    def __bool__(self) -> bool:
        return bool(self.frequency or self.raw or self.parts)

    @classmethod
    def from_value(cls, value: Union[str, Mapping[str, Any], "RecurrenceRule", None]) -> Optional["RecurrenceRule"]:
        if value is None or isinstance(value, RecurrenceRule):
            return value
        if isinstance(value, str):
            return cls(raw=value)
        data = {str(k).upper(): v for k, v in value.items()}
        freq = data.pop("FREQ", None)
        if freq is None:
            freq = data.pop("FREQUENCY", None)
        until = data.pop("UNTIL", None)
        return cls(
            frequency=str(freq) if freq is not None else None,
            until=until,
            parts={k: str(v) for k, v in data.items()},
        )


@dataclass(frozen=True)
class ScheduleDescription:
    name: Optional[str] = None
    start: Optional[DateInput] = None
    end: Optional[DateInput] = None
    stamp: Optional[DateInput] = None       # creation time, "now" when absent
    recurrence: Union[RecurrenceRule, str, None] = None
    summary: Optional[str] = None           # alternate label when name is absent

    @classmethod
    def from_dict(cls, data: Mapping[str, Any], name: Optional[str] = None) -> "ScheduleDescription":
        """Build a description from either the API's upper-case keys or plain field names."""
        def pick(*keys: str) -> Any:
            for key in keys:
                if data.get(key) is not None:
                    return data[key]
            return None

        return cls(
            name=name if name is not None else pick("name"),
            start=pick("DTSTART", "start"),
            end=pick("DTEND", "end"),
            stamp=pick("DTSTAMP", "stamp"),
            recurrence=RecurrenceRule.from_value(pick("RRULE", "recurrence")),
            summary=pick("SUMMARY", "summary"),
        )


@dataclass(frozen=True)
class ParsedEvent:
    uid: Optional[str]
    summary: Optional[str]
    stamp: Optional[str]
    start: Optional[str]
    end: Optional[str]
    recurrence: RecurrenceRule
    raw: str


@dataclass(frozen=True)
class Token:
    token_type: str
    access_token: str

    @property
    def authorization(self) -> str:
        return f"{self.token_type} {self.access_token}"


@dataclass(frozen=True)
class WebhookUri:
    ssl: bool
    url: str
    port: int

    @property
    def uri(self) -> str:
        return f"{self.url}:{self.port}"
