"""Structured handling of RFC 5545 recurrence lines.

An ``RRULE:`` line is kept as an ordered list of ``NAME=value`` tokens so
that clauses nobody touches are written back exactly as they were read.
Lines that are not RRULEs (``EXDATE``, ``RDATE``) are carried verbatim.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta

from voicecal.dates import format_until, parse_until
from voicecal.errors import InputError
from voicecal.models import SeriesSplitPlan, utc_day_bounds

RRULE_PREFIX = "RRULE:"


@dataclass(frozen=True)
class RecurrenceRule:
    parts: tuple[tuple[str, str], ...]

    @staticmethod
    def is_rrule(line: str) -> bool:
        return line.strip().upper().startswith(RRULE_PREFIX)

    @classmethod
    def parse(cls, line: str) -> "RecurrenceRule":
        text = line.strip()
        if not cls.is_rrule(text):
            raise InputError(f"Not an RRULE line: {line}")
        body = text[len(RRULE_PREFIX):]
        parts: list[tuple[str, str]] = []
        for token in body.split(";"):
            if not token:
                continue
            name, sep, value = token.partition("=")
            if not sep or not name.strip():
                raise InputError(f"Malformed RRULE token {token!r} in {line}")
            parts.append((name.strip().upper(), value))
        if not any(name == "FREQ" for name, _ in parts):
            raise InputError(f"RRULE without FREQ: {line}")
        return cls(tuple(parts))

    def get(self, name: str) -> str | None:
        key = name.upper()
        for part_name, value in self.parts:
            if part_name == key:
                return value
        return None

    def without(self, *names: str) -> "RecurrenceRule":
        dropped = {name.upper() for name in names}
        return RecurrenceRule(tuple(part for part in self.parts if part[0] not in dropped))

    def with_part(self, name: str, value: str) -> "RecurrenceRule":
        key = name.upper()
        return RecurrenceRule(self.without(key).parts + ((key, value),))

    @property
    def until(self) -> datetime | None:
        value = self.get("UNTIL")
        return parse_until(value) if value else None

    @property
    def count(self) -> int | None:
        value = self.get("COUNT")
        return int(value) if value else None

    def truncated(self, cutoff: datetime) -> "RecurrenceRule":
        return self.without("UNTIL", "COUNT").with_part("UNTIL", format_until(cutoff))

    def __str__(self) -> str:
        return RRULE_PREFIX + ";".join(f"{name}={value}" for name, value in self.parts)


def has_rrule(recurrence: list[str]) -> bool:
    return any(RecurrenceRule.is_rrule(line) for line in recurrence)


def truncate_recurrence(recurrence: list[str], cutoff: datetime) -> list[str]:
    return [
        str(RecurrenceRule.parse(line).truncated(cutoff)) if RecurrenceRule.is_rrule(line) else line
        for line in recurrence
    ]


def split_cutoff(*starts: datetime) -> datetime:
    """One second before the UTC day of the earliest given start."""
    day_start, _ = utc_day_bounds(min(starts))
    return day_start - timedelta(seconds=1)


def plan_series_split(
    recurrence: list[str],
    instance_start: datetime,
    instance_end: datetime,
    new_start: datetime | None = None,
    new_end: datetime | None = None,
) -> SeriesSplitPlan:
    if not has_rrule(recurrence):
        raise InputError("Event does not have recurrence rules")
    series_start = new_start or instance_start
    series_end = new_end or series_start + (instance_end - instance_start)
    if series_end < series_start:
        raise InputError("New series end is before its start")
    # Cut on the earlier of the two days: a continuation moved to a previous
    # day must not overlap occurrences the trimmed series still produces.
    cutoff = split_cutoff(instance_start, series_start)
    return SeriesSplitPlan(
        cutoff_instant=cutoff,
        trimmed_recurrence=truncate_recurrence(recurrence, cutoff),
        continuation_recurrence=list(recurrence),
        new_series_start=series_start,
        new_series_end=series_end,
    )
