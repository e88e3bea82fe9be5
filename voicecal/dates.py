"""Timestamp helpers shared by the extractor output and the RRULE code.

The extractor may answer with placeholders of the form ``currentDate+<ms>``
meaning "now plus that many milliseconds". Those are resolved here to
absolute UTC ISO-8601 before anything reaches the calendar store. The same
module repairs the occasional concatenated timestamp such as
``2025-11-17T18:41:12.910ZT22:00:00``.
"""

from __future__ import annotations

import re
from datetime import datetime, timedelta, timezone

from voicecal.errors import InputError
from voicecal.models import parse_iso_datetime


RELATIVE_DATE_PATTERN = re.compile(r"currentDate\+(\d+)")
CONCATENATED_PATTERN = re.compile(
    r"^(\d{4}-\d{2}-\d{2})T(\d{2}:\d{2}:\d{2}(?:\.\d{3})?)Z?T(\d{2}:\d{2}:\d{2}(?:\.\d{3})?)$"
)
DATE_PART_PATTERN = re.compile(r"(\d{4}-\d{2}-\d{2})")
UNTIL_FORMAT = "%Y%m%dT%H%M%SZ"


def format_until(value: datetime) -> str:
    """Compact UTC basic format used by RRULE ``UNTIL``: ``YYYYMMDDTHHMMSSZ``."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime(UNTIL_FORMAT)


def parse_until(value: str) -> datetime:
    text = value.strip()
    if len(text) == 8:
        return datetime.strptime(text, "%Y%m%d").replace(tzinfo=timezone.utc)
    if text.endswith("Z"):
        return datetime.strptime(text, UNTIL_FORMAT).replace(tzinfo=timezone.utc)
    return datetime.strptime(text, "%Y%m%dT%H%M%S").replace(tzinfo=timezone.utc)


def to_utc_iso(value: datetime) -> str:
    as_utc = value.astimezone(timezone.utc)
    return as_utc.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _try_parse(text: str) -> datetime | None:
    try:
        return parse_iso_datetime(text)
    except ValueError:
        return None


def repair_datetime_string(value: str) -> str:
    """Validate an ISO timestamp, fixing two timestamps glued together.

    For ``<date>T<time>ZT<time>`` the date of the first part is combined
    with the time of the last part. Returns UTC ISO-8601 or raises
    ``InputError`` when nothing parses.
    """
    text = value.strip()
    if text.count("T") > 1:
        match = CONCATENATED_PATTERN.match(text)
        if match:
            fixed = _try_parse(f"{match.group(1)}T{match.group(3)}")
            if fixed is not None:
                return to_utc_iso(fixed)
        before, _, after = text.rpartition("T")
        date_match = DATE_PART_PATTERN.search(before)
        if date_match and after:
            fixed = _try_parse(f"{date_match.group(1)}T{after}")
            if fixed is not None:
                return to_utc_iso(fixed)

    parsed = _try_parse(text)
    if parsed is None:
        raise InputError(f"Invalid date format: {value}")
    return to_utc_iso(parsed)


def resolve_relative_date(value: str | None, now: datetime | None = None) -> str | None:
    if not value:
        return value
    match = RELATIVE_DATE_PATTERN.search(value)
    if match is None:
        return repair_datetime_string(value)

    reference = now or datetime.now(timezone.utc)
    resolved = to_utc_iso(reference + timedelta(milliseconds=int(match.group(1))))
    if value.strip() == match.group(0):
        return resolved
    return repair_datetime_string(RELATIVE_DATE_PATTERN.sub(resolved, value, count=1))
