from __future__ import annotations

import json
import re
from datetime import datetime
from typing import Any

from voicecal.models import (
    DELETE_SCOPES,
    UPDATE_SCOPES,
    CalendarEvent,
    ExtractedIntent,
    serialize_datetime,
)


EXTRACTION_SYSTEM_PROMPT = """You are a calendar assistant that turns a spoken request into exactly one calendar operation.
You must only return JSON in this schema:
{
  "operation": "create | update | delete | no_action",
  "event_id": "string, required for update and delete",
  "scope": "this_event | this_and_following | all_events",
  "title": "string",
  "start": "ISO8601 datetime or currentDate+<milliseconds>",
  "end": "ISO8601 datetime or currentDate+<milliseconds>",
  "location": "string",
  "description": "string",
  "attendees": ["email"],
  "recurrence": ["RRULE:..."],
  "reason": "string, why no action is needed"
}

Rules:
1. If the request repeats an existing event exactly (same title, time and details), answer no_action.
2. Relative dates ("today", "tomorrow", "in two weeks") use currentDate+<milliseconds>, e.g. currentDate+86400000 for one day from now.
3. Recurring events use RFC 5545 RRULE lines, e.g. RRULE:FREQ=WEEKLY;BYDAY=MO.
4. Updating a recurring event requires scope: this_event, this_and_following or all_events.
5. Deleting a recurring event requires scope: this_event or all_events. Without a clear hint use all_events.
6. Requests without a time for something urgent become a short event a few minutes from now.
"""

REMINDER_SYSTEM_PROMPT = """You write short spoken reminders in the user's language ({language}).
Speak directly to the user in the second person, in one or two sentences ending with a period.
Start with a phrase such as "Te recuerdo que", "No olvides que" or "Recuerda que".
Include start and end times only for appointments, meetings or classes; for immediate tasks tell the user to do it now.
Write every number in words.
"""

SPEECH_ABBREVIATIONS = (
    (re.compile(r"\bDra\.", re.IGNORECASE), "doctora"),
    (re.compile(r"\bDr\.", re.IGNORECASE), "doctor"),
    (re.compile(r"\bSrta\.", re.IGNORECASE), "señorita"),
    (re.compile(r"\bSra\.", re.IGNORECASE), "señora"),
    (re.compile(r"\bSr\.", re.IGNORECASE), "señor"),
    (re.compile(r"\bProfa\.", re.IGNORECASE), "profesora"),
    (re.compile(r"\bProf\.", re.IGNORECASE), "profesor"),
)
REMINDER_LEAD_PATTERN = re.compile(r"^(Te recuerdo que|No olvides que|Recuerda que),?\s+", re.IGNORECASE)
PUNCTUATION_SPACING_PATTERN = re.compile(r"\s*([.,!?;:])(?!\d)\s*")
WHITESPACE_PATTERN = re.compile(r"\s+")

OPERATION_ALIASES = {
    "create_calendar_event": "create",
    "update_calendar_event": "update",
    "delete_calendar_event": "delete",
    "no_action_needed": "no_action",
    "none": "no_action",
}
FIELD_ALIASES = {
    "title": ("title", "summary"),
    "start": ("start", "start_time"),
    "end": ("end", "end_time"),
    "location": ("location",),
    "description": ("description",),
    "attendees": ("attendees",),
    "recurrence": ("recurrence",),
}


def _event_context(event: CalendarEvent) -> dict[str, Any]:
    context: dict[str, Any] = {
        "id": event.id,
        "title": event.title,
        "start": serialize_datetime(event.start),
        "end": serialize_datetime(event.end),
        "location": event.location,
        "description": event.description,
    }
    if event.is_instance:
        context["recurring_series_id"] = event.recurring_series_id
    if event.recurrence:
        context["recurrence"] = event.recurrence
    return context


def build_extraction_messages(
    text: str,
    existing_events: list[CalendarEvent],
    now: datetime,
    limit: int = 10,
) -> list[dict[str, str]]:
    payload = {
        "current_date": serialize_datetime(now),
        "existing_events": [_event_context(event) for event in existing_events[:limit]],
        "more_events": max(0, len(existing_events) - limit),
        "request": text,
    }
    return [
        {"role": "system", "content": EXTRACTION_SYSTEM_PROMPT},
        {"role": "user", "content": json.dumps(payload, ensure_ascii=False)},
    ]


def _clock_time(value: datetime | None) -> str:
    return value.strftime("%H:%M") if value is not None else ""


def build_reminder_messages(event: CalendarEvent, language: str = "es") -> list[dict[str, str]]:
    lines = [f"Title: {event.title or 'Untitled'}"]
    lines.append(f"Start: {_clock_time(event.start)}" if event.start else "No start time")
    lines.append(f"End: {_clock_time(event.end)}" if event.end else "No end time")
    if event.location:
        lines.append(f"Location: {event.location}")
    if event.description:
        lines.append(f"Description: {event.description}")
    return [
        {"role": "system", "content": REMINDER_SYSTEM_PROMPT.format(language=language)},
        {"role": "user", "content": "\n".join(lines)},
    ]


def fallback_reminder_text(event: CalendarEvent) -> str:
    title = event.title or "Sin título"
    if event.start is not None and event.end is not None:
        return f"Te recuerdo que tienes {title} desde las {_clock_time(event.start)} hasta las {_clock_time(event.end)}"
    return f"Te recuerdo que tienes que {title} ahora"


def normalize_speech_text(text: str) -> str:
    """Tidy reminder text before synthesis: expand titles, fix spacing, close the sentence."""
    normalized = text.strip()
    for pattern, replacement in SPEECH_ABBREVIATIONS:
        normalized = pattern.sub(replacement, normalized)
    normalized = WHITESPACE_PATTERN.sub(" ", normalized)
    normalized = PUNCTUATION_SPACING_PATTERN.sub(r"\1 ", normalized)
    normalized = WHITESPACE_PATTERN.sub(" ", normalized).strip()
    normalized = REMINDER_LEAD_PATTERN.sub(lambda match: f"{match.group(1)}, ", normalized)
    if not normalized:
        return normalized
    if normalized[-1] not in ".!?":
        normalized += "."
    return normalized[0].upper() + normalized[1:]


def normalize_intent(raw: dict[str, Any]) -> ExtractedIntent:
    operation = str(raw.get("operation", "")).strip().lower()
    operation = OPERATION_ALIASES.get(operation, operation)

    scope = raw.get("scope") or raw.get("update_scope") or raw.get("delete_scope")
    scope = str(scope).strip().lower() if scope else None
    if scope is not None and scope not in UPDATE_SCOPES + DELETE_SCOPES:
        scope = None

    fields: dict[str, Any] = {}
    for field, names in FIELD_ALIASES.items():
        for name in names:
            value = raw.get(name)
            if value is None or value == "":
                continue
            if field in ("attendees", "recurrence"):
                if isinstance(value, str):
                    value = [value]
                value = [str(item).strip() for item in value if str(item).strip()]
            fields[field] = value
            break

    event_id = str(raw.get("event_id") or "").strip() or None
    return ExtractedIntent(
        operation=operation,
        event_id=event_id,
        scope=scope,
        fields=fields,
        reason=str(raw.get("reason") or "").strip(),
    )
