"""Collaborator contracts consumed by the resolver and the orchestrator.

Every method is a coroutine. ``fields`` dictionaries use the keys listed in
``voicecal.models.EVENT_FIELDS``; updates are patches, so absent keys are
left unchanged on the remote event.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Protocol

from voicecal.models import CalendarEvent, ExtractedIntent


class SeriesStore(Protocol):
    async def get_event(self, event_id: str) -> CalendarEvent:
        """Raises ``NotFoundError`` when the id is unknown."""

    async def list_events(self, time_min: datetime, time_max: datetime, limit: int = 100) -> list[CalendarEvent]:
        ...

    async def list_instances(self, series_id: str, time_min: datetime, time_max: datetime) -> list[CalendarEvent]:
        ...

    async def create_event(self, fields: dict[str, Any]) -> CalendarEvent:
        ...

    async def update_event(self, event_id: str, fields: dict[str, Any]) -> CalendarEvent:
        ...

    async def delete_event(self, event_id: str) -> None:
        ...


class TranscriptionProvider(Protocol):
    async def transcribe(self, audio: bytes, filename: str) -> str:
        ...


class IntentExtractor(Protocol):
    async def extract(self, text: str, existing_events: list[CalendarEvent]) -> ExtractedIntent:
        ...


class ReminderWriter(Protocol):
    async def compose_reminder(self, event: CalendarEvent) -> str:
        ...


class SpeechSynthesizer(Protocol):
    async def synthesize(self, text: str) -> bytes:
        ...
