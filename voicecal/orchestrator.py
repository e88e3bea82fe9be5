"""Runs one audio or reminder job from start to terminal status.

A job holds the ``JobLock`` for its key while it runs. A second trigger of
the same job while the first is in flight returns ``None`` and leaves the
status alone. The terminal status is published to the ``JobStatusStore``
and written to the ``StateStore`` before the lock is released.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Coroutine, TypeVar

from voicecal.audio_store import AudioStore
from voicecal.dates import resolve_relative_date
from voicecal.errors import InputError, NotFoundError, RemoteTransientError, user_message
from voicecal.interfaces import (
    IntentExtractor,
    ReminderWriter,
    SeriesStore,
    SpeechSynthesizer,
    TranscriptionProvider,
)
from voicecal.job_lock import JobLock
from voicecal.job_status import JobStatusStore
from voicecal.models import (
    JOB_ERROR,
    JOB_NO_ACTION,
    JOB_PROCESSING,
    JOB_READY,
    SCOPE_THIS_EVENT,
    CalendarEvent,
    ExtractedIntent,
    JobsConfig,
    JobStatus,
    MutationOutcome,
    ScopeRequest,
    lookahead_window,
    utc_now,
)
from voicecal.prompts import fallback_reminder_text, normalize_speech_text
from voicecal.retry import RetryExecutor
from voicecal.scope_resolver import RecurrenceScopeResolver, normalize_fields
from voicecal.state_store import StateStore

T = TypeVar("T")

logger = logging.getLogger(__name__)

DEFAULT_EVENT_DURATION = timedelta(hours=1)
CURRENT_EVENTS_LIMIT = 10


def reminder_key(event_id: str) -> str:
    return f"reminder:{event_id}"


class Orchestrator:
    def __init__(
        self,
        *,
        store: SeriesStore,
        transcriber: TranscriptionProvider,
        extractor: IntentExtractor,
        reminder_writer: ReminderWriter,
        synthesizer: SpeechSynthesizer,
        audio_store: AudioStore,
        statuses: JobStatusStore,
        lock: JobLock,
        state_store: StateStore | None = None,
        retry: RetryExecutor | None = None,
        jobs: JobsConfig | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.transcriber = transcriber
        self.extractor = extractor
        self.reminder_writer = reminder_writer
        self.synthesizer = synthesizer
        self.audio_store = audio_store
        self.statuses = statuses
        self.lock = lock
        self.state_store = state_store
        self.retry = retry or RetryExecutor(fatal=(InputError, NotFoundError))
        self.jobs = jobs or JobsConfig()
        self._clock = clock
        self.resolver = RecurrenceScopeResolver(
            store,
            retry=self.retry,
            lookahead=timedelta(days=self.jobs.lookahead_days),
            clock=clock,
        )
        self._tasks: set[asyncio.Task[Any]] = set()

    async def _call(self, operation: Callable[[], Awaitable[T]]) -> T:
        return await self.retry.run(operation)

    def submit(self, coro: Coroutine[Any, Any, T]) -> asyncio.Task[T]:
        """Run ``coro`` in the background; callers may wait on it but not cancel it."""
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def drain(self) -> None:
        while self._tasks:
            pending = list(self._tasks)
            await asyncio.gather(*pending, return_exceptions=True)
            self._tasks.difference_update(pending)
        await self.resolver.wait_for_cleanup()

    async def _run_exclusive(
        self,
        key: str,
        job_id: str,
        kind: str,
        work: Callable[[], Awaitable[JobStatus]],
    ) -> JobStatus | None:
        if not self.lock.try_acquire(key):
            logger.info("Job %s is already running, ignoring duplicate trigger", key)
            return None
        try:
            try:
                status = await work()
            except Exception as exc:
                logger.exception("Job %s failed", job_id)
                status = JobStatus(JOB_ERROR, error=user_message(exc))
            self.statuses.set(job_id, status)
            if self.state_store is not None:
                self.state_store.record_job_result(job_id, kind, status)
            logger.info("Job %s finished with status %s", job_id, status.status)
            return status
        finally:
            self.lock.release(key)

    def _audit(self, job_id: str, event_id: str, action: str, details: dict[str, Any]) -> None:
        if self.state_store is None:
            return
        self.state_store.record_audit_event(event_id=event_id, action=action, details=details, job_id=job_id)

    # Audio jobs

    async def process_audio_job(self, job_id: str) -> JobStatus | None:
        return await self._run_exclusive(job_id, job_id, "audio", lambda: self._audio_pipeline(job_id))

    async def _audio_pipeline(self, job_id: str) -> JobStatus:
        input_path = self.audio_store.input_path(job_id)
        audio = await asyncio.to_thread(self.audio_store.read_input, job_id)
        logger.info("Processing %d bytes of audio for %s", len(audio), job_id)

        text = await self._call(lambda: self.transcriber.transcribe(audio, input_path.name))
        logger.info("Transcribed %s: %s", job_id, text[:100] + ("..." if len(text) > 100 else ""))

        now = self._clock()
        time_min, time_max = lookahead_window(now, self.jobs.lookahead_days)
        existing = await self._call(
            lambda: self.store.list_events(time_min, time_max, self.jobs.existing_events_limit)
        )
        intent = await self._call(lambda: self.extractor.extract(text, existing))
        logger.info("Extracted %s for event %s (scope %s)", intent.operation, intent.event_id, intent.scope)

        fields = self._resolve_dates(intent.fields, now)
        return await self._dispatch(job_id, intent, fields)

    @staticmethod
    def _resolve_dates(fields: dict[str, Any], now: datetime) -> dict[str, Any]:
        resolved = dict(fields)
        for key in ("start", "end"):
            value = resolved.get(key)
            if isinstance(value, str):
                resolved[key] = resolve_relative_date(value, now)
        return resolved

    async def _dispatch(self, job_id: str, intent: ExtractedIntent, fields: dict[str, Any]) -> JobStatus:
        if intent.operation == "create":
            event = await self._create(fields)
            self._audit(job_id, event.id, "created", event.to_dict())
            return JobStatus(JOB_READY, linked_event_id=event.id, operation="created")

        if intent.operation in ("update", "delete"):
            if not intent.event_id:
                raise InputError(f"Event ID is required for {intent.operation} operation")
            request = ScopeRequest(intent.event_id, intent.scope, fields)
            if intent.operation == "update":
                outcome = await self.resolver.update(request)
            else:
                outcome = await self.resolver.delete(request)
            linked = outcome.event.id if intent.operation == "update" and outcome.event else intent.event_id
            self._audit(job_id, intent.event_id, outcome.operation, self._outcome_details(outcome))
            return JobStatus(JOB_READY, linked_event_id=linked, operation=outcome.label)

        if intent.operation == "no_action":
            return JobStatus(
                JOB_NO_ACTION,
                linked_event_id=intent.event_id,
                reason=intent.reason or "No action needed",
                operation="no_action",
            )

        raise InputError(f"Unknown operation: {intent.operation}")

    async def _create(self, fields: dict[str, Any]) -> CalendarEvent:
        payload = normalize_fields(fields)
        if not payload.get("title") or payload.get("start") is None:
            raise InputError("Title and start time are required to create an event")
        payload.setdefault("end", payload["start"] + DEFAULT_EVENT_DURATION)
        payload.pop("status", None)
        event = await self._call(lambda: self.store.create_event(payload))
        logger.info("Created event %s (%s)", event.id, event.title)
        return event

    @staticmethod
    def _outcome_details(outcome: MutationOutcome) -> dict[str, Any]:
        details: dict[str, Any] = {"scope": outcome.scope, "already_satisfied": outcome.already_satisfied}
        if outcome.event is not None:
            details["event"] = outcome.event.to_dict()
        if outcome.plan is not None:
            details["cutoff"] = outcome.plan.cutoff_instant.isoformat()
            details["trimmed_recurrence"] = outcome.plan.trimmed_recurrence
        return details

    # Reminder jobs

    async def find_current_event(self) -> CalendarEvent | None:
        now = self._clock()
        window_end = now + timedelta(minutes=self.jobs.reminder_window_minutes)
        events = await self._call(lambda: self.store.list_events(now, window_end, CURRENT_EVENTS_LIMIT))
        for event in events:
            if not event.is_cancelled and event.occurs_at(now):
                return event
        return None

    async def process_reminder_job(self, event_id: str, job_id: str) -> JobStatus | None:
        return await self._run_exclusive(
            reminder_key(event_id),
            job_id,
            "reminder",
            lambda: self._reminder_pipeline(event_id, job_id),
        )

    async def _reminder_pipeline(self, event_id: str, job_id: str) -> JobStatus:
        self.statuses.set(job_id, JobStatus(JOB_PROCESSING, linked_event_id=event_id))
        event = await self._call(lambda: self.store.get_event(event_id))
        if event.start is None or event.end is None or event.all_day:
            raise InputError("Event missing start or end time")
        if not event.occurs_at(self._clock()):
            raise InputError("Event not currently occurring")

        text = normalize_speech_text(await self._compose_reminder(event))
        audio = await self._call(lambda: self.synthesizer.synthesize(text))
        path = await asyncio.to_thread(self.audio_store.write_output, job_id, audio)
        logger.info("Reminder audio for %s written to %s", event.id, path)

        outcome = await self._retire(event)
        self._audit(job_id, event.id, "reminded", {"retired": outcome.label, "text": text})
        return JobStatus(JOB_READY, audio_path=str(path), linked_event_id=event.id, operation="reminded")

    async def _compose_reminder(self, event: CalendarEvent) -> str:
        try:
            return await self._call(lambda: self.reminder_writer.compose_reminder(event))
        except RemoteTransientError as exc:
            logger.warning("Reminder wording failed for %s, using template: %s", event.id, exc)
            return fallback_reminder_text(event)

    async def _retire(self, event: CalendarEvent) -> MutationOutcome:
        if event.is_instance:
            return await self.resolver.delete(ScopeRequest(event.id, SCOPE_THIS_EVENT))
        if event.is_series_master:
            return await self.resolver.cancel_occurrence(event.id, event.start)
        return await self.resolver.delete(ScopeRequest(event.id))
