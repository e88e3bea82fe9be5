"""Turns a scoped update/delete request into remote calls on a series store.

Each call re-fetches its target; nothing read from the store is cached
between calls. Every remote call goes through the resolver's retry
executor. Deletes and cancels are idempotent: a missing or already
cancelled target counts as done.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, TypeVar

from voicecal.errors import AlreadySatisfied, BestEffortCleanupError, InputError, NotFoundError
from voicecal.interfaces import SeriesStore
from voicecal.models import (
    DELETE_SCOPES,
    EVENT_FIELDS,
    SCOPE_ALL_EVENTS,
    SCOPE_THIS_AND_FOLLOWING,
    SCOPE_THIS_EVENT,
    SHARED_SERIES_FIELDS,
    STATUS_CANCELLED,
    UPDATE_SCOPES,
    CalendarEvent,
    MutationOutcome,
    ScopeRequest,
    parse_iso_datetime,
    utc_day_bounds,
    utc_now,
)
from voicecal.retry import RetryExecutor
from voicecal.rrule import has_rrule, plan_series_split

T = TypeVar("T")

logger = logging.getLogger(__name__)

OCCURRENCE_MATCH_TOLERANCE = timedelta(minutes=1)


def normalize_fields(fields: dict[str, Any]) -> dict[str, Any]:
    """Keep known event fields, drop ``None`` values, parse start/end."""
    normalized: dict[str, Any] = {}
    for key in EVENT_FIELDS:
        value = fields.get(key)
        if value is None:
            continue
        if key in ("start", "end"):
            try:
                value = parse_iso_datetime(value)
            except ValueError as exc:
                raise InputError(f"Invalid {key} timestamp: {fields.get(key)}") from exc
            if value is None:
                continue
        elif key in ("attendees", "recurrence"):
            value = [str(item) for item in value]
        normalized[key] = value
    return normalized


def _in_zone_of(value: datetime, reference: datetime | None) -> datetime:
    if reference is None or reference.tzinfo is None:
        return value
    return value.astimezone(reference.tzinfo)


def _require_scope(scope: str | None, allowed: tuple[str, ...], event_id: str) -> str:
    if scope not in allowed:
        raise InputError(
            f"Event {event_id} is recurring; scope must be one of {', '.join(allowed)} (got {scope!r})"
        )
    return scope


class RecurrenceScopeResolver:
    def __init__(
        self,
        store: SeriesStore,
        *,
        retry: RetryExecutor | None = None,
        lookahead: timedelta = timedelta(days=90),
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.retry = retry or RetryExecutor(fatal=(InputError, NotFoundError))
        self.lookahead = lookahead
        self._clock = clock
        self._cleanup_tasks: set[asyncio.Task[None]] = set()

    async def _call(self, operation: Callable[[], Awaitable[T]]) -> T:
        return await self.retry.run(operation)

    async def _get(self, event_id: str) -> CalendarEvent:
        return await self._call(lambda: self.store.get_event(event_id))

    # Updates

    async def update(self, request: ScopeRequest) -> MutationOutcome:
        fields = normalize_fields(request.fields)
        target = await self._get(request.target_event_id)

        if not target.is_recurring:
            event = await self._call(lambda: self.store.update_event(target.id, fields))
            logger.info("Updated single event %s", target.id)
            return MutationOutcome("updated", event=event)

        scope = _require_scope(request.scope, UPDATE_SCOPES, target.id)
        if scope == SCOPE_THIS_EVENT:
            return await self._update_instance(target, fields)
        if scope == SCOPE_ALL_EVENTS:
            return await self._update_series(target, fields)
        return await self._split_series(target, fields)

    async def _update_instance(self, target: CalendarEvent, fields: dict[str, Any]) -> MutationOutcome:
        if not target.is_instance:
            raise InputError(f"{target.id} is a series master; 'this_event' needs an instance id")
        patch = {key: value for key, value in fields.items() if key != "recurrence"}
        event = await self._call(lambda: self.store.update_event(target.id, patch))
        logger.info("Updated instance %s of series %s", target.id, target.recurring_series_id)
        return MutationOutcome("updated", scope=SCOPE_THIS_EVENT, event=event)

    async def _update_series(self, target: CalendarEvent, fields: dict[str, Any]) -> MutationOutcome:
        master = target if target.is_series_master else await self._get(target.series_id)
        patch = {key: fields[key] for key in SHARED_SERIES_FIELDS if key in fields}
        patch["recurrence"] = list(master.recurrence)
        event = await self._call(lambda: self.store.update_event(master.id, patch))
        logger.info("Updated every occurrence of series %s", master.id)
        return MutationOutcome("updated", scope=SCOPE_ALL_EVENTS, event=event)

    async def _locate_instance(self, target: CalendarEvent) -> CalendarEvent:
        time_min = self._clock()
        if target.start is not None and target.start < time_min:
            time_min, _ = utc_day_bounds(target.start)
        instances = await self._call(
            lambda: self.store.list_instances(target.series_id, time_min, time_min + self.lookahead)
        )
        for instance in instances:
            if instance.id == target.id:
                return instance
        logger.debug("Instance %s not in lookahead window, using fetched copy", target.id)
        return target

    async def _split_series(self, target: CalendarEvent, fields: dict[str, Any]) -> MutationOutcome:
        if not target.is_instance:
            raise InputError(f"{target.id} is a series master; 'this_and_following' needs an instance id")

        master = await self._get(target.series_id)
        if not has_rrule(master.recurrence):
            raise InputError(f"Series {master.id} does not have recurrence rules")

        instance = await self._locate_instance(target)
        if instance.start is None or instance.end is None or instance.all_day:
            raise InputError(f"Instance {target.id} has no concrete start and end time")

        plan = plan_series_split(
            master.recurrence,
            instance.start,
            instance.end,
            new_start=fields.get("start"),
            new_end=fields.get("end"),
        )
        logger.info(
            "Splitting series %s at %s (cutoff %s)",
            master.id,
            plan.new_series_start.isoformat(),
            plan.cutoff_instant.isoformat(),
        )

        # Only the rule changes; the master keeps its anchor and time zone.
        trim = {"recurrence": plan.trimmed_recurrence}
        await self._call(lambda: self.store.update_event(master.id, trim))
        logger.info("Trimmed series %s to %s", master.id, plan.trimmed_recurrence)

        continuation = {key: fields[key] if key in fields else getattr(master, key) for key in SHARED_SERIES_FIELDS}
        continuation["start"] = _in_zone_of(plan.new_series_start, master.start)
        continuation["end"] = _in_zone_of(plan.new_series_end, master.start)
        continuation["recurrence"] = plan.continuation_recurrence
        created = await self._call(lambda: self.store.create_event(continuation))
        logger.info("Created continuation series %s from %s", created.id, plan.new_series_start.isoformat())

        self._schedule_cleanup(master.id, created.id, instance.start)
        return MutationOutcome("updated", scope=SCOPE_THIS_AND_FOLLOWING, event=created, plan=plan)

    # Transition-day cleanup

    def _schedule_cleanup(self, old_series_id: str, new_series_id: str, transition: datetime) -> None:
        task = asyncio.create_task(self._cleanup_transition_day(old_series_id, new_series_id, transition))
        self._cleanup_tasks.add(task)
        task.add_done_callback(self._cleanup_tasks.discard)

    async def wait_for_cleanup(self) -> None:
        while self._cleanup_tasks:
            pending = list(self._cleanup_tasks)
            await asyncio.gather(*pending)
            self._cleanup_tasks.difference_update(pending)

    async def _cleanup_transition_day(self, old_series_id: str, new_series_id: str, transition: datetime) -> None:
        try:
            removed = await self.retry.run(lambda: self._remove_stray_instances(old_series_id, transition))
        except Exception as exc:
            error = BestEffortCleanupError(
                f"Transition-day cleanup for series {old_series_id} failed: {exc}"
            )
            logger.warning("%s (new series %s)", error, new_series_id)
            return
        if removed:
            logger.info("Removed %d duplicate(s) of series %s on transition day", removed, old_series_id)

    async def _remove_stray_instances(self, old_series_id: str, transition: datetime) -> int:
        day_start, day_end = utc_day_bounds(transition)
        events = await self.store.list_events(day_start, day_end, 250)
        removed = 0
        for event in events:
            if event.recurring_series_id != old_series_id:
                continue
            try:
                await self.store.delete_event(event.id)
            except NotFoundError:
                logger.debug("Duplicate %s already gone", event.id)
                continue
            removed += 1
        return removed

    # Deletes and cancels

    async def delete(self, request: ScopeRequest) -> MutationOutcome:
        try:
            return await self._delete(request)
        except AlreadySatisfied as exc:
            logger.info("Delete of %s already satisfied: %s", exc.event_id, exc.reason)
            return MutationOutcome("deleted", scope=request.scope, already_satisfied=True)

    async def _delete(self, request: ScopeRequest) -> MutationOutcome:
        try:
            target = await self._get(request.target_event_id)
        except NotFoundError as exc:
            raise AlreadySatisfied(request.target_event_id, "not found") from exc

        if not target.is_recurring:
            if target.is_cancelled:
                raise AlreadySatisfied(target.id, "already cancelled")
            await self._hard_delete(target.id)
            return MutationOutcome("deleted", event=target)

        scope = _require_scope(request.scope, DELETE_SCOPES, target.id)
        if scope == SCOPE_THIS_EVENT:
            if not target.is_instance:
                raise InputError(f"{target.id} is a series master; 'this_event' needs an instance id")
            return await self._cancel(target)

        await self._hard_delete(target.series_id)
        return MutationOutcome("deleted", scope=SCOPE_ALL_EVENTS, event=target)

    async def _hard_delete(self, event_id: str) -> None:
        try:
            await self._call(lambda: self.store.delete_event(event_id))
        except NotFoundError as exc:
            raise AlreadySatisfied(event_id, "already deleted") from exc
        logger.info("Deleted event %s", event_id)

    async def _cancel(self, instance: CalendarEvent) -> MutationOutcome:
        if instance.is_cancelled:
            raise AlreadySatisfied(instance.id, "already cancelled")
        try:
            event = await self._call(
                lambda: self.store.update_event(instance.id, {"status": STATUS_CANCELLED})
            )
        except NotFoundError as exc:
            raise AlreadySatisfied(instance.id, "already deleted") from exc
        logger.info("Cancelled instance %s of series %s", instance.id, instance.recurring_series_id)
        return MutationOutcome("cancelled", scope=SCOPE_THIS_EVENT, event=event)

    async def cancel_occurrence(self, series_id: str, occurrence_start: datetime) -> MutationOutcome:
        """Cancel the instance of ``series_id`` starting at ``occurrence_start``."""
        try:
            return await self._cancel_occurrence(series_id, occurrence_start)
        except AlreadySatisfied as exc:
            logger.info("Cancel of %s already satisfied: %s", exc.event_id, exc.reason)
            return MutationOutcome("cancelled", scope=SCOPE_THIS_EVENT, already_satisfied=True)

    async def _cancel_occurrence(self, series_id: str, occurrence_start: datetime) -> MutationOutcome:
        day_start, day_end = utc_day_bounds(occurrence_start)
        try:
            instances = await self._call(lambda: self.store.list_instances(series_id, day_start, day_end))
        except NotFoundError as exc:
            raise AlreadySatisfied(series_id, "series not found") from exc

        for instance in instances:
            if instance.start is not None and abs(instance.start - occurrence_start) < OCCURRENCE_MATCH_TOLERANCE:
                return await self._cancel(instance)
        raise AlreadySatisfied(series_id, f"no occurrence at {occurrence_start.isoformat()}")
