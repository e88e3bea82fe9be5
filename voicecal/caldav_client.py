"""``SeriesStore`` backed by a CalDAV calendar.

Identifiers: a series master or single event is addressed by its VEVENT
UID. A materialized occurrence is addressed as ``<uid>_<RECURRENCE-ID>``
with the recurrence id in compact UTC form (``20250106T090000Z``).

Occurrence updates are written as RECURRENCE-ID override components inside
the master's resource. Cancelling an occurrence sets ``STATUS:CANCELLED``
on its override; deleting one adds an ``EXDATE`` to the master. Listings
use server-side expansion and leave cancelled occurrences out.
"""

from __future__ import annotations

import asyncio
import logging
import re
import threading
import uuid
from datetime import date, datetime, timedelta, timezone
from typing import Any, Callable, TypeVar

import caldav
from caldav.lib.error import NotFoundError as DAVNotFoundError
from icalendar import Calendar as ICalendar
from icalendar import Event as ICEvent
from icalendar.prop import vDDDLists, vRecur

from voicecal.dates import format_until
from voicecal.errors import NotFoundError, RemoteTransientError, VoiceCalError
from voicecal.models import (
    STATUS_CANCELLED,
    STATUS_CONFIRMED,
    CalDAVConfig,
    CalendarEvent,
    date_to_datetime,
)

T = TypeVar("T")

logger = logging.getLogger(__name__)

PRODID = "-//VoiceCal//Voice Calendar//EN"
INSTANCE_ID_PATTERN = re.compile(r"^(?P<uid>.+)_(?P<stamp>\d{8}T\d{6}Z)$")
RECURRENCE_PROPERTIES = ("RRULE", "EXDATE", "RDATE")
TEXT_FIELDS = (("title", "SUMMARY"), ("description", "DESCRIPTION"), ("location", "LOCATION"))


def _coerce_datetime(value: Any) -> datetime | None:
    """Aware datetimes keep their zone; DATE values (including exclusive DTEND) become UTC midnight."""
    if value is None:
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value
    if isinstance(value, date):
        return date_to_datetime(value)
    return None


def _is_all_day(component: ICEvent) -> bool:
    if component.get("DTSTART") is None:
        return False
    start = component.decoded("DTSTART")
    return isinstance(start, date) and not isinstance(start, datetime)


def _occurrence_value(master: ICEvent, rid: datetime) -> date | datetime:
    """RECURRENCE-ID/EXDATE value typed like the master's DTSTART."""
    if _is_all_day(master):
        return rid.astimezone(timezone.utc).date()
    start = master.decoded("DTSTART") if master.get("DTSTART") is not None else None
    if isinstance(start, datetime) and start.tzinfo is not None:
        return rid.astimezone(start.tzinfo)
    return rid


def _decode_raw_ical(raw_data: Any) -> str:
    if isinstance(raw_data, bytes):
        return raw_data.decode("utf-8", errors="replace")
    return str(raw_data)


def _as_list(value: Any) -> list[Any]:
    if value is None:
        return []
    if isinstance(value, list):
        return value
    return [value]


def _format_instant(value: Any) -> str:
    if isinstance(value, datetime):
        return format_until(value)
    return value.strftime("%Y%m%d")


def instance_id(uid: str, recurrence_id: datetime) -> str:
    return f"{uid}_{format_until(recurrence_id)}"


def parse_instance_id(event_id: str) -> tuple[str, datetime | None]:
    """Split an id into ``(uid, recurrence_id)``; the second part is ``None`` for masters."""
    match = INSTANCE_ID_PATTERN.match(event_id)
    if match is None:
        return event_id, None
    stamp = datetime.strptime(match.group("stamp"), "%Y%m%dT%H%M%SZ").replace(tzinfo=timezone.utc)
    return match.group("uid"), stamp


def _recurrence_id(component: ICEvent) -> datetime | None:
    if component.get("RECURRENCE-ID") is None:
        return None
    return _coerce_datetime(component.decoded("RECURRENCE-ID"))


def _recurrence_lines(component: ICEvent) -> list[str]:
    lines = [f"RRULE:{rule.to_ical().decode('utf-8')}" for rule in _as_list(component.get("RRULE"))]
    for name in ("EXDATE", "RDATE"):
        for prop in _as_list(component.get(name)):
            stamps = [_format_instant(item.dt) for item in getattr(prop, "dts", [])]
            if stamps:
                lines.append(f"{name}:{','.join(stamps)}")
    return lines


def event_from_component(component: ICEvent) -> CalendarEvent:
    uid = str(component.get("UID", "")).strip()
    start_raw = component.decoded("DTSTART") if component.get("DTSTART") is not None else None
    end_raw = component.decoded("DTEND") if component.get("DTEND") is not None else None
    all_day = _is_all_day(component)
    start = _coerce_datetime(start_raw)
    end = _coerce_datetime(end_raw)
    if start is not None and end is None:
        end = start + (timedelta(days=1) if all_day else timedelta(hours=1))

    rid = _recurrence_id(component)
    attendees = [str(item).replace("mailto:", "", 1).replace("MAILTO:", "", 1) for item in _as_list(component.get("ATTENDEE"))]
    status = STATUS_CANCELLED if str(component.get("STATUS", "")).upper() == "CANCELLED" else STATUS_CONFIRMED
    return CalendarEvent(
        id=instance_id(uid, rid) if rid is not None else uid,
        title=str(component.get("SUMMARY", "")).strip(),
        start=start,
        end=end,
        all_day=all_day,
        location=str(component.get("LOCATION", "")).strip(),
        description=str(component.get("DESCRIPTION", "")).strip(),
        attendees=attendees,
        recurrence=[] if rid is not None else _recurrence_lines(component),
        recurring_series_id=uid if rid is not None else None,
        status=status,
    )


def _add_recurrence_line(component: ICEvent, line: str) -> None:
    head, _, value = line.partition(":")
    name, *raw_params = head.split(";")
    name = name.strip().upper()
    params = dict(item.split("=", 1) for item in raw_params if "=" in item)
    if name == "RRULE":
        component.add("RRULE", vRecur.from_ical(value))
    elif name in ("EXDATE", "RDATE"):
        component.add(name, vDDDLists.from_ical(value, params.get("TZID")))
    else:
        logger.warning("Ignoring unsupported recurrence line %s", line)


def apply_fields(component: ICEvent, fields: dict[str, Any]) -> None:
    for key, prop in TEXT_FIELDS:
        if key in fields:
            component.pop(prop, None)
            if fields[key]:
                component.add(prop, str(fields[key]))
    for key, prop in (("start", "DTSTART"), ("end", "DTEND")):
        if fields.get(key) is not None:
            component.pop(prop, None)
            component.add(prop, fields[key])
    if "attendees" in fields:
        component.pop("ATTENDEE", None)
        for email in fields["attendees"] or []:
            component.add("ATTENDEE", f"mailto:{email}")
    if "status" in fields:
        component.pop("STATUS", None)
        component.add("STATUS", "CANCELLED" if fields["status"] == STATUS_CANCELLED else "CONFIRMED")
    if "recurrence" in fields:
        for prop in RECURRENCE_PROPERTIES:
            component.pop(prop, None)
        for line in fields["recurrence"] or []:
            _add_recurrence_line(component, line)


class CalDAVSeriesStore:
    def __init__(self, config: CalDAVConfig) -> None:
        self.config = config
        self._client: Any = None
        self._principal: Any = None
        self._calendar: Any = None
        self._connect_lock = threading.Lock()

    # Blocking helpers, run through asyncio.to_thread

    def _connect(self) -> Any:
        with self._connect_lock:
            if self._calendar is not None:
                return self._calendar
            if not self.config.base_url or not self.config.username:
                raise RemoteTransientError("CalDAV config is incomplete.")
            self._client = caldav.DAVClient(
                url=self.config.base_url,
                username=self.config.username,
                password=self.config.password,
            )
            self._principal = self._client.principal()
            self._calendar = self._resolve_calendar()
            return self._calendar

    def _resolve_calendar(self) -> Any:
        wanted_id = self.config.calendar_id.rstrip("/")
        wanted_name = self.config.calendar_name.casefold()
        for calendar in self._principal.calendars():
            calendar_url = str(calendar.url).rstrip("/")
            name = str(getattr(calendar, "name", "") or "")
            if wanted_id and (calendar_url == wanted_id or calendar_url.endswith(f"/{wanted_id}")):
                return calendar
            if not wanted_id and name.casefold() == wanted_name:
                return calendar
        if wanted_id:
            raise RemoteTransientError(f"Calendar not found: {self.config.calendar_id}")
        logger.info("Creating calendar %s", self.config.calendar_name)
        return self._principal.make_calendar(name=self.config.calendar_name)

    def _resource(self, uid: str) -> Any:
        calendar = self._connect()
        try:
            resource = calendar.event_by_uid(uid)
        except DAVNotFoundError as exc:
            raise NotFoundError(uid) from exc
        if resource is None:
            raise NotFoundError(uid)
        return resource

    @staticmethod
    def _load(resource: Any) -> ICalendar:
        return ICalendar.from_ical(_decode_raw_ical(resource.data))

    @staticmethod
    def _save(resource: Any, calendar_obj: ICalendar) -> None:
        resource.data = calendar_obj.to_ical().decode("utf-8")
        resource.save()

    @staticmethod
    def _components(calendar_obj: ICalendar) -> list[ICEvent]:
        return [component for component in calendar_obj.walk() if component.name == "VEVENT"]

    def _master(self, calendar_obj: ICalendar, uid: str) -> ICEvent:
        for component in self._components(calendar_obj):
            if _recurrence_id(component) is None:
                return component
        raise NotFoundError(uid)

    def _override(self, calendar_obj: ICalendar, rid: datetime) -> ICEvent | None:
        for component in self._components(calendar_obj):
            if _recurrence_id(component) == rid:
                return component
        return None

    @staticmethod
    def _is_excluded(master: ICEvent, rid: datetime) -> bool:
        for prop in _as_list(master.get("EXDATE")):
            for item in getattr(prop, "dts", []):
                if _coerce_datetime(item.dt) == rid:
                    return True
        return False

    def _new_override(self, master: ICEvent, uid: str, rid: datetime) -> ICEvent:
        base = event_from_component(master)
        duration = (base.end - base.start) if base.start and base.end else timedelta(hours=1)
        value = _occurrence_value(master, rid)
        if base.all_day:
            duration = timedelta(days=max(1, duration.days))
        override = ICEvent()
        override.add("UID", uid)
        override.add("RECURRENCE-ID", value)
        override.add("DTSTART", value)
        override.add("DTEND", value + duration)
        apply_fields(
            override,
            {
                "title": base.title,
                "description": base.description,
                "location": base.location,
                "attendees": base.attendees,
            },
        )
        return override

    def _get_event(self, event_id: str) -> CalendarEvent:
        uid, rid = parse_instance_id(event_id)
        calendar_obj = self._load(self._resource(uid))
        master = self._master(calendar_obj, uid)
        if rid is None:
            return event_from_component(master)
        override = self._override(calendar_obj, rid)
        if override is not None:
            return event_from_component(override)
        if self._is_excluded(master, rid):
            raise NotFoundError(event_id)
        return event_from_component(self._new_override(master, uid, rid))

    def _search(self, time_min: datetime, time_max: datetime) -> list[CalendarEvent]:
        calendar = self._connect()
        resources = calendar.search(start=time_min, end=time_max, event=True, expand=True)
        events: list[CalendarEvent] = []
        for resource in resources:
            for component in self._components(self._load(resource)):
                event = event_from_component(component)
                if event.id and not event.is_cancelled:
                    events.append(event)
        events.sort(key=lambda item: item.start or datetime.min.replace(tzinfo=timezone.utc))
        return events

    def _list_events(self, time_min: datetime, time_max: datetime, limit: int) -> list[CalendarEvent]:
        return self._search(time_min, time_max)[: max(1, limit)]

    def _list_instances(self, series_id: str, time_min: datetime, time_max: datetime) -> list[CalendarEvent]:
        self._resource(series_id)
        return [event for event in self._search(time_min, time_max) if event.recurring_series_id == series_id]

    def _create_event(self, fields: dict[str, Any]) -> CalendarEvent:
        calendar = self._connect()
        uid = str(uuid.uuid4())
        calendar_obj = ICalendar()
        calendar_obj.add("PRODID", PRODID)
        calendar_obj.add("VERSION", "2.0")
        vevent = ICEvent()
        vevent.add("UID", uid)
        vevent.add("DTSTAMP", datetime.now(timezone.utc))
        apply_fields(vevent, fields)
        calendar_obj.add_component(vevent)
        calendar.save_event(calendar_obj.to_ical().decode("utf-8"))
        return event_from_component(vevent)

    def _update_event(self, event_id: str, fields: dict[str, Any]) -> CalendarEvent:
        uid, rid = parse_instance_id(event_id)
        resource = self._resource(uid)
        calendar_obj = self._load(resource)
        master = self._master(calendar_obj, uid)
        if rid is None:
            apply_fields(master, fields)
            target = master
        else:
            if self._is_excluded(master, rid):
                raise NotFoundError(event_id)
            target = self._override(calendar_obj, rid)
            if target is None:
                target = self._new_override(master, uid, rid)
                calendar_obj.add_component(target)
            apply_fields(target, {key: value for key, value in fields.items() if key != "recurrence"})
        self._save(resource, calendar_obj)
        return event_from_component(target)

    def _delete_event(self, event_id: str) -> None:
        uid, rid = parse_instance_id(event_id)
        resource = self._resource(uid)
        if rid is None:
            try:
                resource.delete()
            except DAVNotFoundError as exc:
                raise NotFoundError(event_id) from exc
            return
        calendar_obj = self._load(resource)
        master = self._master(calendar_obj, uid)
        if self._is_excluded(master, rid):
            raise NotFoundError(event_id)
        excluded = _occurrence_value(master, rid)
        if isinstance(excluded, datetime):
            master.add("EXDATE", excluded)
        else:
            master.add("EXDATE", excluded, parameters={"VALUE": "DATE"})
        override = self._override(calendar_obj, rid)
        if override is not None:
            calendar_obj.subcomponents.remove(override)
        self._save(resource, calendar_obj)

    # SeriesStore

    async def _run(self, func: Callable[..., T], *args: Any) -> T:
        try:
            return await asyncio.to_thread(func, *args)
        except VoiceCalError:
            raise
        except DAVNotFoundError as exc:
            raise NotFoundError(str(args[0]) if args else "", str(exc)) from exc
        except Exception as exc:
            raise RemoteTransientError(f"CalDAV request failed: {exc}") from exc

    async def get_event(self, event_id: str) -> CalendarEvent:
        return await self._run(self._get_event, event_id)

    async def list_events(self, time_min: datetime, time_max: datetime, limit: int = 100) -> list[CalendarEvent]:
        return await self._run(self._list_events, time_min, time_max, limit)

    async def list_instances(self, series_id: str, time_min: datetime, time_max: datetime) -> list[CalendarEvent]:
        return await self._run(self._list_instances, series_id, time_min, time_max)

    async def create_event(self, fields: dict[str, Any]) -> CalendarEvent:
        return await self._run(self._create_event, fields)

    async def update_event(self, event_id: str, fields: dict[str, Any]) -> CalendarEvent:
        return await self._run(self._update_event, event_id, fields)

    async def delete_event(self, event_id: str) -> None:
        await self._run(self._delete_event, event_id)
