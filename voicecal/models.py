from __future__ import annotations

from dataclasses import asdict, dataclass, field, replace
from datetime import date, datetime, time, timedelta, timezone
from typing import Any


SCOPE_THIS_EVENT = "this_event"
SCOPE_THIS_AND_FOLLOWING = "this_and_following"
SCOPE_ALL_EVENTS = "all_events"
UPDATE_SCOPES = (SCOPE_THIS_EVENT, SCOPE_THIS_AND_FOLLOWING, SCOPE_ALL_EVENTS)
DELETE_SCOPES = (SCOPE_THIS_EVENT, SCOPE_ALL_EVENTS)

STATUS_CONFIRMED = "confirmed"
STATUS_CANCELLED = "cancelled"

JOB_PROCESSING = "processing"
JOB_READY = "ready"
JOB_ERROR = "error"
JOB_NO_ACTION = "no_action"
JOB_STATUSES = (JOB_PROCESSING, JOB_READY, JOB_ERROR, JOB_NO_ACTION)

OPERATIONS = ("create", "update", "delete", "no_action")

EVENT_FIELDS = ("title", "start", "end", "location", "description", "attendees", "recurrence", "status")
SHARED_SERIES_FIELDS = ("title", "location", "description", "attendees")

VALID_INPUT_FORMATS = (".mp3", ".mp4", ".mpeg", ".mpga", ".m4a", ".wav", ".webm", ".flac", ".aac", ".ogg")
VALID_OUTPUT_FORMATS = (".mp3", ".opus", ".aac", ".flac", ".wav", ".pcm")


def _ensure_tz(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_iso_datetime(value: str | datetime | None) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return _ensure_tz(value)
    text = value.strip()
    if not text:
        return None
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    return _ensure_tz(parsed)


def serialize_datetime(value: datetime | None) -> str | None:
    if value is None:
        return None
    return _ensure_tz(value).isoformat()


def date_to_datetime(value: datetime | date | None, is_end: bool = False) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return _ensure_tz(value)
    if is_end:
        return datetime.combine(value, time.max, tzinfo=timezone.utc)
    return datetime.combine(value, time.min, tzinfo=timezone.utc)


def utc_day_bounds(value: datetime) -> tuple[datetime, datetime]:
    """First and last microsecond of the UTC calendar day containing ``value``."""
    as_utc = _ensure_tz(value).astimezone(timezone.utc)
    start = datetime.combine(as_utc.date(), time.min, tzinfo=timezone.utc)
    return start, start + timedelta(days=1) - timedelta(microseconds=1)


def normalize_audio_format(value: str, default: str) -> str:
    text = str(value or "").strip().lower() or default
    return text if text.startswith(".") else f".{text}"


@dataclass
class CalDAVConfig:
    base_url: str = ""
    username: str = ""
    password: str = ""
    calendar_id: str = ""
    calendar_name: str = "Voice Calendar"

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "CalDAVConfig":
        data = data or {}
        return cls(
            base_url=str(data.get("base_url", "")).strip(),
            username=str(data.get("username", "")).strip(),
            password=str(data.get("password", "")).strip(),
            calendar_id=str(data.get("calendar_id", "")).strip(),
            calendar_name=str(data.get("calendar_name", "Voice Calendar")).strip() or "Voice Calendar",
        )


@dataclass
class AIConfig:
    base_url: str = "https://api.openai.com/v1"
    api_key: str = ""
    model: str = "gpt-4o"
    reminder_model: str = "gpt-4o-mini"
    transcription_model: str = "whisper-1"
    tts_model: str = "gpt-4o-mini-tts"
    tts_voice: str = "alloy"
    tts_speed: float = 1.0
    language: str = "es"
    timeout_seconds: int = 90

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AIConfig":
        data = data or {}
        return cls(
            base_url=str(data.get("base_url", "https://api.openai.com/v1")).strip() or "https://api.openai.com/v1",
            api_key=str(data.get("api_key", "")).strip(),
            model=str(data.get("model", "gpt-4o")).strip() or "gpt-4o",
            reminder_model=str(data.get("reminder_model", "gpt-4o-mini")).strip() or "gpt-4o-mini",
            transcription_model=str(data.get("transcription_model", "whisper-1")).strip() or "whisper-1",
            tts_model=str(data.get("tts_model", "gpt-4o-mini-tts")).strip() or "gpt-4o-mini-tts",
            tts_voice=str(data.get("tts_voice", "alloy")).strip() or "alloy",
            tts_speed=min(4.0, max(0.25, float(data.get("tts_speed", 1.0)))),
            language=str(data.get("language", "es")).strip() or "es",
            timeout_seconds=max(1, int(data.get("timeout_seconds", 90))),
        )


@dataclass
class AudioConfig:
    storage_dir: str = "./temp"
    input_format: str = ".wav"
    output_format: str = ".wav"
    max_upload_mb: int = 50

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AudioConfig":
        data = data or {}
        return cls(
            storage_dir=str(data.get("storage_dir", "./temp")).strip() or "./temp",
            input_format=normalize_audio_format(data.get("input_format", ".wav"), ".wav"),
            output_format=normalize_audio_format(data.get("output_format", ".wav"), ".wav"),
            max_upload_mb=max(1, int(data.get("max_upload_mb", 50))),
        )

    @property
    def max_upload_bytes(self) -> int:
        return self.max_upload_mb * 1024 * 1024


@dataclass
class RetryConfig:
    max_attempts: int = 3
    base_delay_seconds: float = 2.0

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "RetryConfig":
        data = data or {}
        return cls(
            max_attempts=max(1, int(data.get("max_attempts", 3))),
            base_delay_seconds=max(0.0, float(data.get("base_delay_seconds", 2.0))),
        )


@dataclass
class JobsConfig:
    status_poll_timeout_seconds: float = 30.0
    lock_wait_timeout_seconds: float = 30.0
    lookahead_days: int = 90
    existing_events_limit: int = 100
    reminder_window_minutes: int = 60

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "JobsConfig":
        data = data or {}
        return cls(
            status_poll_timeout_seconds=max(0.0, float(data.get("status_poll_timeout_seconds", 30.0))),
            lock_wait_timeout_seconds=max(0.0, float(data.get("lock_wait_timeout_seconds", 30.0))),
            lookahead_days=max(1, int(data.get("lookahead_days", 90))),
            existing_events_limit=max(1, int(data.get("existing_events_limit", 100))),
            reminder_window_minutes=max(1, int(data.get("reminder_window_minutes", 60))),
        )


@dataclass
class AppConfig:
    caldav: CalDAVConfig = field(default_factory=CalDAVConfig)
    ai: AIConfig = field(default_factory=AIConfig)
    audio: AudioConfig = field(default_factory=AudioConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    jobs: JobsConfig = field(default_factory=JobsConfig)
    log_level: str = "INFO"

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AppConfig":
        data = data or {}
        return cls(
            caldav=CalDAVConfig.from_dict(data.get("caldav")),
            ai=AIConfig.from_dict(data.get("ai")),
            audio=AudioConfig.from_dict(data.get("audio")),
            retry=RetryConfig.from_dict(data.get("retry")),
            jobs=JobsConfig.from_dict(data.get("jobs")),
            log_level=str(data.get("log_level", "INFO")).strip().upper() or "INFO",
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class CalendarEvent:
    id: str
    title: str = ""
    start: datetime | None = None
    end: datetime | None = None
    all_day: bool = False
    location: str = ""
    description: str = ""
    attendees: list[str] = field(default_factory=list)
    recurrence: list[str] = field(default_factory=list)
    recurring_series_id: str | None = None
    status: str = STATUS_CONFIRMED

    @property
    def is_instance(self) -> bool:
        return bool(self.recurring_series_id)

    @property
    def is_series_master(self) -> bool:
        return not self.is_instance and bool(self.recurrence)

    @property
    def is_recurring(self) -> bool:
        return self.is_instance or self.is_series_master

    @property
    def is_cancelled(self) -> bool:
        return self.status == STATUS_CANCELLED

    @property
    def series_id(self) -> str:
        return self.recurring_series_id or self.id

    def occurs_at(self, moment: datetime) -> bool:
        if self.start is None or self.end is None or self.all_day:
            return False
        return self.start <= moment <= self.end

    def with_updates(self, **kwargs: Any) -> "CalendarEvent":
        values: dict[str, Any] = {"attendees": list(self.attendees), "recurrence": list(self.recurrence)}
        values.update(kwargs)
        return replace(self, **values)

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["start"] = serialize_datetime(self.start)
        payload["end"] = serialize_datetime(self.end)
        return payload


@dataclass
class ScopeRequest:
    target_event_id: str
    scope: str | None = None
    fields: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class SeriesSplitPlan:
    cutoff_instant: datetime
    trimmed_recurrence: list[str]
    continuation_recurrence: list[str]
    new_series_start: datetime
    new_series_end: datetime


@dataclass
class MutationOutcome:
    operation: str
    scope: str | None = None
    event: CalendarEvent | None = None
    already_satisfied: bool = False
    plan: SeriesSplitPlan | None = None

    @property
    def label(self) -> str:
        return f"{self.operation} ({self.scope})" if self.scope else self.operation


@dataclass
class ExtractedIntent:
    operation: str
    event_id: str | None = None
    scope: str | None = None
    fields: dict[str, Any] = field(default_factory=dict)
    reason: str = ""


@dataclass
class JobStatus:
    status: str
    audio_path: str | None = None
    error: str | None = None
    linked_event_id: str | None = None
    reason: str | None = None
    operation: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status != JOB_PROCESSING

    def to_dict(self) -> dict[str, Any]:
        return {key: value for key, value in asdict(self).items() if value is not None}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "JobStatus":
        status = str(data.get("status", JOB_ERROR))
        return cls(
            status=status if status in JOB_STATUSES else JOB_ERROR,
            audio_path=data.get("audio_path"),
            error=data.get("error"),
            linked_event_id=data.get("linked_event_id"),
            reason=data.get("reason"),
            operation=data.get("operation"),
        )


def default_app_config() -> AppConfig:
    return AppConfig()


def lookahead_window(now: datetime, days: int) -> tuple[datetime, datetime]:
    now_utc = _ensure_tz(now)
    return now_utc, now_utc + timedelta(days=max(1, days))
