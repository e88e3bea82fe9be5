from __future__ import annotations

import copy
import errno
import logging
import os
import threading
from pathlib import Path
from typing import Any, Callable, Mapping

import yaml

from voicecal.models import AppConfig, default_app_config

logger = logging.getLogger(__name__)


def _milliseconds_to_seconds(value: str) -> float:
    return float(value) / 1000.0


def _megabytes(value: str) -> int:
    text = value.lower()
    if text.endswith("mb"):
        text = text[:-2]
    return int(text.strip())


# Applied on every load, never written back to the file.
ENV_OVERRIDES: tuple[tuple[str, tuple[str, ...], Callable[[str], Any]], ...] = (
    ("OPENAI_API_KEY", ("ai", "api_key"), str),
    ("OPENAI_BASE_URL", ("ai", "base_url"), str),
    ("TTS_VOICE", ("ai", "tts_voice"), str),
    ("TTS_SPEED", ("ai", "tts_speed"), float),
    ("CALDAV_URL", ("caldav", "base_url"), str),
    ("CALDAV_USERNAME", ("caldav", "username"), str),
    ("CALDAV_PASSWORD", ("caldav", "password"), str),
    ("CALENDAR_ID", ("caldav", "calendar_id"), str),
    ("AUDIO_INPUT_FORMAT", ("audio", "input_format"), str),
    ("AUDIO_OUTPUT_FORMAT", ("audio", "output_format"), str),
    ("TEMP_STORAGE_DIR", ("audio", "storage_dir"), str),
    ("MAX_UPLOAD_SIZE", ("audio", "max_upload_mb"), _megabytes),
    ("STATUS_POLL_TIMEOUT", ("jobs", "status_poll_timeout_seconds"), _milliseconds_to_seconds),
    ("LOG_LEVEL", ("log_level",), str),
)


SECRET_FIELDS = (("caldav", "password"), ("ai", "api_key"))


def _deep_merge(base: dict[str, Any], updates: dict[str, Any]) -> dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in updates.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def apply_env_overrides(data: dict[str, Any], environ: Mapping[str, str]) -> dict[str, Any]:
    result = copy.deepcopy(data)
    for env_name, path, convert in ENV_OVERRIDES:
        raw = environ.get(env_name)
        if raw is None or not raw.strip():
            continue
        try:
            value = convert(raw.strip())
        except ValueError:
            logger.warning("Ignoring invalid value for %s: %r", env_name, raw)
            continue
        target = result
        for key in path[:-1]:
            section = target.get(key)
            if not isinstance(section, dict):
                section = {}
                target[key] = section
            target = section
        target[path[-1]] = value
    return result


class ConfigManager:
    def __init__(
        self,
        config_path: str | os.PathLike[str],
        environ: Mapping[str, str] | None = None,
    ) -> None:
        self.config_path = Path(config_path)
        self.environ = os.environ if environ is None else environ
        self._lock = threading.RLock()
        self._ensure_exists()

    def _ensure_exists(self) -> None:
        if self.config_path.exists():
            return
        self.config_path.parent.mkdir(parents=True, exist_ok=True)
        self.save(default_app_config())

    def _read(self) -> dict[str, Any]:
        with self.config_path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
        return data if isinstance(data, dict) else {}

    def load_file(self) -> AppConfig:
        with self._lock:
            return AppConfig.from_dict(self._read())

    def load(self) -> AppConfig:
        with self._lock:
            return AppConfig.from_dict(apply_env_overrides(self._read(), self.environ))

    @staticmethod
    def _dump(data: dict[str, Any], path: Path) -> None:
        with path.open("w", encoding="utf-8") as handle:
            yaml.safe_dump(data, handle, sort_keys=False, allow_unicode=True, default_flow_style=False)

    def save(self, config: AppConfig) -> None:
        with self._lock:
            self.config_path.parent.mkdir(parents=True, exist_ok=True)
            data = config.to_dict()
            tmp_path = self.config_path.with_suffix(self.config_path.suffix + ".tmp")
            self._dump(data, tmp_path)
            try:
                tmp_path.replace(self.config_path)
            except OSError as exc:
                # Bind-mounted single files (docker volumes) refuse rename over them.
                if exc.errno != errno.EBUSY:
                    raise
                self._dump(data, self.config_path)
                tmp_path.unlink(missing_ok=True)

    def update(self, payload: dict[str, Any]) -> AppConfig:
        with self._lock:
            current = self.load_file().to_dict()
            merged = _deep_merge(current, payload)
            self.save(AppConfig.from_dict(merged))
            return self.load()

    def masked(self) -> dict[str, Any]:
        data = self.load().to_dict()
        for section, key in SECRET_FIELDS:
            if data.get(section, {}).get(key):
                data[section][key] = "***"
        return data
