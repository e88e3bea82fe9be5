from __future__ import annotations

import asyncio
import logging
import os
from datetime import datetime, timezone
from typing import Any, Callable

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import FileResponse, JSONResponse
from pydantic import BaseModel, Field

from voicecal.ai_client import OpenAICompatibleClient, OpenAIVoiceProvider
from voicecal.audio_store import AudioStore
from voicecal.caldav_client import CalDAVSeriesStore
from voicecal.config_manager import SECRET_FIELDS, ConfigManager
from voicecal.errors import InputError, NotFoundError, StatusWaitTimeout, VoiceCalError, user_message
from voicecal.job_lock import JobLock
from voicecal.job_status import JobStatusStore
from voicecal.models import JOB_ERROR, JOB_PROCESSING, JOB_READY, AppConfig, JobStatus, serialize_datetime
from voicecal.orchestrator import Orchestrator, reminder_key
from voicecal.retry import RetryExecutor
from voicecal.state_store import StateStore

logger = logging.getLogger(__name__)


class ConfigUpdateRequest(BaseModel):
    payload: dict[str, Any] = Field(default_factory=dict)


def build_orchestrator(context: "AppContext") -> Orchestrator:
    config = context.config_manager.load()
    client = OpenAICompatibleClient(config.ai, config.audio.output_format)
    provider = OpenAIVoiceProvider(client)
    return Orchestrator(
        store=CalDAVSeriesStore(config.caldav),
        transcriber=provider,
        extractor=provider,
        reminder_writer=provider,
        synthesizer=provider,
        audio_store=context.audio_store(),
        statuses=context.statuses,
        lock=context.lock,
        state_store=context.state_store,
        retry=RetryExecutor(
            config.retry.max_attempts,
            config.retry.base_delay_seconds,
            fatal=(InputError, NotFoundError),
        ),
        jobs=config.jobs,
    )


class AppContext:
    """Process-wide state shared by every request.

    The lock and status maps live for the whole process. The orchestrator
    and audio store are rebuilt lazily after a config change.
    """

    def __init__(
        self,
        config_path: str,
        state_path: str,
        orchestrator_factory: Callable[["AppContext"], Orchestrator] = build_orchestrator,
    ) -> None:
        self.config_manager = ConfigManager(config_path)
        self.state_store = StateStore(state_path)
        self.statuses = JobStatusStore()
        self.lock = JobLock()
        self.orchestrator_factory = orchestrator_factory
        self._orchestrator: Orchestrator | None = None
        self._audio_store: AudioStore | None = None
        self._retired: list[Orchestrator] = []

    @property
    def config(self) -> AppConfig:
        return self.config_manager.load()

    def audio_store(self) -> AudioStore:
        if self._audio_store is None:
            self._audio_store = AudioStore.from_config(self.config.audio)
        return self._audio_store

    def orchestrator(self) -> Orchestrator:
        if self._orchestrator is None:
            self._orchestrator = self.orchestrator_factory(self)
        return self._orchestrator

    def invalidate(self) -> None:
        if self._orchestrator is not None:
            self._retired.append(self._orchestrator)
        self._orchestrator = None
        self._audio_store = None

    async def shutdown(self) -> None:
        orchestrators = self._retired + ([self._orchestrator] if self._orchestrator else [])
        for orchestrator in orchestrators:
            await orchestrator.drain()
        self._retired.clear()


def _masked_meta(config_dict: dict[str, Any]) -> dict[str, Any]:
    meta: dict[str, Any] = {}
    for section, key in SECRET_FIELDS:
        is_set = bool(str(config_dict.get(section, {}).get(key, "")).strip())
        meta.setdefault(section, {})[key] = {"is_masked": is_set}
    return meta


def _sanitize_config_payload(payload: dict[str, Any], current: dict[str, Any]) -> dict[str, Any]:
    sanitized = dict(payload)
    for section, key in SECRET_FIELDS:
        current_secret = str(current.get(section, {}).get(key, ""))
        values = sanitized.get(section)
        if not isinstance(values, dict):
            continue
        values = dict(values)
        secret = values.get(key)
        if secret is not None and str(secret).strip() in {"", "***"}:
            if current_secret:
                values.pop(key, None)
            else:
                values[key] = ""
        if values:
            sanitized[section] = values
        else:
            sanitized.pop(section, None)
    return sanitized


def create_app(context: AppContext | None = None) -> FastAPI:
    if context is None:
        context = AppContext(
            config_path=os.getenv("VOICECAL_CONFIG_PATH", "config.yaml"),
            state_path=os.getenv("VOICECAL_STATE_PATH", "data/state.db"),
        )

    app = FastAPI(title="VoiceCal", version="0.1.0")
    app.state.context = context

    def audio_store() -> AudioStore:
        try:
            return context.audio_store()
        except ValueError as exc:
            raise HTTPException(status_code=500, detail=str(exc)) from exc

    @app.on_event("shutdown")
    async def _shutdown() -> None:
        await context.shutdown()

    @app.get("/healthz")
    def healthz() -> dict[str, str]:
        return {"status": "ok", "timestamp": datetime.now(timezone.utc).isoformat()}

    @app.get("/api/config")
    def get_config() -> dict[str, Any]:
        return context.config_manager.masked()

    @app.get("/api/config/raw")
    def get_config_raw() -> dict[str, Any]:
        raw = context.config_manager.load().to_dict()
        return {"config": context.config_manager.masked(), "meta": _masked_meta(raw)}

    @app.put("/api/config")
    def put_config(request: ConfigUpdateRequest) -> dict[str, Any]:
        current = context.config_manager.load_file().to_dict()
        sanitized_payload = _sanitize_config_payload(request.payload, current)
        context.config_manager.update(sanitized_payload)
        context.invalidate()
        logger.info("Configuration updated: %s", ", ".join(sorted(sanitized_payload)) or "no changes")
        return {"message": "config updated", "config": context.config_manager.masked()}

    @app.post("/api/ai/test")
    def test_ai_connectivity() -> dict[str, Any]:
        config = context.config_manager.load()
        ok, message = OpenAICompatibleClient(config.ai).test_connectivity()
        return {"ok": ok, "message": message}

    @app.get("/api/jobs")
    def recent_jobs(limit: int = 20) -> dict[str, Any]:
        return {"jobs": context.state_store.recent_job_results(limit=limit)}

    @app.get("/api/audit/events")
    def audit_events(limit: int = 100, job_id: str | None = None) -> dict[str, Any]:
        return {"events": context.state_store.recent_audit_events(limit=limit, job_id=job_id)}

    @app.post("/api/audio/upload-stream")
    async def upload_stream(request: Request) -> dict[str, Any]:
        store = audio_store()
        limit = context.config.audio.max_upload_bytes
        job_id = store.generate_job_id()
        path = store.input_path(job_id)
        context.statuses.set(job_id, JobStatus(JOB_PROCESSING))

        received = 0
        try:
            with path.open("wb") as handle:
                async for chunk in request.stream():
                    received += len(chunk)
                    if received > limit:
                        raise ValueError(f"Upload exceeds {limit} bytes")
                    handle.write(chunk)
        except ValueError as exc:
            context.statuses.set(job_id, JobStatus(JOB_ERROR, error=str(exc)))
            store.cleanup(job_id)
            raise HTTPException(status_code=413, detail=str(exc)) from exc
        except OSError as exc:
            logger.exception("Upload for %s failed", job_id)
            context.statuses.set(job_id, JobStatus(JOB_ERROR, error=user_message(exc)))
            raise HTTPException(status_code=500, detail=user_message(exc)) from exc

        logger.info("Audio upload complete: %s, %d bytes", job_id, received)
        return {"success": True, "job_id": job_id, "bytes_received": received}

    @app.post("/api/audio/process/{job_id}", status_code=202)
    async def process_audio(job_id: str) -> Any:
        store = audio_store()
        if not store.input_path(job_id).exists():
            raise HTTPException(status_code=404, detail="Audio file not found")
        current = context.statuses.get(job_id)
        if current is not None and current.is_terminal:
            return JSONResponse(status_code=200, content={"success": True, "job_id": job_id, **current.to_dict()})
        if context.lock.is_held(job_id):
            return {"success": True, "job_id": job_id, "status": JOB_PROCESSING, "message": "already processing"}
        if current is None:
            context.statuses.set(job_id, JobStatus(JOB_PROCESSING))

        orchestrator = context.orchestrator()
        orchestrator.submit(orchestrator.process_audio_job(job_id))
        return {"success": True, "job_id": job_id, "status": JOB_PROCESSING}

    @app.get("/api/audio/status/{job_id}")
    async def audio_status(job_id: str, timeout: int | None = None) -> dict[str, Any]:
        if timeout is not None:
            wait_seconds = max(0, timeout) / 1000.0
        else:
            wait_seconds = context.config.jobs.status_poll_timeout_seconds
        try:
            status = await context.statuses.wait_for(job_id, wait_seconds)
        except StatusWaitTimeout:
            current = context.statuses.get(job_id) or context.state_store.get_job_result(job_id)
            if current is None:
                raise HTTPException(status_code=404, detail="Job not found") from None
            return current.to_dict()
        return status.to_dict()

    @app.get("/api/audio/download/{job_id}")
    async def download_audio(job_id: str) -> Any:
        status = context.statuses.get(job_id) or context.state_store.get_job_result(job_id)
        if status is None:
            raise HTTPException(status_code=404, detail="Job not found")
        if status.status == JOB_PROCESSING:
            return JSONResponse(status_code=202, content={"message": "Audio still processing"})
        if status.status == JOB_ERROR:
            raise HTTPException(status_code=500, detail=status.error or "Job failed")
        if not status.audio_path or not os.path.exists(status.audio_path):
            raise HTTPException(status_code=404, detail="Audio file not found")
        store = audio_store()
        return FileResponse(
            status.audio_path,
            media_type=store.mime_type,
            filename=os.path.basename(status.audio_path),
        )

    @app.delete("/api/audio/{job_id}")
    async def delete_audio(job_id: str) -> dict[str, Any]:
        context.statuses.discard(job_id)
        removed = audio_store().cleanup(job_id)
        context.state_store.delete_job_result(job_id)
        return {"success": True, "job_id": job_id, "removed_files": removed}

    @app.get("/api/events/current")
    async def current_event() -> Any:
        orchestrator = context.orchestrator()
        try:
            event = await orchestrator.find_current_event()
        except VoiceCalError as exc:
            logger.exception("Error checking for current events")
            return JSONResponse(status_code=500, content={"has_pending": False, "error": user_message(exc)})
        if event is None:
            return {"has_pending": False, "message": "No events currently occurring"}

        key = reminder_key(event.id)
        wait_seconds = context.config.jobs.lock_wait_timeout_seconds
        if context.lock.is_held(key):
            await context.lock.wait(key, wait_seconds)
            return {"has_pending": False, "message": "Reminder already being generated"}

        job_id = AudioStore.generate_job_id("poll")
        task = orchestrator.submit(orchestrator.process_reminder_job(event.id, job_id))
        try:
            status = await asyncio.wait_for(asyncio.shield(task), wait_seconds)
        except asyncio.TimeoutError:
            return {"has_pending": False, "job_id": job_id, "message": "Reminder still being generated"}

        if status is None:
            return {"has_pending": False, "message": "Reminder already being generated"}
        if status.status != JOB_READY:
            return JSONResponse(
                status_code=500,
                content={"has_pending": False, "error": status.error or "Failed to generate audio for current event"},
            )
        return {
            "has_pending": True,
            "job_id": job_id,
            "calendar_event_id": event.id,
            "title": event.title,
            "start": serialize_datetime(event.start),
            "end": serialize_datetime(event.end),
        }

    return app
