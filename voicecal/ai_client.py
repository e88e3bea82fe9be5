from __future__ import annotations

import asyncio
import json
import logging
import re
from datetime import datetime
from typing import Any, Callable, TypeVar

import requests

from voicecal.errors import RemoteTransientError
from voicecal.models import AIConfig, CalendarEvent, ExtractedIntent, utc_now
from voicecal.prompts import build_extraction_messages, build_reminder_messages, normalize_intent

T = TypeVar("T")

logger = logging.getLogger(__name__)

JSON_BLOCK_PATTERN = re.compile(r"```(?:json)?\s*(\{.*\})\s*```", re.DOTALL)
SPEECH_INSTRUCTIONS = (
    "Habla con un acento español natural. Pronuncia todas las palabras con claridad "
    "y usa la entonación natural del español."
)


def _extract_json_payload(content: str) -> str:
    text = content.strip()
    if text.startswith("{") and text.endswith("}"):
        return text
    block = JSON_BLOCK_PATTERN.search(text)
    if block:
        return block.group(1)
    start = text.find("{")
    end = text.rfind("}")
    if start >= 0 and end > start:
        return text[start : end + 1]
    raise ValueError("AI response does not contain valid JSON.")


class OpenAICompatibleClient:
    """Blocking client for the OpenAI-compatible endpoints the service uses."""

    def __init__(self, config: AIConfig, output_format: str = ".wav") -> None:
        self.config = config
        self.output_format = output_format

    def is_configured(self) -> bool:
        return bool(self.config.base_url and self.config.api_key and self.config.model)

    def _endpoint(self, path: str) -> str:
        base = self.config.base_url.rstrip("/")
        if base.endswith("/chat/completions"):
            base = base[: -len("/chat/completions")]
        return f"{base}/{path.lstrip('/')}"

    def _headers(self, json_body: bool = True) -> dict[str, str]:
        headers = {"Authorization": f"Bearer {self.config.api_key}"}
        if json_body:
            headers["Content-Type"] = "application/json"
        return headers

    def _chat(self, messages: list[dict[str, str]], *, model: str, **options: Any) -> str:
        response = requests.post(
            self._endpoint("chat/completions"),
            headers=self._headers(),
            json={"model": model, "messages": messages, **options},
            timeout=self.config.timeout_seconds,
        )
        response.raise_for_status()
        payload = response.json()
        return str(payload["choices"][0]["message"]["content"] or "")

    def transcribe(self, audio: bytes, filename: str) -> str:
        response = requests.post(
            self._endpoint("audio/transcriptions"),
            headers=self._headers(json_body=False),
            files={"file": (filename, audio)},
            data={
                "model": self.config.transcription_model,
                "language": self.config.language,
                "response_format": "text",
            },
            timeout=self.config.timeout_seconds,
        )
        response.raise_for_status()
        return response.text.strip()

    def extract_intent(self, messages: list[dict[str, str]]) -> dict[str, Any]:
        content = self._chat(
            messages,
            model=self.config.model,
            temperature=0.1,
            response_format={"type": "json_object"},
        )
        result = json.loads(_extract_json_payload(content))
        if not isinstance(result, dict):
            raise ValueError("AI response root must be an object.")
        return result

    def compose_text(self, messages: list[dict[str, str]], max_tokens: int = 150) -> str:
        content = self._chat(messages, model=self.config.reminder_model, temperature=0.3, max_tokens=max_tokens)
        return content.strip()

    def synthesize_speech(self, text: str) -> bytes:
        response = requests.post(
            self._endpoint("audio/speech"),
            headers=self._headers(),
            json={
                "model": self.config.tts_model,
                "voice": self.config.tts_voice,
                "input": text,
                "speed": self.config.tts_speed,
                "instructions": SPEECH_INSTRUCTIONS,
                "response_format": self.output_format.lstrip("."),
            },
            timeout=self.config.timeout_seconds,
        )
        response.raise_for_status()
        return response.content

    def test_connectivity(self) -> tuple[bool, str]:
        if not self.is_configured():
            return False, "AI config incomplete: base_url/api_key/model required."
        try:
            response = requests.post(
                self._endpoint("chat/completions"),
                headers=self._headers(),
                json={
                    "model": self.config.model,
                    "messages": [{"role": "user", "content": "Reply with: OK"}],
                    "temperature": 0,
                    "max_tokens": 8,
                },
                timeout=self.config.timeout_seconds,
            )
            if not response.ok:
                return False, f"HTTP {response.status_code}: {response.text[:300]}"
            payload = response.json()
            content = payload.get("choices", [{}])[0].get("message", {}).get("content", "")
            content_text = str(content).strip().replace("\n", " ")
            return True, f"Connected. Model response: {content_text[:120]}"
        except (requests.RequestException, ValueError) as exc:
            return False, f"{type(exc).__name__}: {exc}"


class OpenAIVoiceProvider:
    """Async adapter exposing the client as transcriber, extractor, writer and synthesizer.

    Each call runs in a worker thread. Any failure surfaces as
    ``RemoteTransientError`` so the caller's retry policy applies.
    """

    def __init__(
        self,
        client: OpenAICompatibleClient,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.client = client
        self._clock = clock

    async def _run(self, name: str, func: Callable[..., T], *args: Any) -> T:
        if not self.client.is_configured():
            raise RemoteTransientError(f"{name} unavailable: AI provider is not configured")
        try:
            return await asyncio.to_thread(func, *args)
        except (requests.RequestException, ValueError, KeyError, IndexError) as exc:
            raise RemoteTransientError(f"{name} failed: {exc}") from exc

    async def transcribe(self, audio: bytes, filename: str) -> str:
        text = await self._run("Transcription", self.client.transcribe, audio, filename)
        if not text:
            raise RemoteTransientError("Transcription returned no text")
        return text

    async def extract(self, text: str, existing_events: list[CalendarEvent]) -> ExtractedIntent:
        messages = build_extraction_messages(text, existing_events, self._clock())
        raw = await self._run("Intent extraction", self.client.extract_intent, messages)
        intent = normalize_intent(raw)
        logger.debug("Extractor answered %s", raw)
        return intent

    async def compose_reminder(self, event: CalendarEvent) -> str:
        messages = build_reminder_messages(event, self.client.config.language)
        text = await self._run("Reminder wording", self.client.compose_text, messages)
        return text or event.title

    async def synthesize(self, text: str) -> bytes:
        audio = await self._run("Speech synthesis", self.client.synthesize_speech, text)
        if not audio:
            raise RemoteTransientError("Speech synthesis returned no audio")
        return audio
