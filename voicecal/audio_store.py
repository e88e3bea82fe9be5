from __future__ import annotations

import logging
import secrets
import time
from pathlib import Path

from voicecal.models import VALID_INPUT_FORMATS, VALID_OUTPUT_FORMATS, AudioConfig

logger = logging.getLogger(__name__)

MIME_TYPES = {
    ".wav": "audio/wav",
    ".mp3": "audio/mpeg",
    ".ogg": "audio/ogg",
    ".opus": "audio/ogg",
    ".aac": "audio/aac",
    ".flac": "audio/flac",
    ".pcm": "audio/L16",
}

# Browsers record in whatever container they support, so cleanup tries them all.
CLEANUP_INPUT_FORMATS = (".webm", ".ogg", ".wav", ".mp3", ".m4a", ".flac")


class AudioStore:
    """Per-job input and output audio files under one storage directory."""

    def __init__(self, storage_dir: str, input_format: str = ".wav", output_format: str = ".wav") -> None:
        if input_format not in VALID_INPUT_FORMATS:
            raise ValueError(
                f"Invalid audio input format: {input_format}. Valid formats: {', '.join(VALID_INPUT_FORMATS)}"
            )
        if output_format not in VALID_OUTPUT_FORMATS:
            raise ValueError(
                f"Invalid audio output format: {output_format}. Valid formats: {', '.join(VALID_OUTPUT_FORMATS)}"
            )
        self.storage_dir = Path(storage_dir)
        self.storage_dir.mkdir(parents=True, exist_ok=True)
        self.input_format = input_format
        self.output_format = output_format

    @classmethod
    def from_config(cls, config: AudioConfig) -> "AudioStore":
        return cls(config.storage_dir, config.input_format, config.output_format)

    @staticmethod
    def generate_job_id(prefix: str = "evt") -> str:
        return f"{prefix}_{int(time.time() * 1000)}_{secrets.token_hex(6)}"

    def input_path(self, job_id: str, audio_format: str | None = None) -> Path:
        return self.storage_dir / f"{job_id}_input{audio_format or self.input_format}"

    def output_path(self, job_id: str) -> Path:
        return self.storage_dir / f"{job_id}_output{self.output_format}"

    @property
    def mime_type(self) -> str:
        return MIME_TYPES.get(self.output_format, "application/octet-stream")

    def read_input(self, job_id: str) -> bytes:
        return self.input_path(job_id).read_bytes()

    def write_output(self, job_id: str, audio: bytes) -> Path:
        path = self.output_path(job_id)
        tmp_path = path.with_name(f"{path.name}.tmp")
        tmp_path.write_bytes(audio)
        tmp_path.replace(path)
        logger.debug("Wrote %d bytes of audio to %s", len(audio), path)
        return path

    def cleanup(self, job_id: str) -> int:
        removed = 0
        formats = dict.fromkeys(CLEANUP_INPUT_FORMATS + (self.input_format,))
        candidates = [self.input_path(job_id, audio_format) for audio_format in formats]
        candidates.append(self.output_path(job_id))
        for path in candidates:
            if path.exists():
                path.unlink()
                removed += 1
        if removed:
            logger.info("Removed %d audio file(s) for %s", removed, job_id)
        return removed
