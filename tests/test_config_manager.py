import errno
import tempfile
import unittest
from pathlib import Path
from unittest import mock

import yaml

from voicecal.config_manager import ConfigManager, apply_env_overrides
from voicecal.models import AppConfig


class ConfigManagerTests(unittest.TestCase):
    def test_creates_default_file(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            config_path = Path(temp_dir) / "nested" / "config.yaml"
            manager = ConfigManager(str(config_path), environ={})
            self.assertTrue(config_path.exists())
            self.assertEqual(manager.load(), AppConfig())

    def test_save_fallback_when_replace_ebusy(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            config_path = Path(temp_dir) / "config.yaml"
            manager = ConfigManager(str(config_path), environ={})
            config = AppConfig.from_dict(
                {
                    "caldav": {"base_url": "https://dav.example.com", "username": "u", "password": "p"},
                    "ai": {"base_url": "https://api.example.com/v1", "api_key": "k", "model": "gpt-4o-mini"},
                }
            )

            original_replace = Path.replace

            def replace_side_effect(self: Path, target: Path) -> Path:
                if str(self).endswith(".tmp"):
                    raise OSError(errno.EBUSY, "Device or resource busy")
                return original_replace(self, target)

            with mock.patch("pathlib.Path.replace", new=replace_side_effect):
                manager.save(config)

            self.assertTrue(config_path.exists())
            self.assertFalse(Path(str(config_path) + ".tmp").exists())
            data = yaml.safe_load(config_path.read_text(encoding="utf-8"))
            self.assertEqual(data["caldav"]["base_url"], "https://dav.example.com")
            self.assertEqual(data["ai"]["api_key"], "k")

    def test_env_overrides_apply_on_load_but_are_not_saved(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            config_path = Path(temp_dir) / "config.yaml"
            environ = {
                "OPENAI_API_KEY": "env-key",
                "CALDAV_URL": "https://env.example.com/dav",
                "MAX_UPLOAD_SIZE": "10mb",
                "STATUS_POLL_TIMEOUT": "5000",
                "AUDIO_OUTPUT_FORMAT": "mp3",
            }
            manager = ConfigManager(str(config_path), environ=environ)
            config = manager.update({"jobs": {"lookahead_days": 30}})

            self.assertEqual(config.ai.api_key, "env-key")
            self.assertEqual(config.caldav.base_url, "https://env.example.com/dav")
            self.assertEqual(config.audio.max_upload_mb, 10)
            self.assertEqual(config.audio.output_format, ".mp3")
            self.assertEqual(config.jobs.status_poll_timeout_seconds, 5.0)
            self.assertEqual(config.jobs.lookahead_days, 30)

            stored = yaml.safe_load(config_path.read_text(encoding="utf-8"))
            self.assertEqual(stored["ai"]["api_key"], "")
            self.assertEqual(stored["jobs"]["lookahead_days"], 30)

    def test_invalid_env_value_is_ignored(self) -> None:
        with self.assertLogs("voicecal.config_manager", "WARNING"):
            data = apply_env_overrides({"ai": {"tts_speed": 1.5}}, {"TTS_SPEED": "fast", "LOG_LEVEL": "debug"})
        self.assertEqual(data["ai"]["tts_speed"], 1.5)
        self.assertEqual(data["log_level"], "debug")

    def test_masked_hides_secrets(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            manager = ConfigManager(str(Path(temp_dir) / "config.yaml"), environ={"CALDAV_PASSWORD": "pw"})
            masked = manager.masked()
            self.assertEqual(masked["caldav"]["password"], "***")
            self.assertEqual(masked["ai"]["api_key"], "")


if __name__ == "__main__":
    unittest.main()
