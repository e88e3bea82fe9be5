from __future__ import annotations

import logging
import os

import uvicorn

from voicecal.config_manager import ConfigManager

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT, force=True)


def main() -> None:
    host = os.getenv("VOICECAL_HOST", "0.0.0.0")
    port = int(os.getenv("VOICECAL_PORT", "3000"))
    config = ConfigManager(os.getenv("VOICECAL_CONFIG_PATH", "config.yaml")).load()
    configure_logging(config.log_level)
    uvicorn.run("voicecal.web_app:create_app", factory=True, host=host, port=port, reload=False, log_config=None)


if __name__ == "__main__":
    main()
