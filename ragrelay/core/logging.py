from __future__ import annotations

import logging

from ragrelay.core.config import get_settings


_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"

# Rejections that security review reads separately from operational noise.
SECURITY_LOGGER_NAME = "ragrelay.security"


def configure_logging() -> None:
    # Configure the root logger once per process; repeated calls only adjust the level.
    settings = get_settings()
    level = logging.getLevelName(settings.log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO
    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(level=level, format=_LOG_FORMAT)
    root.setLevel(level)
    # httpx logs every request at INFO which drowns out delivery events.
    logging.getLogger("httpx").setLevel(max(level, logging.WARNING))


def get_security_logger() -> logging.Logger:
    return logging.getLogger(SECURITY_LOGGER_NAME)
