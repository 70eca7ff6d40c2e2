from __future__ import annotations

import json
import logging
import os
import sys
from dataclasses import dataclass
from logging.handlers import RotatingFileHandler
from typing import Any, Optional

from starkcommit.config import LoggingConfig


@dataclass(frozen=True)
class LoggingOptions:
    level: str = "INFO"
    format: str = "text"  # text | json
    file: Optional[str] = None


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        context = getattr(record, "context", None)
        if context is not None:
            payload["context"] = context
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def _normalize_level(level: str) -> str:
    return level.strip().upper()


def _normalize_format(fmt: str) -> str:
    lowered = fmt.strip().lower()
    if lowered in {"text", "json"}:
        return lowered
    raise ValueError(f"Invalid log format: {fmt}")


def load_logging_options_from_env() -> LoggingOptions:
    """Load logging options from environment.

    Env vars:
        - STARKCOMMIT_LOG_LEVEL
        - STARKCOMMIT_LOG_FORMAT
        - STARKCOMMIT_LOG_FILE
    """
    level = os.getenv("STARKCOMMIT_LOG_LEVEL", "INFO")
    fmt = os.getenv("STARKCOMMIT_LOG_FORMAT", "text")
    file = os.getenv("STARKCOMMIT_LOG_FILE")
    return LoggingOptions(level=level, format=fmt, file=file)


def options_from_config(config: LoggingConfig) -> LoggingOptions:
    return LoggingOptions(level=config.level, format=config.format, file=config.file)


def _formatter(fmt: str, *, with_time: bool) -> logging.Formatter:
    if fmt == "json":
        return JSONFormatter()
    if with_time:
        return logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")
    return logging.Formatter("%(levelname)s %(name)s: %(message)s")


def configure_logging(options: LoggingOptions) -> None:
    """Configure logging for starkcommit.

    Preconditions:
        - options.level is a valid logging level name
        - options.format in {"text", "json"}

    Postconditions:
        - Logger hierarchy under "starkcommit" is configured
        - Logs emit to stderr (and optional rotating file)
    """
    fmt = _normalize_format(options.format)
    logger = logging.getLogger("starkcommit")
    logger.setLevel(getattr(logging, _normalize_level(options.level), logging.INFO))

    logger.handlers.clear()
    logger.propagate = False

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(_formatter(fmt, with_time=False))
    logger.addHandler(handler)

    if options.file:
        file_handler = RotatingFileHandler(
            options.file,
            maxBytes=10 * 1024 * 1024,
            backupCount=3,
        )
        file_handler.setFormatter(_formatter(fmt, with_time=True))
        logger.addHandler(file_handler)
