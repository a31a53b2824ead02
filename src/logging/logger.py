# src/logging/logger.py - v3
"""Log formatters and the ``annoreview`` logger setup.

Modules log through ``logging.getLogger(__name__)``; everything below the
``annoreview`` logger picks up the handlers installed here. The active
operation and cache key (see ``logging.context``) are attached to every
record.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any

from annoreview.logging.context import get_context

if TYPE_CHECKING:
    from annoreview.config.settings import Settings

ROOT_LOGGER = "annoreview"


def _timestamp() -> datetime:
    return datetime.now(timezone.utc)


class JsonFormatter(logging.Formatter):
    """One JSON object per line, for log shipping."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": _timestamp().isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        context = get_context().as_dict()
        if context:
            payload["context"] = context

        data = getattr(record, "data", None)
        if data:
            payload["data"] = data
        if record.exc_info and record.exc_info[1] is not None:
            payload["exception"] = self.formatException(record.exc_info)

        return json.dumps(payload, default=str)


class TextFormatter(logging.Formatter):
    """Single-line console format: time, level, logger, operation, key."""

    def format(self, record: logging.LogRecord) -> str:
        ctx = get_context()
        line = f"{_timestamp():%Y-%m-%d %H:%M:%S} [{record.levelname:8s}] {record.name}"
        if ctx.operation:
            line += f" [{ctx.operation}]"
        if ctx.cache_key:
            line += f" ({ctx.cache_key})"
        line += f" - {record.getMessage()}"
        if record.exc_info and record.exc_info[1] is not None:
            line += "\n" + self.formatException(record.exc_info)
        return line


def setup_logging(
    level: str = "INFO",
    log_format: str = "json",
    log_file: str | Path | None = None,
    rotation: str = "10MB",
    retention: int = 30,
) -> logging.Logger:
    """(Re)configure the ``annoreview`` logger.

    Args:
        level: Log level name (DEBUG, INFO, WARNING, ERROR).
        log_format: "json" or "text".
        log_file: Optional rotating log file, in addition to stderr.
        rotation: Max file size before rotation (e.g. "10MB").
        retention: Number of rotated files to keep.
    """
    root = logging.getLogger(ROOT_LOGGER)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()

    formatter: logging.Formatter = JsonFormatter() if log_format == "json" else TextFormatter()

    # stdout carries CLI output
    console = logging.StreamHandler(sys.stderr)
    console.setFormatter(formatter)
    root.addHandler(console)

    if log_file:
        from annoreview.logging.handlers import create_rotating_handler

        file_handler = create_rotating_handler(log_file, rotation=rotation, retention=retention)
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)
    return root


def setup_logging_from_settings(settings: Settings, verbose: bool = False) -> logging.Logger:
    """Apply the ``log_*`` settings; ``verbose`` forces DEBUG."""
    return setup_logging(
        level="DEBUG" if verbose else settings.log_level,
        log_format=settings.log_format,
        log_file=settings.log_file,
        rotation=settings.log_rotation,
        retention=settings.log_retention,
    )
