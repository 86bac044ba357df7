"""Logging helpers for the todosync server and client.

Sync and storage code attach context to their records through ``extra=``
(``operation``, ``version``, ``expected_version``, ``status_code``, ``user``).
The text formatter appends those fields as ``key=value`` pairs and the JSON
formatter nests them under ``context``, so a conflict or a discarded pull can
be traced by version across devices.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
import sys
from typing import Any, Dict, Optional, Union

LOG_SUBPATH = Path("logs") / "todosync.log"
STRUCTURED_LOG_SUBPATH = Path("logs") / "todosync.jsonl"
MAX_BYTES = 5 * 1024 * 1024
BACKUP_COUNT = 3
REPO_ROOT = Path(__file__).resolve().parent.parent
FALLBACK_ROOT = REPO_ROOT / ".todosync_runtime"

CONTEXT_FIELDS = ("operation", "version", "expected_version", "status_code", "user")

# Each poll tick and keep-alive ping is an HTTP request.
NOISY_LOGGERS = ("httpx", "httpcore", "uvicorn.access")


def record_context(record: logging.LogRecord) -> Dict[str, Any]:
    """Return the sync context attached to ``record`` via ``extra=``."""
    return {
        name: getattr(record, name)
        for name in CONTEXT_FIELDS
        if getattr(record, name, None) is not None
    }


class ContextFormatter(logging.Formatter):
    """Plain text lines with any sync context appended as ``key=value``."""

    def __init__(self) -> None:
        super().__init__("%(asctime)s [%(levelname)s] %(name)s: %(message)s")

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        context = record_context(record)
        if not context:
            return line
        pairs = " ".join(f"{key}={value}" for key, value in context.items())
        head, sep, tail = line.partition("\n")
        return f"{head} [{pairs}]{sep}{tail}"


class JSONFormatter(logging.Formatter):
    """One JSON object per record, with sync context under ``context``."""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        context = record_context(record)
        if context:
            entry["context"] = context
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def setup_logging(
    data_dir: Path,
    level: Union[str, int] = logging.WARNING,
    structured: bool = True,
    structured_path: Optional[str] = None,
) -> Path:
    """Route the ``todosync`` logger to a rotating text log and the console.

    Args:
        data_dir: Data directory; logs go under ``<data_dir>/logs``.
        level: Logging level name or constant.
        structured: Also write JSON lines for the sync context.
        structured_path: JSON log location relative to ``data_dir``.

    Returns:
        Path to the text log file.
    """
    log_path = _log_file(data_dir, LOG_SUBPATH, "logs")

    text_formatter = ContextFormatter()
    handlers = [_rotating(log_path, text_formatter), logging.StreamHandler()]
    handlers[1].setFormatter(text_formatter)

    if structured:
        subpath = Path(structured_path) if structured_path else STRUCTURED_LOG_SUBPATH
        json_path = _log_file(data_dir, subpath, "structured logs")
        handlers.append(_rotating(json_path, JSONFormatter()))

    logger = logging.getLogger("todosync")
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.setLevel(_resolve_level(level))
    for handler in handlers:
        logger.addHandler(handler)
    logger.propagate = False

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    return log_path


def _rotating(path: Path, formatter: logging.Formatter) -> RotatingFileHandler:
    handler = RotatingFileHandler(path, maxBytes=MAX_BYTES, backupCount=BACKUP_COUNT, encoding="utf-8")
    handler.setFormatter(formatter)
    return handler


def _resolve_level(level: Union[str, int]) -> int:
    if isinstance(level, str):
        return getattr(logging, level.upper(), logging.WARNING)
    return int(level)


def _log_file(data_dir: Path, subpath: Path, label: str) -> Path:
    target = data_dir / subpath
    try:
        target.parent.mkdir(parents=True, exist_ok=True)
        return target
    except PermissionError:
        fallback = FALLBACK_ROOT / subpath
        fallback.parent.mkdir(parents=True, exist_ok=True)
        print(
            f"[config] Unable to write {label} under '{data_dir}'; "
            f"falling back to '{fallback.parent}'.",
            file=sys.stderr,
        )
        return fallback


__all__ = [
    "CONTEXT_FIELDS",
    "ContextFormatter",
    "FALLBACK_ROOT",
    "JSONFormatter",
    "LOG_SUBPATH",
    "STRUCTURED_LOG_SUBPATH",
    "record_context",
    "setup_logging",
]
