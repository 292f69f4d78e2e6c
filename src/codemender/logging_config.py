"""Logging setup for codemender runs.

Records carry the engine fields of the request being served (operation,
target, iteration, stage) so a log line can be traced back to one
correction attempt. The console goes through rich; the rotating file gets
either plain text or one JSON object per line.

Format and level come from the [general] config section, overridable with
CODEMENDER_LOG_FORMAT and CODEMENDER_LOG_LEVEL.
"""

from __future__ import annotations

import json
import logging
import logging.handlers
import os
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Literal

from rich.console import Console
from rich.logging import RichHandler

from codemender.paths import paths

LogFormat = Literal["text", "json"]

ENGINE_FIELDS = ("operation", "target", "iteration", "stage")

_STANDARD_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {
    "message",
    "asctime",
    "engine_fields",
}

_QUIET_LOGGERS = ("httpx", "httpcore", "anthropic")

# Fields of the request in flight; shared by the CLI thread and the worker
_active: dict[str, Any] = {}
_active_lock = threading.Lock()


def active_fields() -> dict[str, Any]:
    with _active_lock:
        return dict(_active)


class EngineFieldFilter(logging.Filter):
    """Stamps the active engine fields onto every record it sees.

    Values passed explicitly through ``extra=`` win over the active ones.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        for key, value in active_fields().items():
            if not hasattr(record, key):
                setattr(record, key, value)
        present = [
            f"{key}={getattr(record, key)}"
            for key in ENGINE_FIELDS
            if getattr(record, key, None) is not None
        ]
        record.engine_fields = f" [{' '.join(present)}]" if present else ""
        return True


class JsonFormatter(logging.Formatter):
    """One JSON object per record, engine fields at the top level."""

    def __init__(self, include_extra: bool = True):
        super().__init__()
        self.include_extra = include_extra

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key in ENGINE_FIELDS:
            value = getattr(record, key, None)
            if value is not None:
                entry[key] = value

        if record.exc_info:
            entry["exc"] = self.formatException(record.exc_info)

        if self.include_extra:
            extra = {
                key: value
                for key, value in record.__dict__.items()
                if key not in _STANDARD_ATTRS
                and key not in ENGINE_FIELDS
                and not key.startswith("_")
            }
            if extra:
                entry["extra"] = extra

        return json.dumps(entry, default=str, ensure_ascii=False)


def setup_logging(
    level: str | None = None,
    format: LogFormat | None = None,
    log_file: Path | None = None,
    max_bytes: int | None = None,
    backup_count: int | None = None,
) -> None:
    """Install the console and rotating file handlers on the root logger.

    Args:
        level: Log level name. Defaults to CODEMENDER_LOG_LEVEL or INFO.
        format: "text" or "json" for the file handler; "json" also makes
            the console emit JSON. Defaults to CODEMENDER_LOG_FORMAT or "text".
        log_file: Defaults to the log path under the XDG cache directory.
        max_bytes: Rotation size. Defaults to 1MB.
        backup_count: Rotated files kept. Defaults to 3.
    """
    level = level or os.environ.get("CODEMENDER_LOG_LEVEL", "INFO")
    format = format or os.environ.get("CODEMENDER_LOG_FORMAT", "text")  # type: ignore[assignment]
    log_file = log_file or paths.log_path
    max_bytes = max_bytes or 1_000_000
    backup_count = backup_count or 3

    root = logging.getLogger()
    root.setLevel(level.upper())
    root.handlers.clear()
    fields = EngineFieldFilter()

    console: logging.Handler
    if format == "json":
        console = logging.StreamHandler()
        console.setFormatter(JsonFormatter())
    else:
        console = RichHandler(
            console=Console(stderr=True),
            show_path=False,
            markup=False,
            rich_tracebacks=True,
        )
        console.setFormatter(logging.Formatter("%(message)s%(engine_fields)s"))
    console.addFilter(fields)
    root.addHandler(console)

    try:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            log_file, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8"
        )
    except OSError as e:
        root.warning("Could not create log file at %s: %s", log_file, e)
    else:
        if format == "json":
            file_handler.setFormatter(JsonFormatter())
        else:
            file_handler.setFormatter(
                logging.Formatter("%(asctime)s %(levelname)-7s %(name)s%(engine_fields)s: %(message)s")
            )
        file_handler.addFilter(fields)
        root.addHandler(file_handler)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


class LogContext:
    """Make engine fields active for every record logged inside the block.

    Usage:
        with LogContext(operation="fix", target="src/app.py"):
            orchestrator.correct_file("src/app.py")
    """

    def __init__(self, **fields: Any):
        unknown = set(fields) - set(ENGINE_FIELDS)
        if unknown:
            raise ValueError(f"Unknown log fields: {', '.join(sorted(unknown))}")
        self.fields = fields
        self._previous: dict[str, Any] = {}

    def __enter__(self) -> LogContext:
        with _active_lock:
            self._previous = dict(_active)
            _active.update(self.fields)
        return self

    def __exit__(self, *args: Any) -> None:
        with _active_lock:
            _active.clear()
            _active.update(self._previous)
