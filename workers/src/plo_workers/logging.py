"""Structured logging for PLO workers.

``PLO_LOG_FORMAT`` picks "json" (default, one object per line) or "text".
Fields bound with ``log_context`` are stamped as ``plo_*`` attributes on every
record emitted inside the block, so a job's event id reaches the rule engine
and notification logs without threading it through each call.
"""

import contextvars
import json
import logging
import sys
import traceback
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any

SERVICE_NAME = "plo-workers"

_context: contextvars.ContextVar[dict[str, Any]] = contextvars.ContextVar("plo_log_context", default={})


@contextmanager
def log_context(**fields: Any) -> Iterator[None]:
    """Bind ``plo_<name>`` fields for the current task until the block exits."""
    merged = {**_context.get(), **{f"plo_{key}": value for key, value in fields.items()}}
    token = _context.set(merged)
    try:
        yield
    finally:
        _context.reset(token)


def current_context() -> dict[str, Any]:
    return dict(_context.get())


class ContextFilter(logging.Filter):
    """Copy bound context onto records; explicit ``extra`` values win."""

    def filter(self, record: logging.LogRecord) -> bool:
        for key, value in _context.get().items():
            if not hasattr(record, key):
                setattr(record, key, value)
        return True


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "service": SERVICE_NAME,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
        }
        if record.exc_info and record.exc_info[1] is not None:
            entry["exception"] = "".join(traceback.format_exception(*record.exc_info))

        entry.update(
            (key, value) for key, value in sorted(record.__dict__.items()) if key.startswith("plo_")
        )
        return json.dumps(entry, default=str)


class TextFormatter(logging.Formatter):
    """Plain lines with bound ``plo_*`` fields appended as ``key=value``."""

    def __init__(self) -> None:
        super().__init__("%(asctime)s %(levelname)s %(name)s: %(message)s")

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        fields = " ".join(
            f"{key[4:]}={value}" for key, value in sorted(record.__dict__.items()) if key.startswith("plo_")
        )
        return f"{line} [{fields}]" if fields else line


def setup_logging(log_format: str, level: int = logging.INFO) -> None:
    """Point the root logger at stderr with the JSON or text formatter."""
    root = logging.getLogger()
    root.setLevel(level)
    for handler in root.handlers[:]:
        root.removeHandler(handler)

    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(level)
    handler.addFilter(ContextFilter())
    handler.setFormatter(JSONFormatter() if log_format == "json" else TextFormatter())
    root.addHandler(handler)
