"""
BLE Validation — Structured Logging

All logging via structlog. Every log entry includes system context.
"""

from __future__ import annotations

import collections
import datetime
import logging
import sys
from typing import TYPE_CHECKING, Any

import structlog
from pydantic import Field

from blevalidation.primitives.common import ValidationBaseModel, new_id

if TYPE_CHECKING:
    from blevalidation.config import LoggingConfig


# ─── In-memory Log Capture ───────────────────────────────────────────────────
# Every record emitted while a capture is attached is kept as a
# ValidationLogEntry so a run's log can be exported next to its results.

_MAX_ENTRIES = 10_000

_RESERVED_KEYS = {
    "name", "msg", "args", "levelname", "levelno", "pathname",
    "filename", "module", "exc_info", "exc_text", "stack_info",
    "lineno", "funcName", "created", "msecs", "relativeCreated",
    "thread", "threadName", "processName", "process", "message",
    "taskName",
}


class ValidationLogEntry(ValidationBaseModel):
    """One captured log record."""

    id: str = Field(default_factory=new_id)
    timestamp: str
    level: str
    category: str = ""
    message: str
    details: dict[str, Any] = {}
    phase: str | None = None
    step: str | None = None


def _format_record_time(record: logging.LogRecord) -> str:
    """ISO-8601 timestamp from the record's created float (no formatter needed)."""
    return (
        datetime.datetime.fromtimestamp(record.created, tz=datetime.timezone.utc)
        .strftime("%Y-%m-%dT%H:%M:%S.%f") + "Z"
    )


def _primitive(value: Any) -> Any:
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    return str(value)


class ValidationLogCapture(logging.Handler):
    """
    Standard-library logging handler that keeps every record as a
    structured ValidationLogEntry in a bounded buffer.

    Structlog event dicts arrive as ``record.msg`` when the stdlib
    ProcessorFormatter chain is active; plain records are handled too.
    """

    def __init__(self, max_entries: int = _MAX_ENTRIES) -> None:
        super().__init__()
        self._entries: collections.deque[ValidationLogEntry] = collections.deque(
            maxlen=max_entries,
        )

    def emit(self, record: logging.LogRecord) -> None:
        if isinstance(record.msg, dict):
            event_dict = dict(record.msg)
            message = str(event_dict.pop("event", ""))
        else:
            event_dict = {
                k: v for k, v in record.__dict__.items()
                if k not in _RESERVED_KEYS and not k.startswith("_")
            }
            message = record.getMessage()

        category = str(event_dict.pop("system", record.name))
        phase = event_dict.pop("phase", None)
        step = event_dict.pop("step", None)
        for meta in ("level", "logger", "timestamp"):
            event_dict.pop(meta, None)

        self._entries.append(ValidationLogEntry(
            timestamp=_format_record_time(record),
            level=record.levelname.upper(),
            category=category,
            message=message,
            details={k: _primitive(v) for k, v in event_dict.items()},
            phase=str(phase) if phase is not None else None,
            step=str(step) if step is not None else None,
        ))

    @property
    def entries(self) -> list[ValidationLogEntry]:
        return list(self._entries)

    def clear(self) -> None:
        self._entries.clear()


def attach_capture(capture: ValidationLogCapture) -> None:
    """Attach a capture handler to the root logger (no-op if already attached)."""
    root_logger = logging.getLogger()
    if capture not in root_logger.handlers:
        root_logger.addHandler(capture)


def detach_capture(capture: ValidationLogCapture) -> None:
    logging.getLogger().removeHandler(capture)


def setup_logging(config: LoggingConfig, run_id: str = "") -> None:
    """
    Configure structured logging for the entire application.
    """
    shared_processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if run_id:
        structlog.contextvars.bind_contextvars(run_id=run_id)

    renderer: Any
    if config.format == "json":
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=True)

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    captures = [h for h in root_logger.handlers if isinstance(h, ValidationLogCapture)]
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    for capture in captures:
        root_logger.addHandler(capture)
    root_logger.setLevel(getattr(logging, config.level.upper(), logging.INFO))

    logging.getLogger("asyncio").setLevel(logging.WARNING)
