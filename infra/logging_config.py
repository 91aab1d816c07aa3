"""Centralized logging configuration.

The repository supports both human-friendly text logs and structured JSON logs.
The CLI uses this module to configure logging in a defensive way (so it
doesn't break environments that already configure root handlers).

Pipeline components never configure logging themselves; they receive a
``StructuredLogger`` (or anything with the same ``info``/``debug`` methods)
and default to one named after their module.
"""

from __future__ import annotations

import json
import logging
import sys
import time
from collections.abc import Mapping
from contextvars import ContextVar
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from infra.config import get_settings

# Context that follows a pipeline run through every stage it starts.
# Use set_run_context() to populate, clear_run_context() to reset
run_ctx: ContextVar[dict[str, Any] | None] = ContextVar("run_ctx", default=None)

# LogRecord attributes; structured fields with these names would make
# Logger.makeRecord raise, so they are prefixed instead.
_RESERVED_ATTRS = frozenset(
    {
        "name", "msg", "args", "levelname", "levelno", "pathname", "filename", "module",
        "exc_info", "exc_text", "stack_info", "lineno", "funcName", "created", "msecs",
        "relativeCreated", "thread", "threadName", "processName", "process", "taskName",
        "message", "asctime",
    }
)


def set_run_context(**kwargs: Any) -> None:
    """Set context values that will be included in all subsequent log entries."""
    current = run_ctx.get()
    if current is None:
        current = {}
    else:
        current = dict(current)
    current.update(kwargs)
    run_ctx.set(current)


def clear_run_context() -> None:
    """Clear the run context (typically when a pipeline run ends)."""
    run_ctx.set({})


def get_run_context() -> dict[str, Any]:
    """Get a copy of the current run context."""
    ctx = run_ctx.get()
    return dict(ctx) if ctx else {}


def _utc_iso8601() -> str:
    # Example: 2026-01-24T18:03:12.123Z
    return datetime.now(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class JsonFormatter(logging.Formatter):
    """
    Safe JSON formatter:
      - Always outputs valid JSON (message escaped via json.dumps)
      - Adds common process/thread fields
      - Includes exception info when present
    """

    def __init__(self, *, extra_fields: Mapping[str, Any] | None = None) -> None:
        super().__init__()
        self._extra_fields = dict(extra_fields or {})

    def format(self, record: logging.LogRecord) -> str:
        base: dict[str, Any] = {
            "timestamp": _utc_iso8601(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "func": record.funcName,
            "line": record.lineno,
            "process": record.process,
            "thread": record.threadName,
        }

        # Optional structured context via `extra={...}`
        for k, v in self._extract_extras(record).items():
            if k not in base:
                base[k] = v

        for k, v in self._extra_fields.items():
            base.setdefault(k, v)

        if record.exc_info:
            base["exception"] = self.formatException(record.exc_info)

        ctx = run_ctx.get()
        if ctx:
            for k, v in ctx.items():
                if k not in base:
                    base[k] = v

        return json.dumps(base, ensure_ascii=False, default=str)

    @staticmethod
    def _extract_extras(record: logging.LogRecord) -> dict[str, Any]:
        # Heuristic: anything not in standard LogRecord attributes is "extra"
        extras: dict[str, Any] = {}
        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS and key != "fields":
                extras[key] = value
        return extras


class TextFormatter(logging.Formatter):
    """
    Human-friendly logs, but UTC timestamps.

    Structured fields are appended as ``key=value`` pairs.
    """
    converter = time.gmtime  # UTC

    def __init__(self) -> None:
        super().__init__("%(asctime)sZ | %(levelname)s | %(name)s | %(message)s")

    def format(self, record: logging.LogRecord) -> str:
        text = super().format(record)
        fields = getattr(record, "fields", None)
        if fields:
            pairs = " ".join(f"{k}={v}" for k, v in fields.items())
            text = f"{text} | {pairs}"
        return text


class StructuredLogger:
    """
    Event-style logger with automatic context injection.

    Usage:
        from infra.logging_config import StructuredLogger, set_run_context

        logger = StructuredLogger(__name__)

        set_run_context(run_id="r-1", stage="SQLWriter")
        logger.info("chunk_executed", table="events", rows=100)
        # Output (JSON): {"timestamp": "...", "level": "INFO", "event": "chunk_executed",
        #                 "table": "events", "rows": 100, "run_id": "r-1", ...}
    """

    def __init__(self, name: str) -> None:
        self._logger = logging.getLogger(name)

    @property
    def name(self) -> str:
        return self._logger.name

    def _log(self, level: int, event: str, **kwargs: Any) -> None:
        if not self._logger.isEnabledFor(level):
            return
        fields = {(f"field_{k}" if k in _RESERVED_ATTRS else k): v for k, v in kwargs.items()}
        extra = {"event": event, "fields": fields, **fields}
        self._logger.log(level, event, extra=extra)

    def debug(self, event: str, **kwargs: Any) -> None:
        self._log(logging.DEBUG, event, **kwargs)

    def info(self, event: str, **kwargs: Any) -> None:
        self._log(logging.INFO, event, **kwargs)

    def warning(self, event: str, **kwargs: Any) -> None:
        self._log(logging.WARNING, event, **kwargs)

    def error(self, event: str, **kwargs: Any) -> None:
        self._log(logging.ERROR, event, **kwargs)

    def exception(self, event: str, **kwargs: Any) -> None:
        """Log an error together with the exception being handled."""
        if not self._logger.isEnabledFor(logging.ERROR):
            return
        fields = {(f"field_{k}" if k in _RESERVED_ATTRS else k): v for k, v in kwargs.items()}
        self._logger.error(event, exc_info=True, extra={"event": event, "fields": fields, **fields})


@dataclass(frozen=True)
class LoggingConfig:
    level: str = "INFO"
    json_logs: bool = False
    override_root_handlers: bool = False
    extra_fields: Mapping[str, Any] | None = None


def setup_logging(
    *,
    level: str | None = None,
    json_logs: bool | None = None,
    override_root_handlers: bool | None = None,
    extra_fields: Mapping[str, Any] | None = None,
) -> None:
    """
    Central logging setup for the repo.

    Env vars:
      - UPSERTPIPE_LOG_LEVEL: DEBUG|INFO|WARNING|ERROR (default INFO)
      - UPSERTPIPE_LOG_JSON:  1/0 (default 0)
      - UPSERTPIPE_LOG_OVERRIDE: 1/0 (default 0)
         If 1, replaces any pre-configured root handlers.
         If 0, only configures logging if root has no handlers.
    """
    config = get_settings(reload=True).logging

    cfg = LoggingConfig(
        level=(level or config.level).upper(),
        json_logs=json_logs if json_logs is not None else bool(config.json_logs),
        override_root_handlers=override_root_handlers
        if override_root_handlers is not None
        else bool(config.override_root_handlers),
        extra_fields=extra_fields,
    )

    root = logging.getLogger()
    root.setLevel(getattr(logging, cfg.level, logging.INFO))

    handler = logging.StreamHandler(sys.stderr)
    if cfg.json_logs:
        handler.setFormatter(JsonFormatter(extra_fields=cfg.extra_fields))
    else:
        handler.setFormatter(TextFormatter())

    if cfg.override_root_handlers:
        for h in list(root.handlers):
            root.removeHandler(h)
        root.addHandler(handler)
    else:
        if not root.handlers:
            root.addHandler(handler)

    logging.getLogger("duckdb").setLevel(logging.WARNING)
