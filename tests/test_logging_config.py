"""Tests for structured logging helpers."""

from __future__ import annotations

import json
import logging
from typing import Any

from infra.logging_config import (
    JsonFormatter,
    StructuredLogger,
    TextFormatter,
    clear_run_context,
    get_run_context,
    set_run_context,
)


def _record(caplog: Any, event: str) -> logging.LogRecord:
    return next(r for r in caplog.records if getattr(r, "event", None) == event)


def test_structured_logger_attaches_fields(caplog: Any) -> None:
    """Keyword fields become record attributes and the `fields` mapping."""
    caplog.set_level(logging.DEBUG)
    StructuredLogger("upsertpipe.test").info("insert_chunk_executed", table="t", rows_affected=2)

    record = _record(caplog, "insert_chunk_executed")
    assert record.getMessage() == "insert_chunk_executed"
    assert record.table == "t"  # type: ignore[attr-defined]
    assert record.fields == {"table": "t", "rows_affected": 2}  # type: ignore[attr-defined]


def test_reserved_field_names_are_prefixed(caplog: Any) -> None:
    """Fields clashing with LogRecord attributes must not break logging."""
    caplog.set_level(logging.INFO)
    StructuredLogger("upsertpipe.test").info("stage_started", name="SQLWriter", module="x")

    record = _record(caplog, "stage_started")
    assert record.fields == {"field_name": "SQLWriter", "field_module": "x"}  # type: ignore[attr-defined]


def test_json_formatter_includes_fields_and_run_context(caplog: Any) -> None:
    """JSON output carries the event fields plus the run context."""
    caplog.set_level(logging.INFO)
    set_run_context(run_id="r-1")
    try:
        StructuredLogger("upsertpipe.test").info("insert_committed", table="t", rows=3)
        record = _record(caplog, "insert_committed")
        payload = json.loads(JsonFormatter(extra_fields={"service": "upsertpipe"}).format(record))
    finally:
        clear_run_context()

    assert payload["event"] == "insert_committed"
    assert payload["table"] == "t"
    assert payload["rows"] == 3
    assert payload["run_id"] == "r-1"
    assert payload["service"] == "upsertpipe"
    assert "fields" not in payload


def test_text_formatter_appends_key_values(caplog: Any) -> None:
    """Text output lists the structured fields after the message."""
    caplog.set_level(logging.INFO)
    StructuredLogger("upsertpipe.test").info("insert_rolling_back", table="t")

    line = TextFormatter().format(_record(caplog, "insert_rolling_back"))
    assert line.endswith("| insert_rolling_back | table=t")


def test_run_context_is_copied_and_cleared() -> None:
    """set_run_context merges; clear_run_context resets."""
    clear_run_context()
    set_run_context(run_id="r-2")
    set_run_context(command="write")
    ctx = get_run_context()
    ctx["mutated"] = True

    assert get_run_context() == {"run_id": "r-2", "command": "write"}
    clear_run_context()
    assert get_run_context() == {}


def test_exception_logs_traceback(caplog: Any) -> None:
    """exception() records exc_info for the active exception."""
    caplog.set_level(logging.ERROR)
    try:
        raise ValueError("boom")
    except ValueError:
        StructuredLogger("upsertpipe.test").exception("stage_crashed", stage="SQLWriter")

    record = _record(caplog, "stage_crashed")
    assert record.exc_info is not None
    assert record.stage == "SQLWriter"  # type: ignore[attr-defined]
