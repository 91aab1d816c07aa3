"""
Protocol definitions for dependency injection.

This module defines explicit interfaces (Protocols) for the collaborators of
the writer pipeline, enabling:
- Easy mocking in tests
- Clear contracts between components
- Swapping SQLite / DuckDB / PostgreSQL store adapters without touching
  the compiler or executor

Usage:
    from contracts.interfaces import StoreProtocol, DataProcessor

    # In production, use pipeline.store adapters
    # In tests, use small fakes recording executed statements
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from pipeline.compiler import SqlDialect
    from pipeline.runtime import CancellationSignal, Channel


# -----------------------------------------------------------------------------
# Store Protocols
# -----------------------------------------------------------------------------

@runtime_checkable
class ExecResultProtocol(Protocol):
    """Outcome of one executed statement."""

    rows_affected: int
    last_insert_id: int | None


@runtime_checkable
class TransactionProtocol(Protocol):
    """One open transaction on a store connection."""

    def execute(self, sql: str, args: Sequence[Any]) -> ExecResultProtocol:
        """Prepare and execute one statement inside the transaction."""
        ...

    def commit(self) -> None:
        """Commit the transaction."""
        ...

    def rollback(self) -> None:
        """Roll the transaction back."""
        ...

    def close(self) -> None:
        """Release the underlying connection."""
        ...


@runtime_checkable
class StoreProtocol(Protocol):
    """Transactional store handle shared by every writer invocation."""

    dialect: SqlDialect

    def begin(self) -> TransactionProtocol:
        """Open a new private transaction scope."""
        ...

    def fetch_all(self, sql: str, args: Sequence[Any] = ()) -> list[dict[str, Any]]:
        """Run a read query outside any writer transaction, rows as dicts."""
        ...

    def close(self) -> None:
        """Release every connection held by the store."""
        ...


# -----------------------------------------------------------------------------
# Logging Protocol
# -----------------------------------------------------------------------------

@runtime_checkable
class EventLoggerProtocol(Protocol):
    """Structured logger accepting an event name plus keyword fields."""

    def debug(self, event: str, **kwargs: Any) -> None:
        ...

    def info(self, event: str, **kwargs: Any) -> None:
        ...

    def warning(self, event: str, **kwargs: Any) -> None:
        ...

    def error(self, event: str, **kwargs: Any) -> None:
        ...

    def exception(self, event: str, **kwargs: Any) -> None:
        ...


# -----------------------------------------------------------------------------
# Pipeline Protocols
# -----------------------------------------------------------------------------

@runtime_checkable
class DataProcessor(Protocol):
    """One stage of a pipeline.

    ``process`` is called once per input item, possibly from several worker
    threads at once; ``finish`` once after the input is exhausted.
    """

    def process(self, item: Any, output: Channel, signal: CancellationSignal) -> None:
        """Handle one item, forwarding results to *output*."""
        ...

    def finish(self, output: Channel, signal: CancellationSignal) -> None:
        """Flush anything buffered once the stage input is closed."""
        ...

    def describe(self) -> str:
        """Return a short stage name for logs."""
        ...

    def concurrency(self) -> int:
        """Return the worker pool size for this stage."""
        ...


__all__ = [
    "DataProcessor",
    "EventLoggerProtocol",
    "ExecResultProtocol",
    "StoreProtocol",
    "TransactionProtocol",
]
