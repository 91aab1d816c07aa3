"""Error taxonomy for the writer pipeline.

Every error raised by the normalizer, the statement compiler, the batch
executor or a pipeline stage derives from ``UpsertPipeError`` so that the
stage boundary can tell expected failures from unexpected ones.
"""

from __future__ import annotations


class UpsertPipeError(RuntimeError):
    """Base error for the writer pipeline."""


class ConfigError(UpsertPipeError):
    """Raised when writer or policy configuration is inconsistent."""


class ParseError(UpsertPipeError):
    """Raised when a payload or routed envelope has the wrong shape."""


class MissingKeyError(UpsertPipeError):
    """Raised when a record lacks a value for a bound primary-key column."""

    def __init__(self, column: str, *, row: int | None = None) -> None:
        where = f" (row {row})" if row is not None else ""
        super().__init__(f"Missing value for primary key: {column}{where}")
        self.column = column
        self.row = row


class CompileError(UpsertPipeError):
    """Raised when a statement cannot be built from the given batch."""


class StoreError(UpsertPipeError):
    """Raised when the store fails to begin, execute, commit or roll back.

    The driver exception is chained as ``__cause__``.
    """

    def __init__(self, operation: str, message: str) -> None:
        super().__init__(f"{operation} failed: {message}")
        self.operation = operation


class PipelineAbort(UpsertPipeError):
    """Raised for an unexpected fault recovered at a stage boundary."""

    def __init__(self, message: str, *, cause: BaseException | None = None) -> None:
        super().__init__(message)
        self.cause = cause


__all__ = [
    "CompileError",
    "ConfigError",
    "MissingKeyError",
    "ParseError",
    "PipelineAbort",
    "StoreError",
    "UpsertPipeError",
]
