"""Value types passed between the normalizer, compiler, executor and stages."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Union

from contracts.errors import ConfigError

Scalar = Union[str, int, float, bool, None]
Record = Mapping[str, Any]
Batch = list[Record]


class UpsertMode(str, Enum):
    """Conflict handling applied to generated INSERT statements."""

    INSERT_ONLY = "insert-only"
    REPLACE = "replace"
    REPLACE_PRESERVING = "replace-preserving"


def _names(values: Iterable[str] | None, *, what: str) -> tuple[str, ...]:
    """Normalize a list of column names into a duplicate-free tuple."""
    out: list[str] = []
    for value in values or ():
        name = str(value or "").strip()
        if not name:
            raise ConfigError(f"{what} must not contain empty column names")
        if name not in out:
            out.append(name)
    return tuple(out)


@dataclass(frozen=True)
class UpsertPolicy:
    """Upsert/preserve policy for one writer.

    ``preserved_fields`` only change the generated row template in replace
    modes; they are always part of the column set.
    """

    mode: UpsertMode = UpsertMode.INSERT_ONLY
    primary_keys: tuple[str, ...] = ()
    preserved_fields: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "mode", UpsertMode(self.mode))
        object.__setattr__(self, "primary_keys", _names(self.primary_keys, what="primary_keys"))
        object.__setattr__(self, "preserved_fields", _names(self.preserved_fields, what="preserved_fields"))
        if self.preserved_fields and not self.primary_keys:
            raise ConfigError("primary_keys required if preserved_fields specified")

    @classmethod
    def insert_only(cls, *, primary_keys: Iterable[str] = (), preserved_fields: Iterable[str] = ()) -> UpsertPolicy:
        return cls(UpsertMode.INSERT_ONLY, tuple(primary_keys), tuple(preserved_fields))

    @classmethod
    def replace_all(cls, primary_keys: Iterable[str] = ()) -> UpsertPolicy:
        return cls(UpsertMode.REPLACE, tuple(primary_keys))

    @classmethod
    def replace_preserving(cls, primary_keys: Iterable[str], preserved_fields: Iterable[str]) -> UpsertPolicy:
        return cls(UpsertMode.REPLACE_PRESERVING, tuple(primary_keys), tuple(preserved_fields))

    @property
    def replaces(self) -> bool:
        return self.mode is not UpsertMode.INSERT_ONLY

    def preserves(self, column: str) -> bool:
        """Return True when *column* keeps its stored value on replace."""
        return self.replaces and column in self.preserved_fields


@dataclass(frozen=True)
class RoutedBatch:
    """Envelope routing a nested payload to an explicit table."""

    table: str
    payload: Any


@dataclass(frozen=True)
class CompiledStatement:
    """SQL text plus the argument list bound to its placeholders, in order."""

    sql: str
    args: tuple[Any, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class ChunkResult:
    """Execution stats for one chunk statement."""

    index: int
    rows: int
    rows_affected: int
    last_insert_id: int | None = None


__all__ = [
    "Batch",
    "ChunkResult",
    "CompiledStatement",
    "Record",
    "RoutedBatch",
    "Scalar",
    "UpsertMode",
    "UpsertPolicy",
]
