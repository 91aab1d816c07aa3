"""Deterministic column set for a batch of heterogeneous records."""

from __future__ import annotations

from collections.abc import Iterable, Sequence

from contracts.records import Record


def _byte_order(name: str) -> bytes:
    return name.encode("utf-8")


def resolve_columns(batch: Sequence[Record], preserved_fields: Iterable[str] = ()) -> tuple[str, ...]:
    """Return the sorted union of every record's keys plus *preserved_fields*.

    Sorting is by UTF-8 byte value so the column list, and therefore the
    placeholder and argument order, is identical for identical inputs
    regardless of record order.
    """
    names: set[str] = set()
    for record in batch:
        names.update(record.keys())
    names.update(preserved_fields)
    return tuple(sorted(names, key=_byte_order))
