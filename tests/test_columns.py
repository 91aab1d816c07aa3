"""Unit tests for the deterministic column set."""

from __future__ import annotations

import itertools

from pipeline.columns import resolve_columns


def test_union_of_keys_is_sorted() -> None:
    """Columns should be the sorted union of every record's keys."""
    batch = [{"b": 1, "a": 2}, {"c": 3}, {"a": 4}]
    assert resolve_columns(batch) == ("a", "b", "c")


def test_preserved_fields_are_added_once() -> None:
    """Preserved fields join the set even when no record carries them."""
    batch = [{"id": 1, "name": "x"}]
    assert resolve_columns(batch, ["createdAt", "name"]) == ("createdAt", "id", "name")


def test_order_is_independent_of_record_order() -> None:
    """Every permutation of the same records should give the same columns."""
    batch = [{"z": 1}, {"y": 1, "x": 1}, {"w": 1}]
    expected = resolve_columns(batch)
    for perm in itertools.permutations(batch):
        assert resolve_columns(list(perm)) == expected


def test_sorting_uses_byte_order() -> None:
    """Uppercase sorts before lowercase and ASCII before multi-byte names."""
    batch = [{"b": 1, "B": 1, "é": 1, "a": 1, "_x": 1}]
    assert resolve_columns(batch) == ("B", "_x", "a", "b", "é")


def test_empty_batch_without_preserved_fields_is_empty() -> None:
    """No records and no preserved fields means no columns."""
    assert resolve_columns([]) == ()
