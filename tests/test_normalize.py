"""Unit tests for payload and routed envelope normalization."""

from __future__ import annotations

import pytest

from contracts.errors import ParseError
from contracts.records import RoutedBatch
from pipeline.normalize import decode_envelope, records_from_payload


def test_single_object_becomes_one_record() -> None:
    """A single object payload should yield a one-record batch."""
    assert records_from_payload({"a": 1}) == [{"a": 1}]


def test_array_keeps_record_order() -> None:
    """Array payloads should keep the input order of their objects."""
    records = records_from_payload([{"id": 2}, {"id": 1}, {"id": 3}])
    assert [r["id"] for r in records] == [2, 1, 3]


def test_json_text_and_bytes_are_decoded() -> None:
    """JSON text and UTF-8 bytes should decode like already-parsed payloads."""
    assert records_from_payload('[{"a": 1}, {"b": null}]') == [{"a": 1}, {"b": None}]
    assert records_from_payload(b'{"name": "caf\xc3\xa9"}') == [{"name": "café"}]


def test_empty_array_yields_empty_batch() -> None:
    """An empty array is a valid, empty batch."""
    assert records_from_payload([]) == []


@pytest.mark.parametrize("payload", [42, "not json", '"text"', None, [{"a": 1}, 2]])
def test_non_object_payloads_raise_parse_error(payload: object) -> None:
    """Scalars, invalid JSON and arrays holding non-objects should fail."""
    with pytest.raises(ParseError):
        records_from_payload(payload)


def test_plain_payload_has_no_table() -> None:
    """A mapping that is not an envelope is returned as the payload itself."""
    table, payload = decode_envelope({"id": 1, "payload": "x", "other": True})
    assert table is None
    assert payload == {"id": 1, "payload": "x", "other": True}


def test_routed_envelope_mapping_is_split() -> None:
    """A {table, payload} mapping should route its payload to the table."""
    table, payload = decode_envelope({"table": " users ", "payload": [{"id": 1}]})
    assert table == "users"
    assert payload == [{"id": 1}]


def test_routed_envelope_json_text_is_split() -> None:
    """Envelopes arriving as JSON text should decode, payload included."""
    table, payload = decode_envelope('{"table": "events", "payload": "{\\"id\\": 7}"}')
    assert table == "events"
    assert payload == {"id": 7}


def test_routed_batch_dataclass_is_accepted() -> None:
    """RoutedBatch instances are routed envelopes."""
    assert decode_envelope(RoutedBatch("t", {"a": 1})) == ("t", {"a": 1})


@pytest.mark.parametrize(
    "item",
    [
        {"table": "t", "payload": None},
        {"table": "t", "payload": 5},
        RoutedBatch("", [{"a": 1}]),
    ],
)
def test_broken_envelopes_raise_parse_error(item: object) -> None:
    """Envelopes missing a table name or an object/array payload should fail."""
    with pytest.raises(ParseError):
        decode_envelope(item)


@pytest.mark.parametrize(
    "item",
    [
        {"payload": "hello"},
        {"payload": [{"a": 1}]},
        {"table": "", "payload": [{"a": 1}]},
        {"table": 3, "payload": {"a": 1}},
    ],
)
def test_mapping_without_table_name_is_a_plain_record(item: dict) -> None:
    """Only a non-empty table name turns a mapping into an envelope."""
    assert decode_envelope(item) == (None, item)
    assert records_from_payload(item) == [item]
