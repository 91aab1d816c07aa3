"""Turn incoming pipeline items into ordered lists of flat records.

An item is either a plain payload (one JSON object, or an array of objects)
or a routed envelope naming the table its nested payload belongs to.
Payloads may arrive already decoded or as JSON text/bytes.
"""

from __future__ import annotations

import json
from collections.abc import Mapping
from typing import Any

from contracts.errors import ParseError
from contracts.records import Batch, RoutedBatch

ENVELOPE_KEYS = frozenset({"table", "payload"})


def _decode_json(payload: Any) -> Any:
    """Decode JSON text/bytes; pass anything else through."""
    if isinstance(payload, (bytes, bytearray)):
        try:
            payload = payload.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise ParseError(f"payload is not valid UTF-8: {exc}") from exc
    if isinstance(payload, str):
        try:
            return json.loads(payload)
        except json.JSONDecodeError as exc:
            raise ParseError(f"payload is not valid JSON: {exc.msg}") from exc
    return payload


def records_from_payload(payload: Any) -> Batch:
    """Return the records of *payload* in order.

    Accepts a single object or an array of objects. Values are not type
    checked; the store does that when the statement executes.
    """
    data = _decode_json(payload)
    if isinstance(data, Mapping):
        return [data]
    if isinstance(data, (list, tuple)):
        records: Batch = []
        for i, item in enumerate(data):
            if not isinstance(item, Mapping):
                raise ParseError(f"payload array item {i} is {type(item).__name__}, expected an object")
            records.append(item)
        return records
    raise ParseError(f"payload is {type(data).__name__}, expected an object or an array of objects")


def _is_envelope(data: Mapping[str, Any]) -> bool:
    table = data.get("table")
    if not (isinstance(table, str) and table.strip()):
        return False
    return "payload" in data and set(data.keys()) <= ENVELOPE_KEYS


def decode_envelope(item: Any) -> tuple[str | None, Any]:
    """Split *item* into ``(table, payload)``.

    ``table`` is None for a plain payload. A mapping is treated as a routed
    envelope when it carries a non-empty string ``table`` and a ``payload``,
    and no other keys. Anything else, ``{"payload": ...}`` included, is a
    plain record.
    """
    if isinstance(item, RoutedBatch):
        table, payload = item.table, item.payload
    else:
        data = _decode_json(item)
        if not (isinstance(data, Mapping) and _is_envelope(data)):
            return None, data
        table, payload = data.get("table"), data.get("payload")

    table_name = table.strip() if isinstance(table, str) else ""
    if not table_name:
        raise ParseError("routed envelope is missing its table name")
    if payload is None:
        raise ParseError(f"routed envelope for table {table_name!r} is missing its payload")
    payload = _decode_json(payload)
    if not isinstance(payload, (Mapping, list, tuple)):
        raise ParseError(
            f"routed envelope for table {table_name!r} carries {type(payload).__name__}, "
            "expected an object or an array of objects"
        )
    return table_name, payload
