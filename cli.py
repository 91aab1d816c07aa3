"""
upsertpipe CLI (flat-layout friendly).

Usage
-----
upsertpipe write --input events.jsonl --jsonl --table events --mode replace --primary-keys id
upsertpipe write --db-url data.db --table users < users.json
upsertpipe copy --source-url legacy.db --query "SELECT * FROM users" --table users --db-url data.db

Options not given on the command line fall back to the environment / .env
(see infra/config.py).
"""

from __future__ import annotations

import argparse
import json
import sys
from collections.abc import Iterator
from typing import Any, List, Optional, TextIO

from contracts.errors import UpsertPipeError
from infra.config import Settings, StoreSettings, WriterSettings, get_settings
from infra.logging_config import StructuredLogger, set_run_context, setup_logging
from pipeline.runtime import Pipeline
from pipeline.stages import SQLReader, SQLReaderWriter, SQLWriter
from pipeline.store import open_store
from version import ENGINE_NAME, ENGINE_VERSION

_LOGGER = StructuredLogger("upsertpipe.cli")


def _store_settings(base: StoreSettings, backend: Optional[str], url: Optional[str]) -> StoreSettings:
    data = base.model_dump()
    if backend:
        data["backend"] = backend
    if url:
        data["url"] = url
    return StoreSettings.model_validate(data)


def _writer_settings(base: WriterSettings, args: argparse.Namespace) -> WriterSettings:
    data = base.model_dump()
    overrides = {
        "target_table": args.table,
        "upsert_mode": args.mode,
        "primary_keys": args.primary_keys,
        "preserved_fields": args.preserved_fields,
        "batch_size": args.batch_size,
        "concurrency_level": args.concurrency,
    }
    data.update({k: v for k, v in overrides.items() if v is not None})
    return WriterSettings.model_validate(data)


def _read_items(stream: TextIO, *, jsonl: bool) -> Iterator[Any]:
    """Yield pipeline items: one per non-empty line, or the whole document."""
    if jsonl:
        for line in stream:
            if line.strip():
                yield line
        return
    text = stream.read()
    if not text.strip():
        return
    yield json.loads(text)


def _open_input(path: str) -> TextIO:
    if path == "-":
        return sys.stdin
    return open(path, "r", encoding="utf-8")


def cmd_write(args: argparse.Namespace, settings: Settings) -> int:
    store = open_store(_store_settings(settings.store, args.backend, args.db_url))
    try:
        writer = SQLWriter.from_settings(store, _writer_settings(settings.writer, args))
        stream = _open_input(args.input)
        try:
            written = Pipeline(writer).run(_read_items(stream, jsonl=args.jsonl))
        finally:
            if stream is not sys.stdin:
                stream.close()
    finally:
        store.close()
    print(f"Wrote {len(written)} item(s) into {writer.table_name or 'routed tables'}")
    return 0


def cmd_copy(args: argparse.Namespace, settings: Settings) -> int:
    target = open_store(_store_settings(settings.store, args.backend, args.db_url))
    source = open_store(_store_settings(settings.store, args.source_backend or args.backend, args.source_url))
    try:
        writer = SQLWriter.from_settings(target, _writer_settings(settings.writer, args))
        reader = SQLReader(source, args.query, batch_size=args.read_batch_size)
        written = Pipeline(SQLReaderWriter(reader, writer)).run([None])
    finally:
        source.close()
        target.close()
    rows = sum(len(batch) for batch in written)
    print(f"Copied {rows} row(s) into {writer.table_name}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="upsertpipe", description=f"{ENGINE_NAME} {ENGINE_VERSION}")
    p.add_argument("--version", action="version", version=f"{ENGINE_NAME} {ENGINE_VERSION}")
    sub = p.add_subparsers(dest="cmd", required=True)

    def add_target(sp: argparse.ArgumentParser) -> None:
        sp.add_argument("--backend", default=None, choices=["sqlite", "duckdb", "postgres"],
                        help="Target store backend (or STORE_BACKEND env var).")
        sp.add_argument("--db-url", default=None, help="Target database path or DSN (or DB_URL env var).")
        sp.add_argument("--table", default=None, help="Target table (or TARGET_TABLE env var).")
        sp.add_argument("--mode", default=None, choices=["insert-only", "replace", "replace-preserving"],
                        help="Upsert mode (or UPSERT_MODE env var).")
        sp.add_argument("--primary-keys", default=None, help="Comma-separated primary key columns.")
        sp.add_argument("--preserved-fields", default=None, help="Comma-separated columns kept on replace.")
        sp.add_argument("--batch-size", type=int, default=None, help="Rows per statement; 0 = unbounded.")
        sp.add_argument("--concurrency", type=int, default=None, help="Writer worker count.")

    sp = sub.add_parser("write", help="Write JSON records into a table.")
    add_target(sp)
    sp.add_argument("--input", default="-", help="JSON or JSON-lines file. Default: stdin")
    sp.add_argument("--jsonl", action="store_true", help="Treat every input line as one item.")
    sp.set_defaults(func=cmd_write)

    sp = sub.add_parser("copy", help="Copy a query result from a source store into a table.")
    add_target(sp)
    sp.add_argument("--source-backend", default=None, choices=["sqlite", "duckdb", "postgres"],
                    help="Source store backend. Default: target backend")
    sp.add_argument("--source-url", required=True, help="Source database path or DSN.")
    sp.add_argument("--query", required=True, help="SELECT statement producing the rows to copy.")
    sp.add_argument("--read-batch-size", type=int, default=1000, help="Rows per written batch.")
    sp.set_defaults(func=cmd_copy)

    return p


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        setup_logging()
        set_run_context(command=args.cmd)
        return args.func(args, get_settings())
    except (UpsertPipeError, ValueError, OSError) as exc:
        _LOGGER.error("command_failed", command=args.cmd, error=str(exc), error_type=type(exc).__name__)
        print(f"{args.cmd} failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
