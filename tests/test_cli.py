"""End-to-end tests for the upsertpipe command line."""

from __future__ import annotations

import json
import sqlite3
from pathlib import Path
from typing import Any

import pytest

import cli
from infra.config import clear_settings_cache


@pytest.fixture(autouse=True)
def _isolated_env(tmp_path: Path, monkeypatch: Any) -> Any:
    monkeypatch.chdir(tmp_path)
    for key in ("DB_URL", "STORE_BACKEND", "TARGET_TABLE", "UPSERT_MODE", "PRIMARY_KEYS", "PRESERVED_FIELDS"):
        monkeypatch.delenv(key, raising=False)
    clear_settings_cache()
    yield
    clear_settings_cache()


def _make_db(path: Path, ddl: str) -> None:
    with sqlite3.connect(path) as conn:
        conn.execute(ddl)


def _rows(path: Path, sql: str) -> list[tuple[Any, ...]]:
    with sqlite3.connect(path) as conn:
        return conn.execute(sql).fetchall()


def test_write_json_document(tmp_path: Path, capsys: Any) -> None:
    """A JSON array is written as one batch."""
    db = tmp_path / "target.db"
    _make_db(db, "CREATE TABLE users (id INTEGER PRIMARY KEY, name TEXT)")
    src = tmp_path / "users.json"
    src.write_text(json.dumps([{"id": 1, "name": "ada"}, {"id": 2}]), encoding="utf-8")

    code = cli.main(["write", "--db-url", str(db), "--table", "users", "--input", str(src)])

    assert code == 0
    assert _rows(db, "SELECT id, name FROM users ORDER BY id") == [(1, "ada"), (2, None)]
    assert "Wrote 1 item(s) into users" in capsys.readouterr().out


def test_write_jsonl_with_replace_preserving(tmp_path: Path) -> None:
    """Each JSON line is one item; preserved columns survive a replace."""
    db = tmp_path / "target.db"
    _make_db(db, "CREATE TABLE users (id INTEGER PRIMARY KEY, name TEXT, createdAt TEXT)")
    with sqlite3.connect(db) as conn:
        conn.execute("INSERT INTO users VALUES (1, 'old', '2024-01-01')")
    src = tmp_path / "users.jsonl"
    src.write_text('{"id": 1, "name": "new"}\n\n{"table": "users", "payload": {"id": 2, "name": "b"}}\n')

    code = cli.main(
        [
            "write", "--jsonl", "--input", str(src), "--db-url", str(db), "--table", "users",
            "--mode", "replace-preserving", "--primary-keys", "id", "--preserved-fields", "createdAt",
        ]
    )

    assert code == 0
    assert _rows(db, "SELECT id, name, createdAt FROM users ORDER BY id") == [
        (1, "new", "2024-01-01"),
        (2, "b", None),
    ]


def test_write_failure_exits_with_one(tmp_path: Path, capsys: Any) -> None:
    """A pipeline error is reported and the exit code is 1."""
    db = tmp_path / "target.db"
    _make_db(db, "CREATE TABLE users (id INTEGER PRIMARY KEY, name TEXT)")
    src = tmp_path / "users.json"
    src.write_text('[{"name": "no key"}]', encoding="utf-8")

    code = cli.main(
        [
            "write", "--input", str(src), "--db-url", str(db), "--table", "users",
            "--mode", "replace-preserving", "--primary-keys", "id", "--preserved-fields", "name",
        ]
    )

    assert code == 1
    assert "Missing value for primary key: id" in capsys.readouterr().err
    assert _rows(db, "SELECT COUNT(*) FROM users") == [(0,)]


def test_copy_between_databases(tmp_path: Path) -> None:
    """copy reads a query result and writes it in batches."""
    source = tmp_path / "source.db"
    target = tmp_path / "target.db"
    _make_db(source, "CREATE TABLE legacy (id INTEGER, name TEXT)")
    with sqlite3.connect(source) as conn:
        conn.executemany("INSERT INTO legacy VALUES (?, ?)", [(i, f"n{i}") for i in range(5)])
    _make_db(target, "CREATE TABLE users (id INTEGER PRIMARY KEY, name TEXT)")

    code = cli.main(
        [
            "copy", "--source-url", str(source), "--query", "SELECT id, name FROM legacy",
            "--db-url", str(target), "--table", "users", "--read-batch-size", "2",
        ]
    )

    assert code == 0
    assert _rows(target, "SELECT COUNT(*) FROM users") == [(5,)]


def test_version_flag(capsys: Any) -> None:
    """--version prints the engine name and version."""
    with pytest.raises(SystemExit):
        cli.main(["--version"])
    assert "upsertpipe 0.1.0" in capsys.readouterr().out
