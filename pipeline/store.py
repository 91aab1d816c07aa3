"""
store.py

Transactional store adapters used by the batch executor and the SQL reader.

Each adapter hands out private transaction scopes over a shared handle:

- SQLiteStore: one shared ``sqlite3`` connection; transactions are
  serialized with a lock (SQLite allows a single writer anyway).
- DuckDBStore: one database, one cursor per transaction.
- PostgresStore: psycopg2 ``ThreadedConnectionPool``; one pooled connection
  per transaction, always rolled back before it goes back to the pool.

Driver exceptions are re-raised as ``StoreError`` with the original chained.
"""

from __future__ import annotations

import sqlite3
import threading
from collections.abc import Callable, Sequence
from contextlib import closing
from dataclasses import dataclass
from typing import Any

from contracts.errors import StoreError
from infra.config import StoreSettings
from infra.db_metrics import measure_query, query_name
from pipeline.compiler import DUCKDB, POSTGRES, SQLITE, SqlDialect


@dataclass(frozen=True)
class ExecResult:
    """Outcome of one executed statement."""

    rows_affected: int
    last_insert_id: int | None = None


def _cols_from_description(desc: Any) -> list[str]:
    """Extract column names from cursor.description safely."""
    if not desc:
        return []
    cols: list[str] = []
    for i, d in enumerate(desc):
        name = None
        try:
            name = d[0]
        except (IndexError, KeyError, TypeError):
            name = None
        cols.append(str(name) if name else f"col_{i}")
    return cols


def _rows_to_dicts(desc: Any, rows: Sequence[Sequence[Any]]) -> list[dict[str, Any]]:
    """Convert rows into dicts keyed by the cursor description."""
    cols = _cols_from_description(desc)
    if not cols:
        return []
    return [dict(zip(cols, r, strict=False)) for r in rows]


class DbApiTransaction:
    """One transaction over a DB-API 2.0 connection."""

    def __init__(
        self,
        conn: Any,
        *,
        errors: tuple[type[BaseException], ...],
        release: Callable[[], None] | None = None,
    ) -> None:
        self._conn = conn
        self._errors = errors
        self._release = release
        self._closed = False

    def _run(self, sql: str, args: Sequence[Any]) -> ExecResult:
        with closing(self._conn.cursor()) as cur:
            with measure_query(query_name(sql, operation="execute")):
                cur.execute(sql, tuple(args))
            last_id = getattr(cur, "lastrowid", None)
            return ExecResult(rows_affected=int(cur.rowcount), last_insert_id=last_id or None)

    def execute(self, sql: str, args: Sequence[Any]) -> ExecResult:
        if self._closed:
            raise StoreError("execute", "transaction is closed")
        try:
            return self._run(sql, args)
        except self._errors as exc:
            raise StoreError("execute", str(exc)) from exc

    def _commit(self) -> None:
        self._conn.commit()

    def _rollback(self) -> None:
        self._conn.rollback()

    def commit(self) -> None:
        try:
            self._commit()
        except self._errors as exc:
            raise StoreError("commit", str(exc)) from exc

    def rollback(self) -> None:
        try:
            self._rollback()
        except self._errors as exc:
            raise StoreError("rollback", str(exc)) from exc

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._release is not None:
            self._release()


class SQLiteTransaction(DbApiTransaction):
    """SQLite transaction opened with an explicit BEGIN."""

    def _commit(self) -> None:
        self._conn.execute("COMMIT")

    def _rollback(self) -> None:
        if self._conn.in_transaction:
            self._conn.execute("ROLLBACK")


class SQLiteStore:
    """Store over a single shared SQLite connection."""

    dialect: SqlDialect = SQLITE

    def __init__(self, database: str = ":memory:", *, timeout: float = 5.0) -> None:
        self._conn = sqlite3.connect(
            database,
            timeout=timeout,
            isolation_level=None,
            check_same_thread=False,
        )
        self._lock = threading.Lock()

    @property
    def connection(self) -> sqlite3.Connection:
        return self._conn

    def begin(self) -> SQLiteTransaction:
        self._lock.acquire()
        try:
            self._conn.execute("BEGIN")
        except sqlite3.Error as exc:
            self._lock.release()
            raise StoreError("begin", str(exc)) from exc
        return SQLiteTransaction(self._conn, errors=(sqlite3.Error,), release=self._lock.release)

    def fetch_all(self, sql: str, args: Sequence[Any] = ()) -> list[dict[str, Any]]:
        with self._lock:
            try:
                with closing(self._conn.cursor()) as cur:
                    with measure_query(query_name(sql, operation="fetch_all")):
                        cur.execute(sql, tuple(args))
                    return _rows_to_dicts(cur.description, cur.fetchall())
            except sqlite3.Error as exc:
                raise StoreError("query", str(exc)) from exc

    def close(self) -> None:
        self._conn.close()


class DuckDBTransaction(DbApiTransaction):
    """DuckDB transaction on a dedicated cursor."""

    def _run(self, sql: str, args: Sequence[Any]) -> ExecResult:
        with measure_query(query_name(sql, operation="execute")):
            self._conn.execute(sql, list(args))
        row = self._conn.fetchone()
        return ExecResult(rows_affected=int(row[0]) if row else 0, last_insert_id=None)


class DuckDBStore:
    """Store over one DuckDB database; every transaction gets its own cursor."""

    dialect: SqlDialect = DUCKDB

    def __init__(self, database: str = ":memory:") -> None:
        import duckdb

        self._errors: tuple[type[BaseException], ...] = (duckdb.Error,)
        self._con = duckdb.connect(database, read_only=False)

    @property
    def connection(self) -> Any:
        return self._con

    def begin(self) -> DuckDBTransaction:
        cur = self._con.cursor()
        try:
            cur.begin()
        except self._errors as exc:
            cur.close()
            raise StoreError("begin", str(exc)) from exc
        return DuckDBTransaction(cur, errors=self._errors, release=cur.close)

    def fetch_all(self, sql: str, args: Sequence[Any] = ()) -> list[dict[str, Any]]:
        cur = self._con.cursor()
        try:
            with measure_query(query_name(sql, operation="fetch_all")):
                cur.execute(sql, list(args))
            return _rows_to_dicts(cur.description, cur.fetchall())
        except self._errors as exc:
            raise StoreError("query", str(exc)) from exc
        finally:
            cur.close()

    def close(self) -> None:
        self._con.close()


class PostgresStore:
    """Store over a psycopg2 threaded connection pool."""

    dialect: SqlDialect = POSTGRES

    def __init__(
        self,
        dsn: str,
        *,
        maxconn: int = 10,
        connect_timeout: int = 5,
        pool: Any = None,
    ) -> None:
        import psycopg2  # type: ignore
        from psycopg2.pool import ThreadedConnectionPool  # type: ignore

        self._errors: tuple[type[BaseException], ...] = (psycopg2.Error,)
        self._pool = pool or ThreadedConnectionPool(
            minconn=1,
            maxconn=maxconn,
            dsn=dsn,
            connect_timeout=connect_timeout,
        )

    def _putconn(self, conn: Any) -> None:
        """Return *conn* to the pool, ending any open transaction first."""
        try:
            conn.rollback()
        except Exception:
            pass
        try:
            self._pool.putconn(conn)
        except Exception:
            try:
                conn.close()
            except Exception:
                pass

    def begin(self) -> DbApiTransaction:
        try:
            conn = self._pool.getconn()
            conn.autocommit = False
        except self._errors as exc:
            raise StoreError("begin", str(exc)) from exc
        return DbApiTransaction(conn, errors=self._errors, release=lambda: self._putconn(conn))

    def fetch_all(self, sql: str, args: Sequence[Any] = ()) -> list[dict[str, Any]]:
        try:
            conn = self._pool.getconn()
        except self._errors as exc:
            raise StoreError("query", str(exc)) from exc
        try:
            with conn.cursor() as cur:
                with measure_query(query_name(sql, operation="fetch_all")):
                    cur.execute(sql, tuple(args))
                return _rows_to_dicts(cur.description, cur.fetchall())
        except self._errors as exc:
            raise StoreError("query", str(exc)) from exc
        finally:
            self._putconn(conn)

    def close(self) -> None:
        self._pool.closeall()


def open_store(settings: StoreSettings) -> SQLiteStore | DuckDBStore | PostgresStore:
    """Create the store adapter selected by *settings*."""
    if settings.backend == "duckdb":
        return DuckDBStore(settings.url)
    if settings.backend == "postgres":
        return PostgresStore(
            settings.url,
            maxconn=settings.pool_maxconn,
            connect_timeout=settings.connect_timeout,
        )
    return SQLiteStore(settings.url, timeout=float(settings.connect_timeout))
