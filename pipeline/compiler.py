"""Compile a batch of records into one parameterized multi-row INSERT.

Format (SQLite/DuckDB):

    INSERT [OR REPLACE] INTO table(col1,col2) VALUES (?,?),(?,?)

Columns whose current value must survive a replace are written as a
correlated subquery reading the stored row by primary key:

    (SELECT col FROM table WHERE pk1 = ? AND pk2 = ?)

so a replaced row keeps the old value and a new row gets NULL. The argument
list is built from the same per-column bindings as the row template, which
keeps placeholder and argument order aligned by construction.
"""

from __future__ import annotations

import re
from collections.abc import Sequence
from dataclasses import dataclass

from contracts.errors import CompileError, MissingKeyError
from contracts.records import CompiledStatement, Record, UpsertPolicy
from pipeline.columns import resolve_columns


@dataclass(frozen=True)
class SqlDialect:
    """Placeholder style and replace syntax for one store family."""

    name: str
    placeholder: str = "?"

    # Dialects that resolve conflicts with an explicit key list need primary
    # keys for every replace mode.
    requires_conflict_target: bool = False

    def insert_verb(self, policy: UpsertPolicy) -> str:
        return "INSERT OR REPLACE INTO" if policy.replaces else "INSERT INTO"

    def conflict_clause(self, columns: Sequence[str], policy: UpsertPolicy) -> str:
        _ = columns, policy
        return ""


@dataclass(frozen=True)
class PostgresDialect(SqlDialect):
    """PostgreSQL: ``%s`` placeholders and ``ON CONFLICT ... DO UPDATE``."""

    name: str = "postgres"
    placeholder: str = "%s"
    requires_conflict_target: bool = True

    def insert_verb(self, policy: UpsertPolicy) -> str:
        return "INSERT INTO"

    def conflict_clause(self, columns: Sequence[str], policy: UpsertPolicy) -> str:
        if not policy.replaces:
            return ""
        target = ",".join(policy.primary_keys)
        updates = [f"{col} = EXCLUDED.{col}" for col in columns if col not in policy.primary_keys]
        if not updates:
            return f" ON CONFLICT ({target}) DO NOTHING"
        return f" ON CONFLICT ({target}) DO UPDATE SET " + ", ".join(updates)


SQLITE = SqlDialect(name="sqlite")
DUCKDB = SqlDialect(name="duckdb")
POSTGRES = PostgresDialect()

# Plain identifiers only; tables may be schema-qualified.
_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_TABLE_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*)?$")


def _check_identifiers(table: str, columns: Sequence[object], policy: UpsertPolicy) -> None:
    if not _TABLE_NAME.match(table):
        raise CompileError(f"invalid table name {table!r}")
    for kind, names in (
        ("column", columns),
        ("primary key", policy.primary_keys),
        ("preserved field", policy.preserved_fields),
    ):
        for name in names:
            if not isinstance(name, str) or not _IDENTIFIER.match(name):
                raise CompileError(f"invalid {kind} name {name!r} for {table}")


def _row_template(
    columns: Sequence[str],
    table: str,
    policy: UpsertPolicy,
    dialect: SqlDialect,
) -> tuple[str, list[str]]:
    """Return the ``(...)`` row group and the record field bound to each placeholder."""
    slots: list[str] = []
    bindings: list[str] = []
    for col in columns:
        if policy.preserves(col):
            where = " AND ".join(f"{pk} = {dialect.placeholder}" for pk in policy.primary_keys)
            slots.append(f"(SELECT {col} FROM {table} WHERE {where})")
            bindings.extend(policy.primary_keys)
        else:
            slots.append(dialect.placeholder)
            bindings.append(col)
    return "(" + ",".join(slots) + ")", bindings


def compile_statement(
    batch: Sequence[Record],
    table: str,
    policy: UpsertPolicy,
    *,
    columns: Sequence[str] | None = None,
    dialect: SqlDialect = SQLITE,
) -> CompiledStatement:
    """Build the INSERT statement and its argument list for one chunk.

    Raises MissingKeyError when a record lacks a primary-key value the
    statement binds, and CompileError when no statement can be formed or a
    table or column name is not a plain SQL identifier.
    Nothing partial is returned on failure.
    """
    table = str(table or "").strip()
    if not table:
        raise CompileError("table name is required")
    if not batch:
        raise CompileError(f"cannot compile an empty batch for {table}")

    cols = tuple(columns) if columns is not None else resolve_columns(batch, policy.preserved_fields)
    if not cols:
        raise CompileError(f"batch for {table} has no columns")
    _check_identifiers(table, cols, policy)
    if policy.replaces and dialect.requires_conflict_target and not policy.primary_keys:
        raise CompileError(f"{dialect.name} replace requires primary keys for {table}")

    row, bindings = _row_template(cols, table, policy, dialect)
    required_keys = [name for name in dict.fromkeys(bindings) if name in policy.primary_keys]

    args: list[object] = []
    for i, record in enumerate(batch):
        for key in required_keys:
            if key not in record:
                raise MissingKeyError(key, row=i)
        args.extend(record.get(name) for name in bindings)

    sql = (
        f"{dialect.insert_verb(policy)} {table}({','.join(cols)}) VALUES "
        + ",".join([row] * len(batch))
        + dialect.conflict_clause(cols, policy)
    )
    return CompiledStatement(sql=sql, args=tuple(args))
