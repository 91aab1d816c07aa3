"""Chunked, all-or-nothing execution of compiled upsert statements."""

from __future__ import annotations

from collections.abc import Iterator, Sequence

from contracts.errors import StoreError
from contracts.interfaces import EventLoggerProtocol, StoreProtocol, TransactionProtocol
from contracts.records import ChunkResult, Record, UpsertPolicy
from infra.logging_config import StructuredLogger
from pipeline.columns import resolve_columns
from pipeline.compiler import compile_statement

_LOGGER = StructuredLogger(__name__)


def chunked(batch: Sequence[Record], size: int) -> Iterator[Sequence[Record]]:
    """Yield consecutive slices of at most *size* records; size 0 yields one slice."""
    if size < 0:
        raise ValueError("batch size must be >= 0")
    if size == 0:
        yield batch
        return
    for start in range(0, len(batch), size):
        yield batch[start:start + size]


class BatchExecutor:
    """Compile and execute a batch chunk by chunk inside one transaction.

    Chunks run strictly in sequence on the same transaction. The first
    compile or execute failure rolls the whole transaction back and is
    re-raised; the commit is issued once, after the last chunk executed.
    """

    def __init__(self, store: StoreProtocol, *, logger: EventLoggerProtocol | None = None) -> None:
        self._store = store
        self._logger = logger or _LOGGER

    def execute(
        self,
        batch: Sequence[Record],
        table: str,
        policy: UpsertPolicy,
        batch_size: int = 0,
    ) -> list[ChunkResult]:
        if not batch:
            self._logger.debug("insert_skipped_empty_batch", table=table)
            return []

        chunks = list(chunked(batch, batch_size))
        results: list[ChunkResult] = []
        tx = self._store.begin()
        try:
            try:
                for index, chunk in enumerate(chunks):
                    results.append(self._execute_chunk(tx, index, chunk, table, policy))
                tx.commit()
            except Exception as exc:
                self._rollback(tx, table, exc)
                raise
        finally:
            tx.close()

        self._logger.info(
            "insert_committed",
            table=table,
            chunks=len(results),
            rows=len(batch),
            rows_affected=sum(r.rows_affected for r in results),
        )
        return results

    def _execute_chunk(
        self,
        tx: TransactionProtocol,
        index: int,
        chunk: Sequence[Record],
        table: str,
        policy: UpsertPolicy,
    ) -> ChunkResult:
        self._logger.info("insert_chunk_building", table=table, chunk=index, rows=len(chunk))
        columns = resolve_columns(chunk, policy.preserved_fields)
        statement = compile_statement(
            chunk,
            table,
            policy,
            columns=columns,
            dialect=self._store.dialect,
        )
        self._logger.debug("insert_chunk_sql", table=table, chunk=index, sql=statement.sql)
        self._logger.debug("insert_chunk_values", table=table, chunk=index, values=list(statement.args))

        res = tx.execute(statement.sql, statement.args)
        self._logger.info(
            "insert_chunk_executed",
            table=table,
            chunk=index,
            rows_affected=res.rows_affected,
            last_insert_id=res.last_insert_id,
        )
        return ChunkResult(
            index=index,
            rows=len(chunk),
            rows_affected=res.rows_affected,
            last_insert_id=res.last_insert_id,
        )

    def _rollback(self, tx: TransactionProtocol, table: str, cause: Exception) -> None:
        self._logger.info("insert_rolling_back", table=table, error=str(cause))
        try:
            tx.rollback()
        except StoreError as exc:
            self._logger.error("insert_rollback_failed", table=table, error=str(exc))
