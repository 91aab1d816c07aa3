"""
stages.py

Pipeline stages around the batch executor.

- SQLWriter: pass-through stage writing every item into a table, then
  forwarding the original item downstream.
- SQLReader: runs a query per item and forwards the result rows in batches.
- SQLReaderWriter: composition of a reader and a writer; every result batch
  is written, then forwarded.

Every stage reports failures to the shared cancellation signal through
``stage_boundary``; nothing raised inside ``process`` reaches the runtime.
"""

from __future__ import annotations

from collections.abc import Callable, Iterator, Sequence
from typing import Any

from contracts.errors import ConfigError
from contracts.interfaces import EventLoggerProtocol, StoreProtocol
from contracts.records import Batch, ChunkResult, UpsertPolicy
from infra.config import WriterSettings
from infra.logging_config import StructuredLogger
from pipeline.executor import BatchExecutor, chunked
from pipeline.normalize import decode_envelope, records_from_payload
from pipeline.runtime import CancellationSignal, Channel, stage_boundary

_LOGGER = StructuredLogger(__name__)

QueryFactory = Callable[[Any], tuple[str, Sequence[Any]]]


class SQLWriter:
    """Write each item into ``table_name`` (or the table its envelope names)."""

    def __init__(
        self,
        store: StoreProtocol,
        table_name: str = "",
        *,
        policy: UpsertPolicy | None = None,
        batch_size: int = 100,
        concurrency_level: int = 1,
        logger: EventLoggerProtocol | None = None,
    ) -> None:
        if batch_size < 0:
            raise ConfigError("batch_size must be >= 0")
        if concurrency_level < 1:
            raise ConfigError("concurrency_level must be >= 1")
        self.table_name = str(table_name or "").strip()
        self.policy = policy or UpsertPolicy()
        self.batch_size = int(batch_size)
        self.concurrency_level = int(concurrency_level)
        self._logger = logger or _LOGGER
        self._executor = BatchExecutor(store, logger=self._logger)

    @property
    def logger(self) -> EventLoggerProtocol:
        return self._logger

    @classmethod
    def from_settings(
        cls,
        store: StoreProtocol,
        settings: WriterSettings,
        *,
        logger: EventLoggerProtocol | None = None,
    ) -> SQLWriter:
        return cls(
            store,
            settings.target_table,
            policy=settings.policy(),
            batch_size=settings.batch_size,
            concurrency_level=settings.concurrency_level,
            logger=logger,
        )

    def resolve_table(self, override: str | None) -> str:
        table = override or self.table_name
        if not table:
            raise ConfigError("no target table configured and none given by the item")
        return table

    def write(self, item: Any) -> list[ChunkResult]:
        """Normalize *item* and write it in one transaction. Errors propagate."""
        override, payload = decode_envelope(item)
        table = self.resolve_table(override)
        records = records_from_payload(payload)
        return self._executor.execute(records, table, self.policy, self.batch_size)

    def process(self, item: Any, output: Channel, signal: CancellationSignal) -> None:
        with stage_boundary(signal, self.describe(), logger=self._logger):
            self.write(item)
            output.put(item)

    def finish(self, output: Channel, signal: CancellationSignal) -> None:
        _ = output, signal

    def describe(self) -> str:
        return "SQLWriter"

    def concurrency(self) -> int:
        return self.concurrency_level


class SQLReader:
    """Run a query for each input item and forward the rows in batches.

    ``query`` is a static ``(sql, args)`` pair; ``query_for`` builds the pair
    from the input item. Exactly one of them must be given.
    """

    def __init__(
        self,
        store: StoreProtocol,
        query: tuple[str, Sequence[Any]] | str | None = None,
        *,
        query_for: QueryFactory | None = None,
        batch_size: int = 1000,
        concurrency_level: int = 1,
        logger: EventLoggerProtocol | None = None,
    ) -> None:
        if (query is None) == (query_for is None):
            raise ConfigError("SQLReader needs exactly one of query or query_for")
        if batch_size < 0:
            raise ConfigError("batch_size must be >= 0")
        if isinstance(query, str):
            query = (query, ())
        self._store = store
        self._query = query
        self._query_for = query_for
        self.batch_size = int(batch_size)
        self.concurrency_level = int(concurrency_level)
        self._logger = logger or _LOGGER

    def iter_batches(self, item: Any) -> Iterator[Batch]:
        """Yield the query result for *item* in batches of at most ``batch_size`` rows."""
        if self._query_for is not None:
            sql, args = self._query_for(item)
        elif self._query is not None:
            sql, args = self._query
        else:
            raise ConfigError("SQLReader has no query configured")
        rows = self._store.fetch_all(sql, args)
        self._logger.debug("reader_query_done", rows=len(rows))
        if not rows:
            return
        for chunk in chunked(rows, self.batch_size):
            yield list(chunk)

    def process(self, item: Any, output: Channel, signal: CancellationSignal) -> None:
        with stage_boundary(signal, self.describe(), logger=self._logger):
            for batch in self.iter_batches(item):
                if signal.is_set():
                    return
                output.put(batch)

    def finish(self, output: Channel, signal: CancellationSignal) -> None:
        _ = output, signal

    def describe(self) -> str:
        return "SQLReader"

    def concurrency(self) -> int:
        return self.concurrency_level


class SQLReaderWriter:
    """Read result batches for each item and write every one of them.

    Each batch is forwarded downstream once it is written. The first failure
    stops the remaining batches of the item and is pushed onto the signal.
    """

    def __init__(
        self,
        reader: SQLReader,
        writer: SQLWriter,
        *,
        concurrency_level: int | None = None,
    ) -> None:
        self.reader = reader
        self.writer = writer
        self.concurrency_level = int(concurrency_level or writer.concurrency())

    def process(self, item: Any, output: Channel, signal: CancellationSignal) -> None:
        with stage_boundary(signal, self.describe(), logger=self.writer.logger):
            for batch in self.reader.iter_batches(item):
                if signal.is_set():
                    return
                self.writer.write(batch)
                output.put(batch)

    def finish(self, output: Channel, signal: CancellationSignal) -> None:
        self.reader.finish(output, signal)
        self.writer.finish(output, signal)

    def describe(self) -> str:
        return f"SQLReaderWriter({self.reader.describe()} -> {self.writer.describe()})"

    def concurrency(self) -> int:
        return self.concurrency_level


__all__ = ["SQLReader", "SQLReaderWriter", "SQLWriter"]
