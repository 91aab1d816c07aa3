"""
runtime.py

Minimal threaded pipeline runtime hosting ``DataProcessor`` stages.

- Stages are connected by bounded ``Channel`` queues closed with a sentinel;
  a full channel blocks its producer until a worker takes an item.
- Each stage runs a fixed-size pool of worker threads sized by
  ``stage.concurrency()``; output order is only stable at concurrency 1.
- One ``CancellationSignal`` is shared by every stage of a run. The first
  error pushed wins; workers check the signal before each new item and stop
  taking work once it is set. In-flight store calls are never interrupted.
- Worker threads run inside a copy of the caller's ``contextvars`` context,
  so run-scoped logging fields follow the work.
"""

from __future__ import annotations

import contextvars
import queue
import threading
from collections.abc import Callable, Iterable, Iterator
from contextlib import contextmanager
from typing import Any

from contracts.errors import PipelineAbort, UpsertPipeError
from contracts.interfaces import DataProcessor, EventLoggerProtocol
from infra.logging_config import StructuredLogger

_LOGGER = StructuredLogger(__name__)
_CLOSED = object()


class Channel:
    """FIFO between two stages, closed with a sentinel.

    With ``maxsize`` > 0 the channel is bounded and ``put`` blocks while it is
    full, so a fast producer waits for its consumers. A blocked ``put`` gives
    up once the run's cancellation signal is set, because stopped workers no
    longer drain the queue. Several workers may iterate the same channel;
    each of them stops once the channel is closed and drained.
    """

    def __init__(
        self,
        maxsize: int = 0,
        *,
        signal: CancellationSignal | None = None,
        poll_interval: float = 0.05,
    ) -> None:
        self._queue: queue.Queue[Any] = queue.Queue(maxsize=max(0, int(maxsize)))
        self._signal = signal
        self._poll_interval = poll_interval
        self._closed = threading.Event()

    @property
    def maxsize(self) -> int:
        return self._queue.maxsize

    def put(self, item: Any) -> bool:
        """Enqueue *item*; return False when the run was cancelled first."""
        while True:
            if self._signal is not None and self._signal.is_set():
                return False
            try:
                self._queue.put(item, timeout=self._poll_interval)
                return True
            except queue.Full:
                continue

    def close(self) -> None:
        """Mark the channel closed; never blocks, even on a full queue."""
        self._closed.set()
        self._offer_sentinel()

    def _offer_sentinel(self) -> None:
        try:
            self._queue.put_nowait(_CLOSED)
        except queue.Full:
            # consumers still see the closed flag once the queue drains
            pass

    def __iter__(self) -> Iterator[Any]:
        while True:
            try:
                item = self._queue.get(timeout=self._poll_interval)
            except queue.Empty:
                if self._closed.is_set():
                    return
                continue
            if item is _CLOSED:
                # leave the sentinel for sibling consumers
                self._offer_sentinel()
                return
            yield item


class CancellationSignal:
    """Shared, single-writer-wins record of the first fatal error of a run."""

    def __init__(self, *, logger: EventLoggerProtocol | None = None) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._errors: list[UpsertPipeError] = []
        self._logger = logger or _LOGGER

    def abort(self, error: UpsertPipeError) -> bool:
        """Record *error*; return True when it is the first one of the run."""
        with self._lock:
            self._errors.append(error)
            first = len(self._errors) == 1
            self._event.set()
        if not first:
            self._logger.info(
                "pipeline_error_after_abort",
                error=str(error),
                error_type=type(error).__name__,
            )
        return first

    def is_set(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: float | None = None) -> bool:
        return self._event.wait(timeout)

    @property
    def error(self) -> UpsertPipeError | None:
        with self._lock:
            return self._errors[0] if self._errors else None

    @property
    def errors(self) -> tuple[UpsertPipeError, ...]:
        with self._lock:
            return tuple(self._errors)


@contextmanager
def stage_boundary(
    signal: CancellationSignal,
    stage: str,
    *,
    logger: EventLoggerProtocol | None = None,
) -> Iterator[None]:
    """Route any failure inside the block to *signal* instead of the caller.

    Pipeline errors are pushed as they are. Anything else is logged with its
    traceback and pushed as ``PipelineAbort`` carrying the original.
    """
    log = logger or _LOGGER
    try:
        yield
    except UpsertPipeError as exc:
        log.error("stage_failed", stage=stage, error=str(exc), error_type=type(exc).__name__)
        signal.abort(exc)
    except Exception as exc:
        log.exception("stage_crashed", stage=stage, error=str(exc), error_type=type(exc).__name__)
        signal.abort(PipelineAbort(f"{stage}: unexpected {type(exc).__name__}: {exc}", cause=exc))


def _start_thread(target: Callable[[], None], name: str) -> threading.Thread:
    ctx = contextvars.copy_context()
    thread = threading.Thread(target=ctx.run, args=(target,), name=name, daemon=True)
    thread.start()
    return thread


class Pipeline:
    """Chain of stages fed from an iterable, collecting the last stage's output.

    Each stage reads from a channel holding at most ``buffer_size`` items;
    by default twice the stage's worker count. The source is therefore only
    pulled as fast as the first stage consumes it.
    """

    def __init__(
        self,
        *stages: DataProcessor,
        buffer_size: int | None = None,
        logger: EventLoggerProtocol | None = None,
    ) -> None:
        if not stages:
            raise ValueError("a pipeline needs at least one stage")
        if buffer_size is not None and buffer_size < 1:
            raise ValueError("buffer_size must be >= 1")
        self._stages = stages
        self._buffer_size = buffer_size
        self._logger = logger or _LOGGER

    def inbox_size(self, stage: DataProcessor) -> int:
        """Capacity of the channel feeding *stage*."""
        if self._buffer_size is not None:
            return self._buffer_size
        return 2 * max(1, int(stage.concurrency()))

    @property
    def stages(self) -> tuple[DataProcessor, ...]:
        return self._stages

    def _feed(self, items: Iterable[Any], inbox: Channel, signal: CancellationSignal) -> None:
        try:
            with stage_boundary(signal, "source", logger=self._logger):
                for item in items:
                    if signal.is_set() or not inbox.put(item):
                        break
        finally:
            inbox.close()

    def _run_stage(
        self,
        stage: DataProcessor,
        inbox: Channel,
        outbox: Channel,
        signal: CancellationSignal,
    ) -> None:
        name = stage.describe()

        def work() -> None:
            for item in inbox:
                if signal.is_set():
                    break
                with stage_boundary(signal, name, logger=self._logger):
                    stage.process(item, outbox, signal)

        size = max(1, int(stage.concurrency()))
        self._logger.debug("stage_started", stage=name, workers=size)
        try:
            workers = [_start_thread(work, f"{name}-{i}") for i in range(size)]
            for worker in workers:
                worker.join()
            with stage_boundary(signal, name, logger=self._logger):
                stage.finish(outbox, signal)
        finally:
            outbox.close()
        self._logger.debug("stage_finished", stage=name, aborted=signal.is_set())

    def run(self, items: Iterable[Any], *, signal: CancellationSignal | None = None) -> list[Any]:
        """Push *items* through every stage and return what the last one emits.

        Raises the first error recorded on the signal once all workers stopped.
        """
        signal = signal or CancellationSignal(logger=self._logger)
        channels = [Channel(self.inbox_size(stage), signal=signal) for stage in self._stages]
        # the caller drains the last channel itself
        channels.append(Channel(signal=signal))

        threads = [_start_thread(lambda: self._feed(items, channels[0], signal), "source")]
        for i, stage in enumerate(self._stages):
            threads.append(
                _start_thread(
                    lambda stage=stage, i=i: self._run_stage(stage, channels[i], channels[i + 1], signal),
                    f"{stage.describe()}-pool",
                )
            )

        results = list(channels[-1])
        for thread in threads:
            thread.join()

        if signal.error is not None:
            self._logger.error(
                "pipeline_aborted",
                error=str(signal.error),
                error_type=type(signal.error).__name__,
                errors=len(signal.errors),
            )
            raise signal.error
        self._logger.info("pipeline_finished", stages=len(self._stages), items=len(results))
        return results


__all__ = ["CancellationSignal", "Channel", "Pipeline", "stage_boundary"]
