"""Tests for the threaded pipeline runtime and cooperative cancellation."""

from __future__ import annotations

import threading
import time
from typing import Any

import pytest

from contracts.errors import ParseError, PipelineAbort, StoreError
from infra.logging_config import clear_run_context, get_run_context, set_run_context
from pipeline.runtime import CancellationSignal, Channel, Pipeline, stage_boundary


class _EchoStage:
    """Forward every item, optionally failing on some of them."""

    def __init__(self, *, workers: int = 1, fail_on: object = None, crash_on: object = None) -> None:
        self.workers = workers
        self.fail_on = fail_on
        self.crash_on = crash_on
        self.seen: list[Any] = []
        self.contexts: list[dict[str, Any]] = []
        self.finished = 0
        self._lock = threading.Lock()

    def process(self, item: Any, output: Channel, signal: CancellationSignal) -> None:
        with self._lock:
            self.seen.append(item)
            self.contexts.append(get_run_context())
        if item == self.fail_on:
            raise ParseError(f"bad item {item}")
        if item == self.crash_on:
            raise KeyError(item)
        output.put(item)

    def finish(self, output: Channel, signal: CancellationSignal) -> None:
        self.finished += 1

    def describe(self) -> str:
        return "Echo"

    def concurrency(self) -> int:
        return self.workers


def test_channel_stops_every_consumer_after_close() -> None:
    """Closing once ends iteration for every consumer."""
    channel = Channel()
    for i in range(3):
        channel.put(i)
    channel.close()

    assert list(channel) == [0, 1, 2]
    assert list(channel) == []


def test_signal_first_error_wins() -> None:
    """Only the first abort is reported as first; later ones are kept."""
    signal = CancellationSignal()
    first, second = StoreError("execute", "boom"), ParseError("late")

    assert signal.is_set() is False
    assert signal.abort(first) is True
    assert signal.abort(second) is False
    assert signal.is_set() is True
    assert signal.error is first
    assert signal.errors == (first, second)


def test_stage_boundary_routes_pipeline_errors_as_is() -> None:
    """Expected errors reach the signal unchanged."""
    signal = CancellationSignal()
    err = ParseError("bad")
    with stage_boundary(signal, "Echo"):
        raise err
    assert signal.error is err


def test_stage_boundary_wraps_unexpected_faults() -> None:
    """Anything else becomes PipelineAbort carrying the original."""
    signal = CancellationSignal()
    with stage_boundary(signal, "Echo"):
        raise ZeroDivisionError("division by zero")

    assert isinstance(signal.error, PipelineAbort)
    assert isinstance(signal.error.cause, ZeroDivisionError)
    assert "Echo" in str(signal.error)


def test_pipeline_keeps_order_at_concurrency_one() -> None:
    """One worker processes items in input order and calls finish once."""
    stage = _EchoStage()
    assert Pipeline(stage).run(range(10)) == list(range(10))
    assert stage.finished == 1


def test_pipeline_processes_every_item_with_several_workers() -> None:
    """Several workers may reorder output but never drop items."""
    stage = _EchoStage(workers=4)
    assert sorted(Pipeline(stage).run(range(50))) == list(range(50))


def test_pipeline_chains_stages() -> None:
    """Output of one stage is the input of the next."""
    first, second = _EchoStage(), _EchoStage(workers=2)
    assert sorted(Pipeline(first, second).run(["a", "b"])) == ["a", "b"]
    assert sorted(second.seen) == ["a", "b"]


def test_pipeline_stops_taking_work_after_first_error() -> None:
    """Items after a failure are not started and the error is re-raised."""
    stage = _EchoStage(fail_on=2)
    with pytest.raises(ParseError):
        Pipeline(stage).run([1, 2, 3, 4])
    assert stage.seen == [1, 2]


def test_pipeline_reraises_wrapped_unexpected_fault() -> None:
    """A crash inside process surfaces as PipelineAbort."""
    with pytest.raises(PipelineAbort):
        Pipeline(_EchoStage(crash_on="x")).run(["x"])


def test_source_failure_is_reported() -> None:
    """Errors raised while iterating the input abort the run."""

    def _items() -> Any:
        yield 1
        raise RuntimeError("source broke")

    with pytest.raises(PipelineAbort):
        Pipeline(_EchoStage()).run(_items())


def test_run_context_follows_worker_threads() -> None:
    """Workers see the run context of the thread that started the run."""
    stage = _EchoStage(workers=2)
    set_run_context(run_id="r-42")
    try:
        Pipeline(stage).run([1, 2, 3])
    finally:
        clear_run_context()

    assert stage.contexts
    assert all(ctx.get("run_id") == "r-42" for ctx in stage.contexts)


def test_pipeline_without_stages_is_rejected() -> None:
    """A pipeline needs a stage."""
    with pytest.raises(ValueError):
        Pipeline()


class _SlowFirstStage(_EchoStage):
    """Hold the first item for a while and record how far the source got."""

    def __init__(self, pulled: list[int], *, workers: int = 1, delay: float = 0.2) -> None:
        super().__init__(workers=workers)
        self.pulled = pulled
        self.delay = delay
        self.pulled_while_busy: int | None = None

    def process(self, item: Any, output: Channel, signal: CancellationSignal) -> None:
        if item == 0:
            time.sleep(self.delay)
            self.pulled_while_busy = len(self.pulled)
        super().process(item, output, signal)


def test_source_is_pulled_only_as_fast_as_the_stage_consumes() -> None:
    """A slow stage holds the source back to its channel capacity."""
    pulled: list[int] = []

    def _items() -> Any:
        for i in range(2000):
            pulled.append(i)
            yield i

    stage = _SlowFirstStage(pulled)
    pipeline = Pipeline(stage)
    maxsize = pipeline.inbox_size(stage)

    assert sorted(pipeline.run(_items())) == list(range(2000))
    assert stage.pulled_while_busy is not None
    # items in the channel, one per busy worker, one held by a blocked put
    assert stage.pulled_while_busy <= maxsize + stage.workers + 1


def test_inbox_size_follows_concurrency_or_buffer_size() -> None:
    """Default capacity is twice the worker count; buffer_size overrides it."""
    stage = _EchoStage(workers=3)
    assert Pipeline(stage).inbox_size(stage) == 6
    assert Pipeline(stage, buffer_size=1).inbox_size(stage) == 1
    with pytest.raises(ValueError):
        Pipeline(stage, buffer_size=0)


def test_close_on_full_channel_does_not_block() -> None:
    """Closing a full bounded channel returns and consumers still drain it."""
    channel = Channel(maxsize=1)
    assert channel.put("a") is True
    channel.close()
    assert list(channel) == ["a"]


def test_blocked_put_gives_up_after_cancellation() -> None:
    """A put waiting on a full channel returns False once the run aborts."""
    signal = CancellationSignal()
    channel = Channel(maxsize=1, signal=signal, poll_interval=0.01)
    assert channel.put(1) is True

    outcome: list[bool] = []
    producer = threading.Thread(target=lambda: outcome.append(channel.put(2)))
    producer.start()
    signal.abort(ParseError("stop"))
    producer.join(timeout=2)

    assert not producer.is_alive()
    assert outcome == [False]


def test_abort_with_full_inbox_does_not_deadlock() -> None:
    """An early failure stops the blocked feeder and the run re-raises."""
    pulled: list[int] = []

    def _items() -> Any:
        for i in range(10_000):
            pulled.append(i)
            yield i

    stage = _EchoStage(fail_on=0)
    with pytest.raises(ParseError):
        Pipeline(stage, buffer_size=1).run(_items())
    assert len(pulled) < 10_000
