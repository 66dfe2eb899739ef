from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable

from .collector import ScenarioAccumulator
from .datasource import CsvRowSource
from .executors import AttemptContext, AttemptExecutor, FailureKind, Sample
from .scenario import ScenarioSpec
from .schedule import ScheduleCurve

LOGGER = logging.getLogger("loadshaper.dispatcher")


@dataclass(frozen=True)
class DispatcherMetrics:
    scenario: str
    scheduled: int
    queue_depth: int
    in_flight: int
    peak_in_flight: int
    peak_queue_depth: int
    completed: int
    errors: int
    dropped: int
    abandoned: int
    elapsed_s: float
    target_rps: float


@dataclass(frozen=True)
class DispatchOutcome:
    cancelled: bool
    scheduled: int
    abandoned: int
    elapsed_s: float


class RateDispatcher:
    """Realises a compiled load curve as attempt arrivals, bounded by ``max_concurrency``.

    Arrivals are released at the instants where the integral of the target rate
    reaches 1, 2, 3, ... An arrival that finds every worker busy waits in an
    unbounded FIFO queue (or is dropped once ``max_queue_depth`` is reached, when
    the scenario sets one). ``run`` returns once the curve has elapsed and the
    queue has drained, or after :meth:`stop`, in which case queued arrivals are
    abandoned and attempts already executing are allowed to finish.
    """

    def __init__(
        self,
        scenario: ScenarioSpec,
        curve: ScheduleCurve,
        executor: AttemptExecutor,
        accumulator: ScenarioAccumulator,
        row_source: CsvRowSource | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._scenario = scenario
        self._curve = curve
        self._executor = executor
        self._accumulator = accumulator
        self._row_source = row_source
        self._clock = clock

        self._stop_event = threading.Event()
        self._lock = threading.Lock()
        self._started_at: float | None = None
        self._scheduled = 0
        self._queued = 0
        self._in_flight = 0
        self._peak_in_flight = 0
        self._peak_queued = 0
        self._dropped = 0
        self._abandoned = 0

    @property
    def scenario(self) -> ScenarioSpec:
        return self._scenario

    @property
    def curve(self) -> ScheduleCurve:
        return self._curve

    def stop(self) -> None:
        self._stop_event.set()

    @property
    def stopped(self) -> bool:
        return self._stop_event.is_set()

    def run(self) -> DispatchOutcome:
        name = self._scenario.name
        workers = ThreadPoolExecutor(
            max_workers=self._scenario.max_concurrency,
            thread_name_prefix=f"loadshaper-{name}",
        )
        started_at = self._clock()
        with self._lock:
            self._started_at = started_at
        LOGGER.info(
            "Scenario %s started: %s (max concurrency %d)",
            name,
            self._curve.describe(),
            self._scenario.max_concurrency,
        )

        try:
            for offset in self._curve.arrival_offsets():
                if self._wait_until(started_at + offset):
                    break
                self._release(workers, offset)
            else:
                self._wait_until(started_at + self._curve.total_duration)
        finally:
            cancelled = self._stop_event.is_set()
            workers.shutdown(wait=True, cancel_futures=cancelled)
            with self._lock:
                # Futures cancelled by shutdown never reach _attempt.
                self._abandoned += self._queued
                self._queued = 0

        elapsed = self._clock() - started_at
        self._accumulator.set_duration(elapsed)
        outcome = DispatchOutcome(
            cancelled=cancelled,
            scheduled=self._scheduled,
            abandoned=self._abandoned,
            elapsed_s=elapsed,
        )
        LOGGER.info(
            "Scenario %s %s after %.2fs: scheduled=%d completed=%d errors=%d abandoned=%d",
            name,
            "cancelled" if cancelled else "finished",
            elapsed,
            outcome.scheduled,
            self._accumulator.count,
            self._accumulator.error_count,
            outcome.abandoned,
        )
        return outcome

    def metrics(self) -> DispatcherMetrics:
        with self._lock:
            started_at = self._started_at
            scheduled = self._scheduled
            queued = self._queued
            in_flight = self._in_flight
            peak_in_flight = self._peak_in_flight
            peak_queued = self._peak_queued
            dropped = self._dropped
            abandoned = self._abandoned
        elapsed = 0.0 if started_at is None else self._clock() - started_at
        return DispatcherMetrics(
            scenario=self._scenario.name,
            scheduled=scheduled,
            queue_depth=max(queued + in_flight - self._scenario.max_concurrency, 0),
            in_flight=in_flight,
            peak_in_flight=peak_in_flight,
            peak_queue_depth=peak_queued,
            completed=self._accumulator.count,
            errors=self._accumulator.error_count,
            dropped=dropped,
            abandoned=abandoned,
            elapsed_s=elapsed,
            target_rps=self._curve.rate_at(elapsed) if started_at is not None else 0.0,
        )

    def _wait_until(self, due: float) -> bool:
        """Sleep until ``due``; returns True when cancelled first."""
        remaining = due - self._clock()
        if remaining <= 0:
            return self._stop_event.is_set()
        return self._stop_event.wait(timeout=remaining)

    def _release(self, workers: ThreadPoolExecutor, offset: float) -> None:
        cap = self._scenario.max_queue_depth
        with self._lock:
            self._scheduled += 1
            # The queue only holds arrivals that found every worker busy.
            backlog = self._queued + self._in_flight - self._scenario.max_concurrency
            if cap is not None and backlog >= cap:
                self._dropped += 1
                drop = True
            else:
                self._queued += 1
                self._peak_queued = max(self._peak_queued, max(backlog + 1, 0))
                drop = False
        if drop:
            self._accumulator.add(
                Sample(
                    self._scenario.name,
                    offset,
                    0.0,
                    FailureKind.DROPPED,
                    f"arrival queue full ({cap})",
                )
            )
            return
        workers.submit(self._attempt, offset)

    def _attempt(self, offset: float) -> None:
        with self._lock:
            self._queued -= 1
            if self._stop_event.is_set():
                self._abandoned += 1
                return
            self._in_flight += 1
            self._peak_in_flight = max(self._peak_in_flight, self._in_flight)
        try:
            variables = self._row_source.next_row() if self._row_source is not None else {}
            sample = self._executor.execute(
                AttemptContext(self._scenario, scheduled_offset=offset, variables=variables)
            )
        except Exception as exc:  # noqa: BLE001
            LOGGER.exception("executor for %s raised instead of returning a sample", self._scenario.name)
            sample = Sample(self._scenario.name, offset, 0.0, FailureKind.PROTOCOL_ERROR, repr(exc))
        finally:
            with self._lock:
                self._in_flight -= 1
        self._accumulator.add(sample)


__all__ = ["DispatchOutcome", "DispatcherMetrics", "RateDispatcher"]
