from __future__ import annotations

import enum
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Callable

from sqlalchemy import exc as sa_exc

from .collector import ScenarioStats, StatsAggregator
from .datasource import CsvRowSource
from .dispatcher import DispatcherMetrics, RateDispatcher
from .executors import AttemptExecutor, create_executor
from .pool import ConnectionPool, PoolUnavailableError
from .scenario import Protocol, ScenarioSpec, WorkloadConfigError, WorkloadSpec
from .schedule import compile_schedule

LOGGER = logging.getLogger("loadshaper.orchestrator")

DEFAULT_DEADLINE_MARGIN_S = 30.0
DEFAULT_PROGRESS_INTERVAL_S = 5.0
POOL_VERIFY_TIMEOUT_S = 30.0

ExecutorFactory = Callable[[ScenarioSpec, "ConnectionPool | None"], AttemptExecutor]


class RunStatus(str, enum.Enum):
    COMPLETED = "completed"
    TIMED_OUT = "timed_out"


class ScenarioStatus(str, enum.Enum):
    COMPLETED = "completed"
    PARTIAL = "partial"
    ABORTED = "aborted"


@dataclass(frozen=True)
class ScenarioResult:
    name: str
    status: ScenarioStatus
    stats: ScenarioStats
    metrics: DispatcherMetrics | None = None
    error: str | None = None


@dataclass(frozen=True)
class RunResult:
    status: RunStatus
    overall: ScenarioStats
    scenarios: dict[str, ScenarioResult]
    deadline_s: float
    started_at: float
    finished_at: float
    order: tuple[str, ...] = field(default=())

    @property
    def scenario_stats(self) -> dict[str, ScenarioStats]:
        return {name: result.stats for name, result in self.scenarios.items()}

    @property
    def duration_s(self) -> float:
        return max(self.finished_at - self.started_at, 0.0)

    @property
    def aborted(self) -> list[str]:
        return [name for name, r in self.scenarios.items() if r.status is ScenarioStatus.ABORTED]


class _ScenarioRun:
    def __init__(self, scenario: ScenarioSpec) -> None:
        self.scenario = scenario
        self.dispatcher: RateDispatcher | None = None
        self.executor: AttemptExecutor | None = None
        self.thread: threading.Thread | None = None
        self.error: str | None = None
        self.timed_out = False

    @property
    def alive(self) -> bool:
        return self.thread is not None and self.thread.is_alive()


class LoadOrchestrator:
    """Runs every scenario's dispatcher concurrently under one global deadline."""

    def __init__(
        self,
        workload: WorkloadSpec,
        deadline_margin: float = DEFAULT_DEADLINE_MARGIN_S,
        *,
        deadline: float | None = None,
        executor_factory: ExecutorFactory | None = None,
        pool: ConnectionPool | None = None,
        progress_interval: float = DEFAULT_PROGRESS_INTERVAL_S,
        pool_verify_timeout: float = POOL_VERIFY_TIMEOUT_S,
    ) -> None:
        if deadline_margin < 0:
            raise ValueError("deadline_margin must be >= 0")
        self._workload = workload
        self._deadline_margin = deadline_margin
        self._deadline_cap = deadline
        self._executor_factory = executor_factory or create_executor
        self._pool = pool
        self._owns_pool = pool is None
        self._progress_interval = max(progress_interval, 0.1)
        self._pool_verify_timeout = pool_verify_timeout
        self._aggregator = StatsAggregator()
        names = [s.name for s in workload.scenarios]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise WorkloadConfigError(f"duplicate scenario name(s): {', '.join(duplicates)}")
        self._runs: list[_ScenarioRun] = [_ScenarioRun(s) for s in workload.scenarios]
        self._stop_event = threading.Event()

    def snapshot(self) -> dict[str, DispatcherMetrics]:
        return {
            run.scenario.name: run.dispatcher.metrics()
            for run in self._runs
            if run.dispatcher is not None
        }

    def stop(self) -> None:
        """Cancel every dispatcher early, as if the deadline had passed."""
        self._stop_event.set()

    def run(self) -> RunResult:
        started_wall = time.time()
        try:
            self._prepare()
            deadline_s = self._compute_deadline()
            LOGGER.info(
                "Starting %d scenario(s); global deadline %.1fs", len(self._runs), deadline_s
            )
            timed_out = self._supervise(deadline_s)
        finally:
            self._close()

        overall, per_scenario = self._aggregator.finalize()
        results: dict[str, ScenarioResult] = {}
        for run in self._runs:
            name = run.scenario.name
            stats = per_scenario[name]
            if run.error is not None:
                status = ScenarioStatus.ABORTED
            elif run.timed_out:
                status = ScenarioStatus.PARTIAL
            else:
                status = ScenarioStatus.COMPLETED
            results[name] = ScenarioResult(
                name=name,
                status=status,
                stats=stats,
                metrics=run.dispatcher.metrics() if run.dispatcher is not None else None,
                error=run.error,
            )

        status = RunStatus.TIMED_OUT if timed_out else RunStatus.COMPLETED
        LOGGER.info(
            "Run %s: %d sample(s), %d error(s), p99=%s",
            status.value,
            overall.count,
            overall.error_count,
            "n/a" if overall.p99_latency_s is None else f"{overall.p99_latency_s * 1000:.1f}ms",
        )
        return RunResult(
            status=status,
            overall=overall,
            scenarios=results,
            deadline_s=deadline_s,
            started_at=started_wall,
            finished_at=time.time(),
            order=tuple(run.scenario.name for run in self._runs),
        )

    def _prepare(self) -> None:
        for run in self._runs:
            scenario = run.scenario
            try:
                scenario.validate()
            except WorkloadConfigError as exc:
                self._abort(run, f"configuration error: {exc}")

        sql_runs = [
            run
            for run in self._runs
            if run.error is None and run.scenario.protocol is Protocol.SQL
        ]
        if sql_runs and self._pool is None:
            if self._workload.database is None:
                for run in sql_runs:
                    self._abort(run, "configuration error: no database configured")
            else:
                try:
                    pool = ConnectionPool.from_settings(self._workload.database)
                except sa_exc.ArgumentError as exc:
                    for run in sql_runs:
                        self._abort(run, f"configuration error: {exc}")
                except ImportError as exc:
                    # Dialect known to SQLAlchemy but its driver is not installed.
                    for run in sql_runs:
                        self._abort(run, f"resource error: database driver unavailable: {exc}")
                else:
                    try:
                        pool.verify(timeout_s=self._pool_verify_timeout)
                    except PoolUnavailableError as exc:
                        pool.dispose()
                        for run in sql_runs:
                            self._abort(run, f"resource error: {exc}")
                    else:
                        self._pool = pool
        if sql_runs and self._pool is not None:
            concurrency = sum(run.scenario.max_concurrency for run in sql_runs if run.error is None)
            if concurrency > self._pool.capacity:
                LOGGER.warning(
                    "SQL scenarios allow %d concurrent attempts but the pool holds %d connection(s)",
                    concurrency,
                    self._pool.capacity,
                )

        for run in self._runs:
            if run.error is not None:
                continue
            scenario = run.scenario
            try:
                curve = compile_schedule(scenario)
                row_source = (
                    CsvRowSource.from_csv(scenario.csv_file) if scenario.csv_file is not None else None
                )
                run.executor = self._executor_factory(scenario, self._pool)
            except WorkloadConfigError as exc:
                self._abort(run, f"configuration error: {exc}")
                continue
            except Exception as exc:  # noqa: BLE001
                LOGGER.exception("setting up scenario %s failed", scenario.name)
                self._abort(run, f"setup failure: {exc!r}")
                continue
            run.dispatcher = RateDispatcher(
                scenario,
                curve,
                run.executor,
                self._aggregator.accumulator(scenario.name),
                row_source=row_source,
            )

    def _abort(self, run: _ScenarioRun, message: str) -> None:
        LOGGER.error("Scenario %s aborted: %s", run.scenario.name, message)
        run.error = message
        self._aggregator.accumulator(run.scenario.name)

    def _compute_deadline(self) -> float:
        longest = max(
            (run.dispatcher.curve.total_duration for run in self._runs if run.dispatcher is not None),
            default=0.0,
        )
        deadline = longest + self._deadline_margin
        if self._deadline_cap is not None:
            deadline = min(deadline, self._deadline_cap)
        return deadline

    def _supervise(self, deadline_s: float) -> bool:
        for run in self._runs:
            if run.dispatcher is None:
                continue
            run.thread = threading.Thread(
                target=self._dispatch,
                args=(run,),
                name=f"dispatcher-{run.scenario.name}",
                daemon=True,
            )
            run.thread.start()

        deadline = time.monotonic() + deadline_s
        next_progress = time.monotonic() + self._progress_interval
        while any(run.alive for run in self._runs):
            now = time.monotonic()
            if now >= deadline or self._stop_event.is_set():
                break
            if now >= next_progress:
                self._log_progress()
                next_progress = now + self._progress_interval
            self._stop_event.wait(timeout=min(0.1, deadline - now, next_progress - now))

        timed_out = False
        for run in self._runs:
            if run.alive:
                run.timed_out = True
                timed_out = True
                run.dispatcher.stop()
        if timed_out:
            if self._stop_event.is_set():
                LOGGER.warning("Run stopped; waiting for in-flight attempts to finish")
            else:
                LOGGER.warning(
                    "Global deadline of %.1fs exceeded; waiting for in-flight attempts to finish",
                    deadline_s,
                )
        for run in self._runs:
            if run.thread is not None:
                run.thread.join()
        return timed_out

    def _dispatch(self, run: _ScenarioRun) -> None:
        try:
            run.dispatcher.run()
        except Exception as exc:  # noqa: BLE001
            LOGGER.exception("dispatcher for %s failed", run.scenario.name)
            run.error = f"dispatcher failure: {exc!r}"

    def _log_progress(self) -> None:
        for name, metrics in self.snapshot().items():
            LOGGER.info(
                "[%s] t=%.1fs target=%.1frps scheduled=%d queued=%d in_flight=%d completed=%d errors=%d",
                name,
                metrics.elapsed_s,
                metrics.target_rps,
                metrics.scheduled,
                metrics.queue_depth,
                metrics.in_flight,
                metrics.completed,
                metrics.errors,
            )

    def _close(self) -> None:
        for run in self._runs:
            if run.executor is not None:
                run.executor.close()
        if self._pool is not None and self._owns_pool:
            self._pool.dispose()


def run(
    workload: WorkloadSpec,
    deadline_margin: float = DEFAULT_DEADLINE_MARGIN_S,
    *,
    deadline: float | None = None,
    executor_factory: ExecutorFactory | None = None,
    pool: ConnectionPool | None = None,
    progress_interval: float = DEFAULT_PROGRESS_INTERVAL_S,
    pool_verify_timeout: float = POOL_VERIFY_TIMEOUT_S,
) -> RunResult:
    orchestrator = LoadOrchestrator(
        workload,
        deadline_margin,
        deadline=deadline,
        executor_factory=executor_factory,
        pool=pool,
        progress_interval=progress_interval,
        pool_verify_timeout=pool_verify_timeout,
    )
    return orchestrator.run()


__all__ = [
    "DEFAULT_DEADLINE_MARGIN_S",
    "LoadOrchestrator",
    "RunResult",
    "RunStatus",
    "ScenarioResult",
    "ScenarioStatus",
    "run",
]
