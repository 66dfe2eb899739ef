from __future__ import annotations

import collections
import math
import threading
from dataclasses import dataclass, field
from typing import Iterable, Sequence

from .executors import FailureKind, Sample

PERCENTILES: tuple[float, ...] = (50.0, 90.0, 95.0, 99.0)


def nearest_rank(sorted_values: Sequence[float], percentile: float) -> float | None:
    """Nearest-rank percentile of already sorted values; ``None`` when empty."""
    n = len(sorted_values)
    if n == 0:
        return None
    index = math.ceil(percentile / 100.0 * n) - 1
    index = min(max(index, 0), n - 1)
    return sorted_values[index]


@dataclass(frozen=True)
class ScenarioStats:
    scenario: str
    count: int
    error_count: int
    errors_by_kind: dict[str, int]
    min_latency_s: float | None
    mean_latency_s: float | None
    max_latency_s: float | None
    p50_latency_s: float | None
    p90_latency_s: float | None
    p95_latency_s: float | None
    p99_latency_s: float | None
    duration_s: float
    latencies: tuple[float, ...] = field(default=(), repr=False)
    timeline: dict[int, int] = field(default_factory=dict, repr=False)
    # Arrivals rejected by a full queue; counted, but never part of the latencies.
    dropped_count: int = 0

    @property
    def success_count(self) -> int:
        return self.count - self.error_count

    @property
    def error_rate(self) -> float:
        if self.count == 0:
            return 0.0
        return self.error_count / self.count

    @property
    def throughput_rps(self) -> float:
        if self.duration_s <= 0:
            return 0.0
        return (self.count - self.dropped_count) / self.duration_s

    def percentile(self, percentile: float) -> float | None:
        return nearest_rank(self.latencies, percentile)

    @classmethod
    def build(
        cls,
        scenario: str,
        latencies: Iterable[float],
        errors: collections.Counter[str],
        duration_s: float,
        timeline: dict[int, int] | None = None,
        dropped: int = 0,
    ) -> "ScenarioStats":
        ordered = tuple(sorted(latencies))
        count = len(ordered) + dropped
        p50, p90, p95, p99 = (nearest_rank(ordered, p) for p in PERCENTILES)
        return cls(
            scenario=scenario,
            count=count,
            error_count=sum(errors.values()),
            errors_by_kind=dict(sorted(errors.items())),
            min_latency_s=ordered[0] if ordered else None,
            mean_latency_s=math.fsum(ordered) / len(ordered) if ordered else None,
            max_latency_s=ordered[-1] if ordered else None,
            p50_latency_s=p50,
            p90_latency_s=p90,
            p95_latency_s=p95,
            p99_latency_s=p99,
            duration_s=duration_s,
            latencies=ordered,
            timeline=dict(sorted((timeline or {}).items())),
            dropped_count=dropped,
        )


class ScenarioAccumulator:
    """Thread-safe running totals for one scenario's samples."""

    def __init__(self, scenario: str) -> None:
        self.scenario = scenario
        self._lock = threading.Lock()
        self._latencies: list[float] = []
        self._errors: collections.Counter[str] = collections.Counter()
        self._timeline: collections.Counter[int] = collections.Counter()
        self._dropped = 0
        self._duration_s = 0.0
        self._final: ScenarioStats | None = None

    def add(self, sample: Sample) -> None:
        completed_at = sample.scheduled_offset + sample.latency_s
        with self._lock:
            if self._final is not None:
                return
            if sample.failure is not None:
                self._errors[sample.failure.value] += 1
            if sample.failure is FailureKind.DROPPED:
                self._dropped += 1
                return
            self._latencies.append(sample.latency_s)
            self._timeline[int(completed_at)] += 1

    def set_duration(self, duration_s: float) -> None:
        with self._lock:
            if self._final is None:
                self._duration_s = max(duration_s, 0.0)

    @property
    def count(self) -> int:
        with self._lock:
            if self._final is not None:
                return self._final.count
            return len(self._latencies) + self._dropped

    @property
    def error_count(self) -> int:
        with self._lock:
            if self._final is not None:
                return self._final.error_count
            return sum(self._errors.values())

    def count_failures(self, kind: FailureKind) -> int:
        with self._lock:
            return self._errors.get(kind.value, 0)

    def finalize(self) -> ScenarioStats:
        with self._lock:
            if self._final is None:
                self._final = ScenarioStats.build(
                    self.scenario,
                    self._latencies,
                    self._errors,
                    self._duration_s,
                    dict(self._timeline),
                    dropped=self._dropped,
                )
                self._latencies = []
            return self._final


class StatsAggregator:
    """Per-scenario accumulators plus the run-wide rollup."""

    OVERALL = "overall"

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._accumulators: dict[str, ScenarioAccumulator] = {}
        self._overall: ScenarioStats | None = None

    def accumulator(self, scenario: str) -> ScenarioAccumulator:
        with self._lock:
            acc = self._accumulators.get(scenario)
            if acc is None:
                acc = ScenarioAccumulator(scenario)
                self._accumulators[scenario] = acc
            return acc

    def add(self, sample: Sample) -> None:
        self.accumulator(sample.scenario).add(sample)

    def finalize(self) -> tuple[ScenarioStats, dict[str, ScenarioStats]]:
        with self._lock:
            accumulators = dict(self._accumulators)
        per_scenario = {name: acc.finalize() for name, acc in accumulators.items()}
        with self._lock:
            if self._overall is None:
                errors: collections.Counter[str] = collections.Counter()
                timeline: collections.Counter[int] = collections.Counter()
                latencies: list[float] = []
                dropped = 0
                for stats in per_scenario.values():
                    dropped += stats.dropped_count
                    latencies.extend(stats.latencies)
                    errors.update(stats.errors_by_kind)
                    timeline.update(stats.timeline)
                duration = max((s.duration_s for s in per_scenario.values()), default=0.0)
                self._overall = ScenarioStats.build(
                    self.OVERALL, latencies, errors, duration, dict(timeline), dropped=dropped
                )
            return self._overall, per_scenario


__all__ = [
    "PERCENTILES",
    "ScenarioAccumulator",
    "ScenarioStats",
    "StatsAggregator",
    "nearest_rank",
]
