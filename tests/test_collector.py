import collections
import random
import threading

import pytest

from loadshaper.collector import ScenarioAccumulator, ScenarioStats, StatsAggregator, nearest_rank
from loadshaper.executors import FailureKind, Sample


def _sample(latency, scenario="s", failure=None, offset=0.0):
    return Sample(scenario, offset, latency, failure)


def test_nearest_rank_definition():
    values = [float(v) for v in range(1, 11)]

    assert nearest_rank(values, 50) == 5.0
    assert nearest_rank(values, 90) == 9.0
    assert nearest_rank(values, 95) == 10.0
    assert nearest_rank(values, 99) == 10.0
    assert nearest_rank(values, 0) == 1.0
    assert nearest_rank(values, 100) == 10.0


def test_nearest_rank_of_nothing_is_absent():
    assert nearest_rank([], 99) is None

    stats = ScenarioAccumulator("empty").finalize()

    assert stats.count == 0
    assert stats.p50_latency_s is None
    assert stats.p99_latency_s is None
    assert stats.mean_latency_s is None


def test_percentiles_do_not_depend_on_sample_order():
    rng = random.Random(3)
    latencies = [round(rng.uniform(0.001, 2.0), 6) for _ in range(257)]
    shuffled = list(latencies)
    random.Random(7).shuffle(shuffled)

    first = ScenarioAccumulator("s")
    second = ScenarioAccumulator("s")
    for value in latencies:
        first.add(_sample(value))
    for value in shuffled:
        second.add(_sample(value))

    a, b = first.finalize(), second.finalize()
    assert (a.p50_latency_s, a.p90_latency_s, a.p95_latency_s, a.p99_latency_s) == (
        b.p50_latency_s,
        b.p90_latency_s,
        b.p95_latency_s,
        b.p99_latency_s,
    )
    assert a.latencies == b.latencies


def test_finalize_is_idempotent():
    acc = ScenarioAccumulator("s")
    for value in (0.3, 0.1, 0.2):
        acc.add(_sample(value))

    first = acc.finalize()
    acc.add(_sample(9.0))
    second = acc.finalize()

    assert second is first
    assert second.count == 3
    assert second.max_latency_s == pytest.approx(0.3)


def test_errors_are_counted_by_kind():
    acc = ScenarioAccumulator("s")
    acc.add(_sample(0.1))
    acc.add(_sample(0.2, failure=FailureKind.TIMEOUT))
    acc.add(_sample(0.3, failure=FailureKind.TIMEOUT))
    acc.add(_sample(0.0, failure=FailureKind.TYPE_BINDING_ERROR))

    stats = acc.finalize()

    assert stats.count == 4
    assert stats.error_count == 3
    assert stats.success_count == 1
    assert stats.errors_by_kind == {"timeout": 2, "type_binding_error": 1}
    assert stats.error_rate == pytest.approx(0.75)


def test_timeline_buckets_by_completion_second():
    acc = ScenarioAccumulator("s")
    acc.add(_sample(0.2, offset=0.5))
    acc.add(_sample(0.6, offset=0.5))
    acc.add(_sample(0.1, offset=2.0))
    acc.set_duration(3.0)

    stats = acc.finalize()

    assert stats.timeline == {0: 1, 1: 1, 2: 1}
    assert stats.throughput_rps == pytest.approx(1.0)


def test_overall_rolls_up_every_scenario():
    aggregator = StatsAggregator()
    for value in (0.1, 0.2, 0.3):
        aggregator.add(_sample(value, scenario="a"))
    for value in (0.4, 0.5):
        aggregator.add(_sample(value, scenario="b", failure=FailureKind.CONNECTION_ERROR))

    overall, per_scenario = aggregator.finalize()

    assert set(per_scenario) == {"a", "b"}
    assert overall.scenario == StatsAggregator.OVERALL
    assert overall.count == 5
    assert overall.error_count == 2
    assert overall.p50_latency_s == pytest.approx(0.3)
    assert aggregator.finalize()[0] is overall


def test_concurrent_adds_are_not_lost():
    acc = ScenarioAccumulator("s")

    def worker():
        for _ in range(500):
            acc.add(_sample(0.01))

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert acc.finalize().count == 4000


def test_stats_percentile_helper_uses_sorted_latencies():
    stats = ScenarioStats.build("s", [3.0, 1.0, 2.0], collections.Counter(), 1.0)

    assert stats.latencies == (1.0, 2.0, 3.0)
    assert stats.percentile(50) == 2.0


def test_dropped_arrivals_are_counted_but_not_timed():
    acc = ScenarioAccumulator("s")
    for value in (0.3, 0.3, 0.4):
        acc.add(_sample(value))
    for _ in range(5):
        acc.add(_sample(0.0, failure=FailureKind.DROPPED))
    acc.set_duration(1.0)

    stats = acc.finalize()

    assert stats.count == 8
    assert stats.dropped_count == 5
    assert stats.errors_by_kind == {"dropped": 5}
    assert stats.latencies == (0.3, 0.3, 0.4)
    assert stats.min_latency_s == pytest.approx(0.3)
    assert stats.p50_latency_s == pytest.approx(0.3)
    assert stats.mean_latency_s == pytest.approx(1.0 / 3)
    assert stats.throughput_rps == pytest.approx(3.0)

    aggregator = StatsAggregator()
    aggregator.add(_sample(0.2, scenario="a"))
    aggregator.add(_sample(0.0, scenario="a", failure=FailureKind.DROPPED))
    overall, _ = aggregator.finalize()
    assert overall.count == 2
    assert overall.dropped_count == 1
    assert overall.min_latency_s == pytest.approx(0.2)
