from __future__ import annotations

import json
import logging
from pathlib import Path

import pandas as pd

from .collector import ScenarioStats
from .orchestrator import RunResult, ScenarioResult

LOGGER = logging.getLogger("loadshaper.report")

SUMMARY_COLUMNS = [
    "scenario",
    "status",
    "count",
    "errors",
    "error_rate",
    "throughput_rps",
    "min_ms",
    "mean_ms",
    "p50_ms",
    "p90_ms",
    "p95_ms",
    "p99_ms",
    "max_ms",
    "peak_in_flight",
    "peak_queue_depth",
    "dropped",
    "abandoned",
    "error",
]


def _ms(value: float | None) -> float | None:
    return None if value is None else value * 1000.0


def _stats_row(stats: ScenarioStats, result: ScenarioResult | None, status: str) -> dict:
    metrics = result.metrics if result is not None else None
    return {
        "scenario": stats.scenario,
        "status": status,
        "count": stats.count,
        "errors": stats.error_count,
        "error_rate": stats.error_rate,
        "throughput_rps": stats.throughput_rps,
        "min_ms": _ms(stats.min_latency_s),
        "mean_ms": _ms(stats.mean_latency_s),
        "p50_ms": _ms(stats.p50_latency_s),
        "p90_ms": _ms(stats.p90_latency_s),
        "p95_ms": _ms(stats.p95_latency_s),
        "p99_ms": _ms(stats.p99_latency_s),
        "max_ms": _ms(stats.max_latency_s),
        "peak_in_flight": metrics.peak_in_flight if metrics else None,
        "peak_queue_depth": metrics.peak_queue_depth if metrics else None,
        "dropped": metrics.dropped if metrics else None,
        "abandoned": metrics.abandoned if metrics else None,
        "error": result.error if result is not None else None,
    }


def build_dataframe(result: RunResult) -> pd.DataFrame:
    """One row per scenario, in workload order, followed by the overall rollup."""
    rows = []
    names = result.order or tuple(result.scenarios)
    for name in names:
        scenario = result.scenarios[name]
        rows.append(_stats_row(scenario.stats, scenario, scenario.status.value))
    rows.append(_stats_row(result.overall, None, result.status.value))
    return pd.DataFrame(rows, columns=SUMMARY_COLUMNS)


def latency_frame(result: RunResult) -> pd.DataFrame:
    frames = [
        pd.DataFrame({"scenario": name, "latency_s": list(scenario.stats.latencies)})
        for name, scenario in result.scenarios.items()
        if scenario.stats.latencies
    ]
    if not frames:
        return pd.DataFrame(columns=["scenario", "latency_s"])
    return pd.concat(frames, ignore_index=True)


def timeline_frame(result: RunResult) -> pd.DataFrame:
    rows = [
        {"scenario": name, "second": second, "completed": count}
        for name, scenario in result.scenarios.items()
        for second, count in scenario.stats.timeline.items()
    ]
    return pd.DataFrame(rows, columns=["scenario", "second", "completed"])


def write_report(result: RunResult, output_dir: Path) -> dict[str, Path]:
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    written: dict[str, Path] = {}

    summary_path = output_dir / "summary.csv"
    build_dataframe(result).to_csv(summary_path, index=False)
    written["summary"] = summary_path
    LOGGER.info("Summary written to %s", summary_path)

    for name, scenario in result.scenarios.items():
        if not scenario.stats.latencies:
            continue
        path = output_dir / f"{_safe_name(name)}__latencies.csv"
        pd.DataFrame({"latency_s": list(scenario.stats.latencies)}).to_csv(path, index=False)
        written[f"latencies:{name}"] = path

    manifest = {
        "status": result.status.value,
        "deadline_s": result.deadline_s,
        "duration_s": result.duration_s,
        "overall": {
            "count": result.overall.count,
            "errors": result.overall.error_count,
            "p99_ms": _ms(result.overall.p99_latency_s),
        },
        "scenarios": {
            name: {
                "status": scenario.status.value,
                "count": scenario.stats.count,
                "errors": scenario.stats.error_count,
                "errors_by_kind": scenario.stats.errors_by_kind,
                "error": scenario.error,
            }
            for name, scenario in result.scenarios.items()
        },
        "files": {key: str(path) for key, path in written.items()},
    }
    manifest_path = output_dir / "run_manifest.json"
    with open(manifest_path, "w", encoding="utf-8") as f:
        json.dump(manifest, f, indent=2)
    written["manifest"] = manifest_path
    LOGGER.info("Run manifest written to %s", manifest_path)
    return written


def format_summary(result: RunResult) -> str:
    overall = result.overall
    lines = [
        f"Run status: {result.status.value.upper()} ({result.duration_s:.1f}s, deadline {result.deadline_s:.1f}s)",
        f"Overall: {overall.count} samples taken, {overall.error_count} errors.",
        f"99th percentile: {_format_ms(overall.p99_latency_s)}",
    ]
    for name in result.order or tuple(result.scenarios):
        scenario = result.scenarios[name]
        stats = scenario.stats
        line = (
            f"  {name} [{scenario.status.value}]: count={stats.count} errors={stats.error_count} "
            f"p50={_format_ms(stats.p50_latency_s)} p95={_format_ms(stats.p95_latency_s)} "
            f"p99={_format_ms(stats.p99_latency_s)}"
        )
        if scenario.error:
            line += f" error={scenario.error}"
        lines.append(line)
    return "\n".join(lines)


def _format_ms(value: float | None) -> str:
    return "n/a" if value is None else f"{value * 1000:.1f}ms"


def _safe_name(name: str) -> str:
    return "".join(ch if ch.isalnum() or ch in "-_." else "_" for ch in name)


__all__ = [
    "build_dataframe",
    "format_summary",
    "latency_frame",
    "timeline_frame",
    "write_report",
]
