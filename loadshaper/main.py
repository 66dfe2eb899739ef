from __future__ import annotations

import argparse
import logging
import os
import sys
from pathlib import Path

from .orchestrator import DEFAULT_DEADLINE_MARGIN_S, DEFAULT_PROGRESS_INTERVAL_S, RunStatus, run
from .report import format_summary, write_report
from .scenario import WorkloadConfigError, WorkloadSpec
from .schedule import compile_schedule
from .workload import load_workload

LOGGER = logging.getLogger("loadshaper")


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Rate-shaped SQL/HTTP load generator")
    parser.add_argument(
        "workload",
        nargs="?",
        default=os.environ.get("LOADSHAPER_WORKLOAD", "workload.yaml"),
        help="Path to the YAML workload description",
    )
    parser.add_argument(
        "--deadline-margin",
        type=float,
        default=float(os.environ.get("LOADSHAPER_DEADLINE_MARGIN", DEFAULT_DEADLINE_MARGIN_S)),
        help="Seconds added to the longest schedule to form the global deadline",
    )
    parser.add_argument(
        "--deadline",
        type=float,
        default=None,
        help="Hard cap on the global deadline in seconds",
    )
    parser.add_argument(
        "--output-dir",
        default=os.environ.get("LOADSHAPER_OUTPUT_DIR"),
        help="Directory to store report artefacts (CSV, JSON manifest and charts)",
    )
    parser.add_argument(
        "--no-charts",
        action="store_true",
        help="Skip chart rendering when writing a report",
    )
    parser.add_argument(
        "--progress-interval",
        type=float,
        default=DEFAULT_PROGRESS_INTERVAL_S,
        help="Seconds between progress log lines",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Only print the compiled load curves without generating load",
    )
    parser.add_argument(
        "--log-level",
        default=os.environ.get("LOADSHAPER_LOG_LEVEL", "INFO"),
        help="Logging level",
    )
    return parser.parse_args(argv)


def setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    setup_logging(args.log_level)

    try:
        workload = load_workload(args.workload)
    except WorkloadConfigError as exc:
        LOGGER.error("Invalid workload %s: %s", args.workload, exc)
        return 2

    if args.dry_run:
        _print_plan(workload, args.deadline_margin)
        return 0

    result = run(
        workload,
        args.deadline_margin,
        deadline=args.deadline,
        progress_interval=args.progress_interval,
    )
    print(format_summary(result))

    if args.output_dir:
        output_dir = Path(args.output_dir)
        write_report(result, output_dir)
        if not args.no_charts:
            from .charts import render_run_charts

            curves = {s.name: compile_schedule(s) for s in workload.scenarios}
            render_run_charts(result, output_dir, curves)

    if result.status is RunStatus.COMPLETED and not result.aborted:
        return 0
    return 1


def _print_plan(workload: WorkloadSpec, deadline_margin: float) -> None:
    longest = 0.0
    for scenario in workload.scenarios:
        curve = compile_schedule(scenario)
        longest = max(longest, curve.total_duration)
        print(
            f"Scenario: {scenario.name} ({scenario.protocol.value}, max concurrency "
            f"{scenario.max_concurrency})"
        )
        for segment in curve.segments:
            print(
                f"  - {segment.phase.value}: {segment.start_rate:g} -> {segment.end_rate:g} rps "
                f"over {segment.duration:g}s"
            )
        print(
            f"  total {curve.total_duration:g}s, ~{curve.expected_total:.0f} arrivals"
        )
    print(f"Global deadline: {longest + deadline_margin:g}s")


if __name__ == "__main__":
    sys.exit(main())
