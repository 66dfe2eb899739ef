from __future__ import annotations

import logging
from pathlib import Path
from typing import Mapping

import matplotlib.pyplot as plt
import numpy as np
import seaborn as sns

from .orchestrator import RunResult
from .report import latency_frame, timeline_frame
from .schedule import ScheduleCurve

LOGGER = logging.getLogger("loadshaper.charts")

sns.set_style("whitegrid")
plt.rcParams["figure.dpi"] = 100
plt.rcParams["savefig.dpi"] = 200
plt.rcParams["font.size"] = 10
plt.rcParams["axes.labelsize"] = 11
plt.rcParams["axes.titlesize"] = 13
plt.rcParams["legend.fontsize"] = 9

STATUS_COLORS = {
    "completed": "#2E86AB",
    "partial": "#F18F01",
    "aborted": "#C73E1D",
}


def render_run_charts(
    result: RunResult,
    output_dir: Path,
    curves: Mapping[str, ScheduleCurve] | None = None,
) -> list[Path]:
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    rendered = []
    for path in (
        _render_latency_boxplot(result, output_dir / "latency_distribution.png"),
        _render_throughput_chart(result, curves or {}, output_dir / "throughput.png"),
    ):
        if path is not None:
            LOGGER.info("Rendering chart %s", path)
            rendered.append(path)
    return rendered


def _render_latency_boxplot(result: RunResult, chart_path: Path) -> Path | None:
    df = latency_frame(result)
    if df.empty:
        LOGGER.warning("No latency data available for latency chart")
        return None
    df = df.assign(latency_ms=df["latency_s"] * 1000.0)
    order = [name for name in result.order or tuple(result.scenarios) if name in set(df["scenario"])]
    palette = [STATUS_COLORS.get(result.scenarios[name].status.value, "#808080") for name in order]

    fig, ax = plt.subplots(figsize=(max(6, 2 + 1.5 * len(order)), 6))
    sns.boxplot(
        data=df,
        x="scenario",
        y="latency_ms",
        order=order,
        hue="scenario",
        hue_order=order,
        palette=palette,
        legend=False,
        ax=ax,
        linewidth=1.5,
        width=0.6,
    )
    for index, name in enumerate(order):
        p99 = result.scenarios[name].stats.p99_latency_s
        if p99 is not None:
            ax.scatter(index, p99 * 1000.0, marker="_", s=400, color="#A23B72", zorder=3)

    ax.set_xlabel("Scenario", fontweight="semibold", labelpad=10)
    ax.set_ylabel("Latency (ms)", fontweight="semibold", labelpad=10)
    ax.set_ylim(bottom=0)
    ax.set_title("Latency Distribution by Scenario (p99 marked)", fontweight="bold", pad=15)
    ax.grid(True, alpha=0.3, linestyle="--", linewidth=0.5, axis="y")
    ax.spines["top"].set_visible(False)
    ax.spines["right"].set_visible(False)

    plt.tight_layout()
    fig.savefig(chart_path, bbox_inches="tight", facecolor="white")
    plt.close(fig)
    return chart_path


def _render_throughput_chart(
    result: RunResult,
    curves: Mapping[str, ScheduleCurve],
    chart_path: Path,
) -> Path | None:
    df = timeline_frame(result)
    if df.empty and not curves:
        LOGGER.warning("No throughput data available for throughput chart")
        return None

    fig, ax = plt.subplots(figsize=(11, 6))
    colors = sns.color_palette("deep", n_colors=max(len(result.scenarios), 1))
    for color, name in zip(colors, result.order or tuple(result.scenarios)):
        subset = df[df["scenario"] == name].sort_values("second")
        if not subset.empty:
            ax.plot(
                subset["second"],
                subset["completed"],
                marker="o",
                markersize=3,
                linewidth=1.8,
                color=color,
                label=f"{name} achieved",
            )
        curve = curves.get(name)
        if curve is not None and curve.total_duration > 0:
            xs = np.linspace(0.0, curve.total_duration, 200)
            ax.plot(
                xs,
                [curve.rate_at(x) for x in xs],
                linestyle="--",
                linewidth=1.2,
                color=color,
                alpha=0.8,
                label=f"{name} target",
            )

    ax.set_xlabel("Elapsed (s)", fontweight="semibold")
    ax.set_ylabel("Requests per second", fontweight="semibold")
    ax.set_title("Achieved Throughput vs Target Rate", fontweight="bold", pad=15)
    ax.set_ylim(bottom=0)
    ax.grid(True, alpha=0.3, linestyle="--")
    ax.legend(loc="center left", bbox_to_anchor=(1.0, 0.5), frameon=True)

    plt.tight_layout()
    fig.savefig(chart_path, bbox_inches="tight", facecolor="white")
    plt.close(fig)
    return chart_path


__all__ = ["render_run_charts"]
