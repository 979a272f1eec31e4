from __future__ import annotations

import logging
from pathlib import Path

import matplotlib

matplotlib.use("Agg")

import matplotlib.pyplot as plt
import pandas as pd
import seaborn as sns

from .collector import series_to_dataframe
from .orchestrator import BenchmarkResult
from .thresholds import Grade

LOGGER = logging.getLogger("benchharness.charts")

sns.set_style("whitegrid")
plt.rcParams["figure.dpi"] = 100
plt.rcParams["savefig.dpi"] = 150
plt.rcParams["font.size"] = 10
plt.rcParams["axes.labelsize"] = 11
plt.rcParams["axes.titlesize"] = 13

GRADE_COLORS = {
    Grade.PASS: "#6A994E",
    Grade.WARN: "#F18F01",
    Grade.FAIL: "#C73E1D",
    Grade.NO_DATA: "#808080",
}
SERIES_COLOR = "#2E86AB"
PERCENTILE_COLORS = {"p50": "#2E86AB", "p95": "#A23B72", "p99": "#F18F01"}


def render_result_chart(result: BenchmarkResult, output_dir: Path) -> Path | None:
    """Render one panel per sampled metric over elapsed run time."""

    df = series_to_dataframe(result.series)
    if df.empty:
        LOGGER.warning("No samples to chart for %s", result.scenario.name)
        return None

    output_dir.mkdir(parents=True, exist_ok=True)
    chart_path = output_dir / f"{result.scenario.name}__timeseries.png"

    df = df.copy()
    df["elapsed_s"] = df["timestamp"] - df["timestamp"].min()
    metrics = list(dict.fromkeys(df["metric"]))
    verdicts = {verdict.metric: verdict for verdict in result.verdicts}

    fig, axes = plt.subplots(
        len(metrics), 1, figsize=(11, 3.2 * len(metrics)), sharex=True, squeeze=False
    )
    for ax, metric in zip(axes[:, 0], metrics):
        subset = df[df["metric"] == metric]
        _render_metric_panel(ax, metric, subset, verdicts.get(metric))
    axes[-1, 0].set_xlabel("Elapsed (s)", fontweight="semibold")

    title = f"{result.scenario.name}: {result.overall_grade.value}"
    if result.aborted:
        title = f"{result.scenario.name}: ABORTED ({result.abort_reason})"
    fig.suptitle(title, fontweight="bold")
    plt.tight_layout()
    fig.savefig(chart_path, bbox_inches="tight", facecolor="white")
    plt.close(fig)
    LOGGER.info("Rendering chart %s", chart_path)
    return chart_path


def _render_metric_panel(ax: plt.Axes, metric: str, subset: pd.DataFrame, verdict) -> None:
    has_percentiles = subset["p99"].notna().any()
    if has_percentiles:
        for column, color in PERCENTILE_COLORS.items():
            sns.lineplot(
                data=subset, x="elapsed_s", y=column, ax=ax, color=color, label=column, marker="o"
            )
    else:
        sns.lineplot(
            data=subset, x="elapsed_s", y="value", ax=ax, color=SERIES_COLOR, marker="o"
        )

    if verdict is not None:
        spec = verdict.spec
        ax.axhline(
            spec.target,
            color=GRADE_COLORS[verdict.grade],
            linestyle="--",
            linewidth=1.5,
            label=f"target {spec.comparison} {spec.target:g}",
        )
        ax.legend(loc="best", frameon=True, fontsize=8)

    ax.set_ylabel(metric, fontweight="semibold")
    ax.grid(True, alpha=0.3, linestyle="--")
    ax.spines["top"].set_visible(False)
    ax.spines["right"].set_visible(False)


def render_charts(results: list[BenchmarkResult], output_dir: Path) -> list[Path]:
    paths = []
    for result in results:
        path = render_result_chart(result, output_dir)
        if path is not None:
            paths.append(path)
    return paths
