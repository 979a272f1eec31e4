from __future__ import annotations

import dataclasses
import json
import logging
import math
import platform
import time
from pathlib import Path
from typing import Any, Sequence

import pandas as pd
import psutil

from .collector import AggregateStat, NoData, Observation, series_to_dataframe
from .orchestrator import BenchmarkResult
from .thresholds import Grade

LOGGER = logging.getLogger("benchharness.report")

SUMMARY_COLUMNS = ["scenario", "metric", "statistic", "observed", "target", "grade", "samples"]


def system_info() -> dict[str, Any]:
    memory = psutil.virtual_memory()
    return {
        "hostname": platform.node(),
        "os": f"{platform.system()} {platform.release()}",
        "python": platform.python_version(),
        "cpu_count": psutil.cpu_count(logical=False),
        "cpu_count_logical": psutil.cpu_count(logical=True),
        "memory_total_mb": round(memory.total / (1024 * 1024), 1),
    }


def observation_to_dict(observed: Observation) -> dict[str, Any]:
    if isinstance(observed, NoData):
        return {"no_data": True, "count": observed.count, "misses": observed.misses, "reason": observed.reason}
    return {"no_data": False, **dataclasses.asdict(observed)}


def result_to_dict(result: BenchmarkResult) -> dict[str, Any]:
    """Self-describing snapshot of one scenario run."""

    scenario = dataclasses.asdict(result.scenario)
    series = {
        name: {
            "misses": item.misses,
            "samples": [
                {
                    "timestamp": sample.timestamp,
                    "value": sample.value,
                    "percentiles": dataclasses.asdict(sample.percentiles)
                    if sample.percentiles
                    else None,
                }
                for sample in item.samples
            ],
        }
        for name, item in result.series.items()
    }
    return {
        "scenario": scenario,
        "status": result.status.value,
        "overall_grade": result.overall_grade.value,
        "abort_reason": result.abort_reason,
        "partial": result.partial,
        "started_at": result.started_at,
        "finished_at": result.finished_at,
        "stats": {name: observation_to_dict(obs) for name, obs in result.stats.items()},
        "verdicts": [
            {
                "metric": verdict.metric,
                "grade": verdict.grade.value,
                "observed_value": verdict.observed_value,
                "statistic": verdict.spec.statistic,
                "target": verdict.spec.target,
                "comparison": verdict.spec.comparison,
                "warn_tolerance": verdict.spec.warn_tolerance,
                "observed": observation_to_dict(verdict.observed),
            }
            for verdict in result.verdicts
        ],
        "bottlenecks": [
            {**dataclasses.asdict(finding), "grade": finding.grade.value}
            for finding in result.bottlenecks
        ],
        "degradations": [dataclasses.asdict(item) for item in result.degradations],
        "load": None
        if result.load is None
        else {
            **dataclasses.asdict(result.load),
            "duration_s": result.load.duration_s,
            "throughput": result.load.throughput,
            "success_rate": result.load.success_rate,
        },
        "process_exit": None
        if result.process_exit is None
        else dataclasses.asdict(result.process_exit),
        "series": series,
    }


def build_document(results: Sequence[BenchmarkResult]) -> dict[str, Any]:
    return {
        "generated_at": time.time(),
        "system": system_info(),
        "scenarios": [result_to_dict(result) for result in results],
    }


def write_json(results: Sequence[BenchmarkResult], path: Path) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    document = build_document(results)
    tmp_path = path.with_name(path.name + ".tmp")
    with open(tmp_path, "w", encoding="utf-8") as f:
        json.dump(_json_safe(document), f, indent=2)
    tmp_path.replace(path)
    LOGGER.info("Benchmark result written to %s", path)
    return path


def summary_frame(results: Sequence[BenchmarkResult]) -> pd.DataFrame:
    rows = []
    for result in results:
        name = result.scenario.name
        if result.aborted:
            rows.append(
                {
                    "scenario": name,
                    "metric": "-",
                    "statistic": "-",
                    "observed": "-",
                    "target": "-",
                    "grade": f"ABORTED: {result.abort_reason}",
                    "samples": "-",
                }
            )
        for verdict in result.verdicts:
            spec = verdict.spec
            rows.append(
                {
                    "scenario": name,
                    "metric": verdict.metric,
                    "statistic": spec.statistic,
                    "observed": _format_number(verdict.observed_value),
                    "target": f"{spec.comparison} {_format_number(spec.target)}",
                    "grade": verdict.grade.value,
                    "samples": _sample_label(verdict.observed),
                }
            )
        rows.append(
            {
                "scenario": name,
                "metric": "OVERALL",
                "statistic": "",
                "observed": "",
                "target": "",
                "grade": result.overall_grade.value,
                "samples": "",
            }
        )
    return pd.DataFrame(rows, columns=SUMMARY_COLUMNS)


def render_summary_table(results: Sequence[BenchmarkResult]) -> str:
    frame = summary_frame(results)
    lines = [frame.to_string(index=False)]
    for result in results:
        if result.bottlenecks:
            lines.append("")
            lines.append(f"Bottlenecks for {result.scenario.name}:")
            for rank, finding in enumerate(result.bottlenecks, start=1):
                lines.append(f"  {rank}. {finding.metric}: {finding.detail}")
        for item in result.degradations:
            lines.append(
                f"  degraded {item.metric}: {item.baseline:,.2f} -> {item.post_load:,.2f} "
                f"({item.change:+.1%}, tolerance {item.tolerance:.0%})"
            )
    return "\n".join(lines)


def render_markdown(results: Sequence[BenchmarkResult]) -> str:
    info = system_info()
    lines = [
        "# Benchmark Report",
        "",
        f"**Generated:** {time.strftime('%Y-%m-%d %H:%M:%S')}  ",
        f"**Host:** {info['hostname']} ({info['os']}, {info['cpu_count_logical']} CPUs, "
        f"{info['memory_total_mb']:.0f} MB)",
        "",
    ]
    for result in results:
        scenario = result.scenario
        lines.append(f"## {scenario.name}")
        lines.append("")
        if scenario.description:
            lines.append(scenario.description)
            lines.append("")
        status = result.overall_grade.value
        if result.aborted:
            status = f"ABORTED: {result.abort_reason}"
        lines.append(f"**Result:** {status}" + (" (partial data)" if result.partial else ""))
        lines.append("")
        lines.append("| Metric | Statistic | Observed | Target | Status |")
        lines.append("|---|---|---|---|---|")
        for verdict in result.verdicts:
            spec = verdict.spec
            lines.append(
                f"| {verdict.metric} | {spec.statistic} | {_format_number(verdict.observed_value)} "
                f"| {spec.comparison} {_format_number(spec.target)} | {_grade_label(verdict.grade)} |"
            )
        lines.append("")
        if result.load is not None:
            load = result.load
            lines.append(
                f"Load: {load.issued:,} requests from {load.workers} workers in "
                f"{load.duration_s:.1f}s, {load.throughput:,.1f} req/s, "
                f"{load.success_rate:.1f}% success"
            )
            lines.append("")
        if result.bottlenecks:
            lines.append("### Bottlenecks")
            lines.append("")
            for rank, finding in enumerate(result.bottlenecks, start=1):
                lines.append(f"{rank}. **{finding.metric}**: {finding.detail}")
            lines.append("")
        if result.degradations:
            lines.append("### Degradation")
            lines.append("")
            for item in result.degradations:
                lines.append(
                    f"- **{item.metric}**: {item.baseline:,.2f} before load, "
                    f"{item.post_load:,.2f} after ({item.change:+.1%})"
                )
            lines.append("")
        if result.process_exit is not None:
            exit_info = result.process_exit
            lines.append(f"Target process: pid {exit_info.pid}, {exit_info.reason}")
            lines.append("")
    return "\n".join(lines)


def write_markdown(results: Sequence[BenchmarkResult], path: Path) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(render_markdown(results), encoding="utf-8")
    LOGGER.info("Markdown report written to %s", path)
    return path


def write_samples(results: Sequence[BenchmarkResult], output_dir: Path) -> list[Path]:
    output_dir.mkdir(parents=True, exist_ok=True)
    paths = []
    for result in results:
        df = series_to_dataframe(result.series)
        df_path = output_dir / f"{result.scenario.name}__samples.csv"
        df.to_csv(df_path, index=False)
        LOGGER.info("Saved %d samples for %s to %s", len(df), result.scenario.name, df_path)
        paths.append(df_path)
    return paths


def _sample_label(observed: Observation) -> str:
    if isinstance(observed, AggregateStat):
        return f"{observed.count} ({observed.misses} missed)" if observed.misses else str(observed.count)
    return f"{observed.count} (no data)"


def _grade_label(grade: Grade) -> str:
    return {
        Grade.PASS: "✅ PASS",
        Grade.WARN: "⚠️ WARN",
        Grade.FAIL: "❌ FAIL",
        Grade.NO_DATA: "NO DATA",
    }[grade]


def _format_number(value: float | None) -> str:
    if value is None:
        return "n/a"
    if abs(value) >= 1000:
        return f"{value:,.0f}"
    return f"{value:,.2f}"


def _json_safe(value: Any) -> Any:
    if isinstance(value, float) and not math.isfinite(value):
        return None
    if isinstance(value, dict):
        return {key: _json_safe(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_json_safe(item) for item in value]
    return value
