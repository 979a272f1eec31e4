from __future__ import annotations

import enum
import math
from dataclasses import dataclass
from typing import Iterable, Mapping

from .collector import NoData, Observation
from .config import ThresholdSpec


class Grade(str, enum.Enum):
    PASS = "PASS"
    WARN = "WARN"
    FAIL = "FAIL"
    NO_DATA = "NO_DATA"


@dataclass(frozen=True)
class Verdict:
    metric: str
    observed: Observation
    spec: ThresholdSpec
    grade: Grade
    observed_value: float | None = None


@dataclass(frozen=True)
class BottleneckFinding:
    """A metric that missed its target, with the relative size of the miss."""

    metric: str
    grade: Grade
    shortfall: float
    observed_value: float | None
    target: float | None
    comparison: str | None
    detail: str


@dataclass(frozen=True)
class DegradationFinding:
    metric: str
    baseline: float
    post_load: float
    change: float
    tolerance: float


def evaluate(metric: str, observed: Observation, spec: ThresholdSpec) -> Verdict:
    """Grade one aggregated metric against its declared threshold."""

    if isinstance(observed, NoData):
        return Verdict(metric=metric, observed=observed, spec=spec, grade=Grade.NO_DATA)

    value = observed.statistic(spec.statistic)
    if value is None:
        # e.g. p95 requested on a series that never carried percentile bundles
        return Verdict(metric=metric, observed=observed, spec=spec, grade=Grade.NO_DATA)

    if spec.higher_is_better:
        if value >= spec.target:
            grade = Grade.PASS
        elif value >= spec.target - abs(spec.target) * spec.warn_tolerance:
            grade = Grade.WARN
        else:
            grade = Grade.FAIL
    else:
        if value <= spec.target:
            grade = Grade.PASS
        elif value <= spec.target + abs(spec.target) * spec.warn_tolerance:
            grade = Grade.WARN
        else:
            grade = Grade.FAIL

    return Verdict(
        metric=metric, observed=observed, spec=spec, grade=grade, observed_value=value
    )


def evaluate_all(
    stats: Mapping[str, Observation], targets: Mapping[str, ThresholdSpec]
) -> list[Verdict]:
    verdicts = []
    for metric, spec in targets.items():
        observed = stats.get(metric, NoData())
        verdicts.append(evaluate(metric, observed, spec))
    return verdicts


def relative_shortfall(observed: float, spec: ThresholdSpec) -> float:
    if spec.higher_is_better:
        gap = spec.target - observed
    else:
        gap = observed - spec.target
    if spec.target == 0:
        return math.inf if gap > 0 else 0.0
    return gap / abs(spec.target)


def find_bottlenecks(verdicts: Iterable[Verdict]) -> list[BottleneckFinding]:
    """Rank the metrics that missed their target, furthest miss first."""

    findings = []
    for verdict in verdicts:
        if verdict.grade not in (Grade.WARN, Grade.FAIL) or verdict.observed_value is None:
            continue
        spec = verdict.spec
        shortfall = relative_shortfall(verdict.observed_value, spec)
        unit = f" {spec.unit}" if spec.unit else ""
        findings.append(
            BottleneckFinding(
                metric=verdict.metric,
                grade=verdict.grade,
                shortfall=shortfall,
                observed_value=verdict.observed_value,
                target=spec.target,
                comparison=spec.comparison,
                detail=(
                    f"{spec.statistic} {verdict.observed_value:,.2f}{unit} vs target "
                    f"{spec.comparison} {spec.target:,.2f}{unit} "
                    f"({shortfall:.1%} short)"
                ),
            )
        )
    findings.sort(key=lambda finding: finding.shortfall, reverse=True)
    return findings


def find_degradations(
    baseline: Mapping[str, float],
    post_load: Mapping[str, float],
    targets: Mapping[str, ThresholdSpec],
) -> list[DegradationFinding]:
    """Flag metrics whose post-load reading moved the wrong way beyond tolerance."""

    findings = []
    for metric, spec in targets.items():
        if spec.degradation_tolerance is None:
            continue
        if metric not in baseline or metric not in post_load:
            continue
        before = baseline[metric]
        after = post_load[metric]
        if before == 0:
            continue
        change = (after - before) / abs(before)
        worse = -change if spec.higher_is_better else change
        if worse > spec.degradation_tolerance:
            findings.append(
                DegradationFinding(
                    metric=metric,
                    baseline=before,
                    post_load=after,
                    change=change,
                    tolerance=spec.degradation_tolerance,
                )
            )
    return findings
