import math

import pytest

from benchharness.collector import AggregateStat, NoData
from benchharness.config import ThresholdSpec
from benchharness.thresholds import (
    Grade,
    evaluate,
    evaluate_all,
    find_bottlenecks,
    find_degradations,
    relative_shortfall,
)


def _stat(mean=0.0, low=None, high=None, **extra):
    low = mean if low is None else low
    high = mean if high is None else high
    return AggregateStat(count=10, mean=mean, min=low, max=high, **extra)


class TestEvaluate:
    @pytest.mark.parametrize(
        "value,grade",
        [(1_820_000.0, Grade.PASS), (1_500_000.0, Grade.PASS), (1_460_000.0, Grade.WARN), (1_000_000.0, Grade.FAIL)],
    )
    def test_higher_is_better(self, value, grade):
        spec = ThresholdSpec(target=1_500_000, comparison=">=", warn_tolerance=0.05)
        verdict = evaluate("tps", _stat(value), spec)
        assert verdict.grade is grade
        assert verdict.observed_value == value

    @pytest.mark.parametrize(
        "value,grade",
        [(100.0, Grade.PASS), (512.0, Grade.PASS), (530.0, Grade.WARN), (612.0, Grade.FAIL)],
    )
    def test_lower_is_better(self, value, grade):
        spec = ThresholdSpec(target=512, comparison="<=", statistic="max", warn_tolerance=0.05)
        verdict = evaluate("memory_mb", _stat(mean=value), spec)
        assert verdict.grade is grade

    def test_zero_tolerance_has_no_warn_band(self):
        spec = ThresholdSpec(target=100, comparison=">=")
        assert evaluate("tps", _stat(99.99), spec).grade is Grade.FAIL

    def test_no_data_is_never_pass_or_fail(self):
        spec = ThresholdSpec(target=100)
        verdict = evaluate("tps", NoData(misses=4), spec)
        assert verdict.grade is Grade.NO_DATA
        assert verdict.observed_value is None

    def test_missing_percentile_is_no_data(self):
        spec = ThresholdSpec(target=50, comparison="<=", statistic="p99")
        assert evaluate("latency_ms", _stat(10.0), spec).grade is Grade.NO_DATA

    def test_selects_configured_statistic(self):
        spec = ThresholdSpec(target=50, comparison="<=", statistic="p99")
        verdict = evaluate("latency_ms", _stat(10.0, p50=5.0, p95=20.0, p99=45.0), spec)
        assert verdict.grade is Grade.PASS
        assert verdict.observed_value == 45.0

    def test_evaluate_all_defaults_missing_stats_to_no_data(self):
        targets = {"tps": ThresholdSpec(target=10), "memory_mb": ThresholdSpec(target=1, comparison="<=")}
        verdicts = evaluate_all({"tps": _stat(20.0)}, targets)
        assert [(v.metric, v.grade) for v in verdicts] == [("tps", Grade.PASS), ("memory_mb", Grade.NO_DATA)]

    @pytest.mark.parametrize(
        "value,comparison,grade",
        [
            (-10.0, ">=", Grade.PASS),
            (-10.4, ">=", Grade.WARN),
            (-9.6, ">=", Grade.PASS),
            (-11.0, ">=", Grade.FAIL),
            (-10.0, "<=", Grade.PASS),
            (-9.6, "<=", Grade.WARN),
            (-10.4, "<=", Grade.PASS),
            (-9.0, "<=", Grade.FAIL),
        ],
    )
    def test_warn_band_sits_on_the_failing_side_of_negative_targets(self, value, comparison, grade):
        spec = ThresholdSpec(target=-10, comparison=comparison, warn_tolerance=0.05)
        assert evaluate("drift", _stat(value), spec).grade is grade

    @pytest.mark.parametrize(
        "observed,spec",
        [
            (_stat(120.0), ThresholdSpec(target=100)),
            (_stat(97.0), ThresholdSpec(target=100, warn_tolerance=0.05)),
            (_stat(10.0), ThresholdSpec(target=100)),
            (NoData(misses=2), ThresholdSpec(target=100)),
            (_stat(10.0, p99=60.0), ThresholdSpec(target=50, comparison="<=", statistic="p99")),
        ],
    )
    def test_repeated_evaluation_gives_the_same_verdict(self, observed, spec):
        first = evaluate("tps", observed, spec)
        second = evaluate("tps", observed, spec)
        assert first == second
        assert first.grade is second.grade


class TestBottlenecks:
    def test_shortfall_direction(self):
        assert relative_shortfall(1_000_000, ThresholdSpec(target=1_500_000)) == pytest.approx(1 / 3)
        assert relative_shortfall(612, ThresholdSpec(target=512, comparison="<=")) == pytest.approx(0.1953125)
        assert relative_shortfall(1.0, ThresholdSpec(target=0, comparison="<=")) == math.inf
        assert relative_shortfall(0.0, ThresholdSpec(target=0, comparison="<=")) == 0.0

    def test_ranked_by_shortfall_and_excludes_pass_and_no_data(self):
        verdicts = [
            evaluate("tps", _stat(1_400_000.0), ThresholdSpec(target=1_500_000, warn_tolerance=0.1)),
            evaluate("memory_mb", _stat(612.0), ThresholdSpec(target=512, comparison="<=", unit="MB")),
            evaluate("latency_ms", _stat(10.0), ThresholdSpec(target=50, comparison="<=")),
            evaluate("startup_ms", NoData(), ThresholdSpec(target=500, comparison="<=")),
        ]
        findings = find_bottlenecks(verdicts)
        assert [f.metric for f in findings] == ["memory_mb", "tps"]
        assert findings[0].grade is Grade.FAIL
        assert findings[0].shortfall == pytest.approx(0.195, abs=1e-3)
        assert "MB" in findings[0].detail
        assert findings[1].grade is Grade.WARN

    def test_no_findings_when_everything_passes(self):
        verdicts = [evaluate("tps", _stat(200.0), ThresholdSpec(target=100))]
        assert find_bottlenecks(verdicts) == []


class TestDegradations:
    def test_opt_in_only(self):
        targets = {"tps": ThresholdSpec(target=100)}
        assert find_degradations({"tps": 200.0}, {"tps": 50.0}, targets) == []

    def test_wrong_direction_beyond_tolerance_is_flagged(self):
        targets = {
            "tps": ThresholdSpec(target=100, degradation_tolerance=0.1),
            "memory_mb": ThresholdSpec(target=512, comparison="<=", degradation_tolerance=0.2),
        }
        baseline = {"tps": 200.0, "memory_mb": 300.0}
        post_load = {"tps": 150.0, "memory_mb": 330.0}
        findings = find_degradations(baseline, post_load, targets)
        assert [f.metric for f in findings] == ["tps"]
        assert findings[0].change == pytest.approx(-0.25)

    def test_improvement_and_missing_readings_are_ignored(self):
        targets = {
            "tps": ThresholdSpec(target=100, degradation_tolerance=0.0),
            "memory_mb": ThresholdSpec(target=512, comparison="<=", degradation_tolerance=0.0),
        }
        findings = find_degradations({"tps": 100.0}, {"tps": 120.0, "memory_mb": 900.0}, targets)
        assert findings == []
