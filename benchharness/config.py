from __future__ import annotations

import json
import math
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, Mapping, Sequence

import yaml

COMPARISONS: tuple[str, ...] = (">=", "<=")
STATISTICS: tuple[str, ...] = ("mean", "min", "max", "p50", "p95", "p99")
SOURCE_KINDS: tuple[str, ...] = ("http", "rss")
PERCENTILE_KEYS: tuple[str, ...] = ("p50", "p95", "p99")

# Metrics computed by the harness itself rather than sampled from the target.
DERIVED_METRICS: tuple[str, ...] = ("startup_ms", "client_rps", "client_success_rate")

# Scenario names become artifact file names.
SCENARIO_NAME = re.compile(r"[A-Za-z0-9][A-Za-z0-9._-]*")


class ConfigError(ValueError):
    """Raised when a scenario definition is malformed."""


@dataclass(frozen=True)
class ThresholdSpec:
    """Declared target for a single metric."""

    target: float
    comparison: str = ">="
    statistic: str = "mean"
    warn_tolerance: float = 0.0
    degradation_tolerance: float | None = None
    unit: str | None = None

    @property
    def higher_is_better(self) -> bool:
        return self.comparison == ">="


@dataclass(frozen=True)
class MetricDefinition:
    """Where and how a sampled metric is read."""

    name: str
    source: str = "http"
    path: str | None = None
    value: str | None = None
    percentiles: dict[str, str] = field(default_factory=dict)
    scale: float = 1.0
    unit: str | None = None


@dataclass(frozen=True)
class RequestTemplate:
    """Synthetic request issued by every load worker."""

    method: str = "GET"
    path: str = "/"
    json_body: Any = None
    headers: dict[str, str] = field(default_factory=dict)
    timeout_seconds: float = 5.0


@dataclass(frozen=True)
class HealthCheck:
    path: str = "/q/health"
    expect_status: str | None = None
    timeout_seconds: float = 2.0


@dataclass(frozen=True)
class ScenarioConfig:
    """One named benchmark run: load shape, sampling cadence and targets."""

    name: str
    duration_seconds: float
    sample_interval_seconds: float
    concurrency: int
    targets: dict[str, ThresholdSpec]
    metrics: tuple[MetricDefinition, ...] = ()
    warmup_seconds: float = 0.0
    request: RequestTemplate = field(default_factory=RequestTemplate)
    health: HealthCheck = field(default_factory=HealthCheck)
    min_samples: int = 1
    max_consecutive_misses: int = 5
    max_consecutive_failures: int = 1000
    startup_timeout_seconds: float = 30.0
    grace_seconds: float = 10.0
    description: str | None = None

    @property
    def ceiling_seconds(self) -> float:
        return self.duration_seconds + self.grace_seconds

    @property
    def expected_samples(self) -> int:
        return int(self.duration_seconds // self.sample_interval_seconds)

    def metric(self, name: str) -> MetricDefinition | None:
        for definition in self.metrics:
            if definition.name == name:
                return definition
        return None

    def uses_process_metrics(self) -> bool:
        return any(definition.source == "rss" for definition in self.metrics)


@dataclass
class ScenarioPlan:
    """Scenarios declared in one scenario file, in execution order."""

    scenarios: list[ScenarioConfig] = field(default_factory=list)
    target_url: str | None = None
    source: Path | None = None

    def __iter__(self) -> Iterable[ScenarioConfig]:
        return iter(self.scenarios)

    def __len__(self) -> int:
        return len(self.scenarios)

    def select(self, names: Sequence[str] | None) -> "ScenarioPlan":
        if not names:
            return self
        known = {scenario.name for scenario in self.scenarios}
        unknown = [name for name in names if name not in known]
        if unknown:
            raise ConfigError(f"Unknown scenario(s): {', '.join(unknown)}")
        wanted = set(names)
        return ScenarioPlan(
            scenarios=[s for s in self.scenarios if s.name in wanted],
            target_url=self.target_url,
            source=self.source,
        )


def load_plan(path: str | Path) -> ScenarioPlan:
    """Read and validate a JSON or YAML scenario file."""

    plan_path = Path(path)
    try:
        text = plan_path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigError(f"Cannot read scenario file {plan_path}: {exc}") from exc

    try:
        if plan_path.suffix.lower() in {".yaml", ".yml"}:
            document = yaml.safe_load(text)
        else:
            document = json.loads(text)
    except (yaml.YAMLError, json.JSONDecodeError) as exc:
        raise ConfigError(f"Cannot parse scenario file {plan_path}: {exc}") from exc

    plan = parse_plan(document)
    plan.source = plan_path
    return plan


def parse_plan(document: Any) -> ScenarioPlan:
    if not isinstance(document, Mapping):
        raise ConfigError("Scenario file must contain a mapping at the top level")

    raw_scenarios = document.get("scenarios")
    if not isinstance(raw_scenarios, list) or not raw_scenarios:
        raise ConfigError("Scenario file must declare a non-empty 'scenarios' list")

    defaults = document.get("defaults") or {}
    if not isinstance(defaults, Mapping):
        raise ConfigError("'defaults' must be a mapping")

    scenarios: list[ScenarioConfig] = []
    seen: set[str] = set()
    for index, raw in enumerate(raw_scenarios):
        if not isinstance(raw, Mapping):
            raise ConfigError(f"Scenario #{index + 1} must be a mapping")
        merged = _merge(defaults, raw)
        scenario = parse_scenario(merged, index=index)
        if scenario.name in seen:
            raise ConfigError(f"Duplicate scenario name: {scenario.name!r}")
        seen.add(scenario.name)
        scenarios.append(scenario)

    target_url = document.get("target_url")
    if target_url is not None and not isinstance(target_url, str):
        raise ConfigError("'target_url' must be a string")
    return ScenarioPlan(scenarios=scenarios, target_url=target_url)


def parse_scenario(raw: Mapping[str, Any], index: int = 0) -> ScenarioConfig:
    name = raw.get("name")
    if not isinstance(name, str) or not name.strip():
        raise ConfigError(f"Scenario #{index + 1} is missing a name")
    if not SCENARIO_NAME.fullmatch(name):
        raise ConfigError(
            f"Scenario name {name!r} may only use letters, digits, '.', '_' and '-'"
        )
    where = f"scenario {name!r}"

    duration = _number(raw, "duration_seconds", where, required=True)
    interval = _number(raw, "sample_interval_seconds", where, default=5.0)
    warmup = _number(raw, "warmup_seconds", where, default=0.0)
    concurrency = _integer(raw, "concurrency", where, default=1)
    if duration <= 0:
        raise ConfigError(f"{where}: duration_seconds must be > 0")
    if interval <= 0:
        raise ConfigError(f"{where}: sample_interval_seconds must be > 0")
    if warmup < 0:
        raise ConfigError(f"{where}: warmup_seconds must be >= 0")
    if concurrency < 1:
        raise ConfigError(f"{where}: concurrency must be >= 1")

    metrics = tuple(_parse_metric(item, where) for item in raw.get("metrics") or [])
    metric_names = [metric.name for metric in metrics]
    if len(set(metric_names)) != len(metric_names):
        raise ConfigError(f"{where}: metric names must be unique")

    raw_targets = raw.get("targets")
    if not isinstance(raw_targets, Mapping) or not raw_targets:
        raise ConfigError(f"{where}: at least one target is required")
    targets: dict[str, ThresholdSpec] = {}
    for metric_name, raw_spec in raw_targets.items():
        if metric_name not in metric_names and metric_name not in DERIVED_METRICS:
            raise ConfigError(
                f"{where}: target {metric_name!r} does not name a declared metric"
            )
        targets[str(metric_name)] = _parse_threshold(raw_spec, f"{where} target {metric_name!r}")

    config = ScenarioConfig(
        name=name.strip(),
        description=raw.get("description"),
        duration_seconds=duration,
        sample_interval_seconds=interval,
        warmup_seconds=warmup,
        concurrency=concurrency,
        targets=targets,
        metrics=metrics,
        request=_parse_request(raw.get("request") or {}, where),
        health=_parse_health(raw.get("health") or {}, where),
        min_samples=_integer(raw, "min_samples", where, default=1),
        max_consecutive_misses=_integer(raw, "max_consecutive_misses", where, default=5),
        max_consecutive_failures=_integer(
            raw, "max_consecutive_failures", where, default=1000
        ),
        startup_timeout_seconds=_number(raw, "startup_timeout_seconds", where, default=30.0),
        grace_seconds=_number(raw, "grace_seconds", where, default=10.0),
    )
    if config.min_samples < 1:
        raise ConfigError(f"{where}: min_samples must be >= 1")
    if config.max_consecutive_misses < 0 or config.max_consecutive_failures < 1:
        raise ConfigError(f"{where}: failure tolerances must be positive")
    if config.startup_timeout_seconds <= 0 or config.grace_seconds < 0:
        raise ConfigError(f"{where}: startup_timeout_seconds/grace_seconds out of range")
    return config


def _parse_threshold(raw: Any, where: str) -> ThresholdSpec:
    if isinstance(raw, (int, float)) and not isinstance(raw, bool):
        raw = {"target": raw}
    if not isinstance(raw, Mapping):
        raise ConfigError(f"{where}: threshold must be a number or a mapping")

    target = _number(raw, "target", where, required=True)
    comparison = raw.get("comparison", ">=")
    if comparison not in COMPARISONS:
        raise ConfigError(
            f"{where}: invalid comparison {comparison!r} (expected one of {', '.join(COMPARISONS)})"
        )
    statistic = raw.get("statistic", "mean")
    if statistic not in STATISTICS:
        raise ConfigError(f"{where}: invalid statistic {statistic!r}")
    warn_tolerance = _number(raw, "warn_tolerance", where, default=0.0)
    if warn_tolerance < 0:
        raise ConfigError(f"{where}: warn_tolerance must be >= 0")
    degradation = raw.get("degradation_tolerance")
    if degradation is not None:
        degradation = _number(raw, "degradation_tolerance", where)
        if degradation < 0:
            raise ConfigError(f"{where}: degradation_tolerance must be >= 0")
    return ThresholdSpec(
        target=target,
        comparison=comparison,
        statistic=statistic,
        warn_tolerance=warn_tolerance,
        degradation_tolerance=degradation,
        unit=raw.get("unit"),
    )


def _parse_metric(raw: Any, where: str) -> MetricDefinition:
    if not isinstance(raw, Mapping) or not raw.get("name"):
        raise ConfigError(f"{where}: every metric needs a name")
    name = str(raw["name"])
    source = raw.get("source", "http")
    if source not in SOURCE_KINDS:
        raise ConfigError(f"{where}: metric {name!r} has unknown source {source!r}")
    if name in DERIVED_METRICS:
        raise ConfigError(f"{where}: metric name {name!r} is reserved")

    percentiles = raw.get("percentiles") or {}
    if not isinstance(percentiles, Mapping) or (
        percentiles and set(percentiles) != set(PERCENTILE_KEYS)
    ):
        raise ConfigError(f"{where}: metric {name!r} percentiles must map exactly p50/p95/p99")

    if source == "http":
        if not raw.get("path"):
            raise ConfigError(f"{where}: http metric {name!r} needs a path")
        if not raw.get("value") and not percentiles:
            raise ConfigError(f"{where}: http metric {name!r} needs a value path")

    return MetricDefinition(
        name=name,
        source=source,
        path=raw.get("path"),
        value=raw.get("value"),
        percentiles={str(k): str(v) for k, v in percentiles.items()},
        scale=_number(raw, "scale", f"{where} metric {name!r}", default=1.0),
        unit=raw.get("unit") or ("MB" if source == "rss" else None),
    )


def _parse_request(raw: Any, where: str) -> RequestTemplate:
    if not isinstance(raw, Mapping):
        raise ConfigError(f"{where}: 'request' must be a mapping")
    method = str(raw.get("method", "GET")).upper()
    headers = raw.get("headers") or {}
    if not isinstance(headers, Mapping):
        raise ConfigError(f"{where}: request headers must be a mapping")
    timeout = _number(raw, "timeout_seconds", where, default=5.0)
    if timeout <= 0:
        raise ConfigError(f"{where}: request timeout_seconds must be > 0")
    return RequestTemplate(
        method=method,
        path=str(raw.get("path", "/")),
        json_body=raw.get("json"),
        headers={str(k): str(v) for k, v in headers.items()},
        timeout_seconds=timeout,
    )


def _parse_health(raw: Any, where: str) -> HealthCheck:
    if not isinstance(raw, Mapping):
        raise ConfigError(f"{where}: 'health' must be a mapping")
    return HealthCheck(
        path=str(raw.get("path", "/q/health")),
        expect_status=raw.get("expect_status"),
        timeout_seconds=_number(raw, "timeout_seconds", where, default=2.0),
    )


def _number(
    raw: Mapping[str, Any],
    key: str,
    where: str,
    default: float | None = None,
    required: bool = False,
) -> float:
    value = raw.get(key)
    if value is None:
        if required or default is None:
            raise ConfigError(f"{where}: missing required field {key!r}")
        return float(default)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigError(f"{where}: {key!r} must be a number, got {value!r}")
    if not math.isfinite(value):
        raise ConfigError(f"{where}: {key!r} must be finite")
    return float(value)


def _integer(raw: Mapping[str, Any], key: str, where: str, default: int) -> int:
    value = raw.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"{where}: {key!r} must be an integer, got {value!r}")
    return value


def _merge(defaults: Mapping[str, Any], raw: Mapping[str, Any]) -> dict[str, Any]:
    merged = dict(defaults)
    for key, value in raw.items():
        if isinstance(value, Mapping) and isinstance(merged.get(key), Mapping):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged
