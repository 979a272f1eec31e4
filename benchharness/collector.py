from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Iterable, Mapping, Sequence, Union

import numpy as np
import pandas as pd

LOGGER = logging.getLogger("benchharness.collector")

SAMPLE_COLUMNS = ["timestamp", "metric", "value", "p50", "p95", "p99"]


@dataclass(frozen=True)
class PercentileSet:
    p50: float
    p95: float
    p99: float


@dataclass(frozen=True)
class Sample:
    timestamp: float
    metric: str
    value: float
    percentiles: PercentileSet | None = None


@dataclass
class MetricSeries:
    """Ordered samples of one metric plus the gaps recorded for it."""

    metric: str
    samples: list[Sample] = field(default_factory=list)
    misses: int = 0

    def __len__(self) -> int:
        return len(self.samples)

    @property
    def values(self) -> list[float]:
        return [sample.value for sample in self.samples]

    @property
    def timestamps(self) -> list[float]:
        return [sample.timestamp for sample in self.samples]


@dataclass(frozen=True)
class AggregateStat:
    count: int
    mean: float
    min: float
    max: float
    misses: int = 0
    p50: float | None = None
    p95: float | None = None
    p99: float | None = None

    def statistic(self, name: str) -> float | None:
        return getattr(self, name, None)


@dataclass(frozen=True)
class NoData:
    """Explicit absence of a usable measurement, never a zero."""

    count: int = 0
    misses: int = 0
    reason: str = "no samples"

    def statistic(self, name: str) -> float | None:
        return None


Observation = Union[AggregateStat, NoData]


def summarize(
    values: Sequence[float],
    percentiles: Sequence[PercentileSet] = (),
    misses: int = 0,
    min_samples: int = 1,
) -> Observation:
    """Reduce a value sequence to an AggregateStat, or NoData below the floor.

    Percentile fields are percentile-of-percentiles: p95 is the 95th percentile
    of the p95 snapshots collected over the run. Request-level latencies are not
    retained, so this approximates tail behaviour over the run rather than
    computing it exactly.
    """

    count = len(values)
    if count == 0:
        return NoData(count=0, misses=misses)
    if count < min_samples:
        return NoData(
            count=count,
            misses=misses,
            reason=f"{count} sample(s) below minimum of {min_samples}",
        )

    array = np.asarray(values, dtype=float)
    low = float(array.min())
    high = float(array.max())
    # Clamp against float summation error so min <= mean <= max always holds.
    mean = min(max(float(array.mean()), low), high)

    p50 = p95 = p99 = None
    if percentiles:
        p50 = float(np.percentile([p.p50 for p in percentiles], 50))
        p95 = float(np.percentile([p.p95 for p in percentiles], 95))
        p99 = float(np.percentile([p.p99 for p in percentiles], 99))

    return AggregateStat(
        count=count, mean=mean, min=low, max=high, misses=misses, p50=p50, p95=p95, p99=p99
    )


class Aggregator:
    """Per-run sample buffer shared by the sampler thread and the finalize step.

    Appends are additive-only while the run is active. After ``seal()`` no
    further samples are accepted and the series become read-only.
    """

    def __init__(self, metrics: Iterable[str] = ()) -> None:
        self._lock = threading.Lock()
        self._series: dict[str, MetricSeries] = {
            name: MetricSeries(metric=name) for name in metrics
        }
        self._sealed = False

    @property
    def sealed(self) -> bool:
        return self._sealed

    def append(self, sample: Sample) -> bool:
        with self._lock:
            if self._sealed:
                LOGGER.debug("Dropping late sample for %s after seal", sample.metric)
                return False
            series = self._series.get(sample.metric)
            if series is None:
                series = self._series[sample.metric] = MetricSeries(metric=sample.metric)
            series.samples.append(sample)
            return True

    def record_miss(self, metric: str) -> None:
        with self._lock:
            if self._sealed:
                return
            series = self._series.get(metric)
            if series is None:
                series = self._series[metric] = MetricSeries(metric=metric)
            series.misses += 1

    def seal(self) -> None:
        with self._lock:
            self._sealed = True

    def series(self) -> Mapping[str, MetricSeries]:
        return dict(self._series)

    def finalize(self, min_samples: int = 1) -> dict[str, Observation]:
        self.seal()
        stats: dict[str, Observation] = {}
        for name, series in self._series.items():
            bundles = [s.percentiles for s in series.samples if s.percentiles is not None]
            stats[name] = summarize(
                series.values,
                percentiles=bundles,
                misses=series.misses,
                min_samples=min_samples,
            )
        return stats

    def to_dataframe(self) -> pd.DataFrame:
        return series_to_dataframe(self._series)


def series_to_dataframe(series: Mapping[str, MetricSeries]) -> pd.DataFrame:
    rows = []
    for item in series.values():
        for sample in item.samples:
            bundle = sample.percentiles
            rows.append(
                {
                    "timestamp": sample.timestamp,
                    "metric": sample.metric,
                    "value": sample.value,
                    "p50": bundle.p50 if bundle else None,
                    "p95": bundle.p95 if bundle else None,
                    "p99": bundle.p99 if bundle else None,
                }
            )
    if not rows:
        return pd.DataFrame(columns=SAMPLE_COLUMNS)
    return pd.DataFrame(rows, columns=SAMPLE_COLUMNS)
