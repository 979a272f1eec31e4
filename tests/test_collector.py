import threading

import pandas as pd
import pytest

from benchharness.collector import (
    SAMPLE_COLUMNS,
    AggregateStat,
    Aggregator,
    NoData,
    PercentileSet,
    Sample,
    series_to_dataframe,
    summarize,
)


def _sample(metric, value, ts=0.0, percentiles=None):
    return Sample(timestamp=ts, metric=metric, value=value, percentiles=percentiles)


class TestSummarize:
    def test_empty_is_no_data_not_zero(self):
        result = summarize([])
        assert isinstance(result, NoData)
        assert result.count == 0
        assert result.statistic("mean") is None

    def test_below_floor_is_no_data(self):
        result = summarize([1.0, 2.0], misses=3, min_samples=5)
        assert isinstance(result, NoData)
        assert result.count == 2
        assert result.misses == 3
        assert "below minimum of 5" in result.reason

    def test_basic_statistics(self):
        result = summarize([500.0, 612.0, 550.0])
        assert isinstance(result, AggregateStat)
        assert result.count == 3
        assert result.min == 500.0
        assert result.max == 612.0
        assert result.mean == pytest.approx(554.0)
        assert result.p99 is None

    def test_mean_stays_within_bounds_for_identical_values(self):
        value = 0.1 + 0.2
        result = summarize([value] * 1000)
        assert result.min <= result.mean <= result.max

    def test_percentile_of_percentiles(self):
        bundles = [PercentileSet(p50=10.0, p95=20.0, p99=30.0 + i) for i in range(5)]
        result = summarize([30.0] * 5, percentiles=bundles)
        assert result.p50 == pytest.approx(10.0)
        assert result.p95 == pytest.approx(20.0)
        assert result.p99 == pytest.approx(33.96)
        assert result.statistic("p99") == result.p99


class TestAggregator:
    def test_append_and_finalize(self):
        aggregator = Aggregator(["tps", "memory_mb"])
        aggregator.append(_sample("tps", 100.0, 1.0))
        aggregator.append(_sample("tps", 200.0, 2.0))
        aggregator.record_miss("tps")

        stats = aggregator.finalize()
        assert aggregator.sealed
        assert stats["tps"].mean == pytest.approx(150.0)
        assert stats["tps"].misses == 1
        assert isinstance(stats["memory_mb"], NoData)

    def test_seal_rejects_late_appends(self):
        aggregator = Aggregator(["tps"])
        assert aggregator.append(_sample("tps", 1.0))
        aggregator.seal()
        assert aggregator.append(_sample("tps", 2.0)) is False
        aggregator.record_miss("tps")
        series = aggregator.series()["tps"]
        assert series.values == [1.0]
        assert series.misses == 0

    def test_undeclared_metric_gets_a_series(self):
        aggregator = Aggregator()
        aggregator.append(_sample("extra", 5.0))
        assert list(aggregator.series()) == ["extra"]

    def test_concurrent_appends_are_not_lost(self):
        aggregator = Aggregator(["tps"])

        def writer():
            for i in range(500):
                aggregator.append(_sample("tps", float(i)))

        threads = [threading.Thread(target=writer) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(aggregator.series()["tps"]) == 4000

    def test_finalize_applies_min_samples(self):
        aggregator = Aggregator(["tps"])
        aggregator.append(_sample("tps", 1.0))
        stats = aggregator.finalize(min_samples=2)
        assert isinstance(stats["tps"], NoData)


class TestDataFrame:
    def test_rows_carry_percentiles(self):
        aggregator = Aggregator(["latency_ms", "tps"])
        aggregator.append(_sample("latency_ms", 9.0, 1.0, PercentileSet(3.0, 7.0, 9.0)))
        aggregator.append(_sample("tps", 50.0, 1.5))

        df = aggregator.to_dataframe()
        assert list(df.columns) == SAMPLE_COLUMNS
        assert len(df) == 2
        latency = df[df["metric"] == "latency_ms"].iloc[0]
        assert latency["p95"] == 7.0
        tps = df[df["metric"] == "tps"].iloc[0]
        assert pd.isna(tps["p99"])

    def test_empty_series_gives_empty_frame_with_columns(self):
        df = series_to_dataframe({})
        assert df.empty
        assert list(df.columns) == SAMPLE_COLUMNS
