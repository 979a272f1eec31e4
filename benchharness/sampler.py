from __future__ import annotations

import logging
import math
import threading
import time
from typing import Any, Callable, Iterator, Protocol, Sequence

import psutil
import requests

from .collector import Aggregator, PercentileSet, Sample
from .config import MetricDefinition

LOGGER = logging.getLogger("benchharness.sampler")

BYTES_PER_MB = 1024 * 1024


class SampleError(Exception):
    """One measurement could not be taken or parsed."""

    def __init__(self, metric: str, reason: str) -> None:
        super().__init__(f"{metric}: {reason}")
        self.metric = metric
        self.reason = reason


class RunClock:
    """Wall-clock timestamps anchored to a monotonic clock.

    Successive readings never go backwards even if the system clock is stepped
    during a run.
    """

    def __init__(self) -> None:
        self._wall_origin = time.time()
        self._mono_origin = time.monotonic()

    def now(self) -> float:
        return self._wall_origin + (time.monotonic() - self._mono_origin)


class MetricSource(Protocol):
    metric: str

    def read(self, clock: RunClock) -> Sample: ...


class HttpMetricSource:
    """GET a JSON document and extract one numeric value (plus optional percentiles)."""

    def __init__(
        self,
        definition: MetricDefinition,
        base_url: str,
        session: requests.Session | None = None,
        timeout: float = 5.0,
    ) -> None:
        self.metric = definition.name
        self._definition = definition
        self._url = join_url(base_url, definition.path or "/")
        self._session = session or requests.Session()
        self._timeout = timeout

    @property
    def url(self) -> str:
        return self._url

    def read(self, clock: RunClock) -> Sample:
        try:
            response = self._session.get(self._url, timeout=self._timeout)
            response.raise_for_status()
            document = response.json()
        except requests.RequestException as exc:
            raise SampleError(self.metric, f"request to {self._url} failed: {exc}") from exc
        except ValueError as exc:
            raise SampleError(self.metric, f"invalid JSON from {self._url}") from exc

        timestamp = clock.now()
        definition = self._definition
        bundle = None
        if definition.percentiles:
            bundle = PercentileSet(
                p50=self._number(document, definition.percentiles.get("p50")),
                p95=self._number(document, definition.percentiles.get("p95")),
                p99=self._number(document, definition.percentiles.get("p99")),
            )
        if definition.value:
            value = self._number(document, definition.value)
        else:
            value = bundle.p99
        return Sample(timestamp=timestamp, metric=self.metric, value=value, percentiles=bundle)

    def _number(self, document: Any, path: str | None) -> float:
        if not path:
            raise SampleError(self.metric, "percentile path not configured")
        raw = extract_path(document, path)
        if raw is None:
            raise SampleError(self.metric, f"{path!r} missing from response")
        if isinstance(raw, bool):
            raise SampleError(self.metric, f"{path!r} is not numeric: {raw!r}")
        try:
            value = float(raw)
        except (TypeError, ValueError) as exc:
            raise SampleError(self.metric, f"{path!r} is not numeric: {raw!r}") from exc
        if not math.isfinite(value):
            raise SampleError(self.metric, f"{path!r} is not finite: {raw!r}")
        return value * self._definition.scale


class ProcessMemorySource:
    """Resident set size of a process, in MB."""

    def __init__(self, definition: MetricDefinition, pid: int) -> None:
        self.metric = definition.name
        self._pid = pid
        self._scale = definition.scale

    def read(self, clock: RunClock) -> Sample:
        try:
            rss = psutil.Process(self._pid).memory_info().rss
        except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess) as exc:
            raise SampleError(self.metric, f"cannot read RSS of pid {self._pid}: {exc}") from exc
        return Sample(
            timestamp=clock.now(),
            metric=self.metric,
            value=rss / BYTES_PER_MB * self._scale,
        )


def build_sources(
    definitions: Sequence[MetricDefinition],
    base_url: str,
    pid: int | None,
    session: requests.Session | None = None,
) -> list[MetricSource]:
    session = session or requests.Session()
    sources: list[MetricSource] = []
    for definition in definitions:
        if definition.source == "rss":
            if pid is None:
                raise ValueError(f"metric {definition.name!r} needs a process id")
            sources.append(ProcessMemorySource(definition, pid))
        else:
            sources.append(HttpMetricSource(definition, base_url, session=session))
    return sources


class MetricSampler:
    """Polls metric sources on a fixed, drift-corrected cadence.

    A failed read is recorded as a gap on the aggregator. When any single source
    misses more than ``max_consecutive_misses`` ticks in a row the sampler marks
    the target unreachable and stops.
    """

    def __init__(
        self,
        interval: float,
        max_consecutive_misses: int = 5,
        clock: RunClock | None = None,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        if interval <= 0:
            raise ValueError("interval must be > 0")
        self._interval = interval
        self._max_misses = max_consecutive_misses
        self._clock = clock or RunClock()
        self._monotonic = monotonic
        self._consecutive: dict[str, int] = {}
        self.unreachable: str | None = None
        self.ticks = 0

    @property
    def clock(self) -> RunClock:
        return self._clock

    def sample(self, source: MetricSource) -> Sample:
        try:
            return source.read(self._clock)
        except SampleError:
            raise
        except Exception as exc:  # noqa: BLE001
            raise SampleError(source.metric, f"unexpected error: {exc}") from exc

    def snapshot(self, sources: Sequence[MetricSource]) -> dict[str, float]:
        values: dict[str, float] = {}
        for source in sources:
            try:
                values[source.metric] = self.sample(source).value
            except SampleError as exc:
                LOGGER.warning("Snapshot of %s failed: %s", source.metric, exc.reason)
        return values

    def schedule(self, stop_event: threading.Event) -> Iterator[int]:
        """Yield tick numbers at ``start + k * interval`` until stopped.

        Deadlines are computed from the fixed start time; a tick that overran
        one or more intervals skips the missed slots instead of bunching them.
        """

        start = self._monotonic()
        tick = 0
        while not stop_event.is_set():
            yield tick
            elapsed = self._monotonic() - start
            tick = max(tick + 1, int(elapsed // self._interval) + 1)
            delay = start + tick * self._interval - self._monotonic()
            if delay > 0 and stop_event.wait(timeout=delay):
                return

    def stream(
        self,
        sources: Sequence[MetricSource],
        stop_event: threading.Event,
        on_miss: Callable[[SampleError], None] | None = None,
    ) -> Iterator[Sample]:
        for _ in self.schedule(stop_event):
            self.ticks += 1
            for source in sources:
                if stop_event.is_set():
                    return
                try:
                    sample = self.sample(source)
                except SampleError as exc:
                    misses = self._consecutive.get(source.metric, 0) + 1
                    self._consecutive[source.metric] = misses
                    LOGGER.warning(
                        "Sample miss for %s (%d consecutive): %s",
                        source.metric,
                        misses,
                        exc.reason,
                    )
                    if on_miss is not None:
                        on_miss(exc)
                    if misses > self._max_misses:
                        self.unreachable = source.metric
                        LOGGER.error(
                            "Metric source %s missed %d consecutive samples; target unreachable",
                            source.metric,
                            misses,
                        )
                        stop_event.set()
                        return
                    continue
                self._consecutive[source.metric] = 0
                yield sample

    def run(
        self,
        sources: Sequence[MetricSource],
        stop_event: threading.Event,
        aggregator: Aggregator,
    ) -> None:
        for sample in self.stream(
            sources, stop_event, on_miss=lambda exc: aggregator.record_miss(exc.metric)
        ):
            aggregator.append(sample)
        LOGGER.debug("Sampler stopped after %d tick(s)", self.ticks)

    def start(
        self,
        sources: Sequence[MetricSource],
        stop_event: threading.Event,
        aggregator: Aggregator,
        name: str = "benchmark-sampler",
    ) -> threading.Thread:
        thread = threading.Thread(
            target=self.run, args=(sources, stop_event, aggregator), name=name, daemon=True
        )
        thread.start()
        return thread


def extract_path(document: Any, path: str) -> Any:
    """Walk a dotted path (``responseTime.p99``, ``nodes.0.tps``) through JSON."""

    current = document
    for part in path.split("."):
        if isinstance(current, dict):
            if part not in current:
                return None
            current = current[part]
        elif isinstance(current, list) and part.lstrip("-").isdigit():
            index = int(part)
            if not -len(current) <= index < len(current):
                return None
            current = current[index]
        else:
            return None
    return current


def join_url(base_url: str, path: str) -> str:
    if path.startswith(("http://", "https://")):
        return path
    return base_url.rstrip("/") + "/" + path.lstrip("/")
