from __future__ import annotations

import enum
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable, Mapping

import requests

from .collector import Aggregator, MetricSeries, NoData, Observation, summarize
from .config import ScenarioConfig, ScenarioPlan
from .load import LoadGenerator, LoadSummary, Transport, http_transport, template_factory
from .process_control import (
    ProcessController,
    ProcessExitInfo,
    ProcessHandle,
    ReadinessProbe,
    StartupError,
    http_readiness_probe,
)
from .sampler import MetricSampler, MetricSource, build_sources
from .thresholds import (
    BottleneckFinding,
    DegradationFinding,
    Grade,
    Verdict,
    evaluate_all,
    find_bottlenecks,
    find_degradations,
)

LOGGER = logging.getLogger("benchharness.orchestrator")

UNREACHABLE_REASON = "target unreachable"


class RunState(str, enum.Enum):
    IDLE = "IDLE"
    STARTING = "STARTING"
    WARMING_UP = "WARMING_UP"
    RUNNING = "RUNNING"
    FINALIZING = "FINALIZING"
    DONE = "DONE"
    ABORTED = "ABORTED"


class TargetDiedError(Exception):
    """The process under test exited while the run was in progress."""


@dataclass(frozen=True)
class TargetSpec:
    """How to reach (and optionally own) the service under test."""

    base_url: str
    command: str | None = None
    pid: int | None = None
    container: str | None = None

    @property
    def has_process(self) -> bool:
        return any(item is not None for item in (self.command, self.pid, self.container))


@dataclass
class BenchmarkResult:
    scenario: ScenarioConfig
    status: RunState
    started_at: float
    finished_at: float
    abort_reason: str | None = None
    partial: bool = False
    series: Mapping[str, MetricSeries] = field(default_factory=dict)
    stats: Mapping[str, Observation] = field(default_factory=dict)
    verdicts: list[Verdict] = field(default_factory=list)
    bottlenecks: list[BottleneckFinding] = field(default_factory=list)
    degradations: list[DegradationFinding] = field(default_factory=list)
    load: LoadSummary | None = None
    process_exit: ProcessExitInfo | None = None

    @property
    def aborted(self) -> bool:
        return self.status is RunState.ABORTED

    @property
    def overall_grade(self) -> Grade:
        if self.aborted:
            return Grade.FAIL
        grades = {verdict.grade for verdict in self.verdicts}
        if Grade.FAIL in grades:
            return Grade.FAIL
        if Grade.WARN in grades:
            return Grade.WARN
        if grades == {Grade.NO_DATA}:
            return Grade.NO_DATA
        return Grade.PASS

    def passed(self, fail_on_nodata: bool = False) -> bool:
        if self.aborted:
            return False
        grades = {verdict.grade for verdict in self.verdicts}
        if Grade.FAIL in grades:
            return False
        if fail_on_nodata and Grade.NO_DATA in grades:
            return False
        return True


class _ScenarioRun:
    """Mutable bookkeeping for one scenario; never shared between scenarios."""

    def __init__(self, config: ScenarioConfig) -> None:
        self.config = config
        self.state = RunState.IDLE
        self.started_at = time.time()
        self.handle: ProcessHandle | None = None
        self.abort_reason: str | None = None
        self.partial = False
        self.aggregator = Aggregator(metric.name for metric in config.metrics)
        self.sources: list[MetricSource] = []
        self.baseline: dict[str, float] = {}
        self.post_load: dict[str, float] = {}
        self.load: LoadSummary | None = None
        self.unreachable = False
        self.stop_event = threading.Event()

    def transition(self, state: RunState) -> None:
        LOGGER.info("[%s] %s -> %s", self.config.name, self.state.value, state.value)
        self.state = state

    def abort(self, reason: str) -> None:
        if self.abort_reason is None:
            self.abort_reason = reason
        LOGGER.error("[%s] aborting: %s", self.config.name, reason)
        self.stop_event.set()


class BenchmarkOrchestrator:
    """Sequences start -> warmup -> load+sampling -> finalize for each scenario.

    Every exit path, including aborts and user cancellation, stops an owned
    target process before the result is returned.
    """

    def __init__(
        self,
        controller: ProcessController | None = None,
        transport: Transport = http_transport,
        source_builder: Callable[..., list[MetricSource]] = build_sources,
        probe_builder: Callable[..., ReadinessProbe] = http_readiness_probe,
        watchdog_interval: float = 1.0,
    ) -> None:
        self._controller = controller or ProcessController()
        self._transport = transport
        self._source_builder = source_builder
        self._probe_builder = probe_builder
        self._watchdog_interval = watchdog_interval
        self._cancel_event = threading.Event()

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    def cancel(self) -> None:
        LOGGER.warning("Cancellation requested")
        self._cancel_event.set()

    def run_plan(
        self, plan: ScenarioPlan, target: TargetSpec, parallel: bool = False
    ) -> list[BenchmarkResult]:
        scenarios = list(plan)
        if parallel and len(scenarios) > 1:
            with ThreadPoolExecutor(
                max_workers=len(scenarios), thread_name_prefix="scenario"
            ) as pool:
                futures = [pool.submit(self.run_scenario, s, target) for s in scenarios]
                return [future.result() for future in futures]

        results = []
        for scenario in scenarios:
            results.append(self.run_scenario(scenario, target))
        return results

    def run_scenario(self, config: ScenarioConfig, target: TargetSpec) -> BenchmarkResult:
        run = _ScenarioRun(config)
        if self.cancelled:
            run.transition(RunState.ABORTED)
            run.abort_reason = "cancelled"
            return self._result(run, stats={}, verdicts=[], findings=[], degradations=[])

        LOGGER.info(
            "Running scenario %s (concurrency=%d, warmup=%.0fs, duration=%.0fs, interval=%.1fs)",
            config.name,
            config.concurrency,
            config.warmup_seconds,
            config.duration_seconds,
            config.sample_interval_seconds,
        )
        process_exit = None
        try:
            self._execute(run, target)
        except KeyboardInterrupt:
            self._cancel_event.set()
            run.partial = run.state is RunState.RUNNING
            run.abort("interrupted")
        finally:
            run.stop_event.set()
            if run.handle is not None:
                self._controller.stop(run.handle, grace_period=config.grace_seconds)
                process_exit = self._controller.exit_info(run.handle)

        return self._finalize(run, process_exit)

    def _execute(self, run: _ScenarioRun, target: TargetSpec) -> None:
        config = run.config
        session = requests.Session()
        probe = self._probe_builder(target.base_url, config.health, session=session)

        run.transition(RunState.STARTING)
        try:
            run.handle = self._acquire(target, probe, config)
            pid = run.handle.pid
            if config.uses_process_metrics() and pid is None:
                raise StartupError("no process id available for RSS metrics")
            run.sources = self._source_builder(
                config.metrics, target.base_url, pid, session=session
            )
        except StartupError as exc:
            run.transition(RunState.ABORTED)
            run.abort(exc.reason)
            return

        sampler = MetricSampler(
            config.sample_interval_seconds,
            max_consecutive_misses=config.max_consecutive_misses,
        )
        run.baseline = sampler.snapshot(run.sources)

        run.transition(RunState.WARMING_UP)
        if config.warmup_seconds > 0:
            warmup = self._load_generator(config, target)
            warmup_stop = threading.Event()
            warmup_thread = threading.Thread(
                target=warmup.run,
                args=(config.warmup_seconds, warmup_stop),
                name=f"{config.name}-warmup",
                daemon=True,
            )
            warmup_thread.start()
            if not self._guarded_watch(run, warmup_thread, config.warmup_seconds, warmup_stop):
                warmup_stop.set()
                warmup_thread.join(timeout=config.grace_seconds)
                return
            warmup_thread.join(timeout=config.grace_seconds)

        run.transition(RunState.RUNNING)
        generator = self._load_generator(config, target)
        load_result: list[LoadSummary] = []
        load_thread = threading.Thread(
            target=lambda: load_result.append(
                generator.run(config.duration_seconds, run.stop_event)
            ),
            name=f"{config.name}-load",
            daemon=True,
        )
        sampler_thread = sampler.start(
            run.sources, run.stop_event, run.aggregator, name=f"{config.name}-sampler"
        )
        load_thread.start()

        completed = self._guarded_watch(
            run, load_thread, config.duration_seconds, run.stop_event, sampler
        )
        run.stop_event.set()

        # Joins are bounded by the hard ceiling; anything still running after it
        # is abandoned and the aggregator is sealed against late appends.
        remaining = max(config.grace_seconds, 0.0)
        join_deadline = time.monotonic() + remaining
        for thread in (load_thread, sampler_thread):
            thread.join(timeout=max(join_deadline - time.monotonic(), 0.0))
            if thread.is_alive():
                LOGGER.warning(
                    "[%s] %s still running at the ceiling; finalizing without it",
                    config.name,
                    thread.name,
                )
        run.aggregator.seal()
        run.load = load_result[0] if load_result else None

        if sampler.unreachable is not None:
            run.unreachable = True
            run.abort(UNREACHABLE_REASON)
        if not completed or run.abort_reason is not None:
            run.partial = True
            run.transition(RunState.ABORTED)
            return

        run.post_load = sampler.snapshot(run.sources)
        run.transition(RunState.FINALIZING)

    def _guarded_watch(
        self,
        run: _ScenarioRun,
        worker: threading.Thread,
        duration: float,
        stop_event: threading.Event,
        sampler: MetricSampler | None = None,
    ) -> bool:
        try:
            return self._watch(run, worker, duration, stop_event, sampler)
        except TargetDiedError as exc:
            run.abort(str(exc))
            return False

    def _watch(
        self,
        run: _ScenarioRun,
        worker: threading.Thread,
        duration: float,
        stop_event: threading.Event,
        sampler: MetricSampler | None = None,
    ) -> bool:
        """Watchdog loop; returns False when the phase must be aborted.

        Raises TargetDiedError when the target process goes away mid-phase.
        """

        deadline = time.monotonic() + duration
        while True:
            now = time.monotonic()
            if now >= deadline:
                return True
            if self.cancelled:
                run.abort("cancelled")
                stop_event.set()
                return False
            if run.handle is not None and not self._controller.is_alive(run.handle):
                stop_event.set()
                raise TargetDiedError(f"{run.handle.label} exited during {run.state.value}")
            if sampler is not None and sampler.unreachable is not None:
                return False
            if stop_event.is_set() and sampler is not None:
                return False
            if not worker.is_alive() and sampler is None:
                return True
            stop_event.wait(timeout=min(self._watchdog_interval, deadline - now))

    def _acquire(
        self, target: TargetSpec, probe: ReadinessProbe, config: ScenarioConfig
    ) -> ProcessHandle:
        if target.command:
            return self._controller.start(
                target.command,
                probe,
                config.startup_timeout_seconds,
                cancel_event=self._cancel_event,
            )
        if target.container:
            handle = self._controller.attach_container(target.container)
        elif target.pid is not None:
            handle = self._controller.attach(pid=target.pid)
        else:
            handle = self._controller.attach(endpoint=target.base_url)
        self._controller.wait_until_ready(
            handle, probe, config.startup_timeout_seconds, cancel_event=self._cancel_event
        )
        return handle

    def _load_generator(self, config: ScenarioConfig, target: TargetSpec) -> LoadGenerator:
        return LoadGenerator(
            concurrency=config.concurrency,
            request_factory=template_factory(target.base_url, config.request),
            transport=self._transport,
            max_consecutive_failures=config.max_consecutive_failures,
        )

    def _finalize(
        self, run: _ScenarioRun, process_exit: ProcessExitInfo | None
    ) -> BenchmarkResult:
        config = run.config
        stats = run.aggregator.finalize(min_samples=config.min_samples)
        stats.update(self._derived_stats(run, process_exit))

        verdicts = evaluate_all(stats, config.targets)
        findings = find_bottlenecks(verdicts)
        if run.unreachable:
            findings.insert(
                0,
                BottleneckFinding(
                    metric="target",
                    grade=Grade.FAIL,
                    shortfall=1.0,
                    observed_value=None,
                    target=None,
                    comparison=None,
                    detail=UNREACHABLE_REASON,
                ),
            )
        degradations = find_degradations(run.baseline, run.post_load, config.targets)
        for item in degradations:
            LOGGER.warning(
                "[%s] %s degraded from %.2f to %.2f (%+.1f%%)",
                config.name,
                item.metric,
                item.baseline,
                item.post_load,
                item.change * 100.0,
            )

        if run.abort_reason is None:
            run.transition(RunState.DONE)
        elif run.state is not RunState.ABORTED:
            run.transition(RunState.ABORTED)
        return self._result(
            run,
            stats=stats,
            verdicts=verdicts,
            findings=findings,
            degradations=degradations,
            process_exit=process_exit,
        )

    def _derived_stats(
        self, run: _ScenarioRun, process_exit: ProcessExitInfo | None
    ) -> dict[str, Observation]:
        derived: dict[str, Observation] = {}
        if process_exit is not None and process_exit.startup_ms is not None:
            derived["startup_ms"] = summarize([process_exit.startup_ms])
        if run.load is not None and run.load.issued:
            derived["client_rps"] = summarize([run.load.throughput])
            derived["client_success_rate"] = summarize([run.load.success_rate])
        elif any(name in run.config.targets for name in ("client_rps", "client_success_rate")):
            derived["client_rps"] = NoData(reason="no load issued")
            derived["client_success_rate"] = NoData(reason="no load issued")
        return derived

    def _result(
        self,
        run: _ScenarioRun,
        stats: Mapping[str, Observation],
        verdicts: list[Verdict],
        findings: list[BottleneckFinding],
        degradations: list[DegradationFinding],
        process_exit: ProcessExitInfo | None = None,
    ) -> BenchmarkResult:
        return BenchmarkResult(
            scenario=run.config,
            status=run.state,
            started_at=run.started_at,
            finished_at=time.time(),
            abort_reason=run.abort_reason,
            partial=run.partial,
            series=run.aggregator.series(),
            stats=dict(stats),
            verdicts=verdicts,
            bottlenecks=findings,
            degradations=degradations,
            load=run.load,
            process_exit=process_exit,
        )


__all__ = [
    "BenchmarkOrchestrator",
    "BenchmarkResult",
    "RunState",
    "TargetDiedError",
    "TargetSpec",
]
