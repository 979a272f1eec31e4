from __future__ import annotations

import argparse
import logging
import os
import signal
import sys
import threading
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

from .config import ConfigError, ScenarioPlan, load_plan
from .orchestrator import BenchmarkOrchestrator, BenchmarkResult, TargetSpec
from .report import render_summary_table, write_json, write_markdown, write_samples

LOGGER = logging.getLogger("benchharness")

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CONFIG = 2
EXIT_INTERRUPTED = 130


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="benchharness", description="Service benchmark and load-validation harness"
    )
    parser.add_argument(
        "--log-level",
        default=os.environ.get("BENCHMARK_LOG_LEVEL", "INFO"),
        help="Logging level",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    run = subparsers.add_parser("run", help="Execute the scenarios in a scenario file")
    run.add_argument("scenario_file", help="JSON or YAML scenario definition")
    run.add_argument(
        "--target-url",
        default=os.environ.get("BENCHMARK_TARGET_URL"),
        help="Base HTTP endpoint for health, metrics and load traffic",
    )
    process = run.add_mutually_exclusive_group()
    process.add_argument("--exec", dest="exec_command", help="Launch and own this command")
    process.add_argument("--attach-pid", type=int, help="Attach to a running process")
    process.add_argument(
        "--attach-container", help="Attach to a running Docker container by name or id"
    )
    run.add_argument(
        "--output",
        default=os.environ.get("BENCHMARK_OUTPUT"),
        help="Write the machine-readable result (JSON) here",
    )
    run.add_argument("--markdown", help="Also write a Markdown report here")
    run.add_argument(
        "--samples-dir",
        default=os.environ.get("BENCHMARK_SAMPLES_DIR"),
        help="Directory for per-scenario sample CSV files",
    )
    run.add_argument("--charts-dir", help="Directory for per-scenario time-series charts")
    run.add_argument(
        "--scenario",
        action="append",
        dest="scenarios",
        help="Only run the named scenario (repeatable)",
    )
    run.add_argument(
        "--parallel",
        action="store_true",
        help="Run scenarios concurrently instead of in sequence",
    )
    run.add_argument(
        "--fail-on-nodata",
        action="store_true",
        help="Treat NO_DATA verdicts as failures for the exit code",
    )
    run.add_argument(
        "--dry-run",
        action="store_true",
        help="Only print the planned scenarios without executing them",
    )
    return parser.parse_args(argv)


def setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )


def build_target(args: argparse.Namespace, plan: ScenarioPlan) -> TargetSpec:
    base_url = args.target_url or plan.target_url
    if not base_url:
        raise ConfigError("No target URL: pass --target-url or set target_url in the scenario file")
    target = TargetSpec(
        base_url=base_url,
        command=args.exec_command,
        pid=args.attach_pid,
        container=args.attach_container,
    )
    needs_pid = [s.name for s in plan if s.uses_process_metrics()]
    if needs_pid and not target.has_process:
        raise ConfigError(
            "Scenario(s) "
            + ", ".join(needs_pid)
            + " sample process memory; use --exec, --attach-pid or --attach-container"
        )
    return target


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    setup_logging(args.log_level)

    try:
        plan = load_plan(args.scenario_file).select(args.scenarios)
        target = build_target(args, plan)
    except ConfigError as exc:
        LOGGER.error("Invalid configuration: %s", exc)
        return EXIT_CONFIG

    LOGGER.info("Scenario file: %s (%d scenario(s))", plan.source, len(plan))
    LOGGER.info("Target: %s", target.base_url)

    if args.dry_run:
        _print_plan(plan, target)
        return EXIT_OK

    orchestrator = BenchmarkOrchestrator()
    interrupted = False
    previous = _install_sigterm(orchestrator)
    try:
        try:
            results = _run_cancellable(orchestrator, plan, target, args.parallel)
        except KeyboardInterrupt:
            interrupted = True
            orchestrator.cancel()
            results = []
        if orchestrator.cancelled:
            interrupted = True
    finally:
        _restore_sigterm(previous)

    _emit(results, args)

    if interrupted:
        return EXIT_INTERRUPTED
    if all(result.passed(fail_on_nodata=args.fail_on_nodata) for result in results):
        return EXIT_OK
    return EXIT_FAILED


def _run_cancellable(
    orchestrator: BenchmarkOrchestrator,
    plan: ScenarioPlan,
    target: TargetSpec,
    parallel: bool,
) -> list[BenchmarkResult]:
    # Scenarios run off the main thread so Ctrl-C lands here; cancel() then
    # winds the in-flight scenario down through its normal cleanup path.
    with ThreadPoolExecutor(max_workers=1, thread_name_prefix="benchmark") as pool:
        future = pool.submit(orchestrator.run_plan, plan, target, parallel)
        while True:
            try:
                return future.result()
            except KeyboardInterrupt:
                orchestrator.cancel()


def _emit(results: list[BenchmarkResult], args: argparse.Namespace) -> None:
    print(render_summary_table(results))

    if args.output:
        write_json(results, Path(args.output))
    if args.markdown:
        write_markdown(results, Path(args.markdown))
    if args.samples_dir:
        write_samples(results, Path(args.samples_dir))
    if args.charts_dir:
        from .charts import render_charts

        render_charts(results, Path(args.charts_dir))


def _install_sigterm(orchestrator: BenchmarkOrchestrator):
    if threading.current_thread() is not threading.main_thread():
        return None
    return signal.signal(signal.SIGTERM, lambda signum, frame: orchestrator.cancel())


def _restore_sigterm(previous) -> None:
    if previous is not None:
        signal.signal(signal.SIGTERM, previous)


def _print_plan(plan: ScenarioPlan, target: TargetSpec) -> None:
    print(f"Target: {target.base_url}")
    for scenario in plan:
        print(
            f"  - {scenario.name}: concurrency={scenario.concurrency}, "
            f"warmup={scenario.warmup_seconds:g}s duration={scenario.duration_seconds:g}s "
            f"interval={scenario.sample_interval_seconds:g}s "
            f"request={scenario.request.method} {scenario.request.path}"
        )
        for metric, spec in scenario.targets.items():
            print(f"      {metric}: {spec.statistic} {spec.comparison} {spec.target:g}")


if __name__ == "__main__":
    sys.exit(main())
