from __future__ import annotations

import logging
import shlex
import subprocess
import threading
import time
from dataclasses import dataclass
from typing import Callable, Sequence

import psutil
import requests
from docker.errors import DockerException

from .config import HealthCheck
from .sampler import extract_path, join_url

LOGGER = logging.getLogger("benchharness.process")

READINESS_POLL_SECONDS = 0.1

ReadinessProbe = Callable[[], bool]


class StartupError(Exception):
    """The target never became ready, so the scenario cannot run."""

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


@dataclass
class ProcessExitInfo:
    pid: int | None
    owned: bool
    reason: str
    returncode: int | None = None
    startup_ms: float | None = None


class ProcessHandle:
    """A target the harness either launched (owned) or attached to."""

    def __init__(
        self,
        pid: int | None,
        owned: bool,
        popen: subprocess.Popen | None = None,
        endpoint: str | None = None,
        liveness: Callable[[], bool] | None = None,
        label: str | None = None,
    ) -> None:
        self.pid = pid
        self.owned = owned
        self.endpoint = endpoint
        self.label = label or (f"pid {pid}" if pid is not None else endpoint or "target")
        self.startup_ms: float | None = None
        self.stopped_by_harness = False
        self._popen = popen
        self.liveness = liveness

    @property
    def popen(self) -> subprocess.Popen | None:
        return self._popen

    def __repr__(self) -> str:
        kind = "owned" if self.owned else "attached"
        return f"<ProcessHandle {self.label} {kind}>"


def http_readiness_probe(
    base_url: str, health: HealthCheck, session: requests.Session | None = None
) -> ReadinessProbe:
    """Probe that succeeds when the health endpoint answers 2xx (and, optionally,
    reports the expected ``status`` field, e.g. ``UP``)."""

    session = session or requests.Session()
    url = join_url(base_url, health.path)

    def probe() -> bool:
        try:
            response = session.get(url, timeout=health.timeout_seconds)
        except requests.RequestException:
            return False
        if not response.ok:
            return False
        if health.expect_status is None:
            return True
        try:
            status = extract_path(response.json(), "status")
        except ValueError:
            return False
        return str(status) == health.expect_status

    return probe


class ProcessController:
    """Start, health-poll, watch and terminate the process under test."""

    def __init__(
        self,
        poll_interval: float = READINESS_POLL_SECONDS,
        container_inspector_factory: Callable[[], object] | None = None,
    ) -> None:
        self._poll_interval = poll_interval
        self._container_inspector_factory = container_inspector_factory

    def start(
        self,
        command: str | Sequence[str],
        readiness_probe: ReadinessProbe,
        startup_timeout: float,
        cancel_event: threading.Event | None = None,
    ) -> ProcessHandle:
        argv = shlex.split(command) if isinstance(command, str) else list(command)
        if not argv:
            raise StartupError("empty command")
        LOGGER.info("Starting target: %s", " ".join(argv))

        started = time.monotonic()
        try:
            popen = subprocess.Popen(
                argv, stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL
            )
        except OSError as exc:
            raise StartupError(f"cannot launch {argv[0]}: {exc}") from exc

        handle = ProcessHandle(pid=popen.pid, owned=True, popen=popen, label=argv[0])
        deadline = started + startup_timeout
        while True:
            if popen.poll() is not None:
                raise StartupError(
                    f"process exited during startup (code {popen.returncode})"
                )
            if readiness_probe():
                handle.startup_ms = (time.monotonic() - started) * 1000.0
                LOGGER.info(
                    "Target pid %d ready after %.0f ms", popen.pid, handle.startup_ms
                )
                return handle
            if time.monotonic() >= deadline:
                LOGGER.error(
                    "Target pid %d not ready within %.1fs; killing it",
                    popen.pid,
                    startup_timeout,
                )
                self._terminate(handle, grace_period=0.0)
                raise StartupError("readiness timeout")
            if self._pause(cancel_event):
                LOGGER.warning("Start of pid %d cancelled; killing it", popen.pid)
                self._terminate(handle, grace_period=0.0)
                raise StartupError("cancelled")

    def attach(self, pid: int | None = None, endpoint: str | None = None) -> ProcessHandle:
        if pid is None and endpoint is None:
            raise ValueError("attach() needs a pid or an endpoint")
        if pid is not None and not psutil.pid_exists(pid):
            raise StartupError("no such process")
        LOGGER.info("Attaching to %s", f"pid {pid}" if pid is not None else endpoint)
        return ProcessHandle(pid=pid, owned=False, endpoint=endpoint)

    def attach_container(self, name: str) -> ProcessHandle:
        from .docker_control import ContainerInspector

        factory = self._container_inspector_factory or ContainerInspector
        try:
            inspector = factory()
            container = inspector.find(name)
            if container is None:
                raise StartupError(f"no such container: {name}")
            if not inspector.is_running(container):
                raise StartupError(f"container {name} is not running")
            pid = inspector.host_pid(container)
        except DockerException as exc:
            LOGGER.error("Cannot reach docker to attach to %s: %s", name, exc)
            raise StartupError(f"docker unavailable: {exc}") from exc
        LOGGER.info("Attaching to container %s (host pid %s)", name, pid)
        return ProcessHandle(
            pid=pid,
            owned=False,
            liveness=lambda: inspector.is_running(container),
            label=f"container {name}",
        )

    def wait_until_ready(
        self,
        handle: ProcessHandle,
        readiness_probe: ReadinessProbe,
        timeout: float,
        cancel_event: threading.Event | None = None,
    ) -> None:
        """Poll an attached target until healthy; never signals the process."""

        started = time.monotonic()
        deadline = started + timeout
        while True:
            if not self.is_alive(handle):
                raise StartupError(f"{handle.label} is not running")
            if readiness_probe():
                LOGGER.info(
                    "%s healthy after %.0f ms", handle.label, (time.monotonic() - started) * 1000.0
                )
                return
            if time.monotonic() >= deadline:
                raise StartupError("readiness timeout")
            if self._pause(cancel_event):
                raise StartupError("cancelled")

    def is_alive(self, handle: ProcessHandle) -> bool:
        if handle.popen is not None:
            return handle.popen.poll() is None
        if handle.liveness is not None:
            try:
                return bool(handle.liveness())
            except Exception:  # noqa: BLE001
                LOGGER.debug("Liveness check for %s failed", handle.label, exc_info=True)
                return False
        if handle.pid is not None:
            try:
                process = psutil.Process(handle.pid)
                return process.is_running() and process.status() != psutil.STATUS_ZOMBIE
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                return False
        # Endpoint-only attachments have no process to watch; reachability is
        # judged by the sampler instead.
        return True

    def stop(self, handle: ProcessHandle, grace_period: float = 10.0) -> None:
        if not handle.owned:
            return
        if handle.popen is None or handle.popen.poll() is not None:
            return
        self._terminate(handle, grace_period)

    def exit_info(self, handle: ProcessHandle) -> ProcessExitInfo:
        returncode = handle.popen.poll() if handle.popen is not None else None
        if handle.owned and returncode is not None:
            reason = "stopped by harness" if handle.stopped_by_harness else "exited unexpectedly"
        elif handle.owned:
            reason = "running"
        elif self.is_alive(handle):
            reason = "still running"
        else:
            reason = "exited unexpectedly"
        return ProcessExitInfo(
            pid=handle.pid,
            owned=handle.owned,
            reason=reason,
            returncode=returncode,
            startup_ms=handle.startup_ms,
        )

    def _pause(self, cancel_event: threading.Event | None) -> bool:
        """Sleep one poll interval; True when the wait was cut short by a cancel."""

        if cancel_event is None:
            time.sleep(self._poll_interval)
            return False
        return cancel_event.wait(self._poll_interval)

    def _terminate(self, handle: ProcessHandle, grace_period: float) -> None:
        popen = handle.popen
        if popen is None:
            return
        handle.stopped_by_harness = True
        LOGGER.info("Stopping %s (pid %d)", handle.label, popen.pid)
        try:
            popen.terminate()
            popen.wait(timeout=grace_period)
            return
        except subprocess.TimeoutExpired:
            LOGGER.warning(
                "pid %d did not exit within %.1fs; killing", popen.pid, grace_period
            )
        except ProcessLookupError:
            return
        try:
            popen.kill()
        except ProcessLookupError:
            return
        popen.wait()
