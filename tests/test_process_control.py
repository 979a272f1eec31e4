import os
import subprocess
import sys
import threading
import time
from unittest.mock import MagicMock

import psutil
import pytest
import requests
from docker.errors import DockerException

from benchharness.config import HealthCheck
from benchharness.process_control import (
    ProcessController,
    ProcessHandle,
    StartupError,
    http_readiness_probe,
)

SLEEPER = [sys.executable, "-c", "import time; time.sleep(30)"]


class RecordingPopen(subprocess.Popen):
    instances: list = []

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        RecordingPopen.instances.append(self)


@pytest.fixture
def recorded(monkeypatch):
    RecordingPopen.instances = []
    monkeypatch.setattr(subprocess, "Popen", RecordingPopen)
    yield RecordingPopen.instances
    for popen in RecordingPopen.instances:
        if popen.poll() is None:
            popen.kill()
            popen.wait()


@pytest.fixture
def controller():
    return ProcessController(poll_interval=0.01)


class TestStart:
    def test_ready_process_is_owned_and_stoppable(self, controller, recorded):
        handle = controller.start(SLEEPER, lambda: True, startup_timeout=5.0)

        assert handle.owned
        assert handle.pid == recorded[0].pid
        assert handle.startup_ms is not None
        assert controller.is_alive(handle)
        assert controller.exit_info(handle).reason == "running"

        controller.stop(handle, grace_period=5.0)
        controller.stop(handle, grace_period=5.0)

        assert not controller.is_alive(handle)
        info = controller.exit_info(handle)
        assert info.reason == "stopped by harness"
        assert info.returncode is not None

    def test_readiness_timeout_kills_process(self, controller, recorded):
        with pytest.raises(StartupError, match="readiness timeout"):
            controller.start(SLEEPER, lambda: False, startup_timeout=0.2)
        assert recorded[0].poll() is not None

    def test_cancel_during_startup_kills_process(self, controller, recorded):
        cancel = threading.Event()
        threading.Timer(0.2, cancel.set).start()

        started = time.monotonic()
        with pytest.raises(StartupError, match="cancelled"):
            controller.start(SLEEPER, lambda: False, startup_timeout=10.0, cancel_event=cancel)

        assert time.monotonic() - started < 2.0
        assert recorded[0].poll() is not None

    def test_early_exit_is_reported_with_code(self, controller, recorded):
        command = [sys.executable, "-c", "import sys; sys.exit(3)"]
        with pytest.raises(StartupError, match=r"process exited during startup \(code 3\)"):
            controller.start(command, lambda: False, startup_timeout=10.0)

    def test_unexpected_exit_after_ready(self, controller, recorded):
        command = [sys.executable, "-c", "import time; time.sleep(0.1)"]
        handle = controller.start(command, lambda: True, startup_timeout=5.0)
        recorded[0].wait(timeout=10)

        assert not controller.is_alive(handle)
        controller.stop(handle)
        info = controller.exit_info(handle)
        assert info.reason == "exited unexpectedly"
        assert info.returncode == 0

    def test_unlaunchable_command(self, controller):
        with pytest.raises(StartupError, match="cannot launch"):
            controller.start("/nonexistent/binary --flag", lambda: True, startup_timeout=1.0)

    def test_empty_command(self, controller):
        with pytest.raises(StartupError, match="empty command"):
            controller.start("", lambda: True, startup_timeout=1.0)


class TestAttach:
    def test_attach_to_running_pid_never_signals_it(self, controller):
        handle = controller.attach(pid=os.getpid())
        assert not handle.owned
        assert controller.is_alive(handle)
        controller.stop(handle, grace_period=0.0)
        assert controller.is_alive(handle)
        assert controller.exit_info(handle).reason == "still running"

    def test_attach_to_missing_pid(self, controller, monkeypatch):
        monkeypatch.setattr(psutil, "pid_exists", lambda pid: False)
        with pytest.raises(StartupError, match="no such process"):
            controller.attach(pid=123456)

    def test_endpoint_only_attachment_is_assumed_alive(self, controller):
        handle = controller.attach(endpoint="http://svc:9003")
        assert controller.is_alive(handle)

    def test_attach_needs_pid_or_endpoint(self, controller):
        with pytest.raises(ValueError):
            controller.attach()

    def test_attach_container(self):
        inspector = MagicMock()
        inspector.find.return_value = "container"
        inspector.is_running.return_value = True
        inspector.host_pid.return_value = 777
        controller = ProcessController(container_inspector_factory=lambda: inspector)

        handle = controller.attach_container("svc")

        assert handle.pid == 777
        assert not handle.owned
        assert controller.is_alive(handle)
        inspector.is_running.return_value = False
        assert not controller.is_alive(handle)

    @pytest.mark.parametrize(
        "found,running,message",
        [(None, False, "no such container"), ("container", False, "is not running")],
    )
    def test_attach_container_errors(self, found, running, message):
        inspector = MagicMock()
        inspector.find.return_value = found
        inspector.is_running.return_value = running
        controller = ProcessController(container_inspector_factory=lambda: inspector)
        with pytest.raises(StartupError, match=message):
            controller.attach_container("svc")

    def test_attach_container_without_docker_daemon(self):
        def unreachable():
            raise DockerException("Error while fetching server API version")

        controller = ProcessController(container_inspector_factory=unreachable)
        with pytest.raises(StartupError, match="docker unavailable: Error while fetching"):
            controller.attach_container("svc")

    def test_docker_error_while_inspecting(self):
        inspector = MagicMock()
        inspector.find.return_value = "container"
        inspector.is_running.side_effect = DockerException("connection reset")
        controller = ProcessController(container_inspector_factory=lambda: inspector)
        with pytest.raises(StartupError, match="docker unavailable: connection reset"):
            controller.attach_container("svc")


class TestWaitUntilReady:
    def test_returns_once_probe_succeeds(self, controller):
        calls = iter([False, False, True])
        handle = ProcessHandle(pid=None, owned=False, endpoint="http://svc")
        controller.wait_until_ready(handle, lambda: next(calls), timeout=5.0)

    def test_dead_target(self, controller):
        handle = ProcessHandle(pid=None, owned=False, liveness=lambda: False, label="container svc")
        with pytest.raises(StartupError, match="container svc is not running"):
            controller.wait_until_ready(handle, lambda: True, timeout=1.0)

    def test_timeout(self, controller):
        handle = ProcessHandle(pid=None, owned=False, endpoint="http://svc")
        with pytest.raises(StartupError, match="readiness timeout"):
            controller.wait_until_ready(handle, lambda: False, timeout=0.05)

    def test_cancel_cuts_the_wait_short(self, controller):
        handle = ProcessHandle(pid=None, owned=False, endpoint="http://svc")
        cancel = threading.Event()
        cancel.set()
        started = time.monotonic()
        with pytest.raises(StartupError, match="cancelled"):
            controller.wait_until_ready(handle, lambda: False, timeout=10.0, cancel_event=cancel)
        assert time.monotonic() - started < 1.0


class TestHttpReadinessProbe:
    def _session(self, ok=True, document=None, exc=None):
        session = MagicMock()
        if exc is not None:
            session.get.side_effect = exc
        session.get.return_value.ok = ok
        session.get.return_value.json.return_value = document
        return session

    def test_2xx_is_ready(self):
        session = self._session(ok=True)
        probe = http_readiness_probe("http://svc:9003", HealthCheck(), session=session)
        assert probe()
        session.get.assert_called_once_with("http://svc:9003/q/health", timeout=2.0)

    def test_expected_status_must_match(self):
        health = HealthCheck(expect_status="UP")
        assert http_readiness_probe("http://svc", health, self._session(document={"status": "UP"}))()
        assert not http_readiness_probe("http://svc", health, self._session(document={"status": "DOWN"}))()

    def test_error_status_and_connection_errors(self):
        assert not http_readiness_probe("http://svc", HealthCheck(), self._session(ok=False))()
        session = self._session(exc=requests.ConnectionError("refused"))
        assert not http_readiness_probe("http://svc", HealthCheck(), session)()
