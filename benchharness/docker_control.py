from __future__ import annotations

import contextlib
import logging
import os

import docker
from docker.errors import DockerException, NotFound
from docker.models.containers import Container

LOGGER = logging.getLogger("benchharness.docker")


class ContainerInspector:
    """Read-only view of an already-running target container via the Docker API.

    The harness never starts or stops containers; orchestration is external.
    """

    def __init__(self, client: docker.DockerClient | None = None) -> None:
        self._client = client or docker.from_env()

    def find(self, name: str) -> Container | None:
        try:
            return self._client.containers.get(name)
        except NotFound:
            return None
        except DockerException as exc:
            LOGGER.error("Docker lookup for %s failed: %s", name, exc)
            return None

    def is_running(self, container: Container) -> bool:
        with contextlib.suppress(Exception):
            container.reload()
            status = container.attrs.get("State", {})
            if status.get("Health"):
                return status["Health"]["Status"] == "healthy"
            return status.get("Running", False)
        return False

    def host_pid(self, container: Container) -> int | None:
        pid = container.attrs.get("State", {}).get("Pid")
        if not pid:
            return None
        docker_host = os.environ.get("DOCKER_HOST")
        if docker_host and docker_host.startswith("tcp://"):
            # A remote daemon's pid namespace is not ours to inspect.
            LOGGER.debug("Container pid %s is on remote Docker host %s", pid, docker_host)
            return None
        return int(pid)
