from __future__ import annotations

import itertools
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable

import requests

from .config import RequestTemplate
from .sampler import join_url

LOGGER = logging.getLogger("benchharness.load")


@dataclass(frozen=True)
class LoadRequest:
    method: str
    url: str
    json_body: Any = None
    headers: dict[str, str] = field(default_factory=dict)
    timeout: float = 5.0


RequestFactory = Callable[[int, int], LoadRequest]
Transport = Callable[[requests.Session, LoadRequest], bool]


@dataclass
class WorkerStats:
    worker_id: int
    issued: int = 0
    succeeded: int = 0
    failed: int = 0
    stopped_early: bool = False


@dataclass
class LoadSummary:
    issued: int
    succeeded: int
    failed: int
    started_at: float
    finished_at: float
    workers: int = 0
    workers_stopped_early: int = 0

    @property
    def duration_s(self) -> float:
        return max(self.finished_at - self.started_at, 0.0)

    @property
    def throughput(self) -> float:
        if self.duration_s == 0:
            return 0.0
        return self.succeeded / self.duration_s

    @property
    def success_rate(self) -> float:
        if self.issued == 0:
            return 0.0
        return self.succeeded / self.issued * 100.0

    @classmethod
    def combine(
        cls, stats: list[WorkerStats], started_at: float, finished_at: float
    ) -> "LoadSummary":
        return cls(
            issued=sum(item.issued for item in stats),
            succeeded=sum(item.succeeded for item in stats),
            failed=sum(item.failed for item in stats),
            started_at=started_at,
            finished_at=finished_at,
            workers=len(stats),
            workers_stopped_early=sum(1 for item in stats if item.stopped_early),
        )


def template_factory(base_url: str, template: RequestTemplate) -> RequestFactory:
    """Build every request from the scenario's request template."""

    url = join_url(base_url, template.path)

    def factory(worker_id: int, sequence: int) -> LoadRequest:
        return LoadRequest(
            method=template.method,
            url=url,
            json_body=template.json_body,
            headers=dict(template.headers),
            timeout=template.timeout_seconds,
        )

    return factory


def http_transport(session: requests.Session, request: LoadRequest) -> bool:
    try:
        response = session.request(
            request.method,
            request.url,
            json=request.json_body,
            headers=request.headers or None,
            timeout=request.timeout,
        )
    except requests.RequestException:
        return False
    try:
        return response.ok
    finally:
        response.close()


class LoadGenerator:
    """Closed-loop load: ``concurrency`` workers issue requests back to back.

    Each worker keeps its own counters; they are summed once after all workers
    have joined. Failed requests are retried immediately without backoff, but a
    worker that sees ``max_consecutive_failures`` failures in a row stops.
    """

    def __init__(
        self,
        concurrency: int,
        request_factory: RequestFactory,
        transport: Transport = http_transport,
        max_consecutive_failures: int = 1000,
        session_factory: Callable[[], requests.Session] = requests.Session,
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        self._concurrency = concurrency
        self._request_factory = request_factory
        self._transport = transport
        self._max_failures = max_consecutive_failures
        self._session_factory = session_factory
        self._stop_event = threading.Event()

    def run(
        self, duration_seconds: float, stop_event: threading.Event | None = None
    ) -> LoadSummary:
        self._stop_event.clear()
        external = stop_event or threading.Event()
        started_at = time.time()
        deadline = time.monotonic() + duration_seconds
        results = [WorkerStats(worker_id=idx) for idx in range(self._concurrency)]

        threads = [
            threading.Thread(
                target=self._worker,
                args=(stats, deadline, external),
                name=f"load-worker-{stats.worker_id}",
                daemon=True,
            )
            for stats in results
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        summary = LoadSummary.combine(results, started_at, time.time())
        LOGGER.info(
            "Load finished: %d issued, %d ok, %d failed in %.1fs (%.1f req/s)",
            summary.issued,
            summary.succeeded,
            summary.failed,
            summary.duration_s,
            summary.throughput,
        )
        if summary.workers_stopped_early:
            LOGGER.warning(
                "%d of %d worker(s) stopped early after %d consecutive failures",
                summary.workers_stopped_early,
                summary.workers,
                self._max_failures,
            )
        return summary

    def stop(self) -> None:
        self._stop_event.set()

    def _stopped(self, external: threading.Event) -> bool:
        return self._stop_event.is_set() or external.is_set()

    def _worker(
        self, stats: WorkerStats, deadline: float, external: threading.Event
    ) -> None:
        session = self._session_factory()
        consecutive = 0
        sequence = itertools.count(start=1)
        try:
            while time.monotonic() < deadline and not self._stopped(external):
                request = self._request_factory(stats.worker_id, next(sequence))
                try:
                    ok = self._transport(session, request)
                except Exception:  # noqa: BLE001
                    LOGGER.debug("Worker %d transport error", stats.worker_id, exc_info=True)
                    ok = False
                stats.issued += 1
                if ok:
                    stats.succeeded += 1
                    consecutive = 0
                    continue
                stats.failed += 1
                consecutive += 1
                if consecutive >= self._max_failures:
                    stats.stopped_early = True
                    return
        finally:
            session.close()
