"""Periodic lease renewal while a job is executing."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from typing import Any, Protocol

from ralph_agent.agent.best_effort import run_ignoring_errors
from ralph_agent.logs import bind_job

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL_SECONDS = 60.0


class HeartbeatGateway(Protocol):
    """Gateway subset used for lease renewal."""

    def send_heartbeat(self, job_id: int, status_event: dict[str, Any] | None = None) -> None:
        """Renew the job lease."""

    def send_status_event(
        self,
        job_id: int,
        event_type: str,
        message: str,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        """Publish an informational event."""


class HeartbeatController:
    """Renews the lease of the current job on a daemon thread.

    The first renewal happens one full interval after ``start``. Each tick
    first checks the completing flag; once the orchestrator has set it the
    tick is skipped, so no heartbeat can revive a job whose terminal status
    is being written. ``stop`` waits for an in-flight tick to finish.
    """

    def __init__(
        self,
        *,
        gateway: HeartbeatGateway,
        interval_seconds: float = DEFAULT_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.gateway = gateway
        self.interval_seconds = interval_seconds
        self._clock = clock
        self._completing = threading.Event()
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._job_id: int | None = None
        self._started_at = 0.0

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def completing(self) -> bool:
        return self._completing.is_set()

    @property
    def job_id(self) -> int | None:
        return self._job_id

    def start(self, job_id: int) -> None:
        self.stop()
        self._completing.clear()
        self._stop_event = threading.Event()
        self._job_id = job_id
        self._started_at = self._clock()
        self._thread = threading.Thread(
            target=self._run,
            args=(job_id, self._stop_event),
            name=f"heartbeat-job-{job_id}",
            daemon=True,
        )
        self._thread.start()
        logger.debug("Heartbeat armed for job #%d every %ss", job_id, self.interval_seconds)

    def mark_completing(self) -> None:
        self._completing.set()

    def stop(self) -> None:
        """Disarm the timer; no-op when nothing is armed."""

        thread = self._thread
        self._stop_event.set()
        self._thread = None
        if thread is None:
            return
        if thread is not threading.current_thread():
            # An in-flight renewal must land before the terminal report does.
            thread.join()
        logger.debug("Heartbeat stopped for job #%s", self._job_id)
        self._job_id = None

    def tick(self) -> bool:
        """Run one renewal; returns False when the tick was skipped."""

        job_id = self._job_id
        if job_id is None or self._stop_event.is_set():
            return False
        if self._completing.is_set():
            logger.debug("Skipping heartbeat for job #%d: job is completing", job_id)
            return False

        elapsed = self._clock() - self._started_at
        run_ignoring_errors("Heartbeat", self.gateway.send_heartbeat, job_id)
        if self._completing.is_set() or self._stop_event.is_set():
            return True
        run_ignoring_errors(
            "Heartbeat status event",
            self.gateway.send_status_event,
            job_id,
            "heartbeat",
            f"Still working ({_format_elapsed(elapsed)} elapsed)",
            {"elapsed_seconds": int(elapsed)},
        )
        return True

    def _run(self, job_id: int, stop_event: threading.Event) -> None:
        bind_job(job_id)
        while not stop_event.wait(self.interval_seconds):
            self.tick()


def _format_elapsed(seconds: float) -> str:
    total = int(seconds)
    minutes, secs = divmod(total, 60)
    hours, minutes = divmod(minutes, 60)
    if hours:
        return f"{hours}h {minutes}m"
    if minutes:
        return f"{minutes}m {secs}s"
    return f"{secs}s"
