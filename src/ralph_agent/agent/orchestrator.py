"""Poll/claim loop that drives one job at a time through its lifecycle."""

from __future__ import annotations

import dataclasses
import logging
import os
import signal
import sys
import threading
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from enum import Enum
from types import TracebackType
from typing import Any, Protocol

from ralph_agent.agent.best_effort import run_ignoring_errors
from ralph_agent.agent.errors import GatewayPermissionError
from ralph_agent.agent.executor.base import JobExecutor
from ralph_agent.agent.failure_window import FailureWindow
from ralph_agent.agent.failures import JobFailure
from ralph_agent.agent.heartbeat import HeartbeatController, HeartbeatGateway
from ralph_agent.agent.models import ExecutionResult, FailureKind, Job, JobType, Workspace
from ralph_agent.agent.throttle import ProgressThrottle
from ralph_agent.agent.workspace import WorktreeManager
from ralph_agent.config import PollingSettings
from ralph_agent.logs import bind_job, clear_job_context

logger = logging.getLogger(__name__)

SHUTDOWN_FAILURE_MESSAGE = "Agent shutdown during execution"


class OrchestratorState(str, Enum):
    """Lifecycle state of the agent process."""

    IDLE = "idle"
    POLLING = "polling"
    PROCESSING = "processing"
    SHUTTING_DOWN = "shutting_down"


class OrchestratorGateway(HeartbeatGateway, Protocol):
    """Gateway operations the orchestrator depends on."""

    def claim_next(self) -> Job | None: ...

    def mark_running(self, job_id: int) -> None: ...

    def mark_completed(self, job_id: int, result: ExecutionResult) -> None: ...

    def mark_failed(
        self,
        job_id: int,
        error: JobFailure | str,
        partial_output: str | None = None,
    ) -> None: ...

    def send_progress(self, job_id: int, chunk: str) -> None: ...

    def update_metadata(self, job_id: int, metadata: dict[str, Any]) -> None: ...


def exit_process(code: int) -> None:
    """Flush logs and terminate without waiting for non-daemon threads."""

    logging.shutdown()
    os._exit(code)


class JobOrchestrator:
    """Claims jobs from the coordinator and runs them to a terminal state.

    Exactly one job is processed at a time. The heartbeat is always stopped
    before the terminal report, and every job gets exactly one terminal
    report even when ``stop`` races the normal completion path.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        gateway: OrchestratorGateway,
        executor: JobExecutor,
        heartbeat: HeartbeatController,
        worktrees: WorktreeManager | None = None,
        polling: PollingSettings | None = None,
        failure_window: FailureWindow | None = None,
        throttle_factory: Callable[[], ProgressThrottle] = ProgressThrottle,
        clock: Callable[[], float] = time.monotonic,
        exit_process: Callable[[int], None] = exit_process,
    ) -> None:
        self.gateway = gateway
        self.executor = executor
        self.heartbeat = heartbeat
        self.worktrees = worktrees
        self.polling = polling or PollingSettings()
        self.failure_window = failure_window or FailureWindow(
            window_seconds=self.polling.failure_window_seconds,
            request_interval_seconds=self.polling.failure_window_request_interval_seconds,
        )
        self.throttle_factory = throttle_factory
        self._clock = clock
        self._exit_process = exit_process
        self.state = OrchestratorState.IDLE
        self.consecutive_errors = 0
        self._stop_event = threading.Event()
        self._lock = threading.Lock()
        self._current_job: Job | None = None
        self._reported_job_id: int | None = None
        self._last_claim_at: float | None = None
        self._exit_timer: threading.Timer | None = None

    @property
    def running(self) -> bool:
        return not self._stop_event.is_set()

    @property
    def current_job(self) -> Job | None:
        return self._current_job

    def start(self) -> None:
        """Run the poll loop until ``stop`` is called.

        ``GatewayPermissionError`` is fatal and propagates to the caller.
        """

        if self._stop_event.is_set():
            return
        logger.info("Agent started, polling for jobs")
        self.state = OrchestratorState.POLLING
        with self._signal_handlers(), self._fault_hooks():
            while not self._stop_event.is_set():
                self.poll_once()
        logger.info("Poll loop finished")

    def poll_once(self) -> None:
        """One claim attempt: process the job, idle, or back off after an error."""

        self._respect_request_spacing()
        if self._stop_event.is_set():
            return
        self.state = OrchestratorState.POLLING
        self._last_claim_at = self._clock()
        try:
            job = self.gateway.claim_next()
        except GatewayPermissionError:
            logger.error("Fatal: API token lacks agent permission, shutting down")
            raise
        except Exception as error:  # noqa: BLE001
            self._handle_poll_error(error)
            return

        self.consecutive_errors = 0
        if job is None:
            self._sleep_with_stop(self.polling.idle_sleep_seconds)
            return
        self.process_job(job)

    def process_job(self, job: Job) -> None:
        self.state = OrchestratorState.PROCESSING
        with self._lock:
            self._current_job = job
        bind_job(job.id)
        workspace: Workspace | None = None
        try:
            try:
                self.gateway.mark_running(job.id)
                run_ignoring_errors(
                    "Job claimed event",
                    self.gateway.send_status_event,
                    job.id,
                    "job_claimed",
                    f"Agent claimed job: {job.task_title}",
                )
                self.heartbeat.start(job.id)
                workspace = self._prepare_workspace(job)
                result = self.executor.execute(
                    job,
                    workspace.path if workspace is not None else None,
                    self._progress_callback(job),
                )
            except Exception as error:  # noqa: BLE001
                failure = JobFailure.from_exception(error)
                logger.error("Job #%d failed: %s", job.id, failure.message)
                self._report_failed(job, failure)
            else:
                if workspace is not None and not result.branch_name:
                    result = dataclasses.replace(result, branch_name=workspace.branch)
                self._report_completed(job, result)
        finally:
            if workspace is not None and self.worktrees is not None:
                self.worktrees.remove(job)
            clear_job_context()
            with self._lock:
                self._current_job = None
            if not self._stop_event.is_set():
                self.state = OrchestratorState.IDLE

    def stop(self, reason: str = "shutdown requested") -> None:
        """Shut down: kill the executor, fail the in-flight job, schedule exit."""

        with self._lock:
            if self._stop_event.is_set():
                return
            self._stop_event.set()
            job = self._current_job
        self.state = OrchestratorState.SHUTTING_DOWN
        logger.warning("Shutting down agent: %s", reason)

        self.heartbeat.mark_completing()
        self.heartbeat.stop()
        run_ignoring_errors("Executor kill", self.executor.kill_current_process)
        if job is not None and self._claim_terminal_report(job.id):
            logger.warning("Marking job #%d as failed due to shutdown", job.id)
            self.gateway.mark_failed(
                job.id,
                JobFailure(
                    SHUTDOWN_FAILURE_MESSAGE,
                    kind=FailureKind.EXECUTION_FAILURE,
                    category="agent_shutdown",
                ),
            )

        self._exit_timer = threading.Timer(
            self.polling.shutdown_grace_seconds,
            self._exit_process,
            args=(0,),
        )
        self._exit_timer.daemon = True
        self._exit_timer.start()

    def _prepare_workspace(self, job: Job) -> Workspace | None:
        if job.job_type != JobType.CODE_EXECUTION or self.worktrees is None:
            return None
        workspace = self.worktrees.create(job)
        run_ignoring_errors(
            "Worktree metadata update",
            self.gateway.update_metadata,
            job.id,
            {"worktree_path": str(workspace.path), "branch_name": workspace.branch},
        )
        return workspace

    def _progress_callback(self, job: Job) -> Callable[[str], None]:
        throttle = self.throttle_factory()

        def on_progress(chunk: str) -> None:
            if throttle.should_throttle():
                return
            throttle.record_update()
            try:
                self.gateway.send_progress(job.id, chunk)
            except Exception as error:  # noqa: BLE001
                logger.debug("Progress update for job #%d dropped: %s", job.id, error)

        return on_progress

    def _report_completed(self, job: Job, result: ExecutionResult) -> None:
        self.heartbeat.mark_completing()
        self.heartbeat.stop()
        if not self._claim_terminal_report(job.id):
            logger.info("Job #%d already reported during shutdown", job.id)
            return
        try:
            self.gateway.mark_completed(job.id, result)
        except Exception as error:  # noqa: BLE001
            self.failure_window.record()
            logger.error("Could not report completion of job #%d: %s", job.id, error)
            self.gateway.mark_failed(
                job.id,
                JobFailure(
                    f"Failed to report job completion: {error}",
                    kind=FailureKind.TRANSPORT_FAILURE,
                ),
                result.output,
            )
            return
        logger.info("Job #%d completed successfully", job.id)

    def _report_failed(self, job: Job, failure: JobFailure) -> None:
        self.heartbeat.mark_completing()
        self.heartbeat.stop()
        if not self._claim_terminal_report(job.id):
            logger.info("Job #%d already reported during shutdown", job.id)
            return
        self.gateway.mark_failed(job.id, failure, failure.partial_output)

    def _claim_terminal_report(self, job_id: int) -> bool:
        with self._lock:
            if self._reported_job_id == job_id:
                return False
            self._reported_job_id = job_id
            return True

    def _handle_poll_error(self, error: Exception) -> None:
        self.consecutive_errors += 1
        self.failure_window.record()
        logger.error(
            "Error in poll loop (%d consecutive): %s",
            self.consecutive_errors,
            error,
        )
        if self.consecutive_errors >= self.polling.max_consecutive_errors:
            logger.error("Too many consecutive errors (%d)", self.consecutive_errors)
            self.stop(reason="too many consecutive errors")
            return
        if self.failure_window.should_shutdown():
            logger.error(
                "Too many failures in window (%d failures, %d expected requests)",
                self.failure_window.count(),
                self.failure_window.expected_requests(),
            )
            self.stop(reason="failure rate too high")
            return
        delay = self._compute_backoff_delay(self.consecutive_errors)
        logger.info("Backing off for %.0fs", delay)
        self._sleep_with_stop(delay)

    def _compute_backoff_delay(self, error_count: int) -> float:
        return min(
            self.polling.error_backoff_max_seconds,
            self.polling.error_backoff_base_seconds * (2 ** max(error_count - 1, 0)),
        )

    def _respect_request_spacing(self) -> None:
        if self._last_claim_at is None:
            return
        elapsed = self._clock() - self._last_claim_at
        remaining = self.polling.min_request_spacing_seconds - elapsed
        if remaining > 0:
            self._sleep_with_stop(remaining)

    def _sleep_with_stop(self, seconds: float) -> None:
        if seconds > 0:
            self._stop_event.wait(seconds)

    def _stop_in_background(self, reason: str) -> None:
        threading.Thread(
            target=self.stop,
            kwargs={"reason": reason},
            name="agent-shutdown",
            daemon=True,
        ).start()

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if not hasattr(signal, "SIGINT"):
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            # The main thread may be inside an HTTP call; report from another thread.
            self._stop_in_background(f"received {name}")

        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
            yield
        except ValueError:
            # Signal handlers can only be installed in main thread.
            yield
        finally:
            try:
                signal.signal(signal.SIGINT, original_sigint)
                signal.signal(signal.SIGTERM, original_sigterm)
            except ValueError:
                pass

    @contextmanager
    def _fault_hooks(self) -> Iterator[None]:
        original_excepthook = sys.excepthook
        original_thread_excepthook = threading.excepthook

        def _excepthook(
            exc_type: type[BaseException],
            exc: BaseException,
            tb: TracebackType | None,
        ) -> None:
            logger.critical("Uncaught exception", exc_info=(exc_type, exc, tb))
            self.stop(reason="uncaught exception")

        def _thread_excepthook(args: threading.ExceptHookArgs) -> None:
            thread_name = args.thread.name if args.thread is not None else "unknown"
            logger.critical(
                "Uncaught exception in thread %s",
                thread_name,
                exc_info=(args.exc_type, args.exc_value, args.exc_traceback),  # type: ignore[arg-type]
            )
            self._stop_in_background(f"uncaught exception in thread {thread_name}")

        sys.excepthook = _excepthook
        threading.excepthook = _thread_excepthook
        try:
            yield
        finally:
            sys.excepthook = original_excepthook
            threading.excepthook = original_thread_excepthook
