"""Executor interface used by the orchestrator."""

from __future__ import annotations

from collections.abc import Callable
from pathlib import Path
from typing import Protocol

from ralph_agent.agent.models import ExecutionResult, Job

ProgressCallback = Callable[[str], None]


class JobExecutor(Protocol):
    """Performs the actual work of a job.

    Raises ``JobFailure`` (or any exception, which the orchestrator wraps)
    when the job cannot be completed.
    """

    def execute(
        self,
        job: Job,
        workspace_path: Path | None,
        on_progress: ProgressCallback,
    ) -> ExecutionResult:
        """Run the job and return its result."""

    def kill_current_process(self) -> None:
        """Terminate any running child process; no-op when idle."""
