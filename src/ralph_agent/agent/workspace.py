"""Per-job git worktree lifecycle."""

from __future__ import annotations

import logging
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from ralph_agent.agent.errors import GitCommandError, WorkspaceError
from ralph_agent.agent.models import Job, Workspace

logger = logging.getLogger(__name__)

DEFAULT_WORKTREE_DIR = ".ralph-worktrees"
DEFAULT_BRANCH_PREFIX = "ralph"
VERSION_CHECK_TIMEOUT_SECONDS = 5.0
WORKTREE_TIMEOUT_SECONDS = 30.0


@dataclass(slots=True)
class GitResult:
    """Captured output of a successful git invocation."""

    stdout: str
    stderr: str


class CommandRunner(Protocol):
    """Runs git with an explicit argument vector."""

    def run(self, args: list[str], *, cwd: Path, timeout: float) -> GitResult:
        """Run ``git <args>`` in ``cwd``; raise ``GitCommandError`` on failure."""


class GitRunner:
    """Invoke git as a subprocess, never through a shell."""

    def __init__(self, executable: str = "git") -> None:
        self.executable = executable

    def run(self, args: list[str], *, cwd: Path, timeout: float) -> GitResult:
        argv = [self.executable, *args]
        try:
            completed = subprocess.run(  # noqa: S603
                argv,
                cwd=cwd,
                check=False,
                capture_output=True,
                text=True,
                timeout=timeout,
            )
        except subprocess.TimeoutExpired as error:
            raise GitCommandError(
                f"Git command timed out after {timeout}s: git {' '.join(args)}",
                output=_combined(error.stdout, error.stderr),
                timed_out=True,
            ) from error
        except OSError as error:
            raise GitCommandError(f"Failed to execute git: {error}") from error

        if completed.returncode != 0:
            output = _combined(completed.stdout, completed.stderr)
            raise GitCommandError(
                f"Git command failed (exit code {completed.returncode}): {output.strip()}",
                output=output,
            )
        return GitResult(stdout=completed.stdout, stderr=completed.stderr)


class WorktreeManager:
    """Creates and removes the isolated worktree of a job.

    Path and branch are pure functions of the project root, job id and
    task id, so they can be recomputed for cleanup after a restart.
    """

    def __init__(
        self,
        *,
        runner: CommandRunner | None = None,
        dir_name: str = DEFAULT_WORKTREE_DIR,
        branch_prefix: str = DEFAULT_BRANCH_PREFIX,
        create_timeout_seconds: float = WORKTREE_TIMEOUT_SECONDS,
        version_check_timeout_seconds: float = VERSION_CHECK_TIMEOUT_SECONDS,
    ) -> None:
        self.runner = runner or GitRunner()
        self.dir_name = dir_name
        self.branch_prefix = branch_prefix
        self.create_timeout_seconds = create_timeout_seconds
        self.version_check_timeout_seconds = version_check_timeout_seconds

    def path_for(self, job: Job) -> Path:
        return _project_root(job) / self.dir_name / f"job-{job.id}"

    def branch_for(self, job: Job) -> str:
        return f"{self.branch_prefix}/ticket-{job.task_id}/job-{job.id}"

    def workspace_for(self, job: Job) -> Workspace:
        return Workspace(
            project_root=_project_root(job),
            path=self.path_for(job),
            branch=self.branch_for(job),
        )

    def create(self, job: Job) -> Workspace:
        workspace = self.workspace_for(job)
        logger.info(
            "Creating worktree for job %d at %s on branch %s",
            job.id,
            workspace.path,
            workspace.branch,
        )
        try:
            self.runner.run(
                ["--version"],
                cwd=workspace.project_root,
                timeout=self.version_check_timeout_seconds,
            )
            if workspace.path.exists():
                logger.warning(
                    "Worktree already exists at %s, removing stale worktree",
                    workspace.path,
                )
                self.remove(job)
            self.runner.run(
                ["worktree", "add", "-B", workspace.branch, str(workspace.path), "HEAD"],
                cwd=workspace.project_root,
                timeout=self.create_timeout_seconds,
            )
        except GitCommandError as error:
            logger.error("Failed to create worktree for job %d: %s", job.id, error)
            raise WorkspaceError(f"Failed to create worktree: {error}") from error
        logger.info("Created worktree: %s", workspace.path)
        return workspace

    def remove(self, job: Job) -> None:
        """Force-remove the worktree; failures are logged, never raised.

        The branch stays in the repository for inspection.
        """

        try:
            workspace = self.workspace_for(job)
        except WorkspaceError as error:
            logger.error("Cannot resolve worktree for job %d: %s", job.id, error)
            return
        try:
            self.runner.run(
                ["worktree", "remove", str(workspace.path), "--force"],
                cwd=workspace.project_root,
                timeout=self.create_timeout_seconds,
            )
        except GitCommandError as error:
            logger.error("Failed to remove worktree for job %d: %s", job.id, error)
            return
        logger.info("Removed worktree: %s", workspace.path)


def _project_root(job: Job) -> Path:
    root = job.project_root
    if root is None:
        raise WorkspaceError(f"Job {job.id} has no project system_path for a worktree.")
    return root


def _combined(stdout: str | bytes | None, stderr: str | bytes | None) -> str:
    parts: list[str] = []
    for value in (stdout, stderr):
        if not value:
            continue
        parts.append(value.decode("utf-8", errors="replace") if isinstance(value, bytes) else value)
    return "\n".join(parts)
