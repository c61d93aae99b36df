"""Subprocess-based executor running the coding CLI inside the job workspace."""

from __future__ import annotations

import logging
import os
import queue
import re
import subprocess
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import IO

from ralph_agent.agent.executor.base import ProgressCallback
from ralph_agent.agent.failures import JobFailure, categorize_execution_failure
from ralph_agent.agent.models import ExecutionResult, FailureKind, Job, JobType

logger = logging.getLogger(__name__)

MAX_PROMPT_CHARS = 500_000
MAX_SUMMARY_CHARS = 500
MAX_STDERR_DETAILS_CHARS = 2_000
_POLL_SECONDS = 0.1
_STREAM_JOIN_SECONDS = 2.0
_EOF = object()

_DANGEROUS_PROMPT_PATTERNS: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"rm\s+-rf\s+/", re.IGNORECASE), "dangerous deletion command"),
    (re.compile(r"rm\s+-rf\s+~", re.IGNORECASE), "dangerous home directory deletion"),
    (re.compile(r"/etc/passwd", re.IGNORECASE), "system file access"),
    (re.compile(r"/etc/shadow", re.IGNORECASE), "password file access"),
    (re.compile(r"curl.*\|\s*sh", re.IGNORECASE), "remote code execution pattern"),
    (re.compile(r"wget.*\|\s*sh", re.IGNORECASE), "remote code execution pattern"),
    (re.compile(r"base64.*decode.*eval", re.IGNORECASE), "obfuscated code execution"),
    (re.compile(r"\.ssh/id_rsa", re.IGNORECASE), "SSH key access"),
    (re.compile(r"\.aws/credentials", re.IGNORECASE), "AWS credentials access"),
)


@dataclass(slots=True)
class _StreamOutcome:
    stdout: str
    stderr: str
    exit_code: int | None
    timed_out: bool


class ClaudeCliExecutor:
    """Run the configured CLI command with the job prompt on stdin.

    Stdout is streamed line by line to the progress callback; stderr is
    collected for failure categorization.
    """

    def __init__(
        self,
        *,
        command: tuple[str, ...],
        timeout_seconds: int = 3_600,
        kill_grace_seconds: float = 2.0,
    ) -> None:
        if not command:
            raise ValueError("Executor command must not be empty.")
        self.command = command
        self.timeout_seconds = timeout_seconds
        self.kill_grace_seconds = kill_grace_seconds
        self._process: subprocess.Popen[str] | None = None
        self._process_lock = threading.Lock()
        self._kill_requested = False

    def execute(
        self,
        job: Job,
        workspace_path: Path | None,
        on_progress: ProgressCallback,
    ) -> ExecutionResult:
        started = time.monotonic()
        prompt = build_prompt(job)
        validate_prompt(prompt)
        cwd = workspace_path or job.project_root or Path.cwd()
        logger.info("Executing %s job #%d in %s", job.job_type.value, job.id, cwd)

        env = os.environ.copy()
        env["RALPH_JOB_ID"] = str(job.id)
        env["RALPH_JOB_TYPE"] = job.job_type.value
        if workspace_path is not None:
            env["RALPH_WORKTREE_PATH"] = str(workspace_path)

        self._kill_requested = False
        try:
            process = subprocess.Popen(  # noqa: S603
                list(self.command),
                cwd=cwd,
                env=env,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
            )
        except FileNotFoundError as error:
            category = categorize_execution_failure(stderr="", exit_code=None, not_found=True)
            raise JobFailure(
                category.user_message,
                kind=FailureKind.EXECUTION_FAILURE,
                category=category.category,
                technical_details=f"Command not found: {self.command[0]}",
            ) from error
        except OSError as error:
            raise JobFailure(
                f"CLI failed to start: {error}",
                kind=FailureKind.EXECUTION_FAILURE,
                category="execution_error",
            ) from error

        with self._process_lock:
            self._process = process
        try:
            outcome = self._stream(process, prompt=prompt, on_progress=on_progress)
        finally:
            with self._process_lock:
                self._process = None

        execution_time_ms = int((time.monotonic() - started) * 1000)
        if self._kill_requested:
            raise JobFailure(
                "Execution interrupted by agent shutdown",
                kind=FailureKind.EXECUTION_FAILURE,
                category="agent_shutdown",
                partial_output=outcome.stdout or None,
            )
        if outcome.timed_out:
            category = categorize_execution_failure(
                stderr=outcome.stderr,
                exit_code=outcome.exit_code,
                timed_out=True,
            )
            raise JobFailure(
                f"Job execution timed out after {self.timeout_seconds}s",
                kind=FailureKind.TIMEOUT,
                category=category.category,
                partial_output=outcome.stdout or None,
            )
        if outcome.exit_code != 0:
            category = categorize_execution_failure(
                stderr=outcome.stderr,
                exit_code=outcome.exit_code,
            )
            raise JobFailure(
                category.user_message,
                kind=FailureKind.EXECUTION_FAILURE,
                category=category.category,
                partial_output=outcome.stdout or None,
                technical_details=(
                    f"Exit code: {outcome.exit_code}\n"
                    f"Stderr: {outcome.stderr[-MAX_STDERR_DETAILS_CHARS:]}"
                ),
            )

        logger.info("Job #%d finished in %dms", job.id, execution_time_ms)
        return ExecutionResult(
            output=outcome.stdout,
            execution_time_ms=execution_time_ms,
            summary=_summarize(outcome.stdout),
            prd_content=outcome.stdout if job.job_type == JobType.PLAN_GENERATION else None,
        )

    def kill_current_process(self) -> None:
        with self._process_lock:
            process = self._process
        if process is None or process.poll() is not None:
            return
        self._kill_requested = True
        logger.warning("Killing current CLI process due to shutdown")
        _terminate_process(process, grace_seconds=self.kill_grace_seconds)

    def _stream(
        self,
        process: subprocess.Popen[str],
        *,
        prompt: str,
        on_progress: ProgressCallback,
    ) -> _StreamOutcome:
        lines: queue.Queue[object] = queue.Queue()
        stderr_parts: list[str] = []
        threads = [
            threading.Thread(target=_write_stdin, args=(process.stdin, prompt), daemon=True),
            threading.Thread(target=_pump_lines, args=(process.stdout, lines), daemon=True),
            threading.Thread(target=_collect, args=(process.stderr, stderr_parts), daemon=True),
        ]
        for thread in threads:
            thread.start()

        stdout_parts: list[str] = []
        deadline = time.monotonic() + self.timeout_seconds
        timed_out = False
        while True:
            try:
                item = lines.get(timeout=_POLL_SECONDS)
            except queue.Empty:
                item = None
            if item is _EOF:
                break
            if isinstance(item, str):
                stdout_parts.append(item)
                _emit_progress(on_progress, item)
            if time.monotonic() >= deadline:
                timed_out = True
                _terminate_process(process, grace_seconds=self.kill_grace_seconds)
                break

        try:
            exit_code: int | None = process.wait(timeout=self.kill_grace_seconds + 5)
        except subprocess.TimeoutExpired:
            _terminate_process(process, grace_seconds=self.kill_grace_seconds)
            exit_code = process.poll()
        for thread in threads:
            thread.join(timeout=_STREAM_JOIN_SECONDS)

        return _StreamOutcome(
            stdout="".join(stdout_parts),
            stderr="".join(stderr_parts),
            exit_code=exit_code,
            timed_out=timed_out,
        )


def build_prompt(job: Job) -> str:
    """Prompt sent to the CLI; falls back to the task title for legacy jobs."""

    if job.prompt and job.prompt.strip():
        return job.prompt
    if job.job_type == JobType.PLAN_GENERATION:
        return f"Create a detailed implementation plan for: {job.task_title}"
    return f"Implement the following task: {job.task_title}"


def validate_prompt(prompt: str) -> None:
    """Reject empty, oversized, or obviously destructive prompts."""

    if not prompt or not prompt.strip():
        raise JobFailure(
            "Prompt must be a non-empty string",
            kind=FailureKind.VALIDATION_FAILURE,
            category="invalid_prompt",
        )
    if len(prompt) > MAX_PROMPT_CHARS:
        raise JobFailure(
            f"Prompt exceeds maximum length of {MAX_PROMPT_CHARS} characters",
            kind=FailureKind.VALIDATION_FAILURE,
            category="invalid_prompt",
        )
    for pattern, description in _DANGEROUS_PROMPT_PATTERNS:
        if pattern.search(prompt):
            logger.error("Prompt validation failed: contains %s", description)
            raise JobFailure(
                f"Prompt contains potentially dangerous content: {description}",
                kind=FailureKind.VALIDATION_FAILURE,
                category="invalid_prompt",
            )


def _summarize(output: str) -> str | None:
    for line in reversed(output.splitlines()):
        text = line.strip()
        if text:
            return text[:MAX_SUMMARY_CHARS]
    return None


def _emit_progress(on_progress: ProgressCallback, chunk: str) -> None:
    try:
        on_progress(chunk)
    except Exception as error:  # noqa: BLE001
        logger.debug("Progress callback failed: %s", error)


def _write_stdin(handle: IO[str] | None, prompt: str) -> None:
    if handle is None:
        return
    try:
        handle.write(prompt)
        handle.close()
    except (BrokenPipeError, OSError, ValueError):
        return


def _pump_lines(handle: IO[str] | None, sink: queue.Queue[object]) -> None:
    try:
        if handle is not None:
            for line in handle:
                sink.put(line)
    except (OSError, ValueError):
        pass
    finally:
        sink.put(_EOF)


def _collect(handle: IO[str] | None, sink: list[str]) -> None:
    if handle is None:
        return
    try:
        for line in handle:
            sink.append(line)
    except (OSError, ValueError):
        return


def _terminate_process(process: subprocess.Popen[str], *, grace_seconds: float) -> None:
    try:
        process.terminate()
    except OSError:
        return
    try:
        process.wait(timeout=grace_seconds)
    except subprocess.TimeoutExpired:
        try:
            process.kill()
        except OSError:
            return
        process.wait(timeout=grace_seconds)
