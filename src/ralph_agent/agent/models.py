"""Domain models for claimed jobs and their execution."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any

from ralph_agent.agent.errors import JobValidationError


class JobType(str, Enum):
    """Closed set of job kinds the agent knows how to execute."""

    PLAN_GENERATION = "plan_generation"
    CODE_EXECUTION = "code_execution"


class JobStatus(str, Enum):
    """Coordinator-visible job lifecycle states."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class FailureKind(str, Enum):
    """Normalized failure kinds reported with a failed job."""

    TIMEOUT = "timeout"
    EXECUTION_FAILURE = "execution_failure"
    VALIDATION_FAILURE = "validation_failure"
    TRANSPORT_FAILURE = "transport_failure"


@dataclass(frozen=True, slots=True)
class Project:
    """Project the job operates on."""

    system_path: str | None
    name: str | None = None


@dataclass(frozen=True, slots=True)
class Job:
    """Unit of work claimed from the coordinator. Never mutated locally."""

    id: int
    job_type: JobType
    task_title: str
    prompt: str | None = None
    project: Project | None = None
    task_id: int | None = None

    @property
    def project_root(self) -> Path | None:
        if self.project is None or not self.project.system_path:
            return None
        return Path(self.project.system_path)


@dataclass(frozen=True, slots=True)
class Workspace:
    """Isolated worktree dedicated to one job."""

    project_root: Path
    path: Path
    branch: str


@dataclass(slots=True)
class ExecutionResult:
    """Executor outcome reported with a completed job."""

    output: str
    execution_time_ms: int
    summary: str | None = None
    branch_name: str | None = None
    prd_content: str | None = None


def parse_job(payload: object) -> Job:  # noqa: C901, PLR0912
    """Build a ``Job`` from a coordinator payload or raise ``JobValidationError``."""

    if not isinstance(payload, Mapping):
        raise JobValidationError("Job is null or not an object")

    job_id = payload.get("id")
    if isinstance(job_id, bool) or not isinstance(job_id, int) or job_id <= 0:
        raise JobValidationError("Job ID is missing or invalid")

    raw_type = payload.get("job_type")
    if not isinstance(raw_type, str) or not raw_type.strip():
        raise JobValidationError("Job type is missing or invalid")
    try:
        job_type = JobType(raw_type)
    except ValueError as error:
        raise JobValidationError(f"Unknown job type: {raw_type}") from error

    task_title = payload.get("task_title")
    if not isinstance(task_title, str) or not task_title.strip():
        raise JobValidationError("Task title is missing or invalid")

    prompt = payload.get("prompt")
    if prompt is not None and not isinstance(prompt, str):
        raise JobValidationError("Prompt must be a string or null")

    task_id = payload.get("task_id")
    if task_id is not None and (isinstance(task_id, bool) or not isinstance(task_id, int)):
        raise JobValidationError("Task ID must be an integer if provided")

    raw_project = payload.get("project")
    project: Project | None = None
    if job_type == JobType.CODE_EXECUTION:
        if not isinstance(raw_project, Mapping):
            raise JobValidationError("Project object is required for code_execution jobs")
        system_path = raw_project.get("system_path")
        if not isinstance(system_path, str) or not system_path.strip():
            raise JobValidationError("Project system_path is missing or invalid")
        project = Project(system_path=system_path, name=_optional_str(raw_project.get("name")))
    elif raw_project is not None:
        if not isinstance(raw_project, Mapping):
            raise JobValidationError("Project must be an object if provided")
        system_path = raw_project.get("system_path")
        if system_path is not None and not isinstance(system_path, str):
            raise JobValidationError("Project system_path must be a string if provided")
        project = Project(system_path=system_path, name=_optional_str(raw_project.get("name")))

    return Job(
        id=job_id,
        job_type=job_type,
        task_title=task_title,
        prompt=prompt,
        project=project,
        task_id=task_id,
    )


def job_log_details(job: Job) -> dict[str, Any]:
    """Compact job description for log lines; never includes the prompt text."""

    return {
        "id": job.id,
        "job_type": job.job_type.value,
        "task_title": job.task_title,
        "project_name": job.project.name if job.project else None,
        "has_prompt": bool(job.prompt),
        "prompt_length": len(job.prompt or ""),
    }


def _optional_str(value: object) -> str | None:
    return value if isinstance(value, str) else None
