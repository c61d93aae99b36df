"""Exception hierarchy for the agent runtime."""

from __future__ import annotations

REDACTED = "[REDACTED]"


def redact(text: str, secret: str | None) -> str:
    """Replace every occurrence of ``secret`` in ``text``."""

    if not secret:
        return text
    return text.replace(secret, REDACTED)


class GatewayError(RuntimeError):
    """Coordinator request failed (transport or server side)."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class GatewayPermissionError(GatewayError):
    """Token is valid HTTP-wise but lacks agent permission; not retryable."""


class JobValidationError(ValueError):
    """Claimed job payload violates the job data model."""


class WorkspaceError(RuntimeError):
    """Worktree could not be created."""


class GitCommandError(WorkspaceError):
    """Git invocation exited non-zero or timed out."""

    def __init__(self, message: str, *, output: str = "", timed_out: bool = False) -> None:
        super().__init__(message)
        self.output = output
        self.timed_out = timed_out
