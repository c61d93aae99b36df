"""Tagged job failures and deterministic executor failure categorization."""

from __future__ import annotations

from dataclasses import dataclass

from ralph_agent.agent.errors import GatewayError, WorkspaceError
from ralph_agent.agent.models import FailureKind

FAILURE_CATEGORIZER_VERSION = 1

_NOT_AUTHENTICATED_PATTERNS: tuple[str, ...] = (
    "not authenticated",
    "authentication failed",
    "please log in",
    "invalid api key",
)
_OUT_OF_TOKENS_PATTERNS: tuple[str, ...] = (
    "token limit exceeded",
    "quota exceeded",
    "insufficient credits",
    "usage limit",
)
_RATE_LIMIT_PATTERNS: tuple[str, ...] = (
    "rate limit",
    "too many requests",
    "429",
)
_PERMISSION_PATTERNS: tuple[str, ...] = (
    "permission denied",
    "eacces",
)
_NETWORK_PATTERNS: tuple[str, ...] = (
    "connection refused",
    "connection reset",
    "could not resolve host",
    "network error",
    "etimedout",
    "enotfound",
)


class JobFailure(Exception):
    """Job-terminating failure tagged with a kind and optional category."""

    def __init__(  # noqa: PLR0913
        self,
        message: str,
        *,
        kind: FailureKind = FailureKind.EXECUTION_FAILURE,
        category: str | None = None,
        partial_output: str | None = None,
        technical_details: str | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.kind = kind
        self.category = category
        self.partial_output = partial_output
        self.technical_details = technical_details

    @classmethod
    def from_exception(cls, error: BaseException) -> JobFailure:
        """Wrap an arbitrary exception raised while processing a job."""

        if isinstance(error, JobFailure):
            return error
        if isinstance(error, GatewayError):
            return cls(str(error), kind=FailureKind.TRANSPORT_FAILURE, category="network_error")
        if isinstance(error, WorkspaceError):
            return cls(
                str(error),
                kind=FailureKind.EXECUTION_FAILURE,
                category="workspace_error",
            )
        if isinstance(error, TimeoutError):
            return cls(
                str(error) or "Job execution timed out",
                kind=FailureKind.TIMEOUT,
                category="execution_timeout",
            )
        return cls(str(error) or type(error).__name__, kind=FailureKind.EXECUTION_FAILURE)

    def __repr__(self) -> str:
        return (
            f"JobFailure(kind={self.kind.value!r}, category={self.category!r}, "
            f"message={self.message!r})"
        )


@dataclass(slots=True)
class FailureCategory:
    """Categorization of a failed executor run."""

    category: str
    user_message: str
    matched_pattern: str | None


def categorize_execution_failure(
    *,
    stderr: str,
    exit_code: int | None,
    timed_out: bool = False,
    not_found: bool = False,
) -> FailureCategory:
    """Map a failed CLI run to a user-facing category."""

    if not_found:
        return FailureCategory(
            category="claude_not_installed",
            user_message="Claude Code CLI is not installed or not found in PATH",
            matched_pattern=None,
        )

    haystack = stderr.lower()

    pattern = _first_match(haystack, _NOT_AUTHENTICATED_PATTERNS)
    if pattern is not None:
        return FailureCategory(
            category="not_authenticated",
            user_message='Claude CLI is not authenticated. Please run "claude auth"',
            matched_pattern=pattern,
        )

    pattern = _first_match(haystack, _OUT_OF_TOKENS_PATTERNS)
    if pattern is not None:
        return FailureCategory(
            category="out_of_tokens",
            user_message="Claude API token limit has been exceeded",
            matched_pattern=pattern,
        )

    pattern = _first_match(haystack, _RATE_LIMIT_PATTERNS)
    if pattern is not None:
        return FailureCategory(
            category="rate_limited",
            user_message="Claude API rate limit reached. Please wait before retrying",
            matched_pattern=pattern,
        )

    pattern = _first_match(haystack, _PERMISSION_PATTERNS)
    if pattern is not None:
        return FailureCategory(
            category="permission_denied",
            user_message="Permission denied accessing project files or directories",
            matched_pattern=pattern,
        )

    if timed_out:
        return FailureCategory(
            category="execution_timeout",
            user_message="Job execution exceeded the maximum timeout",
            matched_pattern=None,
        )

    pattern = _first_match(haystack, _NETWORK_PATTERNS)
    if pattern is not None:
        return FailureCategory(
            category="network_error",
            user_message="Network error connecting to Claude API",
            matched_pattern=pattern,
        )

    if exit_code is not None and exit_code != 0:
        return FailureCategory(
            category="execution_error",
            user_message=f"Claude CLI execution failed with exit code {exit_code}",
            matched_pattern=None,
        )

    return FailureCategory(category="unknown", user_message="Unknown failure", matched_pattern=None)


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
