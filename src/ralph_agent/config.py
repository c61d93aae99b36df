"""Runtime configuration for the worker agent."""

from __future__ import annotations

import os
import shlex
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse

from ralph_agent.credentials import CredentialStore

DEFAULT_API_URL = "https://app.ralphblaster.com"
DEFAULT_EXECUTOR_COMMAND = "claude -p --dangerously-skip-permissions --output-format text"


@dataclass(slots=True)
class ApiSettings:
    """Coordinator connection settings."""

    url: str = DEFAULT_API_URL
    token: str | None = None
    agent_id: str = "agent-default"
    request_timeout_seconds: float = 15.0
    long_poll_server_timeout_seconds: int = 30
    long_poll_buffer_seconds: float = 5.0
    max_retries: int = 3


@dataclass(slots=True)
class PollingSettings:
    """Claim loop pacing, backoff, and circuit-breaker settings."""

    min_request_spacing_seconds: float = 1.0
    idle_sleep_seconds: float = 1.0
    error_backoff_base_seconds: float = 5.0
    error_backoff_max_seconds: float = 60.0
    max_consecutive_errors: int = 10
    failure_window_seconds: float = 60.0
    failure_window_request_interval_seconds: float = 5.0
    shutdown_grace_seconds: float = 2.0


@dataclass(slots=True)
class HeartbeatSettings:
    """Lease renewal settings."""

    interval_seconds: float = 60.0


@dataclass(slots=True)
class ExecutorSettings:
    """Coding CLI invocation settings."""

    command: tuple[str, ...] = tuple(shlex.split(DEFAULT_EXECUTOR_COMMAND))
    timeout_seconds: int = 3_600
    kill_grace_seconds: float = 2.0


@dataclass(slots=True)
class WorkspaceSettings:
    """Per-job git worktree settings."""

    enabled: bool = True
    dir_name: str = ".ralph-worktrees"
    branch_prefix: str = "ralph"
    create_timeout_seconds: float = 30.0
    version_check_timeout_seconds: float = 5.0


@dataclass(slots=True)
class LoggingSettings:
    """Log output settings."""

    level: str = "INFO"


@dataclass(slots=True)
class Settings:
    """Agent settings grouped by concern."""

    api: ApiSettings = field(default_factory=ApiSettings)
    polling: PollingSettings = field(default_factory=PollingSettings)
    heartbeat: HeartbeatSettings = field(default_factory=HeartbeatSettings)
    executor: ExecutorSettings = field(default_factory=ExecutorSettings)
    workspace: WorkspaceSettings = field(default_factory=WorkspaceSettings)
    logging: LoggingSettings = field(default_factory=LoggingSettings)

    @classmethod
    def from_env(
        cls,
        *,
        credentials_path: Path | None = None,
        token: str | None = None,
        api_url: str | None = None,
    ) -> Settings:
        """Load settings: explicit args, then environment, then credential file."""

        stored = CredentialStore(credentials_path).load()
        stored_token = stored.token if stored is not None else None
        stored_url = stored.url if stored is not None else None

        return cls(
            api=ApiSettings(
                url=(api_url or os.getenv("RALPH_API_URL") or stored_url or DEFAULT_API_URL),
                token=token or os.getenv("RALPH_API_TOKEN") or stored_token,
                agent_id=os.getenv("RALPH_AGENT_ID", "agent-default"),
                request_timeout_seconds=float(
                    os.getenv("RALPH_REQUEST_TIMEOUT_SECONDS", "15.0"),
                ),
                long_poll_server_timeout_seconds=int(
                    os.getenv("RALPH_LONG_POLL_TIMEOUT_SECONDS", "30"),
                ),
                long_poll_buffer_seconds=float(
                    os.getenv("RALPH_LONG_POLL_BUFFER_SECONDS", "5.0"),
                ),
                max_retries=int(os.getenv("RALPH_MAX_RETRIES", "3")),
            ),
            polling=PollingSettings(
                min_request_spacing_seconds=float(
                    os.getenv("RALPH_MIN_REQUEST_SPACING_SECONDS", "1.0"),
                ),
                idle_sleep_seconds=float(os.getenv("RALPH_IDLE_SLEEP_SECONDS", "1.0")),
                error_backoff_base_seconds=float(
                    os.getenv("RALPH_ERROR_BACKOFF_BASE_SECONDS", "5.0"),
                ),
                error_backoff_max_seconds=float(
                    os.getenv("RALPH_ERROR_BACKOFF_MAX_SECONDS", "60.0"),
                ),
                max_consecutive_errors=int(os.getenv("RALPH_MAX_CONSECUTIVE_ERRORS", "10")),
                failure_window_seconds=float(
                    os.getenv("RALPH_FAILURE_WINDOW_SECONDS", "60.0"),
                ),
                failure_window_request_interval_seconds=float(
                    os.getenv("RALPH_FAILURE_WINDOW_REQUEST_INTERVAL_SECONDS", "5.0"),
                ),
                shutdown_grace_seconds=float(
                    os.getenv("RALPH_SHUTDOWN_GRACE_SECONDS", "2.0"),
                ),
            ),
            heartbeat=HeartbeatSettings(
                interval_seconds=float(os.getenv("RALPH_HEARTBEAT_INTERVAL_SECONDS", "60.0")),
            ),
            executor=ExecutorSettings(
                command=tuple(
                    shlex.split(os.getenv("RALPH_EXECUTOR_COMMAND", DEFAULT_EXECUTOR_COMMAND)),
                ),
                timeout_seconds=int(os.getenv("RALPH_EXECUTOR_TIMEOUT_SECONDS", "3600")),
                kill_grace_seconds=float(os.getenv("RALPH_EXECUTOR_KILL_GRACE_SECONDS", "2.0")),
            ),
            workspace=WorkspaceSettings(
                enabled=_env_bool("RALPH_USE_WORKTREES", default=True),
                dir_name=os.getenv("RALPH_WORKTREE_DIR", ".ralph-worktrees"),
                branch_prefix=os.getenv("RALPH_BRANCH_PREFIX", "ralph"),
            ),
            logging=LoggingSettings(
                level=os.getenv("RALPH_LOG_LEVEL", "INFO"),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for values the agent cannot run with."""

        if not self.api.token:
            raise ValueError(
                "RALPH_API_TOKEN is required. "
                'Run "ralph-agent init --token=YOUR_TOKEN" to save it, '
                "or set the RALPH_API_TOKEN environment variable.",
            )
        validate_api_url(self.api.url)
        if self.api.long_poll_server_timeout_seconds <= 0:
            raise ValueError("RALPH_LONG_POLL_TIMEOUT_SECONDS must be > 0.")
        if self.api.long_poll_buffer_seconds <= 0:
            raise ValueError("RALPH_LONG_POLL_BUFFER_SECONDS must be > 0.")
        if self.api.max_retries < 0:
            raise ValueError("RALPH_MAX_RETRIES must be >= 0.")
        if self.polling.min_request_spacing_seconds < 0:
            raise ValueError("RALPH_MIN_REQUEST_SPACING_SECONDS must be >= 0.")
        if self.polling.max_consecutive_errors <= 0:
            raise ValueError("RALPH_MAX_CONSECUTIVE_ERRORS must be > 0.")
        if self.polling.failure_window_request_interval_seconds <= 0:
            raise ValueError("RALPH_FAILURE_WINDOW_REQUEST_INTERVAL_SECONDS must be > 0.")
        if self.heartbeat.interval_seconds <= 0:
            raise ValueError("RALPH_HEARTBEAT_INTERVAL_SECONDS must be > 0.")
        if not self.executor.command:
            raise ValueError("RALPH_EXECUTOR_COMMAND must not be empty.")
        if self.executor.timeout_seconds <= 0:
            raise ValueError("RALPH_EXECUTOR_TIMEOUT_SECONDS must be > 0.")


def validate_api_url(value: str) -> None:
    parsed = urlparse(value)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ValueError(
            "Invalid API URL: "
            f"{value!r}. Expected an absolute URL with http:// or https:// scheme.",
        )


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
