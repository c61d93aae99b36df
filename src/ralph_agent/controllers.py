"""Controllers for agent CLI commands."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

import httpx

from ralph_agent.agent.executor import ClaudeCliExecutor
from ralph_agent.agent.gateway import JobGateway
from ralph_agent.agent.heartbeat import HeartbeatController
from ralph_agent.agent.orchestrator import JobOrchestrator
from ralph_agent.agent.workspace import WorktreeManager
from ralph_agent.config import Settings, validate_api_url
from ralph_agent.context import AgentContext
from ralph_agent.credentials import CredentialStore
from ralph_agent.logs import configure_logging

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class AgentRunCommand:
    """CLI input for running the agent."""

    token: str | None = None
    api_url: str | None = None
    log_level: str | None = None
    use_worktrees: bool | None = None


@dataclass(slots=True)
class AgentInitCommand:
    """CLI input for saving credentials."""

    token: str
    api_url: str | None = None


class AgentCliController:
    """Builds the agent from settings and runs CLI commands."""

    def __init__(
        self,
        *,
        credentials_path: Path | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.credentials_path = credentials_path
        self.transport = transport

    def load_settings(self, command: AgentRunCommand) -> Settings:
        settings = Settings.from_env(
            credentials_path=self.credentials_path,
            token=command.token,
            api_url=command.api_url,
        )
        if command.log_level:
            settings.logging.level = command.log_level
        if command.use_worktrees is not None:
            settings.workspace.enabled = command.use_worktrees
        settings.validate()
        return settings

    def build_gateway(self, settings: Settings) -> JobGateway:
        return JobGateway(context=AgentContext(settings=settings), transport=self.transport)

    def build_orchestrator(self, settings: Settings, gateway: JobGateway) -> JobOrchestrator:
        worktrees = (
            WorktreeManager(
                dir_name=settings.workspace.dir_name,
                branch_prefix=settings.workspace.branch_prefix,
                create_timeout_seconds=settings.workspace.create_timeout_seconds,
                version_check_timeout_seconds=settings.workspace.version_check_timeout_seconds,
            )
            if settings.workspace.enabled
            else None
        )
        return JobOrchestrator(
            gateway=gateway,
            executor=ClaudeCliExecutor(
                command=settings.executor.command,
                timeout_seconds=settings.executor.timeout_seconds,
                kill_grace_seconds=settings.executor.kill_grace_seconds,
            ),
            heartbeat=HeartbeatController(
                gateway=gateway,
                interval_seconds=settings.heartbeat.interval_seconds,
            ),
            worktrees=worktrees,
            polling=settings.polling,
        )

    def run_agent(self, command: AgentRunCommand) -> list[str]:
        settings = self.load_settings(command)
        configure_logging(settings.logging.level)
        logger.info(
            "Starting agent %s against %s (worktrees %s)",
            settings.api.agent_id,
            settings.api.url,
            "enabled" if settings.workspace.enabled else "disabled",
        )
        with self.build_gateway(settings) as gateway:
            self.build_orchestrator(settings, gateway).start()
        return [f"Agent {settings.api.agent_id} stopped."]

    def init(self, command: AgentInitCommand) -> list[str]:
        """Save the API token (and optional URL) to the credential file."""

        token = command.token.strip()
        if not token:
            raise ValueError("Token must not be empty.")
        if command.api_url:
            validate_api_url(command.api_url)
        store = CredentialStore(self.credentials_path)
        store.save(token, command.api_url)
        lines = [f"Credentials saved to {store.path}"]
        if command.api_url:
            lines.append(f"API URL: {command.api_url}")
        lines.append('Run "ralph-agent run" to start the agent.')
        return lines
