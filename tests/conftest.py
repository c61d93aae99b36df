"""Shared test fixtures."""

from __future__ import annotations

import pytest

from ralph_agent.config import ApiSettings, PollingSettings, Settings
from ralph_agent.context import AgentContext

API_URL = "https://coordinator.test"
API_TOKEN = "secret-token-123"


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 0.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def settings() -> Settings:
    return Settings(
        api=ApiSettings(url=API_URL, token=API_TOKEN, agent_id="agent-test"),
        polling=PollingSettings(
            min_request_spacing_seconds=0.0,
            idle_sleep_seconds=0.0,
            error_backoff_base_seconds=0.0,
            error_backoff_max_seconds=0.0,
            shutdown_grace_seconds=0.0,
        ),
    )


@pytest.fixture()
def context(settings: Settings) -> AgentContext:
    return AgentContext(settings=settings)


@pytest.fixture(autouse=True)
def _clean_ralph_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in (
        "RALPH_API_URL",
        "RALPH_API_TOKEN",
        "RALPH_AGENT_ID",
        "RALPH_LOG_LEVEL",
        "RALPH_USE_WORKTREES",
        "RALPH_EXECUTOR_COMMAND",
        "RALPH_FAILURE_WINDOW_REQUEST_INTERVAL_SECONDS",
    ):
        monkeypatch.delenv(name, raising=False)
