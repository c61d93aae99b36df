"""Job executor implementations."""

from ralph_agent.agent.executor.base import JobExecutor, ProgressCallback
from ralph_agent.agent.executor.cli_executor import ClaudeCliExecutor, build_prompt, validate_prompt

__all__ = [
    "ClaudeCliExecutor",
    "JobExecutor",
    "ProgressCallback",
    "build_prompt",
    "validate_prompt",
]
