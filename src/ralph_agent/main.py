"""CLI entrypoint for ralph-agent."""

import rich_click as click

from ralph_agent import __version__
from ralph_agent.agent.errors import GatewayPermissionError
from ralph_agent.controllers import AgentCliController, AgentInitCommand, AgentRunCommand

click.rich_click.USE_MARKDOWN = True
AGENT_CONTROLLER = AgentCliController()


@click.group()
@click.version_option(version=__version__, prog_name="ralph-agent")
def ralph_agent() -> None:
    """Worker agent that claims and executes coding jobs."""


@ralph_agent.command("run")
@click.option("--token", default=None, help="API token. Overrides RALPH_API_TOKEN.")
@click.option("--api-url", default=None, help="Coordinator base URL. Overrides RALPH_API_URL.")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default=None,
    help="Log level. Overrides RALPH_LOG_LEVEL.",
)
@click.option(
    "--no-worktrees",
    is_flag=True,
    default=False,
    help="Run code jobs directly in the project directory.",
)
def run(
    token: str | None,
    api_url: str | None,
    log_level: str | None,
    no_worktrees: bool,
) -> None:
    """Poll the coordinator and execute jobs until stopped."""

    try:
        lines = AGENT_CONTROLLER.run_agent(
            AgentRunCommand(
                token=token,
                api_url=api_url,
                log_level=log_level,
                use_worktrees=False if no_worktrees else None,
            ),
        )
    except GatewayPermissionError as error:
        raise click.ClickException(
            f"{error}. Check that your API token has 'ralph_agent' permission.",
        ) from error
    except ValueError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


@ralph_agent.command("init")
@click.option("--token", required=True, help="API token to store.")
@click.option("--api-url", default=None, help="Coordinator base URL to store.")
def init(token: str, api_url: str | None) -> None:
    """Save credentials to ~/.ralphblasterrc."""

    try:
        lines = AGENT_CONTROLLER.init(AgentInitCommand(token=token, api_url=api_url))
    except (ValueError, OSError) as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    ralph_agent()
