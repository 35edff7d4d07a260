"""CLI entrypoint for agent-relay."""

import logging
from pathlib import Path

import rich_click as click

from agent_relay import __version__
from agent_relay.controllers import BotCommand, RelayCliController, RunPromptCommand

click.rich_click.USE_MARKDOWN = True
CONTROLLER = RelayCliController()


@click.group()
@click.version_option(version=__version__, prog_name="agent-relay")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="INFO",
    show_default=True,
    help="Logging level.",
)
def agent_relay(log_level: str) -> None:
    """Relay a CLI coding agent to a Telegram chat."""

    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logging.getLogger("httpx").setLevel(logging.WARNING)


@agent_relay.command("bot")
@click.option(
    "--projects-dir",
    type=click.Path(path_type=Path, file_okay=False),
    default=None,
    help="Directory holding project workspaces. Overrides AGENT_RELAY_PROJECTS_DIR.",
)
def bot(projects_dir: Path | None) -> None:
    """Run the Telegram bot with long polling."""

    try:
        CONTROLLER.run_bot(BotCommand(projects_dir=projects_dir))
    except ValueError as error:
        raise click.ClickException(str(error)) from error


@agent_relay.command("run")
@click.option(
    "--workspace",
    type=click.Path(path_type=Path, file_okay=False),
    required=True,
    help="Working directory for the agent.",
)
@click.option("--prompt", required=True, help="Prompt to send.")
@click.option("--resume", default=None, help="Session token to resume.")
@click.option(
    "--timeout",
    "timeout_seconds",
    type=click.IntRange(min=1),
    default=None,
    help="Run timeout in seconds. Defaults to AGENT_RELAY_TIMEOUT_SECONDS.",
)
def run(workspace: Path, prompt: str, resume: str | None, timeout_seconds: int | None) -> None:
    """Run the agent once and print its parsed events."""

    try:
        result = CONTROLLER.run_prompt(
            RunPromptCommand(
                workspace=workspace,
                prompt=prompt,
                resume=resume,
                timeout_seconds=timeout_seconds,
            ),
        )
    except ValueError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(result.lines)
    if not result.success:
        raise click.ClickException("Agent run failed.")


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    agent_relay()
