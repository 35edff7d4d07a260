"""Controllers for agent-relay CLI commands."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path

from agent_relay.chat.bot import RelayBot
from agent_relay.config import Settings
from agent_relay.runtime.backend import AgentRunRequest, CliAgentBackend
from agent_relay.runtime.models import (
    Completion,
    ConcurrencyKey,
    DomainEvent,
    ErrorEvent,
    TextDelta,
    ThinkingDelta,
    ThinkingDone,
    ThinkingStart,
    ToolInvocation,
)
from agent_relay.runtime.registry import ProcessRegistry

logger = logging.getLogger(__name__)

CLI_ACTOR_ID = 0


@dataclass(slots=True)
class BotCommand:
    """CLI input for running the Telegram bot."""

    projects_dir: Path | None


@dataclass(slots=True)
class RunPromptCommand:
    """CLI input for a single agent run printed to the terminal."""

    workspace: Path
    prompt: str
    resume: str | None = None
    timeout_seconds: int | None = None


@dataclass(slots=True)
class RunPromptResult:
    lines: list[str]
    success: bool


class RelayCliController:
    """Runs the bot or a one-off agent invocation."""

    def run_bot(self, command: BotCommand) -> None:
        settings = Settings.from_env(projects_dir=command.projects_dir)
        settings.validate_for_bot()
        logger.info(
            "Starting bot for %d allowed user(s), projects in %s",
            len(settings.telegram.allowed_user_ids),
            settings.workspace.projects_dir,
        )
        RelayBot(settings).build_application().run_polling()

    def run_prompt(self, command: RunPromptCommand) -> RunPromptResult:
        settings = Settings.from_env()
        settings.validate()
        if not command.workspace.is_dir():
            raise ValueError(f"Workspace is not a directory: {command.workspace}")
        return asyncio.run(self._run_prompt(settings, command))

    async def _run_prompt(self, settings: Settings, command: RunPromptCommand) -> RunPromptResult:
        registry = ProcessRegistry(
            CliAgentBackend(
                command_template=settings.agent.command_template,
                resume_flag=settings.agent.resume_flag,
            ),
            timeout_seconds=settings.agent.timeout_seconds,
            graceful_shutdown_seconds=settings.agent.graceful_shutdown_seconds,
            stderr_max_chars=settings.agent.stderr_max_chars,
        )
        run = registry.spawn(
            ConcurrencyKey(CLI_ACTOR_ID, command.workspace),
            AgentRunRequest(
                prompt=command.prompt,
                workspace=command.workspace,
                resume_token=command.resume,
                timeout_seconds=command.timeout_seconds,
            ),
        )

        lines: list[str] = []
        text_parts: list[str] = []
        success = True
        async for event in run:
            if isinstance(event, TextDelta):
                text_parts.append(event.text)
                continue
            if text_parts:
                lines.append("".join(text_parts))
                text_parts.clear()
            if isinstance(event, ErrorEvent):
                success = False
            line = describe_event(event)
            if line:
                lines.append(line)
        if text_parts:
            lines.append("".join(text_parts))
        return RunPromptResult(lines=lines, success=success)


def describe_event(event: DomainEvent) -> str:
    """One terminal line for a non-text event."""

    if isinstance(event, ToolInvocation):
        return f"[tool] {event.name}: {event.detail}" if event.detail else f"[tool] {event.name}"
    if isinstance(event, ThinkingStart):
        return "[thinking]"
    if isinstance(event, ThinkingDelta):
        return ""
    if isinstance(event, ThinkingDone):
        return f"[thought for {event.elapsed_seconds:.1f}s]"
    if isinstance(event, Completion):
        cost = f"${event.cost_usd:.4f}" if event.cost_usd is not None else "n/a"
        elapsed = f"{event.elapsed_seconds:.1f}s" if event.elapsed_seconds is not None else "n/a"
        return (
            f"[done] session={event.session_token or '-'} cost={cost} "
            f"time={elapsed} turns={event.turns if event.turns is not None else '-'}"
        )
    if isinstance(event, ErrorEvent):
        return f"[error:{event.kind.value}] {event.message}"
    return ""
