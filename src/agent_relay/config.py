"""Runtime configuration for the agent relay."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

DEFAULT_COMMAND_TEMPLATE = (
    "claude -p {prompt} --output-format stream-json --verbose "
    "--include-partial-messages --dangerously-skip-permissions"
)


@dataclass(slots=True)
class TelegramSettings:
    """Chat platform credentials and access list."""

    bot_token: str = ""
    allowed_user_ids: tuple[int, ...] = ()


@dataclass(slots=True)
class AgentSettings:
    """External agent process settings."""

    command_template: str = DEFAULT_COMMAND_TEMPLATE
    resume_flag: str = "--resume"
    timeout_seconds: int = 600
    graceful_shutdown_seconds: float = 5.0
    stderr_max_chars: int = 3_000
    sessions_dir: Path = Path.home() / ".claude" / "projects"


@dataclass(slots=True)
class RenderSettings:
    """Chat rendering limits."""

    max_message_chars: int = 4_000
    edit_interval_seconds: float = 1.5
    split_min_ratio: float = 0.5


@dataclass(slots=True)
class WorkspaceSettings:
    """Where agent workspaces live."""

    projects_dir: Path = Path.home() / "projects"


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    telegram: TelegramSettings = field(default_factory=TelegramSettings)
    agent: AgentSettings = field(default_factory=AgentSettings)
    render: RenderSettings = field(default_factory=RenderSettings)
    workspace: WorkspaceSettings = field(default_factory=WorkspaceSettings)

    @classmethod
    def from_env(cls, projects_dir: Path | None = None) -> Settings:
        """Load settings from environment with defaults for local development."""

        return cls(
            telegram=TelegramSettings(
                bot_token=os.getenv("AGENT_RELAY_BOT_TOKEN", "").strip(),
                allowed_user_ids=_collect_user_ids(),
            ),
            agent=AgentSettings(
                command_template=os.getenv(
                    "AGENT_RELAY_AGENT_COMMAND",
                    DEFAULT_COMMAND_TEMPLATE,
                ),
                resume_flag=os.getenv("AGENT_RELAY_RESUME_FLAG", "--resume"),
                timeout_seconds=int(os.getenv("AGENT_RELAY_TIMEOUT_SECONDS", "600")),
                graceful_shutdown_seconds=float(
                    os.getenv("AGENT_RELAY_GRACEFUL_SHUTDOWN_SECONDS", "5"),
                ),
                stderr_max_chars=int(os.getenv("AGENT_RELAY_STDERR_MAX_CHARS", "3000")),
                sessions_dir=Path(
                    os.getenv(
                        "AGENT_RELAY_SESSIONS_DIR",
                        str(Path.home() / ".claude" / "projects"),
                    ),
                ).expanduser(),
            ),
            render=RenderSettings(
                max_message_chars=int(os.getenv("AGENT_RELAY_MAX_MESSAGE_CHARS", "4000")),
                edit_interval_seconds=float(
                    os.getenv("AGENT_RELAY_EDIT_INTERVAL_SECONDS", "1.5"),
                ),
                split_min_ratio=float(os.getenv("AGENT_RELAY_SPLIT_MIN_RATIO", "0.5")),
            ),
            workspace=WorkspaceSettings(
                projects_dir=projects_dir
                or Path(
                    os.getenv("AGENT_RELAY_PROJECTS_DIR", str(Path.home() / "projects")),
                ).expanduser(),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for values the runtime cannot work with."""

        if "{prompt}" not in self.agent.command_template:
            raise ValueError("AGENT_RELAY_AGENT_COMMAND must include {prompt}.")
        if self.agent.timeout_seconds <= 0:
            raise ValueError("AGENT_RELAY_TIMEOUT_SECONDS must be > 0.")
        if self.agent.graceful_shutdown_seconds < 0:
            raise ValueError("AGENT_RELAY_GRACEFUL_SHUTDOWN_SECONDS must be >= 0.")
        if self.agent.stderr_max_chars <= 0:
            raise ValueError("AGENT_RELAY_STDERR_MAX_CHARS must be > 0.")
        # Telegram rejects anything above 4096 characters.
        if not 100 <= self.render.max_message_chars <= 4_096:
            raise ValueError("AGENT_RELAY_MAX_MESSAGE_CHARS must be between 100 and 4096.")
        if self.render.edit_interval_seconds <= 0:
            raise ValueError("AGENT_RELAY_EDIT_INTERVAL_SECONDS must be > 0.")
        if not 0 <= self.render.split_min_ratio < 1:
            raise ValueError("AGENT_RELAY_SPLIT_MIN_RATIO must be in [0, 1).")

    def validate_for_bot(self) -> None:
        """Raise configuration error if the bot cannot start."""

        self.validate()
        if not self.telegram.bot_token:
            raise ValueError("AGENT_RELAY_BOT_TOKEN is required.")
        if not self.telegram.allowed_user_ids:
            raise ValueError(
                "At least one allowed user is required. Set AGENT_RELAY_ALLOWED_USER_IDS.",
            )
        if not self.workspace.projects_dir.is_dir():
            raise ValueError(
                f"AGENT_RELAY_PROJECTS_DIR is not a directory: {self.workspace.projects_dir}",
            )


def _collect_user_ids() -> tuple[int, ...]:
    raw = os.getenv("AGENT_RELAY_ALLOWED_USER_IDS", "").strip()
    if not raw:
        return ()

    values: list[int] = []
    for part in raw.split(","):
        token = part.strip()
        if not token:
            continue
        try:
            user_id = int(token)
        except ValueError as error:
            raise ValueError(
                f"Invalid AGENT_RELAY_ALLOWED_USER_IDS entry: {token!r}. Expected an integer.",
            ) from error
        if user_id not in values:
            values.append(user_id)
    return tuple(values)
