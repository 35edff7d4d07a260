"""Backend interface for launching the external agent process."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol


@dataclass(slots=True)
class AgentRunRequest:
    """Inputs required to launch one agent run."""

    prompt: str
    workspace: Path
    resume_token: str | None = None
    chat_id: int | None = None
    timeout_seconds: int | None = None


class AgentBackend(Protocol):
    """Protocol implemented by process launchers."""

    async def start(self, request: AgentRunRequest) -> asyncio.subprocess.Process:
        """Launch the agent with piped stdout/stderr and return the running process."""
