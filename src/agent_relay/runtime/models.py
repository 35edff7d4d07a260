"""Domain models for agent runs, their events and queued input."""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path


@dataclass(frozen=True, slots=True)
class ConcurrencyKey:
    """Unit of mutual exclusion: one live agent process per actor and workspace."""

    actor_id: int
    workspace: Path

    def __str__(self) -> str:
        return f"{self.actor_id}:{self.workspace}"


class TerminationReason(str, Enum):
    """Why a run was terminated by the host."""

    NONE = "none"
    USER = "user"
    TIMEOUT = "timeout"


class ErrorKind(str, Enum):
    """Terminal failure classes surfaced to the chat."""

    CANCELLED = "cancelled"
    TIMEOUT = "timeout"
    PROCESS_FAILURE = "process_failure"
    STREAM = "stream"
    SPAWN = "spawn"


@dataclass(frozen=True, slots=True)
class TextDelta:
    text: str


@dataclass(frozen=True, slots=True)
class ToolInvocation:
    name: str
    detail: str = ""


@dataclass(frozen=True, slots=True)
class ThinkingStart:
    pass


@dataclass(frozen=True, slots=True)
class ThinkingDelta:
    text: str


@dataclass(frozen=True, slots=True)
class ThinkingDone:
    elapsed_seconds: float


@dataclass(frozen=True, slots=True)
class Completion:
    """Final run summary reported by the agent."""

    session_token: str | None
    cost_usd: float | None
    elapsed_seconds: float | None
    turns: int | None
    text: str = ""


@dataclass(frozen=True, slots=True)
class ErrorEvent:
    message: str
    kind: ErrorKind = ErrorKind.PROCESS_FAILURE


DomainEvent = (
    TextDelta | ToolInvocation | ThinkingStart | ThinkingDelta | ThinkingDone | Completion | ErrorEvent
)


@dataclass(slots=True)
class ProcessHandle:
    """Lifecycle of one agent run, owned by the process registry."""

    key: ConcurrencyKey
    cancel_requested: asyncio.Event = field(default_factory=asyncio.Event)
    finished: asyncio.Event = field(default_factory=asyncio.Event)
    started_at: float = field(default_factory=time.monotonic)
    termination: TerminationReason = TerminationReason.NONE

    @property
    def live(self) -> bool:
        return not self.finished.is_set()

    def request_cancel(self, reason: TerminationReason) -> bool:
        """Set the cancellation token; the first reason wins."""

        if self.cancel_requested.is_set() or self.finished.is_set():
            return False
        self.termination = reason
        self.cancel_requested.set()
        return True


@dataclass(frozen=True, slots=True)
class ReplyContext:
    """Where output for a submission should be sent."""

    chat_id: int
    message_id: int | None = None


@dataclass(frozen=True, slots=True)
class QueueEntry:
    """Follow-up input waiting for the key's current run to finish."""

    payload: str
    origin: ReplyContext
    key: ConcurrencyKey
