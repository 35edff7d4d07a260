"""Shared test fixtures."""

from __future__ import annotations

import shlex
import sys
from dataclasses import dataclass, field

import pytest

from agent_relay.chat.base import (
    MarkupRejectedError,
    MessageNotModifiedError,
    MessageRef,
)

ECHO_AGENT_COMMAND_TEMPLATE = (
    f"{shlex.quote(sys.executable)} -m agent_relay.runtime.backend.echo_agent {{prompt}}"
)


@dataclass(slots=True)
class SentMessage:
    ref: MessageRef
    text: str
    html: bool


@dataclass(slots=True)
class FakeChatClient:
    """Records every outbound call; can be told to reject HTML or report no-op edits."""

    reject_html: bool = False
    not_modified: bool = False
    sent: list[SentMessage] = field(default_factory=list)
    edits: list[SentMessage] = field(default_factory=list)
    deleted: list[MessageRef] = field(default_factory=list)
    typing: list[int] = field(default_factory=list)
    current: dict[int, str] = field(default_factory=dict)
    _next_id: int = 100

    async def send_message(self, chat_id: int, text: str, *, html: bool = False) -> MessageRef:
        if html and self.reject_html:
            raise MarkupRejectedError("Bad Request: can't parse entities")
        self._next_id += 1
        ref = MessageRef(chat_id=chat_id, message_id=self._next_id)
        self.sent.append(SentMessage(ref, text, html))
        self.current[ref.message_id] = text
        return ref

    async def edit_message(self, ref: MessageRef, text: str, *, html: bool = False) -> None:
        if self.not_modified:
            raise MessageNotModifiedError("Bad Request: message is not modified")
        if html and self.reject_html:
            raise MarkupRejectedError("Bad Request: can't parse entities")
        self.edits.append(SentMessage(ref, text, html))
        self.current[ref.message_id] = text

    async def delete_message(self, ref: MessageRef) -> None:
        self.deleted.append(ref)
        self.current.pop(ref.message_id, None)

    async def send_typing(self, chat_id: int) -> None:
        self.typing.append(chat_id)

    def visible(self) -> list[str]:
        """Final text of every message still on screen, in creation order."""

        return [self.current[sent.ref.message_id] for sent in self.sent if sent.ref.message_id in self.current]


@pytest.fixture()
def chat() -> FakeChatClient:
    return FakeChatClient()


@pytest.fixture()
def echo_agent(monkeypatch):
    """Point the agent command at the bundled echo agent."""

    monkeypatch.setenv("AGENT_RELAY_AGENT_COMMAND", ECHO_AGENT_COMMAND_TEMPLATE)
    return ECHO_AGENT_COMMAND_TEMPLATE
