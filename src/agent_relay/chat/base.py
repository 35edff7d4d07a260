"""Chat message contract used by the renderer and the relay service."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol


@dataclass(frozen=True, slots=True)
class MessageRef:
    """Identifies one message the bot has sent."""

    chat_id: int
    message_id: int


class ChatError(RuntimeError):
    """Chat platform refused or failed a request."""


class MarkupRejectedError(ChatError):
    """Rich-text payload could not be parsed by the platform."""


class MessageTooLongError(ChatError):
    """Payload exceeds the platform's message size limit."""


class MessageNotModifiedError(ChatError):
    """Edit carried exactly the content already displayed."""


class ChatClient(Protocol):
    """Outbound chat operations; each is best-effort."""

    async def send_message(self, chat_id: int, text: str, *, html: bool = False) -> MessageRef:
        """Create a message and return its reference."""

    async def edit_message(self, ref: MessageRef, text: str, *, html: bool = False) -> None:
        """Replace the content of an existing message."""

    async def delete_message(self, ref: MessageRef) -> None:
        """Delete a message."""

    async def send_typing(self, chat_id: int) -> None:
        """Show a typing indicator."""
