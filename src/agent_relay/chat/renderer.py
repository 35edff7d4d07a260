"""Render one run's domain events as a bounded set of chat messages.

The renderer is a small state machine. Each content state (text, tool log,
thinking) owns exactly one live message; switching state finalizes that
message before the next one opens, so two messages are never updated at
the same time. Edits to the live message are throttled to one per
``edit_interval_seconds``; a ticker task picks up edits that were deferred.
Buffers longer than ``max_message_chars`` are split into several messages.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import re
import time
from collections.abc import AsyncIterable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import ClassVar

from agent_relay.chat.base import (
    ChatClient,
    ChatError,
    MarkupRejectedError,
    MessageNotModifiedError,
    MessageRef,
    MessageTooLongError,
)
from agent_relay.chat.markup import escape_html, markdown_to_telegram_html
from agent_relay.config import RenderSettings
from agent_relay.runtime.models import (
    Completion,
    DomainEvent,
    ErrorEvent,
    ErrorKind,
    TextDelta,
    ThinkingDelta,
    ThinkingDone,
    ThinkingStart,
    ToolInvocation,
)

logger = logging.getLogger(__name__)

_TOOL_LINE = re.compile(r"^🔧 (\S+)(?:: (.*))?$")
_FALLBACK_ERRORS = (MarkupRejectedError, MessageTooLongError)


class RenderMode(str, Enum):
    IDLE = "idle"
    TEXT = "text"
    TOOL_LOG = "tool_log"
    THINKING = "thinking"


@dataclass(slots=True)
class LiveMessage:
    """One chat message being built up from a buffer."""

    buffer: str = ""
    ref: MessageRef | None = None
    shown: str | None = None
    last_edit_at: float | None = None
    pending: bool = False


@dataclass(slots=True)
class Idle:
    mode: ClassVar[RenderMode] = RenderMode.IDLE


@dataclass(slots=True)
class TextBlock:
    mode: ClassVar[RenderMode] = RenderMode.TEXT
    message: LiveMessage = field(default_factory=LiveMessage)


@dataclass(slots=True)
class ToolLog:
    mode: ClassVar[RenderMode] = RenderMode.TOOL_LOG
    message: LiveMessage = field(default_factory=LiveMessage)


@dataclass(slots=True)
class Thinking:
    mode: ClassVar[RenderMode] = RenderMode.THINKING
    message: LiveMessage = field(default_factory=LiveMessage)


RenderState = Idle | TextBlock | ToolLog | Thinking
ContentState = TextBlock | ToolLog | Thinking


@dataclass(slots=True)
class RenderResult:
    """What the run produced, as seen by the chat."""

    session_token: str | None = None
    cost_usd: float | None = None
    elapsed_seconds: float | None = None
    turns: int | None = None
    message_refs: list[MessageRef] = field(default_factory=list)
    error: ErrorEvent | None = None


def split_message(text: str, limit: int, min_ratio: float = 0.5) -> tuple[str, str]:
    """Split ``text`` into a head of at most ``limit`` chars and the remainder.

    Prefers the last newline before the limit when it lies past
    ``min_ratio * limit``; otherwise cuts hard at the limit.
    """

    if len(text) <= limit:
        return text, ""
    cut = text.rfind("\n", 0, limit)
    if cut > limit * min_ratio:
        return text[:cut], text[cut + 1 :]
    return text[:limit], text[limit:]


def format_duration(seconds: float) -> str:
    return f"{seconds:.1f}s"


class OutputRenderer:
    """Consumes the events of one run and keeps the chat in sync with them."""

    def __init__(
        self,
        chat: ChatClient,
        chat_id: int,
        *,
        settings: RenderSettings | None = None,
        footer_label: str = "",
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._chat = chat
        self._chat_id = chat_id
        self._settings = settings or RenderSettings()
        self._footer_label = footer_label
        self._clock = clock
        self._state: RenderState = Idle()
        self._lock = asyncio.Lock()
        self._last_content: tuple[RenderMode, LiveMessage] | None = None
        self._completion: Completion | None = None
        self._error: ErrorEvent | None = None
        self._streamed_text = False
        self._refs: list[MessageRef] = []

    @property
    def mode(self) -> RenderMode:
        return self._state.mode

    async def consume(self, events: AsyncIterable[DomainEvent]) -> RenderResult:
        """Render every event, then finalize. Returns the run summary."""

        ticker = asyncio.create_task(self._tick())
        try:
            async for event in events:
                await self.handle(event)
        finally:
            ticker.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await ticker
        return await self.finish()

    async def handle(self, event: DomainEvent) -> None:  # noqa: C901
        if isinstance(event, TextDelta):
            self._streamed_text = True
            state = await self._enter(TextBlock)
            state.message.buffer += event.text
            await self._flush()
        elif isinstance(event, ToolInvocation):
            state = await self._enter(ToolLog)
            line = f"🔧 {event.name}: {event.detail}" if event.detail else f"🔧 {event.name}"
            if state.message.buffer:
                state.message.buffer += "\n"
            state.message.buffer += line
            await self._flush()
        elif isinstance(event, ThinkingStart):
            await self._close_state()
            self._state = Thinking()
        elif isinstance(event, ThinkingDelta):
            state = await self._enter(Thinking)
            state.message.buffer += event.text
            await self._flush()
        elif isinstance(event, ThinkingDone):
            await self._finish_thinking(event.elapsed_seconds)
        elif isinstance(event, Completion):
            self._completion = event
        elif isinstance(event, ErrorEvent):
            await self._close_state()
            self._error = event
            await self._send_standalone(*_format_error(event, self._settings.max_message_chars))

    async def finish(self) -> RenderResult:
        """Flush the live message and append the run metadata."""

        completion = self._completion
        if completion is not None and not self._streamed_text and completion.text.strip():
            await self.handle(TextDelta(completion.text))
        await self._close_state()

        if completion is not None:
            await self._append_footer(completion)
        elif self._error is None and not self._refs:
            await self._send_standalone("<i>No output.</i>", "No output.")

        return RenderResult(
            session_token=completion.session_token if completion else None,
            cost_usd=completion.cost_usd if completion else None,
            elapsed_seconds=completion.elapsed_seconds if completion else None,
            turns=completion.turns if completion else None,
            message_refs=list(self._refs),
            error=self._error,
        )

    async def _enter(self, state_type: type[ContentState]) -> ContentState:
        if not isinstance(self._state, state_type):
            await self._close_state()
            self._state = state_type()
        return self._state  # type: ignore[return-value]

    async def _close_state(self) -> None:
        state = self._state
        if isinstance(state, Idle):
            return
        await self._flush(final=True)
        self._state = Idle()

    async def _finish_thinking(self, elapsed_seconds: float) -> None:
        state = self._state
        label = format_duration(elapsed_seconds)
        if isinstance(state, Thinking) and state.message.buffer.strip():
            state.message.buffer += f"\n\n(thought for {label})"
            await self._close_state()
            return
        if isinstance(state, Thinking):
            self._state = Idle()
        await self._send_standalone(f"💭 <i>Thought for {label}</i>", f"💭 Thought for {label}")

    async def _tick(self) -> None:
        interval = self._settings.edit_interval_seconds / 4
        while True:
            await asyncio.sleep(interval)
            state = self._state
            if not isinstance(state, Idle) and state.message.pending:
                await self._flush()

    async def _flush(self, *, final: bool = False) -> None:
        async with self._lock:
            state = self._state
            if isinstance(state, Idle):
                return
            message = state.message
            if (
                not final
                and message.last_edit_at is not None
                and self._clock() - message.last_edit_at < self._settings.edit_interval_seconds
            ):
                message.pending = True
                return
            message.pending = False

            limit = self._settings.max_message_chars
            while len(message.buffer) > limit:
                head, tail = split_message(message.buffer, limit, self._settings.split_min_ratio)
                message.buffer = head
                await self._publish(state.mode, message)
                message = LiveMessage(buffer=tail)
                state.message = message
            if message.buffer.strip():
                await self._publish(state.mode, message)

    async def _publish(self, mode: RenderMode, message: LiveMessage) -> None:
        html, plain = _format_content(mode, message.buffer)
        if html == message.shown:
            return
        if message.ref is None:
            message.ref = await self._send(html, plain)
        else:
            await self._edit(message.ref, html, plain)
        message.shown = html
        message.last_edit_at = self._clock()
        if message.ref is not None:
            self._last_content = (mode, message)

    async def _append_footer(self, completion: Completion) -> None:
        html_meta, plain_meta = self._metadata_line(completion)
        if not plain_meta:
            return
        last = self._last_content
        if last is not None and last[1].ref is not None:
            mode, message = last
            html, plain = _format_content(mode, message.buffer)
            combined_plain = f"{plain}\n\n{plain_meta}"
            if len(combined_plain) <= self._settings.max_message_chars:
                async with self._lock:
                    await self._edit(message.ref, f"{html}\n\n{html_meta}", combined_plain)
                return
        await self._send_standalone(html_meta, plain_meta)

    def _metadata_line(self, completion: Completion) -> tuple[str, str]:
        parts: list[str] = []
        if self._footer_label:
            parts.append(f"Project: {self._footer_label}")
        if completion.cost_usd is not None:
            parts.append(f"Cost: ${completion.cost_usd:.4f}")
        if completion.elapsed_seconds is not None:
            parts.append(f"Time: {format_duration(completion.elapsed_seconds)}")
        if completion.turns is not None and completion.turns > 1:
            parts.append(f"Turns: {completion.turns}")
        plain = " | ".join(parts)
        return (f"<i>{escape_html(plain)}</i>" if plain else ""), plain

    async def _send_standalone(self, html: str, plain: str) -> None:
        async with self._lock:
            await self._send(html, plain)

    async def _send(self, html: str, plain: str) -> MessageRef | None:
        ref: MessageRef | None = None
        try:
            ref = await self._chat.send_message(self._chat_id, html, html=True)
        except _FALLBACK_ERRORS as error:
            logger.debug("HTML send rejected, retrying as plain text: %s", error)
            try:
                ref = await self._chat.send_message(self._chat_id, plain or "...", html=False)
            except ChatError as plain_error:
                logger.warning("Failed to send message to chat %s: %s", self._chat_id, plain_error)
        except ChatError as error:
            logger.warning("Failed to send message to chat %s: %s", self._chat_id, error)
        if ref is not None:
            self._refs.append(ref)
        return ref

    async def _edit(self, ref: MessageRef, html: str, plain: str) -> None:
        try:
            await self._chat.edit_message(ref, html, html=True)
            return
        except MessageNotModifiedError:
            return
        except _FALLBACK_ERRORS as error:
            logger.debug("HTML edit rejected, retrying as plain text: %s", error)
        except ChatError as error:
            logger.warning("Failed to edit message %s: %s", ref.message_id, error)
            return
        try:
            await self._chat.edit_message(ref, plain or "...", html=False)
        except MessageNotModifiedError:
            return
        except ChatError as error:
            logger.warning("Failed to edit message %s: %s", ref.message_id, error)


def _format_content(mode: RenderMode, text: str) -> tuple[str, str]:
    """Return the HTML rendering of a buffer and its plain-text fallback."""

    if mode is RenderMode.TOOL_LOG:
        return "\n".join(_format_tool_line(line) for line in text.split("\n")), text
    if mode is RenderMode.THINKING:
        return f"💭 <i>{escape_html(text)}</i>", f"💭 {text}"
    return markdown_to_telegram_html(text), text


def _format_tool_line(line: str) -> str:
    match = _TOOL_LINE.match(line)
    if match is None:
        return escape_html(line)
    name, detail = match.group(1), match.group(2)
    if detail:
        return f"🔧 <b>{escape_html(name)}</b> <code>{escape_html(detail)}</code>"
    return f"🔧 <b>{escape_html(name)}</b>"


def _format_error(event: ErrorEvent, limit: int) -> tuple[str, str]:
    # Leave room for the label and tags around the diagnostic text.
    room = max(limit - 100, limit // 2)
    message = event.message
    if len(message) > room:
        message = "..." + message[len(message) - room :]
    if event.kind is ErrorKind.CANCELLED:
        return f"⏹ {escape_html(message)}", f"⏹ {message}"
    if event.kind is ErrorKind.TIMEOUT:
        return f"⏱ {escape_html(message)}", f"⏱ {message}"
    if event.kind is ErrorKind.SPAWN:
        return (
            f"❌ <b>Could not start agent:</b> {escape_html(message)}",
            f"❌ Could not start agent: {message}",
        )
    return (
        f"❌ <b>Agent failed:</b>\n<pre>{escape_html(message)}</pre>",
        f"❌ Agent failed:\n{message}",
    )
