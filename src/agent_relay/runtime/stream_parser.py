"""Incremental parser for the agent's newline-delimited JSON output stream.

The agent runs with ``--output-format stream-json --include-partial-messages``
and prints one JSON record per line. Records arrive in arbitrary chunks, so
the parser keeps the trailing partial line between ``feed`` calls. Content
blocks are tracked with a single open-block cursor: a tool call's arguments
arrive as ``input_json_delta`` fragments and are only turned into a
``ToolInvocation`` once the block stops.
"""

from __future__ import annotations

import asyncio
import codecs
import json
import logging
import time
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field
from typing import Any

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

READ_CHUNK_BYTES = 64 * 1024
MAX_TOOL_DETAIL_CHARS = 80

_TOOL_DETAIL_FIELDS: dict[str, str] = {
    "Read": "file_path",
    "Write": "file_path",
    "Edit": "file_path",
    "MultiEdit": "file_path",
    "NotebookEdit": "notebook_path",
    "Bash": "command",
    "Glob": "pattern",
    "Grep": "pattern",
    "WebFetch": "url",
    "WebSearch": "query",
    "Task": "description",
}


@dataclass(slots=True)
class _OpenBlock:
    kind: str
    tool_name: str = ""
    fragments: list[str] = field(default_factory=list)
    opened_at: float = 0.0


class StreamEventParser:
    """Turn chunked stream-json bytes into ordered domain events."""

    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._carry = ""
        self._block: _OpenBlock | None = None
        self.skipped_lines = 0

    def feed(self, chunk: bytes) -> list[DomainEvent]:
        """Consume one chunk and return events for every complete line in it."""

        self._carry += self._decoder.decode(chunk)
        lines = self._carry.split("\n")
        self._carry = lines.pop()
        events: list[DomainEvent] = []
        for line in lines:
            events.extend(self._parse_line(line))
        return events

    def close(self) -> list[DomainEvent]:
        """Flush the trailing line at end of stream.

        A block that never closed is dropped rather than emitted half-built.
        """

        self._carry += self._decoder.decode(b"", final=True)
        remainder, self._carry = self._carry, ""
        events = self._parse_line(remainder)
        if self._block is not None:
            logger.debug("Stream ended inside an open %s block", self._block.kind)
            self._block = None
        return events

    async def aiter_events(self, reader: asyncio.StreamReader) -> AsyncIterator[DomainEvent]:
        """Read ``reader`` to EOF, yielding events as soon as their line completes."""

        while True:
            try:
                chunk = await reader.read(READ_CHUNK_BYTES)
            except (OSError, ValueError) as error:
                logger.warning("Agent output stream failed: %s", error)
                yield ErrorEvent(f"Failed to read agent output: {error}", ErrorKind.STREAM)
                return
            if not chunk:
                break
            for event in self.feed(chunk):
                yield event
        for event in self.close():
            yield event

    def _parse_line(self, line: str) -> list[DomainEvent]:
        stripped = line.strip()
        if not stripped:
            return []
        try:
            record = json.loads(stripped)
        except json.JSONDecodeError:
            self.skipped_lines += 1
            logger.debug("Skipping malformed stream line: %s", stripped[:200])
            return []
        if not isinstance(record, dict):
            self.skipped_lines += 1
            return []

        record_type = record.get("type")
        if record_type == "stream_event":
            event = record.get("event")
            if isinstance(event, dict):
                return self._on_stream_event(event)
            return []
        if record_type == "result":
            return [_completion_from_result(record)]
        return []

    def _on_stream_event(self, event: dict[str, Any]) -> list[DomainEvent]:
        event_type = event.get("type")
        if event_type == "content_block_start":
            block = event.get("content_block")
            if not isinstance(block, dict):
                return self._skip_record(event)
            return self._on_block_start(block)
        if event_type == "content_block_delta":
            delta = event.get("delta")
            if not isinstance(delta, dict):
                return self._skip_record(event)
            return self._on_block_delta(delta)
        if event_type == "content_block_stop":
            return self._on_block_stop()
        return []

    def _skip_record(self, record: dict[str, Any]) -> list[DomainEvent]:
        self.skipped_lines += 1
        logger.debug("Skipping stream record with unexpected shape: %.200r", record)
        return []

    def _on_block_start(self, block: dict[str, Any]) -> list[DomainEvent]:
        kind = block.get("type")
        if kind == "text":
            self._block = _OpenBlock(kind="text")
            initial = block.get("text") or ""
            if not isinstance(initial, str):
                return self._skip_record(block)
            return [TextDelta(initial)] if initial else []
        if kind == "tool_use":
            self._block = _OpenBlock(kind="tool_use", tool_name=str(block.get("name") or "tool"))
            return []
        if kind == "thinking":
            self._block = _OpenBlock(kind="thinking", opened_at=self._clock())
            return [ThinkingStart()]
        self._block = None
        return []

    def _on_block_delta(self, delta: dict[str, Any]) -> list[DomainEvent]:
        block = self._block
        if block is None:
            return []
        delta_type = delta.get("type")
        if delta_type == "text_delta" and block.kind == "text":
            text = delta.get("text") or ""
            if not isinstance(text, str):
                return self._skip_record(delta)
            return [TextDelta(text)] if text else []
        if delta_type == "input_json_delta" and block.kind == "tool_use":
            fragment = delta.get("partial_json") or ""
            if not isinstance(fragment, str):
                return self._skip_record(delta)
            block.fragments.append(fragment)
            return []
        if delta_type == "thinking_delta" and block.kind == "thinking":
            text = delta.get("thinking") or ""
            if not isinstance(text, str):
                return self._skip_record(delta)
            return [ThinkingDelta(text)] if text else []
        return []

    def _on_block_stop(self) -> list[DomainEvent]:
        block, self._block = self._block, None
        if block is None:
            return []
        if block.kind == "tool_use":
            arguments = _parse_tool_arguments("".join(block.fragments))
            return [ToolInvocation(block.tool_name, format_tool_detail(block.tool_name, arguments))]
        if block.kind == "thinking":
            return [ThinkingDone(max(0.0, self._clock() - block.opened_at))]
        return []


def format_tool_detail(name: str, arguments: dict[str, Any]) -> str:
    """Short human-readable summary of a tool call's arguments."""

    field_name = _TOOL_DETAIL_FIELDS.get(name)
    if field_name is None:
        return ""
    value = arguments.get(field_name)
    if value is None:
        return ""
    detail = " ".join(str(value).split()) if name == "Bash" else str(value)
    if len(detail) > MAX_TOOL_DETAIL_CHARS:
        return detail[: MAX_TOOL_DETAIL_CHARS - 3] + "..."
    return detail


def _parse_tool_arguments(raw: str) -> dict[str, Any]:
    if not raw.strip():
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        logger.debug("Tool arguments are not valid JSON: %s", raw[:200])
        return {}
    return parsed if isinstance(parsed, dict) else {}


def _completion_from_result(record: dict[str, Any]) -> Completion:
    duration_ms = _optional_float(record.get("duration_ms"))
    turns = record.get("num_turns")
    session = record.get("session_id")
    result_text = record.get("result")
    return Completion(
        session_token=str(session) if session else None,
        cost_usd=_optional_float(record.get("total_cost_usd")),
        elapsed_seconds=duration_ms / 1000 if duration_ms is not None else None,
        turns=turns if isinstance(turns, int) and not isinstance(turns, bool) else None,
        text=result_text if isinstance(result_text, str) else "",
    )


def _optional_float(value: object) -> float | None:
    if isinstance(value, bool) or not isinstance(value, int | float):
        return None
    return float(value)
