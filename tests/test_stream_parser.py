from __future__ import annotations

import asyncio
import json

import allure

from agent_relay.runtime.models import (
    Completion,
    ErrorEvent,
    ErrorKind,
    TextDelta,
    ThinkingDelta,
    ThinkingDone,
    ThinkingStart,
    ToolInvocation,
)
from agent_relay.runtime.stream_parser import StreamEventParser, format_tool_detail

pytestmark = [
    allure.epic("Agent Runtime"),
    allure.feature("Stream Event Parsing"),
]


def _line(record: dict) -> bytes:
    return (json.dumps(record) + "\n").encode()


def _stream(event: dict) -> bytes:
    return _line({"type": "stream_event", "event": event})


def _text_block(*pieces: str) -> bytes:
    out = _stream({"type": "content_block_start", "index": 0, "content_block": {"type": "text", "text": ""}})
    for piece in pieces:
        out += _stream(
            {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": piece}},
        )
    return out + _stream({"type": "content_block_stop", "index": 0})


def _tool_block(name: str, *fragments: str) -> bytes:
    out = _stream(
        {"type": "content_block_start", "index": 1, "content_block": {"type": "tool_use", "name": name}},
    )
    for fragment in fragments:
        out += _stream(
            {
                "type": "content_block_delta",
                "index": 1,
                "delta": {"type": "input_json_delta", "partial_json": fragment},
            },
        )
    return out + _stream({"type": "content_block_stop", "index": 1})


_RESULT = _line(
    {
        "type": "result",
        "result": "Hello world",
        "session_id": "sess-1",
        "total_cost_usd": 0.25,
        "duration_ms": 1500,
        "num_turns": 2,
    },
)


def _feed_all(parser: StreamEventParser, data: bytes, chunk_size: int) -> list:
    events = []
    for offset in range(0, len(data), chunk_size):
        events.extend(parser.feed(data[offset : offset + chunk_size]))
    events.extend(parser.close())
    return events


def test_events_do_not_depend_on_chunk_boundaries() -> None:
    data = _text_block("Hel", "lo ", "wörld") + _tool_block("Read", '{"file_path": "/tmp/a.py"}') + _RESULT

    whole = _feed_all(StreamEventParser(), data, len(data))
    for chunk_size in (1, 3, 7, 64):
        assert _feed_all(StreamEventParser(), data, chunk_size) == whole

    assert whole == [
        TextDelta("Hel"),
        TextDelta("lo "),
        TextDelta("wörld"),
        ToolInvocation("Read", "/tmp/a.py"),
        Completion(session_token="sess-1", cost_usd=0.25, elapsed_seconds=1.5, turns=2, text="Hello world"),
    ]


def test_multibyte_character_split_across_chunks() -> None:
    data = _text_block("привет 🙂")
    parser = StreamEventParser()

    events = _feed_all(parser, data, 1)

    assert events == [TextDelta("привет 🙂")]


def test_malformed_lines_are_skipped_and_counted() -> None:
    parser = StreamEventParser()
    data = b"{not json\n" + b"[1, 2]\n" + _text_block("ok") + b"\n\n"

    events = _feed_all(parser, data, 5)

    assert events == [TextDelta("ok")]
    assert parser.skipped_lines == 2


def test_records_with_wrong_field_types_are_skipped() -> None:
    parser = StreamEventParser()
    data = (
        _stream({"type": "content_block_start", "content_block": "oops"})
        + _stream({"type": "content_block_delta", "delta": ["x"]})
        + _stream({"type": "content_block_start", "content_block": {"type": "text", "text": 5}})
        + _stream({"type": "content_block_delta", "delta": {"type": "text_delta", "text": {"a": 1}}})
        + _stream({"type": "content_block_stop"})
        + _stream({"type": "content_block_start", "content_block": {"type": "tool_use", "name": "Read"}})
        + _stream({"type": "content_block_delta", "delta": {"type": "input_json_delta", "partial_json": [1]}})
        + _stream({"type": "content_block_stop"})
        + _text_block("ok")
    )

    events = _feed_all(parser, data, 11)

    assert events == [ToolInvocation("Read", ""), TextDelta("ok")]
    assert parser.skipped_lines == 5


def test_unknown_record_types_are_ignored() -> None:
    parser = StreamEventParser()
    data = _line({"type": "system", "subtype": "init"}) + _stream({"type": "message_start"})

    assert _feed_all(parser, data, 16) == []
    assert parser.skipped_lines == 0


def test_tool_arguments_are_assembled_from_fragments() -> None:
    arguments = json.dumps({"command": "git   status\n  --short", "description": "x"})
    data = _tool_block("Bash", arguments[:10], arguments[10:25], arguments[25:])

    events = _feed_all(StreamEventParser(), data, 11)

    assert events == [ToolInvocation("Bash", "git status --short")]


def test_invalid_tool_arguments_give_empty_detail() -> None:
    events = _feed_all(StreamEventParser(), _tool_block("Read", '{"file_path": '), 32)

    assert events == [ToolInvocation("Read", "")]


def test_thinking_block_reports_elapsed_time() -> None:
    ticks = iter([10.0, 13.5])
    parser = StreamEventParser(clock=lambda: next(ticks))
    data = (
        _stream({"type": "content_block_start", "index": 0, "content_block": {"type": "thinking"}})
        + _stream(
            {"type": "content_block_delta", "index": 0, "delta": {"type": "thinking_delta", "thinking": "hmm"}},
        )
        + _stream({"type": "content_block_stop", "index": 0})
    )

    events = _feed_all(parser, data, 9)

    assert events == [ThinkingStart(), ThinkingDelta("hmm"), ThinkingDone(3.5)]


def test_unclosed_block_is_dropped_at_end_of_stream() -> None:
    parser = StreamEventParser()
    data = _stream(
        {"type": "content_block_start", "index": 0, "content_block": {"type": "tool_use", "name": "Edit"}},
    ) + _stream(
        {
            "type": "content_block_delta",
            "index": 0,
            "delta": {"type": "input_json_delta", "partial_json": '{"file_path": "a"}'},
        },
    )

    assert _feed_all(parser, data, 13) == []


def test_trailing_line_without_newline_is_parsed_on_close() -> None:
    parser = StreamEventParser()

    assert parser.feed(_RESULT.rstrip(b"\n")) == []
    events = parser.close()

    assert len(events) == 1
    assert isinstance(events[0], Completion)
    assert events[0].session_token == "sess-1"


def test_result_with_missing_fields_yields_partial_completion() -> None:
    parser = StreamEventParser()

    events = _feed_all(parser, _line({"type": "result", "num_turns": True}), 100)

    assert events == [Completion(session_token=None, cost_usd=None, elapsed_seconds=None, turns=None)]


def test_read_failure_yields_single_stream_error() -> None:
    class _BrokenReader:
        def __init__(self) -> None:
            self.calls = 0

        async def read(self, size: int) -> bytes:
            self.calls += 1
            if self.calls == 1:
                return _text_block("partial")
            raise OSError("pipe closed")

    async def _collect() -> list:
        return [event async for event in StreamEventParser().aiter_events(_BrokenReader())]

    events = asyncio.run(_collect())

    assert events[0] == TextDelta("partial")
    assert len(events) == 2
    assert isinstance(events[1], ErrorEvent)
    assert events[1].kind is ErrorKind.STREAM


def test_format_tool_detail_truncates_and_maps_fields() -> None:
    assert format_tool_detail("Grep", {"pattern": "TODO"}) == "TODO"
    assert format_tool_detail("WebFetch", {"url": "https://example.com"}) == "https://example.com"
    assert format_tool_detail("Unknown", {"anything": 1}) == ""
    assert format_tool_detail("Read", {}) == ""

    detail = format_tool_detail("Write", {"file_path": "a" * 200})
    assert len(detail) == 80
    assert detail.endswith("...")
