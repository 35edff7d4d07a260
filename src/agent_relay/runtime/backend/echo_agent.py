"""Local demo agent that speaks the stream-json protocol.

Used by integration tests and for trying the bot without a real agent
installed. The prompt is echoed back as streamed text. Directives embedded
in the prompt change behaviour:

``!think``          emit a thinking block first
``!tool``           emit a Bash tool call
``!garbage``        print a malformed line before the result
``!long=N``         stream N characters of text instead of the echo
``!sleep=S``        sleep S seconds before finishing
``!ignore-term``    ignore SIGTERM
``!fail``           write a diagnostic to stderr and exit with code 3
"""

from __future__ import annotations

import argparse
import json
import re
import signal
import sys
import time
import uuid

_DIRECTIVE = re.compile(r"!(think|tool|garbage|ignore-term|fail|long=\d+|sleep=[\d.]+)")


def _emit(record: dict[str, object]) -> None:
    sys.stdout.write(json.dumps(record) + "\n")
    sys.stdout.flush()


def _stream(event: dict[str, object]) -> None:
    _emit({"type": "stream_event", "event": event})


def _block(index: int, block: dict[str, object], deltas: list[dict[str, object]]) -> None:
    _stream({"type": "content_block_start", "index": index, "content_block": block})
    for delta in deltas:
        _stream({"type": "content_block_delta", "index": index, "delta": delta})
    _stream({"type": "content_block_stop", "index": index})


def main(argv: list[str] | None = None) -> int:
    """Run one deterministic echo turn."""

    parser = argparse.ArgumentParser()
    parser.add_argument("prompt")
    parser.add_argument("--resume", default=None)
    args = parser.parse_args(argv)

    directives = set(_DIRECTIVE.findall(args.prompt))
    options = dict(item.split("=", 1) for item in directives if "=" in item)
    session_id = args.resume or str(uuid.uuid4())
    started = time.monotonic()

    if "ignore-term" in directives:
        signal.signal(signal.SIGTERM, signal.SIG_IGN)

    _emit({"type": "system", "subtype": "init", "session_id": session_id})

    index = 0
    if "think" in directives:
        _block(
            index,
            {"type": "thinking", "thinking": ""},
            [{"type": "thinking_delta", "thinking": "Considering the request."}],
        )
        index += 1

    if "tool" in directives:
        arguments = json.dumps({"command": "ls -la", "description": "List files"})
        middle = len(arguments) // 2
        _block(
            index,
            {"type": "tool_use", "id": "toolu_echo", "name": "Bash", "input": {}},
            [
                {"type": "input_json_delta", "partial_json": arguments[:middle]},
                {"type": "input_json_delta", "partial_json": arguments[middle:]},
            ],
        )
        index += 1

    if "long" in options:
        text = "x" * int(options["long"])
        pieces = [text[offset : offset + 500] for offset in range(0, len(text), 500)]
    else:
        text = f"Echo: {args.prompt}"
        pieces = re.findall(r"\S+\s*|\s+", text)
    _block(
        index,
        {"type": "text", "text": ""},
        [{"type": "text_delta", "text": piece} for piece in pieces],
    )

    if "garbage" in directives:
        sys.stdout.write("{not json\n")
        sys.stdout.flush()

    if "sleep" in options:
        time.sleep(float(options["sleep"]))

    if "fail" in directives:
        sys.stderr.write("echo agent: simulated failure\n")
        sys.stderr.flush()
        return 3

    _emit(
        {
            "type": "result",
            "subtype": "success",
            "is_error": False,
            "result": text,
            "session_id": session_id,
            "total_cost_usd": 0.0012,
            "duration_ms": int((time.monotonic() - started) * 1000),
            "num_turns": 1,
        },
    )
    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
