"""Process registry: spawn, cancel and reap agent runs per concurrency key."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator, Callable

from agent_relay.runtime.backend import AgentBackend, AgentRunRequest, terminate_process
from agent_relay.runtime.errors import AgentBusyError, BackendStartError
from agent_relay.runtime.models import (
    ConcurrencyKey,
    DomainEvent,
    ErrorEvent,
    ErrorKind,
    ProcessHandle,
    TerminationReason,
)
from agent_relay.runtime.stream_parser import StreamEventParser

logger = logging.getLogger(__name__)

_STDERR_READ_BYTES = 8 * 1024
_END = object()


class AgentRun:
    """Events of one run, in source order, ending when the run is fully torn down."""

    def __init__(self, handle: ProcessHandle, events: asyncio.Queue[object]) -> None:
        self.handle = handle
        self._events = events

    def __aiter__(self) -> AsyncIterator[DomainEvent]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[DomainEvent]:
        while True:
            item = await self._events.get()
            if item is _END:
                return
            yield item  # type: ignore[misc]


class ProcessRegistry:
    """Owns the key -> handle map; at most one live handle per key."""

    def __init__(
        self,
        backend: AgentBackend,
        *,
        timeout_seconds: int = 600,
        graceful_shutdown_seconds: float = 5.0,
        stderr_max_chars: int = 3_000,
        parser_factory: Callable[[], StreamEventParser] = StreamEventParser,
    ) -> None:
        self.backend = backend
        self.timeout_seconds = timeout_seconds
        self.graceful_shutdown_seconds = graceful_shutdown_seconds
        self.stderr_max_chars = stderr_max_chars
        self._parser_factory = parser_factory
        self._handles: dict[ConcurrencyKey, ProcessHandle] = {}
        self._pumps: dict[ConcurrencyKey, asyncio.Task[None]] = {}

    def is_busy(self, key: ConcurrencyKey) -> bool:
        return key in self._handles

    def handle(self, key: ConcurrencyKey) -> ProcessHandle | None:
        return self._handles.get(key)

    def live_keys(self) -> list[ConcurrencyKey]:
        return list(self._handles)

    def acquire_or_reject(self, key: ConcurrencyKey) -> ProcessHandle:
        """Reserve the key, raising ``AgentBusyError`` if a run is live for it.

        The handle is inserted before control returns to the event loop, so two
        submissions on the same key can never both pass this check.
        """

        if key in self._handles:
            raise AgentBusyError(key)
        handle = ProcessHandle(key=key)
        self._handles[key] = handle
        return handle

    def spawn(self, key: ConcurrencyKey, request: AgentRunRequest) -> AgentRun:
        """Reserve ``key`` and launch the agent; returns the run's event source."""

        return self.start(self.acquire_or_reject(key), request)

    def start(self, handle: ProcessHandle, request: AgentRunRequest) -> AgentRun:
        if self._handles.get(handle.key) is not handle:
            raise ValueError(f"Handle for {handle.key} is not registered.")
        events: asyncio.Queue[object] = asyncio.Queue()
        self._pumps[handle.key] = asyncio.create_task(
            self._pump(handle, request, events),
            name=f"agent-run:{handle.key}",
        )
        return AgentRun(handle, events)

    def cancel(
        self,
        key: ConcurrencyKey,
        reason: TerminationReason = TerminationReason.USER,
    ) -> bool:
        """Signal the run for ``key`` to stop; does not wait for it."""

        handle = self._handles.get(key)
        if handle is None:
            return False
        cancelled = handle.request_cancel(reason)
        if cancelled:
            logger.info("Cancel requested: key=%s reason=%s", key, reason.value)
        return cancelled

    def cancel_all(self, actor_id: int) -> int:
        return sum(
            1 for key in list(self._handles) if key.actor_id == actor_id and self.cancel(key)
        )

    async def await_quiescence(self, key: ConcurrencyKey) -> None:
        """Wait until the key's run (if any) is reaped and its streams drained."""

        handle = self._handles.get(key)
        if handle is not None:
            await handle.finished.wait()

    async def _pump(  # noqa: C901
        self,
        handle: ProcessHandle,
        request: AgentRunRequest,
        sink: asyncio.Queue[object],
    ) -> None:
        loop = asyncio.get_running_loop()
        process: asyncio.subprocess.Process | None = None
        timer: asyncio.TimerHandle | None = None
        timeout = request.timeout_seconds or self.timeout_seconds
        try:
            if handle.cancel_requested.is_set():
                sink.put_nowait(_termination_event(handle, timeout=timeout, diagnostics=""))
                return
            try:
                process = await self.backend.start(request)
            except BackendStartError as error:
                logger.error("Agent start failed for %s: %s", handle.key, error)
                sink.put_nowait(ErrorEvent(str(error), ErrorKind.SPAWN))
                return

            timer = loop.call_later(timeout, handle.request_cancel, TerminationReason.TIMEOUT)
            stderr_task = asyncio.create_task(
                _collect_stderr(process.stderr, limit=self.stderr_max_chars),
            )
            stopper = asyncio.create_task(self._stop_on_cancel(handle, process))
            stream_failed = False
            try:
                parser = self._parser_factory()
                assert process.stdout is not None
                async for event in parser.aiter_events(process.stdout):
                    if isinstance(event, ErrorEvent) and event.kind is ErrorKind.STREAM:
                        stream_failed = True
                        await terminate_process(
                            process,
                            grace_seconds=self.graceful_shutdown_seconds,
                        )
                    sink.put_nowait(event)
                returncode = await process.wait()
                diagnostics = await stderr_task
            finally:
                stopper.cancel()
                stderr_task.cancel()
            if parser.skipped_lines:
                logger.warning(
                    "Skipped %d malformed output line(s) for %s",
                    parser.skipped_lines,
                    handle.key,
                )

            if stream_failed:
                return
            if handle.termination is not TerminationReason.NONE:
                sink.put_nowait(
                    _termination_event(handle, timeout=timeout, diagnostics=diagnostics),
                )
            elif returncode != 0:
                logger.warning("Agent for %s exited with code %s", handle.key, returncode)
                sink.put_nowait(
                    ErrorEvent(
                        diagnostics or f"Agent exited with code {returncode}.",
                        ErrorKind.PROCESS_FAILURE,
                    ),
                )
        except Exception as error:
            logger.exception("Agent run failed for %s", handle.key)
            sink.put_nowait(ErrorEvent(f"Agent run failed: {error}", ErrorKind.PROCESS_FAILURE))
        finally:
            if timer is not None:
                timer.cancel()
            if process is not None and process.returncode is None:
                await terminate_process(process, grace_seconds=self.graceful_shutdown_seconds)
            self._release(handle)
            sink.put_nowait(_END)

    async def _stop_on_cancel(
        self,
        handle: ProcessHandle,
        process: asyncio.subprocess.Process,
    ) -> None:
        await handle.cancel_requested.wait()
        await terminate_process(process, grace_seconds=self.graceful_shutdown_seconds)
        # A descendant that moved to its own process group can keep the pipes open.
        await asyncio.sleep(self.graceful_shutdown_seconds)
        for reader in (process.stdout, process.stderr):
            if reader is not None and not reader.at_eof():
                logger.warning("Output of %s still open after termination, closing", handle.key)
                reader.feed_eof()

    def _release(self, handle: ProcessHandle) -> None:
        if self._handles.get(handle.key) is handle:
            del self._handles[handle.key]
            self._pumps.pop(handle.key, None)
        elapsed = time.monotonic() - handle.started_at
        handle.finished.set()
        logger.info(
            "Agent run finished: key=%s termination=%s elapsed=%.1fs",
            handle.key,
            handle.termination.value,
            elapsed,
        )


def _termination_event(handle: ProcessHandle, *, timeout: int, diagnostics: str) -> ErrorEvent:
    if handle.termination is TerminationReason.TIMEOUT:
        message, kind = f"Timed out after {timeout}s.", ErrorKind.TIMEOUT
    else:
        message, kind = "Stopped.", ErrorKind.CANCELLED
    if diagnostics:
        message = f"{message}\n{diagnostics}"
    return ErrorEvent(message, kind)


async def _collect_stderr(reader: asyncio.StreamReader | None, *, limit: int) -> str:
    if reader is None:
        return ""
    # Keep only a bounded tail; agents can be chatty on stderr.
    tail = bytearray()
    while True:
        chunk = await reader.read(_STDERR_READ_BYTES)
        if not chunk:
            break
        tail.extend(chunk)
        if len(tail) > limit * 4:
            del tail[: len(tail) - limit * 4]
    text = tail.decode("utf-8", errors="replace").strip()
    if len(text) > limit:
        return "..." + text[-limit:]
    return text
