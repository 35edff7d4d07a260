"""Relay service: submit, queue and drain agent runs per concurrency key.

One drain loop task exists per active key. It renders the current run,
then atomically takes everything queued meanwhile, joins it into a single
prompt and starts the next run, until nothing is left. A key counts as
active from the moment its run is spawned until its loop exits, so input
arriving while the previous run's output is still being finalized is
queued rather than started alongside it.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from agent_relay.chat.base import ChatClient, ChatError, MessageNotModifiedError, MessageRef
from agent_relay.chat.renderer import OutputRenderer, RenderResult
from agent_relay.config import RenderSettings, Settings
from agent_relay.runtime.backend import AgentRunRequest, CliAgentBackend
from agent_relay.runtime.models import (
    ConcurrencyKey,
    QueueEntry,
    ReplyContext,
    TerminationReason,
)
from agent_relay.runtime.registry import AgentRun, ProcessRegistry
from agent_relay.runtime.submission_queue import SubmissionQueue, combine_payloads

logger = logging.getLogger(__name__)

RendererFactory = Callable[[ReplyContext, ConcurrencyKey], OutputRenderer]


class SubmitStatus(str, Enum):
    STARTED = "started"
    QUEUED = "queued"
    REJECTED = "rejected"


@dataclass(slots=True)
class SubmitResult:
    status: SubmitStatus
    queue_depth: int = 0


@dataclass(slots=True)
class RelayStatus:
    """Snapshot of one key for status displays."""

    running: bool
    queued: int
    session_token: str | None
    last_result: RenderResult | None


class RelayService:
    """Inbound operations: submit, cancel and cancel-all."""

    def __init__(
        self,
        *,
        registry: ProcessRegistry,
        chat: ChatClient,
        render_settings: RenderSettings | None = None,
        timeout_seconds: int | None = None,
        renderer_factory: RendererFactory | None = None,
    ) -> None:
        self._registry = registry
        self._chat = chat
        self._render_settings = render_settings or RenderSettings()
        self._timeout_seconds = timeout_seconds
        self._renderer_factory = renderer_factory or self._default_renderer
        self._queue = SubmissionQueue()
        self._sessions: dict[ConcurrencyKey, str] = {}
        self._last_results: dict[ConcurrencyKey, RenderResult] = {}
        self._indicators: dict[ConcurrencyKey, MessageRef] = {}
        self._indicator_locks: defaultdict[ConcurrencyKey, asyncio.Lock] = defaultdict(
            asyncio.Lock,
        )
        self._active: set[ConcurrencyKey] = set()
        self._loops: dict[ConcurrencyKey, asyncio.Task[None]] = {}
        self._closing = False

    @property
    def queue(self) -> SubmissionQueue:
        return self._queue

    def is_active(self, key: ConcurrencyKey) -> bool:
        return key in self._active or self._registry.is_busy(key)

    async def submit(
        self,
        actor_id: int,
        workspace: Path,
        text: str,
        origin: ReplyContext,
        resume_token: str | None = None,
    ) -> SubmitResult:
        """Start a run for the key, or queue ``text`` if one is in flight."""

        if self._closing:
            return SubmitResult(SubmitStatus.REJECTED)
        key = ConcurrencyKey(actor_id, workspace)
        if resume_token:
            self._sessions[key] = resume_token

        if self.is_active(key):
            depth = self._queue.enqueue(QueueEntry(payload=text, origin=origin, key=key))
            logger.info("Queued input for %s (depth=%d)", key, depth)
            await self._show_queue_depth(key, origin)
            return SubmitResult(SubmitStatus.QUEUED, depth)

        run = self._spawn(key, text, origin)
        self._active.add(key)
        self._loops[key] = asyncio.create_task(
            self._drain_loop(key, run, origin),
            name=f"drain:{key}",
        )
        return SubmitResult(SubmitStatus.STARTED)

    async def cancel(
        self,
        actor_id: int,
        workspace: Path,
        *,
        discard_queue: bool = False,
    ) -> bool:
        """Stop the live run for the key.

        Queued input still drains afterwards unless ``discard_queue`` is set.
        """

        key = ConcurrencyKey(actor_id, workspace)
        discarded = 0
        if discard_queue:
            discarded = self._queue.discard(key)
            if discarded:
                logger.info("Discarded %d queued input(s) for %s", discarded, key)
                await self._clear_queue_indicator(key)
        stopped = self._registry.cancel(key, TerminationReason.USER)
        return stopped or discarded > 0

    def force_drain(self, key: ConcurrencyKey) -> bool:
        """Cancel the in-flight run so queued input starts right away."""

        return self._registry.cancel(key, TerminationReason.USER)

    async def cancel_all(self, actor_id: int) -> int:
        """Stop every live run of the actor and drop its queued input."""

        for key in self._queue.keys():
            if key.actor_id == actor_id:
                self._queue.discard(key)
        cancelled = self._registry.cancel_all(actor_id)
        for key in [key for key in self._indicators if key.actor_id == actor_id]:
            await self._clear_queue_indicator(key)
        return cancelled

    async def shutdown(self) -> None:
        """Stop all runs and wait until every key is quiescent."""

        self._closing = True
        actors = {key.actor_id for key in [*self._active, *self._registry.live_keys()]}
        for actor_id in actors:
            await self.cancel_all(actor_id)
        loops = list(self._loops.values())
        if loops:
            await asyncio.gather(*loops, return_exceptions=True)
        for key in self._registry.live_keys():
            await self._registry.await_quiescence(key)

    def status(self, key: ConcurrencyKey) -> RelayStatus:
        return RelayStatus(
            running=self._registry.is_busy(key),
            queued=self._queue.depth(key),
            session_token=self._sessions.get(key),
            last_result=self._last_results.get(key),
        )

    def session_token(self, key: ConcurrencyKey) -> str | None:
        return self._sessions.get(key)

    def set_session(self, key: ConcurrencyKey, token: str) -> None:
        self._sessions[key] = token

    def reset_session(self, key: ConcurrencyKey) -> bool:
        return self._sessions.pop(key, None) is not None

    async def wait_idle(self, key: ConcurrencyKey) -> None:
        """Wait until the key's drain loop has finished."""

        loop = self._loops.get(key)
        if loop is not None:
            await asyncio.shield(loop)

    async def _drain_loop(self, key: ConcurrencyKey, run: AgentRun, origin: ReplyContext) -> None:
        try:
            while True:
                await self._render(key, run, origin)
                batch = [] if self._closing else self._queue.take_all(key)
                if not batch:
                    return
                logger.info("Draining %d queued input(s) for %s", len(batch), key)
                origin = batch[-1].origin
                run = self._spawn(key, combine_payloads(batch), origin)
                await self._clear_queue_indicator(key)
        finally:
            self._active.discard(key)
            self._loops.pop(key, None)

    def _spawn(self, key: ConcurrencyKey, payload: str, origin: ReplyContext) -> AgentRun:
        request = AgentRunRequest(
            prompt=payload,
            workspace=key.workspace,
            resume_token=self._sessions.get(key),
            chat_id=origin.chat_id,
            timeout_seconds=self._timeout_seconds,
        )
        return self._registry.spawn(key, request)

    async def _render(self, key: ConcurrencyKey, run: AgentRun, origin: ReplyContext) -> None:
        try:
            await self._chat.send_typing(origin.chat_id)
        except ChatError as error:
            logger.debug("Typing indicator failed for chat %s: %s", origin.chat_id, error)

        renderer = self._renderer_factory(origin, key)
        try:
            result = await renderer.consume(run)
        except Exception:
            logger.exception("Rendering failed for %s", key)
            self._registry.cancel(key, TerminationReason.USER)
            await run.handle.finished.wait()
            return

        self._last_results[key] = result
        if result.session_token:
            self._sessions[key] = result.session_token

    def _default_renderer(self, origin: ReplyContext, key: ConcurrencyKey) -> OutputRenderer:
        return OutputRenderer(
            self._chat,
            origin.chat_id,
            settings=self._render_settings,
            footer_label=key.workspace.name or str(key.workspace),
        )

    async def _show_queue_depth(self, key: ConcurrencyKey, origin: ReplyContext) -> None:
        async with self._indicator_locks[key]:
            depth = self._queue.depth(key)
            if depth == 0:
                return
            text = _queue_indicator_text(depth)
            ref = self._indicators.get(key)
            try:
                if ref is None:
                    self._indicators[key] = await self._chat.send_message(origin.chat_id, text)
                else:
                    await self._chat.edit_message(ref, text)
            except MessageNotModifiedError:
                return
            except ChatError as error:
                logger.warning("Failed to update queue indicator for %s: %s", key, error)

    async def _clear_queue_indicator(self, key: ConcurrencyKey) -> None:
        async with self._indicator_locks[key]:
            ref = self._indicators.pop(key, None)
            if ref is None:
                return
            try:
                await self._chat.delete_message(ref)
            except ChatError as error:
                logger.debug("Failed to delete queue indicator for %s: %s", key, error)


def _queue_indicator_text(depth: int) -> str:
    noun = "message" if depth == 1 else "messages"
    return (
        f"📥 Queued {depth} {noun}. They will be sent together when the current run finishes.\n"
        "/stop ends the current run now, /cancel also drops the queue."
    )


def build_relay_service(settings: Settings, chat: ChatClient) -> RelayService:
    """Wire the CLI backend, registry and service from settings."""

    backend = CliAgentBackend(
        command_template=settings.agent.command_template,
        resume_flag=settings.agent.resume_flag,
    )
    registry = ProcessRegistry(
        backend,
        timeout_seconds=settings.agent.timeout_seconds,
        graceful_shutdown_seconds=settings.agent.graceful_shutdown_seconds,
        stderr_max_chars=settings.agent.stderr_max_chars,
    )
    return RelayService(
        registry=registry,
        chat=chat,
        render_settings=settings.render,
        timeout_seconds=settings.agent.timeout_seconds,
    )
