"""Subprocess-based launcher for CLI agents."""

from __future__ import annotations

import asyncio
import logging
import os
import shlex
import signal

from agent_relay.runtime.backend.base import AgentRunRequest
from agent_relay.runtime.errors import BackendStartError

logger = logging.getLogger(__name__)

# Set by the agent CLI inside its own shells; a nested agent refuses to start when inherited.
_STRIPPED_ENV_VARS = ("CLAUDECODE",)


class CliAgentBackend:
    """Launch the agent from a command template in the run's workspace."""

    def __init__(self, *, command_template: str, resume_flag: str = "--resume") -> None:
        self.command_template = command_template
        self.resume_flag = resume_flag

    async def start(self, request: AgentRunRequest) -> asyncio.subprocess.Process:
        run_args = build_run_args(
            command_template=self.command_template,
            prompt=request.prompt,
            resume_flag=self.resume_flag,
            resume_token=request.resume_token,
        )

        env = os.environ.copy()
        for name in _STRIPPED_ENV_VARS:
            env.pop(name, None)
        if request.chat_id is not None:
            env["AGENT_RELAY_CHAT_ID"] = str(request.chat_id)

        logger.info(
            "Starting agent: command=%s workspace=%s resume=%s",
            run_args[0],
            request.workspace,
            request.resume_token or "-",
        )
        try:
            return await asyncio.create_subprocess_exec(
                *run_args,
                cwd=str(request.workspace),
                env=env,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
            )
        except FileNotFoundError as error:
            raise BackendStartError(
                f"Agent command not found: {run_args[0]}",
                transient=False,
            ) from error
        except NotADirectoryError as error:
            raise BackendStartError(
                f"Workspace is not a directory: {request.workspace}",
                transient=False,
            ) from error
        except OSError as error:
            raise BackendStartError(
                f"Agent failed to start: {error}",
                transient=True,
            ) from error


def build_run_args(
    *,
    command_template: str,
    prompt: str,
    resume_flag: str,
    resume_token: str | None,
) -> list[str]:
    """Render the command template into an argv list."""

    stripped = command_template.strip()
    if not stripped:
        raise BackendStartError("Agent command template is empty.", transient=False)
    if "{prompt}" not in stripped:
        raise BackendStartError(
            "Agent command template must include {prompt}.",
            transient=False,
        )

    try:
        rendered = stripped.format(prompt=shlex.quote(prompt))
    except (KeyError, IndexError) as error:
        raise BackendStartError(
            f"Unsupported command template placeholder: {error}",
            transient=False,
        ) from error

    argv = shlex.split(rendered)
    if not argv:
        raise BackendStartError("Agent command template rendered empty command.", transient=False)
    if resume_token:
        argv.extend([resume_flag, resume_token])
    return argv


async def terminate_process(
    process: asyncio.subprocess.Process,
    *,
    grace_seconds: float,
) -> None:
    """Ask the process group to stop, then kill it once the grace period runs out.

    The group is signalled even when the leader has already exited: children
    left in it can still hold the output pipes open.
    """

    if process.returncode is not None:
        _signal_group(process, signal.SIGKILL)
        return
    _signal_group(process, signal.SIGTERM)
    try:
        await asyncio.wait_for(process.wait(), timeout=max(0.0, grace_seconds))
    except TimeoutError:
        logger.warning("Agent pid=%s ignored SIGTERM, killing", process.pid)
        _signal_group(process, signal.SIGKILL)
        await process.wait()
        return
    _signal_group(process, signal.SIGKILL)


def _signal_group(process: asyncio.subprocess.Process, signum: signal.Signals) -> None:
    try:
        os.killpg(process.pid, signum)
    except ProcessLookupError:
        return
    except OSError:
        if process.returncode is not None:
            return
        try:
            process.send_signal(signum)
        except ProcessLookupError:
            return
