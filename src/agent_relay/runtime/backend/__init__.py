"""Agent process launchers."""

from agent_relay.runtime.backend.base import AgentBackend, AgentRunRequest
from agent_relay.runtime.backend.cli_backend import (
    CliAgentBackend,
    build_run_args,
    terminate_process,
)

__all__ = [
    "AgentBackend",
    "AgentRunRequest",
    "CliAgentBackend",
    "build_run_args",
    "terminate_process",
]
