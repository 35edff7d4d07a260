"""Exceptions raised by the agent runtime."""

from __future__ import annotations

from agent_relay.runtime.models import ConcurrencyKey


class AgentBusyError(RuntimeError):
    """A run is already live for the key."""

    def __init__(self, key: ConcurrencyKey) -> None:
        super().__init__(f"An agent run is already active for {key}.")
        self.key = key


class BackendStartError(RuntimeError):
    """Agent process could not be launched, with retryability hint."""

    def __init__(self, message: str, *, transient: bool) -> None:
        super().__init__(message)
        self.transient = transient
