"""Backend interface for dispatching tasks to an external agent."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Protocol


class AgentDispatchError(RuntimeError):
    """Transport failure talking to the agent, with retryability hint."""

    def __init__(self, message: str, *, transient: bool) -> None:
        super().__init__(message)
        self.transient = transient


@dataclass(slots=True)
class AgentSendRequest:
    """Inputs required to dispatch one task prompt."""

    session_key: str
    message: str
    idempotency_key: str
    timeout_seconds: float
    cancel_requested: Callable[[], bool] | None = None
    # Set when re-sending a claim held before a restart; a reply may already exist.
    resume: bool = False


@dataclass(slots=True)
class AgentReply:
    """Raw agent output; `content` is a string or a list of content blocks."""

    content: Any
    timed_out: bool = False
    cancelled: bool = False


class AgentBackend(Protocol):
    """Protocol implemented by agent transports."""

    def send(self, request: AgentSendRequest) -> AgentReply:
        """Deliver the prompt and wait for the final reply.

        Raises `AgentDispatchError` on transport failure. Timeout and
        cancellation are reported on the reply, with partial output kept.
        """
