"""Agent backend implementations."""

from queueboard.board.backend.base import (
    AgentBackend,
    AgentDispatchError,
    AgentReply,
    AgentSendRequest,
)
from queueboard.board.backend.cli_backend import CliAgentBackend
from queueboard.board.backend.gateway import GatewayAgentBackend

__all__ = [
    "AgentBackend",
    "AgentDispatchError",
    "AgentReply",
    "AgentSendRequest",
    "CliAgentBackend",
    "GatewayAgentBackend",
]
