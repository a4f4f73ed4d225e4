"""JSON-RPC gateway backend for a remote conversational agent."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import Any
from uuid import uuid4

import httpx

from queueboard.board.backend.base import AgentDispatchError, AgentReply, AgentSendRequest
from queueboard.board.directives import extract_content, parse_move_directive

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_LIMIT = 5
DEFAULT_POLL_INTERVAL_SECONDS = 3.0
DEFAULT_REQUEST_TIMEOUT_SECONDS = 30.0


class GatewayAgentBackend:
    """Send prompts with `chat.send` and watch `chat.history` for the reply.

    A reply is final once the newest assistant message carries a routing
    directive, or the gateway reports the session is no longer running.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        url: str,
        token: str | None = None,
        history_limit: int = DEFAULT_HISTORY_LIMIT,
        poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
        request_timeout_seconds: float = DEFAULT_REQUEST_TIMEOUT_SECONDS,
        verify_tls: bool = True,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.url = url
        self.history_limit = history_limit
        self.poll_interval_seconds = poll_interval_seconds
        headers = {"Content-Type": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._client = httpx.Client(
            timeout=httpx.Timeout(request_timeout_seconds, connect=10.0),
            headers=headers,
            verify=verify_tls,
            transport=transport,
        )

    def close(self) -> None:
        self._client.close()

    def send(self, request: AgentSendRequest) -> AgentReply:
        deadline = time.monotonic() + request.timeout_seconds
        # A resumed claim reuses its idempotency key, so the gateway may dedupe
        # the send and the reply already sitting in history is the answer.
        baseline = (
            None
            if request.resume
            else _message_marker(self._last_assistant_message(request.session_key))
        )

        result = self._rpc(
            "chat.send",
            {
                "sessionKey": request.session_key,
                "message": request.message,
                "idempotencyKey": request.idempotency_key,
            },
        )
        inline = _inline_reply(result)
        if inline is not None:
            return AgentReply(content=inline)

        latest: Any = None
        while True:
            if request.cancel_requested is not None and request.cancel_requested():
                self._abort(request.session_key)
                return AgentReply(content=latest or "", cancelled=True)
            if time.monotonic() >= deadline:
                self._abort(request.session_key)
                return AgentReply(content=latest or "", timed_out=True)

            try:
                history = self._rpc(
                    "chat.history",
                    {"sessionKey": request.session_key, "limit": self.history_limit},
                )
            except AgentDispatchError as error:
                if not error.transient:
                    raise
                logger.warning("Gateway history poll failed for %s: %s", request.session_key, error)
                history = None

            if history is not None:
                message = _last_assistant(history)
                if message is not None and _message_marker(message) != baseline:
                    latest = message.get("content")
                    if parse_move_directive(latest) is not None or not _is_running(history):
                        return AgentReply(content=latest)

            self._sleep_until_next_poll(deadline=deadline, cancel_requested=request.cancel_requested)

    def _last_assistant_message(self, session_key: str) -> dict[str, Any] | None:
        try:
            history = self._rpc("chat.history", {"sessionKey": session_key, "limit": self.history_limit})
        except AgentDispatchError as error:
            if not error.transient:
                raise
            logger.warning("Could not read baseline history for %s: %s", session_key, error)
            return None
        return _last_assistant(history)

    def _abort(self, session_key: str) -> None:
        try:
            self._rpc("chat.abort", {"sessionKey": session_key})
        except AgentDispatchError as error:
            logger.warning("Failed to abort gateway session %s: %s", session_key, error)

    def _sleep_until_next_poll(
        self,
        *,
        deadline: float,
        cancel_requested: Callable[[], bool] | None,
    ) -> None:
        wake_at = min(deadline, time.monotonic() + self.poll_interval_seconds)
        while time.monotonic() < wake_at:
            if cancel_requested is not None and cancel_requested():
                return
            time.sleep(min(0.1, max(0.0, wake_at - time.monotonic())))

    def _rpc(self, method: str, params: dict[str, Any]) -> Any:
        payload = {"jsonrpc": "2.0", "id": str(uuid4()), "method": method, "params": params}
        try:
            response = self._client.post(self.url, json=payload)
        except httpx.TimeoutException as error:
            raise AgentDispatchError(f"Gateway request timed out: {method}", transient=True) from error
        except httpx.HTTPError as error:
            raise AgentDispatchError(f"Gateway request failed: {error}", transient=True) from error

        if not response.is_success:
            raise AgentDispatchError(
                f"Gateway returned HTTP {response.status_code} for {method}",
                transient=response.status_code >= 500,
            )
        try:
            data = response.json()
        except ValueError as error:
            raise AgentDispatchError(
                f"Gateway returned invalid JSON for {method}",
                transient=False,
            ) from error

        if not isinstance(data, dict):
            raise AgentDispatchError(f"Gateway returned malformed response for {method}", transient=False)
        error_payload = data.get("error")
        if error_payload:
            message = error_payload.get("message") if isinstance(error_payload, dict) else error_payload
            raise AgentDispatchError(f"Gateway RPC error: {message}", transient=False)
        return data.get("result")


def _last_assistant(history: Any) -> dict[str, Any] | None:
    if not isinstance(history, dict):
        return None
    messages = history.get("messages")
    if not isinstance(messages, list):
        return None
    for message in reversed(messages):
        if isinstance(message, dict) and message.get("role") == "assistant":
            return message
    return None


def _is_running(history: Any) -> bool:
    if not isinstance(history, dict):
        return True
    return bool(history.get("running", True))


def _message_marker(message: dict[str, Any] | None) -> tuple[Any, ...] | None:
    if message is None:
        return None
    if message.get("id") is not None:
        return ("id", message["id"])
    return ("content", message.get("timestamp"), extract_content(message.get("content")))


def _inline_reply(result: Any) -> Any:
    """Some gateways answer synchronously; return that reply when present."""

    if not isinstance(result, dict):
        return None
    reply = result.get("reply")
    if isinstance(reply, dict) and reply.get("role", "assistant") == "assistant":
        return reply.get("content")
    if isinstance(reply, (str, list)):
        return reply
    return None
