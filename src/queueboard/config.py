"""Runtime configuration for the board and its executor."""

from __future__ import annotations

import os
import string
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse

BACKEND_KINDS = ("gateway", "cli")
CLI_COMMAND_PLACEHOLDERS = frozenset({"prompt", "prompt_file", "session_key"})


@dataclass(slots=True)
class ExecutorSettings:
    """Executor loop and dispatch settings."""

    agent_id: str = "main"
    poll_interval_seconds: float = 5.0
    execution_timeout_seconds: float = 1800.0
    session_key_prefix: str = "queueboard"
    backend: str = "gateway"
    cli_command_template: str = ""


@dataclass(slots=True)
class GatewaySettings:
    """Remote agent gateway settings."""

    url: str = ""
    token: str | None = None
    history_limit: int = 5
    poll_interval_seconds: float = 3.0
    request_timeout_seconds: float = 30.0
    verify_tls: bool = True


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".queueboard.db")
    sqlite_busy_timeout_ms: int = 5_000
    executor: ExecutorSettings = field(default_factory=ExecutorSettings)
    gateway: GatewaySettings = field(default_factory=GatewaySettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        busy_timeout_ms = int(os.getenv("QUEUEBOARD_SQLITE_BUSY_TIMEOUT_MS", "5000"))
        if busy_timeout_ms <= 0:
            raise ValueError("QUEUEBOARD_SQLITE_BUSY_TIMEOUT_MS must be > 0.")
        cli_command_template = os.getenv("QUEUEBOARD_CLI_COMMAND", "")
        if cli_command_template.strip():
            _validate_cli_command_template(cli_command_template)

        return cls(
            db_path=db_path or Path(os.getenv("QUEUEBOARD_DB_PATH", ".queueboard.db")),
            sqlite_busy_timeout_ms=busy_timeout_ms,
            executor=ExecutorSettings(
                agent_id=os.getenv("QUEUEBOARD_AGENT_ID", "main"),
                poll_interval_seconds=float(os.getenv("QUEUEBOARD_POLL_INTERVAL_SECONDS", "5.0")),
                execution_timeout_seconds=float(
                    os.getenv("QUEUEBOARD_EXECUTION_TIMEOUT_SECONDS", "1800"),
                ),
                session_key_prefix=os.getenv("QUEUEBOARD_SESSION_KEY_PREFIX", "queueboard"),
                backend=os.getenv("QUEUEBOARD_BACKEND", "gateway").strip().lower(),
                cli_command_template=cli_command_template,
            ),
            gateway=GatewaySettings(
                url=os.getenv("QUEUEBOARD_GATEWAY_URL", "").strip(),
                token=os.getenv("QUEUEBOARD_GATEWAY_TOKEN") or None,
                history_limit=int(os.getenv("QUEUEBOARD_GATEWAY_HISTORY_LIMIT", "5")),
                poll_interval_seconds=float(
                    os.getenv("QUEUEBOARD_GATEWAY_POLL_INTERVAL_SECONDS", "3.0"),
                ),
                request_timeout_seconds=float(
                    os.getenv("QUEUEBOARD_GATEWAY_REQUEST_TIMEOUT_SECONDS", "30.0"),
                ),
                verify_tls=_env_bool("QUEUEBOARD_GATEWAY_VERIFY_TLS", default=True),
            ),
        )

    def validate_for_executor(self) -> None:
        """Raise configuration error if executor settings cannot work."""

        executor = self.executor
        if not executor.agent_id.strip():
            raise ValueError("QUEUEBOARD_AGENT_ID must not be empty.")
        if executor.poll_interval_seconds <= 0:
            raise ValueError("QUEUEBOARD_POLL_INTERVAL_SECONDS must be > 0.")
        if executor.execution_timeout_seconds <= 0:
            raise ValueError("QUEUEBOARD_EXECUTION_TIMEOUT_SECONDS must be > 0.")
        if executor.backend not in BACKEND_KINDS:
            raise ValueError(
                f"QUEUEBOARD_BACKEND must be one of {', '.join(BACKEND_KINDS)}: "
                f"{executor.backend!r}",
            )

        if executor.backend == "cli":
            if not executor.cli_command_template.strip():
                raise ValueError("QUEUEBOARD_CLI_COMMAND is required for the cli backend.")
            _validate_cli_command_template(executor.cli_command_template)
            return

        _validate_gateway_url(self.gateway.url)
        if self.gateway.history_limit <= 0:
            raise ValueError("QUEUEBOARD_GATEWAY_HISTORY_LIMIT must be > 0.")
        if self.gateway.poll_interval_seconds < 0:
            raise ValueError("QUEUEBOARD_GATEWAY_POLL_INTERVAL_SECONDS must be >= 0.")


def _validate_cli_command_template(template: str) -> None:
    try:
        fields = {
            field_name
            for _, field_name, _, _ in string.Formatter().parse(template)
            if field_name is not None
        }
    except ValueError as error:
        raise ValueError(f"Malformed QUEUEBOARD_CLI_COMMAND: {error}") from error
    unsupported = sorted(fields - CLI_COMMAND_PLACEHOLDERS)
    if unsupported:
        raise ValueError(
            f"QUEUEBOARD_CLI_COMMAND uses unsupported placeholder(s): {', '.join(unsupported)}",
        )
    if not fields & {"prompt", "prompt_file"}:
        raise ValueError("QUEUEBOARD_CLI_COMMAND must include {prompt} or {prompt_file}.")


def _validate_gateway_url(value: str) -> None:
    if not value:
        raise ValueError("QUEUEBOARD_GATEWAY_URL is required for the gateway backend.")
    parsed = urlparse(value)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ValueError(
            "Invalid QUEUEBOARD_GATEWAY_URL: "
            f"{value!r}. Expected an absolute URL with http:// or https:// scheme.",
        )


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
