from __future__ import annotations

from pathlib import Path

import allure
import pytest

from queueboard.config import ExecutorSettings, GatewaySettings, Settings

pytestmark = [
    allure.epic("Agent Backends"),
    allure.feature("Runtime Configuration"),
]

_ENV_KEYS = (
    "QUEUEBOARD_DB_PATH",
    "QUEUEBOARD_SQLITE_BUSY_TIMEOUT_MS",
    "QUEUEBOARD_AGENT_ID",
    "QUEUEBOARD_POLL_INTERVAL_SECONDS",
    "QUEUEBOARD_EXECUTION_TIMEOUT_SECONDS",
    "QUEUEBOARD_SESSION_KEY_PREFIX",
    "QUEUEBOARD_BACKEND",
    "QUEUEBOARD_CLI_COMMAND",
    "QUEUEBOARD_GATEWAY_URL",
    "QUEUEBOARD_GATEWAY_TOKEN",
    "QUEUEBOARD_GATEWAY_HISTORY_LIMIT",
    "QUEUEBOARD_GATEWAY_POLL_INTERVAL_SECONDS",
    "QUEUEBOARD_GATEWAY_REQUEST_TIMEOUT_SECONDS",
    "QUEUEBOARD_GATEWAY_VERIFY_TLS",
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for key in _ENV_KEYS:
        monkeypatch.delenv(key, raising=False)


def test_from_env_defaults() -> None:
    settings = Settings.from_env()

    assert settings.db_path == Path(".queueboard.db")
    assert settings.sqlite_busy_timeout_ms == 5000
    assert settings.executor.agent_id == "main"
    assert settings.executor.poll_interval_seconds == 5.0
    assert settings.executor.execution_timeout_seconds == 1800.0
    assert settings.executor.session_key_prefix == "queueboard"
    assert settings.executor.backend == "gateway"
    assert settings.gateway.history_limit == 5
    assert settings.gateway.verify_tls is True


def test_from_env_reads_overrides(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("QUEUEBOARD_DB_PATH", "/tmp/board.db")
    monkeypatch.setenv("QUEUEBOARD_AGENT_ID", "reviewer")
    monkeypatch.setenv("QUEUEBOARD_POLL_INTERVAL_SECONDS", "1.5")
    monkeypatch.setenv("QUEUEBOARD_BACKEND", " CLI ")
    monkeypatch.setenv("QUEUEBOARD_CLI_COMMAND", "agent --prompt-file {prompt_file}")
    monkeypatch.setenv("QUEUEBOARD_GATEWAY_TOKEN", "t0ken")
    monkeypatch.setenv("QUEUEBOARD_GATEWAY_VERIFY_TLS", "off")

    settings = Settings.from_env()

    assert settings.db_path == Path("/tmp/board.db")
    assert settings.executor.agent_id == "reviewer"
    assert settings.executor.poll_interval_seconds == 1.5
    assert settings.executor.backend == "cli"
    assert settings.executor.cli_command_template == "agent --prompt-file {prompt_file}"
    assert settings.gateway.token == "t0ken"
    assert settings.gateway.verify_tls is False


def test_from_env_explicit_db_path_wins(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("QUEUEBOARD_DB_PATH", "/tmp/env.db")

    assert Settings.from_env(db_path=Path("cli.db")).db_path == Path("cli.db")


def test_from_env_rejects_non_positive_sqlite_busy_timeout(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("QUEUEBOARD_SQLITE_BUSY_TIMEOUT_MS", "0")

    with pytest.raises(ValueError, match="SQLITE_BUSY_TIMEOUT_MS"):
        Settings.from_env()


def test_from_env_rejects_invalid_boolean(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("QUEUEBOARD_GATEWAY_VERIFY_TLS", "maybe")

    with pytest.raises(ValueError, match="Invalid boolean value"):
        Settings.from_env()


def test_from_env_rejects_unsupported_command_placeholder(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("QUEUEBOARD_CLI_COMMAND", "agent {prompt} --model {model}")

    with pytest.raises(ValueError, match="unsupported placeholder"):
        Settings.from_env()


def test_from_env_rejects_command_without_prompt(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("QUEUEBOARD_CLI_COMMAND", "agent --session {session_key}")

    with pytest.raises(ValueError, match="must include"):
        Settings.from_env()


def test_validate_for_executor_requires_gateway_url() -> None:
    settings = Settings()

    with pytest.raises(ValueError, match="QUEUEBOARD_GATEWAY_URL is required"):
        settings.validate_for_executor()


def test_validate_for_executor_rejects_relative_gateway_url() -> None:
    settings = Settings(gateway=GatewaySettings(url="gateway.local/rpc"))

    with pytest.raises(ValueError, match="Invalid QUEUEBOARD_GATEWAY_URL"):
        settings.validate_for_executor()


def test_validate_for_executor_accepts_gateway_url() -> None:
    Settings(gateway=GatewaySettings(url="http://127.0.0.1:18789/rpc")).validate_for_executor()


def test_validate_for_executor_requires_cli_command() -> None:
    settings = Settings(executor=ExecutorSettings(backend="cli"))

    with pytest.raises(ValueError, match="QUEUEBOARD_CLI_COMMAND is required"):
        settings.validate_for_executor()


def test_validate_for_executor_rejects_unknown_backend() -> None:
    settings = Settings(executor=ExecutorSettings(backend="carrier-pigeon"))

    with pytest.raises(ValueError, match="QUEUEBOARD_BACKEND must be one of"):
        settings.validate_for_executor()


def test_validate_for_executor_rejects_non_positive_intervals() -> None:
    with pytest.raises(ValueError, match="POLL_INTERVAL_SECONDS must be > 0"):
        Settings(executor=ExecutorSettings(poll_interval_seconds=0)).validate_for_executor()
    with pytest.raises(ValueError, match="EXECUTION_TIMEOUT_SECONDS must be > 0"):
        Settings(executor=ExecutorSettings(execution_timeout_seconds=0)).validate_for_executor()
