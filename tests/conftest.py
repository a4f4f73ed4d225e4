"""Shared test fixtures."""

from __future__ import annotations

import sys
from collections.abc import Iterator
from pathlib import Path

import pytest

from queueboard.board.repository import BoardRepository

ECHO_AGENT_COMMAND_TEMPLATE = (
    f"{sys.executable} -m queueboard.board.backend.echo_agent --prompt-file {{prompt_file}}"
)


@pytest.fixture()
def repository(tmp_path: Path) -> Iterator[BoardRepository]:
    """Migrated board repository on a throwaway SQLite file."""

    repo = BoardRepository(tmp_path / "board.db")
    repo.init_schema()
    try:
        yield repo
    finally:
        repo.close()


@pytest.fixture()
def echo_agent_command() -> str:
    return ECHO_AGENT_COMMAND_TEMPLATE
