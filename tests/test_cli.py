from __future__ import annotations

import re
from pathlib import Path

import allure
import pytest
from click.testing import CliRunner

from queueboard.main import queueboard

pytestmark = [
    allure.epic("Task Board"),
    allure.feature("Board CLI"),
]

_QUEUE_LINE_RE = re.compile(r"^\s+(\S+) \[(\d+)\] (.+?) owner=(\w+)")


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for key in ("QUEUEBOARD_DB_PATH", "QUEUEBOARD_BACKEND", "QUEUEBOARD_CLI_COMMAND"):
        monkeypatch.delenv(key, raising=False)


def _invoke(runner: CliRunner, *args: str) -> str:
    result = runner.invoke(queueboard, list(args))
    assert result.exit_code == 0, result.output
    return result.output


def _seed(runner: CliRunner, db_path: Path) -> tuple[str, dict[str, str]]:
    output = _invoke(runner, "project", "seed", "--db-path", str(db_path))
    first, *queue_lines = output.splitlines()
    assert first.startswith("Default project: ")
    project_id = first.split()[2]
    queues = {}
    for line in queue_lines:
        match = _QUEUE_LINE_RE.match(line)
        assert match is not None, line
        queues[match.group(3)] = match.group(1)
    return project_id, queues


def _create_task(runner: CliRunner, db_path: Path, project_id: str, queue_id: str, title: str) -> str:
    output = _invoke(
        runner,
        "task",
        "create",
        project_id,
        queue_id,
        title,
        "--db-path",
        str(db_path),
        "--priority",
        "2",
    )
    assert output.startswith("Task created: ")
    return output.split()[2]


def test_cli_seed_is_idempotent(tmp_path: Path) -> None:
    runner = CliRunner()
    db_path = tmp_path / "board.db"

    project_id, queues = _seed(runner, db_path)
    again, _ = _seed(runner, db_path)

    assert again == project_id
    assert list(queues) == ["Todo", "In Progress", "Done"]
    listing = _invoke(runner, "project", "list", "--db-path", str(db_path))
    assert listing.startswith("Projects: 1")
    transitions = _invoke(runner, "transition", "list", project_id, "--db-path", str(db_path))
    assert transitions.startswith("Transitions: 5")


def test_cli_task_lifecycle(tmp_path: Path) -> None:
    runner = CliRunner()
    db_path = tmp_path / "board.db"
    project_id, queues = _seed(runner, db_path)
    task_id = _create_task(runner, db_path, project_id, queues["Todo"], "Write release notes")

    moved = _invoke(
        runner,
        "task",
        "move",
        task_id,
        queues["In Progress"],
        "--db-path",
        str(db_path),
        "--note",
        "ready",
    )
    assert moved.startswith(f"Task moved: {task_id}")

    _invoke(runner, "task", "comment", task_id, "Mention the CLI", "--db-path", str(db_path))
    inspected = _invoke(runner, "task", "inspect", task_id, "--db-path", str(db_path))
    assert "Title: Write release notes" in inspected
    assert "Queue: In Progress" in inspected
    assert "History: 1" in inspected
    assert "actor=human note=ready" in inspected
    assert "[human:human] Mention the CLI" in inspected

    listing = _invoke(runner, "task", "list", "--project-id", project_id, "--db-path", str(db_path))
    assert listing.startswith("Tasks: 1")
    assert "priority=2" in listing

    deleted = _invoke(runner, "task", "delete", task_id, "--db-path", str(db_path))
    assert deleted.strip() == f"Task deleted: {task_id}"


def test_cli_reports_business_rule_failures(tmp_path: Path) -> None:
    runner = CliRunner()
    db_path = tmp_path / "board.db"
    project_id, queues = _seed(runner, db_path)
    _create_task(runner, db_path, project_id, queues["Todo"], "Pinned down")

    result = runner.invoke(queueboard, ["queue", "delete", queues["Todo"], "--db-path", str(db_path)])

    assert result.exit_code != 0
    assert "constraint_violation" in result.output

    missing = runner.invoke(
        queueboard,
        ["task", "move", "nope", queues["Done"], "--db-path", str(db_path)],
    )
    assert missing.exit_code != 0
    assert "not_found" in missing.output


def test_cli_queue_reorder_and_templates(tmp_path: Path) -> None:
    runner = CliRunner()
    db_path = tmp_path / "board.db"
    project_id, queues = _seed(runner, db_path)

    _invoke(
        runner,
        "queue",
        "reorder",
        f"{queues['Todo']}:5",
        "--db-path",
        str(db_path),
    )
    listing = _invoke(runner, "queue", "list", project_id, "--db-path", str(db_path))
    names = [
        match.group(3)
        for match in map(_QUEUE_LINE_RE.match, listing.splitlines())
        if match is not None
    ]
    assert names == ["In Progress", "Done", "Todo"]

    created = _invoke(
        runner,
        "template",
        "create",
        "Review flow",
        "--queue",
        "Triage:human",
        "--queue",
        "Agent:assistant:2",
        "--db-path",
        str(db_path),
    )
    template_id = created.split()[3]
    applied = _invoke(runner, "template", "apply", template_id, project_id, "--db-path", str(db_path))
    assert applied.startswith("Queues added: 2")
    assert "[6] Triage owner=human" in applied
    assert "[7] Agent owner=assistant agent_limit=2" in applied

    bad = runner.invoke(
        queueboard,
        ["template", "create", "Broken", "--queue", "Oops", "--db-path", str(db_path)],
    )
    assert bad.exit_code != 0


def test_cli_agent_allow_list(tmp_path: Path) -> None:
    runner = CliRunner()
    db_path = tmp_path / "board.db"
    project_id, _ = _seed(runner, db_path)

    assert _invoke(runner, "agent", "list", project_id, "--db-path", str(db_path)).startswith(
        "Agents: any",
    )
    _invoke(runner, "agent", "assign", project_id, "alpha", "--db-path", str(db_path))
    listing = _invoke(runner, "agent", "list", project_id, "--db-path", str(db_path))
    assert listing.splitlines() == ["Agents: 1", "  alpha"]
    _invoke(runner, "agent", "remove", project_id, "alpha", "--db-path", str(db_path))


def test_cli_executor_runs_echo_agent(tmp_path: Path, echo_agent_command: str) -> None:
    runner = CliRunner()
    db_path = tmp_path / "board.db"
    project_id, queues = _seed(runner, db_path)
    task_id = _create_task(runner, db_path, project_id, queues["In Progress"], "Ship it")

    output = _invoke(
        runner,
        "executor",
        "run",
        project_id,
        "--db-path",
        str(db_path),
        "--once",
        "--backend",
        "cli",
        "--cli-command",
        echo_agent_command,
    )

    assert output.strip() == (
        "Executor summary: processed=1 moved=1 released=0 failed=0 timeouts=0 idle_polls=0"
    )
    inspected = _invoke(runner, "task", "inspect", task_id, "--db-path", str(db_path))
    assert "Queue: Done" in inspected
    assert "[agent:main] Handled: Ship it" in inspected


def test_cli_executor_requires_backend_configuration(tmp_path: Path) -> None:
    runner = CliRunner()
    db_path = tmp_path / "board.db"
    project_id, _ = _seed(runner, db_path)

    result = runner.invoke(
        queueboard,
        ["executor", "run", project_id, "--db-path", str(db_path), "--once", "--backend", "cli"],
    )

    assert result.exit_code != 0
    assert "QUEUEBOARD_CLI_COMMAND is required" in result.output
