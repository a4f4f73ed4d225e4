from pathlib import Path

import allure
from sqlalchemy import text

from queueboard.board.repository import BoardRepository

pytestmark = [
    allure.epic("Task Board"),
    allure.feature("Schema Migrations"),
]


def test_alembic_schema_is_initialized_to_head(tmp_path: Path) -> None:
    repository = BoardRepository(tmp_path / "migrations.db")
    repository.init_schema()

    with repository.engine.connect() as connection:
        version = connection.execute(text("SELECT version_num FROM alembic_version")).scalar_one()
        tables = connection.execute(
            text(
                """
                SELECT name
                FROM sqlite_master
                WHERE type = 'table' AND name != 'alembic_version'
                ORDER BY name
                """,
            ),
        ).scalars().all()
        journal_mode = connection.execute(text("PRAGMA journal_mode")).scalar_one()
        foreign_keys = connection.execute(text("PRAGMA foreign_keys")).scalar_one()

    assert version == "20261019_0002"
    assert tables == [
        "project_agents",
        "projects",
        "queue_templates",
        "queues",
        "task_comments",
        "task_history",
        "tasks",
        "transitions",
    ]
    assert str(journal_mode).lower() == "wal"
    assert foreign_keys == 1
    repository.close()


def test_init_schema_is_repeatable(tmp_path: Path) -> None:
    db_path = tmp_path / "repeat.db"
    first = BoardRepository(db_path)
    first.init_schema()
    project = first.seed_default_project()
    first.close()

    second = BoardRepository(db_path)
    second.init_schema()

    assert second.get_project(project.project_id) is not None
    second.close()
