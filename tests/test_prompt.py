from __future__ import annotations

from datetime import UTC, datetime

import allure

from queueboard.board.models import (
    AuthorType,
    OwnerType,
    QueueView,
    TaskCommentView,
    TaskView,
)
from queueboard.board.prompt import DESTINATIONS_HEADER, PromptContext, build_prompt

pytestmark = [
    allure.epic("Task Board"),
    allure.feature("Prompt Assembly"),
]

_NOW = datetime(2026, 10, 19, 9, 0, tzinfo=UTC)


def _task(description: str | None = "Collect error rates for the last week.") -> TaskView:
    return TaskView(
        task_id="t1",
        project_id="p1",
        queue_id="q-work",
        title="Weekly report",
        description=description,
        priority=0,
        session_key=None,
        assigned_agent=None,
        claimed_at=None,
        error=None,
        error_at=None,
        created_at=_NOW,
        updated_at=_NOW,
    )


def _queue(name: str, description: str | None = None) -> QueueView:
    return QueueView(
        queue_id=f"q-{name.lower()}",
        project_id="p1",
        name=name,
        owner_type=OwnerType.HUMAN,
        description=description,
        system_prompt=None,
        position=0,
        agent_limit=1,
        created_at=_NOW,
        updated_at=_NOW,
    )


def _comment(comment_id: int, author_type: AuthorType, content: str) -> TaskCommentView:
    return TaskCommentView(
        id=comment_id,
        task_id="t1",
        author="someone",
        author_type=author_type,
        content=content,
        created_at=_NOW,
    )


def test_prompt_orders_system_prompts_task_and_routing() -> None:
    prompt = build_prompt(
        PromptContext(
            task=_task(),
            project_system_prompt="You maintain the ops board.",
            queue_system_prompt="Be brief.",
            destinations=[_queue("Review", "Human check"), _queue("Archive")],
        ),
    )

    project_at = prompt.index("You maintain the ops board.")
    queue_at = prompt.index("Be brief.")
    task_at = prompt.index("# Task: Weekly report")
    routing_at = prompt.index("## Routing")
    assert project_at < queue_at < task_at < routing_at
    assert "Collect error rates for the last week." in prompt
    assert DESTINATIONS_HEADER in prompt
    assert "- Review: Human check" in prompt
    assert "- Archive\n" in prompt
    assert "MOVE TO: <queue name>" in prompt
    assert "MOVE TO: STUCK" in prompt


def test_prompt_without_destinations_asks_for_done() -> None:
    prompt = build_prompt(PromptContext(task=_task(description=None)))

    assert prompt.startswith("# Task: Weekly report")
    assert DESTINATIONS_HEADER not in prompt
    assert "MOVE TO: DONE" in prompt


def test_prompt_renders_previous_conversation() -> None:
    prompt = build_prompt(
        PromptContext(
            task=_task(),
            comments=[
                _comment(1, AuthorType.HUMAN, "Please include p95 latency."),
                _comment(2, AuthorType.AGENT, "Added p95 latency."),
            ],
        ),
    )

    assert "## Previous conversation" in prompt
    assert "[user]: Please include p95 latency.\n[assistant]: Added p95 latency." in prompt


def test_prompt_skips_blank_system_prompts_and_empty_history() -> None:
    prompt = build_prompt(
        PromptContext(task=_task(), project_system_prompt="   ", queue_system_prompt=""),
    )

    assert prompt.startswith("# Task: Weekly report")
    assert "## Previous conversation" not in prompt
