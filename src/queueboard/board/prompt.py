"""Build the text sent to the agent for one task."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field

from queueboard.board.directives import DONE, STUCK
from queueboard.board.models import AuthorType, QueueView, TaskCommentView, TaskView

DESTINATIONS_HEADER = "Available destinations:"

_ROLE_BY_AUTHOR_TYPE = {
    AuthorType.HUMAN: "user",
    AuthorType.AGENT: "assistant",
}


@dataclass(slots=True)
class PromptContext:
    """Everything the prompt depends on; gathered by the executor."""

    task: TaskView
    comments: Sequence[TaskCommentView] = field(default_factory=list)
    project_system_prompt: str | None = None
    queue_system_prompt: str | None = None
    destinations: Sequence[QueueView] = field(default_factory=list)


def build_prompt(context: PromptContext) -> str:
    sections: list[str] = []
    if context.project_system_prompt and context.project_system_prompt.strip():
        sections.append(context.project_system_prompt.strip())
    if context.queue_system_prompt and context.queue_system_prompt.strip():
        sections.append(context.queue_system_prompt.strip())

    task_section = f"# Task: {context.task.title}"
    if context.task.description:
        task_section += f"\n\n{context.task.description.strip()}"
    sections.append(task_section)

    transcript = _render_transcript(context.comments)
    if transcript:
        sections.append(f"## Previous conversation\n\n{transcript}")

    sections.append(_render_routing(context.destinations))
    return "\n\n".join(sections) + "\n"


def _render_transcript(comments: Sequence[TaskCommentView]) -> str:
    lines = [
        f"[{_ROLE_BY_AUTHOR_TYPE.get(comment.author_type, 'user')}]: {comment.content}"
        for comment in comments
    ]
    return "\n".join(lines)


def _render_routing(destinations: Sequence[QueueView]) -> str:
    if not destinations:
        return (
            "## Routing\n\n"
            "When you have completed this task, end your reply with the line:\n"
            f"MOVE TO: {DONE}"
        )

    lines = ["## Routing", "", DESTINATIONS_HEADER]
    for queue in destinations:
        if queue.description:
            lines.append(f"- {queue.name}: {queue.description}")
        else:
            lines.append(f"- {queue.name}")
    lines.extend(
        [
            "",
            "When you have finished, end your reply with a line of the form",
            "MOVE TO: <queue name>",
            "using one of the destinations above. If you cannot decide where the task "
            f"belongs, end with MOVE TO: {STUCK}",
        ],
    )
    return "\n".join(lines)
