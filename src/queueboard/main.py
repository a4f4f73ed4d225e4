"""CLI entrypoint for queueboard."""

import logging
from collections.abc import Callable
from pathlib import Path

import rich_click as click

from queueboard import __version__
from queueboard.board.controllers import (
    AgentCommand,
    BoardCliController,
    EntityCommand,
    ExecutorRunCommand,
    ProjectCreateCommand,
    ProjectSeedCommand,
    ProjectUpdateCommand,
    QueueCreateCommand,
    QueueReorderCommand,
    QueueUpdateCommand,
    TaskCommentCommand,
    TaskCreateCommand,
    TaskListCommand,
    TaskMoveCommand,
    TaskUpdateCommand,
    TemplateApplyCommand,
    TemplateCreateCommand,
    TransitionCreateCommand,
)

click.rich_click.USE_MARKDOWN = True
BOARD_CONTROLLER = BoardCliController()

db_path_option = click.option(
    "--db-path",
    type=click.Path(path_type=Path),
    default=None,
    help="SQLite DB path (defaults to QUEUEBOARD_DB_PATH or .queueboard.db).",
)


@click.group()
@click.version_option(version=__version__, prog_name="queueboard")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Logging verbosity.",
)
def queueboard(log_level: str) -> None:
    """Task board where humans and an AI agent move work through queues."""

    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


# -- project ------------------------------------------------------------------


@queueboard.group()
def project() -> None:
    """Project commands."""


@project.command("create")
@db_path_option
@click.argument("name")
@click.option("--system-prompt", default=None, help="Prepended to every task prompt.")
@click.option("--strict/--free", "strict", default=False, show_default=True, help="Transition mode.")
@click.option(
    "--max-concurrent-agents",
    type=click.IntRange(min=0),
    default=0,
    show_default=True,
    help="Project-wide cap on claimed tasks (0 = unlimited).",
)
@click.option("--pinned/--no-pinned", default=False, show_default=True)
def project_create(  # noqa: PLR0913
    db_path: Path | None,
    name: str,
    system_prompt: str | None,
    strict: bool,
    max_concurrent_agents: int,
    pinned: bool,
) -> None:
    """Create a project."""

    _run(
        lambda: BOARD_CONTROLLER.create_project(
            ProjectCreateCommand(
                db_path=db_path,
                name=name,
                system_prompt=system_prompt,
                strict_transitions=strict,
                max_concurrent_agents=max_concurrent_agents,
                pinned=pinned,
            ),
        ),
    )


@project.command("list")
@db_path_option
def project_list(db_path: Path | None) -> None:
    """List projects: pinned first, then most recently opened."""

    _run(lambda: BOARD_CONTROLLER.list_projects(EntityCommand(db_path=db_path, entity_id="")))


@project.command("show")
@db_path_option
@click.argument("project_id")
def project_show(db_path: Path | None, project_id: str) -> None:
    """Show queues, transitions and agents of a project."""

    _run(lambda: BOARD_CONTROLLER.show_project(EntityCommand(db_path=db_path, entity_id=project_id)))


@project.command("update")
@db_path_option
@click.argument("project_id")
@click.option("--name", default=None)
@click.option("--system-prompt", default=None, help="Pass an empty string to clear.")
@click.option("--strict/--free", "strict", default=None, help="Transition mode.")
@click.option("--max-concurrent-agents", type=click.IntRange(min=0), default=None)
@click.option("--pinned/--no-pinned", default=None)
def project_update(  # noqa: PLR0913
    db_path: Path | None,
    project_id: str,
    name: str | None,
    system_prompt: str | None,
    strict: bool | None,
    max_concurrent_agents: int | None,
    pinned: bool | None,
) -> None:
    """Update project fields."""

    _run(
        lambda: BOARD_CONTROLLER.update_project(
            ProjectUpdateCommand(
                db_path=db_path,
                project_id=project_id,
                name=name,
                system_prompt=system_prompt,
                strict_transitions=strict,
                max_concurrent_agents=max_concurrent_agents,
                pinned=pinned,
            ),
        ),
    )


@project.command("delete")
@db_path_option
@click.argument("project_id")
def project_delete(db_path: Path | None, project_id: str) -> None:
    """Delete a project with its queues and tasks."""

    _run(lambda: BOARD_CONTROLLER.delete_project(EntityCommand(db_path=db_path, entity_id=project_id)))


@project.command("seed")
@db_path_option
@click.option(
    "--back-edges/--no-back-edges",
    default=True,
    show_default=True,
    help="Also create human back-navigation transitions.",
)
def project_seed(db_path: Path | None, back_edges: bool) -> None:
    """Create the default Todo / In Progress / Done pipeline (idempotent)."""

    _run(
        lambda: BOARD_CONTROLLER.seed(
            ProjectSeedCommand(db_path=db_path, include_back_edges=back_edges),
        ),
    )


# -- queue --------------------------------------------------------------------


@queueboard.group()
def queue() -> None:
    """Queue commands."""


@queue.command("create")
@db_path_option
@click.argument("project_id")
@click.argument("name")
@click.option(
    "--owner",
    type=click.Choice(["human", "assistant"], case_sensitive=False),
    required=True,
    help="Who acts on tasks in this queue.",
)
@click.option("--description", default=None)
@click.option("--system-prompt", default=None)
@click.option("--position", type=int, default=None, help="Defaults to after the last queue.")
@click.option(
    "--agent-limit",
    type=click.IntRange(min=0),
    default=1,
    show_default=True,
    help="Max simultaneously claimed tasks (0 = unlimited).",
)
def queue_create(  # noqa: PLR0913
    db_path: Path | None,
    project_id: str,
    name: str,
    owner: str,
    description: str | None,
    system_prompt: str | None,
    position: int | None,
    agent_limit: int,
) -> None:
    """Create a queue in a project."""

    _run(
        lambda: BOARD_CONTROLLER.create_queue(
            QueueCreateCommand(
                db_path=db_path,
                project_id=project_id,
                name=name,
                owner_type=owner,
                description=description,
                system_prompt=system_prompt,
                position=position,
                agent_limit=agent_limit,
            ),
        ),
    )


@queue.command("list")
@db_path_option
@click.argument("project_id")
def queue_list(db_path: Path | None, project_id: str) -> None:
    """List queues of a project in position order."""

    _run(lambda: BOARD_CONTROLLER.list_queues(EntityCommand(db_path=db_path, entity_id=project_id)))


@queue.command("update")
@db_path_option
@click.argument("queue_id")
@click.option("--name", default=None)
@click.option("--owner", type=click.Choice(["human", "assistant"], case_sensitive=False), default=None)
@click.option("--description", default=None)
@click.option("--system-prompt", default=None)
@click.option("--agent-limit", type=click.IntRange(min=0), default=None)
def queue_update(  # noqa: PLR0913
    db_path: Path | None,
    queue_id: str,
    name: str | None,
    owner: str | None,
    description: str | None,
    system_prompt: str | None,
    agent_limit: int | None,
) -> None:
    """Update queue fields."""

    _run(
        lambda: BOARD_CONTROLLER.update_queue(
            QueueUpdateCommand(
                db_path=db_path,
                queue_id=queue_id,
                name=name,
                owner_type=owner,
                description=description,
                system_prompt=system_prompt,
                agent_limit=agent_limit,
            ),
        ),
    )


@queue.command("delete")
@db_path_option
@click.argument("queue_id")
def queue_delete(db_path: Path | None, queue_id: str) -> None:
    """Delete an empty queue (never the last one of a project)."""

    _run(lambda: BOARD_CONTROLLER.delete_queue(EntityCommand(db_path=db_path, entity_id=queue_id)))


@queue.command("reorder")
@db_path_option
@click.argument("entries", nargs=-1, required=True)
def queue_reorder(db_path: Path | None, entries: tuple[str, ...]) -> None:
    """Set positions in one transaction; ENTRIES are `queue_id:position`."""

    _run(lambda: BOARD_CONTROLLER.reorder_queues(QueueReorderCommand(db_path=db_path, entries=entries)))


# -- transition ---------------------------------------------------------------


@queueboard.group()
def transition() -> None:
    """Transition commands."""


@transition.command("create")
@db_path_option
@click.argument("from_queue_id")
@click.argument("to_queue_id")
@click.option(
    "--actor",
    type=click.Choice(["human", "assistant", "both"], case_sensitive=False),
    default="both",
    show_default=True,
)
def transition_create(db_path: Path | None, from_queue_id: str, to_queue_id: str, actor: str) -> None:
    """Allow moves between two queues of the same project."""

    _run(
        lambda: BOARD_CONTROLLER.create_transition(
            TransitionCreateCommand(
                db_path=db_path,
                from_queue_id=from_queue_id,
                to_queue_id=to_queue_id,
                actor_type=actor.lower(),
            ),
        ),
    )


@transition.command("list")
@db_path_option
@click.argument("project_id")
def transition_list(db_path: Path | None, project_id: str) -> None:
    """List transitions of a project."""

    _run(lambda: BOARD_CONTROLLER.list_transitions(EntityCommand(db_path=db_path, entity_id=project_id)))


@transition.command("delete")
@db_path_option
@click.argument("transition_id")
def transition_delete(db_path: Path | None, transition_id: str) -> None:
    """Delete a transition."""

    _run(
        lambda: BOARD_CONTROLLER.delete_transition(
            EntityCommand(db_path=db_path, entity_id=transition_id),
        ),
    )


# -- task ---------------------------------------------------------------------


@queueboard.group()
def task() -> None:
    """Task commands."""


@task.command("create")
@db_path_option
@click.argument("project_id")
@click.argument("queue_id")
@click.argument("title")
@click.option("--description", default=None)
@click.option("--priority", type=int, default=0, show_default=True, help="Higher runs first.")
def task_create(  # noqa: PLR0913
    db_path: Path | None,
    project_id: str,
    queue_id: str,
    title: str,
    description: str | None,
    priority: int,
) -> None:
    """Create a task in a queue."""

    _run(
        lambda: BOARD_CONTROLLER.create_task(
            TaskCreateCommand(
                db_path=db_path,
                project_id=project_id,
                queue_id=queue_id,
                title=title,
                description=description,
                priority=priority,
            ),
        ),
    )


@task.command("list")
@db_path_option
@click.option("--project-id", default=None)
@click.option("--queue-id", default=None)
def task_list(db_path: Path | None, project_id: str | None, queue_id: str | None) -> None:
    """List tasks of a queue or a whole project."""

    _run(
        lambda: BOARD_CONTROLLER.list_tasks(
            TaskListCommand(db_path=db_path, project_id=project_id, queue_id=queue_id),
        ),
    )


@task.command("inspect")
@db_path_option
@click.argument("task_id")
def task_inspect(db_path: Path | None, task_id: str) -> None:
    """Show one task with its history and comments."""

    _run(lambda: BOARD_CONTROLLER.inspect_task(EntityCommand(db_path=db_path, entity_id=task_id)))


@task.command("update")
@db_path_option
@click.argument("task_id")
@click.option("--title", default=None)
@click.option("--description", default=None)
@click.option("--priority", type=int, default=None)
def task_update(
    db_path: Path | None,
    task_id: str,
    title: str | None,
    description: str | None,
    priority: int | None,
) -> None:
    """Update task fields."""

    _run(
        lambda: BOARD_CONTROLLER.update_task(
            TaskUpdateCommand(
                db_path=db_path,
                task_id=task_id,
                title=title,
                description=description,
                priority=priority,
            ),
        ),
    )


@task.command("delete")
@db_path_option
@click.argument("task_id")
def task_delete(db_path: Path | None, task_id: str) -> None:
    """Delete a task with its history and comments."""

    _run(lambda: BOARD_CONTROLLER.delete_task(EntityCommand(db_path=db_path, entity_id=task_id)))


@task.command("move")
@db_path_option
@click.argument("task_id")
@click.argument("to_queue_id")
@click.option("--actor", default="human", show_default=True, help="`human` or an agent id.")
@click.option("--note", default=None)
def task_move(
    db_path: Path | None,
    task_id: str,
    to_queue_id: str,
    actor: str,
    note: str | None,
) -> None:
    """Move a task to another queue."""

    _run(
        lambda: BOARD_CONTROLLER.move_task(
            TaskMoveCommand(
                db_path=db_path,
                task_id=task_id,
                to_queue_id=to_queue_id,
                actor=actor,
                note=note,
            ),
        ),
    )


@task.command("comment")
@db_path_option
@click.argument("task_id")
@click.argument("content")
@click.option("--author", default="human", show_default=True)
def task_comment(db_path: Path | None, task_id: str, content: str, author: str) -> None:
    """Add a human comment; it becomes context for the next agent prompt."""

    _run(
        lambda: BOARD_CONTROLLER.comment_task(
            TaskCommentCommand(db_path=db_path, task_id=task_id, content=content, author=author),
        ),
    )


@task.command("clear-error")
@db_path_option
@click.argument("task_id")
def task_clear_error(db_path: Path | None, task_id: str) -> None:
    """Clear a task error so the executor can claim it again."""

    _run(lambda: BOARD_CONTROLLER.clear_task_error(EntityCommand(db_path=db_path, entity_id=task_id)))


@task.command("release")
@db_path_option
@click.argument("task_id")
def task_release(db_path: Path | None, task_id: str) -> None:
    """Drop an agent claim without recording an error."""

    _run(lambda: BOARD_CONTROLLER.release_task(EntityCommand(db_path=db_path, entity_id=task_id)))


# -- template -----------------------------------------------------------------


@queueboard.group()
def template() -> None:
    """Queue template commands."""


@template.command("create")
@db_path_option
@click.argument("name")
@click.option(
    "--queue",
    "entries",
    multiple=True,
    required=True,
    help="Queue entry `name:owner[:agent_limit]`. Can be repeated.",
)
def template_create(db_path: Path | None, name: str, entries: tuple[str, ...]) -> None:
    """Save a reusable list of queues."""

    _run(
        lambda: BOARD_CONTROLLER.create_template(
            TemplateCreateCommand(db_path=db_path, name=name, entries=entries),
        ),
    )


@template.command("list")
@db_path_option
def template_list(db_path: Path | None) -> None:
    """List queue templates."""

    _run(lambda: BOARD_CONTROLLER.list_templates(EntityCommand(db_path=db_path, entity_id="")))


@template.command("delete")
@db_path_option
@click.argument("template_id")
def template_delete(db_path: Path | None, template_id: str) -> None:
    """Delete a queue template."""

    _run(lambda: BOARD_CONTROLLER.delete_template(EntityCommand(db_path=db_path, entity_id=template_id)))


@template.command("apply")
@db_path_option
@click.argument("template_id")
@click.argument("project_id")
def template_apply(db_path: Path | None, template_id: str, project_id: str) -> None:
    """Append a template's queues to a project."""

    _run(
        lambda: BOARD_CONTROLLER.apply_template(
            TemplateApplyCommand(db_path=db_path, template_id=template_id, project_id=project_id),
        ),
    )


# -- agent --------------------------------------------------------------------


@queueboard.group()
def agent() -> None:
    """Project agent allow-list commands."""


@agent.command("assign")
@db_path_option
@click.argument("project_id")
@click.argument("agent_id")
def agent_assign(db_path: Path | None, project_id: str, agent_id: str) -> None:
    """Allow an agent to claim tasks of a project."""

    _run(
        lambda: BOARD_CONTROLLER.assign_agent(
            AgentCommand(db_path=db_path, project_id=project_id, agent_id=agent_id),
        ),
    )


@agent.command("remove")
@db_path_option
@click.argument("project_id")
@click.argument("agent_id")
def agent_remove(db_path: Path | None, project_id: str, agent_id: str) -> None:
    """Remove an agent from a project's allow-list."""

    _run(
        lambda: BOARD_CONTROLLER.remove_agent(
            AgentCommand(db_path=db_path, project_id=project_id, agent_id=agent_id),
        ),
    )


@agent.command("list")
@db_path_option
@click.argument("project_id")
def agent_list(db_path: Path | None, project_id: str) -> None:
    """List agents allowed on a project (empty means any)."""

    _run(lambda: BOARD_CONTROLLER.list_agents(AgentCommand(db_path=db_path, project_id=project_id)))


# -- executor -----------------------------------------------------------------


@queueboard.group()
def executor() -> None:
    """Agent executor commands."""


@executor.command("run")
@db_path_option
@click.argument("project_id")
@click.option("--once", is_flag=True, default=False, help="Process at most one task.")
@click.option("--max-tasks", type=click.IntRange(min=1), default=None)
@click.option(
    "--max-idle-polls",
    type=click.IntRange(min=1),
    default=None,
    help="Exit after this many empty polls (default: run until interrupted).",
)
@click.option(
    "--backend",
    type=click.Choice(["gateway", "cli"], case_sensitive=False),
    default=None,
    help="Overrides QUEUEBOARD_BACKEND.",
)
@click.option(
    "--cli-command",
    default=None,
    help=(
        "Agent command template for the cli backend. Supports {prompt}, {prompt_file} "
        "and {session_key}. If omitted, QUEUEBOARD_CLI_COMMAND is used."
    ),
)
def executor_run(  # noqa: PLR0913
    db_path: Path | None,
    project_id: str,
    once: bool,
    max_tasks: int | None,
    max_idle_polls: int | None,
    backend: str | None,
    cli_command: str | None,
) -> None:
    """Claim tasks in assistant queues and route them through the agent."""

    _run(
        lambda: BOARD_CONTROLLER.run_executor(
            ExecutorRunCommand(
                db_path=db_path,
                project_id=project_id,
                once=once,
                max_tasks=max_tasks,
                max_idle_polls=max_idle_polls,
                backend=backend.lower() if backend else None,
                cli_command=cli_command,
            ),
        ),
    )


def _run(action: Callable[[], list[str]]) -> None:
    try:
        lines = action()
    except ValueError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    queueboard()
