"""Controllers for board CLI commands."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from queueboard.board.backend import AgentBackend, CliAgentBackend, GatewayAgentBackend
from queueboard.board.executor import TaskExecutor
from queueboard.board.models import (
    ActorType,
    AuthorType,
    BoardResult,
    OwnerType,
    ProjectConfig,
    ProjectCreate,
    ProjectUpdate,
    ProjectView,
    QueueCreate,
    QueuePosition,
    QueueTemplateEntry,
    QueueUpdate,
    QueueView,
    TaskCreate,
    TaskUpdate,
    TaskView,
    TransitionCreate,
    ValueT,
)
from queueboard.board.repository import BoardRepository
from queueboard.config import Settings


class BoardCommandError(ValueError):
    """A board command was rejected by a business rule."""


@dataclass(slots=True)
class EntityCommand:
    """CLI input addressing one record by id."""

    db_path: Path | None
    entity_id: str


@dataclass(slots=True)
class ProjectCreateCommand:
    db_path: Path | None
    name: str
    system_prompt: str | None = None
    strict_transitions: bool = False
    max_concurrent_agents: int = 0
    pinned: bool = False


@dataclass(slots=True)
class ProjectUpdateCommand:
    db_path: Path | None
    project_id: str
    name: str | None = None
    system_prompt: str | None = None
    strict_transitions: bool | None = None
    max_concurrent_agents: int | None = None
    pinned: bool | None = None


@dataclass(slots=True)
class ProjectSeedCommand:
    db_path: Path | None
    include_back_edges: bool = True


@dataclass(slots=True)
class QueueCreateCommand:
    db_path: Path | None
    project_id: str
    name: str
    owner_type: str
    description: str | None = None
    system_prompt: str | None = None
    position: int | None = None
    agent_limit: int = 1


@dataclass(slots=True)
class QueueUpdateCommand:
    db_path: Path | None
    queue_id: str
    name: str | None = None
    owner_type: str | None = None
    description: str | None = None
    system_prompt: str | None = None
    agent_limit: int | None = None


@dataclass(slots=True)
class QueueReorderCommand:
    """CLI input for batch reorder; entries are `queue_id:position`."""

    db_path: Path | None
    entries: tuple[str, ...]


@dataclass(slots=True)
class TransitionCreateCommand:
    db_path: Path | None
    from_queue_id: str
    to_queue_id: str
    actor_type: str


@dataclass(slots=True)
class TaskCreateCommand:
    db_path: Path | None
    project_id: str
    queue_id: str
    title: str
    description: str | None = None
    priority: int = 0


@dataclass(slots=True)
class TaskListCommand:
    db_path: Path | None
    project_id: str | None = None
    queue_id: str | None = None


@dataclass(slots=True)
class TaskUpdateCommand:
    db_path: Path | None
    task_id: str
    title: str | None = None
    description: str | None = None
    priority: int | None = None


@dataclass(slots=True)
class TaskMoveCommand:
    db_path: Path | None
    task_id: str
    to_queue_id: str
    actor: str = "human"
    note: str | None = None


@dataclass(slots=True)
class TaskCommentCommand:
    db_path: Path | None
    task_id: str
    content: str
    author: str = "human"


@dataclass(slots=True)
class TemplateCreateCommand:
    """CLI input for a queue template; entries are `name:owner[:agent_limit]`."""

    db_path: Path | None
    name: str
    entries: tuple[str, ...]


@dataclass(slots=True)
class TemplateApplyCommand:
    db_path: Path | None
    template_id: str
    project_id: str


@dataclass(slots=True)
class AgentCommand:
    db_path: Path | None
    project_id: str
    agent_id: str | None = None


@dataclass(slots=True)
class ExecutorRunCommand:
    """CLI input for a foreground executor run."""

    db_path: Path | None
    project_id: str
    once: bool
    max_tasks: int | None
    max_idle_polls: int | None = 1
    backend: str | None = None
    cli_command: str | None = None


class BoardCliController:
    """Coordinates board mutations, inspection and executor CLI operations."""

    # -- projects ---------------------------------------------------------

    def create_project(self, command: ProjectCreateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            project = repository.create_project(
                ProjectCreate(
                    name=command.name,
                    system_prompt=command.system_prompt,
                    pinned=command.pinned,
                    config=ProjectConfig(
                        strict_transitions=command.strict_transitions,
                        max_concurrent_agents=command.max_concurrent_agents,
                    ),
                ),
            )
        return [f"Project created: {_project_line(project)}"]

    def list_projects(self, command: EntityCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            projects = repository.list_projects()
        lines = [f"Projects: {len(projects)}"]
        lines.extend(f"  {_project_line(project)}" for project in projects)
        return lines

    def show_project(self, command: EntityCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            project = _unwrap(repository.touch_project(command.entity_id))
            queues = repository.list_queues(project.project_id)
            transitions = repository.list_transitions(project.project_id)
            agents = repository.list_project_agents(project.project_id)
            counts = {queue.queue_id: len(repository.list_tasks(queue.queue_id)) for queue in queues}

        names = {queue.queue_id: queue.name for queue in queues}
        lines = [
            f"Project: {_project_line(project)}",
            f"Strict transitions: {'yes' if project.config.strict_transitions else 'no'}",
            f"Max concurrent agents: {project.config.max_concurrent_agents or 'unlimited'}",
            f"Agents: {', '.join(agents) if agents else 'any'}",
            f"Queues: {len(queues)}",
        ]
        lines.extend(f"  {_queue_line(queue)} tasks={counts[queue.queue_id]}" for queue in queues)
        lines.append(f"Transitions: {len(transitions)}")
        lines.extend(
            f"  {transition.transition_id} "
            f"{names.get(transition.from_queue_id, transition.from_queue_id)} -> "
            f"{names.get(transition.to_queue_id, transition.to_queue_id)} "
            f"actor={transition.actor_type.value}"
            for transition in transitions
        )
        return lines

    def update_project(self, command: ProjectUpdateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            current = repository.get_project(command.project_id)
            if current is None:
                raise BoardCommandError(f"Project not found: {command.project_id}")
            config = None
            if command.strict_transitions is not None or command.max_concurrent_agents is not None:
                config = ProjectConfig(
                    strict_transitions=(
                        current.config.strict_transitions
                        if command.strict_transitions is None
                        else command.strict_transitions
                    ),
                    max_concurrent_agents=(
                        current.config.max_concurrent_agents
                        if command.max_concurrent_agents is None
                        else command.max_concurrent_agents
                    ),
                )
            project = _unwrap(
                repository.update_project(
                    command.project_id,
                    ProjectUpdate(
                        name=command.name,
                        config=config,
                        system_prompt=command.system_prompt,
                        pinned=command.pinned,
                    ),
                ),
            )
        return [f"Project updated: {_project_line(project)}"]

    def delete_project(self, command: EntityCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            _unwrap(repository.delete_project(command.entity_id))
        return [f"Project deleted: {command.entity_id}"]

    def seed(self, command: ProjectSeedCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            project = repository.seed_default_project(include_back_edges=command.include_back_edges)
            queues = repository.list_queues(project.project_id)
        lines = [f"Default project: {_project_line(project)}"]
        lines.extend(f"  {_queue_line(queue)}" for queue in queues)
        return lines

    # -- queues -----------------------------------------------------------

    def create_queue(self, command: QueueCreateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        owner_type = _parse_owner_type(command.owner_type)
        with _repository(settings) as repository:
            position = command.position
            if position is None:
                position = len(repository.list_queues(command.project_id))
            queue = _unwrap(
                repository.create_queue(
                    QueueCreate(
                        project_id=command.project_id,
                        name=command.name,
                        owner_type=owner_type,
                        description=command.description,
                        system_prompt=command.system_prompt,
                        position=position,
                        agent_limit=command.agent_limit,
                    ),
                ),
            )
        return [f"Queue created: {_queue_line(queue)}"]

    def list_queues(self, command: EntityCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            queues = repository.list_queues(command.entity_id)
        lines = [f"Queues: {len(queues)}"]
        lines.extend(f"  {_queue_line(queue)}" for queue in queues)
        return lines

    def update_queue(self, command: QueueUpdateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        owner_type = _parse_owner_type(command.owner_type) if command.owner_type else None
        with _repository(settings) as repository:
            queue = _unwrap(
                repository.update_queue(
                    command.queue_id,
                    QueueUpdate(
                        name=command.name,
                        owner_type=owner_type,
                        description=command.description,
                        system_prompt=command.system_prompt,
                        agent_limit=command.agent_limit,
                    ),
                ),
            )
        return [f"Queue updated: {_queue_line(queue)}"]

    def delete_queue(self, command: EntityCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            _unwrap(repository.delete_queue(command.entity_id))
        return [f"Queue deleted: {command.entity_id}"]

    def reorder_queues(self, command: QueueReorderCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        positions = [_parse_position(entry) for entry in command.entries]
        with _repository(settings) as repository:
            _unwrap(repository.update_queue_positions(positions))
        return [f"Queue positions updated: {len(positions)}"]

    # -- transitions ------------------------------------------------------

    def create_transition(self, command: TransitionCreateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        try:
            actor_type = ActorType(command.actor_type)
        except ValueError as error:
            raise BoardCommandError(f"Unsupported actor type: {command.actor_type!r}") from error
        with _repository(settings) as repository:
            transition = _unwrap(
                repository.create_transition(
                    TransitionCreate(
                        from_queue_id=command.from_queue_id,
                        to_queue_id=command.to_queue_id,
                        actor_type=actor_type,
                    ),
                ),
            )
        return [
            f"Transition created: {transition.transition_id} "
            f"{transition.from_queue_id} -> {transition.to_queue_id} "
            f"actor={transition.actor_type.value}",
        ]

    def list_transitions(self, command: EntityCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            transitions = repository.list_transitions(command.entity_id)
        lines = [f"Transitions: {len(transitions)}"]
        lines.extend(
            f"  {transition.transition_id} {transition.from_queue_id} -> "
            f"{transition.to_queue_id} actor={transition.actor_type.value}"
            for transition in transitions
        )
        return lines

    def delete_transition(self, command: EntityCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            _unwrap(repository.delete_transition(command.entity_id))
        return [f"Transition deleted: {command.entity_id}"]

    # -- tasks ------------------------------------------------------------

    def create_task(self, command: TaskCreateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            task = _unwrap(
                repository.create_task(
                    TaskCreate(
                        project_id=command.project_id,
                        queue_id=command.queue_id,
                        title=command.title,
                        description=command.description,
                        priority=command.priority,
                    ),
                ),
            )
        return [f"Task created: {_task_line(task)}"]

    def list_tasks(self, command: TaskListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            if command.queue_id is not None:
                tasks = repository.list_tasks(command.queue_id)
            elif command.project_id is not None:
                tasks = repository.list_project_tasks(command.project_id)
            else:
                raise BoardCommandError("Pass --project-id or --queue-id.")
        lines = [f"Tasks: {len(tasks)}"]
        lines.extend(f"  {_task_line(task)}" for task in tasks)
        return lines

    def inspect_task(self, command: EntityCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            task = repository.get_task(command.entity_id)
            if task is None:
                return [f"Task not found: {command.entity_id}"]
            history = repository.get_task_history(task.task_id)
            comments = repository.list_comments(task.task_id)
            queue = repository.get_queue(task.queue_id)

        lines = [
            f"Task: {task.task_id}",
            f"Title: {task.title}",
            f"Queue: {queue.name if queue else task.queue_id}",
            f"Priority: {task.priority}",
            f"Assigned agent: {task.assigned_agent or '-'}",
            f"Session: {task.session_key or '-'}",
            f"Error: {task.error or '-'}",
            f"History: {len(history)}",
        ]
        lines.extend(
            f"  {entry.created_at.isoformat()} {entry.from_queue_id or '-'} -> "
            f"{entry.to_queue_id or '-'} actor={entry.actor}"
            + (f" note={entry.note}" if entry.note else "")
            for entry in history
        )
        lines.append(f"Comments: {len(comments)}")
        lines.extend(
            f"  [{comment.author_type.value}:{comment.author}] {comment.content}"
            for comment in comments
        )
        return lines

    def update_task(self, command: TaskUpdateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            task = _unwrap(
                repository.update_task(
                    command.task_id,
                    TaskUpdate(
                        title=command.title,
                        description=command.description,
                        priority=command.priority,
                    ),
                ),
            )
        return [f"Task updated: {_task_line(task)}"]

    def delete_task(self, command: EntityCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            _unwrap(repository.delete_task(command.entity_id))
        return [f"Task deleted: {command.entity_id}"]

    def move_task(self, command: TaskMoveCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            task = _unwrap(
                repository.move_task(
                    command.task_id,
                    command.to_queue_id,
                    actor=command.actor,
                    note=command.note,
                ),
            )
        return [f"Task moved: {_task_line(task)}"]

    def comment_task(self, command: TaskCommentCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            comment = _unwrap(
                repository.add_comment(
                    command.task_id,
                    author=command.author,
                    author_type=AuthorType.HUMAN,
                    content=command.content,
                ),
            )
        return [f"Comment added: {comment.id} on task {comment.task_id}"]

    def clear_task_error(self, command: EntityCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            task = _unwrap(repository.clear_task_error(command.entity_id))
        return [f"Task error cleared: {_task_line(task)}"]

    def release_task(self, command: EntityCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            task = _unwrap(repository.release_task(command.entity_id))
        return [f"Task released: {_task_line(task)}"]

    # -- templates --------------------------------------------------------

    def create_template(self, command: TemplateCreateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        entries = [_parse_template_entry(entry) for entry in command.entries]
        if not entries:
            raise BoardCommandError("A queue template needs at least one --queue entry.")
        with _repository(settings) as repository:
            template = repository.create_queue_template(command.name, entries)
        return [f"Queue template created: {template.template_id} {template.name} queues={len(entries)}"]

    def list_templates(self, command: EntityCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            templates = repository.list_queue_templates()
        lines = [f"Queue templates: {len(templates)}"]
        for template in templates:
            names = ", ".join(f"{entry.name} ({entry.owner_type.value})" for entry in template.entries)
            lines.append(f"  {template.template_id} {template.name}: {names}")
        return lines

    def delete_template(self, command: EntityCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            _unwrap(repository.delete_queue_template(command.entity_id))
        return [f"Queue template deleted: {command.entity_id}"]

    def apply_template(self, command: TemplateApplyCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            queues = _unwrap(repository.apply_queue_template(command.template_id, command.project_id))
        lines = [f"Queues added: {len(queues)}"]
        lines.extend(f"  {_queue_line(queue)}" for queue in queues)
        return lines

    # -- agents -----------------------------------------------------------

    def assign_agent(self, command: AgentCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        agent_id = _require_agent_id(command)
        with _repository(settings) as repository:
            _unwrap(repository.assign_agent(command.project_id, agent_id))
        return [f"Agent assigned: {agent_id} -> {command.project_id}"]

    def remove_agent(self, command: AgentCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        agent_id = _require_agent_id(command)
        with _repository(settings) as repository:
            _unwrap(repository.remove_agent(command.project_id, agent_id))
        return [f"Agent removed: {agent_id} from {command.project_id}"]

    def list_agents(self, command: AgentCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            agents = repository.list_project_agents(command.project_id)
        if not agents:
            return ["Agents: any (no allow-list)"]
        return [f"Agents: {len(agents)}", *(f"  {agent}" for agent in agents)]

    # -- executor ---------------------------------------------------------

    def run_executor(self, command: ExecutorRunCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        if command.backend is not None:
            settings.executor.backend = command.backend
        if command.cli_command is not None:
            settings.executor.cli_command_template = command.cli_command
        settings.validate_for_executor()

        backend = _build_backend(settings)
        try:
            with _repository(settings) as repository:
                if repository.get_project(command.project_id) is None:
                    raise BoardCommandError(f"Project not found: {command.project_id}")
                executor = TaskExecutor(
                    repository=repository,
                    backend=backend,
                    project_id=command.project_id,
                    agent_id=settings.executor.agent_id,
                    poll_interval_seconds=settings.executor.poll_interval_seconds,
                    execution_timeout_seconds=settings.executor.execution_timeout_seconds,
                    session_key_prefix=settings.executor.session_key_prefix,
                )
                summary = (
                    executor.run_once()
                    if command.once
                    else executor.run_loop(
                        max_tasks=command.max_tasks,
                        max_idle_polls=command.max_idle_polls,
                    )
                )
        finally:
            if isinstance(backend, GatewayAgentBackend):
                backend.close()

        return [
            "Executor summary: "
            f"processed={summary.processed} moved={summary.moved} "
            f"released={summary.released} failed={summary.failed} "
            f"timeouts={summary.timeouts} idle_polls={summary.idle_polls}",
        ]


def _build_backend(settings: Settings) -> AgentBackend:
    if settings.executor.backend == "cli":
        return CliAgentBackend(command_template=settings.executor.cli_command_template)
    gateway = settings.gateway
    return GatewayAgentBackend(
        url=gateway.url,
        token=gateway.token,
        history_limit=gateway.history_limit,
        poll_interval_seconds=gateway.poll_interval_seconds,
        request_timeout_seconds=gateway.request_timeout_seconds,
        verify_tls=gateway.verify_tls,
    )


def _unwrap(result: BoardResult[ValueT]) -> ValueT:
    if not result.ok:
        kind = result.failure.value if result.failure else "error"
        raise BoardCommandError(f"{result.message} [{kind}]")
    return result.value  # type: ignore[return-value]


def _parse_owner_type(value: str) -> OwnerType:
    try:
        return OwnerType(value.strip().lower())
    except ValueError as error:
        raise BoardCommandError(f"Unsupported owner type: {value!r}") from error


def _parse_position(entry: str) -> QueuePosition:
    queue_id, separator, raw_position = entry.rpartition(":")
    if not separator or not queue_id:
        raise BoardCommandError(f"Invalid position entry {entry!r}. Expected '<queue_id>:<position>'.")
    try:
        position = int(raw_position)
    except ValueError as error:
        raise BoardCommandError(f"Invalid position in {entry!r}: {raw_position!r}") from error
    return QueuePosition(queue_id=queue_id, position=position)


def _parse_template_entry(entry: str) -> QueueTemplateEntry:
    parts = [part.strip() for part in entry.split(":")]
    if len(parts) not in {2, 3} or not parts[0]:
        raise BoardCommandError(
            f"Invalid queue entry {entry!r}. Expected '<name>:<owner>[:<agent_limit>]'.",
        )
    agent_limit = 1
    if len(parts) == 3:
        try:
            agent_limit = int(parts[2])
        except ValueError as error:
            raise BoardCommandError(f"Invalid agent limit in {entry!r}: {parts[2]!r}") from error
    return QueueTemplateEntry(
        name=parts[0],
        owner_type=_parse_owner_type(parts[1]),
        agent_limit=agent_limit,
    )


def _require_agent_id(command: AgentCommand) -> str:
    if not command.agent_id:
        raise BoardCommandError("Agent id is required.")
    return command.agent_id


def _project_line(project: ProjectView) -> str:
    pin = " pinned" if project.pinned else ""
    return f"{project.project_id} {project.name}{pin}"


def _queue_line(queue: QueueView) -> str:
    limit = queue.agent_limit if queue.agent_limit > 0 else "unlimited"
    return (
        f"{queue.queue_id} [{queue.position}] {queue.name} "
        f"owner={queue.owner_type.value} agent_limit={limit}"
    )


def _task_line(task: TaskView) -> str:
    line = f"{task.task_id} {task.title!r} queue={task.queue_id} priority={task.priority}"
    if task.assigned_agent:
        line += f" agent={task.assigned_agent}"
    if task.error:
        line += f" error={task.error!r}"
    return line


@contextmanager
def _repository(settings: Settings) -> Iterator[BoardRepository]:
    repository = BoardRepository(
        db_path=settings.db_path,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()
