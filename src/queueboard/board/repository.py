"""Persistent board repository: projects, queues, transitions and tasks."""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable
from datetime import datetime, timedelta
from pathlib import Path
from uuid import uuid4

from sqlalchemy import delete as sa_delete
from sqlalchemy import func
from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from queueboard.board.events import EventBus, TaskEvent, TaskEventType
from queueboard.board.models import (
    ActorType,
    AuthorType,
    BoardResult,
    FailureKind,
    OwnerType,
    ProjectConfig,
    ProjectCreate,
    ProjectUpdate,
    ProjectView,
    QueueCreate,
    QueuePosition,
    QueueTemplateEntry,
    QueueTemplateView,
    QueueUpdate,
    QueueView,
    SessionMode,
    TaskCommentView,
    TaskCreate,
    TaskHistoryView,
    TaskUpdate,
    TaskView,
    TransitionCreate,
    TransitionView,
)
from queueboard.storage.alembic_runner import upgrade_head
from queueboard.storage.common import (
    build_sqlite_engine,
    optional_utc,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from queueboard.storage.sqlmodel_models import (
    Project,
    ProjectAgent,
    Queue,
    QueueTemplate,
    Task,
    TaskComment,
    TaskHistory,
    Transition,
)

logger = logging.getLogger(__name__)

HUMAN_ACTOR = "human"
STALE_CLAIM_ERROR = "Execution timed out (stale claim recovered)"


class BoardRepository:
    """Board persistence facade backed by SQLModel + SQLite.

    Business-rule violations come back as failed `BoardResult` values; only
    infrastructure problems (database unreachable, programming errors) raise.
    """

    def __init__(
        self,
        db_path: Path,
        *,
        sqlite_busy_timeout_ms: int = 5_000,
        events: EventBus | None = None,
    ) -> None:
        self.db_path = db_path
        self.sqlite_busy_timeout_ms = sqlite_busy_timeout_ms
        self.events = events or EventBus()
        self.engine = build_sqlite_engine(
            db_path=db_path,
            busy_timeout_ms=sqlite_busy_timeout_ms,
        )

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations up to head."""

        upgrade_head(self.db_path)

    # -- projects ---------------------------------------------------------

    def create_project(self, payload: ProjectCreate) -> ProjectView:
        now = utc_now()
        with Session(self.engine) as session:
            row = Project(
                project_id=str(uuid4()),
                name=payload.name,
                config_json=_dump_json((payload.config or ProjectConfig()).to_dict()),
                system_prompt=payload.system_prompt,
                pinned=payload.pinned,
                session_mode=payload.session_mode.value,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_project_view(row)

    def get_project(self, project_id: str) -> ProjectView | None:
        with Session(self.engine) as session:
            row = session.get(Project, project_id)
            return _to_project_view(row) if row is not None else None

    def list_projects(self) -> list[ProjectView]:
        """Pinned first, then most recently accessed, then oldest first."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(Project).order_by(
                    col(Project.pinned).desc(),
                    col(Project.last_accessed_at).desc(),
                    col(Project.created_at).asc(),
                ),
            ).all()
        return [_to_project_view(row) for row in rows]

    def update_project(self, project_id: str, payload: ProjectUpdate) -> BoardResult[ProjectView]:
        with Session(self.engine) as session:
            row = session.get(Project, project_id)
            if row is None:
                return BoardResult.fail(FailureKind.NOT_FOUND, f"Project not found: {project_id}")
            if payload.name is not None:
                row.name = payload.name
            if payload.config is not None:
                row.config_json = _dump_json(payload.config.to_dict())
            if payload.system_prompt is not None:
                row.system_prompt = payload.system_prompt or None
            if payload.session_mode is not None:
                row.session_mode = payload.session_mode.value
            if payload.pinned is not None:
                row.pinned = payload.pinned
            row.updated_at = utc_now()
            session.add(row)
            session.commit()
            session.refresh(row)
            return BoardResult.success(_to_project_view(row))

    def touch_project(self, project_id: str) -> BoardResult[ProjectView]:
        """Record that the project was opened, for recency ordering."""

        with Session(self.engine) as session:
            row = session.get(Project, project_id)
            if row is None:
                return BoardResult.fail(FailureKind.NOT_FOUND, f"Project not found: {project_id}")
            row.last_accessed_at = utc_now()
            session.add(row)
            session.commit()
            session.refresh(row)
            return BoardResult.success(_to_project_view(row))

    def delete_project(self, project_id: str) -> BoardResult[None]:
        with Session(self.engine) as session:
            row = session.get(Project, project_id)
            if row is None:
                return BoardResult.fail(FailureKind.NOT_FOUND, f"Project not found: {project_id}")
            session.exec(sa_delete(Task).where(col(Task.project_id) == project_id))
            session.exec(sa_delete(Project).where(col(Project.project_id) == project_id))
            session.commit()
        return BoardResult.success()

    def seed_default_project(self, *, include_back_edges: bool = True) -> ProjectView:
        """Create the starter Todo -> In Progress -> Done pipeline.

        Returns the first existing project instead when any project exists.
        """

        existing = self._first_project()
        if existing is not None:
            return existing

        now = utc_now()
        with Session(self.engine) as session:
            project = Project(
                project_id=str(uuid4()),
                name="Default",
                config_json=_dump_json(
                    ProjectConfig(strict_transitions=False, max_concurrent_agents=1).to_dict(),
                ),
                session_mode=SessionMode.PER_TASK.value,
                created_at=now,
                updated_at=now,
            )
            session.add(project)
            todo = _new_queue_row(
                project_id=project.project_id,
                name="Todo",
                owner_type=OwnerType.HUMAN,
                description="Tasks waiting to be picked up",
                position=0,
                now=now,
            )
            in_progress = _new_queue_row(
                project_id=project.project_id,
                name="In Progress",
                owner_type=OwnerType.ASSISTANT,
                description="Tasks being worked on by the agent",
                position=1,
                now=now,
            )
            done = _new_queue_row(
                project_id=project.project_id,
                name="Done",
                owner_type=OwnerType.HUMAN,
                description="Completed tasks",
                position=2,
                now=now,
            )
            session.add_all([todo, in_progress, done])

            edges = [
                (todo, in_progress, ActorType.HUMAN),
                (in_progress, done, ActorType.ASSISTANT),
            ]
            if include_back_edges:
                edges.extend(
                    [
                        (in_progress, todo, ActorType.HUMAN),
                        (done, todo, ActorType.HUMAN),
                        (done, in_progress, ActorType.HUMAN),
                    ],
                )
            for source, target, actor_type in edges:
                session.add(
                    Transition(
                        transition_id=str(uuid4()),
                        from_queue_id=source.queue_id,
                        to_queue_id=target.queue_id,
                        actor_type=actor_type.value,
                        created_at=now,
                    ),
                )
            session.commit()
            session.refresh(project)
            logger.info("Seeded default project %s", project.project_id)
            return _to_project_view(project)

    def _first_project(self) -> ProjectView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(Project).order_by(col(Project.created_at).asc()).limit(1),
            ).one_or_none()
            return _to_project_view(row) if row is not None else None

    # -- queues -----------------------------------------------------------

    def create_queue(self, payload: QueueCreate) -> BoardResult[QueueView]:
        with Session(self.engine) as session:
            if session.get(Project, payload.project_id) is None:
                return BoardResult.fail(
                    FailureKind.NOT_FOUND,
                    f"Project not found: {payload.project_id}",
                )
            row = _new_queue_row(
                project_id=payload.project_id,
                name=payload.name,
                owner_type=payload.owner_type,
                description=payload.description,
                position=payload.position,
                now=utc_now(),
                agent_limit=payload.agent_limit,
                system_prompt=payload.system_prompt,
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return BoardResult.success(_to_queue_view(row))

    def get_queue(self, queue_id: str) -> QueueView | None:
        with Session(self.engine) as session:
            row = session.get(Queue, queue_id)
            return _to_queue_view(row) if row is not None else None

    def list_queues(self, project_id: str) -> list[QueueView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(Queue)
                .where(Queue.project_id == project_id)
                .order_by(col(Queue.position).asc(), col(Queue.created_at).asc()),
            ).all()
        return [_to_queue_view(row) for row in rows]

    def update_queue(self, queue_id: str, payload: QueueUpdate) -> BoardResult[QueueView]:
        with Session(self.engine) as session:
            row = session.get(Queue, queue_id)
            if row is None:
                return BoardResult.fail(FailureKind.NOT_FOUND, f"Queue not found: {queue_id}")
            if payload.name is not None:
                row.name = payload.name
            if payload.owner_type is not None:
                row.owner_type = payload.owner_type.value
            if payload.description is not None:
                row.description = payload.description or None
            if payload.system_prompt is not None:
                row.system_prompt = payload.system_prompt or None
            if payload.agent_limit is not None:
                row.agent_limit = payload.agent_limit
            row.updated_at = utc_now()
            session.add(row)
            session.commit()
            session.refresh(row)
            return BoardResult.success(_to_queue_view(row))

    def delete_queue(self, queue_id: str) -> BoardResult[None]:
        """Delete a queue and its transitions.

        Refused when it is the project's last queue or still holds tasks.
        """

        with Session(self.engine) as session:
            row = session.get(Queue, queue_id)
            if row is None:
                return BoardResult.fail(FailureKind.NOT_FOUND, f"Queue not found: {queue_id}")

            queue_count = session.exec(
                select(func.count())
                .select_from(Queue)
                .where(Queue.project_id == row.project_id),
            ).one()
            if queue_count <= 1:
                return BoardResult.fail(
                    FailureKind.CONSTRAINT_VIOLATION,
                    "Cannot delete the last queue of a project.",
                )

            task_count = session.exec(
                select(func.count()).select_from(Task).where(Task.queue_id == queue_id),
            ).one()
            if task_count > 0:
                return BoardResult.fail(
                    FailureKind.CONSTRAINT_VIOLATION,
                    f"Queue still holds {task_count} task(s).",
                )

            session.exec(sa_delete(Queue).where(col(Queue.queue_id) == queue_id))
            session.commit()
        return BoardResult.success()

    def update_queue_positions(self, positions: Iterable[QueuePosition]) -> BoardResult[None]:
        """Apply a batch of position changes in one transaction."""

        now = utc_now()
        with Session(self.engine) as session:
            for item in positions:
                result = session.exec(
                    sa_update(Queue)
                    .where(col(Queue.queue_id) == item.queue_id)
                    .values(position=item.position, updated_at=to_db_datetime(now)),
                )
                if result.rowcount != 1:
                    session.rollback()
                    return BoardResult.fail(
                        FailureKind.NOT_FOUND,
                        f"Queue not found: {item.queue_id}",
                    )
            session.commit()
        return BoardResult.success()

    # -- transitions ------------------------------------------------------

    def create_transition(self, payload: TransitionCreate) -> BoardResult[TransitionView]:
        with Session(self.engine) as session:
            source = session.get(Queue, payload.from_queue_id)
            target = session.get(Queue, payload.to_queue_id)
            if source is None or target is None:
                missing = payload.from_queue_id if source is None else payload.to_queue_id
                return BoardResult.fail(FailureKind.NOT_FOUND, f"Queue not found: {missing}")
            if source.project_id != target.project_id:
                return BoardResult.fail(
                    FailureKind.CONSTRAINT_VIOLATION,
                    "Transition endpoints must belong to the same project.",
                )
            row = Transition(
                transition_id=str(uuid4()),
                from_queue_id=payload.from_queue_id,
                to_queue_id=payload.to_queue_id,
                actor_type=payload.actor_type.value,
                conditions_json=_dump_json(payload.conditions) if payload.conditions else None,
                auto_trigger=payload.auto_trigger,
                created_at=utc_now(),
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return BoardResult.success(_to_transition_view(row))

    def list_transitions(self, project_id: str) -> list[TransitionView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(Transition)
                .join(Queue, col(Queue.queue_id) == col(Transition.from_queue_id))
                .where(Queue.project_id == project_id)
                .order_by(col(Transition.created_at).asc()),
            ).all()
        return [_to_transition_view(row) for row in rows]

    def delete_transition(self, transition_id: str) -> BoardResult[None]:
        with Session(self.engine) as session:
            result = session.exec(
                sa_delete(Transition).where(col(Transition.transition_id) == transition_id),
            )
            if result.rowcount != 1:
                session.rollback()
                return BoardResult.fail(
                    FailureKind.NOT_FOUND,
                    f"Transition not found: {transition_id}",
                )
            session.commit()
        return BoardResult.success()

    def list_assistant_destinations(self, queue_id: str) -> list[QueueView]:
        """Queues reachable from `queue_id` by an assistant (or both) transition."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(Queue)
                .join(Transition, col(Transition.to_queue_id) == col(Queue.queue_id))
                .where(
                    Transition.from_queue_id == queue_id,
                    col(Transition.actor_type).in_(
                        [ActorType.ASSISTANT.value, ActorType.BOTH.value],
                    ),
                )
                .order_by(col(Queue.position).asc()),
            ).all()
        seen: set[str] = set()
        destinations: list[QueueView] = []
        for row in rows:
            if row.queue_id in seen:
                continue
            seen.add(row.queue_id)
            destinations.append(_to_queue_view(row))
        return destinations

    # -- tasks ------------------------------------------------------------

    def create_task(self, payload: TaskCreate) -> BoardResult[TaskView]:
        now = utc_now()
        with Session(self.engine) as session:
            queue = session.get(Queue, payload.queue_id)
            if queue is None or queue.project_id != payload.project_id:
                return BoardResult.fail(
                    FailureKind.NOT_FOUND,
                    f"Queue {payload.queue_id} not found in project {payload.project_id}",
                )
            row = Task(
                task_id=str(uuid4()),
                project_id=payload.project_id,
                queue_id=payload.queue_id,
                title=payload.title,
                description=payload.description,
                priority=payload.priority,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            view = _to_task_view(row)
        self._emit(TaskEventType.TASK_CREATED, view.task_id, queue_id=view.queue_id)
        return BoardResult.success(view)

    def get_task(self, task_id: str) -> TaskView | None:
        with Session(self.engine) as session:
            row = session.get(Task, task_id)
            return _to_task_view(row) if row is not None else None

    def list_tasks(self, queue_id: str) -> list[TaskView]:
        """Tasks of one queue, most urgent first."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(Task)
                .where(Task.queue_id == queue_id)
                .order_by(col(Task.priority).desc(), col(Task.created_at).asc()),
            ).all()
        return [_to_task_view(row) for row in rows]

    def list_project_tasks(self, project_id: str) -> list[TaskView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(Task)
                .where(Task.project_id == project_id)
                .order_by(col(Task.priority).desc(), col(Task.created_at).asc()),
            ).all()
        return [_to_task_view(row) for row in rows]

    def update_task(self, task_id: str, payload: TaskUpdate) -> BoardResult[TaskView]:
        with Session(self.engine) as session:
            row = session.get(Task, task_id)
            if row is None:
                return BoardResult.fail(FailureKind.NOT_FOUND, f"Task not found: {task_id}")
            if payload.title is not None:
                row.title = payload.title
            if payload.description is not None:
                row.description = payload.description
            if payload.priority is not None:
                row.priority = payload.priority
            row.updated_at = utc_now()
            session.add(row)
            session.commit()
            session.refresh(row)
            view = _to_task_view(row)
        self._emit(TaskEventType.TASK_UPDATED, task_id)
        return BoardResult.success(view)

    def delete_task(self, task_id: str) -> BoardResult[None]:
        """Delete a task; its history and comments go with it."""

        with Session(self.engine) as session:
            result = session.exec(sa_delete(Task).where(col(Task.task_id) == task_id))
            if result.rowcount != 1:
                session.rollback()
                return BoardResult.fail(FailureKind.NOT_FOUND, f"Task not found: {task_id}")
            session.commit()
        self._emit(TaskEventType.TASK_DELETED, task_id)
        return BoardResult.success()

    def move_task(
        self,
        task_id: str,
        to_queue_id: str,
        *,
        actor: str,
        note: str | None = None,
    ) -> BoardResult[TaskView]:
        """Move a task to another queue of its project.

        Under strict transitions the move needs a transition from the current
        queue whose actor type admits `actor` ("human" or an agent id).
        Success appends history and clears claim, session and error fields.
        """

        while True:
            with Session(self.engine) as session:
                row = session.get(Task, task_id)
                if row is None:
                    return BoardResult.fail(FailureKind.NOT_FOUND, f"Task not found: {task_id}")
                from_queue_id = row.queue_id

                target = session.get(Queue, to_queue_id)
                if target is None or target.project_id != row.project_id:
                    return BoardResult.fail(
                        FailureKind.NOT_FOUND,
                        f"Queue {to_queue_id} not found in project {row.project_id}",
                    )

                project = session.get(Project, row.project_id)
                config = _project_config(project)
                if config.strict_transitions:
                    transition = session.exec(
                        select(Transition)
                        .where(
                            Transition.from_queue_id == from_queue_id,
                            Transition.to_queue_id == to_queue_id,
                            col(Transition.actor_type).in_(_actor_types_for(actor)),
                        )
                        .limit(1),
                    ).one_or_none()
                    if transition is None:
                        return BoardResult.fail(
                            FailureKind.INVALID_TRANSITION,
                            f"No transition from {from_queue_id} to {to_queue_id} for {actor}",
                        )

                now = utc_now()
                result = session.exec(
                    sa_update(Task)
                    .where(
                        col(Task.task_id) == task_id,
                        col(Task.queue_id) == from_queue_id,
                    )
                    .values(
                        queue_id=to_queue_id,
                        assigned_agent=None,
                        session_key=None,
                        claimed_at=None,
                        error=None,
                        error_at=None,
                        updated_at=to_db_datetime(now),
                    ),
                )
                if result.rowcount != 1:
                    # A concurrent move won; re-read and validate again.
                    session.rollback()
                    continue
                session.add(
                    TaskHistory(
                        task_id=task_id,
                        from_queue_id=from_queue_id,
                        to_queue_id=to_queue_id,
                        actor=actor,
                        note=note,
                        created_at=now,
                    ),
                )
                session.commit()
                moved = session.get(Task, task_id)
                if moved is None:
                    return BoardResult.fail(FailureKind.NOT_FOUND, f"Task not found: {task_id}")
                session.refresh(moved)
                view = _to_task_view(moved)
            self._emit(
                TaskEventType.TASK_MOVED,
                task_id,
                from_queue_id=from_queue_id,
                to_queue_id=to_queue_id,
                actor=actor,
            )
            return BoardResult.success(view)

    def claim_task(self, task_id: str, *, agent_id: str, session_key: str) -> BoardResult[TaskView]:
        """Reserve a task for one agent.

        Conditional write: succeeds only while the task is unassigned and
        error free, so concurrent schedulers never double-claim.
        """

        now = utc_now()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Task)
                .where(
                    col(Task.task_id) == task_id,
                    col(Task.assigned_agent).is_(None),
                    col(Task.error).is_(None),
                )
                .values(
                    assigned_agent=agent_id,
                    session_key=session_key,
                    claimed_at=to_db_datetime(now),
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                row = session.get(Task, task_id)
                if row is None:
                    return BoardResult.fail(FailureKind.NOT_FOUND, f"Task not found: {task_id}")
                reason = "has an error" if row.error is not None else "is already claimed"
                return BoardResult.fail(FailureKind.NOT_CLAIMABLE, f"Task {task_id} {reason}")
            session.commit()
            row = session.get(Task, task_id)
            if row is None:
                return BoardResult.fail(FailureKind.NOT_FOUND, f"Task not found: {task_id}")
            session.refresh(row)
            view = _to_task_view(row)
        self._emit(TaskEventType.TASK_CLAIMED, task_id, agent_id=agent_id)
        return BoardResult.success(view)

    def set_task_error(self, task_id: str, message: str) -> BoardResult[TaskView]:
        """Record an error and drop the claim; the task is skipped until cleared."""

        now = utc_now()
        result = self._update_task_fields(
            task_id,
            error=message,
            error_at=to_db_datetime(now),
            assigned_agent=None,
            session_key=None,
            claimed_at=None,
            updated_at=to_db_datetime(now),
        )
        if result.ok:
            self._emit(TaskEventType.TASK_FAILED, task_id, error=message)
        return result

    def clear_task_error(self, task_id: str) -> BoardResult[TaskView]:
        result = self._update_task_fields(
            task_id,
            error=None,
            error_at=None,
            updated_at=to_db_datetime(utc_now()),
        )
        if result.ok:
            self._emit(TaskEventType.TASK_UPDATED, task_id)
        return result

    def release_task(self, task_id: str) -> BoardResult[TaskView]:
        """Drop the claim without recording an error."""

        result = self._update_task_fields(
            task_id,
            assigned_agent=None,
            session_key=None,
            claimed_at=None,
            updated_at=to_db_datetime(utc_now()),
        )
        if result.ok:
            self._emit(TaskEventType.TASK_UPDATED, task_id)
        return result

    def get_next_claimable_task(
        self,
        project_id: str,
        *,
        agent_id: str | None = None,
    ) -> TaskView | None:
        """Pick the next task an agent may claim.

        Walks assistant-owned queues in display order, skipping any queue at
        its agent limit, and returns the most urgent unclaimed, error-free
        task of the first queue that has one.
        """

        with Session(self.engine) as session:
            project = session.get(Project, project_id)
            if project is None:
                return None

            if agent_id is not None:
                allowed = session.exec(
                    select(ProjectAgent.agent_id).where(ProjectAgent.project_id == project_id),
                ).all()
                if allowed and agent_id not in allowed:
                    return None

            config = _project_config(project)
            if config.max_concurrent_agents > 0:
                claimed_in_project = session.exec(
                    select(func.count())
                    .select_from(Task)
                    .where(
                        Task.project_id == project_id,
                        col(Task.assigned_agent).is_not(None),
                    ),
                ).one()
                if claimed_in_project >= config.max_concurrent_agents:
                    return None

            queues = session.exec(
                select(Queue)
                .where(
                    Queue.project_id == project_id,
                    Queue.owner_type == OwnerType.ASSISTANT.value,
                )
                .order_by(col(Queue.position).asc(), col(Queue.created_at).asc()),
            ).all()
            for queue in queues:
                if queue.agent_limit > 0:
                    executing = session.exec(
                        select(func.count())
                        .select_from(Task)
                        .where(
                            Task.queue_id == queue.queue_id,
                            col(Task.assigned_agent).is_not(None),
                        ),
                    ).one()
                    if executing >= queue.agent_limit:
                        continue

                candidate = session.exec(
                    select(Task)
                    .where(
                        Task.queue_id == queue.queue_id,
                        col(Task.assigned_agent).is_(None),
                        col(Task.error).is_(None),
                    )
                    .order_by(col(Task.priority).desc(), col(Task.created_at).asc())
                    .limit(1),
                ).one_or_none()
                if candidate is not None:
                    return _to_task_view(candidate)
        return None

    def get_task_history(self, task_id: str) -> list[TaskHistoryView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(TaskHistory)
                .where(TaskHistory.task_id == task_id)
                .order_by(col(TaskHistory.created_at).asc(), col(TaskHistory.id).asc()),
            ).all()
        return [
            TaskHistoryView(
                id=row.id or 0,
                task_id=row.task_id,
                from_queue_id=row.from_queue_id,
                to_queue_id=row.to_queue_id,
                actor=row.actor,
                note=row.note,
                created_at=to_utc_aware_datetime(row.created_at),
            )
            for row in rows
        ]

    def list_claimed_tasks(self, project_id: str, *, agent_id: str | None = None) -> list[TaskView]:
        """Tasks currently holding a claim, oldest claim first."""

        with Session(self.engine) as session:
            statement = select(Task).where(
                Task.project_id == project_id,
                col(Task.assigned_agent).is_not(None),
            )
            if agent_id is not None:
                statement = statement.where(Task.assigned_agent == agent_id)
            rows = session.exec(statement.order_by(col(Task.claimed_at).asc())).all()
        return [_to_task_view(row) for row in rows]

    def recover_stale_claims(self, project_id: str, *, stale_after: timedelta) -> list[TaskView]:
        """Error out claims older than `stale_after` so they stop blocking the queue."""

        cutoff = to_db_datetime(utc_now() - stale_after)
        with Session(self.engine) as session:
            stale_ids = session.exec(
                select(Task.task_id).where(
                    Task.project_id == project_id,
                    col(Task.assigned_agent).is_not(None),
                    col(Task.claimed_at).is_not(None),
                    col(Task.claimed_at) < cutoff,
                ),
            ).all()

        recovered: list[TaskView] = []
        for task_id in stale_ids:
            result = self.set_task_error(task_id, STALE_CLAIM_ERROR)
            if result.ok and result.value is not None:
                logger.warning("Recovered stale claim on task %s", task_id)
                recovered.append(result.value)
        return recovered

    # -- comments ---------------------------------------------------------

    def add_comment(
        self,
        task_id: str,
        *,
        author: str,
        author_type: AuthorType,
        content: str,
    ) -> BoardResult[TaskCommentView]:
        with Session(self.engine) as session:
            if session.get(Task, task_id) is None:
                return BoardResult.fail(FailureKind.NOT_FOUND, f"Task not found: {task_id}")
            row = TaskComment(
                task_id=task_id,
                author=author,
                author_type=author_type.value,
                content=content,
                created_at=utc_now(),
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            view = _to_comment_view(row)
        self._emit(TaskEventType.TASK_COMMENT, task_id, author=author)
        return BoardResult.success(view)

    def list_comments(self, task_id: str) -> list[TaskCommentView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(TaskComment)
                .where(TaskComment.task_id == task_id)
                .order_by(col(TaskComment.created_at).asc(), col(TaskComment.id).asc()),
            ).all()
        return [_to_comment_view(row) for row in rows]

    # -- agent allow-list -------------------------------------------------

    def assign_agent(self, project_id: str, agent_id: str) -> BoardResult[None]:
        with Session(self.engine) as session:
            if session.get(Project, project_id) is None:
                return BoardResult.fail(FailureKind.NOT_FOUND, f"Project not found: {project_id}")
            existing = session.exec(
                select(ProjectAgent).where(
                    ProjectAgent.project_id == project_id,
                    ProjectAgent.agent_id == agent_id,
                ),
            ).one_or_none()
            if existing is None:
                session.add(ProjectAgent(project_id=project_id, agent_id=agent_id))
                session.commit()
        return BoardResult.success()

    def remove_agent(self, project_id: str, agent_id: str) -> BoardResult[None]:
        with Session(self.engine) as session:
            result = session.exec(
                sa_delete(ProjectAgent).where(
                    col(ProjectAgent.project_id) == project_id,
                    col(ProjectAgent.agent_id) == agent_id,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return BoardResult.fail(
                    FailureKind.NOT_FOUND,
                    f"Agent {agent_id} is not assigned to project {project_id}",
                )
            session.commit()
        return BoardResult.success()

    def list_project_agents(self, project_id: str) -> list[str]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(ProjectAgent.agent_id)
                .where(ProjectAgent.project_id == project_id)
                .order_by(col(ProjectAgent.agent_id).asc()),
            ).all()
        return list(rows)

    # -- queue templates --------------------------------------------------

    def create_queue_template(
        self,
        name: str,
        entries: list[QueueTemplateEntry],
    ) -> QueueTemplateView:
        with Session(self.engine) as session:
            row = QueueTemplate(
                template_id=str(uuid4()),
                name=name,
                queues_json=_dump_json([entry.to_dict() for entry in entries]),
                created_at=utc_now(),
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_template_view(row)

    def list_queue_templates(self) -> list[QueueTemplateView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(QueueTemplate).order_by(col(QueueTemplate.created_at).asc()),
            ).all()
        return [_to_template_view(row) for row in rows]

    def delete_queue_template(self, template_id: str) -> BoardResult[None]:
        with Session(self.engine) as session:
            result = session.exec(
                sa_delete(QueueTemplate).where(col(QueueTemplate.template_id) == template_id),
            )
            if result.rowcount != 1:
                session.rollback()
                return BoardResult.fail(
                    FailureKind.NOT_FOUND,
                    f"Queue template not found: {template_id}",
                )
            session.commit()
        return BoardResult.success()

    def apply_queue_template(
        self,
        template_id: str,
        project_id: str,
    ) -> BoardResult[list[QueueView]]:
        """Append the template's queues after the project's existing queues."""

        now = utc_now()
        with Session(self.engine) as session:
            template = session.get(QueueTemplate, template_id)
            if template is None:
                return BoardResult.fail(
                    FailureKind.NOT_FOUND,
                    f"Queue template not found: {template_id}",
                )
            if session.get(Project, project_id) is None:
                return BoardResult.fail(FailureKind.NOT_FOUND, f"Project not found: {project_id}")

            max_position = session.exec(
                select(func.max(Queue.position)).where(Queue.project_id == project_id),
            ).one()
            next_position = 0 if max_position is None else max_position + 1
            rows: list[Queue] = []
            for offset, entry in enumerate(_template_entries(template)):
                row = _new_queue_row(
                    project_id=project_id,
                    name=entry.name,
                    owner_type=entry.owner_type,
                    description=entry.description,
                    position=next_position + offset,
                    now=now,
                    agent_limit=entry.agent_limit,
                )
                session.add(row)
                rows.append(row)
            session.commit()
            for row in rows:
                session.refresh(row)
            return BoardResult.success([_to_queue_view(row) for row in rows])

    # -- internals --------------------------------------------------------

    def _update_task_fields(self, task_id: str, **values: object) -> BoardResult[TaskView]:
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Task).where(col(Task.task_id) == task_id).values(**values),
            )
            if result.rowcount != 1:
                session.rollback()
                return BoardResult.fail(FailureKind.NOT_FOUND, f"Task not found: {task_id}")
            session.commit()
            row = session.get(Task, task_id)
            if row is None:
                return BoardResult.fail(FailureKind.NOT_FOUND, f"Task not found: {task_id}")
            session.refresh(row)
            return BoardResult.success(_to_task_view(row))

    def _emit(self, event_type: TaskEventType, task_id: str | None, **data: object) -> None:
        self.events.emit(TaskEvent(type=event_type, task_id=task_id, data=dict(data)))


def _actor_types_for(actor: str) -> list[str]:
    if actor == HUMAN_ACTOR:
        return [ActorType.HUMAN.value, ActorType.BOTH.value]
    return [ActorType.ASSISTANT.value, ActorType.BOTH.value]


def _new_queue_row(  # noqa: PLR0913
    *,
    project_id: str,
    name: str,
    owner_type: OwnerType,
    description: str | None,
    position: int,
    now: datetime,
    agent_limit: int = 1,
    system_prompt: str | None = None,
) -> Queue:
    return Queue(
        queue_id=str(uuid4()),
        project_id=project_id,
        name=name,
        owner_type=owner_type.value,
        description=description,
        system_prompt=system_prompt,
        position=position,
        agent_limit=agent_limit,
        created_at=now,
        updated_at=now,
    )


def _dump_json(payload: object) -> str:
    return json.dumps(payload, ensure_ascii=False, sort_keys=True)


def _load_json(raw: str | None) -> object | None:
    if not raw:
        return None
    return json.loads(raw)


def _project_config(row: Project | None) -> ProjectConfig:
    if row is None:
        return ProjectConfig()
    payload = _load_json(row.config_json)
    return ProjectConfig.from_dict(payload if isinstance(payload, dict) else None)


def _template_entries(row: QueueTemplate) -> list[QueueTemplateEntry]:
    payload = _load_json(row.queues_json)
    if not isinstance(payload, list):
        return []
    return [QueueTemplateEntry.from_dict(item) for item in payload if isinstance(item, dict)]


def _to_project_view(row: Project) -> ProjectView:
    return ProjectView(
        project_id=row.project_id,
        name=row.name,
        config=_project_config(row),
        system_prompt=row.system_prompt,
        pinned=row.pinned,
        last_accessed_at=optional_utc(row.last_accessed_at),
        session_mode=SessionMode(row.session_mode),
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )


def _to_queue_view(row: Queue) -> QueueView:
    return QueueView(
        queue_id=row.queue_id,
        project_id=row.project_id,
        name=row.name,
        owner_type=OwnerType(row.owner_type),
        description=row.description,
        system_prompt=row.system_prompt,
        position=row.position,
        agent_limit=row.agent_limit,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )


def _to_transition_view(row: Transition) -> TransitionView:
    conditions = _load_json(row.conditions_json)
    return TransitionView(
        transition_id=row.transition_id,
        from_queue_id=row.from_queue_id,
        to_queue_id=row.to_queue_id,
        actor_type=ActorType(row.actor_type),
        conditions=conditions if isinstance(conditions, dict) else None,
        auto_trigger=row.auto_trigger,
        created_at=to_utc_aware_datetime(row.created_at),
    )


def _to_task_view(row: Task) -> TaskView:
    return TaskView(
        task_id=row.task_id,
        project_id=row.project_id,
        queue_id=row.queue_id,
        title=row.title,
        description=row.description,
        priority=row.priority,
        session_key=row.session_key,
        assigned_agent=row.assigned_agent,
        claimed_at=optional_utc(row.claimed_at),
        error=row.error,
        error_at=optional_utc(row.error_at),
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )


def _to_comment_view(row: TaskComment) -> TaskCommentView:
    return TaskCommentView(
        id=row.id or 0,
        task_id=row.task_id,
        author=row.author,
        author_type=AuthorType(row.author_type),
        content=row.content,
        created_at=to_utc_aware_datetime(row.created_at),
    )


def _to_template_view(row: QueueTemplate) -> QueueTemplateView:
    return QueueTemplateView(
        template_id=row.template_id,
        name=row.name,
        entries=_template_entries(row),
        created_at=to_utc_aware_datetime(row.created_at),
    )
