from __future__ import annotations

import threading
import time
from dataclasses import replace
from datetime import timedelta

import allure

from queueboard.board.backend import AgentDispatchError, AgentReply, AgentSendRequest
from queueboard.board.backend.cli_backend import CliAgentBackend
from queueboard.board.events import TaskEvent, TaskEventType
from queueboard.board.executor import (
    NO_DIRECTIVE_ERROR,
    STUCK_ERROR,
    TIMEOUT_ERROR,
    UNKNOWN_QUEUE_ERROR,
    TaskExecutor,
    TaskOutcome,
)
from queueboard.board.models import (
    ActorType,
    AuthorType,
    OwnerType,
    ProjectConfig,
    ProjectCreate,
    QueueCreate,
    QueueView,
    TaskCreate,
    TaskView,
    TransitionCreate,
)
from queueboard.board.repository import STALE_CLAIM_ERROR, BoardRepository

pytestmark = [
    allure.epic("Task Board"),
    allure.feature("Task Executor"),
]


class _ScriptedBackend:
    """Returns queued replies in order; exceptions are raised instead."""

    def __init__(self, *replies: AgentReply | Exception) -> None:
        self.replies = list(replies)
        self.requests: list[AgentSendRequest] = []

    def send(self, request: AgentSendRequest) -> AgentReply:
        self.requests.append(request)
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply


class _BlockingBackend:
    """Blocks until the executor requests cancellation."""

    def __init__(self) -> None:
        self.started = threading.Event()

    def send(self, request: AgentSendRequest) -> AgentReply:
        self.started.set()
        while request.cancel_requested is None or not request.cancel_requested():
            time.sleep(0.01)
        return AgentReply(content="half done", cancelled=True)


def _seeded(repository: BoardRepository) -> tuple[str, QueueView, QueueView, QueueView]:
    project = repository.seed_default_project()
    todo, in_progress, done = repository.list_queues(project.project_id)
    return project.project_id, todo, in_progress, done


def _strict_board(repository: BoardRepository) -> tuple[str, QueueView, QueueView, QueueView]:
    project = repository.create_project(
        ProjectCreate(name="Strict", config=ProjectConfig(strict_transitions=True)),
    )
    created = []
    for position, (name, owner) in enumerate(
        [("Todo", OwnerType.HUMAN), ("Work", OwnerType.ASSISTANT), ("Review", OwnerType.HUMAN)],
    ):
        result = repository.create_queue(
            QueueCreate(
                project_id=project.project_id,
                name=name,
                owner_type=owner,
                position=position,
            ),
        )
        assert result.value is not None
        created.append(result.value)
    todo, work, review = created
    repository.create_transition(
        TransitionCreate(
            from_queue_id=work.queue_id,
            to_queue_id=review.queue_id,
            actor_type=ActorType.ASSISTANT,
        ),
    )
    return project.project_id, todo, work, review


def _task(repository: BoardRepository, project_id: str, queue: QueueView, title: str) -> str:
    result = repository.create_task(
        TaskCreate(project_id=project_id, queue_id=queue.queue_id, title=title),
    )
    assert result.value is not None
    return result.value.task_id


def _executor(
    repository: BoardRepository,
    project_id: str,
    backend: object,
    **kwargs: float,
) -> TaskExecutor:
    return TaskExecutor(
        repository=repository,
        backend=backend,  # type: ignore[arg-type]
        project_id=project_id,
        poll_interval_seconds=0.05,
        **kwargs,
    )


def _reloaded(repository: BoardRepository, task_id: str) -> TaskView:
    task = repository.get_task(task_id)
    assert task is not None
    return task


def test_executor_routes_task_to_named_queue(repository: BoardRepository) -> None:
    project_id, _, in_progress, done = _seeded(repository)
    task_id = _task(repository, project_id, in_progress, "Summarize logs")
    backend = _ScriptedBackend(AgentReply(content="Logs look clean.\nMOVE TO: Done"))

    summary = _executor(repository, project_id, backend).run_once()

    assert summary.processed == 1
    assert summary.moved == 1
    task = _reloaded(repository, task_id)
    assert task.queue_id == done.queue_id
    assert task.assigned_agent is None
    assert task.error is None

    history = repository.get_task_history(task_id)
    assert history[-1].actor == "main"
    assert history[-1].note == "Routed by agent: MOVE TO: Done"
    comments = repository.list_comments(task_id)
    assert [(c.author, c.author_type, c.content) for c in comments] == [
        ("main", AuthorType.AGENT, "Logs look clean."),
    ]

    request = backend.requests[0]
    assert request.session_key == f"queueboard:task:{task_id}"
    assert "# Task: Summarize logs" in request.message
    assert "- Done: Completed tasks" in request.message
    assert len(request.idempotency_key) == 32
    assert request.resume is False


def test_executor_matches_queue_names_case_insensitively(repository: BoardRepository) -> None:
    project_id, _, in_progress, done = _seeded(repository)
    task_id = _task(repository, project_id, in_progress, "Lowercase")
    backend = _ScriptedBackend(AgentReply(content=[{"type": "text", "text": "move to: done"}]))

    _executor(repository, project_id, backend).run_once()

    assert _reloaded(repository, task_id).queue_id == done.queue_id


def test_executor_errors_task_without_directive(repository: BoardRepository) -> None:
    project_id, _, in_progress, _ = _seeded(repository)
    task_id = _task(repository, project_id, in_progress, "Chatty")
    backend = _ScriptedBackend(AgentReply(content="I looked into it."))

    summary = _executor(repository, project_id, backend).run_once()

    assert summary.failed == 1
    task = _reloaded(repository, task_id)
    assert task.error == NO_DIRECTIVE_ERROR
    assert task.queue_id == in_progress.queue_id
    assert task.assigned_agent is None
    assert [c.content for c in repository.list_comments(task_id)] == ["I looked into it."]


def test_executor_errors_stuck_task(repository: BoardRepository) -> None:
    project_id, _, in_progress, _ = _seeded(repository)
    task_id = _task(repository, project_id, in_progress, "Unclear")
    backend = _ScriptedBackend(AgentReply(content="Not sure.\nMOVE TO: STUCK"))

    _executor(repository, project_id, backend).run_once()

    assert _reloaded(repository, task_id).error == STUCK_ERROR


def test_executor_errors_unknown_queue_in_free_mode(repository: BoardRepository) -> None:
    project_id, _, in_progress, _ = _seeded(repository)
    task_id = _task(repository, project_id, in_progress, "Lost")
    backend = _ScriptedBackend(AgentReply(content="MOVE TO: Nowhere"))

    _executor(repository, project_id, backend).run_once()

    task = _reloaded(repository, task_id)
    assert task.error == UNKNOWN_QUEUE_ERROR
    assert task.queue_id == in_progress.queue_id


def test_strict_executor_falls_back_to_human_destination(repository: BoardRepository) -> None:
    project_id, _, work, review = _strict_board(repository)
    task_id = _task(repository, project_id, work, "Guess")
    backend = _ScriptedBackend(AgentReply(content="MOVE TO: Somewhere"))

    summary = _executor(repository, project_id, backend).run_once()

    assert summary.moved == 1
    task = _reloaded(repository, task_id)
    assert task.queue_id == review.queue_id
    assert task.error is None
    note = repository.get_task_history(task_id)[-1].note
    assert note is not None and "Somewhere" in note


def test_strict_executor_refuses_unreachable_queue(repository: BoardRepository) -> None:
    project_id, _, work, _ = _strict_board(repository)
    task_id = _task(repository, project_id, work, "Backwards")
    backend = _ScriptedBackend(AgentReply(content="MOVE TO: Todo"))

    summary = _executor(repository, project_id, backend).run_once()

    assert summary.failed == 1
    task = _reloaded(repository, task_id)
    assert task.queue_id == work.queue_id
    assert task.error is not None and "Todo" in task.error


def test_done_without_pipeline_releases_task(repository: BoardRepository) -> None:
    project = repository.create_project(ProjectCreate(name="Loose"))
    work = repository.create_queue(
        QueueCreate(project_id=project.project_id, name="Work", owner_type=OwnerType.ASSISTANT),
    ).value
    assert work is not None
    task_id = _task(repository, project.project_id, work, "Standalone")
    backend = _ScriptedBackend(AgentReply(content="Finished.\nMOVE TO: DONE"))

    summary = _executor(repository, project.project_id, backend).run_once()

    assert summary.released == 1
    assert "MOVE TO: DONE" in backend.requests[0].message
    task = _reloaded(repository, task_id)
    assert task.queue_id == work.queue_id
    assert task.assigned_agent is None
    assert task.error is None


def test_done_errors_when_pipeline_exists_elsewhere(repository: BoardRepository) -> None:
    project = repository.create_project(ProjectCreate(name="Partial"))
    queues = []
    for name, owner in [
        ("Work", OwnerType.ASSISTANT),
        ("Triage", OwnerType.ASSISTANT),
        ("Review", OwnerType.HUMAN),
    ]:
        created = repository.create_queue(
            QueueCreate(project_id=project.project_id, name=name, owner_type=owner),
        ).value
        assert created is not None
        queues.append(created)
    work, triage, review = queues
    repository.create_transition(
        TransitionCreate(
            from_queue_id=triage.queue_id,
            to_queue_id=review.queue_id,
            actor_type=ActorType.ASSISTANT,
        ),
    )
    task_id = _task(repository, project.project_id, work, "No route from here")
    backend = _ScriptedBackend(AgentReply(content="ok\nMOVE TO: DONE"))

    summary = _executor(repository, project.project_id, backend).run_once()

    assert summary.failed == 1
    task = _reloaded(repository, task_id)
    assert task.error == UNKNOWN_QUEUE_ERROR
    assert task.queue_id == work.queue_id


def test_dispatch_error_records_task_error(repository: BoardRepository) -> None:
    project_id, _, in_progress, _ = _seeded(repository)
    task_id = _task(repository, project_id, in_progress, "Offline")
    backend = _ScriptedBackend(AgentDispatchError("gateway unreachable", transient=True))

    summary = _executor(repository, project_id, backend).run_once()

    assert summary.failed == 1
    task = _reloaded(repository, task_id)
    assert task.error == "Agent dispatch failed: gateway unreachable"
    assert task.assigned_agent is None


def test_timeout_keeps_partial_output(repository: BoardRepository) -> None:
    project_id, _, in_progress, _ = _seeded(repository)
    task_id = _task(repository, project_id, in_progress, "Slow")
    backend = _ScriptedBackend(AgentReply(content="still thinking", timed_out=True))

    summary = _executor(repository, project_id, backend).run_once()

    assert summary.timeouts == 1
    assert summary.failed == 1
    assert _reloaded(repository, task_id).error == TIMEOUT_ERROR
    assert [c.content for c in repository.list_comments(task_id)] == [
        "Execution timed out. Last output:\nstill thinking",
    ]


def test_cancelled_reply_releases_claim(repository: BoardRepository) -> None:
    project_id, _, in_progress, _ = _seeded(repository)
    task_id = _task(repository, project_id, in_progress, "Interrupted")
    backend = _ScriptedBackend(AgentReply(content="", cancelled=True))

    summary = _executor(repository, project_id, backend).run_once()

    assert summary.released == 1
    task = _reloaded(repository, task_id)
    assert task.assigned_agent is None
    assert task.error is None


def test_reply_for_task_moved_elsewhere_is_dropped(repository: BoardRepository) -> None:
    project_id, todo, in_progress, _ = _seeded(repository)
    task_id = _task(repository, project_id, in_progress, "Reassigned")

    class _MovingBackend:
        def send(self, request: AgentSendRequest) -> AgentReply:
            repository.move_task(task_id, todo.queue_id, actor="human")
            return AgentReply(content="MOVE TO: Done")

    executor = _executor(repository, project_id, _MovingBackend())
    task = executor._claim_next()
    assert task is not None
    try:
        outcome = executor.process(task)
    finally:
        executor._release_hold()

    assert outcome == TaskOutcome.ABANDONED
    reloaded = _reloaded(repository, task_id)
    assert reloaded.queue_id == todo.queue_id
    assert reloaded.error is None
    assert repository.list_comments(task_id) == []


def test_run_once_is_idle_without_work(repository: BoardRepository) -> None:
    project_id, todo, _, _ = _seeded(repository)
    _task(repository, project_id, todo, "Human work")
    backend = _ScriptedBackend()

    summary = _executor(repository, project_id, backend).run_once()

    assert summary.processed == 0
    assert summary.idle_polls == 1
    assert backend.requests == []


def test_run_loop_resumes_persisted_claim(repository: BoardRepository) -> None:
    project_id, _, in_progress, done = _seeded(repository)
    task_id = _task(repository, project_id, in_progress, "Resumed")
    repository.claim_task(task_id, agent_id="main", session_key="earlier-session")
    backend = _ScriptedBackend(AgentReply(content="MOVE TO: Done"))

    summary = _executor(repository, project_id, backend).run_loop(max_idle_polls=1)

    assert summary.processed == 1
    assert summary.moved == 1
    assert backend.requests[0].session_key == "earlier-session"
    assert backend.requests[0].resume is True
    assert _reloaded(repository, task_id).queue_id == done.queue_id


def test_run_loop_honors_max_tasks(repository: BoardRepository) -> None:
    project_id, _, in_progress, done = _seeded(repository)
    first = _task(repository, project_id, in_progress, "First")
    second = _task(repository, project_id, in_progress, "Second")
    backend = _ScriptedBackend(
        AgentReply(content="MOVE TO: Done"),
        AgentReply(content="MOVE TO: Done"),
    )

    summary = _executor(repository, project_id, backend).run_loop(max_tasks=1, max_idle_polls=1)

    assert summary.processed == 1
    moved = [_reloaded(repository, task_id).queue_id for task_id in (first, second)]
    assert moved.count(done.queue_id) == 1


def test_recover_errors_stale_claims(repository: BoardRepository) -> None:
    project_id, _, in_progress, _ = _seeded(repository)
    task_id = _task(repository, project_id, in_progress, "Abandoned")
    repository.claim_task(task_id, agent_id="main", session_key="s1")

    executor = _executor(repository, project_id, _ScriptedBackend(), execution_timeout_seconds=0.0)

    assert executor.recover() is None
    assert _reloaded(repository, task_id).error == STALE_CLAIM_ERROR
    assert repository.recover_stale_claims(project_id, stale_after=timedelta(0)) == []


def test_idempotency_key_is_stable_per_claim(repository: BoardRepository) -> None:
    project_id, _, in_progress, _ = _seeded(repository)
    task_id = _task(repository, project_id, in_progress, "Keyed")
    claimed = repository.claim_task(task_id, agent_id="main", session_key="s1").value
    assert claimed is not None and claimed.claimed_at is not None
    executor = _executor(repository, project_id, _ScriptedBackend())

    key = executor.idempotency_key_for(claimed)
    reclaimed = replace(claimed, claimed_at=claimed.claimed_at + timedelta(seconds=1))

    assert executor.idempotency_key_for(_reloaded(repository, task_id)) == key
    assert executor.idempotency_key_for(reclaimed) != key


def test_background_executor_stops_and_releases_claim(repository: BoardRepository) -> None:
    project_id, _, in_progress, _ = _seeded(repository)
    task_id = _task(repository, project_id, in_progress, "Long running")
    events: list[TaskEvent] = []
    repository.events.subscribe(events.append)
    backend = _BlockingBackend()
    executor = _executor(repository, project_id, backend)

    executor.start()
    try:
        assert backend.started.wait(timeout=10)
        status = executor.status()
        assert status.running is True
        assert status.current_task_id == task_id
    finally:
        executor.stop()

    assert executor.status().running is False
    assert executor.status().current_task_id is None
    task = _reloaded(repository, task_id)
    assert task.assigned_agent is None
    assert task.error is None
    types = [event.type for event in events]
    assert types[0] == TaskEventType.EXECUTOR_STARTED
    assert types[-1] == TaskEventType.EXECUTOR_STOPPED
    assert TaskEventType.TASK_CLAIMED in types


def test_executor_drives_echo_agent_subprocess(
    repository: BoardRepository,
    echo_agent_command: str,
) -> None:
    project_id, _, in_progress, done = _seeded(repository)
    task_id = _task(repository, project_id, in_progress, "Echo me")
    backend = CliAgentBackend(command_template=echo_agent_command, poll_interval_seconds=0.02)

    summary = _executor(repository, project_id, backend, execution_timeout_seconds=60.0).run_once()

    assert summary.moved == 1
    assert _reloaded(repository, task_id).queue_id == done.queue_id
    assert [c.content for c in repository.list_comments(task_id)] == ["Handled: Echo me"]
