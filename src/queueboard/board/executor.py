"""Executor that claims assistant-queue tasks and routes them through an agent."""

from __future__ import annotations

import hashlib
import logging
import signal
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum

from queueboard.board.backend.base import AgentBackend, AgentDispatchError, AgentSendRequest
from queueboard.board.directives import (
    DONE,
    STUCK,
    extract_content,
    extract_response_text,
    is_sentinel,
    parse_move_directive,
)
from queueboard.board.events import TaskEvent, TaskEventType
from queueboard.board.models import ActorType, AuthorType, OwnerType, QueueView, TaskView
from queueboard.board.prompt import PromptContext, build_prompt
from queueboard.board.repository import BoardRepository

logger = logging.getLogger(__name__)

DEFAULT_AGENT_ID = "main"
DEFAULT_POLL_INTERVAL_SECONDS = 5.0
DEFAULT_EXECUTION_TIMEOUT_SECONDS = 1800.0
DEFAULT_SESSION_KEY_PREFIX = "queueboard"
TIMEOUT_OUTPUT_TAIL_CHARS = 500

NO_DIRECTIVE_ERROR = "Agent did not provide routing directive"
STUCK_ERROR = "Agent couldn't determine destination queue"
UNKNOWN_QUEUE_ERROR = "Unknown destination queue"
TIMEOUT_ERROR = "Agent execution timed out"


class TaskOutcome(str, Enum):
    """How one dispatch ended."""

    MOVED = "moved"
    RELEASED = "released"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"
    ABANDONED = "abandoned"


@dataclass(slots=True)
class ExecutorRunSummary:
    """Aggregate executor counters for CLI reporting."""

    processed: int = 0
    moved: int = 0
    released: int = 0
    failed: int = 0
    timeouts: int = 0
    idle_polls: int = 0

    def record(self, outcome: TaskOutcome) -> None:
        self.processed += 1
        if outcome == TaskOutcome.MOVED:
            self.moved += 1
        elif outcome == TaskOutcome.TIMED_OUT:
            self.timeouts += 1
            self.failed += 1
        elif outcome == TaskOutcome.FAILED:
            self.failed += 1
        else:
            self.released += 1

    def merge(self, other: ExecutorRunSummary) -> None:
        self.processed += other.processed
        self.moved += other.moved
        self.released += other.released
        self.failed += other.failed
        self.timeouts += other.timeouts
        self.idle_polls += other.idle_polls


@dataclass(slots=True)
class ExecutorStatus:
    running: bool
    current_task_id: str | None
    current_session_key: str | None


class TaskExecutor:
    """Single logical worker: at most one task in flight per instance.

    `start()` runs a background poll thread that hands claimed tasks to a
    dispatch thread; `run_once()` and `run_loop()` do the same work in the
    caller's thread. Claim state lives in the database, so a restarted
    executor resumes from persisted task fields.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: BoardRepository,
        backend: AgentBackend,
        project_id: str,
        agent_id: str = DEFAULT_AGENT_ID,
        poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
        execution_timeout_seconds: float = DEFAULT_EXECUTION_TIMEOUT_SECONDS,
        session_key_prefix: str = DEFAULT_SESSION_KEY_PREFIX,
        error_backoff_seconds: float = 5.0,
    ) -> None:
        self.repository = repository
        self.backend = backend
        self.project_id = project_id
        self.agent_id = agent_id
        self.poll_interval_seconds = poll_interval_seconds
        self.execution_timeout_seconds = execution_timeout_seconds
        self.session_key_prefix = session_key_prefix
        self.error_backoff_seconds = error_backoff_seconds
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._cancel = threading.Event()
        self._running = False
        self._poll_thread: threading.Thread | None = None
        self._dispatch_thread: threading.Thread | None = None
        self._current_task_id: str | None = None
        self._current_session_key: str | None = None

    # -- lifecycle ----------------------------------------------------------

    def status(self) -> ExecutorStatus:
        with self._lock:
            return ExecutorStatus(
                running=self._running,
                current_task_id=self._current_task_id,
                current_session_key=self._current_session_key,
            )

    def start(self) -> None:
        """Recover persisted claims and start polling in the background."""

        with self._lock:
            if self._running:
                return
            self._running = True
        self._stop.clear()
        self._cancel.clear()

        resumable = self.recover()
        self._emit(TaskEventType.EXECUTOR_STARTED)
        if resumable is not None and self._hold(resumable):
            self._start_dispatch(resumable, resume=True)

        self._poll_thread = threading.Thread(
            target=self._poll_loop,
            daemon=True,
            name="queueboard-executor-poll",
        )
        self._poll_thread.start()
        logger.info("Executor started for project %s as %s", self.project_id, self.agent_id)

    def stop(self, *, join_timeout: float = 15.0) -> None:
        """Cancel the in-flight dispatch and halt polling."""

        with self._lock:
            if not self._running:
                return
            self._running = False
        self._stop.set()
        self._cancel.set()
        for thread in (self._poll_thread, self._dispatch_thread):
            if thread is not None and thread is not threading.current_thread():
                thread.join(timeout=join_timeout)
        self._poll_thread = None
        self._dispatch_thread = None
        self._emit(TaskEventType.EXECUTOR_STOPPED)
        logger.info("Executor stopped for project %s", self.project_id)

    def recover(self) -> TaskView | None:
        """Error stale claims; return a fresh claim of ours to resume, if any."""

        stale = self.repository.recover_stale_claims(
            self.project_id,
            stale_after=timedelta(seconds=self.execution_timeout_seconds),
        )
        if stale:
            logger.warning("Errored %d stale claim(s) in project %s", len(stale), self.project_id)
        claimed = self.repository.list_claimed_tasks(self.project_id, agent_id=self.agent_id)
        return claimed[0] if claimed else None

    # -- synchronous entry points --------------------------------------------

    def run_once(self) -> ExecutorRunSummary:
        """Claim, dispatch and resolve at most one task in the caller's thread."""

        summary = ExecutorRunSummary()
        if self._stop.is_set() or self.status().current_task_id is not None:
            summary.idle_polls = 1
            return summary

        task = self._claim_next()
        if task is None:
            summary.idle_polls = 1
            return summary

        try:
            summary.record(self.process(task))
        finally:
            self._release_hold()
        return summary

    def run_loop(
        self,
        *,
        max_tasks: int | None = None,
        max_idle_polls: int | None = None,
    ) -> ExecutorRunSummary:
        """Run in the foreground until stopped, idle or `max_tasks` is reached.

        Args:
            max_tasks: Stop after processing this many tasks (None = unlimited).
            max_idle_polls: Consecutive empty polls before exiting
                (None = keep polling until a signal arrives).
        """

        aggregate = ExecutorRunSummary()
        consecutive_idle = 0
        self._stop.clear()
        self._cancel.clear()
        with self._signal_handlers():
            resumable = self.recover()
            if resumable is not None and self._hold(resumable):
                try:
                    aggregate.record(self.process(resumable, resume=True))
                finally:
                    self._release_hold()

            while not self._stop.is_set():
                if max_tasks is not None and aggregate.processed >= max_tasks:
                    break

                summary = self.run_once()
                aggregate.merge(summary)
                if summary.processed == 0:
                    consecutive_idle += 1
                    if max_idle_polls is not None and consecutive_idle >= max_idle_polls:
                        break
                    self._stop.wait(self.poll_interval_seconds)
                    continue
                consecutive_idle = 0
        return aggregate

    # -- dispatch and resolution ---------------------------------------------

    def process(self, task: TaskView, *, resume: bool = False) -> TaskOutcome:
        """Dispatch one claimed task and apply the agent's routing directive."""

        session_key = task.session_key or self.session_key_for(task.task_id)
        request = AgentSendRequest(
            session_key=session_key,
            message=self._build_prompt(task),
            idempotency_key=self.idempotency_key_for(task),
            timeout_seconds=self.execution_timeout_seconds,
            cancel_requested=self._cancel.is_set,
            resume=resume,
        )
        logger.info("Dispatching task %s (%s)", task.task_id, session_key)
        try:
            reply = self.backend.send(request)
        except AgentDispatchError as error:
            logger.warning("Dispatch of task %s failed: %s", task.task_id, error)
            self.repository.set_task_error(task.task_id, f"Agent dispatch failed: {error}")
            return TaskOutcome.FAILED

        if reply.cancelled:
            logger.info("Dispatch of task %s cancelled; releasing claim", task.task_id)
            self.repository.release_task(task.task_id)
            return TaskOutcome.CANCELLED

        if reply.timed_out:
            output = extract_content(reply.content).strip()
            if output:
                self.repository.add_comment(
                    task.task_id,
                    author=self.agent_id,
                    author_type=AuthorType.AGENT,
                    content=(
                        "Execution timed out. Last output:\n"
                        f"{output[-TIMEOUT_OUTPUT_TAIL_CHARS:]}"
                    ),
                )
            self.repository.set_task_error(task.task_id, TIMEOUT_ERROR)
            return TaskOutcome.TIMED_OUT

        return self._resolve(task, reply.content)

    def _resolve(self, task: TaskView, content: object) -> TaskOutcome:  # noqa: PLR0911
        current = self.repository.get_task(task.task_id)
        if current is None or current.assigned_agent != self.agent_id:
            logger.info("Task %s changed hands during dispatch; dropping reply", task.task_id)
            return TaskOutcome.ABANDONED

        response_text = extract_response_text(content)
        if response_text:
            self.repository.add_comment(
                task.task_id,
                author=self.agent_id,
                author_type=AuthorType.AGENT,
                content=response_text,
            )

        directive = parse_move_directive(content)
        if directive is None:
            return self._fail(task.task_id, NO_DIRECTIVE_ERROR)
        if is_sentinel(directive, STUCK):
            return self._fail(task.task_id, STUCK_ERROR)

        project = self.repository.get_project(current.project_id)
        strict = project is not None and project.config.strict_transitions
        destinations = self.repository.list_assistant_destinations(current.queue_id)
        target = _match_queue(self.repository.list_queues(current.project_id), directive)

        if target is not None:
            if strict and target.queue_id not in {queue.queue_id for queue in destinations}:
                return self._fail(
                    task.task_id,
                    f"Transition to {target.name} is not allowed from the current queue",
                )
            return self._move(task.task_id, target, note=f"Routed by agent: MOVE TO: {directive}")

        if is_sentinel(directive, DONE) and not self._project_has_pipeline(current.project_id):
            logger.info("Task %s finished with no pipeline configured; releasing", task.task_id)
            self.repository.release_task(task.task_id)
            return TaskOutcome.RELEASED

        if strict:
            fallback = next(
                (queue for queue in destinations if queue.owner_type == OwnerType.HUMAN),
                None,
            )
            if fallback is not None:
                return self._move(
                    task.task_id,
                    fallback,
                    note=f"Agent requested unknown queue '{directive}'; sent to {fallback.name}",
                )
        logger.warning("Task %s routed to unknown queue %r", task.task_id, directive)
        return self._fail(task.task_id, UNKNOWN_QUEUE_ERROR)

    def _project_has_pipeline(self, project_id: str) -> bool:
        return any(
            transition.actor_type in {ActorType.ASSISTANT, ActorType.BOTH}
            for transition in self.repository.list_transitions(project_id)
        )

    def _move(self, task_id: str, target: QueueView, *, note: str) -> TaskOutcome:
        result = self.repository.move_task(task_id, target.queue_id, actor=self.agent_id, note=note)
        if not result.ok:
            return self._fail(task_id, result.message or f"Move to {target.name} failed")
        logger.info("Task %s moved to %s", task_id, target.name)
        return TaskOutcome.MOVED

    def _fail(self, task_id: str, message: str) -> TaskOutcome:
        self.repository.set_task_error(task_id, message)
        return TaskOutcome.FAILED

    def _build_prompt(self, task: TaskView) -> str:
        project = self.repository.get_project(task.project_id)
        queue = self.repository.get_queue(task.queue_id)
        return build_prompt(
            PromptContext(
                task=task,
                comments=self.repository.list_comments(task.task_id),
                project_system_prompt=project.system_prompt if project else None,
                queue_system_prompt=queue.system_prompt if queue else None,
                destinations=self.repository.list_assistant_destinations(task.queue_id),
            ),
        )

    def session_key_for(self, task_id: str) -> str:
        return f"{self.session_key_prefix}:task:{task_id}"

    def idempotency_key_for(self, task: TaskView) -> str:
        """Stable per claim, so resuming a claim after a restart reuses it."""

        claimed = task.claimed_at.isoformat() if task.claimed_at else ""
        return hashlib.sha256(f"{task.task_id}:{claimed}".encode()).hexdigest()[:32]

    # -- background threads --------------------------------------------------

    def _poll_loop(self) -> None:
        while not self._stop.is_set():
            try:
                self._tick()
            except Exception:
                logger.exception("Executor poll error")
                self._stop.wait(timeout=self.error_backoff_seconds)
                continue
            self._stop.wait(timeout=self.poll_interval_seconds)

    def _tick(self) -> None:
        if self.status().current_task_id is not None:
            return
        task = self._claim_next()
        if task is not None:
            self._start_dispatch(task)

    def _start_dispatch(self, task: TaskView, *, resume: bool = False) -> None:
        self._dispatch_thread = threading.Thread(
            target=self._dispatch_worker,
            args=(task, resume),
            daemon=True,
            name=f"queueboard-dispatch-{task.task_id[:8]}",
        )
        self._dispatch_thread.start()

    def _dispatch_worker(self, task: TaskView, resume: bool) -> None:
        try:
            self.process(task, resume=resume)
        except Exception:
            logger.exception("Unexpected error processing task %s", task.task_id)
        finally:
            self._release_hold()

    def _claim_next(self) -> TaskView | None:
        candidate = self.repository.get_next_claimable_task(self.project_id, agent_id=self.agent_id)
        if candidate is None:
            return None
        result = self.repository.claim_task(
            candidate.task_id,
            agent_id=self.agent_id,
            session_key=self.session_key_for(candidate.task_id),
        )
        if not result.ok or result.value is None:
            logger.info("Could not claim task %s: %s", candidate.task_id, result.message)
            return None
        claimed = result.value
        if not self._hold(claimed):
            self.repository.release_task(claimed.task_id)
            return None
        return claimed

    def _hold(self, task: TaskView) -> bool:
        with self._lock:
            if self._current_task_id is not None:
                return False
            self._current_task_id = task.task_id
            self._current_session_key = task.session_key
            return True

    def _release_hold(self) -> None:
        with self._lock:
            self._current_task_id = None
            self._current_session_key = None

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            logger.info("Received %s, stopping executor", signal.Signals(signum).name)
            self._stop.set()
            self._cancel.set()

        installed = True
        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
        except ValueError:
            # Signal handlers can only be installed in main thread.
            installed = False
        try:
            yield
        finally:
            if installed:
                signal.signal(signal.SIGINT, original_sigint)
                signal.signal(signal.SIGTERM, original_sigterm)

    def _emit(self, event_type: TaskEventType) -> None:
        self.repository.events.emit(
            TaskEvent(type=event_type, data={"project_id": self.project_id, "agent_id": self.agent_id}),
        )


def _match_queue(queues: list[QueueView], name: str) -> QueueView | None:
    wanted = name.strip().casefold()
    for queue in queues:
        if queue.name.strip().casefold() == wanted:
            return queue
    return None
