"""Domain models for the task board state machine."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Generic, TypeVar

ValueT = TypeVar("ValueT")


class OwnerType(str, Enum):
    """Who acts on tasks sitting in a queue."""

    HUMAN = "human"
    ASSISTANT = "assistant"


class ActorType(str, Enum):
    """Who may trigger a transition."""

    HUMAN = "human"
    ASSISTANT = "assistant"
    BOTH = "both"


class AuthorType(str, Enum):
    HUMAN = "human"
    AGENT = "agent"


class SessionMode(str, Enum):
    PER_TASK = "per-task"
    AGENT_POOL = "agent-pool"
    ANY_FREE = "any-free"


class FailureKind(str, Enum):
    """Business-rule failures returned (never raised) by the repository."""

    NOT_FOUND = "not_found"
    INVALID_TRANSITION = "invalid_transition"
    NOT_CLAIMABLE = "not_claimable"
    CONSTRAINT_VIOLATION = "constraint_violation"


@dataclass(slots=True)
class BoardResult(Generic[ValueT]):
    """Outcome of a repository operation that can hit a business rule."""

    value: ValueT | None = None
    failure: FailureKind | None = None
    message: str | None = None

    @property
    def ok(self) -> bool:
        return self.failure is None

    @classmethod
    def success(cls, value: ValueT | None = None) -> BoardResult[ValueT]:
        return cls(value=value)

    @classmethod
    def fail(cls, failure: FailureKind, message: str) -> BoardResult[ValueT]:
        return cls(failure=failure, message=message)


@dataclass(slots=True)
class ProjectConfig:
    """Project-wide execution policy."""

    strict_transitions: bool = False
    max_concurrent_agents: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "strict_transitions": self.strict_transitions,
            "max_concurrent_agents": self.max_concurrent_agents,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any] | None) -> ProjectConfig:
        if not payload:
            return cls()
        return cls(
            strict_transitions=bool(payload.get("strict_transitions", False)),
            max_concurrent_agents=int(payload.get("max_concurrent_agents", 0) or 0),
        )


@dataclass(slots=True)
class ProjectCreate:
    """Input payload for creating a project."""

    name: str
    config: ProjectConfig | None = None
    system_prompt: str | None = None
    session_mode: SessionMode = SessionMode.PER_TASK
    pinned: bool = False


@dataclass(slots=True)
class ProjectUpdate:
    """Partial project update; `None` leaves a field unchanged."""

    name: str | None = None
    config: ProjectConfig | None = None
    system_prompt: str | None = None
    session_mode: SessionMode | None = None
    pinned: bool | None = None


@dataclass(slots=True)
class ProjectView:
    project_id: str
    name: str
    config: ProjectConfig
    system_prompt: str | None
    pinned: bool
    last_accessed_at: datetime | None
    session_mode: SessionMode
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class QueueCreate:
    """Input payload for creating a queue inside a project."""

    project_id: str
    name: str
    owner_type: OwnerType
    description: str | None = None
    system_prompt: str | None = None
    position: int = 0
    agent_limit: int = 1


@dataclass(slots=True)
class QueueUpdate:
    name: str | None = None
    owner_type: OwnerType | None = None
    description: str | None = None
    system_prompt: str | None = None
    agent_limit: int | None = None


@dataclass(slots=True)
class QueueView:
    queue_id: str
    project_id: str
    name: str
    owner_type: OwnerType
    description: str | None
    system_prompt: str | None
    position: int
    agent_limit: int
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class QueuePosition:
    queue_id: str
    position: int


@dataclass(slots=True)
class TransitionCreate:
    from_queue_id: str
    to_queue_id: str
    actor_type: ActorType
    conditions: dict[str, Any] | None = None
    auto_trigger: bool = False


@dataclass(slots=True)
class TransitionView:
    transition_id: str
    from_queue_id: str
    to_queue_id: str
    actor_type: ActorType
    conditions: dict[str, Any] | None
    auto_trigger: bool
    created_at: datetime


@dataclass(slots=True)
class TaskCreate:
    """Input payload for creating a task in a queue."""

    project_id: str
    queue_id: str
    title: str
    description: str | None = None
    priority: int = 0


@dataclass(slots=True)
class TaskUpdate:
    title: str | None = None
    description: str | None = None
    priority: int | None = None


@dataclass(slots=True)
class TaskView:
    """Readable task view for executor and CLI logic."""

    task_id: str
    project_id: str
    queue_id: str
    title: str
    description: str | None
    priority: int
    session_key: str | None
    assigned_agent: str | None
    claimed_at: datetime | None
    error: str | None
    error_at: datetime | None
    created_at: datetime
    updated_at: datetime

    @property
    def is_claimed(self) -> bool:
        return self.assigned_agent is not None


@dataclass(slots=True)
class TaskHistoryView:
    """Immutable audit entry for one move."""

    id: int
    task_id: str
    from_queue_id: str | None
    to_queue_id: str | None
    actor: str
    note: str | None
    created_at: datetime


@dataclass(slots=True)
class TaskCommentView:
    id: int
    task_id: str
    author: str
    author_type: AuthorType
    content: str
    created_at: datetime


@dataclass(slots=True)
class QueueTemplateEntry:
    """One queue definition inside a reusable template."""

    name: str
    owner_type: OwnerType
    description: str | None = None
    agent_limit: int = 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "owner_type": self.owner_type.value,
            "description": self.description,
            "agent_limit": self.agent_limit,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> QueueTemplateEntry:
        return cls(
            name=str(payload["name"]),
            owner_type=OwnerType(payload["owner_type"]),
            description=payload.get("description"),
            agent_limit=int(payload.get("agent_limit", 1)),
        )


@dataclass(slots=True)
class QueueTemplateView:
    template_id: str
    name: str
    entries: list[QueueTemplateEntry] = field(default_factory=list)
    created_at: datetime | None = None
