"""SQLModel ORM tables for the task board."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    PrimaryKeyConstraint,
    String,
    Text,
    text,
)
from sqlmodel import Field, SQLModel


class Project(SQLModel, table=True):
    __tablename__ = "projects"  # type: ignore[bad-override]

    project_id: str = Field(primary_key=True)
    name: str = Field(index=True)
    config_json: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    system_prompt: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    pinned: bool = Field(
        default=False,
        sa_column=Column(Boolean, nullable=False, server_default=text("0")),
    )
    last_accessed_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
    session_mode: str = Field(default="per-task")
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class Queue(SQLModel, table=True):
    __tablename__ = "queues"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_queues_project_position", "project_id", "position"),)

    queue_id: str = Field(primary_key=True)
    project_id: str = Field(
        sa_column=Column(
            ForeignKey("projects.project_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    name: str
    owner_type: str
    description: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    system_prompt: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    position: int = 0
    agent_limit: int = 1
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class Transition(SQLModel, table=True):
    __tablename__ = "transitions"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_transitions_from_to", "from_queue_id", "to_queue_id"),)

    transition_id: str = Field(primary_key=True)
    from_queue_id: str = Field(
        sa_column=Column(
            ForeignKey("queues.queue_id", ondelete="CASCADE"),
            nullable=False,
        ),
    )
    to_queue_id: str = Field(
        sa_column=Column(
            ForeignKey("queues.queue_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    actor_type: str
    conditions_json: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    auto_trigger: bool = Field(
        default=False,
        sa_column=Column(Boolean, nullable=False, server_default=text("0")),
    )
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class Task(SQLModel, table=True):
    __tablename__ = "tasks"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_tasks_queue_claim", "queue_id", "assigned_agent", "error"),
        Index("idx_tasks_queue_priority", "queue_id", "priority", "created_at"),
    )

    task_id: str = Field(primary_key=True)
    project_id: str = Field(
        sa_column=Column(
            ForeignKey("projects.project_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    queue_id: str = Field(
        sa_column=Column(ForeignKey("queues.queue_id"), nullable=False),
    )
    title: str
    description: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    priority: int = Field(
        default=0,
        sa_column=Column(Integer, nullable=False, server_default=text("0")),
    )
    session_key: str | None = Field(default=None, sa_column=Column(String, nullable=True))
    assigned_agent: str | None = Field(default=None, sa_column=Column(String, nullable=True))
    claimed_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
    error: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    error_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class TaskHistory(SQLModel, table=True):
    __tablename__ = "task_history"  # type: ignore[bad-override]

    id: int | None = Field(default=None, primary_key=True)
    task_id: str = Field(
        sa_column=Column(
            ForeignKey("tasks.task_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    from_queue_id: str | None = None
    to_queue_id: str | None = None
    actor: str
    note: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class TaskComment(SQLModel, table=True):
    __tablename__ = "task_comments"  # type: ignore[bad-override]

    id: int | None = Field(default=None, primary_key=True)
    task_id: str = Field(
        sa_column=Column(
            ForeignKey("tasks.task_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    author: str
    author_type: str
    content: str = Field(sa_column=Column(Text, nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class ProjectAgent(SQLModel, table=True):
    __tablename__ = "project_agents"  # type: ignore[bad-override]
    __table_args__ = (PrimaryKeyConstraint("project_id", "agent_id"),)

    project_id: str = Field(
        sa_column=Column(
            ForeignKey("projects.project_id", ondelete="CASCADE"),
            nullable=False,
        ),
    )
    agent_id: str = Field(sa_column=Column(String, nullable=False))


class QueueTemplate(SQLModel, table=True):
    __tablename__ = "queue_templates"  # type: ignore[bad-override]

    template_id: str = Field(primary_key=True)
    name: str = Field(index=True)
    queues_json: str = Field(sa_column=Column(Text, nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
