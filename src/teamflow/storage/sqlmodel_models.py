"""SQLModel ORM tables for orchestration storage."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    Column,
    DateTime,
    ForeignKey,
    Index,
    PrimaryKeyConstraint,
    Text,
    UniqueConstraint,
)
from sqlmodel import Field, SQLModel


class TeamRun(SQLModel, table=True):
    __tablename__ = "team_runs"  # type: ignore[bad-override]

    run_id: str = Field(primary_key=True)
    plan_name: str = Field(index=True)
    plan_json: str = Field(sa_column=Column(Text, nullable=False))
    status: str = Field(index=True)
    error_summary: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    completed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))


class RunStream(SQLModel, table=True):
    __tablename__ = "run_streams"  # type: ignore[bad-override]
    __table_args__ = (UniqueConstraint("run_id", "name", name="uq_run_streams_run_name"),)

    id: int | None = Field(default=None, primary_key=True)
    run_id: str = Field(
        sa_column=Column(
            ForeignKey("team_runs.run_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    name: str = Field(index=True)
    owned_resources_json: str = Field(sa_column=Column(Text, nullable=False))
    required_capabilities_json: str = Field(sa_column=Column(Text, nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class TeamTask(SQLModel, table=True):
    __tablename__ = "team_tasks"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint("run_id", "name", name="uq_team_tasks_run_name"),
        Index("idx_team_tasks_claim", "run_id", "stream", "status", "run_after"),
        Index("idx_team_tasks_phase", "run_id", "phase", "status"),
    )

    task_id: str = Field(primary_key=True)
    run_id: str = Field(
        sa_column=Column(
            ForeignKey("team_runs.run_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    name: str
    description: str = Field(default="", sa_column=Column(Text, nullable=False))
    stream: str = Field(index=True)
    phase: int = Field(index=True)
    status: str = Field(index=True)
    block_reason: str | None = Field(default=None, index=True)
    claimed_by: str | None = Field(default=None, index=True)
    attempt: int = Field(default=0)
    max_attempts: int = Field(default=3)
    run_after: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    error_summary: str | None = Field(default=None, sa_column=Column(Text))
    output_summary: str | None = Field(default=None, sa_column=Column(Text))
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    finished_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class TeamTaskDependency(SQLModel, table=True):
    __tablename__ = "team_task_dependencies"  # type: ignore[bad-override]
    __table_args__ = (
        PrimaryKeyConstraint("task_id", "blocked_by_id", name="pk_team_task_dependencies"),
    )

    task_id: str = Field(
        sa_column=Column(
            ForeignKey("team_tasks.task_id", ondelete="CASCADE"),
            nullable=False,
        ),
    )
    blocked_by_id: str = Field(
        sa_column=Column(
            ForeignKey("team_tasks.task_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )


class TeamTaskEvent(SQLModel, table=True):
    __tablename__ = "team_task_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_team_task_events_task_time", "task_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    task_id: str = Field(
        sa_column=Column(
            ForeignKey("team_tasks.task_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    run_id: str = Field(index=True)
    worker_id: str | None = Field(default=None, index=True)
    event_type: str = Field(index=True)
    status_from: str | None = Field(default=None, index=True)
    status_to: str | None = Field(default=None, index=True)
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class StreamMessage(SQLModel, table=True):
    __tablename__ = "stream_messages"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint(
            "run_id",
            "from_stream",
            "to_stream",
            "trigger_phase",
            name="uq_stream_messages_route_phase",
        ),
        Index("idx_stream_messages_inbox", "run_id", "to_stream", "delivered"),
    )

    message_id: str = Field(primary_key=True)
    run_id: str = Field(
        sa_column=Column(
            ForeignKey("team_runs.run_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    from_stream: str
    to_stream: str
    trigger_phase: int
    payload: str = Field(sa_column=Column(Text, nullable=False))
    delivered: bool = Field(default=False)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    delivered_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
