"""Initial orchestration schema: runs, streams, tasks, dependencies, events, messages."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261018_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "team_runs",
        sa.Column("run_id", sa.String(), nullable=False),
        sa.Column("plan_name", sa.String(), nullable=False),
        sa.Column("plan_json", sa.Text(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("error_summary", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("run_id"),
    )
    op.create_index("ix_team_runs_plan_name", "team_runs", ["plan_name"], unique=False)
    op.create_index("ix_team_runs_status", "team_runs", ["status"], unique=False)

    op.create_table(
        "run_streams",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("run_id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("owned_resources_json", sa.Text(), nullable=False),
        sa.Column("required_capabilities_json", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["run_id"], ["team_runs.run_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("run_id", "name", name="uq_run_streams_run_name"),
    )
    op.create_index("ix_run_streams_run_id", "run_streams", ["run_id"], unique=False)
    op.create_index("ix_run_streams_name", "run_streams", ["name"], unique=False)

    op.create_table(
        "team_tasks",
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("run_id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("stream", sa.String(), nullable=False),
        sa.Column("phase", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("block_reason", sa.String(), nullable=True),
        sa.Column("claimed_by", sa.String(), nullable=True),
        sa.Column("attempt", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("run_after", sa.DateTime(timezone=True), nullable=False),
        sa.Column("error_summary", sa.Text(), nullable=True),
        sa.Column("output_summary", sa.Text(), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["run_id"], ["team_runs.run_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("task_id"),
        sa.UniqueConstraint("run_id", "name", name="uq_team_tasks_run_name"),
    )
    op.create_index("ix_team_tasks_run_id", "team_tasks", ["run_id"], unique=False)
    op.create_index("ix_team_tasks_stream", "team_tasks", ["stream"], unique=False)
    op.create_index("ix_team_tasks_phase", "team_tasks", ["phase"], unique=False)
    op.create_index("ix_team_tasks_status", "team_tasks", ["status"], unique=False)
    op.create_index("ix_team_tasks_block_reason", "team_tasks", ["block_reason"], unique=False)
    op.create_index("ix_team_tasks_claimed_by", "team_tasks", ["claimed_by"], unique=False)
    op.create_index(
        "idx_team_tasks_claim",
        "team_tasks",
        ["run_id", "stream", "status", "run_after"],
        unique=False,
    )
    op.create_index(
        "idx_team_tasks_phase",
        "team_tasks",
        ["run_id", "phase", "status"],
        unique=False,
    )

    op.create_table(
        "team_task_dependencies",
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("blocked_by_id", sa.String(), nullable=False),
        sa.ForeignKeyConstraint(["task_id"], ["team_tasks.task_id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["blocked_by_id"], ["team_tasks.task_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("task_id", "blocked_by_id", name="pk_team_task_dependencies"),
    )
    op.create_index(
        "ix_team_task_dependencies_blocked_by_id",
        "team_task_dependencies",
        ["blocked_by_id"],
        unique=False,
    )

    op.create_table(
        "team_task_events",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("run_id", sa.String(), nullable=False),
        sa.Column("worker_id", sa.String(), nullable=True),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("status_from", sa.String(), nullable=True),
        sa.Column("status_to", sa.String(), nullable=True),
        sa.Column("details_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["task_id"], ["team_tasks.task_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_team_task_events_task_id", "team_task_events", ["task_id"], unique=False)
    op.create_index("ix_team_task_events_run_id", "team_task_events", ["run_id"], unique=False)
    op.create_index(
        "ix_team_task_events_worker_id",
        "team_task_events",
        ["worker_id"],
        unique=False,
    )
    op.create_index(
        "ix_team_task_events_event_type",
        "team_task_events",
        ["event_type"],
        unique=False,
    )
    op.create_index(
        "ix_team_task_events_status_from",
        "team_task_events",
        ["status_from"],
        unique=False,
    )
    op.create_index(
        "ix_team_task_events_status_to",
        "team_task_events",
        ["status_to"],
        unique=False,
    )
    op.create_index(
        "idx_team_task_events_task_time",
        "team_task_events",
        ["task_id", "created_at"],
        unique=False,
    )

    op.create_table(
        "stream_messages",
        sa.Column("message_id", sa.String(), nullable=False),
        sa.Column("run_id", sa.String(), nullable=False),
        sa.Column("from_stream", sa.String(), nullable=False),
        sa.Column("to_stream", sa.String(), nullable=False),
        sa.Column("trigger_phase", sa.Integer(), nullable=False),
        sa.Column("payload", sa.Text(), nullable=False),
        sa.Column("delivered", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("delivered_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["run_id"], ["team_runs.run_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("message_id"),
        sa.UniqueConstraint(
            "run_id",
            "from_stream",
            "to_stream",
            "trigger_phase",
            name="uq_stream_messages_route_phase",
        ),
    )
    op.create_index("ix_stream_messages_run_id", "stream_messages", ["run_id"], unique=False)
    op.create_index(
        "idx_stream_messages_inbox",
        "stream_messages",
        ["run_id", "to_stream", "delivered"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_table("stream_messages")
    op.drop_table("team_task_events")
    op.drop_table("team_task_dependencies")
    op.drop_table("team_tasks")
    op.drop_table("run_streams")
    op.drop_table("team_runs")
