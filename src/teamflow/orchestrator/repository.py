"""Persistent task store for phase-gated orchestration."""

from __future__ import annotations

import json
from collections.abc import Iterable
from datetime import datetime
from pathlib import Path
from uuid import uuid4

from sqlalchemy import exists, func
from sqlalchemy import select as sa_select
from sqlalchemy import update as sa_update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import aliased
from sqlmodel import Session, col, select

from teamflow.orchestrator.errors import (
    ConflictError,
    DuplicateDependencyError,
    TaskNotFoundError,
)
from teamflow.orchestrator.models import (
    BlockReason,
    MessageView,
    RunStatus,
    RunView,
    StatusCounts,
    StreamSpec,
    TaskDetails,
    TaskEventView,
    TaskStatus,
    TaskView,
)
from teamflow.orchestrator.resolver import is_unblocked
from teamflow.storage.alembic_runner import upgrade_head
from teamflow.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from teamflow.storage.sqlmodel_models import (
    RunStream,
    StreamMessage,
    TeamRun,
    TeamTask,
    TeamTaskDependency,
    TeamTaskEvent,
)

_LEGAL_TRANSITIONS = {
    (TaskStatus.BLOCKED, TaskStatus.PENDING),
    (TaskStatus.PENDING, TaskStatus.IN_PROGRESS),
    (TaskStatus.IN_PROGRESS, TaskStatus.COMPLETED),
    (TaskStatus.IN_PROGRESS, TaskStatus.PENDING),
    (TaskStatus.IN_PROGRESS, TaskStatus.BLOCKED),
}


class OrchestratorRepository:
    """Task Store facade backed by SQLModel + SQLite.

    Every mutation is one conditional ``UPDATE`` (compare-and-swap on the
    current status) committed together with its audit event. Reads may be
    stale; commits re-validate.
    """

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.sqlite_busy_timeout_ms = sqlite_busy_timeout_ms
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    # -- runs -------------------------------------------------------------

    def create_run(self, *, plan_name: str, plan_json: str, run_id: str | None = None) -> RunView:
        now = utc_now()
        with Session(self.engine) as session:
            row = TeamRun(
                run_id=run_id or str(uuid4()),
                plan_name=plan_name,
                plan_json=plan_json,
                status=RunStatus.RUNNING.value,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_run_view(row)

    def get_run(self, *, run_id: str) -> RunView | None:
        with Session(self.engine) as session:
            row = session.exec(select(TeamRun).where(TeamRun.run_id == run_id)).one_or_none()
            return _to_run_view(row) if row is not None else None

    def get_run_plan_json(self, *, run_id: str) -> str:
        with Session(self.engine) as session:
            plan_json = session.exec(
                select(TeamRun.plan_json).where(TeamRun.run_id == run_id),
            ).one_or_none()
        if plan_json is None:
            raise RuntimeError(f"Run not found: {run_id}")
        return plan_json

    def list_runs(self, *, limit: int = 20) -> list[RunView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(TeamRun).order_by(col(TeamRun.created_at).desc()).limit(limit),
            ).all()
        return [_to_run_view(row) for row in rows]

    def mark_run_completed(self, *, run_id: str) -> bool:
        """Flip the run to completed; True only for the call that did it."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(TeamRun)
                .where(
                    col(TeamRun.run_id) == run_id,
                    col(TeamRun.status) != RunStatus.COMPLETED.value,
                )
                .values(
                    status=RunStatus.COMPLETED.value,
                    completed_at=now,
                    error_summary=None,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def finish_run(self, *, run_id: str, status: RunStatus, error_summary: str | None) -> bool:
        """Close a running run with a non-success status."""

        if status not in {RunStatus.ABORTED, RunStatus.NEEDS_ATTENTION}:
            raise ValueError(f"Unsupported terminal run status: {status}")
        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(TeamRun)
                .where(
                    col(TeamRun.run_id) == run_id,
                    col(TeamRun.status) == RunStatus.RUNNING.value,
                )
                .values(status=status.value, error_summary=error_summary, updated_at=now)
                .execution_options(synchronize_session=False),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def reopen_run(self, *, run_id: str) -> bool:
        """Set an unfinished run back to running (resume)."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(TeamRun)
                .where(
                    col(TeamRun.run_id) == run_id,
                    col(TeamRun.status) != RunStatus.COMPLETED.value,
                )
                .values(status=RunStatus.RUNNING.value, error_summary=None, updated_at=now)
                .execution_options(synchronize_session=False),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    # -- streams ----------------------------------------------------------

    def register_stream(self, *, run_id: str, stream: StreamSpec) -> None:
        with Session(self.engine) as session:
            session.add(
                RunStream(
                    run_id=run_id,
                    name=stream.name,
                    owned_resources_json=json.dumps(list(stream.owned_resources)),
                    required_capabilities_json=json.dumps(list(stream.required_capabilities)),
                    created_at=utc_now(),
                ),
            )
            session.commit()

    def list_streams(self, *, run_id: str) -> list[StreamSpec]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(RunStream).where(RunStream.run_id == run_id).order_by(col(RunStream.id)),
            ).all()
        return [
            StreamSpec(
                name=row.name,
                owned_resources=tuple(json.loads(row.owned_resources_json)),
                required_capabilities=tuple(json.loads(row.required_capabilities_json)),
            )
            for row in rows
        ]

    # -- task creation and queries ---------------------------------------

    def create_task(  # noqa: PLR0913
        self,
        *,
        run_id: str,
        stream: str,
        phase: int,
        blocked_by: Iterable[str] = (),
        name: str | None = None,
        description: str = "",
        max_attempts: int = 3,
    ) -> str:
        """Create a task; pending when nothing blocks it, blocked otherwise."""

        if phase < 1:
            raise ValueError(f"Task phase must be >= 1, got {phase}")
        if max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {max_attempts}")
        blocking = tuple(dict.fromkeys(blocked_by))
        task_id = str(uuid4())
        now = utc_now()

        with Session(self.engine) as session:
            registered = session.exec(
                select(RunStream.id).where(RunStream.run_id == run_id, RunStream.name == stream),
            ).one_or_none()
            if registered is None:
                raise ValueError(f"Unknown stream {stream!r} for run {run_id}")
            if blocking:
                known = set(
                    session.exec(
                        select(TeamTask.task_id).where(
                            col(TeamTask.task_id).in_(blocking),
                            TeamTask.run_id == run_id,
                        ),
                    ).all(),
                )
                unknown = [task for task in blocking if task not in known]
                if unknown:
                    raise DuplicateDependencyError(
                        f"blocked_by references unknown task ids: {', '.join(unknown)}",
                    )

            session.add(
                TeamTask(
                    task_id=task_id,
                    run_id=run_id,
                    name=name or task_id,
                    description=description,
                    stream=stream,
                    phase=phase,
                    status=TaskStatus.BLOCKED.value,
                    block_reason=BlockReason.DEPENDENCY.value,
                    attempt=0,
                    max_attempts=max_attempts,
                    run_after=now,
                    created_at=now,
                    updated_at=now,
                ),
            )
            try:
                session.flush()
            except IntegrityError as error:
                session.rollback()
                raise ValueError(f"Task name already used in run {run_id}: {name!r}") from error
            session.add_all(
                TeamTaskDependency(task_id=task_id, blocked_by_id=blocker) for blocker in blocking
            )
            session.flush()

            # The INSERT holds the write lock from here on, so the eligibility
            # decision cannot race a concurrent completion.
            status = TaskStatus.BLOCKED
            if self._promote(session, task_id=task_id, run_id=run_id, phase=phase):
                status = TaskStatus.PENDING
            self._reblock_later_phases(session, run_id=run_id, phase=phase)
            self._add_event(
                session=session,
                task_id=task_id,
                run_id=run_id,
                event_type="created",
                status_from=None,
                status_to=status,
                details={"stream": stream, "phase": phase, "blocked_by": list(blocking)},
            )
            session.commit()
        return task_id

    def get_task(self, *, task_id: str) -> TaskView:
        with Session(self.engine) as session:
            row = self._get_task_row(session=session, task_id=task_id)
            return self._to_task_views(session, [row])[0]

    def get_status(self, task_id: str) -> TaskStatus:
        with Session(self.engine) as session:
            status = session.exec(
                select(TeamTask.status).where(TeamTask.task_id == task_id),
            ).one_or_none()
        if status is None:
            raise TaskNotFoundError(f"Task not found: {task_id}")
        return TaskStatus(status)

    def list_tasks(  # noqa: PLR0913
        self,
        *,
        run_id: str | None = None,
        status: TaskStatus | None = None,
        stream: str | None = None,
        phase: int | None = None,
        limit: int | None = None,
    ) -> list[TaskView]:
        """List tasks in creation order, optionally filtered."""

        with Session(self.engine) as session:
            statement = select(TeamTask).order_by(
                col(TeamTask.phase).asc(),
                col(TeamTask.created_at).asc(),
            )
            if run_id is not None:
                statement = statement.where(TeamTask.run_id == run_id)
            if status is not None:
                statement = statement.where(TeamTask.status == status.value)
            if stream is not None:
                statement = statement.where(TeamTask.stream == stream)
            if phase is not None:
                statement = statement.where(TeamTask.phase == phase)
            if limit is not None:
                statement = statement.limit(limit)
            rows = list(session.exec(statement).all())
            return self._to_task_views(session, rows)

    def list_unblocked(self, *, run_id: str, stream: str) -> list[TaskView]:
        """Pending tasks of ``stream`` whose dependencies and earlier phases are completed.

        Recomputed on every call; FIFO by creation. Tasks in retry backoff
        are skipped until their ``run_after`` passes.
        """

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            snapshot = session.exec(
                select(TeamTask.task_id, TeamTask.phase, TeamTask.status).where(
                    TeamTask.run_id == run_id,
                ),
            ).all()
            statuses = {task_id: TaskStatus(status) for task_id, _, status in snapshot}
            candidates = list(
                session.exec(
                    select(TeamTask)
                    .where(
                        TeamTask.run_id == run_id,
                        TeamTask.stream == stream,
                        TeamTask.status == TaskStatus.PENDING.value,
                        col(TeamTask.run_after) <= now,
                    )
                    .order_by(col(TeamTask.created_at).asc()),
                ).all(),
            )
            views = self._to_task_views(session, candidates)

        open_phases = {phase for _, phase, status in snapshot if status != TaskStatus.COMPLETED}
        return [
            view
            for view in views
            if is_unblocked(view.blocked_by, statuses)
            and all(open_phase >= view.phase for open_phase in open_phases)
        ]

    def get_task_details(self, *, task_id: str) -> TaskDetails | None:
        """Return task details with event stream."""

        with Session(self.engine) as session:
            row = session.exec(select(TeamTask).where(TeamTask.task_id == task_id)).one_or_none()
            if row is None:
                return None
            task = self._to_task_views(session, [row])[0]
            event_rows = session.exec(
                select(TeamTaskEvent)
                .where(TeamTaskEvent.task_id == task_id)
                .order_by(col(TeamTaskEvent.created_at).asc(), col(TeamTaskEvent.id).asc()),
            ).all()

        events: list[TaskEventView] = []
        for event_row in event_rows:
            details = {}
            if event_row.details_json:
                parsed = json.loads(event_row.details_json)
                if isinstance(parsed, dict):
                    details = parsed
            events.append(
                TaskEventView(
                    event_id=event_row.id or 0,
                    task_id=event_row.task_id,
                    worker_id=event_row.worker_id,
                    event_type=event_row.event_type,
                    status_from=(
                        TaskStatus(event_row.status_from)
                        if event_row.status_from is not None
                        else None
                    ),
                    status_to=(
                        TaskStatus(event_row.status_to) if event_row.status_to is not None else None
                    ),
                    created_at=to_utc_aware_datetime(event_row.created_at),
                    details=details,
                ),
            )
        return TaskDetails(task=task, events=events)

    def status_counts(self, *, run_id: str) -> StatusCounts:
        with Session(self.engine) as session:
            rows = session.exec(
                select(TeamTask.stream, TeamTask.status, TeamTask.block_reason, func.count())
                .where(TeamTask.run_id == run_id)
                .group_by(
                    col(TeamTask.stream),
                    col(TeamTask.status),
                    col(TeamTask.block_reason),
                ),
            ).all()

        counts = StatusCounts()
        pending_streams: set[str] = set()
        for stream, status, block_reason, count in rows:
            counts.total += count
            if status == TaskStatus.PENDING.value:
                counts.pending += count
                pending_streams.add(stream)
            elif status == TaskStatus.IN_PROGRESS.value:
                counts.in_progress += count
            elif status == TaskStatus.COMPLETED.value:
                counts.completed += count
            elif block_reason == BlockReason.FAILURE.value:
                counts.blocked_on_failure += count
            else:
                counts.blocked_on_dependency += count
        counts.pending_streams = frozenset(pending_streams)
        return counts

    def stream_has_open_tasks(self, *, run_id: str, stream: str) -> bool:
        """True while any task of the stream is pending, blocked or in progress."""

        with Session(self.engine) as session:
            row = session.exec(
                select(TeamTask.task_id)
                .where(
                    TeamTask.run_id == run_id,
                    TeamTask.stream == stream,
                    TeamTask.status != TaskStatus.COMPLETED.value,
                )
                .limit(1),
            ).first()
        return row is not None

    def phase_completed_for_stream(self, *, run_id: str, stream: str, phase: int) -> bool:
        """True when every task of ``stream`` in ``phase`` is completed."""

        with Session(self.engine) as session:
            row = session.exec(
                select(TeamTask.task_id)
                .where(
                    TeamTask.run_id == run_id,
                    TeamTask.stream == stream,
                    TeamTask.phase == phase,
                    TeamTask.status != TaskStatus.COMPLETED.value,
                )
                .limit(1),
            ).first()
        return row is None

    # -- transitions ------------------------------------------------------

    def transition(
        self,
        *,
        task_id: str,
        status_from: TaskStatus,
        status_to: TaskStatus,
        worker_id: str | None = None,
        error_summary: str | None = None,
    ) -> TaskView:
        """Compare-and-swap a task from ``status_from`` to ``status_to``.

        Raises ``ConflictError`` when the task is no longer in
        ``status_from`` (or, for a claim, is not eligible yet).
        """

        edge = (status_from, status_to)
        if edge not in _LEGAL_TRANSITIONS:
            raise ValueError(f"Illegal transition: {status_from.value} -> {status_to.value}")
        if edge == (TaskStatus.PENDING, TaskStatus.IN_PROGRESS):
            if worker_id is None:
                raise ValueError("Claiming a task requires worker_id.")
            return self.claim_task(task_id=task_id, worker_id=worker_id)
        if edge == (TaskStatus.IN_PROGRESS, TaskStatus.COMPLETED):
            return self.complete_task(task_id=task_id, worker_id=worker_id)
        if edge == (TaskStatus.IN_PROGRESS, TaskStatus.PENDING):
            return self.release_task(
                task_id=task_id,
                worker_id=worker_id,
                error_summary=error_summary,
                event_type="released",
            )
        if edge == (TaskStatus.IN_PROGRESS, TaskStatus.BLOCKED):
            return self.escalate_task(
                task_id=task_id,
                worker_id=worker_id,
                error_summary=error_summary or "escalated for operator attention",
            )
        return self.unblock_task(task_id=task_id)

    def claim_task(self, *, task_id: str, worker_id: str) -> TaskView:
        """Atomically claim one pending, eligible task for ``worker_id``."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            run_id, phase = self._task_identity(session=session, task_id=task_id)
            claimed = self._cas(
                session=session,
                task_id=task_id,
                status_from=TaskStatus.PENDING,
                extra_where=_eligibility_clauses(task_id=task_id, run_id=run_id, phase=phase),
                values={
                    "status": TaskStatus.IN_PROGRESS.value,
                    "claimed_by": worker_id,
                    "attempt": TeamTask.attempt + 1,
                    "block_reason": None,
                    "started_at": now,
                    "finished_at": None,
                },
            )
            if not claimed:
                session.rollback()
                raise ConflictError(f"Task {task_id} is not claimable", task_id=task_id)
            self._add_event(
                session=session,
                task_id=task_id,
                run_id=run_id,
                event_type="claimed",
                status_from=TaskStatus.PENDING,
                status_to=TaskStatus.IN_PROGRESS,
                worker_id=worker_id,
                details={},
            )
            session.commit()
        return self.get_task(task_id=task_id)

    def complete_task(
        self,
        *,
        task_id: str,
        worker_id: str | None = None,
        output_summary: str | None = None,
    ) -> TaskView:
        """Mark an in-progress task completed and unblock newly eligible tasks."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            run_id, _ = self._task_identity(session=session, task_id=task_id)
            completed = self._cas(
                session=session,
                task_id=task_id,
                status_from=TaskStatus.IN_PROGRESS,
                extra_where=_claimed_by_clause(worker_id),
                values={
                    "status": TaskStatus.COMPLETED.value,
                    "output_summary": output_summary,
                    "error_summary": None,
                    "finished_at": now,
                },
            )
            if not completed:
                session.rollback()
                raise ConflictError(
                    f"Task {task_id} is not in progress for {worker_id or 'any worker'}",
                    task_id=task_id,
                )
            self._add_event(
                session=session,
                task_id=task_id,
                run_id=run_id,
                event_type="completed",
                status_from=TaskStatus.IN_PROGRESS,
                status_to=TaskStatus.COMPLETED,
                worker_id=worker_id,
                details={"output_summary": output_summary} if output_summary else {},
            )
            self._promote_run(session=session, run_id=run_id)
            session.commit()
        return self.get_task(task_id=task_id)

    def release_task(  # noqa: PLR0913
        self,
        *,
        task_id: str,
        worker_id: str | None = None,
        run_after: datetime | None = None,
        error_summary: str | None = None,
        event_type: str = "retry_scheduled",
        consume_attempt: bool = True,
    ) -> TaskView:
        """Return an in-progress task to pending.

        With ``consume_attempt=False`` the claim does not count against
        ``max_attempts`` (shutdown, revocation).
        """

        now = utc_now()
        values: dict[str, object] = {
            "status": TaskStatus.PENDING.value,
            "claimed_by": None,
            "started_at": None,
            "run_after": to_db_datetime(run_after or now),
            "error_summary": error_summary,
        }
        if not consume_attempt:
            values["attempt"] = func.max(TeamTask.attempt - 1, 0)
        with Session(self.engine) as session:
            run_id, _ = self._task_identity(session=session, task_id=task_id)
            released = self._cas(
                session=session,
                task_id=task_id,
                status_from=TaskStatus.IN_PROGRESS,
                extra_where=_claimed_by_clause(worker_id),
                values=values,
            )
            if not released:
                session.rollback()
                raise ConflictError(f"Task {task_id} is not in progress", task_id=task_id)
            details: dict[str, object] = {
                "run_after": to_utc_aware_datetime(run_after or now).isoformat(),
            }
            if error_summary:
                details["error_summary"] = error_summary
            self._add_event(
                session=session,
                task_id=task_id,
                run_id=run_id,
                event_type=event_type,
                status_from=TaskStatus.IN_PROGRESS,
                status_to=TaskStatus.PENDING,
                worker_id=worker_id,
                details=details,
            )
            session.commit()
        return self.get_task(task_id=task_id)

    def escalate_task(
        self,
        *,
        task_id: str,
        error_summary: str,
        worker_id: str | None = None,
    ) -> TaskView:
        """Block an in-progress task on failure; it needs an operator retry."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            run_id, _ = self._task_identity(session=session, task_id=task_id)
            escalated = self._cas(
                session=session,
                task_id=task_id,
                status_from=TaskStatus.IN_PROGRESS,
                extra_where=_claimed_by_clause(worker_id),
                values={
                    "status": TaskStatus.BLOCKED.value,
                    "block_reason": BlockReason.FAILURE.value,
                    "claimed_by": None,
                    "error_summary": error_summary,
                    "finished_at": now,
                },
            )
            if not escalated:
                session.rollback()
                raise ConflictError(f"Task {task_id} is not in progress", task_id=task_id)
            self._add_event(
                session=session,
                task_id=task_id,
                run_id=run_id,
                event_type="escalated",
                status_from=TaskStatus.IN_PROGRESS,
                status_to=TaskStatus.BLOCKED,
                worker_id=worker_id,
                details={"error_summary": error_summary},
            )
            session.commit()
        return self.get_task(task_id=task_id)

    def unblock_task(self, *, task_id: str) -> TaskView:
        """blocked -> pending: operator retry for failures, eligibility check otherwise."""

        task = self.get_task(task_id=task_id)
        if task.block_reason == BlockReason.FAILURE:
            return self.retry_task(task_id=task_id)
        with Session(self.engine) as session:
            if not self._promote(session, task_id=task_id, run_id=task.run_id, phase=task.phase):
                session.rollback()
                raise ConflictError(f"Task {task_id} is not eligible yet", task_id=task_id)
            self._add_event(
                session=session,
                task_id=task_id,
                run_id=task.run_id,
                event_type="unblocked",
                status_from=TaskStatus.BLOCKED,
                status_to=TaskStatus.PENDING,
                details={},
            )
            session.commit()
        return self.get_task(task_id=task_id)

    def retry_task(self, *, task_id: str) -> TaskView:
        """Manual operator retry for a task blocked on failure."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            run_id, _ = self._task_identity(session=session, task_id=task_id)
            retried = self._cas(
                session=session,
                task_id=task_id,
                status_from=TaskStatus.BLOCKED,
                extra_where=(col(TeamTask.block_reason) == BlockReason.FAILURE.value,),
                values={
                    "status": TaskStatus.PENDING.value,
                    "block_reason": None,
                    "attempt": 0,
                    "error_summary": None,
                    "finished_at": None,
                    "run_after": now,
                },
            )
            if not retried:
                session.rollback()
                raise ConflictError(
                    f"Only tasks blocked on failure can be retried manually (task_id={task_id}).",
                    task_id=task_id,
                )
            self._add_event(
                session=session,
                task_id=task_id,
                run_id=run_id,
                event_type="manual_retry",
                status_from=TaskStatus.BLOCKED,
                status_to=TaskStatus.PENDING,
                details={},
            )
            session.commit()
        return self.get_task(task_id=task_id)

    def revoke_claims(self, *, run_id: str, worker_id: str) -> list[str]:
        """Return every task held by ``worker_id`` to pending."""

        return self._release_in_progress(run_id=run_id, worker_id=worker_id, event_type="revoked")

    def recover_orphaned_claims(self, *, run_id: str) -> list[str]:
        """Return claims left by a crashed coordinator's workers to pending."""

        return self._release_in_progress(
            run_id=run_id,
            worker_id=None,
            event_type="orphan_recovered",
        )

    def add_task_event(  # noqa: PLR0913
        self,
        *,
        task_id: str,
        event_type: str,
        status_from: TaskStatus | None,
        status_to: TaskStatus | None,
        worker_id: str | None = None,
        details: dict[str, object] | None = None,
    ) -> None:
        """Append an event without changing task state."""

        with Session(self.engine) as session:
            run_id, _ = self._task_identity(session=session, task_id=task_id)
            self._add_event(
                session=session,
                task_id=task_id,
                run_id=run_id,
                event_type=event_type,
                status_from=status_from,
                status_to=status_to,
                worker_id=worker_id,
                details=details or {},
            )
            session.commit()

    # -- messages ---------------------------------------------------------

    def insert_message(
        self,
        *,
        run_id: str,
        from_stream: str,
        to_stream: str,
        trigger_phase: int,
        payload: str,
    ) -> tuple[MessageView, bool]:
        """Store a message; returns (message, created). Existing routes are kept."""

        with Session(self.engine) as session:
            row = StreamMessage(
                message_id=str(uuid4()),
                run_id=run_id,
                from_stream=from_stream,
                to_stream=to_stream,
                trigger_phase=trigger_phase,
                payload=payload,
                delivered=False,
                created_at=utc_now(),
            )
            session.add(row)
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
            else:
                session.refresh(row)
                return _to_message_view(row), True

            existing = session.exec(
                select(StreamMessage).where(
                    StreamMessage.run_id == run_id,
                    StreamMessage.from_stream == from_stream,
                    StreamMessage.to_stream == to_stream,
                    StreamMessage.trigger_phase == trigger_phase,
                ),
            ).one()
            return _to_message_view(existing), False

    def mark_message_delivered(self, *, message_id: str) -> bool:
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(StreamMessage)
                .where(
                    col(StreamMessage.message_id) == message_id,
                    col(StreamMessage.delivered).is_(False),
                )
                .values(delivered=True, delivered_at=to_db_datetime(utc_now()))
                .execution_options(synchronize_session=False),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def list_messages(
        self,
        *,
        run_id: str,
        to_stream: str | None = None,
        delivered: bool | None = None,
    ) -> list[MessageView]:
        with Session(self.engine) as session:
            statement = (
                select(StreamMessage)
                .where(StreamMessage.run_id == run_id)
                .order_by(col(StreamMessage.created_at).asc())
            )
            if to_stream is not None:
                statement = statement.where(StreamMessage.to_stream == to_stream)
            if delivered is not None:
                statement = statement.where(StreamMessage.delivered == delivered)
            rows = session.exec(statement).all()
        return [_to_message_view(row) for row in rows]

    def get_message(self, *, message_id: str) -> MessageView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(StreamMessage).where(StreamMessage.message_id == message_id),
            ).one_or_none()
            return _to_message_view(row) if row is not None else None

    # -- internals --------------------------------------------------------

    def _cas(
        self,
        *,
        session: Session,
        task_id: str,
        status_from: TaskStatus,
        values: dict[str, object],
        extra_where: tuple[object, ...] = (),
    ) -> bool:
        result = session.exec(
            sa_update(TeamTask)
            .where(
                col(TeamTask.task_id) == task_id,
                col(TeamTask.status) == status_from.value,
                *extra_where,
            )
            .values(**values, updated_at=to_db_datetime(utc_now()))
            .execution_options(synchronize_session=False),
        )
        return result.rowcount == 1

    def _promote(self, session: Session, *, task_id: str, run_id: str, phase: int) -> bool:
        return self._cas(
            session=session,
            task_id=task_id,
            status_from=TaskStatus.BLOCKED,
            extra_where=(
                col(TeamTask.block_reason) == BlockReason.DEPENDENCY.value,
                *_eligibility_clauses(task_id=task_id, run_id=run_id, phase=phase),
            ),
            values={"status": TaskStatus.PENDING.value, "block_reason": None},
        )

    def _promote_run(self, *, session: Session, run_id: str) -> None:
        blocked = session.exec(
            select(TeamTask.task_id, TeamTask.phase).where(
                TeamTask.run_id == run_id,
                TeamTask.status == TaskStatus.BLOCKED.value,
                TeamTask.block_reason == BlockReason.DEPENDENCY.value,
            ),
        ).all()
        for task_id, phase in blocked:
            if self._promote(session, task_id=task_id, run_id=run_id, phase=phase):
                self._add_event(
                    session=session,
                    task_id=task_id,
                    run_id=run_id,
                    event_type="unblocked",
                    status_from=TaskStatus.BLOCKED,
                    status_to=TaskStatus.PENDING,
                    details={},
                )

    def _reblock_later_phases(self, session: Session, *, run_id: str, phase: int) -> None:
        later = session.exec(
            select(TeamTask.task_id).where(
                TeamTask.run_id == run_id,
                TeamTask.status == TaskStatus.PENDING.value,
                TeamTask.phase > phase,
            ),
        ).all()
        for task_id in later:
            if self._cas(
                session=session,
                task_id=task_id,
                status_from=TaskStatus.PENDING,
                values={
                    "status": TaskStatus.BLOCKED.value,
                    "block_reason": BlockReason.DEPENDENCY.value,
                },
            ):
                self._add_event(
                    session=session,
                    task_id=task_id,
                    run_id=run_id,
                    event_type="reblocked",
                    status_from=TaskStatus.PENDING,
                    status_to=TaskStatus.BLOCKED,
                    details={"earlier_phase": phase},
                )

    def _release_in_progress(
        self,
        *,
        run_id: str,
        worker_id: str | None,
        event_type: str,
    ) -> list[str]:
        with Session(self.engine) as session:
            statement = select(TeamTask.task_id).where(
                TeamTask.run_id == run_id,
                TeamTask.status == TaskStatus.IN_PROGRESS.value,
            )
            if worker_id is not None:
                statement = statement.where(TeamTask.claimed_by == worker_id)
            task_ids = list(session.exec(statement).all())

        released: list[str] = []
        for task_id in task_ids:
            try:
                self.release_task(
                    task_id=task_id,
                    worker_id=worker_id,
                    event_type=event_type,
                    consume_attempt=False,
                )
            except ConflictError:
                continue
            released.append(task_id)
        return released

    def _task_identity(self, *, session: Session, task_id: str) -> tuple[str, int]:
        identity = session.exec(
            select(TeamTask.run_id, TeamTask.phase).where(TeamTask.task_id == task_id),
        ).one_or_none()
        if identity is None:
            raise TaskNotFoundError(f"Task not found: {task_id}")
        run_id, phase = identity
        return run_id, phase

    def _get_task_row(self, *, session: Session, task_id: str) -> TeamTask:
        row = session.exec(select(TeamTask).where(TeamTask.task_id == task_id)).one_or_none()
        if row is None:
            raise TaskNotFoundError(f"Task not found: {task_id}")
        return row

    def _to_task_views(self, session: Session, rows: list[TeamTask]) -> list[TaskView]:
        if not rows:
            return []
        dependency_rows = session.exec(
            select(TeamTaskDependency.task_id, TeamTaskDependency.blocked_by_id).where(
                col(TeamTaskDependency.task_id).in_([row.task_id for row in rows]),
            ),
        ).all()
        blocked_by: dict[str, list[str]] = {}
        for task_id, blocker in dependency_rows:
            blocked_by.setdefault(task_id, []).append(blocker)
        return [_to_task_view(row, tuple(sorted(blocked_by.get(row.task_id, [])))) for row in rows]

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        task_id: str,
        run_id: str,
        event_type: str,
        status_from: TaskStatus | None,
        status_to: TaskStatus | None,
        details: dict[str, object],
        worker_id: str | None = None,
    ) -> None:
        session.add(
            TeamTaskEvent(
                task_id=task_id,
                run_id=run_id,
                worker_id=worker_id,
                event_type=event_type,
                status_from=status_from.value if status_from is not None else None,
                status_to=status_to.value if status_to is not None else None,
                details_json=json.dumps(details, ensure_ascii=False, sort_keys=True)
                if details
                else None,
                created_at=utc_now(),
            ),
        )


def _eligibility_clauses(*, task_id: str, run_id: str, phase: int) -> tuple[object, ...]:
    """WHERE clauses: every blocker completed and no earlier phase left open."""

    blocker = aliased(TeamTask)
    earlier = aliased(TeamTask)
    open_dependency = exists().where(
        blocker.task_id.in_(
            sa_select(TeamTaskDependency.blocked_by_id).where(
                TeamTaskDependency.task_id == task_id,
            ),
        ),
        blocker.status != TaskStatus.COMPLETED.value,
    )
    open_earlier_phase = exists().where(
        earlier.run_id == run_id,
        earlier.phase < phase,
        earlier.status != TaskStatus.COMPLETED.value,
    )
    return (~open_dependency, ~open_earlier_phase)


def _claimed_by_clause(worker_id: str | None) -> tuple[object, ...]:
    if worker_id is None:
        return ()
    return (col(TeamTask.claimed_by) == worker_id,)


def _to_run_view(row: TeamRun) -> RunView:
    return RunView(
        run_id=row.run_id,
        plan_name=row.plan_name,
        status=RunStatus(row.status),
        error_summary=row.error_summary,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
        completed_at=(
            to_utc_aware_datetime(row.completed_at) if row.completed_at is not None else None
        ),
    )


def _to_message_view(row: StreamMessage) -> MessageView:
    return MessageView(
        message_id=row.message_id,
        run_id=row.run_id,
        from_stream=row.from_stream,
        to_stream=row.to_stream,
        trigger_phase=row.trigger_phase,
        payload=row.payload,
        delivered=bool(row.delivered),
        created_at=to_utc_aware_datetime(row.created_at),
        delivered_at=(
            to_utc_aware_datetime(row.delivered_at) if row.delivered_at is not None else None
        ),
    )


def _to_task_view(row: TeamTask, blocked_by: tuple[str, ...]) -> TaskView:
    return TaskView(
        task_id=row.task_id,
        run_id=row.run_id,
        name=row.name,
        description=row.description,
        stream=row.stream,
        phase=row.phase,
        status=TaskStatus(row.status),
        block_reason=BlockReason(row.block_reason) if row.block_reason is not None else None,
        blocked_by=blocked_by,
        claimed_by=row.claimed_by,
        attempt=row.attempt,
        max_attempts=row.max_attempts,
        run_after=to_utc_aware_datetime(row.run_after),
        error_summary=row.error_summary,
        output_summary=row.output_summary,
        started_at=to_utc_aware_datetime(row.started_at) if row.started_at is not None else None,
        finished_at=(
            to_utc_aware_datetime(row.finished_at) if row.finished_at is not None else None
        ),
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )

