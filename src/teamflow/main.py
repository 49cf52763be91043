"""CLI entrypoint for teamflow."""

import logging
from collections.abc import Callable
from pathlib import Path
from typing import TypeVar

import rich_click as click

from teamflow import __version__
from teamflow.orchestrator.controllers import (
    InspectTaskCommand,
    ListMessagesCommand,
    ListRunsCommand,
    ListTasksCommand,
    MutateTaskCommand,
    OrchestratorCliController,
    PlanValidateCommand,
    ProgressCommand,
    ResumeRunCommand,
    RunPlanCommand,
    RunResult,
)
from teamflow.orchestrator.errors import OrchestrationError

T = TypeVar("T")

click.rich_click.USE_MARKDOWN = True
ORCHESTRATOR_CONTROLLER = OrchestratorCliController()

_DB_PATH_HELP = "SQLite DB path (default: TEAMFLOW_DB_PATH or .teamflow.db)."


@click.group()
@click.version_option(version=__version__, prog_name="teamflow")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Logging level.",
)
def teamflow(log_level: str) -> None:
    """Phase-gated multi-worker task orchestration.

    Load a plan of **streams**, **phases** and **tasks**, run one worker per
    stream, and inspect progress stored in SQLite.
    """

    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
        datefmt="%H:%M:%S",
    )


@teamflow.group()
def plan() -> None:
    """Execution plan commands."""


@plan.command("validate")
@click.argument("plan_path", type=click.Path(path_type=Path, exists=True, dir_okay=False))
def plan_validate(plan_path: Path) -> None:
    """Validate a JSON or YAML execution plan without creating tasks."""

    _emit_lines(
        _guard(lambda: ORCHESTRATOR_CONTROLLER.validate_plan(PlanValidateCommand(plan_path))),
    )


@teamflow.command("run")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.argument("plan_path", type=click.Path(path_type=Path, exists=True, dir_okay=False))
def run_plan(db_path: Path | None, plan_path: Path) -> None:
    """Ingest a plan and run it until completion or until it needs attention."""

    result = _guard(
        lambda: ORCHESTRATOR_CONTROLLER.run_plan(
            RunPlanCommand(db_path=db_path, plan_path=plan_path),
            on_progress=click.echo,
        ),
    )
    _finish_run(result)


@teamflow.command("resume")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option("--run-id", required=True, help="Run id to resume.")
def resume_run(db_path: Path | None, run_id: str) -> None:
    """Resume a stored run; orphaned claims go back to pending."""

    result = _guard(
        lambda: ORCHESTRATOR_CONTROLLER.resume_run(
            ResumeRunCommand(db_path=db_path, run_id=run_id),
            on_progress=click.echo,
        ),
    )
    _finish_run(result)


@teamflow.group()
def runs() -> None:
    """Run history commands."""


@runs.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=20,
    show_default=True,
    help="Max runs to print.",
)
def runs_list(db_path: Path | None, limit: int) -> None:
    """List runs, newest first."""

    _emit_lines(
        _guard(
            lambda: ORCHESTRATOR_CONTROLLER.list_runs(
                ListRunsCommand(db_path=db_path, limit=limit),
            ),
        ),
    )


@teamflow.command("progress")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option("--run-id", default=None, help="Run id (default: latest run).")
def progress(db_path: Path | None, run_id: str | None) -> None:
    """Show every task of a run with phase, stream and status."""

    _emit_lines(
        _guard(
            lambda: ORCHESTRATOR_CONTROLLER.progress(
                ProgressCommand(db_path=db_path, run_id=run_id),
            ),
        ),
    )


@teamflow.group()
def tasks() -> None:
    """Task inspection and operator commands."""


@tasks.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option("--run-id", default=None, help="Optional run filter.")
@click.option(
    "--status",
    type=click.Choice(["pending", "in_progress", "completed", "blocked"], case_sensitive=False),
    default=None,
    help="Optional status filter.",
)
@click.option("--stream", default=None, help="Optional stream filter.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=100,
    show_default=True,
    help="Max tasks to print.",
)
def tasks_list(  # noqa: PLR0913
    db_path: Path | None,
    run_id: str | None,
    status: str | None,
    stream: str | None,
    limit: int,
) -> None:
    """List tasks."""

    _emit_lines(
        _guard(
            lambda: ORCHESTRATOR_CONTROLLER.list_tasks(
                ListTasksCommand(
                    db_path=db_path,
                    run_id=run_id,
                    status=status,
                    stream=stream,
                    limit=limit,
                ),
            ),
        ),
    )


@tasks.command("inspect")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option("--task-id", required=True, help="Task id.")
def tasks_inspect(db_path: Path | None, task_id: str) -> None:
    """Inspect one task with event history."""

    _emit_lines(
        _guard(
            lambda: ORCHESTRATOR_CONTROLLER.inspect_task(
                InspectTaskCommand(
                    db_path=db_path,
                    task_id=task_id,
                ),
            ),
        ),
    )


@tasks.command("retry")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option("--task-id", required=True, help="Task id.")
def tasks_retry(db_path: Path | None, task_id: str) -> None:
    """Manually re-queue a task blocked on failure."""

    _emit_lines(
        _guard(
            lambda: ORCHESTRATOR_CONTROLLER.retry_task(
                MutateTaskCommand(
                    db_path=db_path,
                    task_id=task_id,
                ),
            ),
        ),
    )


@teamflow.group()
def messages() -> None:
    """Cross-stream message commands."""


@messages.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option("--run-id", default=None, help="Run id (default: latest run).")
@click.option("--stream", default=None, help="Only messages addressed to this stream.")
def messages_list(db_path: Path | None, run_id: str | None, stream: str | None) -> None:
    """List cross-stream messages of a run."""

    _emit_lines(
        _guard(
            lambda: ORCHESTRATOR_CONTROLLER.list_messages(
                ListMessagesCommand(db_path=db_path, run_id=run_id, stream=stream),
            ),
        ),
    )


def _guard(action: Callable[[], T]) -> T:
    try:
        return action()
    except (OrchestrationError, ValueError) as error:
        raise click.ClickException(str(error)) from error


def _finish_run(result: RunResult) -> None:
    _emit_lines(result.lines)
    if not result.success:
        raise click.ClickException("Run did not complete.")


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    teamflow()
