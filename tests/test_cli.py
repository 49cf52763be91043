from __future__ import annotations

import json
from pathlib import Path

import allure
import pytest
from click.testing import CliRunner
from conftest import two_stream_document

from teamflow.main import teamflow
from teamflow.orchestrator.repository import OrchestratorRepository

pytestmark = [
    allure.epic("Operations"),
    allure.feature("Command Line"),
]


@pytest.fixture()
def cli_env(tmp_path: Path, monkeypatch) -> Path:
    db_path = tmp_path / "cli.db"
    monkeypatch.setenv("TEAMFLOW_DB_PATH", str(db_path))
    monkeypatch.setenv("TEAMFLOW_WORKER_POLL_INTERVAL_SECONDS", "0.01")
    monkeypatch.setenv("TEAMFLOW_COORDINATOR_POLL_INTERVAL_SECONDS", "0.02")
    monkeypatch.setenv("TEAMFLOW_RETRY_BASE_SECONDS", "0")
    monkeypatch.setenv("TEAMFLOW_RETRY_MAX_SECONDS", "0")
    monkeypatch.setenv("TEAMFLOW_MESSAGE_TIMEOUT_SECONDS", "5")
    monkeypatch.setenv("TEAMFLOW_VERIFY_ATTEMPTS", "1")
    monkeypatch.setenv("TEAMFLOW_COMPLETION_MARKER_PATH", str(tmp_path / "complete.json"))
    monkeypatch.delenv("TEAMFLOW_CAPABILITIES_DIR", raising=False)
    monkeypatch.delenv("TEAMFLOW_EXECUTOR", raising=False)
    return db_path


def _write_plan(tmp_path: Path, document: dict) -> Path:
    path = tmp_path / "plan.json"
    path.write_text(json.dumps(document), "utf-8")
    return path


def test_cli_run_and_inspect(tmp_path: Path, cli_env: Path, monkeypatch) -> None:
    monkeypatch.setenv("TEAMFLOW_ALLOW_MISSING_CAPABILITIES", "1")
    plan_path = _write_plan(tmp_path, two_stream_document())
    runner = CliRunner()

    validate = runner.invoke(teamflow, ["plan", "validate", str(plan_path)])
    assert validate.exit_code == 0, validate.output
    assert "Plan OK: two-streams" in validate.output
    assert "Phases: 2 Tasks: 5 Messages: 1" in validate.output

    run = runner.invoke(teamflow, ["run", str(plan_path)])
    assert run.exit_code == 0, run.output
    assert "status=completed" in run.output
    assert (tmp_path / "complete.json").exists()

    runs = runner.invoke(teamflow, ["runs", "list"])
    assert runs.exit_code == 0
    assert "Runs: 1" in runs.output

    progress = runner.invoke(teamflow, ["progress"])
    assert progress.exit_code == 0
    assert "Phase 1:" in progress.output
    assert "[backend] schema: completed" in progress.output
    assert "[frontend] client: completed" in progress.output

    tasks = runner.invoke(teamflow, ["tasks", "list", "--status", "completed"])
    assert tasks.exit_code == 0
    assert "Tasks: 5" in tasks.output

    repository = OrchestratorRepository(cli_env)
    run_id = repository.list_runs(limit=1)[0].run_id
    schema = next(task for task in repository.list_tasks(run_id=run_id) if task.name == "schema")
    repository.close()

    inspect = runner.invoke(teamflow, ["tasks", "inspect", "--task-id", schema.task_id])
    assert inspect.exit_code == 0
    assert "Status: completed" in inspect.output
    assert "claimed pending -> in_progress" in inspect.output

    messages = runner.invoke(teamflow, ["messages", "list", "--run-id", run_id])
    assert messages.exit_code == 0
    assert "Messages: 1" in messages.output
    assert "backend -> frontend phase=1 delivered=yes" in messages.output

    retry = runner.invoke(teamflow, ["tasks", "retry", "--task-id", schema.task_id])
    assert retry.exit_code == 1
    assert "Only tasks blocked on failure can be retried" in retry.output


def test_cli_run_needs_attention_then_resume(tmp_path: Path, cli_env: Path, monkeypatch) -> None:
    monkeypatch.setenv("TEAMFLOW_ALLOW_MISSING_CAPABILITIES", "0")
    plan_path = _write_plan(tmp_path, two_stream_document())
    runner = CliRunner()

    run = runner.invoke(teamflow, ["run", str(plan_path)])
    assert run.exit_code == 1
    assert "status=needs_attention" in run.output
    assert "unverified streams: backend, frontend" in run.output
    assert "Run did not complete." in run.output

    repository = OrchestratorRepository(cli_env)
    run_id = repository.list_runs(limit=1)[0].run_id
    repository.close()

    progress = runner.invoke(teamflow, ["progress", "--run-id", run_id])
    assert "Attention:" in progress.output
    assert "waiting on dependency (3 open)" in progress.output

    monkeypatch.setenv("TEAMFLOW_ALLOW_MISSING_CAPABILITIES", "1")
    resume = runner.invoke(teamflow, ["resume", "--run-id", run_id])
    assert resume.exit_code == 0, resume.output
    assert "status=completed" in resume.output


def test_cli_rejects_invalid_plan(tmp_path: Path, cli_env: Path) -> None:
    document = two_stream_document()
    document["streams"][1]["owned_resources"] = ["src/api/"]
    plan_path = _write_plan(tmp_path, document)
    runner = CliRunner()

    validate = runner.invoke(teamflow, ["plan", "validate", str(plan_path)])
    run = runner.invoke(teamflow, ["run", str(plan_path)])

    assert validate.exit_code == 1
    assert "Invalid execution plan" in validate.output
    assert run.exit_code == 1
    assert not cli_env.exists()


def test_cli_progress_without_runs(cli_env: Path) -> None:
    result = CliRunner().invoke(teamflow, ["progress"])

    assert result.exit_code == 0
    assert "No runs found." in result.output


@pytest.mark.parametrize(
    "args",
    [
        ["runs", "list"],
        ["tasks", "list"],
        ["tasks", "inspect", "--task-id", "missing"],
        ["messages", "list"],
    ],
)
def test_cli_reports_invalid_settings_without_traceback(
    cli_env: Path,
    monkeypatch,
    args: list[str],
) -> None:
    monkeypatch.setenv("TEAMFLOW_ALLOW_MISSING_CAPABILITIES", "maybe")

    result = CliRunner().invoke(teamflow, args)

    assert result.exit_code == 1
    assert "Invalid boolean value" in result.output
    assert not isinstance(result.exception, ValueError)
