from __future__ import annotations

from pathlib import Path

import allure
import pytest

from teamflow.config import ExecutorSettings, Settings, WorkerSettings

pytestmark = [
    allure.epic("Operations"),
    allure.feature("Configuration"),
]


def test_from_env_reads_teamflow_variables(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setenv("TEAMFLOW_DB_PATH", str(tmp_path / "env.db"))
    monkeypatch.setenv("TEAMFLOW_MAX_ATTEMPTS", "5")
    monkeypatch.setenv("TEAMFLOW_EXECUTOR", " Command ")
    monkeypatch.setenv("TEAMFLOW_COMMAND_TEMPLATE", "make {task}")
    monkeypatch.setenv("TEAMFLOW_CAPABILITIES_DIR", str(tmp_path / "caps"))
    monkeypatch.setenv("TEAMFLOW_COMPLETION_MARKER_PATH", str(tmp_path / "done.json"))
    monkeypatch.setenv("TEAMFLOW_ALLOW_MISSING_CAPABILITIES", "yes")

    settings = Settings.from_env()

    assert settings.db_path == tmp_path / "env.db"
    assert settings.worker.max_attempts == 5
    assert settings.executor.kind == "command"
    assert settings.executor.capabilities_dir == tmp_path / "caps"
    assert settings.executor.allow_missing_capabilities is True
    assert settings.coordinator.completion_marker_path == tmp_path / "done.json"
    settings.validate()


def test_explicit_db_path_overrides_environment(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setenv("TEAMFLOW_DB_PATH", str(tmp_path / "env.db"))

    settings = Settings.from_env(db_path=tmp_path / "cli.db")

    assert settings.db_path == tmp_path / "cli.db"


def test_from_env_rejects_invalid_boolean(monkeypatch) -> None:
    monkeypatch.setenv("TEAMFLOW_ALLOW_MISSING_CAPABILITIES", "maybe")

    with pytest.raises(ValueError, match="Invalid boolean value"):
        Settings.from_env()


def test_validate_rejects_unknown_executor() -> None:
    settings = Settings(executor=ExecutorSettings(kind="remote"))

    with pytest.raises(ValueError, match="Unsupported TEAMFLOW_EXECUTOR"):
        settings.validate()


def test_validate_requires_command_template_for_command_executor() -> None:
    settings = Settings(executor=ExecutorSettings(kind="command", command_template="  "))

    with pytest.raises(ValueError, match="TEAMFLOW_COMMAND_TEMPLATE is required"):
        settings.validate()


def test_validate_rejects_inverted_retry_window() -> None:
    settings = Settings(worker=WorkerSettings(retry_base_seconds=10.0, retry_max_seconds=1.0))

    with pytest.raises(ValueError, match="TEAMFLOW_RETRY_MAX_SECONDS"):
        settings.validate()


def test_validate_rejects_non_positive_max_attempts() -> None:
    settings = Settings(worker=WorkerSettings(max_attempts=0))

    with pytest.raises(ValueError, match="TEAMFLOW_MAX_ATTEMPTS"):
        settings.validate()
