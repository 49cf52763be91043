from pathlib import Path

import allure
from sqlalchemy import text

from teamflow.orchestrator.repository import OrchestratorRepository
from teamflow.storage.alembic_runner import current_revision

pytestmark = [
    allure.epic("Task Store"),
    allure.feature("Schema Migrations"),
]


def test_alembic_schema_is_initialized_to_head(tmp_path: Path) -> None:
    db_path = tmp_path / "migrations.db"
    assert current_revision(db_path) is None

    repository = OrchestratorRepository(db_path)
    repository.init_schema()
    repository.init_schema()

    with repository.engine.connect() as connection:
        tables = connection.execute(
            text(
                """
                SELECT name
                FROM sqlite_master
                WHERE type = 'table' AND name != 'alembic_version'
                ORDER BY name
                """,
            ),
        ).scalars()
        table_names = list(tables)

    assert current_revision(db_path) == "20261018_0001"
    assert table_names == [
        "run_streams",
        "stream_messages",
        "team_runs",
        "team_task_dependencies",
        "team_task_events",
        "team_tasks",
    ]
    repository.close()


def test_init_schema_creates_missing_db_directory(tmp_path: Path) -> None:
    db_path = tmp_path / "state" / "nested" / "team.db"
    repository = OrchestratorRepository(db_path)
    repository.init_schema()

    assert current_revision(db_path) == "20261018_0001"
    repository.close()
