"""Programmatic Alembic access for teamflow task stores."""

from __future__ import annotations

from pathlib import Path

from sqlalchemy import create_engine, pool

from alembic import command
from alembic.config import Config
from alembic.runtime.migration import MigrationContext
from alembic.script import ScriptDirectory

from teamflow.storage.common import sqlite_url

_PROJECT_ROOT = Path(__file__).resolve().parents[3]


def build_alembic_config(db_path: Path) -> Config:
    config = Config(str(_PROJECT_ROOT / "alembic.ini"))
    config.set_main_option("script_location", str(_PROJECT_ROOT / "alembic"))
    config.set_main_option("sqlalchemy.url", sqlite_url(db_path))
    return config


def current_revision(db_path: Path) -> str | None:
    """Return the revision stamped in ``db_path``, or None for a fresh store."""

    if not db_path.exists():
        return None
    engine = create_engine(sqlite_url(db_path), poolclass=pool.NullPool)
    try:
        with engine.connect() as connection:
            return MigrationContext.configure(connection).get_current_revision()
    finally:
        engine.dispose()


def upgrade_head(db_path: Path) -> None:
    """Bring the task store at ``db_path`` up to the latest schema revision.

    A store already at head is left untouched, so repeated ``init_schema``
    calls from the CLI and the coordinator do not take a write lock.
    """

    config = build_alembic_config(db_path)
    head = ScriptDirectory.from_config(config).get_current_head()
    if current_revision(db_path) == head:
        return
    db_path.parent.mkdir(parents=True, exist_ok=True)
    command.upgrade(config, "head")
