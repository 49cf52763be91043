"""Time and SQLite engine helpers shared by teamflow storage."""

from __future__ import annotations

import sqlite3
from datetime import UTC, datetime
from pathlib import Path

from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlalchemy.pool import NullPool
from sqlmodel import create_engine


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


def to_db_datetime(value: datetime) -> datetime:
    """Normalize to the naive UTC representation stored by SQLite."""

    if value.tzinfo is None:
        return value
    return value.astimezone(UTC).replace(tzinfo=None)


def to_utc_aware_datetime(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def sqlite_url(db_path: Path) -> str:
    return f"sqlite:///{db_path}"


def sqlite_pragmas(busy_timeout_ms: int) -> tuple[str, ...]:
    # WAL lets worker threads read while one of them commits a transition.
    return (
        "PRAGMA journal_mode = WAL",
        "PRAGMA synchronous = NORMAL",
        f"PRAGMA busy_timeout = {max(1, busy_timeout_ms)}",
        "PRAGMA foreign_keys = ON",
    )


def build_sqlite_engine(*, db_path: Path, busy_timeout_ms: int) -> Engine:
    """Engine shared by one thread's repository: WAL, busy timeout, no pooling.

    Each worker thread builds its own engine; NullPool keeps connections from
    crossing threads.
    """

    engine = create_engine(
        sqlite_url(db_path),
        connect_args={"check_same_thread": False, "timeout": busy_timeout_ms / 1000.0},
        poolclass=NullPool,
    )
    pragmas = sqlite_pragmas(busy_timeout_ms)

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection: sqlite3.Connection, _record: object) -> None:
        for statement in pragmas:
            dbapi_connection.execute(statement)

    return engine
