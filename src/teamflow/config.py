"""Runtime configuration for the orchestration engine."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

SUPPORTED_EXECUTORS = ("noop", "command")


@dataclass(slots=True)
class WorkerSettings:
    """Stream worker settings."""

    poll_interval_seconds: float = 0.5
    max_attempts: int = 3
    retry_base_seconds: float = 1.0
    retry_max_seconds: float = 60.0
    message_timeout_seconds: float = 300.0
    verify_attempts: int = 3


@dataclass(slots=True)
class CoordinatorConfig:
    """Coordinator polling and completion settings."""

    poll_interval_seconds: float = 0.5
    max_failed_tasks: int = 3
    worker_join_timeout_seconds: float = 30.0
    completion_marker_path: Path | None = None


@dataclass(slots=True)
class ExecutorSettings:
    """Task executor selection."""

    kind: str = "noop"
    command_template: str = ""
    command_timeout_seconds: int = 600
    capabilities_dir: Path | None = None
    allow_missing_capabilities: bool = False


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".teamflow.db")
    sqlite_busy_timeout_ms: int = 5_000
    worker: WorkerSettings = field(default_factory=WorkerSettings)
    coordinator: CoordinatorConfig = field(default_factory=CoordinatorConfig)
    executor: ExecutorSettings = field(default_factory=ExecutorSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path or Path(os.getenv("TEAMFLOW_DB_PATH", ".teamflow.db")),
            sqlite_busy_timeout_ms=int(os.getenv("TEAMFLOW_SQLITE_BUSY_TIMEOUT_MS", "5000")),
            worker=WorkerSettings(
                poll_interval_seconds=float(
                    os.getenv("TEAMFLOW_WORKER_POLL_INTERVAL_SECONDS", "0.5"),
                ),
                max_attempts=int(os.getenv("TEAMFLOW_MAX_ATTEMPTS", "3")),
                retry_base_seconds=float(os.getenv("TEAMFLOW_RETRY_BASE_SECONDS", "1.0")),
                retry_max_seconds=float(os.getenv("TEAMFLOW_RETRY_MAX_SECONDS", "60.0")),
                message_timeout_seconds=float(
                    os.getenv("TEAMFLOW_MESSAGE_TIMEOUT_SECONDS", "300.0"),
                ),
                verify_attempts=int(os.getenv("TEAMFLOW_VERIFY_ATTEMPTS", "3")),
            ),
            coordinator=CoordinatorConfig(
                poll_interval_seconds=float(
                    os.getenv("TEAMFLOW_COORDINATOR_POLL_INTERVAL_SECONDS", "0.5"),
                ),
                max_failed_tasks=int(os.getenv("TEAMFLOW_MAX_FAILED_TASKS", "3")),
                worker_join_timeout_seconds=float(
                    os.getenv("TEAMFLOW_WORKER_JOIN_TIMEOUT_SECONDS", "30.0"),
                ),
                completion_marker_path=_env_path("TEAMFLOW_COMPLETION_MARKER_PATH"),
            ),
            executor=ExecutorSettings(
                kind=os.getenv("TEAMFLOW_EXECUTOR", "noop").strip().lower(),
                command_template=os.getenv("TEAMFLOW_COMMAND_TEMPLATE", ""),
                command_timeout_seconds=int(
                    os.getenv("TEAMFLOW_COMMAND_TIMEOUT_SECONDS", "600"),
                ),
                capabilities_dir=_env_path("TEAMFLOW_CAPABILITIES_DIR"),
                allow_missing_capabilities=_env_bool(
                    "TEAMFLOW_ALLOW_MISSING_CAPABILITIES",
                    False,
                ),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for values the engine cannot run with."""

        if self.sqlite_busy_timeout_ms <= 0:
            raise ValueError("TEAMFLOW_SQLITE_BUSY_TIMEOUT_MS must be > 0.")
        if self.worker.poll_interval_seconds <= 0:
            raise ValueError("TEAMFLOW_WORKER_POLL_INTERVAL_SECONDS must be > 0.")
        if self.worker.max_attempts < 1:
            raise ValueError("TEAMFLOW_MAX_ATTEMPTS must be >= 1.")
        if self.worker.retry_base_seconds < 0:
            raise ValueError("TEAMFLOW_RETRY_BASE_SECONDS must be >= 0.")
        if self.worker.retry_max_seconds < self.worker.retry_base_seconds:
            raise ValueError(
                "TEAMFLOW_RETRY_MAX_SECONDS must be >= TEAMFLOW_RETRY_BASE_SECONDS.",
            )
        if self.worker.message_timeout_seconds <= 0:
            raise ValueError("TEAMFLOW_MESSAGE_TIMEOUT_SECONDS must be > 0.")
        if self.worker.verify_attempts < 1:
            raise ValueError("TEAMFLOW_VERIFY_ATTEMPTS must be >= 1.")
        if self.coordinator.poll_interval_seconds <= 0:
            raise ValueError("TEAMFLOW_COORDINATOR_POLL_INTERVAL_SECONDS must be > 0.")
        if self.coordinator.max_failed_tasks < 0:
            raise ValueError("TEAMFLOW_MAX_FAILED_TASKS must be >= 0.")
        if self.coordinator.worker_join_timeout_seconds <= 0:
            raise ValueError("TEAMFLOW_WORKER_JOIN_TIMEOUT_SECONDS must be > 0.")
        if self.executor.kind not in SUPPORTED_EXECUTORS:
            raise ValueError(
                f"Unsupported TEAMFLOW_EXECUTOR: {self.executor.kind!r}. "
                f"Expected one of: {', '.join(SUPPORTED_EXECUTORS)}.",
            )
        if self.executor.kind == "command" and not self.executor.command_template.strip():
            raise ValueError("TEAMFLOW_COMMAND_TEMPLATE is required for the command executor.")
        if self.executor.command_timeout_seconds <= 0:
            raise ValueError("TEAMFLOW_COMMAND_TIMEOUT_SECONDS must be > 0.")


def _env_path(name: str) -> Path | None:
    value = os.getenv(name, "").strip()
    return Path(value) if value else None


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
