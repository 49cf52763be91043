"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path
from typing import Any

import pytest

from teamflow.orchestrator.models import StreamSpec
from teamflow.orchestrator.plan import ExecutionPlan, parse_plan, validate_plan
from teamflow.orchestrator.repository import OrchestratorRepository


@pytest.fixture()
def repository(tmp_path: Path) -> Iterator[OrchestratorRepository]:
    repo = OrchestratorRepository(tmp_path / "teamflow.db")
    repo.init_schema()
    try:
        yield repo
    finally:
        repo.close()


def create_run(
    repository: OrchestratorRepository,
    streams: tuple[StreamSpec, ...] = (StreamSpec(name="alpha"), StreamSpec(name="beta")),
) -> str:
    """Create a run with registered streams and return its id."""

    run = repository.create_run(plan_name="test-plan", plan_json="{}")
    for stream in streams:
        repository.register_stream(run_id=run.run_id, stream=stream)
    return run.run_id


def two_stream_document(**overrides: Any) -> dict[str, Any]:
    """Backend/frontend plan with one handoff after phase 1."""

    document: dict[str, Any] = {
        "name": "two-streams",
        "streams": [
            {
                "name": "backend",
                "owned_resources": ["src/api/"],
                "required_capabilities": ["api-design"],
            },
            {
                "name": "frontend",
                "owned_resources": ["src/ui/"],
                "required_capabilities": ["ui-kit"],
            },
        ],
        "phases": [
            {
                "name": "foundation",
                "chunks": [
                    {"name": "schema", "stream": "backend"},
                    {"name": "endpoints", "stream": "backend", "depends_on": ["schema"]},
                    {"name": "layout", "stream": "frontend"},
                ],
            },
            {
                "name": "integration",
                "chunks": [
                    {"name": "client", "stream": "frontend"},
                    {"name": "docs", "stream": "backend"},
                ],
            },
        ],
        "communication": [
            {
                "from": "backend",
                "to": "frontend",
                "trigger_phase": 1,
                "payload": "API contract is at src/api/openapi.yaml",
            },
        ],
    }
    document.update(overrides)
    return document


def build_plan(document: dict[str, Any]) -> ExecutionPlan:
    plan = parse_plan(document)
    validate_plan(plan)
    return plan
