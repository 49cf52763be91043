from __future__ import annotations

import json
from pathlib import Path

import allure
import pytest
import yaml
from conftest import build_plan, two_stream_document

from teamflow.orchestrator.errors import PlanValidationError
from teamflow.orchestrator.plan import (
    dumps_plan,
    load_plan,
    loads_plan,
    parse_plan,
    phase_creation_order,
    resources_overlap,
    validate_plan,
)
from teamflow.orchestrator.resolver import compute_blocked_by

pytestmark = [
    allure.epic("Plan Ingestion"),
    allure.feature("Plan Validation"),
]


def test_load_plan_reads_json_and_yaml(tmp_path: Path) -> None:
    document = two_stream_document()
    json_path = tmp_path / "plan.json"
    json_path.write_text(json.dumps(document), "utf-8")
    yaml_path = tmp_path / "plan.yaml"
    yaml_path.write_text(yaml.safe_dump(document), "utf-8")

    from_json = load_plan(json_path)
    from_yaml = load_plan(yaml_path)

    assert from_json.name == "two-streams"
    assert [phase.number for phase in from_json.phases] == [1, 2]
    assert from_json.active_streams() == ["backend", "frontend"]
    assert dumps_plan(from_json) == dumps_plan(from_yaml)


def test_load_plan_reports_unparseable_document(tmp_path: Path) -> None:
    path = tmp_path / "plan.json"
    path.write_text("{not json", "utf-8")

    with pytest.raises(PlanValidationError, match="cannot parse"):
        load_plan(path)


def test_validate_plan_rejects_overlapping_resources() -> None:
    document = two_stream_document()
    document["streams"][1]["owned_resources"] = ["src/api/handlers"]

    with pytest.raises(PlanValidationError, match="overlapping resources"):
        build_plan(document)


def test_validate_plan_collects_every_problem() -> None:
    document = two_stream_document()
    document["phases"][0]["chunks"].append({"name": "orphan", "stream": "mobile"})
    document["phases"][0]["chunks"].append(
        {"name": "early", "stream": "backend", "depends_on": ["client"]},
    )
    document["communication"].append(
        {"from": "frontend", "to": "backend", "trigger_phase": 5, "payload": "late"},
    )

    with pytest.raises(PlanValidationError) as error_info:
        build_plan(document)

    problems = error_info.value.problems
    assert any("undeclared stream 'mobile'" in problem for problem in problems)
    assert any("from later phase 2" in problem for problem in problems)
    assert any("trigger_phase is out of range" in problem for problem in problems)


def test_validate_plan_rejects_dependency_cycle() -> None:
    document = two_stream_document()
    chunks = document["phases"][0]["chunks"]
    chunks[0]["depends_on"] = ["endpoints"]

    with pytest.raises(PlanValidationError, match="cyclic depends_on"):
        build_plan(document)


def test_validate_plan_rejects_message_from_stream_without_chunk_in_phase() -> None:
    document = two_stream_document()
    document["phases"][1]["chunks"] = [{"name": "client", "stream": "frontend"}]
    document["communication"].append(
        {"from": "backend", "to": "frontend", "trigger_phase": 2, "payload": "done"},
    )

    with pytest.raises(PlanValidationError, match="has no chunk in phase 2"):
        build_plan(document)


def test_validate_plan_rejects_duplicate_communication_route() -> None:
    document = two_stream_document()
    document["communication"].append(
        {"from": "backend", "to": "frontend", "trigger_phase": 1, "payload": "second contract"},
    )

    with pytest.raises(PlanValidationError) as error_info:
        build_plan(document)

    assert error_info.value.problems == ["duplicate communication route backend->frontend@1"]


def test_parse_plan_rejects_invalid_max_attempts() -> None:
    with pytest.raises(PlanValidationError, match="max_attempts"):
        parse_plan(two_stream_document(max_attempts=0))


def test_parse_plan_requires_streams_and_phases_arrays() -> None:
    with pytest.raises(PlanValidationError) as error_info:
        parse_plan({"name": "empty", "streams": {}, "phases": None})

    assert "plan.streams must be an array" in error_info.value.problems
    assert "plan.phases must be an array" in error_info.value.problems


def test_validate_plan_rejects_empty_plan() -> None:
    plan = parse_plan({"name": "empty", "streams": [], "phases": []})

    with pytest.raises(PlanValidationError, match="no streams"):
        validate_plan(plan)


def test_compute_blocked_by_adds_previous_phase_and_explicit_dependencies() -> None:
    plan = build_plan(two_stream_document())

    blocked_by = compute_blocked_by(plan)

    assert blocked_by["schema"] == set()
    assert blocked_by["endpoints"] == {"schema"}
    assert blocked_by["client"] == {"schema", "endpoints", "layout"}
    assert blocked_by["docs"] == {"schema", "endpoints", "layout"}


def test_phase_creation_order_puts_dependencies_first() -> None:
    document = two_stream_document()
    document["phases"][0]["chunks"] = [
        {"name": "endpoints", "stream": "backend", "depends_on": ["schema"]},
        {"name": "schema", "stream": "backend"},
    ]
    plan = build_plan(document)

    ordered = [chunk.name for chunk in phase_creation_order(plan.phases[0])]

    assert ordered.index("schema") < ordered.index("endpoints")


def test_resources_overlap_on_equal_or_nested_paths() -> None:
    assert resources_overlap("src/api", "src/api/")
    assert resources_overlap("src", "src/api/handlers.py")
    assert not resources_overlap("src/api", "src/apiv2")
    assert not resources_overlap("src/api", "src/ui")


def test_loads_plan_restores_stored_plan() -> None:
    plan = build_plan(two_stream_document(max_attempts=5))

    restored = loads_plan(dumps_plan(plan))

    assert restored.max_attempts == 5
    assert restored.inbound_rules("frontend")[0].payload == plan.communication[0].payload
    assert restored.outbound_rules("backend", 1) == plan.outbound_rules("backend", 1)
