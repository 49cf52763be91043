"""Execution plan contract: parsing, validation and serialization.

A plan declares streams (ownership domains), an ordered list of phases made
of chunks, and the communication table used for cross-stream handoffs.
Every structural problem is collected and reported at once, before any
task is created.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from graphlib import CycleError, TopologicalSorter
from pathlib import Path, PurePosixPath
from typing import Any

import yaml

from teamflow.orchestrator.errors import PlanValidationError
from teamflow.orchestrator.models import StreamSpec

YAML_SUFFIXES = {".yaml", ".yml"}


@dataclass(slots=True)
class ChunkSpec:
    """One task declaration inside a phase."""

    name: str
    stream: str
    depends_on: tuple[str, ...] = ()
    description: str = ""


@dataclass(slots=True)
class PhaseSpec:
    """Barrier generation; phase numbers start at 1."""

    number: int
    chunks: list[ChunkSpec]
    name: str = ""


@dataclass(slots=True)
class CommunicationRule:
    """Directed handoff sent once `trigger_phase` completes in `from_stream`."""

    from_stream: str
    to_stream: str
    trigger_phase: int
    payload: str


@dataclass(slots=True)
class ExecutionPlan:
    """Parsed execution plan."""

    name: str
    streams: list[StreamSpec]
    phases: list[PhaseSpec]
    communication: list[CommunicationRule] = field(default_factory=list)
    max_attempts: int | None = None

    def active_streams(self) -> list[str]:
        """Declared streams that own at least one chunk, in declaration order."""

        used = {chunk.stream for phase in self.phases for chunk in phase.chunks}
        return [stream.name for stream in self.streams if stream.name in used]

    def inbound_rules(self, stream: str) -> list[CommunicationRule]:
        return [rule for rule in self.communication if rule.to_stream == stream]

    def outbound_rules(self, stream: str, trigger_phase: int) -> list[CommunicationRule]:
        return [
            rule
            for rule in self.communication
            if rule.from_stream == stream and rule.trigger_phase == trigger_phase
        ]


def load_plan(path: Path) -> ExecutionPlan:
    """Read a JSON or YAML plan document and validate it."""

    text = path.read_text("utf-8")
    try:
        if path.suffix.lower() in YAML_SUFFIXES:
            raw = yaml.safe_load(text)
        else:
            raw = json.loads(text)
    except (yaml.YAMLError, json.JSONDecodeError) as error:
        raise PlanValidationError([f"cannot parse {path}: {error}"]) from error
    plan = parse_plan(raw)
    validate_plan(plan)
    return plan


def parse_plan(raw: object) -> ExecutionPlan:  # noqa: C901
    """Build a plan from a decoded document, collecting shape problems."""

    if not isinstance(raw, dict):
        raise PlanValidationError(["plan must be an object"])

    problems: list[str] = []
    name = raw.get("name", "plan")
    if not isinstance(name, str) or not name.strip():
        problems.append("plan.name must be a non-empty string")
        name = "plan"

    max_attempts = raw.get("max_attempts")
    if max_attempts is not None and (
        not isinstance(max_attempts, int) or isinstance(max_attempts, bool) or max_attempts < 1
    ):
        problems.append("plan.max_attempts must be an integer >= 1")
        max_attempts = None

    streams: list[StreamSpec] = []
    raw_streams = raw.get("streams")
    if not isinstance(raw_streams, list):
        problems.append("plan.streams must be an array")
        raw_streams = []
    for index, item in enumerate(raw_streams):
        if not isinstance(item, dict):
            problems.append(f"streams[{index}] must be an object")
            continue
        stream_name = item.get("name")
        if not isinstance(stream_name, str) or not stream_name.strip():
            problems.append(f"streams[{index}].name must be a non-empty string")
            continue
        resources = _string_list(
            item.get("owned_resources", []),
            f"stream {stream_name!r}.owned_resources",
            problems,
        )
        capabilities = _string_list(
            item.get("required_capabilities", []),
            f"stream {stream_name!r}.required_capabilities",
            problems,
        )
        streams.append(
            StreamSpec(
                name=stream_name.strip(),
                owned_resources=tuple(resources),
                required_capabilities=tuple(capabilities),
            ),
        )

    phases: list[PhaseSpec] = []
    raw_phases = raw.get("phases")
    if not isinstance(raw_phases, list):
        problems.append("plan.phases must be an array")
        raw_phases = []
    for index, item in enumerate(raw_phases, start=1):
        if not isinstance(item, dict):
            problems.append(f"phase {index} must be an object")
            continue
        raw_chunks = item.get("chunks")
        if not isinstance(raw_chunks, list):
            problems.append(f"phase {index}.chunks must be an array")
            continue
        chunks: list[ChunkSpec] = []
        for chunk_index, chunk in enumerate(raw_chunks):
            parsed = _parse_chunk(chunk, f"phase {index}.chunks[{chunk_index}]", problems)
            if parsed is not None:
                chunks.append(parsed)
        phase_name = item.get("name", "")
        phases.append(
            PhaseSpec(
                number=index,
                chunks=chunks,
                name=phase_name if isinstance(phase_name, str) else str(phase_name),
            ),
        )

    rules: list[CommunicationRule] = []
    raw_rules = raw.get("communication", [])
    if not isinstance(raw_rules, list):
        problems.append("plan.communication must be an array")
        raw_rules = []
    for index, item in enumerate(raw_rules):
        if not isinstance(item, dict):
            problems.append(f"communication[{index}] must be an object")
            continue
        from_stream = item.get("from")
        to_stream = item.get("to")
        trigger_phase = item.get("trigger_phase")
        payload = item.get("payload", "")
        if not isinstance(from_stream, str) or not isinstance(to_stream, str):
            problems.append(f"communication[{index}] requires string 'from' and 'to'")
            continue
        if not isinstance(trigger_phase, int) or isinstance(trigger_phase, bool):
            problems.append(f"communication[{index}].trigger_phase must be an integer")
            continue
        if not isinstance(payload, str):
            problems.append(f"communication[{index}].payload must be a string")
            continue
        rules.append(
            CommunicationRule(
                from_stream=from_stream,
                to_stream=to_stream,
                trigger_phase=trigger_phase,
                payload=payload,
            ),
        )

    if problems:
        raise PlanValidationError(problems)
    return ExecutionPlan(
        name=name.strip(),
        streams=streams,
        phases=phases,
        communication=rules,
        max_attempts=max_attempts,
    )


def validate_plan(plan: ExecutionPlan) -> None:  # noqa: C901, PLR0912
    """Reject malformed plans: overlaps, undeclared streams, bad or cyclic dependencies."""

    problems: list[str] = []
    if not plan.streams:
        problems.append("plan declares no streams")
    if not plan.phases:
        problems.append("plan declares no phases")

    stream_names: set[str] = set()
    for stream in plan.streams:
        if stream.name in stream_names:
            problems.append(f"duplicate stream name: {stream.name!r}")
        stream_names.add(stream.name)

    for index, left in enumerate(plan.streams):
        for right in plan.streams[index + 1 :]:
            for resource in left.owned_resources:
                for other in right.owned_resources:
                    if resources_overlap(resource, other):
                        problems.append(
                            f"streams {left.name!r} and {right.name!r} both own "
                            f"overlapping resources {resource!r} / {other!r}",
                        )

    chunk_phase: dict[str, int] = {}
    for phase in plan.phases:
        if not phase.chunks:
            problems.append(f"phase {phase.number} has no chunks")
        for chunk in phase.chunks:
            if chunk.name in chunk_phase:
                problems.append(f"duplicate chunk name: {chunk.name!r}")
                continue
            chunk_phase[chunk.name] = phase.number
            if chunk.stream not in stream_names:
                problems.append(
                    f"chunk {chunk.name!r} references undeclared stream {chunk.stream!r}",
                )

    graph: dict[str, set[str]] = {}
    for phase in plan.phases:
        for chunk in phase.chunks:
            edges: set[str] = set()
            for dependency in chunk.depends_on:
                if dependency not in chunk_phase:
                    problems.append(
                        f"chunk {chunk.name!r} depends on unknown chunk {dependency!r}",
                    )
                    continue
                if chunk_phase[dependency] > phase.number:
                    problems.append(
                        f"chunk {chunk.name!r} (phase {phase.number}) depends on "
                        f"{dependency!r} from later phase {chunk_phase[dependency]}",
                    )
                    continue
                edges.add(dependency)
            graph[chunk.name] = edges
    try:
        tuple(TopologicalSorter(graph).static_order())
    except CycleError as error:
        cycle = " -> ".join(str(node) for node in error.args[1])
        problems.append(f"cyclic depends_on: {cycle}")

    seen_routes: set[tuple[str, str, int]] = set()
    for rule in plan.communication:
        route = f"{rule.from_stream}->{rule.to_stream}@{rule.trigger_phase}"
        key = (rule.from_stream, rule.to_stream, rule.trigger_phase)
        if key in seen_routes:
            problems.append(f"duplicate communication route {route}")
        seen_routes.add(key)
        if rule.from_stream not in stream_names or rule.to_stream not in stream_names:
            problems.append(f"communication {route} references an undeclared stream")
            continue
        if rule.from_stream == rule.to_stream:
            problems.append(f"communication {route} must connect two different streams")
        if not 1 <= rule.trigger_phase <= len(plan.phases):
            problems.append(f"communication {route} trigger_phase is out of range")
            continue
        trigger = plan.phases[rule.trigger_phase - 1]
        if not any(chunk.stream == rule.from_stream for chunk in trigger.chunks):
            problems.append(
                f"communication {route}: stream {rule.from_stream!r} has no chunk "
                f"in phase {rule.trigger_phase}",
            )
        if not rule.payload.strip():
            problems.append(f"communication {route} payload must not be empty")

    if problems:
        raise PlanValidationError(problems)


def phase_creation_order(phase: PhaseSpec) -> list[ChunkSpec]:
    """Chunks of one phase ordered so intra-phase dependencies come first."""

    by_name = {chunk.name: chunk for chunk in phase.chunks}
    sorter: TopologicalSorter[str] = TopologicalSorter()
    for chunk in phase.chunks:
        sorter.add(chunk.name, *(dep for dep in chunk.depends_on if dep in by_name))
    return [by_name[name] for name in sorter.static_order()]


def resources_overlap(left: str, right: str) -> bool:
    """Resources overlap when equal or when one path contains the other."""

    left_path = PurePosixPath(left.strip().rstrip("/") or "/")
    right_path = PurePosixPath(right.strip().rstrip("/") or "/")
    return (
        left_path == right_path
        or left_path in right_path.parents
        or right_path in left_path.parents
    )


def plan_to_dict(plan: ExecutionPlan) -> dict[str, Any]:
    """Serialize a plan back to its document form."""

    return {
        "name": plan.name,
        "max_attempts": plan.max_attempts,
        "streams": [
            {
                "name": stream.name,
                "owned_resources": list(stream.owned_resources),
                "required_capabilities": list(stream.required_capabilities),
            }
            for stream in plan.streams
        ],
        "phases": [
            {
                "name": phase.name,
                "chunks": [
                    {
                        "name": chunk.name,
                        "stream": chunk.stream,
                        "depends_on": list(chunk.depends_on),
                        "description": chunk.description,
                    }
                    for chunk in phase.chunks
                ],
            }
            for phase in plan.phases
        ],
        "communication": [
            {
                "from": rule.from_stream,
                "to": rule.to_stream,
                "trigger_phase": rule.trigger_phase,
                "payload": rule.payload,
            }
            for rule in plan.communication
        ],
    }


def dumps_plan(plan: ExecutionPlan) -> str:
    return json.dumps(plan_to_dict(plan), ensure_ascii=False, sort_keys=True)


def loads_plan(text: str) -> ExecutionPlan:
    """Rebuild a stored plan (used when resuming a run)."""

    plan = parse_plan(json.loads(text))
    validate_plan(plan)
    return plan


def rule_key(rule: CommunicationRule) -> tuple[str, int]:
    return (rule.from_stream, rule.trigger_phase)


def _parse_chunk(raw: object, label: str, problems: list[str]) -> ChunkSpec | None:
    if not isinstance(raw, dict):
        problems.append(f"{label} must be an object")
        return None
    name = raw.get("name")
    stream = raw.get("stream")
    description = raw.get("description", "")
    if not isinstance(name, str) or not name.strip():
        problems.append(f"{label}.name must be a non-empty string")
        return None
    if not isinstance(stream, str) or not stream.strip():
        problems.append(f"{label}.stream must be a non-empty string")
        return None
    if not isinstance(description, str):
        problems.append(f"{label}.description must be a string")
        return None
    depends_on = _string_list(raw.get("depends_on", []), f"{label}.depends_on", problems)
    return ChunkSpec(
        name=name.strip(),
        stream=stream.strip(),
        depends_on=tuple(depends_on),
        description=description,
    )


def _string_list(value: object, label: str, problems: list[str]) -> list[str]:
    if value is None:
        return []
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        problems.append(f"{label} must be an array of strings")
        return []
    return [item.strip() for item in value if item.strip()]
