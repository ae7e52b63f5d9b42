"""
phasegate — phase plan and run definition.

Purpose
- Parse the caller's phase plan against a validated task graph and freeze the pair,
  together with the resolved scheduler/cycle limits, into an immutable run definition.

Functional requirements
- Phases are totally ordered and partition the task graph: every work item belongs to
  exactly one phase.
- Gate conditions are phase-scoped; a condition naming a work item outside its own
  phase is rejected rather than guessed at.
- A work item may not depend on an item of a later phase.
- Every problem found is reported at once through ``InvalidPhaseAssignment``.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import Final

from phasegate.domain import ids as domain_ids
from phasegate.domain.errors import InvalidPhaseAssignment
from phasegate.domain.models import canonical_json, datetime_to_iso8601z, parse_datetime
from phasegate.planning.task_graph import TaskGraph
from phasegate.utils.hashing import sha256_text
from phasegate.verification_plane.gates import ConditionKind, Gate, parse_gate

DEFINITION_SCHEMA_VERSION: Final[int] = 1
_PHASE_KEYS: Final[frozenset[str]] = frozenset(
    {"name", "work_items", "entry_gate", "exit_gate", "max_in_flight"}
)
_DEFAULT_EXIT_GATE: Final[list[str]] = [ConditionKind.ALL_DONE.value]


@dataclass(frozen=True, slots=True)
class Phase:
    name: str
    work_item_ids: tuple[str, ...]
    entry_gate: Gate
    exit_gate: Gate
    max_in_flight: int | None = None

    def to_dict(self) -> dict[str, object]:
        payload: dict[str, object] = {
            "name": self.name,
            "work_items": list(self.work_item_ids),
            "entry_gate": self.entry_gate.to_dict(),
            "exit_gate": self.exit_gate.to_dict(),
        }
        if self.max_in_flight is not None:
            payload["max_in_flight"] = self.max_in_flight
        return payload


@dataclass(frozen=True, slots=True)
class RunDefinition:
    """Immutable input of one run. All mutable run state lives in the ledger."""

    run_id: str
    phases: tuple[Phase, ...]
    max_in_flight: int
    max_iterations: int
    created_at: datetime
    task_graph_spec: Mapping[str, object]
    graph: TaskGraph = field(repr=False, compare=False)
    phase_lookup: Mapping[str, int] = field(repr=False, compare=False)

    @property
    def phase_names(self) -> tuple[str, ...]:
        return tuple(phase.name for phase in self.phases)

    @property
    def plan_digest(self) -> str:
        return sha256_text(canonical_json(self.plan_payload()))

    def new_graph(self) -> TaskGraph:
        """Fresh graph with every item pending."""
        return self.graph.copy()

    def phase_index_of(self, work_item_id: str) -> int:
        return self.phase_lookup[work_item_id]

    def wip_cap(self, phase_index: int) -> int:
        override = self.phases[phase_index].max_in_flight
        return self.max_in_flight if override is None else override

    def plan_payload(self) -> dict[str, object]:
        return {
            "task_graph": dict(self.task_graph_spec),
            "phases": [phase.to_dict() for phase in self.phases],
        }

    def to_dict(self) -> dict[str, object]:
        return {
            "schema_version": DEFINITION_SCHEMA_VERSION,
            "run_id": self.run_id,
            "created_at": datetime_to_iso8601z(self.created_at),
            "max_in_flight": self.max_in_flight,
            "max_iterations": self.max_iterations,
            **self.plan_payload(),
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, object]) -> RunDefinition:
        version = payload.get("schema_version")
        if version != DEFINITION_SCHEMA_VERSION:
            raise ValueError(f"unsupported run definition schema_version: {version!r}")
        task_graph = payload.get("task_graph")
        phases = payload.get("phases")
        max_in_flight = payload.get("max_in_flight")
        max_iterations = payload.get("max_iterations")
        if not isinstance(task_graph, Mapping) or not isinstance(phases, list):
            raise ValueError("run definition is missing task_graph or phases")
        if not isinstance(max_in_flight, int) or not isinstance(max_iterations, int):
            raise ValueError("run definition is missing limits")
        return build_run_definition(
            task_graph,
            {"phases": phases},
            run_id=str(payload.get("run_id", "")),
            max_in_flight=max_in_flight,
            max_iterations=max_iterations,
            created_at=parse_datetime(payload.get("created_at"), "RunDefinition.created_at"),
        )


def build_run_definition(
    task_graph_spec: TaskGraph | Mapping[str, object] | Sequence[Mapping[str, object]],
    phase_spec: Mapping[str, object] | Sequence[object],
    *,
    run_id: str,
    max_in_flight: int,
    max_iterations: int,
    created_at: datetime,
) -> RunDefinition:
    """
    Validate graph and phase input and return the frozen definition.

    Raises ``CycleDetected``, ``DanglingDependency`` or ``InvalidPhaseAssignment``.
    """

    domain_ids.validate_run_id(run_id)
    if max_in_flight < 1:
        raise ValueError("max_in_flight must be >= 1")
    if max_iterations < 1:
        raise ValueError("max_iterations must be >= 1")

    if isinstance(task_graph_spec, TaskGraph):
        graph = task_graph_spec.copy()
    elif isinstance(task_graph_spec, Mapping):
        graph = TaskGraph.from_spec(task_graph_spec)
    else:
        graph = TaskGraph.build(task_graph_spec)

    phases = parse_phase_plan(phase_spec, graph)
    phase_index = {
        item_id: index for index, phase in enumerate(phases) for item_id in phase.work_item_ids
    }
    return RunDefinition(
        run_id=run_id,
        phases=phases,
        max_in_flight=max_in_flight,
        max_iterations=max_iterations,
        created_at=created_at,
        task_graph_spec=graph.to_spec(),
        graph=graph,
        phase_lookup=phase_index,
    )


def parse_phase_plan(
    phase_spec: Mapping[str, object] | Sequence[object],
    graph: TaskGraph,
) -> tuple[Phase, ...]:
    """Parse and cross-check phases against ``graph``; collect every problem found."""

    raw_phases: object = phase_spec.get("phases") if isinstance(phase_spec, Mapping) else phase_spec
    if not isinstance(raw_phases, (list, tuple)) or not raw_phases:
        raise InvalidPhaseAssignment(("phase plan must declare at least one phase",))

    problems: list[str] = []
    phases: list[Phase] = []
    owner: dict[str, str] = {}
    seen_names: set[str] = set()

    for index, raw in enumerate(raw_phases):
        path = f"phases[{index}]"
        phase = _parse_phase(raw, path, problems)
        if phase is None:
            continue
        if phase.name in seen_names:
            problems.append(f"{path}: duplicate phase name {phase.name!r}")
        seen_names.add(phase.name)
        for item_id in phase.work_item_ids:
            if item_id not in graph:
                problems.append(f"phase {phase.name!r}: unknown work item {item_id!r}")
            elif item_id in owner:
                problems.append(
                    f"work item {item_id!r} assigned to both {owner[item_id]!r} and {phase.name!r}"
                )
            else:
                owner[item_id] = phase.name
        phases.append(phase)

    for item_id in graph.work_item_ids:
        if item_id not in owner:
            problems.append(f"work item {item_id!r} is not assigned to any phase")

    order = {phase.name: index for index, phase in enumerate(phases)}
    for phase in phases:
        members = set(phase.work_item_ids)
        for gate in (phase.entry_gate, phase.exit_gate):
            foreign = [item for item in gate.referenced_work_items if item not in members]
            if foreign:
                problems.append(
                    f"gate {gate.name!r} references work items outside phase "
                    f"{phase.name!r}: {', '.join(foreign)}"
                )
        for item_id in phase.work_item_ids:
            if item_id not in graph:
                continue
            for dependency in graph.dependencies_of(item_id):
                dependency_phase = owner.get(dependency)
                if dependency_phase is not None and order[dependency_phase] > order[phase.name]:
                    problems.append(
                        f"work item {item_id!r} in phase {phase.name!r} depends on "
                        f"{dependency!r} in later phase {dependency_phase!r}"
                    )

    if problems:
        raise InvalidPhaseAssignment(tuple(problems))
    return tuple(phases)


def _parse_phase(raw: object, path: str, problems: list[str]) -> Phase | None:
    if not isinstance(raw, Mapping):
        problems.append(f"{path}: expected phase object")
        return None
    unknown = sorted(set(raw) - _PHASE_KEYS)
    if unknown:
        problems.append(f"{path}: unexpected fields: {unknown}")

    try:
        name = domain_ids.validate_identifier(raw.get("name"), kind="phase name")
    except ValueError as exc:
        problems.append(f"{path}.name: {exc}")
        return None

    raw_items = raw.get("work_items", ())
    if not isinstance(raw_items, (list, tuple)) or not all(
        isinstance(item, str) for item in raw_items
    ):
        problems.append(f"{path}.work_items: expected a list of work item ids")
        raw_items = ()
    work_items = tuple(raw_items)
    if len(set(work_items)) != len(work_items):
        problems.append(f"{path}.work_items: contains duplicate ids")
        work_items = tuple(dict.fromkeys(work_items))

    max_in_flight = raw.get("max_in_flight")
    if max_in_flight is not None and (
        isinstance(max_in_flight, bool) or not isinstance(max_in_flight, int) or max_in_flight < 1
    ):
        problems.append(f"{path}.max_in_flight: expected integer >= 1")
        max_in_flight = None

    try:
        entry_gate = parse_gate(
            raw.get("entry_gate"), default_name=f"{name}.entry", path=f"{path}.entry_gate"
        )
        exit_gate = parse_gate(
            raw.get("exit_gate", _DEFAULT_EXIT_GATE),
            default_name=f"{name}.exit",
            path=f"{path}.exit_gate",
        )
    except ValueError as exc:
        problems.append(str(exc))
        return None

    return Phase(
        name=name,
        work_item_ids=work_items,
        entry_gate=entry_gate,
        exit_gate=exit_gate,
        max_in_flight=max_in_flight,
    )


__all__ = [
    "DEFINITION_SCHEMA_VERSION",
    "Phase",
    "RunDefinition",
    "build_run_definition",
    "parse_phase_plan",
]
