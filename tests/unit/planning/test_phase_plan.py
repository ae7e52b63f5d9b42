"""Phase plan parsing, partition checks, and run definition round trips."""

from __future__ import annotations

from datetime import UTC, datetime

import pytest

from phasegate.domain.errors import InvalidPhaseAssignment
from phasegate.planning.phases import RunDefinition, build_run_definition, parse_phase_plan
from phasegate.planning.task_graph import TaskGraph
from phasegate.verification_plane.gates import ConditionKind

_TS = datetime(2026, 2, 1, 12, 0, 0, tzinfo=UTC)


def _graph() -> TaskGraph:
    return TaskGraph.build(
        [{"id": "spec"}, {"id": "core", "dependencies": ["spec"]}, {"id": "cli"}]
    )


def _problems(phase_spec: object, graph: TaskGraph | None = None) -> tuple[str, ...]:
    with pytest.raises(InvalidPhaseAssignment) as excinfo:
        parse_phase_plan(phase_spec, _graph() if graph is None else graph)  # type: ignore[arg-type]
    return excinfo.value.problems


def test_defaults_for_gates_and_caps() -> None:
    phases = parse_phase_plan(
        {
            "phases": [
                {"name": "design", "work_items": ["spec"]},
                {"name": "build", "work_items": ["core", "cli"]},
            ]
        },
        _graph(),
    )

    design = phases[0]
    assert design.entry_gate.name == "design.entry"
    assert design.entry_gate.conditions == ()
    assert design.exit_gate.name == "design.exit"
    assert [item.kind for item in design.exit_gate.conditions] == [ConditionKind.ALL_DONE]
    assert design.max_in_flight is None


def test_bare_list_form_is_accepted() -> None:
    phases = parse_phase_plan([{"name": "all", "work_items": ["spec", "core", "cli"]}], _graph())

    assert [phase.name for phase in phases] == ["all"]


def test_empty_plan_is_rejected() -> None:
    assert _problems({"phases": []}) == ("phase plan must declare at least one phase",)


def test_every_partition_problem_is_reported_together() -> None:
    problems = _problems(
        {
            "phases": [
                {"name": "one", "work_items": ["spec", "ghost"]},
                {"name": "two", "work_items": ["spec"]},
            ]
        }
    )

    assert problems == (
        "phase 'one': unknown work item 'ghost'",
        "work item 'spec' assigned to both 'one' and 'two'",
        "work item 'core' is not assigned to any phase",
        "work item 'cli' is not assigned to any phase",
    )


def test_gate_referencing_another_phase_is_rejected() -> None:
    problems = _problems(
        {
            "phases": [
                {"name": "design", "work_items": ["spec"]},
                {
                    "name": "build",
                    "work_items": ["core", "cli"],
                    "exit_gate": [{"kind": "items_done", "work_items": ["spec"]}],
                },
            ]
        }
    )

    assert problems == (
        "gate 'build.exit' references work items outside phase 'build': spec",
    )


def test_dependency_on_later_phase_is_rejected() -> None:
    problems = _problems(
        {
            "phases": [
                {"name": "build", "work_items": ["core", "cli"]},
                {"name": "design", "work_items": ["spec"]},
            ]
        }
    )

    assert problems == (
        "work item 'core' in phase 'build' depends on 'spec' in later phase 'design'",
    )


@pytest.mark.parametrize(
    ("phase", "fragment"),
    [
        ({"name": "p", "work_items": ["spec", "core", "cli"], "owner": "x"}, "unexpected fields"),
        ({"name": "p", "work_items": "spec"}, "expected a list of work item ids"),
        ({"name": "p", "work_items": ["spec", "core", "cli"], "max_in_flight": 0}, "integer >= 1"),
        ({"name": "bad name", "work_items": []}, "phase name"),
        (
            {"name": "p", "work_items": ["spec", "core", "cli"], "entry_gate": ["nonsense"]},
            "is not one of",
        ),
    ],
)
def test_malformed_phase_entries(phase: dict[str, object], fragment: str) -> None:
    problems = _problems({"phases": [phase]})

    assert any(fragment in problem for problem in problems)


def test_duplicate_phase_names_are_rejected() -> None:
    problems = _problems(
        {
            "phases": [
                {"name": "p", "work_items": ["spec"]},
                {"name": "p", "work_items": ["core", "cli"]},
            ]
        }
    )

    assert "phases[1]: duplicate phase name 'p'" in problems


def test_run_definition_round_trips_through_its_dict_form() -> None:
    definition = build_run_definition(
        [{"id": "spec"}, {"id": "core", "dependencies": ["spec"]}, {"id": "cli", "priority": 2}],
        {
            "phases": [
                {"name": "design", "work_items": ["spec"], "max_in_flight": 1},
                {
                    "name": "build",
                    "work_items": ["core", "cli"],
                    "entry_gate": [{"kind": "checklist", "checklist": "design review"}],
                },
            ]
        },
        run_id="r1",
        max_in_flight=3,
        max_iterations=4,
        created_at=_TS,
    )

    restored = RunDefinition.from_dict(definition.to_dict())

    assert restored == definition
    assert restored.plan_digest == definition.plan_digest
    assert len(definition.plan_digest) == 64
    assert restored.wip_cap(0) == 1
    assert restored.wip_cap(1) == 3
    assert restored.phase_index_of("cli") == 1
    assert restored.phase_names == ("design", "build")


def test_plan_digest_ignores_run_identity() -> None:
    work_items = [{"id": "a"}]
    phases = {"phases": [{"name": "p", "work_items": ["a"]}]}

    first = build_run_definition(
        work_items, phases, run_id="r1", max_in_flight=1, max_iterations=1, created_at=_TS
    )
    second = build_run_definition(
        work_items, phases, run_id="r2", max_in_flight=2, max_iterations=2, created_at=_TS
    )

    assert first.plan_digest == second.plan_digest


@pytest.mark.parametrize(
    "payload",
    [
        {"schema_version": 2},
        {"schema_version": 1, "task_graph": [], "phases": []},
        {"schema_version": 1, "task_graph": {}, "phases": [], "max_in_flight": "4"},
    ],
)
def test_stored_definition_with_wrong_shape_is_refused(payload: dict[str, object]) -> None:
    with pytest.raises(ValueError):
        RunDefinition.from_dict(payload)


def test_limits_must_be_positive() -> None:
    with pytest.raises(ValueError, match="max_iterations"):
        build_run_definition(
            [{"id": "a"}],
            {"phases": [{"name": "p", "work_items": ["a"]}]},
            run_id="r1",
            max_in_flight=1,
            max_iterations=0,
            created_at=_TS,
        )
