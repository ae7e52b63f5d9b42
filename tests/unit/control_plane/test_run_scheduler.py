"""Scheduler selection under WIP caps, entry gates, and phase advancement."""

from __future__ import annotations

from collections.abc import Iterable, Sequence

import pytest

from phasegate.control_plane.cycle import Cycle
from phasegate.control_plane.run_state import RunState
from phasegate.control_plane.scheduler import (
    RUN_COMPLETE_STATE,
    SETTLEMENT_GATE,
    SETTLEMENT_REASON,
    Scheduler,
    SchedulerLimits,
)
from phasegate.domain.errors import InvalidTransition, RunAborted, RunComplete
from phasegate.domain.models import (
    AdvanceOutcome,
    CycleEvent,
    LedgerEntry,
    LedgerEntryKind,
    Transition,
)
from phasegate.planning.phases import build_run_definition

from . import BASE_TS, HAPPY_PATH


def _state(
    work_items: Sequence[dict[str, object]],
    phases: Sequence[dict[str, object]],
    *,
    max_in_flight: int = 4,
) -> RunState:
    definition = build_run_definition(
        list(work_items),
        {"phases": list(phases)},
        run_id="r1",
        max_in_flight=max_in_flight,
        max_iterations=5,
        created_at=BASE_TS,
    )
    return RunState(definition)


def _commit(state: RunState, transitions: Iterable[Transition]) -> None:
    for transition in transitions:
        state.apply(
            LedgerEntry.from_transition(
                transition,
                ordinal=state.last_ordinal + 1,
                run_id=state.run_id,
                timestamp=BASE_TS,
            )
        )


def _checklist(name: str, new: str, *, prior: str = "unreported") -> Transition:
    return Transition(
        kind=LedgerEntryKind.CHECKLIST,
        prior_state=prior,
        new_state=new,
        outcome="reported",
        gate_name=name,
    )


def _drive(state: RunState, work_item_id: str, events: Iterable[CycleEvent]) -> None:
    cycle = Cycle(work_item_id)
    _commit(state, (cycle.advance(event).to_transition() for event in events))


def test_wip_cap_one_releases_dependent_after_parent_is_done() -> None:
    state = _state(
        [{"id": "B1"}, {"id": "B2", "dependencies": ["B1"]}],
        [{"name": "build", "work_items": ["B1", "B2"]}],
        max_in_flight=1,
    )
    scheduler = Scheduler()

    assert scheduler.next_runnable(state).selected == ("B1",)

    _drive(state, "B1", HAPPY_PATH)

    assert scheduler.next_runnable(state).selected == ("B2",)


def test_independent_items_are_selected_together_under_cap_two() -> None:
    state = _state(
        [{"id": "B1"}, {"id": "B2"}],
        [{"name": "build", "work_items": ["B1", "B2"]}],
        max_in_flight=2,
    )

    decision = Scheduler().next_runnable(state)

    assert decision.selected == ("B1", "B2")
    assert decision.blocked_by_limits == ()


def test_in_flight_items_count_against_the_cap() -> None:
    state = _state(
        [{"id": "a"}, {"id": "b"}, {"id": "c"}],
        [{"name": "main", "work_items": ["a", "b", "c"]}],
        max_in_flight=2,
    )
    _drive(state, "a", [CycleEvent.PLAN_PRODUCED])

    decision = Scheduler().next_runnable(state)

    assert decision.in_flight == ("a",)
    assert decision.runnable == ("b", "c")
    assert decision.selected == ("b",)
    assert decision.blocked_by_limits == ("c",)


def test_per_phase_cap_overrides_the_run_default() -> None:
    state = _state(
        [{"id": "a"}, {"id": "b"}, {"id": "c"}],
        [{"name": "main", "work_items": ["a", "b", "c"], "max_in_flight": 1}],
        max_in_flight=3,
    )

    assert Scheduler().next_runnable(state).selected == ("a",)


def test_selection_prefers_higher_priority_then_declaration_order() -> None:
    state = _state(
        [{"id": "low"}, {"id": "high", "priority": 5}, {"id": "mid", "priority": 1}],
        [{"name": "main", "work_items": ["low", "high", "mid"]}],
    )

    assert Scheduler().next_runnable(state).selected == ("high", "mid", "low")


def test_later_phase_items_are_not_offered_before_their_phase() -> None:
    state = _state(
        [{"id": "a"}, {"id": "b"}],
        [
            {"name": "one", "work_items": ["a"]},
            {"name": "two", "work_items": ["b"]},
        ],
    )

    decision = Scheduler().next_runnable(state)

    assert decision.phase == "one"
    assert decision.selected == ("a",)


def test_failing_entry_gate_withholds_active_phase_items() -> None:
    state = _state(
        [{"id": "a"}],
        [
            {
                "name": "main",
                "work_items": ["a"],
                "entry_gate": [{"kind": "checklist", "checklist": "kickoff"}],
            }
        ],
    )
    scheduler = Scheduler()

    blocked = scheduler.next_runnable(state)
    assert blocked.selected == ()
    assert blocked.blocked_reasons == ("checklist passed: kickoff",)

    _commit(
        state,
        [
            Transition(
                kind=LedgerEntryKind.CHECKLIST,
                prior_state="unreported",
                new_state="passed",
                outcome="reported",
                gate_name="kickoff",
            )
        ],
    )
    assert scheduler.next_runnable(state).selected == ("a",)


def test_lagging_items_of_earlier_phase_stay_schedulable() -> None:
    state = _state(
        [{"id": "a"}, {"id": "late"}, {"id": "b"}],
        [
            {"name": "one", "work_items": ["a", "late"], "exit_gate": ["none_abandoned"]},
            {"name": "two", "work_items": ["b"]},
        ],
    )
    scheduler = Scheduler()
    plan = scheduler.plan_advance(state)
    _commit(state, plan.transitions)

    decision = scheduler.next_runnable(state)

    assert state.active_phase.name == "two"
    assert decision.selected == ("a", "late", "b")


def test_check_start_rejects_item_of_unreached_phase() -> None:
    state = _state(
        [{"id": "a"}, {"id": "b"}],
        [{"name": "one", "work_items": ["a"]}, {"name": "two", "work_items": ["b"]}],
    )

    with pytest.raises(InvalidTransition, match="has not started"):
        Scheduler().check_start(state, "b")


def test_check_start_rejects_item_past_wip_cap() -> None:
    state = _state(
        [{"id": "a"}, {"id": "b"}],
        [{"name": "main", "work_items": ["a", "b"]}],
        max_in_flight=1,
    )
    _drive(state, "a", [CycleEvent.PLAN_PRODUCED])

    with pytest.raises(InvalidTransition, match="work-in-progress cap"):
        Scheduler().check_start(state, "b")


def test_check_start_rejects_unfinished_dependencies() -> None:
    state = _state(
        [{"id": "a"}, {"id": "b", "dependencies": ["a"]}],
        [{"name": "main", "work_items": ["a", "b"]}],
    )

    with pytest.raises(InvalidTransition, match="dependencies not done: a"):
        Scheduler().check_start(state, "b")


def test_blocked_advance_lists_exit_and_next_entry_reasons() -> None:
    state = _state(
        [{"id": "a"}, {"id": "b"}],
        [
            {"name": "one", "work_items": ["a"]},
            {
                "name": "two",
                "work_items": ["b"],
                "entry_gate": {
                    "name": "two.ready",
                    "conditions": [{"kind": "checklist", "checklist": "signoff"}],
                },
            },
        ],
    )

    plan = Scheduler().plan_advance(state)

    assert plan.result.outcome is AdvanceOutcome.BLOCKED
    assert plan.result.from_phase == "one"
    assert plan.result.reasons == ("all WorkItems Done", "checklist passed: signoff")
    assert [item.gate_name for item in plan.transitions] == ["one.exit", "two.ready"]
    assert all(item.kind is LedgerEntryKind.GATE for item in plan.transitions)


def test_repeated_blocked_advance_writes_gate_entries_only_when_reasons_change() -> None:
    state = _state([{"id": "a"}], [{"name": "one", "work_items": ["a"]}])
    scheduler = Scheduler()

    first = scheduler.plan_advance(state)
    _commit(state, first.transitions)
    second = scheduler.plan_advance(state)

    assert [item.gate_name for item in first.transitions] == ["one.exit"]
    assert first.result.reasons == ("all WorkItems Done",)
    assert second.transitions == ()
    assert second.result.reasons == first.result.reasons


def test_cleared_gate_is_recorded_so_a_later_block_is_logged_again() -> None:
    state = _state(
        [{"id": "a"}, {"id": "b"}],
        [
            {"name": "one", "work_items": ["a"]},
            {
                "name": "two",
                "work_items": ["b"],
                "entry_gate": [{"kind": "checklist", "checklist": "signoff"}],
            },
        ],
    )
    scheduler = Scheduler()
    _commit(state, scheduler.plan_advance(state).transitions)
    _commit(state, [_checklist("signoff", "passed")])

    cleared = scheduler.plan_advance(state)
    _commit(state, cleared.transitions)

    assert [(item.gate_name, item.outcome) for item in cleared.transitions] == [
        ("two.entry", "pass")
    ]
    assert state.last_blocked_reasons("one", "two.entry") is None
    assert state.last_blocked_reasons("one", "one.exit") == ("all WorkItems Done",)

    _commit(state, [_checklist("signoff", "failed", prior="passed")])
    reblocked = scheduler.plan_advance(state)

    assert [(item.gate_name, item.outcome) for item in reblocked.transitions] == [
        ("two.entry", "blocked")
    ]


def test_final_phase_requires_every_item_terminal() -> None:
    state = _state(
        [{"id": "a"}, {"id": "b"}],
        [
            {"name": "one", "work_items": ["a"], "exit_gate": []},
            {"name": "two", "work_items": ["b"], "exit_gate": []},
        ],
    )
    scheduler = Scheduler()
    _commit(state, scheduler.plan_advance(state).transitions)

    plan = scheduler.plan_advance(state)

    assert plan.result.outcome is AdvanceOutcome.BLOCKED
    assert plan.result.reasons == (SETTLEMENT_REASON,)
    assert plan.transitions[0].gate_name == SETTLEMENT_GATE


def test_final_phase_completes_the_run() -> None:
    state = _state([{"id": "a"}], [{"name": "only", "work_items": ["a"]}])
    scheduler = Scheduler()
    _drive(state, "a", HAPPY_PATH)

    plan = scheduler.plan_advance(state)
    _commit(state, plan.transitions)

    assert plan.result.outcome is AdvanceOutcome.COMPLETED
    assert plan.result.advanced
    assert plan.transitions[0].new_state == RUN_COMPLETE_STATE
    with pytest.raises(RunComplete):
        scheduler.next_runnable(state)


def test_aborted_run_rejects_scheduling() -> None:
    state = _state([{"id": "a"}], [{"name": "only", "work_items": ["a"]}])
    _commit(
        state,
        [
            Transition(
                kind=LedgerEntryKind.RUN,
                prior_state="active",
                new_state="aborted",
                outcome="aborted",
            )
        ],
    )

    with pytest.raises(RunAborted):
        Scheduler().plan_advance(state)


def test_limits_reject_non_positive_caps() -> None:
    with pytest.raises(ValueError, match="max_in_flight"):
        SchedulerLimits(max_in_flight=0)
