"""Gate condition parsing and pure evaluation over graph and ledger snapshots."""

from __future__ import annotations

from datetime import UTC, datetime

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from phasegate.domain.errors import CYCLE_BUDGET_EXCEEDED
from phasegate.domain.models import (
    ChecklistStatus,
    LedgerEntry,
    LedgerEntryKind,
    VerificationStatus,
    WorkItemState,
)
from phasegate.verification_plane.gates import (
    ConditionKind,
    Gate,
    GateVerdict,
    derive_checklist_status,
    derive_verification_status,
    evaluate,
    parse_condition,
    parse_gate,
)

_TS = datetime(2026, 2, 1, 12, 0, 0, tzinfo=UTC)


def _cycle(ordinal: int, item: str, outcome: str, *reasons: str) -> LedgerEntry:
    return LedgerEntry(
        ordinal=ordinal,
        run_id="r1",
        kind=LedgerEntryKind.CYCLE,
        prior_state="verifying",
        new_state="drafting",
        outcome=outcome,
        timestamp=_TS,
        work_item_id=item,
        reasons=reasons,
    )


def _checklist(ordinal: int, name: str, status: ChecklistStatus) -> LedgerEntry:
    return LedgerEntry(
        ordinal=ordinal,
        run_id="r1",
        kind=LedgerEntryKind.CHECKLIST,
        prior_state="unreported",
        new_state=status.value,
        outcome=status.value,
        timestamp=_TS,
        gate_name=name,
    )


def _gate(*conditions: object) -> Gate:
    return parse_gate(list(conditions), default_name="p.exit", path="gate")


def test_empty_gate_passes() -> None:
    result = evaluate(Gate(name="p.entry"), {"a": WorkItemState.PENDING}, [])

    assert result.passed
    assert result.gate_name == "p.entry"
    assert result.reasons == ()


def test_all_unmet_conditions_are_listed_in_declaration_order() -> None:
    gate = _gate(
        "all_done",
        {"kind": "checklist", "checklist": "signoff"},
        "none_abandoned",
        "all_terminal",
    )
    graph = {"a": WorkItemState.DONE, "b": WorkItemState.IN_PROGRESS}

    result = evaluate(gate, graph, [])

    assert result.verdict is GateVerdict.FAIL
    assert result.reasons == (
        "all WorkItems Done",
        "checklist passed: signoff",
        "all WorkItems terminal",
    )


def test_abandoned_item_is_terminal_but_not_done() -> None:
    graph = {"a": WorkItemState.DONE, "b": WorkItemState.ABANDONED}

    assert evaluate(_gate("all_terminal"), graph, []).passed
    assert evaluate(_gate("none_abandoned"), graph, []).reasons == ("no WorkItem Abandoned",)
    assert evaluate(_gate("all_done"), graph, []).reasons == ("all WorkItems Done",)


def test_scope_limits_phase_wide_conditions() -> None:
    graph = {"a": WorkItemState.DONE, "b": WorkItemState.PENDING}

    assert evaluate(_gate("all_done"), graph, [], scope=["a"]).passed
    assert not evaluate(_gate("all_done"), graph, []).passed


def test_items_done_checks_only_named_items() -> None:
    gate = _gate({"kind": "items_done", "work_items": ["a", "c"]})

    result = evaluate(gate, {"a": WorkItemState.DONE, "b": WorkItemState.DONE}, [])

    assert result.reasons == ("WorkItems Done: a, c",)
    assert gate.referenced_work_items == ("a", "c")


def test_latest_verification_outcome_wins() -> None:
    gate = _gate("no_failing_verification")
    graph = {"a": WorkItemState.IN_PROGRESS}
    failed = [_cycle(1, "a", "verification_failed")]
    recovered = [*failed, _cycle(2, "a", "verification_passed")]

    assert evaluate(gate, graph, failed).reasons == ("no failing verification",)
    assert evaluate(gate, graph, recovered).passed
    assert derive_verification_status(recovered) == {"a": VerificationStatus.PASSED}


def test_budget_exhaustion_reads_the_triggering_event() -> None:
    ledger = [_cycle(1, "a", CYCLE_BUDGET_EXCEEDED, "verification_failed")]

    assert derive_verification_status(ledger) == {"a": VerificationStatus.FAILED}


def test_checklist_status_tracks_the_latest_report() -> None:
    ledger = [
        _checklist(1, "signoff", ChecklistStatus.FAILED),
        _checklist(2, "signoff", ChecklistStatus.PASSED),
        _checklist(3, "security", ChecklistStatus.FAILED),
    ]
    gate = _gate({"kind": "checklist", "checklist": "signoff"})

    assert derive_checklist_status(ledger) == {
        "signoff": ChecklistStatus.PASSED,
        "security": ChecklistStatus.FAILED,
    }
    assert evaluate(gate, {}, ledger).passed
    assert not evaluate(gate, {}, ledger[:1]).passed


def test_bare_condition_sequence_is_evaluated_without_a_name() -> None:
    conditions = [parse_condition("all_done", "c")]

    result = evaluate(conditions, {"a": WorkItemState.PENDING}, [])

    assert result.gate_name == ""
    assert result.reasons == ("all WorkItems Done",)


def test_custom_names_and_gate_object_form() -> None:
    gate = parse_gate(
        {"name": "ship-it", "conditions": [{"kind": "all_done", "name": "everything built"}]},
        default_name="p.exit",
        path="gate",
    )

    assert gate.name == "ship-it"
    assert gate.conditions[0].kind is ConditionKind.ALL_DONE
    assert evaluate(gate, {"a": WorkItemState.PENDING}, []).reasons == ("everything built",)
    assert gate.to_dict() == {
        "name": "ship-it",
        "conditions": [{"kind": "all_done", "name": "everything built"}],
    }


def test_null_gate_is_empty() -> None:
    assert parse_gate(None, default_name="p.entry", path="gate") == Gate(name="p.entry")


@pytest.mark.parametrize(
    ("raw", "fragment"),
    [
        (42, "expected condition object or kind string"),
        ({"kind": "sometimes"}, "is not one of"),
        ({"kind": "all_done", "extra": 1}, "unexpected fields"),
        ({"kind": "items_done", "work_items": []}, "non-empty list"),
        ({"kind": "checklist", "checklist": "  "}, "needs an item name"),
        ({"kind": "all_done", "work_items": ["a"]}, "not used by all_done"),
        ({"kind": "all_done", "name": ""}, "non-empty string"),
    ],
)
def test_malformed_conditions(raw: object, fragment: str) -> None:
    with pytest.raises(ValueError, match=fragment):
        parse_condition(raw, "gate.conditions[0]")


def test_malformed_gates() -> None:
    with pytest.raises(ValueError, match="duplicate condition names"):
        _gate("all_done", "all_done")
    with pytest.raises(ValueError, match="expected a list of conditions"):
        parse_gate("all_done", default_name="p.exit", path="gate")
    with pytest.raises(ValueError, match="unexpected fields"):
        parse_gate({"when": "now"}, default_name="p.exit", path="gate")


_STATES = st.sampled_from(list(WorkItemState))


@given(
    states=st.dictionaries(
        st.sampled_from(["a", "b", "c", "d"]), _STATES, min_size=1, max_size=4
    )
)
@settings(max_examples=100, derandomize=True, deadline=None)
def test_evaluation_is_pure_and_reasons_match_failing_conditions(
    states: dict[str, WorkItemState],
) -> None:
    gate = _gate("all_done", "all_terminal", "none_abandoned")

    first = evaluate(gate, states, [])
    second = evaluate(gate, dict(states), [])

    assert first == second
    expected = tuple(
        condition.name
        for condition, holds in zip(
            gate.conditions,
            (
                all(state is WorkItemState.DONE for state in states.values()),
                all(
                    state in (WorkItemState.DONE, WorkItemState.ABANDONED)
                    for state in states.values()
                ),
                all(state is not WorkItemState.ABANDONED for state in states.values()),
            ),
            strict=True,
        )
        if not holds
    )
    assert first.reasons == expected
    assert first.passed is (expected == ())
