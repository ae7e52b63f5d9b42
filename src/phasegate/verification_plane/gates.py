"""
phasegate — gate evaluator.

Purpose
- Decides whether a phase entry or exit gate is satisfied for a given graph state and
  ledger history.

Functional requirements
- Every condition is evaluated; a failure lists all unmet condition names in
  declaration order, never only the first.
- An empty condition set passes.
- Evaluation is pure: the same snapshots always give the same result, so replaying a
  ledger reproduces every historical gate decision.

Non-functional requirements
- Deterministic output ordering.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from enum import StrEnum
from typing import Final

from phasegate.domain.errors import CYCLE_BUDGET_EXCEEDED
from phasegate.domain.models import (
    TERMINAL_WORK_ITEM_STATES,
    ChecklistStatus,
    CycleEvent,
    LedgerEntry,
    LedgerEntryKind,
    VerificationStatus,
    WorkItemState,
)


class ConditionKind(StrEnum):
    ALL_DONE = "all_done"
    ALL_TERMINAL = "all_terminal"
    NONE_ABANDONED = "none_abandoned"
    NO_FAILING_VERIFICATION = "no_failing_verification"
    ITEMS_DONE = "items_done"
    CHECKLIST = "checklist"


class GateVerdict(StrEnum):
    PASS = "pass"
    FAIL = "fail"


DEFAULT_CONDITION_NAMES: Final[Mapping[ConditionKind, str]] = {
    ConditionKind.ALL_DONE: "all WorkItems Done",
    ConditionKind.ALL_TERMINAL: "all WorkItems terminal",
    ConditionKind.NONE_ABANDONED: "no WorkItem Abandoned",
    ConditionKind.NO_FAILING_VERIFICATION: "no failing verification",
}

_VERIFICATION_BY_EVENT: Final[Mapping[str, VerificationStatus]] = {
    CycleEvent.VERIFICATION_FAILED.value: VerificationStatus.FAILED,
    CycleEvent.VERIFICATION_PASSED.value: VerificationStatus.PASSED,
    CycleEvent.VERIFICATION_COMPLETED.value: VerificationStatus.PASSED,
}


@dataclass(frozen=True, slots=True)
class GateContext:
    """Everything a condition may look at, already narrowed to one phase."""

    scope: tuple[str, ...]
    states: Mapping[str, WorkItemState]
    verification: Mapping[str, VerificationStatus]
    checklist: Mapping[str, ChecklistStatus]

    @classmethod
    def from_snapshots(
        cls,
        graph: Mapping[str, WorkItemState],
        ledger: Sequence[LedgerEntry],
        *,
        scope: Iterable[str] | None = None,
    ) -> GateContext:
        return cls(
            scope=tuple(graph) if scope is None else tuple(scope),
            states=graph,
            verification=derive_verification_status(ledger),
            checklist=derive_checklist_status(ledger),
        )

    def state(self, work_item_id: str) -> WorkItemState:
        return self.states.get(work_item_id, WorkItemState.PENDING)


@dataclass(frozen=True, slots=True)
class GateCondition:
    """One named predicate. ``work_item_ids``/``checklist`` are used by some kinds only."""

    kind: ConditionKind
    name: str
    work_item_ids: tuple[str, ...] = ()
    checklist: str | None = None

    def holds(self, context: GateContext) -> bool:
        if self.kind is ConditionKind.ALL_DONE:
            return all(context.state(item) is WorkItemState.DONE for item in context.scope)
        if self.kind is ConditionKind.ALL_TERMINAL:
            return all(context.state(item) in TERMINAL_WORK_ITEM_STATES for item in context.scope)
        if self.kind is ConditionKind.NONE_ABANDONED:
            return all(context.state(item) is not WorkItemState.ABANDONED for item in context.scope)
        if self.kind is ConditionKind.NO_FAILING_VERIFICATION:
            return all(
                context.verification.get(item) is not VerificationStatus.FAILED
                for item in context.scope
            )
        if self.kind is ConditionKind.ITEMS_DONE:
            return all(context.state(item) is WorkItemState.DONE for item in self.work_item_ids)
        assert self.checklist is not None
        return context.checklist.get(self.checklist) is ChecklistStatus.PASSED

    def to_dict(self) -> dict[str, object]:
        payload: dict[str, object] = {"kind": self.kind.value, "name": self.name}
        if self.work_item_ids:
            payload["work_items"] = list(self.work_item_ids)
        if self.checklist is not None:
            payload["checklist"] = self.checklist
        return payload


@dataclass(frozen=True, slots=True)
class Gate:
    name: str
    conditions: tuple[GateCondition, ...] = ()

    @property
    def referenced_work_items(self) -> tuple[str, ...]:
        seen: dict[str, None] = {}
        for condition in self.conditions:
            for item in condition.work_item_ids:
                seen[item] = None
        return tuple(seen)

    def to_dict(self) -> dict[str, object]:
        return {"name": self.name, "conditions": [item.to_dict() for item in self.conditions]}


@dataclass(frozen=True, slots=True)
class GateResult:
    gate_name: str
    verdict: GateVerdict
    reasons: tuple[str, ...] = ()

    @property
    def passed(self) -> bool:
        return self.verdict is GateVerdict.PASS


def evaluate(
    gate: Gate | Sequence[GateCondition],
    graph: Mapping[str, WorkItemState],
    ledger: Sequence[LedgerEntry],
    *,
    scope: Iterable[str] | None = None,
) -> GateResult:
    """Evaluate every condition against the snapshots and return pass or fail(reasons)."""

    if isinstance(gate, Gate):
        name, conditions = gate.name, gate.conditions
    else:
        name, conditions = "", tuple(gate)
    context = GateContext.from_snapshots(graph, ledger, scope=scope)
    unmet = tuple(condition.name for condition in conditions if not condition.holds(context))
    if unmet:
        return GateResult(gate_name=name, verdict=GateVerdict.FAIL, reasons=unmet)
    return GateResult(gate_name=name, verdict=GateVerdict.PASS)


def derive_verification_status(ledger: Iterable[LedgerEntry]) -> dict[str, VerificationStatus]:
    """Last-known verification outcome per work item, read from cycle entries."""

    status: dict[str, VerificationStatus] = {}
    for entry in ledger:
        if entry.kind is not LedgerEntryKind.CYCLE or entry.work_item_id is None:
            continue
        event = entry.outcome
        if event == CYCLE_BUDGET_EXCEEDED and entry.reasons:
            event = entry.reasons[0]
        verdict = _VERIFICATION_BY_EVENT.get(event)
        if verdict is not None:
            status[entry.work_item_id] = verdict
    return status


def derive_checklist_status(ledger: Iterable[LedgerEntry]) -> dict[str, ChecklistStatus]:
    """Latest reported result per checklist item."""

    status: dict[str, ChecklistStatus] = {}
    for entry in ledger:
        if entry.kind is LedgerEntryKind.CHECKLIST and entry.gate_name is not None:
            status[entry.gate_name] = ChecklistStatus(entry.new_state)
    return status


def parse_condition(raw: object, path: str) -> GateCondition:
    """Parse ``"all_done"`` shorthand or ``{"kind": ..., "name": ...}`` objects."""

    if isinstance(raw, str):
        raw = {"kind": raw}
    if not isinstance(raw, Mapping):
        raise ValueError(f"{path}: expected condition object or kind string")
    unknown = sorted(set(raw) - {"kind", "name", "work_items", "checklist"})
    if unknown:
        raise ValueError(f"{path}: unexpected fields: {unknown}")

    kind_raw = raw.get("kind")
    try:
        kind = ConditionKind(kind_raw)
    except ValueError:
        allowed = ", ".join(item.value for item in ConditionKind)
        raise ValueError(f"{path}.kind: {kind_raw!r} is not one of: {allowed}") from None

    work_items: tuple[str, ...] = ()
    checklist: str | None = None
    if kind is ConditionKind.ITEMS_DONE:
        raw_items = raw.get("work_items")
        if (
            not isinstance(raw_items, (list, tuple))
            or not raw_items
            or not all(isinstance(item, str) and item for item in raw_items)
        ):
            raise ValueError(f"{path}.work_items: items_done needs a non-empty list of ids")
        work_items = tuple(dict.fromkeys(raw_items))
        default_name = "WorkItems Done: " + ", ".join(work_items)
    elif kind is ConditionKind.CHECKLIST:
        raw_checklist = raw.get("checklist")
        if not isinstance(raw_checklist, str) or not raw_checklist.strip():
            raise ValueError(f"{path}.checklist: checklist condition needs an item name")
        checklist = raw_checklist.strip()
        default_name = f"checklist passed: {checklist}"
    else:
        for field_name in ("work_items", "checklist"):
            if field_name in raw:
                raise ValueError(f"{path}.{field_name}: not used by {kind.value} conditions")
        default_name = DEFAULT_CONDITION_NAMES[kind]

    name = raw.get("name", default_name)
    if not isinstance(name, str) or not name.strip():
        raise ValueError(f"{path}.name: expected non-empty string")
    return GateCondition(
        kind=kind, name=name.strip(), work_item_ids=work_items, checklist=checklist
    )


def parse_gate(raw: object, *, default_name: str, path: str) -> Gate:
    """Parse a gate given as null, a list of conditions, or ``{name, conditions}``."""

    if raw is None:
        return Gate(name=default_name)
    name = default_name
    raw_conditions: object = raw
    if isinstance(raw, Mapping):
        unknown = sorted(set(raw) - {"name", "conditions"})
        if unknown:
            raise ValueError(f"{path}: unexpected fields: {unknown}")
        raw_name = raw.get("name", default_name)
        if not isinstance(raw_name, str) or not raw_name.strip():
            raise ValueError(f"{path}.name: expected non-empty string")
        name = raw_name.strip()
        raw_conditions = raw.get("conditions", ())
    if not isinstance(raw_conditions, (list, tuple)):
        raise ValueError(f"{path}: expected a list of conditions")

    conditions = tuple(
        parse_condition(item, f"{path}.conditions[{index}]")
        for index, item in enumerate(raw_conditions)
    )
    names = [condition.name for condition in conditions]
    duplicates = sorted({item for item in names if names.count(item) > 1})
    if duplicates:
        raise ValueError(f"{path}: duplicate condition names: {duplicates}")
    return Gate(name=name, conditions=conditions)


__all__ = [
    "DEFAULT_CONDITION_NAMES",
    "ConditionKind",
    "Gate",
    "GateCondition",
    "GateContext",
    "GateResult",
    "GateVerdict",
    "derive_checklist_status",
    "derive_verification_status",
    "evaluate",
    "parse_condition",
    "parse_gate",
]
