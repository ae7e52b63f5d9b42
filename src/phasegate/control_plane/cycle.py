"""Per-work-item plan/draft/verify/improve state machine."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Final

from phasegate.domain.errors import CYCLE_BUDGET_EXCEEDED, IllegalCycleTransition
from phasegate.domain.models import (
    TERMINAL_CYCLE_STATES,
    CycleEvent,
    CycleState,
    LedgerEntry,
    LedgerEntryKind,
    Transition,
)

TRANSITIONS: Final[Mapping[tuple[CycleState, CycleEvent], CycleState]] = {
    (CycleState.PLANNING, CycleEvent.PLAN_PRODUCED): CycleState.DRAFTING,
    (CycleState.DRAFTING, CycleEvent.ARTIFACT_PRODUCED): CycleState.VERIFYING,
    (CycleState.VERIFYING, CycleEvent.VERIFICATION_FAILED): CycleState.DRAFTING,
    (CycleState.VERIFYING, CycleEvent.VERIFICATION_PASSED): CycleState.PLANNING,
    (CycleState.VERIFYING, CycleEvent.VERIFICATION_COMPLETED): CycleState.IMPROVING,
    (CycleState.IMPROVING, CycleEvent.IMPROVEMENT_APPLIED): CycleState.IMPROVING,
    (CycleState.IMPROVING, CycleEvent.IMPROVEMENT_STOPPED): CycleState.DONE,
}

# Events that send the cycle around again; each one spends one unit of budget.
LOOP_BACK_EVENTS: Final[frozenset[CycleEvent]] = frozenset(
    {
        CycleEvent.VERIFICATION_FAILED,
        CycleEvent.VERIFICATION_PASSED,
        CycleEvent.IMPROVEMENT_APPLIED,
    }
)
_LOOP_BACK_OUTCOMES: Final[frozenset[str]] = frozenset(event.value for event in LOOP_BACK_EVENTS)

DEFAULT_MAX_ITERATIONS: Final[int] = 5


@dataclass(frozen=True, slots=True)
class CycleStep:
    """Outcome of planning one event; nothing has been applied yet."""

    work_item_id: str
    event: CycleEvent
    prior: CycleState
    new: CycleState
    iterations: int
    budget_exceeded: bool = False

    @property
    def outcome(self) -> str:
        return CYCLE_BUDGET_EXCEEDED if self.budget_exceeded else self.event.value

    def to_transition(self, *, outcome: str | None = None) -> Transition:
        return Transition(
            kind=LedgerEntryKind.CYCLE,
            work_item_id=self.work_item_id,
            prior_state=self.prior.value,
            new_state=self.new.value,
            outcome=self.outcome if outcome is None else outcome,
            reasons=(self.event.value,) if self.budget_exceeded else (),
        )


class Cycle:
    """
    Cycle for one work item.

    ``plan`` is pure and raises ``IllegalCycleTransition`` without touching state;
    ``advance`` plans and applies. Loop-backs beyond ``max_iterations`` turn into a
    terminal ``Abandoned`` step whose outcome is ``CycleBudgetExceeded``.
    """

    __slots__ = ("work_item_id", "state", "iterations", "max_iterations")

    def __init__(
        self,
        work_item_id: str,
        *,
        max_iterations: int = DEFAULT_MAX_ITERATIONS,
        state: CycleState = CycleState.PLANNING,
        iterations: int = 0,
    ) -> None:
        if max_iterations < 1:
            raise ValueError("max_iterations must be >= 1")
        self.work_item_id = work_item_id
        self.state = state
        self.iterations = iterations
        self.max_iterations = max_iterations

    def __repr__(self) -> str:
        return (
            f"Cycle({self.work_item_id!r}, state={self.state.value}, "
            f"iterations={self.iterations}/{self.max_iterations})"
        )

    @property
    def terminal(self) -> bool:
        return self.state in TERMINAL_CYCLE_STATES

    def plan(self, event: CycleEvent) -> CycleStep:
        if self.terminal:
            raise IllegalCycleTransition(self.work_item_id, self.state.value, event.value)
        if event is CycleEvent.ABORT:
            return CycleStep(
                work_item_id=self.work_item_id,
                event=event,
                prior=self.state,
                new=CycleState.ABANDONED,
                iterations=self.iterations,
            )

        target = TRANSITIONS.get((self.state, event))
        if target is None:
            raise IllegalCycleTransition(self.work_item_id, self.state.value, event.value)
        if event in LOOP_BACK_EVENTS:
            if self.iterations + 1 > self.max_iterations:
                return CycleStep(
                    work_item_id=self.work_item_id,
                    event=event,
                    prior=self.state,
                    new=CycleState.ABANDONED,
                    iterations=self.iterations,
                    budget_exceeded=True,
                )
            return CycleStep(
                work_item_id=self.work_item_id,
                event=event,
                prior=self.state,
                new=target,
                iterations=self.iterations + 1,
            )
        return CycleStep(
            work_item_id=self.work_item_id,
            event=event,
            prior=self.state,
            new=target,
            iterations=self.iterations,
        )

    def advance(self, event: CycleEvent) -> CycleStep:
        step = self.plan(event)
        self.state = step.new
        self.iterations = step.iterations
        return step

    def record(self, entry: LedgerEntry) -> None:
        """Fold one committed cycle entry into this instance."""
        self.state = CycleState(entry.new_state)
        if entry.outcome in _LOOP_BACK_OUTCOMES:
            self.iterations += 1


__all__ = [
    "DEFAULT_MAX_ITERATIONS",
    "LOOP_BACK_EVENTS",
    "TRANSITIONS",
    "Cycle",
    "CycleStep",
]
