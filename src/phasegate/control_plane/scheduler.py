"""Deterministic scheduler: runnable selection under WIP caps and phase advancement."""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from typing import TYPE_CHECKING, Final

from phasegate.domain.errors import InvalidTransition, RunAborted, RunComplete
from phasegate.domain.models import (
    AdvanceOutcome,
    AdvanceResult,
    LedgerEntryKind,
    RunStatus,
    Transition,
    WorkItemState,
)
from phasegate.verification_plane.gates import GateResult, GateVerdict, evaluate

if TYPE_CHECKING:
    from phasegate.control_plane.run_state import RunState
    from phasegate.planning.phases import Phase

SETTLEMENT_GATE: Final[str] = "run.settlement"
SETTLEMENT_REASON: Final[str] = "all WorkItems terminal"
RUN_COMPLETE_STATE: Final[str] = "complete"


@dataclass(frozen=True, slots=True)
class SchedulerLimits:
    """Default WIP cap applied to phases that do not declare their own."""

    max_in_flight: int = 4

    def __post_init__(self) -> None:
        if self.max_in_flight <= 0:
            raise ValueError("max_in_flight must be > 0")


@dataclass(frozen=True, slots=True)
class ScheduleDecision:
    """Scheduler output for one ``NextRunnable`` query."""

    phase: str
    selected: tuple[str, ...]
    runnable: tuple[str, ...]
    in_flight: tuple[str, ...]
    blocked_by_limits: tuple[str, ...]
    entry_gate: GateResult

    @property
    def blocked_reasons(self) -> tuple[str, ...]:
        return self.entry_gate.reasons


@dataclass(frozen=True, slots=True)
class AdvancePlan:
    """Result of an advance attempt plus the ledger transitions it requires."""

    result: AdvanceResult
    transitions: tuple[Transition, ...]


class Scheduler:
    """
    Stateless policy over a :class:`RunState`.

    Nothing here mutates the run; callers commit the returned transitions to the
    ledger and fold the committed entries back in.
    """

    __slots__ = ("_limits",)

    def __init__(self, *, limits: SchedulerLimits | None = None) -> None:
        self._limits = limits if limits is not None else SchedulerLimits()

    @property
    def limits(self) -> SchedulerLimits:
        return self._limits

    def next_runnable(self, state: RunState) -> ScheduleDecision:
        """
        Ready items of reached phases, capped per phase by its WIP limit.

        Lagging items of earlier phases stay eligible. Items of the active phase are
        withheld while its entry gate fails.
        """
        assert_active(state)
        definition = state.definition
        active = state.active_phase_index
        entry_gate = self.entry_gate(state, active)

        candidates: list[tuple[int, int, str]] = []
        for rank, work_item_id in enumerate(state.graph.ready()):
            phase_index = definition.phase_index_of(work_item_id)
            if phase_index > active:
                continue
            if phase_index == active and not entry_gate.passed:
                continue
            candidates.append((phase_index, rank, work_item_id))
        candidates.sort()

        in_flight_by_phase: dict[int, int] = defaultdict(int)
        in_flight: list[str] = []
        for index in range(active + 1):
            live = state.in_flight(definition.phases[index].work_item_ids)
            in_flight_by_phase[index] = len(live)
            in_flight.extend(live)

        selected: list[str] = []
        blocked: list[str] = []
        for phase_index, _, work_item_id in candidates:
            if in_flight_by_phase[phase_index] >= definition.wip_cap(phase_index):
                blocked.append(work_item_id)
                continue
            in_flight_by_phase[phase_index] += 1
            selected.append(work_item_id)

        return ScheduleDecision(
            phase=state.active_phase.name,
            selected=tuple(selected),
            runnable=tuple(item for _, _, item in candidates),
            in_flight=tuple(in_flight),
            blocked_by_limits=tuple(blocked),
            entry_gate=entry_gate,
        )

    def check_start(self, state: RunState, work_item_id: str) -> None:
        """Raise ``InvalidTransition`` unless ``work_item_id`` may enter execution now."""
        assert_active(state)
        state.graph.check_transition(work_item_id, WorkItemState.IN_PROGRESS)

        definition = state.definition
        phase_index = definition.phase_index_of(work_item_id)
        current = state.graph.state_of(work_item_id).value
        requested = WorkItemState.IN_PROGRESS.value
        if phase_index > state.active_phase_index:
            raise InvalidTransition(
                work_item_id,
                current,
                requested,
                detail=f"phase {definition.phases[phase_index].name!r} has not started",
            )
        if phase_index == state.active_phase_index:
            entry_gate = self.entry_gate(state, phase_index)
            if not entry_gate.passed:
                raise InvalidTransition(
                    work_item_id,
                    current,
                    requested,
                    detail="entry gate blocked: " + ", ".join(entry_gate.reasons),
                )
        phase_items = definition.phases[phase_index].work_item_ids
        if len(state.in_flight(phase_items)) >= definition.wip_cap(phase_index):
            raise InvalidTransition(
                work_item_id,
                current,
                requested,
                detail="phase work-in-progress cap reached",
            )

    def plan_advance(self, state: RunState) -> AdvancePlan:
        """
        Evaluate the active phase's exit gate and the next phase's entry gate.

        Both are evaluated every time so a blocked result lists every unmet
        condition. Leaving the final phase through a passing exit gate also
        requires every work item to be terminal. A blocked plan records each
        gate whose verdict changed since its last record, passes included.
        """
        assert_active(state)
        phase = state.active_phase
        exit_gate = _evaluate_phase_gate(state, phase, leaving=True)
        evaluated = [exit_gate]

        next_phase: Phase | None = None
        if not state.is_final_phase:
            next_phase = state.definition.phases[state.active_phase_index + 1]
            evaluated.append(_evaluate_phase_gate(state, next_phase, leaving=False))
        elif exit_gate.passed:
            evaluated.append(_settlement(state))

        failing = [result for result in evaluated if not result.passed]
        if failing:
            reasons = tuple(reason for result in failing for reason in result.reasons)
            transitions = tuple(
                _gate_transition(phase.name, result)
                for result in evaluated
                if _gate_changed(state, phase.name, result)
            )
            return AdvancePlan(
                result=AdvanceResult(
                    outcome=AdvanceOutcome.BLOCKED, from_phase=phase.name, reasons=reasons
                ),
                transitions=transitions,
            )

        if next_phase is None:
            return AdvancePlan(
                result=AdvanceResult(outcome=AdvanceOutcome.COMPLETED, from_phase=phase.name),
                transitions=(
                    Transition(
                        kind=LedgerEntryKind.PHASE,
                        prior_state=phase.name,
                        new_state=RUN_COMPLETE_STATE,
                        outcome=AdvanceOutcome.COMPLETED.value,
                        gate_name=phase.exit_gate.name,
                    ),
                ),
            )
        return AdvancePlan(
            result=AdvanceResult(
                outcome=AdvanceOutcome.ADVANCED,
                from_phase=phase.name,
                to_phase=next_phase.name,
            ),
            transitions=(
                Transition(
                    kind=LedgerEntryKind.PHASE,
                    prior_state=phase.name,
                    new_state=next_phase.name,
                    outcome=AdvanceOutcome.ADVANCED.value,
                    gate_name=phase.exit_gate.name,
                ),
            ),
        )

    def entry_gate(self, state: RunState, phase_index: int) -> GateResult:
        return _evaluate_phase_gate(state, state.definition.phases[phase_index], leaving=False)


def assert_active(state: RunState) -> None:
    if state.status is RunStatus.COMPLETE:
        raise RunComplete(state.run_id)
    if state.status is RunStatus.ABORTED:
        raise RunAborted(state.run_id)


def _evaluate_phase_gate(state: RunState, phase: Phase, *, leaving: bool) -> GateResult:
    gate = phase.exit_gate if leaving else phase.entry_gate
    return evaluate(gate, state.graph.snapshot(), state.entries, scope=phase.work_item_ids)


def _settlement(state: RunState) -> GateResult:
    if state.graph.all_terminal():
        return GateResult(gate_name=SETTLEMENT_GATE, verdict=GateVerdict.PASS)
    return GateResult(
        gate_name=SETTLEMENT_GATE, verdict=GateVerdict.FAIL, reasons=(SETTLEMENT_REASON,)
    )


def _gate_changed(state: RunState, phase_name: str, result: GateResult) -> bool:
    previous = state.last_blocked_reasons(phase_name, result.gate_name)
    if result.passed:
        return previous is not None
    return previous != result.reasons


def _gate_transition(phase_name: str, result: GateResult) -> Transition:
    return Transition(
        kind=LedgerEntryKind.GATE,
        prior_state=phase_name,
        new_state=phase_name,
        outcome=AdvanceOutcome.BLOCKED.value if not result.passed else GateVerdict.PASS.value,
        gate_name=result.gate_name,
        reasons=result.reasons,
    )


__all__ = [
    "RUN_COMPLETE_STATE",
    "SETTLEMENT_GATE",
    "SETTLEMENT_REASON",
    "AdvancePlan",
    "ScheduleDecision",
    "Scheduler",
    "SchedulerLimits",
    "assert_active",
]
