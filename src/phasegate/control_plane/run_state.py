"""
Run state as a pure fold over ledger entries.

The live coordinator and crash recovery share :meth:`RunState.apply`: an operation
first computes its transitions, the ledger commits them, and only the committed
entries are folded in. Folding skips ordinals already applied, so replaying any
prefix of a ledger any number of times yields the same state.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from datetime import datetime

from phasegate.control_plane.cycle import Cycle
from phasegate.domain.errors import LedgerIntegrityError, PhasegateError
from phasegate.domain.models import (
    AdvanceOutcome,
    ChecklistStatus,
    CycleState,
    LedgerEntry,
    LedgerEntryKind,
    RunStatus,
    RunStatusReport,
    VerificationStatus,
    WorkItemState,
    WorkItemStatus,
)
from phasegate.planning.phases import Phase, RunDefinition
from phasegate.planning.task_graph import TaskGraph
from phasegate.verification_plane.gates import (
    derive_checklist_status,
    derive_verification_status,
)

_ITEM_STATE_BY_CYCLE: Mapping[CycleState, WorkItemState] = {
    CycleState.DONE: WorkItemState.DONE,
    CycleState.ABANDONED: WorkItemState.ABANDONED,
}


@dataclass(frozen=True, slots=True)
class RunSnapshot:
    """Comparable summary of everything the fold produces."""

    status: RunStatus
    active_phase_index: int
    work_items: dict[str, WorkItemState]
    cycles: dict[str, tuple[CycleState, int]]
    ledger_length: int


class RunState:
    __slots__ = (
        "definition",
        "graph",
        "entries",
        "active_phase_index",
        "status",
        "_cycles",
        "_archived",
        "_blocked",
    )

    def __init__(self, definition: RunDefinition) -> None:
        self.definition = definition
        self.graph: TaskGraph = definition.new_graph()
        self.entries: list[LedgerEntry] = []
        self.active_phase_index = 0
        self.status = RunStatus.ACTIVE
        self._cycles: dict[str, Cycle] = {}
        self._archived: dict[str, Cycle] = {}
        self._blocked: dict[tuple[str, str], tuple[str, ...]] = {}

    @property
    def run_id(self) -> str:
        return self.definition.run_id

    @property
    def last_ordinal(self) -> int:
        return self.entries[-1].ordinal if self.entries else 0

    @property
    def ledger_length(self) -> int:
        return len(self.entries)

    @property
    def active_phase(self) -> Phase:
        return self.definition.phases[self.active_phase_index]

    @property
    def is_final_phase(self) -> bool:
        return self.active_phase_index == len(self.definition.phases) - 1

    @property
    def last_transition_at(self) -> datetime | None:
        return self.entries[-1].timestamp if self.entries else None

    def cycle(self, work_item_id: str) -> Cycle | None:
        """Live or archived cycle for ``work_item_id``; ``None`` if never started."""
        return self._cycles.get(work_item_id) or self._archived.get(work_item_id)

    def live_cycle(self, work_item_id: str) -> Cycle | None:
        return self._cycles.get(work_item_id)

    def in_flight(self, work_item_ids: Iterable[str]) -> tuple[str, ...]:
        return tuple(item for item in work_item_ids if item in self._cycles)

    def last_blocked_reasons(self, phase: str, gate_name: str) -> tuple[str, ...] | None:
        return self._blocked.get((phase, gate_name))

    def verification_status(self) -> dict[str, VerificationStatus]:
        return derive_verification_status(self.entries)

    def checklist_status(self) -> dict[str, ChecklistStatus]:
        return derive_checklist_status(self.entries)

    def apply(self, entry: LedgerEntry) -> bool:
        """Fold one committed entry. Returns ``False`` when it was already applied."""

        if entry.run_id != self.run_id:
            raise LedgerIntegrityError(
                f"entry {entry.ordinal} belongs to run {entry.run_id}, not {self.run_id}"
            )
        if entry.ordinal <= self.last_ordinal:
            return False
        if entry.ordinal != self.last_ordinal + 1:
            raise LedgerIntegrityError(
                f"run {self.run_id}: ledger gap, expected ordinal {self.last_ordinal + 1} "
                f"but got {entry.ordinal}"
            )

        try:
            self._fold(entry)
        except (PhasegateError, ValueError, KeyError) as exc:
            raise LedgerIntegrityError(
                f"run {self.run_id}: entry {entry.ordinal} ({entry.kind.value}) "
                f"cannot be applied: {exc}"
            ) from exc
        self.entries.append(entry)
        return True

    def snapshot(self) -> RunSnapshot:
        cycles = {
            item_id: (cycle.state, cycle.iterations)
            for item_id, cycle in (*self._archived.items(), *self._cycles.items())
        }
        return RunSnapshot(
            status=self.status,
            active_phase_index=self.active_phase_index,
            work_items=dict(self.graph.snapshot()),
            cycles=dict(sorted(cycles.items())),
            ledger_length=self.ledger_length,
        )

    def status_report(self) -> RunStatusReport:
        verification = self.verification_status()
        items: list[WorkItemStatus] = []
        for phase in self.definition.phases:
            for item_id in phase.work_item_ids:
                cycle = self.cycle(item_id)
                items.append(
                    WorkItemStatus(
                        work_item_id=item_id,
                        phase=phase.name,
                        state=self.graph.state_of(item_id),
                        cycle_state=None if cycle is None else cycle.state,
                        iterations=0 if cycle is None else cycle.iterations,
                        last_verification=verification.get(item_id),
                    )
                )
        return RunStatusReport(
            run_id=self.run_id,
            status=self.status,
            active_phase=self.active_phase.name,
            active_phase_index=self.active_phase_index,
            phases=self.definition.phase_names,
            work_items=tuple(items),
            ledger_length=self.ledger_length,
            last_transition_at=self.last_transition_at,
            critical_path=self.graph.critical_path(remaining_only=True),
            checklist=self.checklist_status(),
        )

    def _fold(self, entry: LedgerEntry) -> None:
        if entry.kind is LedgerEntryKind.CYCLE:
            self._fold_cycle(entry)
        elif entry.kind is LedgerEntryKind.WORK_ITEM:
            self.graph.mark_state(_require_item(entry), WorkItemState(entry.new_state))
        elif entry.kind is LedgerEntryKind.PHASE:
            self._fold_phase(entry)
        elif entry.kind is LedgerEntryKind.GATE:
            if entry.gate_name is not None:
                key = (entry.prior_state, entry.gate_name)
                if entry.outcome == AdvanceOutcome.BLOCKED.value:
                    self._blocked[key] = entry.reasons
                else:
                    self._blocked.pop(key, None)
        elif entry.kind is LedgerEntryKind.RUN:
            self.status = RunStatus(entry.new_state)
        # Checklist entries only matter to gates, which read them from ``entries``.

    def _fold_cycle(self, entry: LedgerEntry) -> None:
        work_item_id = _require_item(entry)
        if work_item_id in self._archived:
            raise ValueError(f"cycle for {work_item_id} is already archived")

        cycle = self._cycles.get(work_item_id)
        starting = cycle is None
        if cycle is None:
            cycle = Cycle(work_item_id, max_iterations=self.definition.max_iterations)
        if CycleState(entry.prior_state) is not cycle.state:
            raise ValueError(
                f"cycle for {work_item_id} is {cycle.state.value}, entry says {entry.prior_state}"
            )
        if starting:
            self.graph.mark_state(work_item_id, WorkItemState.IN_PROGRESS)
            self._cycles[work_item_id] = cycle

        cycle.record(entry)
        settled = _ITEM_STATE_BY_CYCLE.get(cycle.state)
        if settled is not None:
            self.graph.mark_state(work_item_id, settled)
            self._archived[work_item_id] = self._cycles.pop(work_item_id)

    def _fold_phase(self, entry: LedgerEntry) -> None:
        if entry.prior_state != self.active_phase.name:
            raise ValueError(
                f"phase entry leaves {entry.prior_state} "
                f"but active phase is {self.active_phase.name}"
            )
        if entry.outcome == AdvanceOutcome.COMPLETED.value:
            self.status = RunStatus.COMPLETE
            return
        if self.is_final_phase:
            raise ValueError("phase entry advances past the final phase")
        self.active_phase_index += 1


def replay(
    definition: RunDefinition,
    entries: Iterable[LedgerEntry],
    *,
    state: RunState | None = None,
) -> RunState:
    """Fold ``entries`` into ``state`` (or a fresh state) and return it."""

    folded = RunState(definition) if state is None else state
    for entry in entries:
        folded.apply(entry)
    return folded


def _require_item(entry: LedgerEntry) -> str:
    if entry.work_item_id is None:
        raise ValueError(f"{entry.kind.value} entry has no work_item_id")
    return entry.work_item_id


__all__ = ["RunSnapshot", "RunState", "replay"]
