"""
phasegate — run coordinator.

Purpose
- Core-facing API: create runs, answer "what next", accept cycle events, advance
  phases through their gates, abort, and report status.

Functional requirements
- Every mutation is computed first, committed to the ledger, and only then folded
  into the in-memory run state; a failed commit leaves the run untouched.
- Operations on one run are serialized by a per-run re-entrant lock; independent
  runs only share the lock registry.
- Runs unknown in memory are resumed lazily from the durable ledger.
"""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from datetime import datetime, timedelta
from pathlib import Path
from threading import Lock, RLock
from typing import Any, Final

import structlog

from phasegate.control_plane.cycle import DEFAULT_MAX_ITERATIONS, LOOP_BACK_EVENTS, Cycle
from phasegate.control_plane.run_state import RunState, replay
from phasegate.control_plane.scheduler import (
    ScheduleDecision,
    Scheduler,
    SchedulerLimits,
    assert_active,
)
from phasegate.domain import ids
from phasegate.domain.errors import (
    CYCLE_BUDGET_EXCEEDED,
    IllegalCycleTransition,
    LedgerIntegrityError,
    PersistenceUnavailable,
    StructuralError,
    UnknownRun,
    UnknownWorkItem,
)
from phasegate.domain.models import (
    ABORT_OUTCOME,
    TERMINAL_WORK_ITEM_STATES,
    Acknowledged,
    AdvanceResult,
    ChecklistStatus,
    CycleEvent,
    CycleState,
    LedgerEntry,
    LedgerEntryKind,
    RunStatus,
    RunStatusReport,
    Transition,
    WorkItem,
    WorkItemState,
)
from phasegate.observability.logging import correlation_scope
from phasegate.persistence.ledger import (
    Clock,
    LedgerStore,
    MemoryLedgerStore,
    RunLedger,
    SqliteLedgerStore,
)
from phasegate.persistence.state_db import StateDB, StateDBError
from phasegate.planning.phases import RunDefinition, build_run_definition
from phasegate.planning.task_graph import TaskGraph

logger = logging.getLogger(__name__)

CHECKLIST_REPORTED: Final[str] = "reported"
CHECKLIST_UNREPORTED: Final[str] = "unreported"

TaskGraphInput = TaskGraph | Mapping[str, object] | Sequence[Mapping[str, object] | WorkItem]
PhaseInput = Mapping[str, object] | Sequence[object]


class RunCoordinator:
    """Thread-safe facade over the scheduler, cycle machine, gates and ledger."""

    def __init__(
        self,
        ledger: RunLedger | None = None,
        *,
        limits: SchedulerLimits | None = None,
        max_iterations: int = DEFAULT_MAX_ITERATIONS,
        clock: Clock | None = None,
        decision_logger: Any | None = None,
    ) -> None:
        if max_iterations < 1:
            raise ValueError("max_iterations must be >= 1")
        self._ledger = ledger if ledger is not None else RunLedger(MemoryLedgerStore(), clock=clock)
        self._scheduler = Scheduler(limits=limits)
        self._max_iterations = max_iterations
        self._runs: dict[str, RunState] = {}
        self._locks: dict[str, RLock] = {}
        self._registry_lock = Lock()
        self._decision_logger = (
            decision_logger if decision_logger is not None else structlog.get_logger(__name__)
        )

    @classmethod
    def from_config(
        cls, config: Mapping[str, Any], *, clock: Clock | None = None
    ) -> RunCoordinator:
        """Build a coordinator from an effective config (see :func:`load_config`)."""

        ledger_cfg = config["ledger"]
        store: LedgerStore
        if ledger_cfg["backend"] == "memory":
            store = MemoryLedgerStore()
        else:
            db = StateDB(Path(ledger_cfg["path"]), busy_timeout_ms=ledger_cfg["busy_timeout_ms"])
            try:
                store = SqliteLedgerStore(db)
            except (StateDBError, sqlite3.Error, OSError) as exc:
                raise PersistenceUnavailable(f"cannot open ledger at {db.path}: {exc}") from exc
        return cls(
            RunLedger(store, clock=clock),
            limits=SchedulerLimits(max_in_flight=config["scheduler"]["max_in_flight"]),
            max_iterations=config["cycle"]["max_iterations"],
        )

    @property
    def scheduler(self) -> Scheduler:
        return self._scheduler

    @property
    def run_ledger(self) -> RunLedger:
        return self._ledger

    def create_run(
        self,
        task_graph_spec: TaskGraphInput,
        phase_spec: PhaseInput,
        *,
        run_id: str | None = None,
        max_in_flight: int | None = None,
        max_iterations: int | None = None,
    ) -> str:
        """
        Validate the graph and phase plan and register a new run.

        Raises ``CycleDetected``, ``DanglingDependency`` or ``InvalidPhaseAssignment``
        before anything is persisted.
        """

        resolved_id = ids.generate_run_id() if run_id is None else ids.validate_run_id(run_id)
        definition = build_run_definition(
            task_graph_spec,
            phase_spec,
            run_id=resolved_id,
            max_in_flight=(
                self._scheduler.limits.max_in_flight if max_in_flight is None else max_in_flight
            ),
            max_iterations=self._max_iterations if max_iterations is None else max_iterations,
            created_at=self._ledger.now(),
        )
        with self._locked(resolved_id, creating=True):
            if resolved_id in self._runs or self._ledger.load_definition(resolved_id) is not None:
                raise StructuralError(f"run {resolved_id} already exists")
            self._ledger.save_definition(
                resolved_id,
                created_at=definition.created_at,
                plan_digest=definition.plan_digest,
                definition=definition.to_dict(),
            )
            self._runs[resolved_id] = RunState(definition)
            logger.info(
                "run created",
                extra={
                    "phases": list(definition.phase_names),
                    "work_items": len(definition.graph),
                    "plan_digest": definition.plan_digest,
                },
            )
        return resolved_id

    def get_next_runnable(self, run_id: str) -> tuple[str, ...]:
        return self.schedule(run_id).selected

    def schedule(self, run_id: str) -> ScheduleDecision:
        """Full scheduling decision, including entry-gate reasons and capped items."""

        with self._locked(run_id):
            return self._scheduler.next_runnable(self._state(run_id))

    def report_cycle_event(
        self, run_id: str, work_item_id: str, event: CycleEvent | str
    ) -> CycleState:
        """
        Apply one cycle event and return the resulting cycle state.

        The first event for a pending item starts its cycle in ``Planning``; the item
        must be dependency-ready, in a reached phase, and within the phase WIP cap.
        ``abort`` on a never-started item settles it as abandoned.
        """

        with self._locked(run_id), correlation_scope(work_item_id=work_item_id):
            state = self._state(run_id)
            if work_item_id not in state.graph:
                raise UnknownWorkItem(work_item_id)
            cycle_event = _parse_event(state, work_item_id, event)

            transition = self._plan_cycle_event(state, work_item_id, cycle_event)
            entries = self._commit(state, (transition,))
            cycle = state.cycle(work_item_id)
            result = CycleState.ABANDONED if cycle is None else cycle.state
            if cycle_event in LOOP_BACK_EVENTS:
                self._log_budget_decision(state, work_item_id, cycle_event, transition)
            logger.info(
                "cycle event accepted",
                extra={
                    "ledger_ordinal": entries[-1].ordinal,
                    "event": cycle_event.value,
                    "outcome": transition.outcome,
                    "cycle_state": result.value,
                },
            )
            return result

    def report_checklist(
        self,
        run_id: str,
        name: str,
        passed: bool,
        *,
        work_item_id: str | None = None,
    ) -> ChecklistStatus:
        """Record a checklist result that ``checklist`` gate conditions can read."""

        item_name = name.strip() if isinstance(name, str) else ""
        if not item_name:
            raise ValueError("checklist item name must be a non-empty string")
        status = ChecklistStatus.PASSED if passed else ChecklistStatus.FAILED
        with self._locked(run_id):
            state = self._state(run_id)
            assert_active(state)
            if work_item_id is not None and work_item_id not in state.graph:
                raise UnknownWorkItem(work_item_id)

            previous = state.checklist_status().get(item_name)
            self._commit(
                state,
                (
                    Transition(
                        kind=LedgerEntryKind.CHECKLIST,
                        prior_state=CHECKLIST_UNREPORTED if previous is None else previous.value,
                        new_state=status.value,
                        outcome=CHECKLIST_REPORTED,
                        work_item_id=work_item_id,
                        gate_name=item_name,
                    ),
                ),
            )
            logger.info("checklist reported", extra={"item": item_name, "status": status.value})
            return status

    def try_advance_phase(self, run_id: str) -> AdvanceResult:
        """
        Cross the active phase boundary if its exit gate and the next entry gate pass.

        A blocked attempt returns every unmet reason and leaves the active phase as is.
        """

        with self._locked(run_id):
            state = self._state(run_id)
            plan = self._scheduler.plan_advance(state)
            self._commit(state, plan.transitions)
            result = plan.result
            with correlation_scope(phase=result.from_phase):
                if result.advanced:
                    logger.info(
                        "phase advanced",
                        extra={"outcome": result.outcome.value, "to_phase": result.to_phase},
                    )
                else:
                    logger.info("phase advance blocked", extra={"reasons": list(result.reasons)})
            return result

    def abort(self, run_id: str) -> Acknowledged:
        """Abandon every live cycle and pending item, then mark the run aborted."""

        with self._locked(run_id):
            state = self._state(run_id)
            if state.status is not RunStatus.ACTIVE:
                return Acknowledged(run_id=run_id, entries_appended=0, already_terminal=True)

            transitions: list[Transition] = []
            for phase in state.definition.phases:
                for work_item_id in phase.work_item_ids:
                    cycle = state.live_cycle(work_item_id)
                    if cycle is not None:
                        step = cycle.plan(CycleEvent.ABORT)
                        transitions.append(step.to_transition(outcome=ABORT_OUTCOME))
                    elif state.graph.state_of(work_item_id) is WorkItemState.PENDING:
                        transitions.append(_settle_pending(work_item_id, ABORT_OUTCOME))
            transitions.append(
                Transition(
                    kind=LedgerEntryKind.RUN,
                    prior_state=RunStatus.ACTIVE.value,
                    new_state=RunStatus.ABORTED.value,
                    outcome=ABORT_OUTCOME,
                )
            )
            entries = self._commit(state, transitions)
            logger.warning("run aborted", extra={"entries": len(entries)})
            return Acknowledged(
                run_id=run_id, entries_appended=len(entries), already_terminal=False
            )

    def get_status(self, run_id: str) -> RunStatusReport:
        with self._locked(run_id):
            return self._state(run_id).status_report()

    def resume_run(self, run_id: str) -> RunStatusReport:
        """Catch the in-memory state up with the durable ledger and report status."""

        with self._locked(run_id):
            state = self._runs.get(run_id)
            if state is None:
                state = self._state(run_id)
            else:
                self._catch_up(state)
            logger.info("run resumed", extra={"ledger_length": state.ledger_length})
            return state.status_report()

    def ledger(self, run_id: str) -> tuple[LedgerEntry, ...]:
        with self._locked(run_id):
            return tuple(self._state(run_id).entries)

    def time_since_last_transition(
        self, run_id: str, *, now: datetime | None = None
    ) -> timedelta:
        """Elapsed time since the newest ledger entry (or run creation when empty)."""

        with self._locked(run_id):
            state = self._state(run_id)
            last = state.last_transition_at or state.definition.created_at
            return (self._ledger.now() if now is None else now) - last

    def list_runs(self) -> tuple[str, ...]:
        return self._ledger.run_ids()

    def _plan_cycle_event(
        self, state: RunState, work_item_id: str, event: CycleEvent
    ) -> Transition:
        cycle = state.live_cycle(work_item_id)
        if cycle is not None:
            return cycle.plan(event).to_transition()

        finished = state.cycle(work_item_id)
        if finished is not None:
            raise IllegalCycleTransition(work_item_id, finished.state.value, event.value)
        item_state = state.graph.state_of(work_item_id)
        if item_state in TERMINAL_WORK_ITEM_STATES or state.status is not RunStatus.ACTIVE:
            raise IllegalCycleTransition(work_item_id, item_state.value, event.value)

        if event is CycleEvent.ABORT:
            return _settle_pending(work_item_id, event.value)
        self._scheduler.check_start(state, work_item_id)
        fresh = Cycle(work_item_id, max_iterations=state.definition.max_iterations)
        return fresh.plan(event).to_transition()

    def _log_budget_decision(
        self, state: RunState, work_item_id: str, event: CycleEvent, transition: Transition
    ) -> None:
        exceeded = transition.outcome == CYCLE_BUDGET_EXCEEDED
        cycle = state.cycle(work_item_id)
        self._decision_logger.info(
            "cycle_budget_decision",
            action="abandon" if exceeded else "continue",
            reason_codes=[CYCLE_BUDGET_EXCEEDED] if exceeded else [],
            run_id=state.run_id,
            work_item_id=work_item_id,
            cycle_event=event.value,
            iterations=0 if cycle is None else cycle.iterations,
            max_iterations=state.definition.max_iterations,
        )

    def _commit(
        self, state: RunState, transitions: Sequence[Transition]
    ) -> tuple[LedgerEntry, ...]:
        try:
            entries = self._ledger.append(state.run_id, transitions, after=state.last_ordinal)
            for entry in entries:
                state.apply(entry)
        except LedgerIntegrityError:
            self._runs.pop(state.run_id, None)
            raise
        return entries

    def _state(self, run_id: str) -> RunState:
        state = self._runs.get(run_id)
        if state is not None:
            return state

        payload = self._ledger.load_definition(run_id)
        if payload is None:
            raise UnknownRun(run_id)
        try:
            definition = RunDefinition.from_dict(payload)
        except ValueError as exc:
            raise LedgerIntegrityError(
                f"stored definition for run {run_id} is invalid: {exc}"
            ) from exc
        state = replay(definition, self._ledger.read(run_id))
        self._runs[run_id] = state
        logger.debug("run loaded from ledger", extra={"ledger_length": state.ledger_length})
        return state

    def _catch_up(self, state: RunState) -> None:
        try:
            replay(
                state.definition,
                self._ledger.read(state.run_id, after=state.last_ordinal),
                state=state,
            )
        except LedgerIntegrityError:
            self._runs.pop(state.run_id, None)
            raise

    @contextmanager
    def _locked(self, run_id: str, *, creating: bool = False) -> Iterator[None]:
        # Locks exist only for runs that exist (or are being created).
        with self._registry_lock:
            lock = self._locks.get(run_id)
        if lock is None:
            if not creating and run_id not in self._runs:
                if self._ledger.load_definition(run_id) is None:
                    raise UnknownRun(run_id)
            with self._registry_lock:
                lock = self._locks.setdefault(run_id, RLock())
        with lock, correlation_scope(run_id=run_id):
            yield


def _parse_event(state: RunState, work_item_id: str, event: CycleEvent | str) -> CycleEvent:
    try:
        return CycleEvent(event)
    except ValueError:
        cycle = state.cycle(work_item_id)
        current = cycle.state if cycle is not None else state.graph.state_of(work_item_id)
        raise IllegalCycleTransition(work_item_id, current.value, str(event)) from None


def _settle_pending(work_item_id: str, outcome: str) -> Transition:
    return Transition(
        kind=LedgerEntryKind.WORK_ITEM,
        work_item_id=work_item_id,
        prior_state=WorkItemState.PENDING.value,
        new_state=WorkItemState.ABANDONED.value,
        outcome=outcome,
    )


__all__ = ["CHECKLIST_REPORTED", "CHECKLIST_UNREPORTED", "RunCoordinator"]
