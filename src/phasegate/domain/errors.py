"""
Error taxonomy for the orchestration core.

Families:
- ``StructuralError``: malformed run input, rejected at run creation.
- ``TransitionError``: caller logic errors; no state was mutated.
- ``InfrastructureError``: storage problems, retryable by the caller.

Capacity exhaustion (an exhausted cycle iteration budget) is not an exception; it is a
terminal ledger outcome, see :data:`CYCLE_BUDGET_EXCEEDED`.
"""

from __future__ import annotations

from typing import Final

CYCLE_BUDGET_EXCEEDED: Final[str] = "CycleBudgetExceeded"


class PhasegateError(Exception):
    """Base class for every error raised by the orchestration core."""

    retryable: bool = False


class StructuralError(PhasegateError, ValueError):
    """Run input failed structural validation."""


class TransitionError(PhasegateError):
    """A requested transition was rejected; state is unchanged."""


class InfrastructureError(PhasegateError):
    """Storage or environment failure outside the caller's control."""


class CycleDetected(StructuralError):
    """Dependency edges contain at least one cycle."""

    def __init__(self, cycles: tuple[tuple[str, ...], ...]) -> None:
        self.cycles = cycles
        rendered = "; ".join(" -> ".join((*cycle, cycle[0])) for cycle in cycles)
        super().__init__(f"dependency cycle detected: {rendered}")


class DanglingDependency(StructuralError):
    """A dependency references a work item that does not exist."""

    def __init__(self, missing: tuple[tuple[str, str], ...]) -> None:
        self.missing = missing
        rendered = ", ".join(f"{item} -> {dependency}" for item, dependency in missing)
        super().__init__(f"unknown dependency reference(s): {rendered}")


class InvalidPhaseAssignment(StructuralError):
    """Phase plan does not partition the task graph or references foreign items."""

    def __init__(self, problems: tuple[str, ...]) -> None:
        self.problems = problems
        super().__init__("invalid phase plan: " + "; ".join(problems))


class UnknownRun(TransitionError, LookupError):
    def __init__(self, run_id: str) -> None:
        self.run_id = run_id
        super().__init__(f"unknown run: {run_id}")


class UnknownWorkItem(TransitionError, LookupError):
    def __init__(self, work_item_id: str) -> None:
        self.work_item_id = work_item_id
        super().__init__(f"unknown work item: {work_item_id}")


class InvalidTransition(TransitionError):
    """A work item lifecycle change is not reachable from its current state."""

    def __init__(self, work_item_id: str, current: str, requested: str, detail: str = "") -> None:
        self.work_item_id = work_item_id
        self.current = current
        self.requested = requested
        message = f"work item {work_item_id}: cannot move from {current} to {requested}"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)


class IllegalCycleTransition(TransitionError):
    """An event does not match the cycle transition table for the current state."""

    def __init__(self, work_item_id: str, state: str, event: str) -> None:
        self.work_item_id = work_item_id
        self.state = state
        self.event = event
        super().__init__(f"work item {work_item_id}: event {event!r} is not valid in state {state}")


class RunComplete(TransitionError):
    def __init__(self, run_id: str) -> None:
        self.run_id = run_id
        super().__init__(f"run {run_id} is complete")


class RunAborted(TransitionError):
    def __init__(self, run_id: str) -> None:
        self.run_id = run_id
        super().__init__(f"run {run_id} was aborted")


class PersistenceUnavailable(InfrastructureError):
    """Ledger storage rejected or could not complete a write or read."""

    retryable = True


class LedgerIntegrityError(InfrastructureError):
    """Persisted ledger entries are not a contiguous, well-formed history."""


__all__ = [
    "CYCLE_BUDGET_EXCEEDED",
    "CycleDetected",
    "DanglingDependency",
    "IllegalCycleTransition",
    "InfrastructureError",
    "InvalidPhaseAssignment",
    "InvalidTransition",
    "LedgerIntegrityError",
    "PersistenceUnavailable",
    "PhasegateError",
    "RunAborted",
    "RunComplete",
    "StructuralError",
    "TransitionError",
    "UnknownRun",
    "UnknownWorkItem",
]
