"""
phasegate — domain layer

Purpose
- Enums, records and errors shared by every other layer. Free of IO side effects.
"""

from phasegate.domain.errors import (
    CYCLE_BUDGET_EXCEEDED,
    CycleDetected,
    DanglingDependency,
    IllegalCycleTransition,
    InfrastructureError,
    InvalidPhaseAssignment,
    InvalidTransition,
    PersistenceUnavailable,
    PhasegateError,
    RunAborted,
    RunComplete,
    StructuralError,
    TransitionError,
    UnknownRun,
    UnknownWorkItem,
)
from phasegate.domain.models import (
    Acknowledged,
    AdvanceOutcome,
    AdvanceResult,
    ChecklistStatus,
    CycleEvent,
    CycleState,
    LedgerEntry,
    LedgerEntryKind,
    RunStatus,
    RunStatusReport,
    Transition,
    VerificationStatus,
    WorkItem,
    WorkItemState,
    WorkItemStatus,
)

__all__ = [
    "CYCLE_BUDGET_EXCEEDED",
    "Acknowledged",
    "AdvanceOutcome",
    "AdvanceResult",
    "ChecklistStatus",
    "CycleDetected",
    "CycleEvent",
    "CycleState",
    "DanglingDependency",
    "IllegalCycleTransition",
    "InfrastructureError",
    "InvalidPhaseAssignment",
    "InvalidTransition",
    "LedgerEntry",
    "LedgerEntryKind",
    "PersistenceUnavailable",
    "PhasegateError",
    "RunAborted",
    "RunComplete",
    "RunStatus",
    "RunStatusReport",
    "StructuralError",
    "Transition",
    "TransitionError",
    "UnknownRun",
    "UnknownWorkItem",
    "VerificationStatus",
    "WorkItem",
    "WorkItemState",
    "WorkItemStatus",
]
