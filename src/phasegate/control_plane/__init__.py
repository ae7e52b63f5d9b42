"""Control plane: cycle state machine, ledger fold, scheduler and run coordinator."""

from phasegate.control_plane.coordinator import RunCoordinator
from phasegate.control_plane.cycle import DEFAULT_MAX_ITERATIONS, Cycle, CycleStep
from phasegate.control_plane.run_state import RunSnapshot, RunState, replay
from phasegate.control_plane.scheduler import (
    AdvancePlan,
    ScheduleDecision,
    Scheduler,
    SchedulerLimits,
)

__all__ = [
    "DEFAULT_MAX_ITERATIONS",
    "AdvancePlan",
    "Cycle",
    "CycleStep",
    "RunCoordinator",
    "RunSnapshot",
    "RunState",
    "ScheduleDecision",
    "Scheduler",
    "SchedulerLimits",
    "replay",
]
