"""Shared builders for control-plane tests."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import Final

from phasegate.control_plane import RunCoordinator, SchedulerLimits
from phasegate.domain.models import CycleEvent
from phasegate.persistence.ledger import LedgerStore, MemoryLedgerStore, RunLedger

BASE_TS: Final[datetime] = datetime(2026, 3, 1, 9, 0, 0, tzinfo=UTC)

HAPPY_PATH: Final[tuple[CycleEvent, ...]] = (
    CycleEvent.PLAN_PRODUCED,
    CycleEvent.ARTIFACT_PRODUCED,
    CycleEvent.VERIFICATION_COMPLETED,
    CycleEvent.IMPROVEMENT_STOPPED,
)


class StepClock:
    """Deterministic clock that moves forward one second per reading."""

    def __init__(self, start: datetime = BASE_TS) -> None:
        self.current = start

    def __call__(self) -> datetime:
        self.current = self.current + timedelta(seconds=1)
        return self.current


def two_phase_plan() -> tuple[list[dict[str, object]], dict[str, object]]:
    """``design: [spec]`` then ``build: [b1, b2]`` with ``b2`` depending on ``b1``."""

    work_items: list[dict[str, object]] = [
        {"id": "spec", "title": "Write spec", "estimate": 1.0},
        {"id": "b1", "title": "Build core", "estimate": 2.0, "dependencies": ["spec"]},
        {"id": "b2", "title": "Build CLI", "estimate": 3.0, "dependencies": ["b1"]},
    ]
    phases: dict[str, object] = {
        "phases": [
            {"name": "design", "work_items": ["spec"]},
            {"name": "build", "work_items": ["b1", "b2"]},
        ]
    }
    return work_items, phases


def single_phase_plan(*item_ids: str) -> tuple[list[dict[str, object]], dict[str, object]]:
    work_items: list[dict[str, object]] = [{"id": item_id} for item_id in item_ids]
    phases: dict[str, object] = {"phases": [{"name": "main", "work_items": list(item_ids)}]}
    return work_items, phases


def make_coordinator(
    store: LedgerStore | None = None,
    *,
    max_in_flight: int = 4,
    max_iterations: int = 5,
    clock: StepClock | None = None,
) -> RunCoordinator:
    ledger = RunLedger(
        MemoryLedgerStore() if store is None else store,
        clock=StepClock() if clock is None else clock,
    )
    return RunCoordinator(
        ledger,
        limits=SchedulerLimits(max_in_flight=max_in_flight),
        max_iterations=max_iterations,
    )


def drive_to_done(coordinator: RunCoordinator, run_id: str, work_item_id: str) -> None:
    for event in HAPPY_PATH:
        coordinator.report_cycle_event(run_id, work_item_id, event)


__all__ = [
    "BASE_TS",
    "HAPPY_PATH",
    "StepClock",
    "drive_to_done",
    "make_coordinator",
    "single_phase_plan",
    "two_phase_plan",
]
