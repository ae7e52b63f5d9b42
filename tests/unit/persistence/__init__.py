"""Shared deterministic builders for persistence tests."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Final

from phasegate.domain.models import LedgerEntryKind, Transition

BASE_TS: Final[datetime] = datetime(2026, 2, 1, 12, 0, 0, tzinfo=UTC)

DEFINITION_JSON: Final[str] = '{"schema_version":1}'
PLAN_DIGEST: Final[str] = "0" * 64


def cycle_transition(
    work_item_id: str,
    prior: str = "planning",
    new: str = "drafting",
    outcome: str = "plan_produced",
) -> Transition:
    return Transition(
        kind=LedgerEntryKind.CYCLE,
        work_item_id=work_item_id,
        prior_state=prior,
        new_state=new,
        outcome=outcome,
    )


def gate_transition(phase: str, gate_name: str, *reasons: str) -> Transition:
    return Transition(
        kind=LedgerEntryKind.GATE,
        prior_state=phase,
        new_state=phase,
        outcome="blocked",
        gate_name=gate_name,
        reasons=reasons,
    )


__all__ = [
    "BASE_TS",
    "DEFINITION_JSON",
    "PLAN_DIGEST",
    "cycle_transition",
    "gate_transition",
]
