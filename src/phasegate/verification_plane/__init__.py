"""Gate evaluation public API."""

from phasegate.verification_plane.gates import (
    ConditionKind,
    Gate,
    GateCondition,
    GateResult,
    GateVerdict,
    evaluate,
    parse_gate,
)

__all__ = [
    "ConditionKind",
    "Gate",
    "GateCondition",
    "GateResult",
    "GateVerdict",
    "evaluate",
    "parse_gate",
]
