"""
phasegate — planning layer

Purpose
- Task graph construction and validation, phase plans, and plan file loading.

Functional requirements
- Must reject cyclic or dangling graphs and invalid phase assignments before a run exists.
"""

from phasegate.planning.phases import Phase, RunDefinition, build_run_definition, parse_phase_plan
from phasegate.planning.plan_loader import (
    PlanDocument,
    PlanLoadError,
    PlanSummary,
    load_plan,
    validate_plan,
)
from phasegate.planning.task_graph import GraphSnapshot, TaskGraph

__all__ = [
    "GraphSnapshot",
    "Phase",
    "PlanDocument",
    "PlanLoadError",
    "PlanSummary",
    "RunDefinition",
    "TaskGraph",
    "build_run_definition",
    "load_plan",
    "parse_phase_plan",
    "validate_plan",
]
