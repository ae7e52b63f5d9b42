"""Load run plans (task graph plus phases) from YAML, JSON or TOML files."""

from __future__ import annotations

import json
import tomllib
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Final

import yaml

from phasegate.planning.phases import RunDefinition, build_run_definition
from phasegate.utils.hashing import sha256_file

_YAML_SUFFIXES: Final[frozenset[str]] = frozenset({".yaml", ".yml"})
_TOP_LEVEL_KEYS: Final[frozenset[str]] = frozenset({"work_items", "edges", "phases"})
_VALIDATION_RUN_ID: Final[str] = "validation"


class PlanLoadError(ValueError):
    """Plan file is unreadable or not shaped like a plan."""


@dataclass(frozen=True, slots=True)
class PlanDocument:
    source: Path
    digest: str
    task_graph: Mapping[str, object]
    phases: list[object]


@dataclass(frozen=True, slots=True)
class PlanSummary:
    """Result of a dry structural validation."""

    source: Path
    digest: str
    phases: tuple[str, ...]
    work_item_count: int
    topological_order: tuple[str, ...]
    critical_path: tuple[str, ...]


def load_plan(path: str | Path) -> PlanDocument:
    """Read a plan file; the format is chosen by suffix (``.yaml``/``.yml``/``.json``/``.toml``)."""

    plan_path = Path(path).expanduser().resolve()
    if not plan_path.is_file():
        raise PlanLoadError(f"plan file not found: {plan_path}")

    payload = _read_payload(plan_path)
    if not isinstance(payload, Mapping):
        raise PlanLoadError(f"{plan_path}: plan root must be an object")
    unknown = sorted(str(key) for key in payload if key not in _TOP_LEVEL_KEYS)
    if unknown:
        raise PlanLoadError(f"{plan_path}: unexpected top-level keys: {unknown}")

    work_items = payload.get("work_items")
    phases = payload.get("phases")
    if not isinstance(work_items, list):
        raise PlanLoadError(f"{plan_path}: 'work_items' must be a list")
    if not isinstance(phases, list):
        raise PlanLoadError(f"{plan_path}: 'phases' must be a list")

    task_graph: dict[str, object] = {"work_items": work_items}
    if "edges" in payload:
        task_graph["edges"] = payload["edges"]
    return PlanDocument(
        source=plan_path,
        digest=sha256_file(plan_path),
        task_graph=task_graph,
        phases=phases,
    )


def validate_plan(
    document: PlanDocument,
    *,
    max_in_flight: int,
    max_iterations: int,
) -> PlanSummary:
    """Run every structural check a run creation would, without creating a run."""

    definition: RunDefinition = build_run_definition(
        document.task_graph,
        {"phases": document.phases},
        run_id=_VALIDATION_RUN_ID,
        max_in_flight=max_in_flight,
        max_iterations=max_iterations,
        created_at=datetime.now(UTC),
    )
    graph = definition.graph
    return PlanSummary(
        source=document.source,
        digest=document.digest,
        phases=definition.phase_names,
        work_item_count=len(graph),
        topological_order=graph.topological_order(),
        critical_path=graph.critical_path(),
    )


def _read_payload(path: Path) -> object:
    suffix = path.suffix.lower()
    try:
        if suffix in _YAML_SUFFIXES:
            with path.open("r", encoding="utf-8") as handle:
                return yaml.safe_load(handle)
        if suffix == ".json":
            with path.open("r", encoding="utf-8") as handle:
                return json.load(handle)
        if suffix == ".toml":
            with path.open("rb") as handle:
                return tomllib.load(handle)
    except OSError as exc:
        raise PlanLoadError(f"failed to read plan file {path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise PlanLoadError(f"invalid YAML in {path}: {exc}") from exc
    except json.JSONDecodeError as exc:
        raise PlanLoadError(f"invalid JSON in {path}: {exc}") from exc
    except tomllib.TOMLDecodeError as exc:
        raise PlanLoadError(f"invalid TOML in {path}: {exc}") from exc
    raise PlanLoadError(f"unsupported plan file type {suffix!r}; use .yaml, .json or .toml")


__all__ = ["PlanDocument", "PlanLoadError", "PlanSummary", "load_plan", "validate_plan"]
