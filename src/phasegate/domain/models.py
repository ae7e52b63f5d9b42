"""Dataclass domain records with strict validation and canonical serialization."""

from __future__ import annotations

import json
import math
from collections.abc import Mapping
from dataclasses import dataclass, fields, is_dataclass
from datetime import UTC, datetime
from enum import Enum, StrEnum
from typing import Final, NoReturn, TypeVar, cast

from phasegate.domain import ids as domain_ids

JSONScalar = str | int | float | bool | None
JSONValue = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]

TModel = TypeVar("TModel", bound="CanonicalModel")
TEnum = TypeVar("TEnum", bound=Enum)
TNumber = TypeVar("TNumber", int, float)

_MAX_TEXT = 8192
_MAX_COLLECTION = 4096


class WorkItemState(StrEnum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    DONE = "done"
    ABANDONED = "abandoned"


class CycleState(StrEnum):
    PLANNING = "planning"
    DRAFTING = "drafting"
    VERIFYING = "verifying"
    IMPROVING = "improving"
    DONE = "done"
    ABANDONED = "abandoned"


class CycleEvent(StrEnum):
    PLAN_PRODUCED = "plan_produced"
    ARTIFACT_PRODUCED = "artifact_produced"
    VERIFICATION_FAILED = "verification_failed"
    VERIFICATION_PASSED = "verification_passed"
    VERIFICATION_COMPLETED = "verification_completed"
    IMPROVEMENT_APPLIED = "improvement_applied"
    IMPROVEMENT_STOPPED = "improvement_stopped"
    ABORT = "abort"


class RunStatus(StrEnum):
    ACTIVE = "active"
    COMPLETE = "complete"
    ABORTED = "aborted"


class LedgerEntryKind(StrEnum):
    CYCLE = "cycle"
    PHASE = "phase"
    GATE = "gate"
    WORK_ITEM = "work_item"
    CHECKLIST = "checklist"
    RUN = "run"


class ChecklistStatus(StrEnum):
    PASSED = "passed"
    FAILED = "failed"


class VerificationStatus(StrEnum):
    PASSED = "passed"
    FAILED = "failed"


class AdvanceOutcome(StrEnum):
    ADVANCED = "advanced"
    BLOCKED = "blocked"
    COMPLETED = "completed"


TERMINAL_WORK_ITEM_STATES: Final[frozenset[WorkItemState]] = frozenset(
    {WorkItemState.DONE, WorkItemState.ABANDONED}
)
TERMINAL_CYCLE_STATES: Final[frozenset[CycleState]] = frozenset(
    {CycleState.DONE, CycleState.ABANDONED}
)

# Outcome recorded on run-level and per-item entries written by an abort.
ABORT_OUTCOME: Final[str] = "aborted"


class CanonicalModel:
    """Canonical dict and JSON forms for the dataclass records below."""

    def to_dict(self) -> dict[str, JSONValue]:
        return cast("dict[str, JSONValue]", _serialize_value(self, type(self).__name__))

    def to_json(self) -> str:
        return canonical_json(self.to_dict())

    @classmethod
    def from_json(cls: type[TModel], raw: str) -> TModel:
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError as exc:
            _fail(cls.__name__, f"invalid JSON: {exc}")
        if isinstance(parsed, dict):
            return cls.from_dict(parsed)
        _fail(cls.__name__, "JSON root must be an object")

    @classmethod
    def from_dict(cls: type[TModel], data: Mapping[str, object]) -> TModel:
        raise NotImplementedError(f"{cls.__name__} has no dict form to parse")


@dataclass(slots=True)
class WorkItem(CanonicalModel):
    """Declared unit of work. Lifecycle state is owned by the task graph."""

    id: str
    title: str
    estimate: float = 1.0
    dependencies: tuple[str, ...] = ()
    acceptance: str = ""
    priority: int = 0

    def __post_init__(self) -> None:
        self.id = _as_identifier(self.id, "WorkItem.id")
        self.title = _as_str(self.title, "WorkItem.title", max_len=256)
        self.estimate = _as_float(self.estimate, "WorkItem.estimate", minimum=0.0)
        self.dependencies = _as_str_tuple(
            self.dependencies, "WorkItem.dependencies", allow_empty=True, unique=True
        )
        for index, dependency in enumerate(self.dependencies):
            _as_identifier(dependency, f"WorkItem.dependencies[{index}]")
        self.acceptance = _as_str(self.acceptance, "WorkItem.acceptance", min_len=0)
        self.priority = _as_int(self.priority, "WorkItem.priority")

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> WorkItem:
        parsed = _expect_object(
            data,
            "WorkItem",
            required={"id"},
            optional={"title", "estimate", "dependencies", "acceptance", "priority"},
        )
        item_id = _as_identifier(parsed["id"], "WorkItem.id")
        return cls(
            id=item_id,
            title=cast("str", parsed.get("title", item_id)),
            estimate=cast("float", parsed.get("estimate", 1.0)),
            dependencies=cast(
                "tuple[str, ...]",
                tuple(_as_sequence(parsed.get("dependencies", ()), "WorkItem.dependencies")),
            ),
            acceptance=cast("str", parsed.get("acceptance", "")),
            priority=cast("int", parsed.get("priority", 0)),
        )


@dataclass(frozen=True, slots=True)
class Transition:
    """A ledger entry before the ledger assigns its ordinal and timestamp."""

    kind: LedgerEntryKind
    prior_state: str
    new_state: str
    outcome: str
    work_item_id: str | None = None
    gate_name: str | None = None
    reasons: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class LedgerEntry(CanonicalModel):
    """Immutable, fixed-shape ledger record. Ordinals start at 1 and are contiguous."""

    ordinal: int
    run_id: str
    kind: LedgerEntryKind
    prior_state: str
    new_state: str
    outcome: str
    timestamp: datetime
    work_item_id: str | None = None
    gate_name: str | None = None
    reasons: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        _as_int(self.ordinal, "LedgerEntry.ordinal", minimum=1)
        _as_enum(LedgerEntryKind, self.kind, "LedgerEntry.kind")
        if self.timestamp.tzinfo is None:
            _fail("LedgerEntry.timestamp", "must be timezone-aware")

    @classmethod
    def from_transition(
        cls,
        transition: Transition,
        *,
        ordinal: int,
        run_id: str,
        timestamp: datetime,
    ) -> LedgerEntry:
        return cls(
            ordinal=ordinal,
            run_id=run_id,
            kind=transition.kind,
            prior_state=transition.prior_state,
            new_state=transition.new_state,
            outcome=transition.outcome,
            timestamp=timestamp,
            work_item_id=transition.work_item_id,
            gate_name=transition.gate_name,
            reasons=transition.reasons,
        )

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> LedgerEntry:
        parsed = _expect_object(
            data,
            "LedgerEntry",
            required={
                "ordinal",
                "run_id",
                "kind",
                "prior_state",
                "new_state",
                "outcome",
                "timestamp",
            },
            optional={"work_item_id", "gate_name", "reasons"},
        )
        return cls(
            ordinal=_as_int(parsed["ordinal"], "LedgerEntry.ordinal", minimum=1),
            run_id=_as_str(parsed["run_id"], "LedgerEntry.run_id"),
            kind=_as_enum(LedgerEntryKind, parsed["kind"], "LedgerEntry.kind"),
            prior_state=_as_str(parsed["prior_state"], "LedgerEntry.prior_state"),
            new_state=_as_str(parsed["new_state"], "LedgerEntry.new_state"),
            outcome=_as_str(parsed["outcome"], "LedgerEntry.outcome"),
            timestamp=_as_datetime(parsed["timestamp"], "LedgerEntry.timestamp"),
            work_item_id=_as_optional_str(parsed.get("work_item_id"), "LedgerEntry.work_item_id"),
            gate_name=_as_optional_str(parsed.get("gate_name"), "LedgerEntry.gate_name"),
            reasons=_as_str_tuple(
                parsed.get("reasons", ()), "LedgerEntry.reasons", allow_empty=True, unique=False
            ),
        )


@dataclass(frozen=True, slots=True)
class AdvanceResult(CanonicalModel):
    outcome: AdvanceOutcome
    from_phase: str
    to_phase: str | None = None
    reasons: tuple[str, ...] = ()

    @property
    def advanced(self) -> bool:
        return self.outcome is not AdvanceOutcome.BLOCKED


@dataclass(frozen=True, slots=True)
class Acknowledged(CanonicalModel):
    run_id: str
    entries_appended: int
    already_terminal: bool


@dataclass(frozen=True, slots=True)
class WorkItemStatus(CanonicalModel):
    work_item_id: str
    phase: str
    state: WorkItemState
    cycle_state: CycleState | None
    iterations: int
    last_verification: VerificationStatus | None


@dataclass(frozen=True, slots=True)
class RunStatusReport(CanonicalModel):
    """Point-in-time view of a run, derived entirely from its ledger."""

    run_id: str
    status: RunStatus
    active_phase: str
    active_phase_index: int
    phases: tuple[str, ...]
    work_items: tuple[WorkItemStatus, ...]
    ledger_length: int
    last_transition_at: datetime | None
    critical_path: tuple[str, ...]
    checklist: Mapping[str, ChecklistStatus]

    @property
    def cycle_states(self) -> dict[str, CycleState]:
        return {
            item.work_item_id: item.cycle_state
            for item in self.work_items
            if item.cycle_state is not None
        }

    @property
    def work_item_states(self) -> dict[str, WorkItemState]:
        return {item.work_item_id: item.state for item in self.work_items}


def canonical_json(value: object) -> str:
    """Deterministic JSON for persistence payloads and digests."""

    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def utc_now() -> datetime:
    return datetime.now(UTC)


def datetime_to_iso8601z(value: datetime) -> str:
    normalized = _as_datetime(value, "datetime")
    return normalized.isoformat(timespec="microseconds").replace("+00:00", "Z")


def parse_datetime(value: object, path: str = "datetime") -> datetime:
    return _as_datetime(value, path)


def _fail(path: str, message: str) -> NoReturn:
    raise ValueError(f"{path}: {message}")


def _type_name(value: object) -> str:
    return type(value).__name__


def _expect_object(
    value: object,
    path: str,
    *,
    required: set[str],
    optional: set[str] | None = None,
) -> dict[str, object]:
    if not isinstance(value, Mapping):
        _fail(path, f"expected object, got {_type_name(value)}")
    for key in value:
        if not isinstance(key, str):
            _fail(path, f"object keys must be strings, got {_type_name(key)}")
    parsed: dict[str, object] = dict(value)
    present = set(parsed)
    for label, names in (
        ("unexpected fields", present - required - (optional or set())),
        ("missing required fields", required - present),
    ):
        if names:
            _fail(path, f"{label}: {sorted(names)}")
    return parsed


def _as_str(value: object, path: str, *, min_len: int = 1, max_len: int = _MAX_TEXT) -> str:
    """``value`` stripped, with its length checked after stripping."""
    if not isinstance(value, str):
        _fail(path, f"expected string, got {_type_name(value)}")
    text = value.strip()
    if len(text) < min_len:
        _fail(path, f"must be at least {min_len} character(s)")
    if len(text) > max_len:
        _fail(path, f"must be <= {max_len} characters")
    return text


def _as_optional_str(value: object, path: str) -> str | None:
    return None if value is None else _as_str(value, path)


def _as_identifier(value: object, path: str) -> str:
    try:
        return domain_ids.validate_identifier(value)
    except ValueError as exc:
        _fail(path, str(exc))


def _as_int(value: object, path: str, *, minimum: int | None = None) -> int:
    if isinstance(value, int) and not isinstance(value, bool):
        return _at_least(value, minimum, path)
    _fail(path, f"expected integer, got {_type_name(value)}")


def _as_float(value: object, path: str, *, minimum: float | None = None) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        _fail(path, f"expected number, got {_type_name(value)}")
    number = float(value)
    if math.isnan(number) or math.isinf(number):
        _fail(path, "must be finite")
    return _at_least(number, minimum, path)


def _at_least(number: TNumber, minimum: TNumber | None, path: str) -> TNumber:
    if minimum is not None and number < minimum:
        _fail(path, f"must be >= {minimum}")
    return number


def _as_datetime(value: object, path: str) -> datetime:
    """Aware datetime or ISO-8601 text (``Z`` accepted), normalized to UTC."""
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value)
        except ValueError as exc:
            _fail(path, f"invalid ISO-8601 datetime: {value!r} ({exc})")
    else:
        _fail(path, f"expected datetime or ISO-8601 string, got {_type_name(value)}")
    if parsed.utcoffset() is None:
        _fail(path, "datetime must be timezone-aware UTC")
    return parsed.astimezone(UTC)


def _as_enum(enum_type: type[TEnum], value: object, path: str) -> TEnum:
    if isinstance(value, enum_type):
        return value
    try:
        return enum_type(value)
    except ValueError:
        allowed = ", ".join(sorted(str(member.value) for member in enum_type))
        _fail(path, f"invalid value {value!r}; expected one of: {allowed}")


def _as_sequence(value: object, path: str) -> list[object]:
    if not isinstance(value, (list, tuple)):
        _fail(path, f"expected array, got {_type_name(value)}")
    return list(value)


def _as_str_tuple(
    value: object,
    path: str,
    *,
    allow_empty: bool,
    unique: bool,
) -> tuple[str, ...]:
    items = _as_sequence(value, path)
    if not items and not allow_empty:
        _fail(path, "must not be empty")
    if len(items) > _MAX_COLLECTION:
        _fail(path, f"too many items (>{_MAX_COLLECTION})")
    parsed = tuple(_as_str(item, f"{path}[{index}]") for index, item in enumerate(items))
    if unique and len(frozenset(parsed)) < len(parsed):
        _fail(path, "contains duplicate values")
    return parsed


def _serialize_value(value: object, path: str) -> JSONValue:
    if isinstance(value, Enum):
        return _serialize_value(value.value, path)
    if value is None or isinstance(value, (bool, int, str)):
        return value
    if isinstance(value, float):
        if math.isnan(value) or math.isinf(value):
            _fail(path, "float values must be finite")
        return value
    if isinstance(value, datetime):
        return datetime_to_iso8601z(value)
    if isinstance(value, (tuple, list)):
        return [_serialize_value(item, f"{path}[]") for item in value]
    if is_dataclass(value) and not isinstance(value, type):
        value = {field.name: getattr(value, field.name) for field in fields(value)}
    if isinstance(value, Mapping):
        serialized: dict[str, JSONValue] = {}
        for key, item in value.items():
            if not isinstance(key, str):
                _fail(path, "dict keys must be strings")
            serialized[key] = _serialize_value(item, f"{path}.{key}")
        return serialized
    _fail(path, f"cannot serialize value of type {_type_name(value)}")


__all__ = [
    "ABORT_OUTCOME",
    "Acknowledged",
    "AdvanceOutcome",
    "AdvanceResult",
    "CanonicalModel",
    "ChecklistStatus",
    "CycleEvent",
    "CycleState",
    "JSONValue",
    "LedgerEntry",
    "LedgerEntryKind",
    "RunStatus",
    "RunStatusReport",
    "TERMINAL_CYCLE_STATES",
    "TERMINAL_WORK_ITEM_STATES",
    "Transition",
    "VerificationStatus",
    "WorkItem",
    "WorkItemState",
    "WorkItemStatus",
    "canonical_json",
    "datetime_to_iso8601z",
    "parse_datetime",
    "utc_now",
]
