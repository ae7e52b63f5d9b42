"""
phasegate — configuration defaults, field table and validation.

Every section and field is declared once in ``_SECTIONS``. Validation walks that
table and reports each problem as a dotted path plus a message, so a broken
``phasegate.toml`` is explained in one pass rather than one error at a time.

Profiles (``[profiles.<name>]``) are partial overlays of the same sections and
are validated with the same table, minus the required-field check.
"""

from __future__ import annotations

import copy
import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Final, Literal, TypedDict

CONFIG_SCHEMA_VERSION: Final[int] = 1
BUILTIN_PROFILE_NAMES: Final[tuple[str, ...]] = ("strict", "exploration")
LEDGER_BACKENDS: Final[tuple[str, ...]] = ("sqlite", "memory")
LOG_LEVELS: Final[tuple[str, ...]] = ("DEBUG", "INFO", "WARNING", "ERROR")

_PROFILE_NAME = re.compile(r"^[a-z][a-z0-9_-]*$")


@dataclass(frozen=True, slots=True)
class _Field:
    kind: Literal["int", "bool", "choice", "path"]
    minimum: int | None = None
    choices: tuple[str, ...] = ()


_SECTIONS: Final[dict[str, dict[str, _Field]]] = {
    "meta": {"schema_version": _Field("int", minimum=1)},
    "scheduler": {"max_in_flight": _Field("int", minimum=1)},
    "cycle": {"max_iterations": _Field("int", minimum=1)},
    "ledger": {
        "backend": _Field("choice", choices=LEDGER_BACKENDS),
        "path": _Field("path"),
        "busy_timeout_ms": _Field("int", minimum=0),
    },
    "observability": {
        "log_level": _Field("choice", choices=LOG_LEVELS),
        "log_dir": _Field("path"),
        "log_to_stdout": _Field("bool"),
    },
}

# meta is fixed per file; a profile cannot change the schema version.
_OVERLAY_SECTIONS: Final[frozenset[str]] = frozenset(_SECTIONS) - {"meta"}

PATH_FIELDS: Final[tuple[tuple[str, str], ...]] = tuple(
    (section, name)
    for section, fields in _SECTIONS.items()
    for name, spec in fields.items()
    if spec.kind == "path"
)


def overridable_fields() -> list[tuple[str, str, str]]:
    """``(section, field, kind)`` for every field a profile, env var or flag may set."""
    return [
        (section, name, spec.kind)
        for section in sorted(_OVERLAY_SECTIONS)
        for name, spec in sorted(_SECTIONS[section].items())
    ]


class MetaConfig(TypedDict):
    schema_version: int


class SchedulerConfig(TypedDict):
    max_in_flight: int


class CycleConfig(TypedDict):
    max_iterations: int


class LedgerConfig(TypedDict):
    backend: Literal["sqlite", "memory"]
    path: str
    busy_timeout_ms: int


class ObservabilityConfig(TypedDict):
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"]
    log_dir: str
    log_to_stdout: bool


class ProfileOverlay(TypedDict, total=False):
    scheduler: dict[str, object]
    cycle: dict[str, object]
    ledger: dict[str, object]
    observability: dict[str, object]


class PhasegateConfig(TypedDict):
    meta: MetaConfig
    scheduler: SchedulerConfig
    cycle: CycleConfig
    ledger: LedgerConfig
    observability: ObservabilityConfig
    profiles: dict[str, ProfileOverlay]


DEFAULT_CONFIG: Final[PhasegateConfig] = {
    "meta": {"schema_version": CONFIG_SCHEMA_VERSION},
    "scheduler": {"max_in_flight": 4},
    "cycle": {"max_iterations": 5},
    "ledger": {
        "backend": "sqlite",
        "path": "state/phasegate.sqlite",
        "busy_timeout_ms": 5000,
    },
    "observability": {
        "log_level": "INFO",
        "log_dir": "logs/",
        "log_to_stdout": False,
    },
    "profiles": {
        "strict": {
            "scheduler": {"max_in_flight": 1},
            "cycle": {"max_iterations": 3},
        },
        "exploration": {
            "scheduler": {"max_in_flight": 8},
            "cycle": {"max_iterations": 8},
        },
    },
}


@dataclass(frozen=True, slots=True)
class ConfigValidationIssue:
    """One problem found in a config payload."""

    path: str
    message: str


@dataclass(frozen=True, slots=True)
class ConfigValidationResult:
    config: dict[str, Any] | None
    issues: tuple[ConfigValidationIssue, ...]

    @property
    def is_valid(self) -> bool:
        return self.config is not None and not self.issues


class ConfigValidationError(ValueError):
    """Raised with every issue when a config payload does not validate."""

    def __init__(self, issues: Sequence[ConfigValidationIssue]) -> None:
        self.issues = tuple(issues)
        lines = [f"- {issue.path}: {issue.message}" for issue in self.issues]
        super().__init__("invalid config:\n" + ("\n".join(lines) or "unknown validation failure"))


def default_config() -> PhasegateConfig:
    return copy.deepcopy(DEFAULT_CONFIG)


def migration_guidance(found_version: int) -> str:
    """Explain what to upgrade when ``meta.schema_version`` does not match."""
    if found_version < CONFIG_SCHEMA_VERSION:
        return (
            f"schema version {found_version} is older than supported {CONFIG_SCHEMA_VERSION}; "
            "upgrade phasegate.toml to the current schema"
        )
    if found_version > CONFIG_SCHEMA_VERSION:
        return (
            f"schema version {found_version} is newer than supported {CONFIG_SCHEMA_VERSION}; "
            "upgrade the phasegate runtime"
        )
    return "schema version is current"


def merge_config(base: Mapping[str, object], overlay: Mapping[str, object]) -> dict[str, Any]:
    """Deep-merge ``overlay`` onto a copy of ``base``; neither input is modified."""
    merged: dict[str, Any] = copy.deepcopy(dict(base))
    for key in sorted(overlay):
        value = overlay[key]
        current = merged.get(key)
        if isinstance(value, Mapping) and isinstance(current, Mapping):
            merged[key] = merge_config(current, value)
        else:
            merged[key] = copy.deepcopy(value)
    return dict(sorted(merged.items()))


def apply_profile_overlay(config: Mapping[str, object], profile: str | None) -> dict[str, Any]:
    """Merge the named profile over ``config`` and validate the result."""
    name = (profile or "").strip()
    if not name:
        return merge_config({}, config)
    profiles = config.get("profiles")
    overlay = profiles.get(name) if isinstance(profiles, Mapping) else None
    if not isinstance(overlay, Mapping):
        problem = (
            f"profile {name!r} is not defined"
            if overlay is None
            else "profile overlay must be an object"
        )
        raise ConfigValidationError((ConfigValidationIssue("profiles", problem),))
    return assert_valid_config(merge_config(config, overlay), active_profile=name)


def validate_config(
    config: Mapping[str, object] | object,
    *,
    active_profile: str | None = None,
) -> ConfigValidationResult:
    """Check ``config`` against the field table and collect every issue."""
    issues: list[ConfigValidationIssue] = []
    normalized = _validate_root(config, issues)
    selected = active_profile.strip() if isinstance(active_profile, str) else ""
    if normalized is not None and not issues and selected:
        if selected not in normalized["profiles"]:
            missing = f"profile {selected!r} is not defined"
            issues.append(ConfigValidationIssue("profiles", missing))
    if issues or normalized is None:
        return ConfigValidationResult(config=None, issues=tuple(issues))
    return ConfigValidationResult(config=normalized, issues=())


def assert_valid_config(
    config: Mapping[str, object] | object,
    *,
    active_profile: str | None = None,
) -> dict[str, Any]:
    result = validate_config(config, active_profile=active_profile)
    if result.config is None:
        raise ConfigValidationError(result.issues)
    return result.config


def _validate_root(
    payload: object, issues: list[ConfigValidationIssue]
) -> dict[str, Any] | None:
    root = _as_mapping(payload, "<root>", issues)
    if root is None:
        return None
    _check_keys(root, {*_SECTIONS, "profiles"}, set(_SECTIONS), "", issues)

    out: dict[str, Any] = {}
    for section in sorted(_SECTIONS):
        if section in root:
            body = _as_mapping(root[section], section, issues)
            if body is not None:
                out[section] = _validate_section(section, body, section, issues, partial=False)

    version = out.get("meta", {}).get("schema_version")
    if version is not None and version != CONFIG_SCHEMA_VERSION:
        issues.append(ConfigValidationIssue("meta.schema_version", migration_guidance(version)))

    out["profiles"] = {}
    if root.get("profiles") is not None:
        profiles = _as_mapping(root["profiles"], "profiles", issues)
        if profiles is not None:
            out["profiles"] = _validate_profiles(profiles, issues)
    return out


def _validate_profiles(
    profiles: Mapping[str, object], issues: list[ConfigValidationIssue]
) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for name in sorted(profiles):
        where = f"profiles.{name}"
        if not _PROFILE_NAME.fullmatch(name):
            bad_name = f"profile name must match {_PROFILE_NAME.pattern}"
            issues.append(ConfigValidationIssue(where, bad_name))
            continue
        body = _as_mapping(profiles[name], where, issues)
        if body is None:
            continue
        _check_keys(body, set(_OVERLAY_SECTIONS), set(), where, issues)
        overlay: dict[str, Any] = {}
        for section in sorted(_OVERLAY_SECTIONS & body.keys()):
            section_where = f"{where}.{section}"
            section_body = _as_mapping(body[section], section_where, issues)
            if section_body is not None:
                overlay[section] = _validate_section(
                    section, section_body, section_where, issues, partial=True
                )
        out[name] = overlay
    return out


def _validate_section(
    section: str,
    body: Mapping[str, object],
    where: str,
    issues: list[ConfigValidationIssue],
    *,
    partial: bool,
) -> dict[str, Any]:
    fields = _SECTIONS[section]
    _check_keys(body, set(fields), set() if partial else set(fields), where, issues)
    out: dict[str, Any] = {}
    for name in sorted(fields.keys() & body.keys()):
        problem, value = _coerce(fields[name], body[name])
        if problem is None:
            out[name] = value
        else:
            issues.append(ConfigValidationIssue(f"{where}.{name}", problem))
    return out


def _coerce(spec: _Field, value: object) -> tuple[str | None, object]:
    """Return ``(problem, normalized value)``; ``problem`` is None when valid."""
    if spec.kind == "bool":
        if isinstance(value, bool):
            return None, value
        return f"expected boolean, got {type(value).__name__}", None
    if spec.kind == "int":
        if isinstance(value, bool) or not isinstance(value, int):
            return f"expected integer, got {type(value).__name__}", None
        if spec.minimum is not None and value < spec.minimum:
            return f"must be >= {spec.minimum}", None
        return None, value
    if not isinstance(value, str):
        return f"expected string, got {type(value).__name__}", None
    text = value.strip()
    if not text:
        return "must not be empty", None
    if spec.kind == "path" and "\x00" in text:
        return "must not contain NUL bytes", None
    if spec.kind == "choice" and text not in spec.choices:
        expected = ", ".join(sorted(spec.choices))
        return f"invalid value {text!r}; expected one of: {expected}", None
    return None, text


def _as_mapping(
    value: object, where: str, issues: list[ConfigValidationIssue]
) -> dict[str, object] | None:
    if not isinstance(value, Mapping):
        issues.append(ConfigValidationIssue(where, f"expected object, got {type(value).__name__}"))
        return None
    bad_keys = [key for key in value if not isinstance(key, str)]
    for key in bad_keys:
        issues.append(
            ConfigValidationIssue(where, f"object key must be string, got {type(key).__name__}")
        )
    return {key: item for key, item in value.items() if isinstance(key, str)}


def _check_keys(
    body: Mapping[str, object],
    allowed: set[str],
    required: set[str],
    where: str,
    issues: list[ConfigValidationIssue],
) -> None:
    prefix = f"{where}." if where else ""
    for key in sorted(body.keys() - allowed):
        issues.append(ConfigValidationIssue(prefix + key, "unknown field"))
    for key in sorted(required - body.keys()):
        issues.append(ConfigValidationIssue(prefix + key, "missing required field"))


__all__ = [
    "BUILTIN_PROFILE_NAMES",
    "CONFIG_SCHEMA_VERSION",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "ConfigValidationResult",
    "DEFAULT_CONFIG",
    "LEDGER_BACKENDS",
    "PATH_FIELDS",
    "PhasegateConfig",
    "ProfileOverlay",
    "apply_profile_overlay",
    "assert_valid_config",
    "default_config",
    "merge_config",
    "migration_guidance",
    "overridable_fields",
    "validate_config",
]
