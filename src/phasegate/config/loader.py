"""
phasegate — effective configuration loader.

Layers, lowest first: built-in defaults, ``phasegate.toml``, the selected
profile, ``PHASEGATE_<SECTION>_<FIELD>`` environment variables, then CLI flags.
The profile comes from the ``profile`` argument, a ``profile`` CLI override or
``PHASEGATE_PROFILE``, in that order. Relative paths resolve against the
directory holding the config file.
"""

from __future__ import annotations

import json
import os
import tomllib
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Final

from phasegate.config.schema import (
    PATH_FIELDS,
    apply_profile_overlay,
    assert_valid_config,
    default_config,
    merge_config,
    overridable_fields,
)

DEFAULT_CONFIG_FILE: Final[str] = "phasegate.toml"
ENV_PREFIX: Final[str] = "PHASEGATE_"

_TRUTHY: Final[frozenset[str]] = frozenset({"1", "true", "t", "yes", "y", "on"})
_FALSY: Final[frozenset[str]] = frozenset({"0", "false", "f", "no", "n", "off"})


class ConfigLoadError(ValueError):
    """The config file is unreadable or an override has the wrong type."""


def load_config(
    config_path: str | Path | None = None,
    *,
    profile: str | None = None,
    cli_overrides: Mapping[str, object] | None = None,
    environ: Mapping[str, str] | None = None,
) -> dict[str, Any]:
    """Build the validated effective config.

    Without ``config_path`` a missing ``./phasegate.toml`` is fine; a named file
    must exist. ``cli_overrides`` uses dotted keys such as ``"cycle.max_iterations"``
    and ignores ``None`` values.
    """
    if config_path is None:
        source = (Path.cwd() / DEFAULT_CONFIG_FILE).resolve()
    else:
        source = Path(config_path).expanduser().resolve()
    env = os.environ if environ is None else environ
    flags = dict(cli_overrides or {})

    effective = assert_valid_config(
        merge_config(default_config(), _read_toml(source, required=config_path is not None))
    )
    chosen = _choose_profile(profile, flags, env)
    if chosen:
        effective = apply_profile_overlay(effective, chosen)
    effective = merge_config(effective, _env_layer(env))
    effective = merge_config(effective, _flag_layer(flags))
    effective = assert_valid_config(effective, active_profile=chosen)
    return normalize_paths(effective, base_dir=source.parent)


def normalize_paths(config: Mapping[str, object], *, base_dir: Path) -> dict[str, Any]:
    """Copy of ``config`` with path fields, profiles included, made absolute."""
    normalized = merge_config({}, config)
    profiles = normalized.get("profiles")
    scopes = [normalized]
    if isinstance(profiles, dict):
        scopes.extend(overlay for overlay in profiles.values() if isinstance(overlay, dict))
    for scope in scopes:
        for section, name in PATH_FIELDS:
            body = scope.get(section)
            if isinstance(body, dict) and isinstance(body.get(name), str):
                body[name] = _absolute(body[name], base_dir)
    return normalized


def dump_effective_config(config: Mapping[str, object]) -> str:
    return json.dumps(config, sort_keys=True, indent=2, separators=(",", ": "), ensure_ascii=False)


def _read_toml(path: Path, *, required: bool) -> dict[str, Any]:
    if not path.exists():
        if required:
            raise ConfigLoadError(f"config file not found: {path}")
        return {}
    try:
        with path.open("rb") as handle:
            return tomllib.load(handle)
    except tomllib.TOMLDecodeError as exc:
        raise ConfigLoadError(f"invalid TOML in {path}: {exc}") from exc
    except OSError as exc:
        raise ConfigLoadError(f"unable to read config file {path}: {exc}") from exc


def _choose_profile(
    explicit: str | None, flags: Mapping[str, object], env: Mapping[str, str]
) -> str | None:
    if explicit is not None:
        return explicit.strip() or None
    from_flag = flags.get("profile")
    if from_flag is not None:
        if not isinstance(from_flag, str):
            raise ConfigLoadError("cli override 'profile' must be a string")
        return from_flag.strip() or None
    return env.get(f"{ENV_PREFIX}PROFILE", "").strip() or None


def _env_layer(env: Mapping[str, str]) -> dict[str, Any]:
    layer: dict[str, Any] = {}
    for section, name, kind in overridable_fields():
        var = f"{ENV_PREFIX}{section.upper()}_{name.upper()}"
        if var in env:
            value = _from_env_text(env[var], kind, f"{var} -> {section}.{name}")
            layer.setdefault(section, {})[name] = value
    return layer


def _from_env_text(raw: str, kind: str, label: str) -> object:
    text = raw.strip()
    if kind == "int":
        try:
            return int(text)
        except ValueError as exc:
            raise ConfigLoadError(f"{label} must be an integer") from exc
    if kind == "bool":
        if text.lower() in _TRUTHY:
            return True
        if text.lower() in _FALSY:
            return False
        raise ConfigLoadError(f"{label} must be a boolean (true/false/1/0/yes/no/on/off)")
    return text


def _flag_layer(flags: Mapping[str, object]) -> dict[str, Any]:
    layer: dict[str, Any] = {}
    for key in sorted(flags):
        value = flags[key]
        if key == "profile" or value is None:
            continue
        parts = [part for part in key.split(".") if part]
        if not parts:
            raise ConfigLoadError(f"invalid CLI override key {key!r}")
        cursor = layer
        for part in parts[:-1]:
            cursor = cursor.setdefault(part, {})
        cursor[parts[-1]] = value
    return layer


def _absolute(raw: str, base_dir: Path) -> str:
    candidate = Path(os.path.expandvars(raw)).expanduser()
    if not candidate.is_absolute():
        candidate = base_dir / candidate
    return Path(os.path.normpath(candidate)).as_posix()


__all__ = [
    "ConfigLoadError",
    "DEFAULT_CONFIG_FILE",
    "ENV_PREFIX",
    "dump_effective_config",
    "load_config",
    "normalize_paths",
]
