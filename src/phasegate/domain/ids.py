"""Run ID generation and identifier validation.

Generated run ids are ``run-<ULID>``: a 48-bit millisecond timestamp followed by
80 random bits, written as 26 Crockford Base32 characters, so ids created later
sort later.
"""

from __future__ import annotations

import re
import secrets
import time
from collections.abc import Callable
from typing import Final

RUN_ID_PREFIX: Final[str] = "run"

_CROCKFORD: Final[str] = "0123456789ABCDEFGHJKMNPQRSTVWXYZ"
_ULID_CHARS: Final[int] = 26
_RANDOM_BITS: Final[int] = 80
_MAX_TIMESTAMP_MS: Final[int] = (1 << 48) - 1

# Caller-chosen identifiers: work items, phases and explicit run ids.
_IDENTIFIER_RE: Final[re.Pattern[str]] = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._:-]{0,127}$")
IDENTIFIER_PATTERN_DESCRIPTION: Final[str] = (
    "1-128 chars of [A-Za-z0-9._:-], starting with a letter or digit"
)


def generate_run_id(
    *,
    timestamp_ms: int | None = None,
    randbytes: Callable[[int], bytes] | None = None,
) -> str:
    """New ``run-<ULID>`` id; both arguments exist for deterministic tests."""
    stamp = time.time_ns() // 1_000_000 if timestamp_ms is None else timestamp_ms
    if not 0 <= stamp <= _MAX_TIMESTAMP_MS:
        raise ValueError(f"timestamp_ms out of range: expected 0..{_MAX_TIMESTAMP_MS}, got {stamp}")
    noise = (randbytes or secrets.token_bytes)(_RANDOM_BITS // 8)
    if len(noise) != _RANDOM_BITS // 8:
        raise ValueError(f"randbytes must return exactly {_RANDOM_BITS // 8} bytes")

    value = (stamp << _RANDOM_BITS) | int.from_bytes(noise, "big")
    digits = []
    for _ in range(_ULID_CHARS):
        digits.append(_CROCKFORD[value & 0b11111])
        value >>= 5
    return f"{RUN_ID_PREFIX}-{''.join(reversed(digits))}"


def validate_identifier(value: object, *, kind: str = "identifier") -> str:
    """Return ``value`` unchanged if it is a well-formed identifier."""
    if not isinstance(value, str):
        raise ValueError(f"{kind} must be a string, got {type(value).__name__}")
    if _IDENTIFIER_RE.fullmatch(value) is None:
        raise ValueError(f"{kind} {value!r} must be {IDENTIFIER_PATTERN_DESCRIPTION}")
    return value


def validate_run_id(value: object) -> str:
    return validate_identifier(value, kind="run id")


__all__ = [
    "IDENTIFIER_PATTERN_DESCRIPTION",
    "RUN_ID_PREFIX",
    "generate_run_id",
    "validate_identifier",
    "validate_run_id",
]
