"""Failure classification at the process boundary."""

from __future__ import annotations

import pytest

from phasegate.config import ConfigLoadError
from phasegate.domain.errors import (
    LedgerIntegrityError,
    PersistenceUnavailable,
    RunComplete,
    StructuralError,
)
from phasegate.main import ExitCode, classify_failure


@pytest.mark.parametrize(
    ("exc", "expected"),
    [
        (ConfigLoadError("bad toml"), ExitCode.CONFIG_ERROR),
        (ValueError("bad value"), ExitCode.CONFIG_ERROR),
        (StructuralError("run r1 already exists"), ExitCode.TRANSITION_ERROR),
        (RunComplete("r1"), ExitCode.TRANSITION_ERROR),
        (PersistenceUnavailable("locked"), ExitCode.PERSISTENCE_UNAVAILABLE),
        (LedgerIntegrityError("gap"), ExitCode.INTERNAL_ERROR),
        (RuntimeError("boom"), ExitCode.INTERNAL_ERROR),
    ],
)
def test_failures_map_to_documented_exit_codes(exc: Exception, expected: ExitCode) -> None:
    assert classify_failure(exc) is expected


def test_cause_chain_is_followed() -> None:
    try:
        try:
            raise PersistenceUnavailable("database is locked")
        except PersistenceUnavailable as inner:
            raise RuntimeError("wrapped") from inner
    except RuntimeError as outer:
        assert classify_failure(outer) is ExitCode.PERSISTENCE_UNAVAILABLE
