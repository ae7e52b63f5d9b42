"""Process entry point: runs the CLI and maps failures to exit codes."""

from __future__ import annotations

import sys
import traceback
from enum import IntEnum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterator, Sequence


class ExitCode(IntEnum):
    SUCCESS = 0
    GATE_BLOCKED = 1
    CONFIG_ERROR = 2
    TRANSITION_ERROR = 3
    INTERNAL_ERROR = 4
    PERSISTENCE_UNAVAILABLE = 5


def cli_entrypoint(argv: Sequence[str] | None = None) -> int:
    """Run the CLI and return its exit code. Only internal errors print a traceback."""

    try:
        from phasegate.ui.cli import run_cli

        return _exit_code_of(run_cli(argv))
    except SystemExit as exc:
        return _exit_code_of(exc.code)
    except Exception as exc:  # noqa: BLE001 - CLI boundary normalization.
        code = classify_failure(exc)
        if code is ExitCode.INTERNAL_ERROR:
            traceback.print_exception(exc, file=sys.stderr)
        else:
            _to_stderr(f"error: {str(exc).strip() or type(exc).__name__}")
        return int(code)


def classify_failure(exc: BaseException) -> ExitCode:
    """Exit code for the first exception in ``exc``'s cause chain that has one."""
    from phasegate.config import ConfigLoadError, ConfigValidationError
    from phasegate.domain.errors import (
        InfrastructureError,
        LedgerIntegrityError,
        StructuralError,
        TransitionError,
    )
    from phasegate.planning.plan_loader import PlanLoadError

    # Order matters: LedgerIntegrityError is an InfrastructureError and
    # StructuralError is a ValueError.
    routes: tuple[tuple[tuple[type[BaseException], ...], ExitCode], ...] = (
        ((LedgerIntegrityError,), ExitCode.INTERNAL_ERROR),
        ((InfrastructureError,), ExitCode.PERSISTENCE_UNAVAILABLE),
        ((StructuralError, TransitionError), ExitCode.TRANSITION_ERROR),
        (
            (
                ConfigLoadError,
                ConfigValidationError,
                PlanLoadError,
                FileNotFoundError,
                NotADirectoryError,
                PermissionError,
                ValueError,
            ),
            ExitCode.CONFIG_ERROR,
        ),
    )
    for link in _cause_chain(exc):
        for types, code in routes:
            if isinstance(link, types):
                return code
    return ExitCode.INTERNAL_ERROR


def _cause_chain(exc: BaseException) -> Iterator[BaseException]:
    seen: set[int] = set()
    current: BaseException | None = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        yield current
        if current.__cause__ is not None:
            current = current.__cause__
        elif not current.__suppress_context__:
            current = current.__context__
        else:
            current = None


def _exit_code_of(raw: object) -> int:
    if raw is None:
        return int(ExitCode.SUCCESS)
    if isinstance(raw, int) and raw in set(ExitCode):
        return raw
    if isinstance(raw, str) and raw.strip():
        _to_stderr(raw.strip())
    return int(ExitCode.INTERNAL_ERROR)


def _to_stderr(message: str) -> None:
    sys.stderr.write(message.rstrip("\n") + "\n")


__all__ = ["ExitCode", "classify_failure", "cli_entrypoint"]
