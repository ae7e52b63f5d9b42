"""Read-only status dashboard entrypoint.

Exposes ``tui_available()`` for dependency checks and ``run_tui()`` for launching.
This module imports cleanly without Textual installed.
"""

from __future__ import annotations

import sys
from importlib.util import find_spec
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Mapping


def tui_available() -> bool:
    """Return whether the optional Textual dependency is installed."""
    return find_spec("textual") is not None


def run_tui(config: Mapping[str, Any], run_id: str, *, no_color: bool = False) -> int:
    """Open the dashboard for ``run_id``, or exit 2 with an install hint."""
    if not tui_available():
        print(
            "The dashboard requires an optional dependency. Install: pip install -e '.[tui]'",
            file=sys.stderr,
        )
        return 2

    from phasegate.control_plane import RunCoordinator
    from phasegate.ui.tui.app import run_dashboard

    coordinator = RunCoordinator.from_config(config)
    coordinator.get_status(run_id)
    return run_dashboard(coordinator, run_id, no_color=no_color)


__all__ = ["run_tui", "tui_available"]
