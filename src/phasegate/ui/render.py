"""Plain-text rendering for the ``phasegate`` CLI.

Output is deterministic and line-oriented. ANSI color is used only for state
labels, and only when the output stream is a TTY and neither ``NO_COLOR`` nor
``--no-color`` is set.
"""

from __future__ import annotations

import os
import re
import sys
from typing import TYPE_CHECKING, Final, TextIO

if TYPE_CHECKING:
    from collections.abc import Sequence

_ANSI_RESET: Final[str] = "\033[0m"
_ANSI_CODE: Final[re.Pattern[str]] = re.compile(r"\033\[[0-9;]*m")
_GREEN, _YELLOW, _RED = "\033[32m", "\033[33m", "\033[31m"
_STATE_COLORS: Final[dict[str, str]] = {
    **dict.fromkeys(("done", "pass", "passed", "complete", "advanced", "completed"), _GREEN),
    **dict.fromkeys(("in_progress", "active", "blocked"), _YELLOW),
    **dict.fromkeys(("abandoned", "aborted", "failed"), _RED),
}


class CLIRenderer:
    """Line printer for CLI commands; ``stream=None`` means the current ``sys.stdout``."""

    def __init__(
        self, *, no_color: bool = False, verbose: bool = False, stream: TextIO | None = None
    ) -> None:
        self.verbose = verbose
        self._stream = stream
        target = sys.stdout if stream is None else stream
        self._color = (
            not no_color
            and not os.environ.get("NO_COLOR", "")
            and hasattr(target, "isatty")
            and target.isatty()
        )

    @property
    def color(self) -> bool:
        return self._color

    def state(self, value: str) -> str:
        """``value`` wrapped in its state color when color is on."""
        color = _STATE_COLORS.get(value)
        if not self._color or color is None:
            return value
        return f"{color}{value}{_ANSI_RESET}"

    def _emit(self, line: str) -> None:
        print(line, file=self._stream)

    def kv(self, key: str, value: object) -> None:
        self._emit(f"{key}: {value}")

    def text(self, line: str) -> None:
        self._emit(line)

    def section(self, title: str) -> None:
        self._emit(f"\n{title}")

    def warning(self, text: str) -> None:
        self._emit(f"  Warning: {text}")

    def items(self, entries: Sequence[str], *, prefix: str = "- ") -> None:
        for entry in entries:
            self._emit(f"  {prefix}{entry}")

    def table(
        self,
        headers: Sequence[str],
        rows: Sequence[Sequence[str]],
        *,
        title: str | None = None,
    ) -> None:
        """Aligned table; widths ignore ANSI color codes. Nothing for no rows."""
        if not rows:
            return
        widths = [len(header) for header in headers]
        for row in rows:
            for index, cell in enumerate(row[: len(headers)]):
                widths[index] = max(widths[index], _visible_len(str(cell)))

        def line(cells: Sequence[str]) -> str:
            padded = []
            for index, width in enumerate(widths):
                cell = str(cells[index]) if index < len(cells) else ""
                padded.append(cell + " " * (width - _visible_len(cell)))
            return "  " + "  ".join(padded).rstrip()

        if title:
            self.section(title)
        self._emit(line(headers))
        self._emit("  " + "  ".join("-" * width for width in widths))
        for row in rows:
            self._emit(line(row))

    def next_steps(self, steps: Sequence[str]) -> None:
        if steps:
            self.section("Next steps:")
            for step in steps:
                self._emit(f"  $ {step}")

    def ok(self, label: str) -> None:
        self._emit(f"  OK  {label}")

    def fail(self, label: str) -> None:
        self._emit(f"  FAIL  {label}")


def _visible_len(text: str) -> int:
    return len(_ANSI_CODE.sub("", text))


def create_renderer(*, no_color: bool = False, verbose: bool = False) -> CLIRenderer:
    return CLIRenderer(no_color=no_color, verbose=verbose)


__all__ = ["CLIRenderer", "create_renderer"]
