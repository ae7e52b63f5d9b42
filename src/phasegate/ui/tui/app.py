"""Textual status dashboard: active phase, work item table and ledger tail.

The dashboard never mutates a run. ``r`` catches the view up with the ledger,
which also picks up entries written by other processes.
"""

from __future__ import annotations

from typing import Final

from rich.style import Style
from rich.text import Text
from textual.app import App, ComposeResult
from textual.binding import Binding
from textual.containers import Vertical
from textual.widgets import DataTable, Footer, Static

from phasegate.control_plane import RunCoordinator
from phasegate.domain.models import LedgerEntry, RunStatusReport

LEDGER_TAIL: Final[int] = 20

_STATE_STYLES: Final[dict[str, Style]] = {
    "done": Style(color="#4ec990", bold=True),
    "abandoned": Style(color="#e05555", bold=True),
    "in_progress": Style(color="#3fa9f5"),
    "failed": Style(color="#e05555"),
    "passed": Style(color="#4ec990"),
}
_S_DIM: Final[Style] = Style(color="#7f8aa3")

_CSS: Final[str] = """
Screen { background: #0b1020; color: #d7def0; }
#summary { height: auto; padding: 0 1; background: #131a2e; }
#work-items { height: 1fr; }
#ledger-tail { height: 1fr; }
.heading { padding: 0 1; color: #7f8aa3; }
"""
_CSS_NO_COLOR: Final[str] = """
Screen { background: black; color: white; }
#summary { height: auto; padding: 0 1; }
#work-items { height: 1fr; }
#ledger-tail { height: 1fr; }
.heading { padding: 0 1; }
"""

WORK_ITEM_COLUMNS: Final[tuple[str, ...]] = (
    "work item",
    "phase",
    "state",
    "cycle",
    "iterations",
    "verification",
)
LEDGER_COLUMNS: Final[tuple[str, ...]] = ("#", "kind", "subject", "transition", "outcome")


class PhasegateDashboard(App[None]):
    """Read-only view of one run."""

    CSS = _CSS
    TITLE = "phasegate"
    BINDINGS = [
        Binding("r", "refresh_status", "Refresh", show=True),
        Binding("q", "quit", "Quit", show=True),
    ]

    def __init__(
        self, coordinator: RunCoordinator, run_id: str, *, no_color: bool = False
    ) -> None:
        super().__init__()
        self._no_color = no_color
        self._coordinator = coordinator
        self._run_id = run_id
        self.refresh_count = 0
        self.last_report: RunStatusReport | None = None

    def compose(self) -> ComposeResult:
        with Vertical():
            yield Static("", id="summary")
            yield Static("Work items", classes="heading")
            yield DataTable(id="work-items", zebra_stripes=True)
            yield Static(f"Ledger (last {LEDGER_TAIL})", classes="heading")
            yield DataTable(id="ledger-tail")
        yield Footer()

    def on_mount(self) -> None:
        self.query_one("#work-items", DataTable).add_columns(*WORK_ITEM_COLUMNS)
        self.query_one("#ledger-tail", DataTable).add_columns(*LEDGER_COLUMNS)
        self.action_refresh_status()

    def action_refresh_status(self) -> None:
        report = self._coordinator.resume_run(self._run_id)
        entries = self._coordinator.ledger(self._run_id)[-LEDGER_TAIL:]
        self._render_summary(report)
        self._render_work_items(report)
        self._render_ledger(entries)
        self.last_report = report
        self.refresh_count += 1

    def _render_summary(self, report: RunStatusReport) -> None:
        position = f"{report.active_phase_index + 1}/{len(report.phases)}"
        lines = [
            f"run {report.run_id}  [{report.status.value}]",
            f"phase {report.active_phase} ({position})  ledger entries: {report.ledger_length}",
        ]
        if report.critical_path:
            lines.append("remaining critical path: " + " -> ".join(report.critical_path))
        self.query_one("#summary", Static).update("\n".join(lines))

    def _render_work_items(self, report: RunStatusReport) -> None:
        table = self.query_one("#work-items", DataTable)
        table.clear()
        for item in report.work_items:
            table.add_row(
                item.work_item_id,
                item.phase,
                state_text(item.state.value, no_color=self._no_color),
                state_text(
                    None if item.cycle_state is None else item.cycle_state.value,
                    no_color=self._no_color,
                ),
                str(item.iterations),
                state_text(
                    None if item.last_verification is None else item.last_verification.value,
                    no_color=self._no_color,
                ),
                key=item.work_item_id,
            )

    def _render_ledger(self, entries: tuple[LedgerEntry, ...]) -> None:
        table = self.query_one("#ledger-tail", DataTable)
        table.clear()
        for entry in entries:
            table.add_row(
                str(entry.ordinal),
                entry.kind.value,
                entry.work_item_id or entry.gate_name or "-",
                f"{entry.prior_state} -> {entry.new_state}",
                entry.outcome,
                key=str(entry.ordinal),
            )


def state_text(value: str | None, *, no_color: bool = False) -> Text:
    """Styled table cell for a state name; ``None`` renders as a dim dash."""
    if value is None:
        return Text("-") if no_color else Text("-", style=_S_DIM)
    style = None if no_color else _STATE_STYLES.get(value)
    return Text(value) if style is None else Text(value, style=style)


def run_dashboard(coordinator: RunCoordinator, run_id: str, *, no_color: bool = False) -> int:
    """Create and run the dashboard, returning an exit code."""
    PhasegateDashboard.CSS = _CSS_NO_COLOR if no_color else _CSS
    PhasegateDashboard(coordinator, run_id, no_color=no_color).run()
    return 0


__all__ = ["LEDGER_TAIL", "PhasegateDashboard", "run_dashboard", "state_text"]
