"""Unit tests for the read-only status dashboard.

Uses Textual's async test harness (App.run_test). The install-hint path runs
without Textual.
"""

from __future__ import annotations

import pytest

from phasegate.control_plane import RunCoordinator, SchedulerLimits
from phasegate.domain.models import CycleEvent, RunStatus
from phasegate.ui import tui
from phasegate.ui.tui import run_tui, tui_available

requires_textual = pytest.mark.skipif(
    not tui_available(), reason="Textual not installed; skipping dashboard tests"
)


def _coordinator_with_run() -> tuple[RunCoordinator, str]:
    coordinator = RunCoordinator(limits=SchedulerLimits(max_in_flight=2), max_iterations=3)
    run_id = coordinator.create_run(
        [{"id": "spec"}, {"id": "core", "dependencies": ["spec"]}, {"id": "docs"}],
        {
            "phases": [
                {"name": "design", "work_items": ["spec"]},
                {"name": "build", "work_items": ["core", "docs"]},
            ]
        },
        run_id="dash",
    )
    coordinator.report_cycle_event(run_id, "spec", CycleEvent.PLAN_PRODUCED)
    return coordinator, run_id


def test_missing_textual_prints_install_hint(
    monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    monkeypatch.setattr(tui, "find_spec", lambda name: None)

    assert not tui_available()
    assert run_tui({}, "dash") == 2
    assert "pip install -e '.[tui]'" in capsys.readouterr().err


@requires_textual
class TestDashboard:
    @pytest.mark.asyncio
    async def test_initial_render_shows_items_and_ledger(self) -> None:
        from textual.widgets import DataTable

        from phasegate.ui.tui.app import PhasegateDashboard

        coordinator, run_id = _coordinator_with_run()
        app = PhasegateDashboard(coordinator, run_id)

        async with app.run_test() as pilot:
            await pilot.pause()
            work_items = app.query_one("#work-items", DataTable)
            ledger = app.query_one("#ledger-tail", DataTable)

            assert app.refresh_count == 1
            assert work_items.row_count == 3
            assert ledger.row_count == 1
            assert app.last_report is not None
            assert app.last_report.status is RunStatus.ACTIVE
            assert app.last_report.active_phase == "design"

    @pytest.mark.asyncio
    async def test_refresh_binding_catches_up_with_new_entries(self) -> None:
        from textual.widgets import DataTable

        from phasegate.ui.tui.app import PhasegateDashboard

        coordinator, run_id = _coordinator_with_run()
        app = PhasegateDashboard(coordinator, run_id)

        async with app.run_test() as pilot:
            await pilot.pause()
            coordinator.report_cycle_event(run_id, "spec", CycleEvent.ARTIFACT_PRODUCED)
            await pilot.press("r")
            await pilot.pause()

            assert app.refresh_count == 2
            assert app.query_one("#ledger-tail", DataTable).row_count == 2
            assert app.last_report is not None
            assert app.last_report.ledger_length == 2

    @pytest.mark.asyncio
    async def test_ledger_tail_is_bounded(self) -> None:
        from textual.widgets import DataTable

        from phasegate.ui.tui.app import LEDGER_TAIL, PhasegateDashboard

        coordinator = RunCoordinator(max_iterations=LEDGER_TAIL + 5)
        run_id = coordinator.create_run(
            [{"id": "w1"}], {"phases": [{"name": "main", "work_items": ["w1"]}]}, run_id="tail"
        )
        coordinator.report_cycle_event(run_id, "w1", CycleEvent.PLAN_PRODUCED)
        for _ in range(LEDGER_TAIL):
            coordinator.report_cycle_event(run_id, "w1", CycleEvent.ARTIFACT_PRODUCED)
            coordinator.report_cycle_event(run_id, "w1", CycleEvent.VERIFICATION_FAILED)
        app = PhasegateDashboard(coordinator, run_id)

        async with app.run_test() as pilot:
            await pilot.pause()

            assert app.query_one("#ledger-tail", DataTable).row_count == LEDGER_TAIL

    def test_state_cells_are_styled_unless_color_is_off(self) -> None:
        from rich.style import Style

        from phasegate.ui.tui.app import state_text

        done = state_text("done")
        assert done.plain == "done"
        assert isinstance(done.style, Style)
        assert done.style.bold
        assert state_text("drafting").style == ""
        assert state_text(None).plain == "-"
        assert state_text("done", no_color=True).style == ""
