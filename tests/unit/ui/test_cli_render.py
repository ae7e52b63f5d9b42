"""Unit tests for the plain-text CLI renderer."""

from __future__ import annotations

import io

import pytest

from phasegate.ui.render import CLIRenderer, create_renderer


class _FakeTTY(io.StringIO):
    def isatty(self) -> bool:
        return True


@pytest.fixture
def tty(monkeypatch: pytest.MonkeyPatch) -> _FakeTTY:
    monkeypatch.delenv("NO_COLOR", raising=False)
    return _FakeTTY()


class TestColorPolicy:
    def test_non_tty_output_is_plain(self, capsys: pytest.CaptureFixture[str]) -> None:
        renderer = create_renderer()

        assert not renderer.color
        assert renderer.state("done") == "done"

    def test_tty_output_colors_known_states_only(self, tty: _FakeTTY) -> None:
        renderer = CLIRenderer(stream=tty)

        assert renderer.color
        assert renderer.state("done") == "\033[32mdone\033[0m"
        assert renderer.state("abandoned") == "\033[31mabandoned\033[0m"
        assert renderer.state("drafting") == "drafting"

    def test_flag_and_env_disable_color(
        self, tty: _FakeTTY, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        assert not CLIRenderer(no_color=True, stream=tty).color
        monkeypatch.setenv("NO_COLOR", "1")
        assert not CLIRenderer(stream=tty).color


class TestLayout:
    def test_table_aligns_columns_ignoring_color_codes(self, tty: _FakeTTY) -> None:
        renderer = CLIRenderer(stream=tty)

        renderer.table(
            ("item", "state"),
            [("spec", renderer.state("done")), ("build-core", renderer.state("in_progress"))],
            title="Work items:",
        )

        lines = tty.getvalue().splitlines()
        assert lines[0] == ""
        assert lines[1] == "Work items:"
        assert lines[2] == "  item        state"
        assert lines[3] == "  ----------  -----------"
        assert lines[4] == "  spec        \033[32mdone\033[0m"
        assert lines[5] == "  build-core  \033[33min_progress\033[0m"

    def test_empty_table_prints_nothing(self, capsys: pytest.CaptureFixture[str]) -> None:
        create_renderer().table(("a", "b"), [])

        assert capsys.readouterr().out == ""

    def test_text_helpers(self, capsys: pytest.CaptureFixture[str]) -> None:
        renderer = create_renderer(verbose=True)

        renderer.kv("Run", "r1")
        renderer.items(["a", "b"])
        renderer.ok("plan is valid")
        renderer.fail("gate blocked")
        renderer.warning("slow ledger")
        renderer.next_steps(["phasegate next r1"])
        renderer.next_steps([])

        assert renderer.verbose
        assert capsys.readouterr().out.splitlines() == [
            "Run: r1",
            "  - a",
            "  - b",
            "  OK  plan is valid",
            "  FAIL  gate blocked",
            "  Warning: slow ledger",
            "",
            "Next steps:",
            "  $ phasegate next r1",
        ]
