"""Command-line interface router for phasegate."""

from __future__ import annotations

import argparse
import json
import sys
from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Final

from phasegate.config import dump_effective_config, load_config
from phasegate.control_plane import RunCoordinator
from phasegate.domain import ids
from phasegate.domain.models import CycleEvent, LedgerEntry, RunStatusReport
from phasegate.observability.logging import setup_logging, shutdown_logging
from phasegate.planning.plan_loader import load_plan, validate_plan
from phasegate.ui.render import CLIRenderer, create_renderer

BLOCKED_EXIT_CODE: Final[int] = 1
_CYCLE_EVENT_CHOICES: Final[tuple[str, ...]] = tuple(event.value for event in CycleEvent)


@dataclass(frozen=True, slots=True)
class CLIError(RuntimeError):
    """Typed CLI failure with an explicit process exit code."""

    message: str
    exit_code: int = 2

    def __str__(self) -> str:
        return self.message


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    """Build the argparse command router."""

    parser = argparse.ArgumentParser(
        prog="phasegate",
        description=(
            "phasegate — phase-gated work orchestration core.\n\n"
            "Common workflows:\n"
            "  phasegate validate plan.yaml          Check a plan without creating a run\n"
            "  phasegate create plan.yaml            Create a run and print its id\n"
            "  phasegate next RUN_ID                 List work items to start now\n"
            "  phasegate report RUN_ID ITEM EVENT    Record a cycle event\n"
            "  phasegate advance RUN_ID              Try to cross the active phase gate\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--config",
        dest="config_path",
        default=None,
        help="Path to phasegate TOML config (default: ./phasegate.toml if present).",
    )
    common.add_argument("--profile", default=None, help="Optional config profile overlay name.")
    common.add_argument(
        "--verbose", "-v", action="store_true", default=False, help="Show detailed output."
    )
    common.add_argument(
        "--no-color",
        action="store_true",
        default=False,
        help="Disable colored output (also respects NO_COLOR env var).",
    )
    common.add_argument("--json", action="store_true", help="Emit deterministic JSON output")

    subparsers = parser.add_subparsers(dest="command", required=True)

    validate_parser = subparsers.add_parser(
        "validate", parents=[common], help="Validate a plan file without creating a run"
    )
    validate_parser.add_argument("plan_path", help="Plan file (.yaml, .yml, .json or .toml)")
    validate_parser.set_defaults(handler=_cmd_validate)

    create_parser = subparsers.add_parser(
        "create", parents=[common], help="Create a run from a plan file"
    )
    create_parser.add_argument("plan_path", help="Plan file (.yaml, .yml, .json or .toml)")
    create_parser.add_argument("--run-id", default=None, help="Explicit run id (default: ULID).")
    create_parser.add_argument(
        "--max-in-flight", type=int, default=None, help="Override scheduler.max_in_flight."
    )
    create_parser.add_argument(
        "--max-iterations", type=int, default=None, help="Override cycle.max_iterations."
    )
    create_parser.set_defaults(handler=_cmd_create)

    next_parser = subparsers.add_parser(
        "next", parents=[common], help="Show work items that may start now"
    )
    next_parser.add_argument("run_id")
    next_parser.set_defaults(handler=_cmd_next)

    report_parser = subparsers.add_parser(
        "report", parents=[common], help="Report a cycle event for a work item"
    )
    report_parser.add_argument("run_id")
    report_parser.add_argument("work_item_id")
    report_parser.add_argument("event", choices=_CYCLE_EVENT_CHOICES)
    report_parser.set_defaults(handler=_cmd_report)

    checklist_parser = subparsers.add_parser(
        "checklist", parents=[common], help="Record a checklist result"
    )
    checklist_parser.add_argument("run_id")
    checklist_parser.add_argument("name", help="Checklist item name")
    outcome = checklist_parser.add_mutually_exclusive_group(required=True)
    outcome.add_argument("--passed", dest="passed", action="store_true")
    outcome.add_argument("--failed", dest="passed", action="store_false")
    checklist_parser.add_argument("--work-item", dest="work_item_id", default=None)
    checklist_parser.set_defaults(handler=_cmd_checklist)

    advance_parser = subparsers.add_parser(
        "advance",
        parents=[common],
        help="Try to advance past the active phase (exit 1 when blocked)",
    )
    advance_parser.add_argument("run_id")
    advance_parser.set_defaults(handler=_cmd_advance)

    abort_parser = subparsers.add_parser("abort", parents=[common], help="Abort a run")
    abort_parser.add_argument("run_id")
    abort_parser.set_defaults(handler=_cmd_abort)

    status_parser = subparsers.add_parser("status", parents=[common], help="Show run status")
    status_parser.add_argument("run_id")
    status_parser.set_defaults(handler=_cmd_status)

    ledger_parser = subparsers.add_parser(
        "ledger", parents=[common], help="Print ledger entries of a run"
    )
    ledger_parser.add_argument("run_id")
    ledger_parser.add_argument(
        "--after", type=int, default=0, help="Only entries with a greater ordinal."
    )
    ledger_parser.set_defaults(handler=_cmd_ledger)

    runs_parser = subparsers.add_parser("runs", parents=[common], help="List known runs")
    runs_parser.set_defaults(handler=_cmd_runs)

    config_parser = subparsers.add_parser(
        "config", parents=[common], help="Show the effective configuration"
    )
    config_parser.set_defaults(handler=_cmd_config)

    tui_parser = subparsers.add_parser(
        "tui", parents=[common], help="Open the read-only status dashboard"
    )
    tui_parser.add_argument("run_id")
    tui_parser.set_defaults(handler=_cmd_tui)

    return parser


def run_cli(argv: Sequence[str] | None = None) -> int:
    """Parse argv, route to a command handler, and return the process exit code."""

    parser = build_parser()
    namespace = parser.parse_args(list(argv) if argv is not None else None)
    handler = getattr(namespace, "handler", None)
    if not callable(handler):
        parser.print_help(sys.stderr)
        return 2

    try:
        return int(handler(namespace))
    except CLIError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return exc.exit_code
    finally:
        shutdown_logging()


# ---------------------------------------------------------------------------
# Command handlers
# ---------------------------------------------------------------------------


def _cmd_validate(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    document = load_plan(args.plan_path)
    summary = validate_plan(
        document,
        max_in_flight=config["scheduler"]["max_in_flight"],
        max_iterations=config["cycle"]["max_iterations"],
    )
    payload: dict[str, object] = {
        "command": "validate",
        "plan": str(summary.source),
        "digest": summary.digest,
        "phases": list(summary.phases),
        "work_item_count": summary.work_item_count,
        "topological_order": list(summary.topological_order),
        "critical_path": list(summary.critical_path),
    }
    if args.json:
        _emit_json(payload)
        return 0

    renderer = _get_renderer(args)
    renderer.ok(f"plan {summary.source.name} is valid")
    renderer.kv("Phases", " -> ".join(summary.phases))
    renderer.kv("Work items", summary.work_item_count)
    renderer.kv("Critical path", " -> ".join(summary.critical_path) or "(empty)")
    if renderer.verbose:
        renderer.kv("Digest", summary.digest)
        renderer.kv("Topological order", ", ".join(summary.topological_order))
    return 0


def _cmd_create(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    document = load_plan(args.plan_path)
    run_id = ids.generate_run_id() if args.run_id is None else ids.validate_run_id(args.run_id)

    with _open_coordinator(config, run_id=run_id) as coordinator:
        coordinator.create_run(
            document.task_graph,
            {"phases": document.phases},
            run_id=run_id,
            max_in_flight=args.max_in_flight,
            max_iterations=args.max_iterations,
        )
        report = coordinator.get_status(run_id)

    if args.json:
        _emit_json({"command": "create", "run_id": run_id, "status": report.to_dict()})
        return 0

    renderer = _get_renderer(args)
    renderer.kv("Run", run_id)
    renderer.kv("Phases", " -> ".join(report.phases))
    renderer.kv("Active phase", report.active_phase)
    renderer.next_steps([f"phasegate next {run_id}", f"phasegate status {run_id}"])
    return 0


def _cmd_next(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    with _open_coordinator(config, run_id=args.run_id) as coordinator:
        decision = coordinator.schedule(args.run_id)

    if args.json:
        _emit_json(
            {
                "command": "next",
                "run_id": args.run_id,
                "phase": decision.phase,
                "selected": list(decision.selected),
                "runnable": list(decision.runnable),
                "in_flight": list(decision.in_flight),
                "blocked_by_limits": list(decision.blocked_by_limits),
                "entry_gate": {
                    "name": decision.entry_gate.gate_name,
                    "passed": decision.entry_gate.passed,
                    "reasons": list(decision.entry_gate.reasons),
                },
            }
        )
        return 0

    renderer = _get_renderer(args)
    renderer.kv("Active phase", decision.phase)
    if decision.selected:
        renderer.section("Runnable now:")
        renderer.items(list(decision.selected))
    else:
        renderer.text("Nothing runnable right now.")
    if decision.in_flight:
        renderer.section("In flight:")
        renderer.items(list(decision.in_flight))
    if decision.blocked_by_limits:
        renderer.section("Held back by work-in-progress cap:")
        renderer.items(list(decision.blocked_by_limits))
    if decision.blocked_reasons:
        renderer.section(f"Entry gate {decision.entry_gate.gate_name} blocked:")
        renderer.items(list(decision.blocked_reasons))
    return 0


def _cmd_report(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    with _open_coordinator(config, run_id=args.run_id) as coordinator:
        cycle_state = coordinator.report_cycle_event(args.run_id, args.work_item_id, args.event)

    if args.json:
        _emit_json(
            {
                "command": "report",
                "run_id": args.run_id,
                "work_item_id": args.work_item_id,
                "event": args.event,
                "cycle_state": cycle_state.value,
            }
        )
        return 0

    renderer = _get_renderer(args)
    renderer.kv(args.work_item_id, renderer.state(cycle_state.value))
    return 0


def _cmd_checklist(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    with _open_coordinator(config, run_id=args.run_id) as coordinator:
        status = coordinator.report_checklist(
            args.run_id, args.name, args.passed, work_item_id=args.work_item_id
        )

    if args.json:
        _emit_json(
            {
                "command": "checklist",
                "run_id": args.run_id,
                "name": args.name,
                "status": status.value,
            }
        )
        return 0

    renderer = _get_renderer(args)
    renderer.kv(args.name, renderer.state(status.value))
    return 0


def _cmd_advance(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    with _open_coordinator(config, run_id=args.run_id) as coordinator:
        result = coordinator.try_advance_phase(args.run_id)

    exit_code = 0 if result.advanced else BLOCKED_EXIT_CODE
    if args.json:
        _emit_json({"command": "advance", "run_id": args.run_id, "result": result.to_dict()})
        return exit_code

    renderer = _get_renderer(args)
    renderer.kv("Outcome", renderer.state(result.outcome.value))
    if result.to_phase is not None:
        renderer.kv("Active phase", result.to_phase)
    if result.reasons:
        renderer.section(f"Phase {result.from_phase} is blocked by:")
        renderer.items(list(result.reasons))
    return exit_code


def _cmd_abort(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    with _open_coordinator(config, run_id=args.run_id) as coordinator:
        ack = coordinator.abort(args.run_id)

    if args.json:
        _emit_json({"command": "abort", "result": ack.to_dict()})
        return 0

    renderer = _get_renderer(args)
    if ack.already_terminal:
        renderer.text(f"Run {args.run_id} was already finished; nothing recorded.")
    else:
        renderer.text(f"Run {args.run_id} aborted ({ack.entries_appended} ledger entries).")
    return 0


def _cmd_status(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    with _open_coordinator(config, run_id=args.run_id) as coordinator:
        report = coordinator.get_status(args.run_id)
        idle = coordinator.time_since_last_transition(args.run_id)

    if args.json:
        _emit_json(
            {
                "command": "status",
                "status": report.to_dict(),
                "seconds_since_last_transition": round(idle.total_seconds(), 3),
            }
        )
        return 0

    renderer = _get_renderer(args)
    _render_status(renderer, report)
    return 0


def _cmd_ledger(args: argparse.Namespace) -> int:
    if args.after < 0:
        raise CLIError("--after must be >= 0")
    config = _load_effective_config(args)
    with _open_coordinator(config, run_id=args.run_id) as coordinator:
        entries = [entry for entry in coordinator.ledger(args.run_id) if entry.ordinal > args.after]

    if args.json:
        _emit_json(
            {
                "command": "ledger",
                "run_id": args.run_id,
                "entries": [entry.to_dict() for entry in entries],
            }
        )
        return 0

    renderer = _get_renderer(args)
    if not entries:
        renderer.text("No ledger entries.")
        return 0
    renderer.table(
        ("#", "kind", "subject", "transition", "outcome", "reasons"),
        [_ledger_row(renderer, entry) for entry in entries],
    )
    return 0


def _cmd_runs(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    with _open_coordinator(config, run_id=None) as coordinator:
        run_ids = coordinator.list_runs()

    if args.json:
        _emit_json({"command": "runs", "runs": list(run_ids)})
        return 0

    renderer = _get_renderer(args)
    if not run_ids:
        renderer.text("No runs found.")
        renderer.next_steps(["phasegate create plan.yaml"])
        return 0
    renderer.items(list(run_ids))
    return 0


def _cmd_config(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    if args.json:
        _emit_json({"command": "config", "active_profile": args.profile, "config": config})
        return 0

    renderer = _get_renderer(args)
    renderer.kv("Active profile", args.profile or "(default)")
    renderer.text(dump_effective_config(config))
    return 0


def _cmd_tui(args: argparse.Namespace) -> int:
    from phasegate.ui.tui import run_tui

    config = _load_effective_config(args)
    ids.validate_run_id(args.run_id)
    return run_tui(config, args.run_id, no_color=args.no_color)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _emit_json(payload: Mapping[str, object]) -> None:
    print(json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False))


def _get_renderer(args: argparse.Namespace) -> CLIRenderer:
    return create_renderer(no_color=args.no_color, verbose=args.verbose)


def _load_effective_config(args: argparse.Namespace) -> dict[str, Any]:
    return load_config(args.config_path, profile=args.profile)


@contextmanager
def _open_coordinator(
    config: Mapping[str, Any], *, run_id: str | None
) -> Iterator[RunCoordinator]:
    """Coordinator over the configured ledger, with run-scoped logging when known."""

    if run_id is not None:
        setup_logging(config["observability"], run_id=ids.validate_run_id(run_id))
    yield RunCoordinator.from_config(config)


def _render_status(renderer: CLIRenderer, report: RunStatusReport) -> None:
    renderer.kv("Run", report.run_id)
    renderer.kv("Status", renderer.state(report.status.value))
    renderer.kv(
        "Active phase",
        f"{report.active_phase} ({report.active_phase_index + 1}/{len(report.phases)})",
    )
    renderer.kv("Ledger entries", report.ledger_length)
    if report.last_transition_at is not None:
        renderer.kv("Last transition", report.last_transition_at.isoformat())
    if report.critical_path:
        renderer.kv("Remaining critical path", " -> ".join(report.critical_path))
    renderer.table(
        ("work item", "phase", "state", "cycle", "iterations", "verification"),
        [
            (
                item.work_item_id,
                item.phase,
                renderer.state(item.state.value),
                "-" if item.cycle_state is None else item.cycle_state.value,
                str(item.iterations),
                "-" if item.last_verification is None else item.last_verification.value,
            )
            for item in report.work_items
        ],
        title="Work items:",
    )
    if report.checklist:
        renderer.section("Checklist:")
        renderer.items(
            [
                f"{name}: {renderer.state(status.value)}"
                for name, status in sorted(report.checklist.items())
            ]
        )


def _ledger_row(renderer: CLIRenderer, entry: LedgerEntry) -> tuple[str, ...]:
    subject = entry.work_item_id or entry.gate_name or entry.run_id
    return (
        str(entry.ordinal),
        entry.kind.value,
        subject,
        f"{entry.prior_state} -> {entry.new_state}",
        renderer.state(entry.outcome),
        "; ".join(entry.reasons),
    )


__all__ = ["CLIError", "build_parser", "run_cli"]
