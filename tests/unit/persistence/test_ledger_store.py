"""Ledger store contract shared by the SQLite and in-memory implementations."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING

import pytest

from phasegate.domain.errors import LedgerIntegrityError, PersistenceUnavailable, StructuralError
from phasegate.domain.models import LedgerEntryKind
from phasegate.persistence.ledger import MemoryLedgerStore, RunLedger, SqliteLedgerStore
from phasegate.persistence.state_db import StateDB

from . import BASE_TS, DEFINITION_JSON, PLAN_DIGEST, cycle_transition, gate_transition

if TYPE_CHECKING:
    from pathlib import Path

    from phasegate.persistence.ledger import LedgerStore


@pytest.fixture(params=["memory", "sqlite"])
def store(request: pytest.FixtureRequest, tmp_path: Path) -> LedgerStore:
    if request.param == "memory":
        return MemoryLedgerStore()
    return SqliteLedgerStore(StateDB(tmp_path / "state" / "ledger.sqlite"))


def _save(store: LedgerStore, run_id: str = "r1") -> None:
    store.save_definition(
        run_id,
        created_at="2026-02-01T12:00:00.000000Z",
        plan_digest=PLAN_DIGEST,
        definition_json=DEFINITION_JSON,
    )


def test_ordinals_start_at_one_and_are_contiguous(store: LedgerStore) -> None:
    _save(store)

    first = store.append("r1", [cycle_transition("a")], after=0, timestamp=BASE_TS)
    second = store.append(
        "r1",
        [cycle_transition("b"), gate_transition("p", "p.exit", "all WorkItems Done")],
        after=1,
        timestamp=BASE_TS,
    )

    assert [entry.ordinal for entry in (*first, *second)] == [1, 2, 3]
    assert store.entries("r1") == (*first, *second)
    assert store.entries("r1", after=2) == second[1:]


def test_entries_round_trip_every_field(store: LedgerStore) -> None:
    _save(store)
    store.append(
        "r1",
        [gate_transition("design", "design.exit", "all WorkItems Done", "checklist passed: x")],
        after=0,
        timestamp=BASE_TS,
    )

    (entry,) = store.entries("r1")

    assert entry.kind is LedgerEntryKind.GATE
    assert entry.run_id == "r1"
    assert entry.work_item_id is None
    assert entry.gate_name == "design.exit"
    assert entry.reasons == ("all WorkItems Done", "checklist passed: x")
    assert entry.timestamp == BASE_TS


def test_stale_writer_is_rejected_without_writing(store: LedgerStore) -> None:
    _save(store)
    store.append("r1", [cycle_transition("a")], after=0, timestamp=BASE_TS)

    with pytest.raises(LedgerIntegrityError, match="concurrent ledger writer"):
        store.append("r1", [cycle_transition("b")], after=0, timestamp=BASE_TS)

    assert len(store.entries("r1")) == 1


def test_runs_are_isolated(store: LedgerStore) -> None:
    _save(store, "r1")
    _save(store, "r2")
    store.append("r1", [cycle_transition("a")], after=0, timestamp=BASE_TS)

    created = store.append("r2", [cycle_transition("a")], after=0, timestamp=BASE_TS)

    assert created[0].ordinal == 1
    assert store.run_ids() == ("r1", "r2")
    assert store.entries("r2") == created


def test_definitions_are_returned_verbatim(store: LedgerStore) -> None:
    _save(store)

    assert store.load_definition("r1") == DEFINITION_JSON
    assert store.load_definition("missing") is None


def test_duplicate_run_is_a_structural_error(store: LedgerStore) -> None:
    _save(store)

    with pytest.raises(StructuralError, match="run r1 already exists"):
        _save(store)
    with pytest.raises(StructuralError, match="already exists"):
        RunLedger(store).save_definition(
            "r1", created_at=BASE_TS, plan_digest=PLAN_DIGEST, definition={}
        )
    assert store.run_ids() == ("r1",)


def test_run_ledger_wraps_storage_failures(tmp_path: Path) -> None:
    path = tmp_path / "ledger.sqlite"
    ledger = RunLedger(SqliteLedgerStore(StateDB(path)))
    for leftover in tmp_path.glob("ledger.sqlite*"):
        leftover.unlink()
    path.mkdir()

    with pytest.raises(PersistenceUnavailable, match="could not store run r1"):
        ledger.save_definition("r1", created_at=BASE_TS, plan_digest=PLAN_DIGEST, definition={})
    with pytest.raises(PersistenceUnavailable, match="could not list runs"):
        ledger.run_ids()


def test_run_ledger_skips_empty_batches_and_decodes_definitions() -> None:
    ledger = RunLedger(MemoryLedgerStore(), clock=lambda: BASE_TS)
    ledger.save_definition(
        "r1", created_at=BASE_TS, plan_digest=PLAN_DIGEST, definition={"run_id": "r1"}
    )

    assert ledger.append("r1", [], after=0) == ()
    assert ledger.load_definition("r1") == {"run_id": "r1"}
    assert ledger.append("r1", [cycle_transition("a")], after=0)[0].timestamp == BASE_TS


def test_non_object_definition_is_an_integrity_error() -> None:
    store = MemoryLedgerStore()
    store.save_definition(
        "r1",
        created_at="2026-02-01T12:00:00.000000Z",
        plan_digest=PLAN_DIGEST,
        definition_json=json.dumps([1, 2, 3]),
    )

    with pytest.raises(LedgerIntegrityError, match="not an object"):
        RunLedger(store).load_definition("r1")


def test_memory_store_refuses_appends_to_unknown_runs() -> None:
    store = MemoryLedgerStore()

    with pytest.raises(LedgerIntegrityError, match="no stored definition"):
        store.append("ghost", [cycle_transition("a")], after=0, timestamp=BASE_TS)
