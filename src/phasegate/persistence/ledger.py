"""
phasegate — run ledger

Purpose
- Durable, append-only storage of run definitions and ledger entries, behind one
  small store protocol with SQLite and in-memory implementations.

Functional requirements
- Ordinals are assigned by the store, contiguous from 1 per run, inside the same
  transaction that writes the entries; a batch is all-or-nothing.
- An append names the ordinal it expects to follow, so a second writer on the same
  run is detected instead of interleaving.
- Every storage failure surfaces as ``PersistenceUnavailable`` (retryable). Reusing
  a run id is a ``StructuralError`` in every store, however the clash is found.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from collections.abc import Callable, Mapping, Sequence
from datetime import datetime
from typing import Any, Protocol

from phasegate.domain.errors import LedgerIntegrityError, PersistenceUnavailable, StructuralError
from phasegate.domain.models import (
    LedgerEntry,
    LedgerEntryKind,
    Transition,
    canonical_json,
    datetime_to_iso8601z,
    parse_datetime,
    utc_now,
)
from phasegate.persistence.state_db import StateDB, StateDBError

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


class LedgerStore(Protocol):
    def save_definition(
        self, run_id: str, *, created_at: str, plan_digest: str, definition_json: str
    ) -> None: ...

    def load_definition(self, run_id: str) -> str | None: ...

    def run_ids(self) -> tuple[str, ...]: ...

    def append(
        self,
        run_id: str,
        transitions: Sequence[Transition],
        *,
        after: int,
        timestamp: datetime,
    ) -> tuple[LedgerEntry, ...]: ...

    def entries(self, run_id: str, *, after: int = 0) -> tuple[LedgerEntry, ...]: ...


class MemoryLedgerStore:
    """Process-local store with the same semantics as the SQLite store."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._definitions: dict[str, str] = {}
        self._entries: dict[str, list[LedgerEntry]] = {}

    def save_definition(
        self, run_id: str, *, created_at: str, plan_digest: str, definition_json: str
    ) -> None:
        del created_at, plan_digest
        with self._lock:
            if run_id in self._definitions:
                raise StructuralError(f"run {run_id} already exists")
            self._definitions[run_id] = definition_json
            self._entries[run_id] = []

    def load_definition(self, run_id: str) -> str | None:
        with self._lock:
            return self._definitions.get(run_id)

    def run_ids(self) -> tuple[str, ...]:
        with self._lock:
            return tuple(sorted(self._definitions))

    def append(
        self,
        run_id: str,
        transitions: Sequence[Transition],
        *,
        after: int,
        timestamp: datetime,
    ) -> tuple[LedgerEntry, ...]:
        with self._lock:
            if run_id not in self._entries:
                raise LedgerIntegrityError(f"run {run_id} has no stored definition")
            existing = self._entries[run_id]
            _check_expected(run_id, len(existing), after)
            created = _number(run_id, transitions, after=after, timestamp=timestamp)
            existing.extend(created)
            return created

    def entries(self, run_id: str, *, after: int = 0) -> tuple[LedgerEntry, ...]:
        with self._lock:
            return tuple(self._entries.get(run_id, ())[after:])


class SqliteLedgerStore:
    """Store backed by :class:`StateDB` (``runs`` and ``ledger_entries`` tables)."""

    def __init__(self, db: StateDB) -> None:
        self._db = db
        self._db.migrate()

    @property
    def db(self) -> StateDB:
        return self._db

    def save_definition(
        self, run_id: str, *, created_at: str, plan_digest: str, definition_json: str
    ) -> None:
        stored = self._db.insert_run(
            run_id,
            created_at=created_at,
            plan_digest=plan_digest,
            definition_json=definition_json,
        )
        if not stored:
            raise StructuralError(f"run {run_id} already exists")

    def load_definition(self, run_id: str) -> str | None:
        return self._db.run_definition(run_id)

    def run_ids(self) -> tuple[str, ...]:
        return self._db.run_ids()

    def append(
        self,
        run_id: str,
        transitions: Sequence[Transition],
        *,
        after: int,
        timestamp: datetime,
    ) -> tuple[LedgerEntry, ...]:
        with self._db.write() as conn:
            _check_expected(run_id, self._db.last_ordinal(conn, run_id), after)
            created = _number(run_id, transitions, after=after, timestamp=timestamp)
            self._db.insert_entries(conn, [_entry_to_row(entry) for entry in created])
        return created

    def entries(self, run_id: str, *, after: int = 0) -> tuple[LedgerEntry, ...]:
        return tuple(_entry_from_row(row) for row in self._db.entry_rows(run_id, after=after))


class RunLedger:
    """Ledger facade used by the coordinator; translates storage failures."""

    def __init__(self, store: LedgerStore, *, clock: Clock | None = None) -> None:
        self._store = store
        self._clock = clock if clock is not None else utc_now

    @property
    def store(self) -> LedgerStore:
        return self._store

    def now(self) -> datetime:
        return self._clock()

    def save_definition(
        self, run_id: str, *, created_at: datetime, plan_digest: str, definition: object
    ) -> None:
        try:
            self._store.save_definition(
                run_id,
                created_at=datetime_to_iso8601z(created_at),
                plan_digest=plan_digest,
                definition_json=canonical_json(definition),
            )
        except (StateDBError, sqlite3.Error, OSError) as exc:
            raise PersistenceUnavailable(f"could not store run {run_id}: {exc}") from exc

    def load_definition(self, run_id: str) -> dict[str, object] | None:
        try:
            raw = self._store.load_definition(run_id)
        except (StateDBError, sqlite3.Error, OSError) as exc:
            raise PersistenceUnavailable(f"could not load run {run_id}: {exc}") from exc
        if raw is None:
            return None
        payload = json.loads(raw)
        if not isinstance(payload, dict):
            raise LedgerIntegrityError(f"stored definition for run {run_id} is not an object")
        return payload

    def run_ids(self) -> tuple[str, ...]:
        try:
            return self._store.run_ids()
        except (StateDBError, sqlite3.Error, OSError) as exc:
            raise PersistenceUnavailable(f"could not list runs: {exc}") from exc

    def append(
        self,
        run_id: str,
        transitions: Sequence[Transition],
        *,
        after: int,
    ) -> tuple[LedgerEntry, ...]:
        """Commit ``transitions`` atomically after ordinal ``after`` and return the entries."""
        if not transitions:
            return ()
        try:
            created = self._store.append(
                run_id, transitions, after=after, timestamp=self._clock()
            )
        except (StateDBError, sqlite3.Error, OSError) as exc:
            raise PersistenceUnavailable(f"ledger append failed for run {run_id}: {exc}") from exc
        logger.debug(
            "ledger append",
            extra={
                "run_id": run_id,
                "ledger_ordinal": created[-1].ordinal,
                "count": len(created),
                "kinds": [item.kind.value for item in created],
            },
        )
        return created

    def read(self, run_id: str, *, after: int = 0) -> tuple[LedgerEntry, ...]:
        try:
            return self._store.entries(run_id, after=after)
        except (StateDBError, sqlite3.Error, OSError) as exc:
            raise PersistenceUnavailable(f"ledger read failed for run {run_id}: {exc}") from exc


def _check_expected(run_id: str, last: int, after: int) -> None:
    if last != after:
        raise LedgerIntegrityError(
            f"run {run_id}: concurrent ledger writer detected "
            f"(expected last ordinal {after}, found {last})"
        )


def _number(
    run_id: str,
    transitions: Sequence[Transition],
    *,
    after: int,
    timestamp: datetime,
) -> tuple[LedgerEntry, ...]:
    return tuple(
        LedgerEntry.from_transition(
            transition, ordinal=after + offset, run_id=run_id, timestamp=timestamp
        )
        for offset, transition in enumerate(transitions, start=1)
    )


def _entry_to_row(entry: LedgerEntry) -> tuple[object, ...]:
    return (
        entry.run_id,
        entry.ordinal,
        entry.kind.value,
        entry.work_item_id,
        entry.prior_state,
        entry.new_state,
        entry.gate_name,
        entry.outcome,
        canonical_json(list(entry.reasons)),
        datetime_to_iso8601z(entry.timestamp),
    )


def _entry_from_row(row: Mapping[str, Any]) -> LedgerEntry:
    reasons = json.loads(str(row["reasons_json"]))
    work_item_id = row["work_item_id"]
    gate_name = row["gate_name"]
    return LedgerEntry(
        ordinal=int(str(row["ordinal"])),
        run_id=str(row["run_id"]),
        kind=LedgerEntryKind(str(row["kind"])),
        prior_state=str(row["prior_state"]),
        new_state=str(row["new_state"]),
        outcome=str(row["outcome"]),
        timestamp=parse_datetime(row["recorded_at"], "ledger_entries.recorded_at"),
        work_item_id=None if work_item_id is None else str(work_item_id),
        gate_name=None if gate_name is None else str(gate_name),
        reasons=tuple(str(item) for item in reasons),
    )


__all__ = [
    "Clock",
    "LedgerStore",
    "MemoryLedgerStore",
    "RunLedger",
    "SqliteLedgerStore",
]
