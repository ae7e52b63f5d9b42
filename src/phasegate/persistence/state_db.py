"""
phasegate — SQLite file behind the run ledger.

Two data tables: ``runs`` holds one frozen definition per run and
``ledger_entries`` holds the numbered transitions of each run. Both are
write-once; triggers abort any UPDATE or DELETE. ``schema_versions`` records
each applied migration with a checksum of its DDL so a database created by a
different build is refused instead of silently reused.

Every call opens a short-lived WAL connection, so status readers never wait on
an appending writer. Lock contention (SQLITE_BUSY) is retried a few times with
exponential backoff before surfacing as :class:`StateDBBusyError`.
"""

from __future__ import annotations

import sqlite3
import time
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Final

from phasegate.domain.models import LedgerEntryKind, datetime_to_iso8601z, utc_now
from phasegate.utils.hashing import sha256_text

STATE_DB_SCHEMA_VERSION: Final[int] = 1
DEFAULT_BUSY_TIMEOUT_MS: Final[int] = 5_000
DEFAULT_BUSY_RETRY_LIMIT: Final[int] = 4
DEFAULT_BUSY_RETRY_BACKOFF_MS: Final[int] = 25

ENTRY_COLUMNS: Final[tuple[str, ...]] = (
    "run_id",
    "ordinal",
    "kind",
    "work_item_id",
    "prior_state",
    "new_state",
    "gate_name",
    "outcome",
    "reasons_json",
    "recorded_at",
)

_KIND_LIST = ", ".join(f"'{kind.value}'" for kind in sorted(LedgerEntryKind))

_VERSIONS_DDL: Final[str] = """
CREATE TABLE IF NOT EXISTS schema_versions (
    version INTEGER PRIMARY KEY CHECK (version > 0),
    name TEXT NOT NULL,
    checksum TEXT NOT NULL CHECK (length(checksum) = 64),
    applied_at TEXT NOT NULL
)
"""


def _write_once(table: str, message: str) -> tuple[str, ...]:
    return tuple(
        f"""
        CREATE TRIGGER IF NOT EXISTS trg_{table}_no_{action.lower()}
        BEFORE {action} ON {table}
        BEGIN
            SELECT RAISE(ABORT, '{message}');
        END
        """
        for action in ("UPDATE", "DELETE")
    )


_LEDGER_DDL: Final[tuple[str, ...]] = (
    """
    CREATE TABLE IF NOT EXISTS runs (
        id TEXT PRIMARY KEY,
        created_at TEXT NOT NULL,
        plan_digest TEXT NOT NULL CHECK (length(plan_digest) = 64),
        definition_json TEXT NOT NULL
    )
    """,
    f"""
    CREATE TABLE IF NOT EXISTS ledger_entries (
        run_id TEXT NOT NULL REFERENCES runs(id),
        ordinal INTEGER NOT NULL CHECK (ordinal > 0),
        kind TEXT NOT NULL CHECK (kind IN ({_KIND_LIST})),
        work_item_id TEXT,
        prior_state TEXT NOT NULL,
        new_state TEXT NOT NULL,
        gate_name TEXT,
        outcome TEXT NOT NULL,
        reasons_json TEXT NOT NULL DEFAULT '[]',
        recorded_at TEXT NOT NULL,
        PRIMARY KEY (run_id, ordinal)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_ledger_entries_run_kind ON ledger_entries (run_id, kind)",
    *_write_once("runs", "runs are immutable"),
    *_write_once("ledger_entries", "ledger_entries is append-only"),
)

# (version, name, statements); append only, never edit an applied entry.
_MIGRATIONS: Final[tuple[tuple[int, str, tuple[str, ...]], ...]] = (
    (1, "initial_ledger_schema", _LEDGER_DDL),
)

_BUSY_MARKERS: Final[tuple[str, ...]] = ("database is locked", "is locked")
_CORRUPT_MARKERS: Final[tuple[str, ...]] = ("malformed", "file is not a database")


class StateDBError(RuntimeError):
    """The ledger database could not complete an operation."""


class StateDBBusyError(StateDBError):
    pass


class StateDBMigrationError(StateDBError):
    pass


class StateDBCorruptionError(StateDBError):
    pass


def migration_checksum(version: int, name: str, statements: Sequence[str]) -> str:
    """Whitespace-insensitive SHA-256 of one migration's DDL."""
    body = "\n--\n".join(" ".join(statement.split()) for statement in statements)
    return sha256_text(f"{version}:{name}\n{body}")


class StateDB:
    """The ledger's SQLite file: schema, retries and the handful of queries it needs."""

    def __init__(
        self,
        path: str | Path,
        *,
        busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS,
        busy_retry_limit: int = DEFAULT_BUSY_RETRY_LIMIT,
        busy_retry_backoff_ms: int = DEFAULT_BUSY_RETRY_BACKOFF_MS,
    ) -> None:
        for label, value in (
            ("busy_timeout_ms", busy_timeout_ms),
            ("busy_retry_limit", busy_retry_limit),
            ("busy_retry_backoff_ms", busy_retry_backoff_ms),
        ):
            if value < 0:
                raise ValueError(f"{label} must be >= 0")
        self._path = Path(path).expanduser()
        self._busy_timeout_ms = busy_timeout_ms
        self._retries = busy_retry_limit
        self._backoff_seconds = busy_retry_backoff_ms / 1000.0

    @property
    def path(self) -> Path:
        return self._path

    def connect(self) -> sqlite3.Connection:
        """Open a WAL connection with foreign keys on; the caller closes it."""
        self._path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(
            self._path,
            timeout=self._busy_timeout_ms / 1000.0,
            isolation_level=None,
            check_same_thread=False,
        )
        conn.row_factory = sqlite3.Row
        try:
            conn.execute("PRAGMA foreign_keys=ON")
            conn.execute(f"PRAGMA busy_timeout={self._busy_timeout_ms}")
            (mode,) = conn.execute("PRAGMA journal_mode=WAL").fetchone()
            if str(mode).lower() != "wal":
                raise StateDBError(f"journal_mode must be WAL, got {mode!r}")
        except Exception:
            conn.close()
            raise
        return conn

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        conn = self.connect()
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def write(self) -> Iterator[sqlite3.Connection]:
        """``BEGIN IMMEDIATE`` on a fresh connection; commit on success, else roll back."""
        with self.connection() as conn:
            self._run(conn, "BEGIN IMMEDIATE", what="begin write")
            try:
                yield conn
            except Exception:
                conn.execute("ROLLBACK")
                raise
            self._run(conn, "COMMIT", what="commit write")

    def migrate(self) -> int:
        """Apply pending migrations and return the resulting schema version."""
        with self.connection() as conn:
            self._run(conn, _VERSIONS_DDL, what="create schema_versions")
            recorded = {
                int(row["version"]): str(row["checksum"])
                for row in self._run(
                    conn, "SELECT version, checksum FROM schema_versions", what="read migrations"
                )
            }
        newest = max(recorded, default=0)
        if newest > STATE_DB_SCHEMA_VERSION:
            raise StateDBMigrationError(
                f"database schema is newer than this build supports "
                f"(db={newest}, code={STATE_DB_SCHEMA_VERSION})"
            )
        for version, name, statements in _MIGRATIONS:
            checksum = migration_checksum(version, name, statements)
            if version in recorded:
                if recorded[version] != checksum:
                    raise StateDBMigrationError(
                        f"migration checksum mismatch for version {version}: "
                        f"db={recorded[version]} code={checksum}"
                    )
                continue
            with self.write() as conn:
                # Another process may have applied it since the read above.
                if self._run(
                    conn,
                    "SELECT 1 FROM schema_versions WHERE version = ?",
                    (version,),
                    what="recheck migrations",
                ).fetchone():
                    continue
                for statement in statements:
                    self._run(conn, statement, what=f"apply migration {version}")
                self._run(
                    conn,
                    "INSERT INTO schema_versions (version, name, checksum, applied_at)"
                    " VALUES (?, ?, ?, ?)",
                    (version, name, checksum, datetime_to_iso8601z(utc_now())),
                    what=f"record migration {version}",
                )
        return self.schema_version()

    def schema_version(self) -> int:
        with self.connection() as conn:
            (version,) = self._run(
                conn, "SELECT COALESCE(MAX(version), 0) FROM schema_versions", what="read version"
            ).fetchone()
        return int(version)

    def insert_run(
        self, run_id: str, *, created_at: str, plan_digest: str, definition_json: str
    ) -> bool:
        """Store a run definition; False when ``run_id`` is already taken."""
        with self.write() as conn:
            cursor = self._run(
                conn,
                "INSERT OR IGNORE INTO runs (id, created_at, plan_digest, definition_json)"
                " VALUES (?, ?, ?, ?)",
                (run_id, created_at, plan_digest, definition_json),
                what=f"insert run {run_id}",
            )
            return cursor.rowcount == 1

    def run_definition(self, run_id: str) -> str | None:
        with self.connection() as conn:
            row = self._run(
                conn,
                "SELECT definition_json FROM runs WHERE id = ?",
                (run_id,),
                what=f"read run {run_id}",
            ).fetchone()
        return None if row is None else str(row["definition_json"])

    def run_ids(self) -> tuple[str, ...]:
        with self.connection() as conn:
            rows = self._run(conn, "SELECT id FROM runs ORDER BY id", what="list runs")
            return tuple(str(row["id"]) for row in rows)

    def last_ordinal(self, conn: sqlite3.Connection, run_id: str) -> int:
        (last,) = self._run(
            conn,
            "SELECT COALESCE(MAX(ordinal), 0) FROM ledger_entries WHERE run_id = ?",
            (run_id,),
            what=f"read last ordinal of {run_id}",
        ).fetchone()
        return int(last)

    def insert_entries(self, conn: sqlite3.Connection, rows: Sequence[Sequence[Any]]) -> None:
        """Insert ``rows`` laid out as :data:`ENTRY_COLUMNS` inside an open write."""
        placeholders = ", ".join("?" for _ in ENTRY_COLUMNS)
        sql = f"INSERT INTO ledger_entries ({', '.join(ENTRY_COLUMNS)}) VALUES ({placeholders})"
        for row in rows:
            self._run(conn, sql, tuple(row), what="append ledger entry")

    def entry_rows(self, run_id: str, *, after: int = 0) -> list[dict[str, Any]]:
        with self.connection() as conn:
            rows = self._run(
                conn,
                f"SELECT {', '.join(ENTRY_COLUMNS)} FROM ledger_entries"
                " WHERE run_id = ? AND ordinal > ? ORDER BY ordinal",
                (run_id, after),
                what=f"read ledger of {run_id}",
            )
            return [dict(row) for row in rows]

    def integrity_check(self, *, max_errors: int = 100) -> tuple[str, ...]:
        """``PRAGMA integrity_check`` findings; empty when the file is sound."""
        if max_errors <= 0:
            raise ValueError("max_errors must be > 0")
        with self.connection() as conn:
            found = tuple(
                str(row[0])
                for row in self._run(
                    conn, f"PRAGMA integrity_check({max_errors})", what="integrity check"
                )
            )
        return () if found == ("ok",) else found

    def _run(
        self,
        conn: sqlite3.Connection,
        sql: str,
        params: Sequence[Any] = (),
        *,
        what: str,
    ) -> sqlite3.Cursor:
        attempt = 0
        while True:
            try:
                return conn.execute(sql, tuple(params))
            except sqlite3.IntegrityError:
                raise
            except sqlite3.Error as exc:
                message = str(exc).lower()
                busy = any(marker in message for marker in _BUSY_MARKERS)
                if busy and attempt < self._retries:
                    time.sleep(self._backoff_seconds * 2**attempt)
                    attempt += 1
                    continue
                if busy:
                    raise StateDBBusyError(
                        f"{what}: SQLITE_BUSY on {self._path} after {attempt + 1} attempt(s)"
                    ) from exc
                if any(marker in message for marker in _CORRUPT_MARKERS):
                    raise StateDBCorruptionError(
                        f"{what}: {self._path} looks corrupt ({exc}); "
                        "run integrity_check() and restore from a backup"
                    ) from exc
                raise StateDBError(f"{what} failed for {self._path}: {exc}") from exc


__all__ = [
    "DEFAULT_BUSY_RETRY_BACKOFF_MS",
    "DEFAULT_BUSY_RETRY_LIMIT",
    "DEFAULT_BUSY_TIMEOUT_MS",
    "ENTRY_COLUMNS",
    "STATE_DB_SCHEMA_VERSION",
    "StateDB",
    "StateDBBusyError",
    "StateDBCorruptionError",
    "StateDBError",
    "StateDBMigrationError",
    "migration_checksum",
]
