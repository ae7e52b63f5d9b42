"""Durable ledger storage public API."""

from phasegate.persistence.ledger import (
    LedgerStore,
    MemoryLedgerStore,
    RunLedger,
    SqliteLedgerStore,
)
from phasegate.persistence.state_db import StateDB, StateDBError

__all__ = [
    "LedgerStore",
    "MemoryLedgerStore",
    "RunLedger",
    "SqliteLedgerStore",
    "StateDB",
    "StateDBError",
]
