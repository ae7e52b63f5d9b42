"""
phasegate — phase-gated workflow orchestration core

Purpose
- Holds a graph of work items grouped into ordered phases, decides what may run next,
  enforces entry/exit gates between phases, and drives the per-item
  plan/draft/verify/improve cycle. Every transition is recorded in an append-only
  ledger from which all run state can be replayed.

Functional requirements
- Must not have side effects at import time (no config loading, no logging init).
"""

from __future__ import annotations

__version__ = "0.3.0"

__all__ = ["__version__"]
