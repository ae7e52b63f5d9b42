"""Module entrypoint for ``python -m phasegate``."""

from __future__ import annotations

from phasegate.main import cli_entrypoint

if __name__ == "__main__":
    raise SystemExit(cli_entrypoint())
