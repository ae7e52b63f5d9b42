"""Run logging: per-run JSON lines plus correlation scopes."""

from phasegate.observability.logging import (
    LoggingConfig,
    RunLogSink,
    correlation_scope,
    setup_logging,
    shutdown_logging,
)

__all__ = [
    "LoggingConfig",
    "RunLogSink",
    "correlation_scope",
    "setup_logging",
    "shutdown_logging",
]
