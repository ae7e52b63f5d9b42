"""Per-run JSON-lines logging on top of structlog's stdlib integration.

Records from plain ``logging`` callers and from structlog loggers both end up on
one queue. A listener thread drains it into ``<log_dir>/<run_id>/phasegate.jsonl``
through a :class:`structlog.stdlib.ProcessorFormatter`, so every line has the same
shape::

    {"timestamp": ..., "level": ..., "logger": ..., "message": ...,
     "run_id": ..., "work_item_id": ..., "fields": {...}, "exception": ...}

Correlation keys live in structlog's context-local storage and are captured on
the emitting thread before a record is queued.
"""

from __future__ import annotations

import atexit
import copy
import logging
import logging.handlers
import queue
import threading
import time
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Final

import structlog
from structlog.typing import EventDict, WrappedLogger

CORRELATION_KEYS: Final[tuple[str, ...]] = (
    "run_id",
    "work_item_id",
    "phase",
    "ledger_ordinal",
)

_LOG_FILENAME: Final[str] = "phasegate.jsonl"
_LOGGER_NAME: Final[str] = "phasegate"
_QUEUE_SIZE: Final[int] = 4096
_CAPTURED_CONTEXT_ATTR: Final[str] = "phasegate_correlation"
_HEADER_KEYS: Final[frozenset[str]] = frozenset(
    {"timestamp", "level", "logger", "message", "exception", "_record", "_from_structlog"}
)

_active_lock = threading.Lock()
_active: RunLogSink | None = None
_atexit_registered = False


@dataclass(frozen=True, slots=True)
class LoggingConfig:
    """Where and how verbosely one run writes its log."""

    run_id: str
    base_log_dir: Path | str = Path("logs")
    logger_name: str = _LOGGER_NAME
    level: int | str = "INFO"
    queue_size: int = _QUEUE_SIZE
    log_filename: str = _LOG_FILENAME
    log_to_stdout: bool = False


def setup_logging(
    observability_config: Mapping[str, object] | None = None,
    *,
    run_id: str,
    log_dir: Path | str | None = None,
    logger_name: str = _LOGGER_NAME,
) -> RunLogSink:
    """Start logging for ``run_id`` from an ``[observability]`` config section.

    ``log_dir`` overrides the section's ``log_dir`` key. Unusable values in the
    section fall back to INFO and ``logs``.
    """
    section = dict(observability_config or {})
    level = section.get("log_level", "INFO")
    base = log_dir if log_dir is not None else section.get("log_dir", "logs")
    return setup_structured_logging(
        LoggingConfig(
            run_id=run_id,
            base_log_dir=base if isinstance(base, (Path, str)) else "logs",
            logger_name=logger_name,
            level=level if isinstance(level, (int, str)) else "INFO",
            log_to_stdout=bool(section.get("log_to_stdout", False)),
        )
    )


class _ContextCapturingQueueHandler(logging.handlers.QueueHandler):
    """Queue handler that snapshots correlation and never blocks the caller."""

    def __init__(self, log_queue: queue.Queue[logging.LogRecord]) -> None:
        super().__init__(log_queue)
        self._dropped = 0
        self._dropped_lock = threading.Lock()

    @property
    def dropped(self) -> int:
        with self._dropped_lock:
            return self._dropped

    def prepare(self, record: logging.LogRecord) -> logging.LogRecord:
        queued = copy.copy(record)
        queued.msg = record.getMessage()
        queued.args = None
        setattr(queued, _CAPTURED_CONTEXT_ATTR, get_correlation_context())
        return queued

    def enqueue(self, record: logging.LogRecord) -> None:
        try:
            self.queue.put_nowait(record)
        except queue.Full:
            with self._dropped_lock:
                self._dropped += 1


class _LiftCorrelation:
    """Move correlation keys to the top level as strings, defaulting ``run_id``."""

    __slots__ = ("_run_id",)

    def __init__(self, run_id: str) -> None:
        self._run_id = run_id

    def __call__(self, _: WrappedLogger, __: str, event_dict: EventDict) -> EventDict:
        lifted = {"run_id": self._run_id}
        lifted.update(event_dict.pop(_CAPTURED_CONTEXT_ATTR, None) or {})
        for key in CORRELATION_KEYS:
            value = event_dict.pop(key, None)
            if value is None or isinstance(value, bool):
                continue
            text = str(value).strip()
            if text:
                lifted[key] = text
        event_dict.update({key: str(value) for key, value in lifted.items()})
        return event_dict


def _add_record_header(_: WrappedLogger, __: str, event_dict: EventDict) -> EventDict:
    record: logging.LogRecord = event_dict["_record"]
    stamp = datetime.fromtimestamp(record.created, tz=UTC)
    event_dict["timestamp"] = stamp.isoformat(timespec="milliseconds").replace("+00:00", "Z")
    event_dict["level"] = record.levelname
    return event_dict


def _nest_fields(_: WrappedLogger, __: str, event_dict: EventDict) -> EventDict:
    fields = {
        key: event_dict.pop(key)
        for key in list(event_dict)
        if key not in _HEADER_KEYS and key not in CORRELATION_KEYS
    }
    if fields:
        event_dict["fields"] = fields
    return event_dict


def _build_formatter(run_id: str) -> structlog.stdlib.ProcessorFormatter:
    return structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=[
            # Rename first so an ``event`` extra survives as a field.
            structlog.processors.EventRenamer("message"),
            structlog.stdlib.ExtraAdder(),
            _LiftCorrelation(run_id),
            _add_record_header,
            structlog.stdlib.add_logger_name,
            structlog.processors.format_exc_info,
            _nest_fields,
        ],
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.processors.JSONRenderer(
                sort_keys=True, separators=(",", ":"), ensure_ascii=False
            ),
        ],
    )


class RunLogSink:
    """Handle on the queue, listener and file of one run's log."""

    def __init__(
        self,
        *,
        logger: logging.Logger,
        run_id: str,
        log_path: Path,
        queue_handler: _ContextCapturingQueueHandler,
        listener: logging.handlers.QueueListener,
        sinks: tuple[logging.Handler, ...],
    ) -> None:
        self.logger = logger
        self.run_id = run_id
        self.log_path = log_path
        self._queue_handler = queue_handler
        self._listener = listener
        self._sinks = sinks
        self._closed = False
        self._close_lock = threading.Lock()

    @property
    def dropped_records(self) -> int:
        return self._queue_handler.dropped

    @property
    def is_shutdown(self) -> bool:
        return self._closed

    def flush(self, *, timeout_seconds: float = 2.0) -> None:
        pending: queue.Queue[Any] = self._queue_handler.queue  # type: ignore[assignment]
        deadline = time.monotonic() + max(timeout_seconds, 0.0)
        while pending.unfinished_tasks and time.monotonic() < deadline:
            time.sleep(0.01)
        for sink in self._sinks:
            sink.flush()

    def shutdown(self, *, timeout_seconds: float = 2.0) -> None:
        with self._close_lock:
            if self._closed:
                return
            self.flush(timeout_seconds=timeout_seconds)
            # stop() drains whatever is still queued before joining.
            self._listener.stop()
            self.logger.removeHandler(self._queue_handler)
            self._queue_handler.close()
            for sink in self._sinks:
                sink.close()
            self._closed = True


def setup_structured_logging(config: LoggingConfig) -> RunLogSink:
    """Replace any active run log with one for ``config.run_id``."""
    run_id = _non_empty(config.run_id, "run_id")
    logger_name = _non_empty(config.logger_name, "logger_name")
    filename = _non_empty(config.log_filename, "log_filename")
    if Path(filename).name != filename:
        raise ValueError("log_filename must not include path separators")
    if config.queue_size <= 0:
        raise ValueError("queue_size must be > 0")
    level = _level_number(config.level)

    shutdown_logging()

    log_path = Path(config.base_log_dir) / run_id / filename
    log_path.parent.mkdir(parents=True, exist_ok=True)
    formatter = _build_formatter(run_id)
    sinks: list[logging.Handler] = [logging.FileHandler(log_path, encoding="utf-8")]
    if config.log_to_stdout:
        sinks.append(logging.StreamHandler())
    for sink in sinks:
        sink.setLevel(level)
        sink.setFormatter(formatter)

    logger = logging.getLogger(logger_name)
    logger.setLevel(level)
    logger.propagate = False
    for stale in list(logger.handlers):
        logger.removeHandler(stale)
        stale.close()

    queue_handler = _ContextCapturingQueueHandler(queue.Queue(maxsize=config.queue_size))
    queue_handler.setLevel(level)
    listener = logging.handlers.QueueListener(
        queue_handler.queue, *sinks, respect_handler_level=True
    )
    listener.start()
    logger.addHandler(queue_handler)
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.render_to_log_kwargs,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=False,
    )

    sink_handle = RunLogSink(
        logger=logger,
        run_id=run_id,
        log_path=log_path,
        queue_handler=queue_handler,
        listener=listener,
        sinks=tuple(sinks),
    )
    global _active, _atexit_registered
    with _active_lock:
        _active = sink_handle
        if not _atexit_registered:
            atexit.register(shutdown_logging)
            _atexit_registered = True
    return sink_handle


def flush_logging(handle: RunLogSink | None = None, *, timeout_seconds: float = 2.0) -> None:
    target = handle if handle is not None else get_active_logging_handle()
    if target is not None:
        target.flush(timeout_seconds=timeout_seconds)


def shutdown_logging(handle: RunLogSink | None = None, *, timeout_seconds: float = 2.0) -> None:
    """Stop the given (or active) run log. Safe to call repeatedly."""
    global _active
    target = handle if handle is not None else get_active_logging_handle()
    if target is None:
        return
    target.shutdown(timeout_seconds=timeout_seconds)
    with _active_lock:
        if _active is target:
            _active = None
            structlog.reset_defaults()


def get_active_logging_handle() -> RunLogSink | None:
    with _active_lock:
        return _active


def get_correlation_context() -> dict[str, str]:
    """Correlation keys bound in the current context."""
    bound = structlog.contextvars.get_contextvars()
    return {key: bound[key] for key in CORRELATION_KEYS if bound.get(key) is not None}


@contextmanager
def correlation_scope(**fields: object) -> Iterator[None]:
    """Bind correlation keys for records emitted in scope; ``None`` hides a key."""
    hidden = [key for key, value in fields.items() if value is None]
    shown = {key: str(value) for key, value in fields.items() if value is not None}
    with structlog.contextvars.bound_contextvars(**shown):
        outer = {key: value for key, value in get_correlation_context().items() if key in hidden}
        structlog.contextvars.unbind_contextvars(*hidden)
        try:
            yield
        finally:
            structlog.contextvars.bind_contextvars(**outer)


def _non_empty(value: object, label: str) -> str:
    if not isinstance(value, str):
        raise ValueError(f"{label} must be a string, got {type(value).__name__}")
    if not value.strip():
        raise ValueError(f"{label} must not be empty")
    return value.strip()


def _level_number(value: int | str) -> int:
    if isinstance(value, int):
        return value
    number = logging.getLevelName(value.strip().upper())
    if not isinstance(number, int):
        raise ValueError(f"unsupported logging level {value!r}")
    return number


__all__ = [
    "CORRELATION_KEYS",
    "LoggingConfig",
    "RunLogSink",
    "correlation_scope",
    "flush_logging",
    "get_active_logging_handle",
    "get_correlation_context",
    "setup_logging",
    "setup_structured_logging",
    "shutdown_logging",
]
