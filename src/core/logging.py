"""Logging for AgencyFlow.

Every module logs through ``get_logger(__name__)``; records land under the
``agencyflow`` logger. Structured fields travel in ``extra={"context": ...}``.

A runner tick opens a ``log_context`` scope so every record written while it
runs carries the action name and a short run id, whether it comes from the
runner, the enrollment machine, or the mailer:

    with log_context(action="send", run="a1b2c3"):
        logger.info("Email handed off", extra={"context": {"enrollment_id": 4}})

File output is one JSON object per line; the console gets a compact
``HH:MM:SS LEVL name: message [k=v, ...]`` line.
"""

import json
import logging
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Iterator, Optional

ROOT_LOGGER_NAME = "agencyflow"
LOG_FILE_NAME = "agencyflow.log"
MAX_LOG_BYTES = 10 * 1024 * 1024
LOG_BACKUPS = 5

_scope: ContextVar[dict[str, Any]] = ContextVar("agencyflow_log_scope", default={})
_logging_initialized = False


# =============================================================================
# Run scope
# =============================================================================


@contextmanager
def log_context(**fields: Any) -> Iterator[dict[str, Any]]:
    """Attach ``fields`` to every record logged inside the block.

    Scopes nest; inner fields shadow outer ones until the inner block exits.
    """
    merged = {**_scope.get(), **fields}
    token = _scope.set(merged)
    try:
        yield merged
    finally:
        _scope.reset(token)


def current_context() -> dict[str, Any]:
    """Fields of the innermost open ``log_context`` (empty outside any)."""
    return dict(_scope.get())


class ScopeFilter(logging.Filter):
    """Fold the open run scope into ``record.context``.

    Fields passed explicitly on the call win over scope fields.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        scope = _scope.get()
        if scope:
            explicit = getattr(record, "context", None) or {}
            record.context = {**scope, **explicit}
        return True


def _record_context(record: logging.LogRecord) -> dict[str, Any]:
    context = getattr(record, "context", None)
    return context if isinstance(context, dict) else {}


# =============================================================================
# Formatters
# =============================================================================


class JSONFormatter(logging.Formatter):
    """One JSON object per record, for the rotating log file."""

    def format(self, record: logging.LogRecord) -> str:
        stamp = datetime.fromtimestamp(record.created, tz=timezone.utc)
        entry: dict[str, Any] = {
            "timestamp": stamp.isoformat(timespec="milliseconds").replace("+00:00", "Z"),
            "level": record.levelname,
            "module": record.name,
            "message": record.getMessage(),
        }
        context = _record_context(record)
        if context:
            entry["context"] = context
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class ConsoleFormatter(logging.Formatter):
    """Short human-readable lines for the terminal."""

    def format(self, record: logging.LogRecord) -> str:
        clock = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        line = f"{clock} {record.levelname[:4]:4s} {record.name}: {record.getMessage()}"
        context = _record_context(record)
        if context:
            line += " [" + ", ".join(f"{key}={value}" for key, value in context.items()) + "]"
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


# =============================================================================
# Setup
# =============================================================================


def setup_logging(
    log_dir: Optional[Path] = None,
    console_level: int = logging.INFO,
    file_level: int = logging.DEBUG,
) -> None:
    """Attach console and file handlers to the ``agencyflow`` logger.

    Safe to call more than once; only the first call installs handlers.

    Args:
        log_dir: Directory for agencyflow.log (default ~/.agencyflow/logs)
        console_level: Threshold for the console handler
        file_level: Threshold for the JSON file handler
    """
    global _logging_initialized
    if _logging_initialized:
        return

    log_dir = log_dir or Path.home() / ".agencyflow" / "logs"
    log_dir.mkdir(parents=True, exist_ok=True)

    root = logging.getLogger(ROOT_LOGGER_NAME)
    root.setLevel(logging.DEBUG)
    scope_filter = ScopeFilter()

    console = logging.StreamHandler()
    console.setLevel(console_level)
    console.setFormatter(ConsoleFormatter())
    console.addFilter(scope_filter)
    root.addHandler(console)

    logfile = RotatingFileHandler(
        log_dir / LOG_FILE_NAME,
        maxBytes=MAX_LOG_BYTES,
        backupCount=LOG_BACKUPS,
        encoding="utf-8",
    )
    logfile.setLevel(file_level)
    logfile.setFormatter(JSONFormatter())
    logfile.addFilter(scope_filter)
    root.addHandler(logfile)

    _logging_initialized = True
    root.info("Logging initialized", extra={"context": {"log_dir": str(log_dir)}})


def get_logger(name: str) -> logging.Logger:
    """Logger under ``agencyflow``; a leading ``src.`` is dropped from ``name``."""
    if name.startswith("src."):
        name = name[len("src."):]
    return logging.getLogger(f"{ROOT_LOGGER_NAME}.{name}")
