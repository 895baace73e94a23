"""Logging setup with per-thread execution context.

Every worker thread advances one execution at a time, so the execution,
workflow and node being processed are kept in thread-local storage and
stamped onto each record by ``ExecutionContextFilter``. Text output can
reference them directly (``%(execution_id)s``); JSON output carries them
as top-level keys.
"""

import json
import logging
import sys
import threading
import traceback
from contextlib import contextmanager
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, Iterator, Optional

CONTEXT_FIELDS = ("request_id", "organization_id", "workflow_id", "execution_id", "node_key")

DEFAULT_TEXT_FORMAT = (
    "%(asctime)s %(levelname)-8s %(name)s [exec=%(execution_id)s node=%(node_key)s] %(message)s"
)

# Library loggers that are too chatty at the application level.
QUIET_LOGGERS = {
    "uvicorn": logging.INFO,
    "uvicorn.access": logging.WARNING,
    "sqlalchemy.engine": logging.WARNING,
    "sqlalchemy.pool": logging.WARNING,
    "urllib3": logging.WARNING,
}

_local = threading.local()


def _current() -> Dict[str, Any]:
    fields = getattr(_local, "fields", None)
    if fields is None:
        fields = _local.fields = {}
    return fields


class ExecutionContextFilter(logging.Filter):
    """Stamps the current thread's execution context onto log records."""

    def filter(self, record: logging.LogRecord) -> bool:
        fields = _current()
        for name in CONTEXT_FIELDS:
            if not hasattr(record, name):
                setattr(record, name, fields.get(name, "-"))

        extra = getattr(record, "extra_fields", None)
        if extra is None:
            extra = record.extra_fields = {}
        for key, value in fields.items():
            if key not in CONTEXT_FIELDS:
                extra.setdefault(key, value)
        return True


class StructuredFormatter(logging.Formatter):
    """One JSON document per record."""

    def format(self, record: logging.LogRecord) -> str:
        document: Dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "where": f"{record.module}:{record.funcName}:{record.lineno}",
            "thread": record.threadName,
        }

        for name in CONTEXT_FIELDS:
            value = getattr(record, name, "-")
            if value not in (None, "-"):
                document[name] = value

        document.update(getattr(record, "extra_fields", None) or {})

        if record.exc_info and record.exc_info[0] is not None:
            exc_type, exc_value, exc_tb = record.exc_info
            document["error"] = {
                "type": exc_type.__name__,
                "message": str(exc_value),
                "stack": "".join(traceback.format_exception(exc_type, exc_value, exc_tb)),
            }

        return json.dumps(document, default=str)


_context_filter = ExecutionContextFilter()


def _attach(root: logging.Logger, handler: logging.Handler, formatter: logging.Formatter) -> None:
    handler.setFormatter(formatter)
    handler.addFilter(_context_filter)
    root.addHandler(handler)


def setup_logging(
    level: str = "INFO",
    log_file: Optional[str] = None,
    log_format: Optional[str] = None,
    structured: bool = False,
    max_size: int = 10 * 1024 * 1024,
    backup_count: int = 5
) -> logging.Logger:
    """
    Configure the root logger for the engine process.

    Existing root handlers are replaced, so calling this twice (server
    lifespan after CLI startup) does not duplicate output.

    Args:
        level: Root level name
        log_file: Also write to this file, rotated at ``max_size`` bytes
        log_format: Text format; ignored when ``structured`` is set
        structured: Emit JSON documents instead of text
        max_size: Rotation threshold for ``log_file``
        backup_count: Rotated files to keep

    Returns:
        logging.Logger: The root logger
    """
    numeric_level = logging.getLevelName(level.upper())
    if not isinstance(numeric_level, int):
        raise ValueError(f"Unknown log level: {level}")

    if structured:
        formatter: logging.Formatter = StructuredFormatter()
    else:
        formatter = logging.Formatter(fmt=log_format or DEFAULT_TEXT_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")

    root = logging.getLogger()
    root.setLevel(numeric_level)
    for existing in list(root.handlers):
        root.removeHandler(existing)

    _attach(root, logging.StreamHandler(sys.stdout), formatter)

    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        _attach(root, RotatingFileHandler(log_file, maxBytes=max_size, backupCount=backup_count), formatter)

    for name, quiet_level in QUIET_LOGGERS.items():
        logging.getLogger(name).setLevel(quiet_level)
    logging.getLogger("automation_engine").setLevel(min(numeric_level, logging.INFO))

    return root


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


def set_logging_context(**fields):
    """Merge ``fields`` into the current thread's logging context."""
    _current().update({key: value for key, value in fields.items() if value is not None})


def clear_logging_context():
    _current().clear()


@contextmanager
def logging_context(**fields) -> Iterator[None]:
    """Apply ``fields`` for the duration of a block, then restore the previous context."""
    saved = dict(_current())
    set_logging_context(**fields)
    try:
        yield
    finally:
        _local.fields = saved


def log_with_context(logger: logging.Logger, level: int, message: str, **context):
    """Log ``message`` with ``context`` attached as structured fields."""
    logger.log(level, message, extra={"extra_fields": context})


class ErrorRecoveryLogger:
    """Reports retries of a failing operation and how they ended."""

    def __init__(self, component_name: str):
        self.component_name = component_name
        self.logger = get_logger(f"automation_engine.retry.{component_name}")

    def _emit(self, level: int, message: str, operation: str, **fields):
        log_with_context(self.logger, level, message, component=self.component_name, operation=operation, **fields)

    def log_recovery_attempt(
        self, operation: str, error: Exception, attempt: int, max_attempts: int, delay: Optional[float] = None
    ):
        suffix = f" in {delay:.2f}s" if delay else ""
        self._emit(
            logging.WARNING, f"{operation} failed ({type(error).__name__}: {error}); retry {attempt}/{max_attempts}{suffix}",
            operation, attempt=attempt, max_attempts=max_attempts, delay=delay, error_type=type(error).__name__
        )

    def log_recovery_success(self, operation: str, attempts_used: int):
        self._emit(logging.INFO, f"{operation} succeeded on attempt {attempts_used}", operation, attempts=attempts_used)

    def log_recovery_failure(self, operation: str, final_error: Exception, attempts_used: int):
        self._emit(
            logging.ERROR, f"{operation} gave up after {attempts_used} attempt(s): {final_error}",
            operation, attempts=attempts_used, error_type=type(final_error).__name__
        )
