"""
Logging configuration for the stockflow engine
Supports JSON logs in production and human-readable logs in development
Stamps every record with the current run ID (simulation run or HTTP request)
"""

import logging
import sys
import json
import uuid
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any, Dict, Iterator, Optional
from logging.handlers import RotatingFileHandler
from contextvars import ContextVar
import os

if TYPE_CHECKING:
    from stockflow.config import Settings

# Context variable for run ID (thread-safe)
run_id_context: ContextVar[Optional[str]] = ContextVar("run_id", default=None)

# LogRecord attributes that are not user-supplied extras
_RECORD_ATTRIBUTES = {
    "name",
    "msg",
    "args",
    "created",
    "filename",
    "funcName",
    "levelname",
    "levelno",
    "lineno",
    "module",
    "msecs",
    "message",
    "pathname",
    "process",
    "processName",
    "relativeCreated",
    "thread",
    "threadName",
    "taskName",
    "exc_info",
    "exc_text",
    "stack_info",
    "run_id",
}


def _record_run_id(record: logging.LogRecord) -> Optional[str]:
    return run_id_context.get() or getattr(record, "run_id", None)


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging"""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON"""
        log_data: Dict[str, Any] = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        run_id = _record_run_id(record)
        if run_id:
            log_data["run_id"] = run_id

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        # Extra fields passed via logger.info(..., extra={...})
        for key, value in record.__dict__.items():
            if key not in _RECORD_ATTRIBUTES:
                log_data[key] = value

        return json.dumps(log_data, default=str)


class HumanReadableFormatter(logging.Formatter):
    """Human-readable formatter with run ID support"""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as human-readable string"""
        run_id = _record_run_id(record)

        base_format = "%(asctime)s - %(name)s - %(levelname)s"
        if run_id:
            base_format += f" - [run_id={run_id}]"
        base_format += " - %(message)s"

        formatter = logging.Formatter(base_format, datefmt="%Y-%m-%d %H:%M:%S")
        return formatter.format(record)


def setup_logging(
    level: str = "INFO",
    json_format: bool = False,
    log_file: Optional[str] = None,
    max_bytes: int = 10 * 1024 * 1024,
    backup_count: int = 5,
) -> None:
    """
    Configure the root logger

    Args:
        level: Logging level name
        json_format: One JSON object per line instead of the human format
        log_file: Also write to this file, rotated at max_bytes
        max_bytes: Rotation size of the log file
        backup_count: Rotated files to keep
    """
    formatter: logging.Formatter = JSONFormatter() if json_format else HumanReadableFormatter()

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if log_file:
        log_dir = os.path.dirname(log_file)
        if log_dir:
            os.makedirs(log_dir, exist_ok=True)
        file_handler = RotatingFileHandler(
            log_file, maxBytes=max_bytes, backupCount=backup_count
        )
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)

    # Engine logs carry the run detail; keep the server quiet
    logging.getLogger("uvicorn").setLevel(logging.WARNING)
    logging.getLogger("fastapi").setLevel(logging.WARNING)


def setup_logging_from_settings(settings: "Settings") -> None:
    """Configure logging from the process settings"""
    setup_logging(
        level=settings.log_level,
        json_format=settings.log_format_json,
        log_file=settings.log_file,
        max_bytes=settings.log_max_bytes,
        backup_count=settings.log_backup_count,
    )


def set_run_id(run_id: Optional[str] = None) -> str:
    """
    Set the run ID for the current context

    Args:
        run_id: ID to use; a new UUID when None

    Returns:
        The run ID now in effect
    """
    if run_id is None:
        run_id = str(uuid.uuid4())
    run_id_context.set(run_id)
    return run_id


@contextmanager
def run_scope(run_id: str) -> Iterator[str]:
    """
    Tag log records with run_id for the duration of the block

    An ID already set by the caller (an HTTP request, a sampling batch) is
    kept so a run's records stay attributable to whatever started it.

    Yields:
        The run ID in effect inside the block
    """
    current = run_id_context.get()
    if current is not None:
        yield current
        return
    token = run_id_context.set(run_id)
    try:
        yield run_id
    finally:
        run_id_context.reset(token)


def get_logger(name: str) -> logging.Logger:
    """Logger for a module (typically __name__)"""
    return logging.getLogger(name)
