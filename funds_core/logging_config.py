"""
Structured Logging Configuration Module

JSON log lines for every funds-movement operation. Records carry the acting
user, the action, the resource touched and the request's correlation id so a
transfer can be followed from the HTTP call through its outbox tasks.
"""

import logging
import json
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Iterator, Optional

# Attributes log_action attaches to records, in output order
STRUCTURED_FIELDS = ("correlation_id", "user_id", "action", "resource", "extra")

_correlation_id: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)


def current_correlation_id() -> Optional[str]:
    return _correlation_id.get()


@contextmanager
def correlation_scope(correlation_id: Optional[str]) -> Iterator[None]:
    """Tag every record logged inside the block with ``correlation_id``"""
    token = _correlation_id.set(correlation_id)
    try:
        yield
    finally:
        _correlation_id.reset(token)


class CorrelationFilter(logging.Filter):
    """Copies the active correlation id onto records that lack one"""

    def filter(self, record):
        if getattr(record, "correlation_id", None) is None:
            record.correlation_id = _correlation_id.get()
        return True


def _structured(record: logging.LogRecord) -> dict:
    values = {name: getattr(record, name, None) for name in STRUCTURED_FIELDS}
    return {k: v for k, v in values.items() if v is not None}


class JSONFormatter(logging.Formatter):
    """One JSON object per record"""

    def format(self, record):
        log_entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        log_entry.update(_structured(record))

        if record.exc_info:
            log_entry['exception'] = self.formatException(record.exc_info)

        return json.dumps(log_entry, default=str)


class TextFormatter(logging.Formatter):
    """Human-readable lines with the structured fields appended as key=value"""

    def __init__(self):
        super().__init__("%(asctime)s %(levelname)s %(name)s: %(message)s")

    def format(self, record):
        line = super().format(record)
        fields = " ".join(f"{k}={v}" for k, v in _structured(record).items())
        return f"{line} [{fields}]" if fields else line


def setup_logging(level: str = "INFO", logger_name: str = "funds_core",
                  log_format: str = "json", log_file: Optional[str] = None) -> logging.Logger:
    """
    Configure the package logger.

    Args:
        level: Log level name
        logger_name: Root of the logger hierarchy to configure
        log_format: "json" or "text"
        log_file: Optional file path; stderr when omitted
    """
    logger = logging.getLogger(logger_name)

    for handler in logger.handlers[:]:
        logger.removeHandler(handler)

    handler = logging.FileHandler(log_file) if log_file else logging.StreamHandler()
    handler.setFormatter(JSONFormatter() if log_format == "json" else TextFormatter())
    handler.addFilter(CorrelationFilter())

    logger.addHandler(handler)
    logger.setLevel(getattr(logging, level.upper()))
    logger.propagate = False

    return logger


def get_logger(name: str = "funds_core") -> logging.Logger:
    return logging.getLogger(name)


def log_action(logger: logging.Logger, level: str, message: str,
               user_id: Optional[str] = None, action: Optional[str] = None,
               resource: Optional[str] = None, correlation_id: Optional[str] = None,
               extra: Optional[dict] = None):
    """
    Log a business event with structured fields.

    Args:
        logger: Logger instance
        level: Level name (info, warning, error, ...)
        message: Log message
        user_id: Acting user or admin
        action: Operation name, e.g. ``transfer_submit``
        resource: ``kind:id`` of the record acted upon
        correlation_id: Overrides the id from the active correlation scope
        extra: Additional structured data
    """
    fields = {
        "user_id": user_id,
        "action": action,
        "resource": resource,
        "correlation_id": correlation_id or _correlation_id.get(),
        "extra": extra or None,
    }
    logger.log(getattr(logging, level.upper()), message,
               extra={k: v for k, v in fields.items() if v is not None})
