"""JSON structured logging for route_logger.

Provides the JSON formatter used for request records, and a tagged logging
adapter whose ``tagged()`` scope labels every record written inside it.
Uses python-json-logger for JSON formatting; dict messages (such as request
records) are merged into the emitted JSON document.
"""

import logging
import sys
from collections.abc import Iterator, MutableMapping
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any

from pythonjsonlogger.json import JsonFormatter

from route_logger.config import get_config

REQUEST_LOGGER_NAME = "route_logger.requests"

_tags_var: ContextVar[tuple[str, ...]] = ContextVar("route_logger_tags", default=())


def current_tags() -> tuple[str, ...]:
    """Return the tags active in the current execution context."""
    return _tags_var.get()


@contextmanager
def tagged_scope(*tags: str) -> Iterator[tuple[str, ...]]:
    """Push tags for the duration of a block, restoring the previous set on exit."""
    active = current_tags() + tuple(tag for tag in tags if tag)
    token = _tags_var.set(active)
    try:
        yield active
    finally:
        _tags_var.reset(token)


class TagFilter(logging.Filter):
    """Logging filter that injects the active tags into log records."""

    def filter(self, record: logging.LogRecord) -> bool:
        """Inject tags into the log record.

        Args:
            record: The log record to modify.

        Returns:
            bool: Always True (doesn't filter out records).
        """
        if not hasattr(record, "tags"):
            record.tags = list(current_tags())
        return True


class CustomJsonFormatter(JsonFormatter):
    """JSON formatter with timestamp, level, logger and source fields."""

    def add_fields(
        self,
        log_record: dict[str, Any],
        record: logging.LogRecord,
        message_dict: dict[str, Any],
    ) -> None:
        """Add custom fields to the JSON log record.

        Args:
            log_record: The dictionary that will be serialized to JSON.
            record: The original logging.LogRecord.
            message_dict: Dictionary from the log message.
        """
        super().add_fields(log_record, record, message_dict)

        log_record["timestamp"] = record.created
        log_record["level"] = record.levelname
        log_record["logger"] = record.name
        log_record["module"] = record.module
        log_record["function"] = record.funcName
        log_record["line"] = record.lineno

        tags = getattr(record, "tags", None)
        if tags:
            log_record["tags"] = list(tags)
        else:
            log_record.pop("tags", None)


class TaggedLogger(logging.LoggerAdapter):
    """Logger adapter supporting ``with logger.tagged("API"): ...`` scopes.

    Example:
        >>> logger = TaggedLogger(logging.getLogger("api"))
        >>> with logger.tagged("Grape"):
        ...     logger.info({"path": "/users"})
    """

    def __init__(self, logger: logging.Logger, extra: dict[str, Any] | None = None) -> None:
        super().__init__(logger, extra or {})

    def tagged(self, *tags: str) -> Any:
        return tagged_scope(*tags)

    def process(
        self, msg: Any, kwargs: MutableMapping[str, Any]
    ) -> tuple[Any, MutableMapping[str, Any]]:
        extra = dict(self.extra or {})
        extra.update(kwargs.get("extra") or {})
        extra.setdefault("tags", list(current_tags()))
        kwargs["extra"] = extra
        return msg, kwargs


def setup_logging(level: str | None = None, json: bool = True) -> None:
    """Configure structured logging for the application.

    Sets up:
    - JSON formatter (or a plain text one when ``json`` is False)
    - Console handler writing to stdout
    - Tag filter so tagged scopes show up on every record
    - Log level from config or parameter

    Args:
        level: Optional log level override (DEBUG, INFO, WARNING, ERROR, CRITICAL).
               If not provided, uses ROUTE_LOGGER_LOG_LEVEL from config.
        json: Emit JSON documents (default) instead of plain text lines.
    """
    log_level = (level or get_config().log_level).upper()

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)

    # Remove existing handlers to avoid duplicates
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(log_level)

    if json:
        console_handler.setFormatter(
            CustomJsonFormatter("%(timestamp)s %(level)s %(name)s %(message)s")
        )
    else:
        console_handler.setFormatter(
            logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")
        )

    console_handler.addFilter(TagFilter())
    root_logger.addHandler(console_handler)


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance for the given module.

    Args:
        name: The logger name (typically __name__ from the calling module).

    Returns:
        logging.Logger: Logger instance.
    """
    return logging.getLogger(name)


def default_request_logger() -> TaggedLogger:
    """Return the sink used when no custom logger is configured."""
    return TaggedLogger(get_logger(REQUEST_LOGGER_NAME))


__all__ = [
    "CustomJsonFormatter",
    "REQUEST_LOGGER_NAME",
    "TagFilter",
    "TaggedLogger",
    "current_tags",
    "default_request_logger",
    "get_logger",
    "setup_logging",
    "tagged_scope",
]
