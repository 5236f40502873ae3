"""Feed SQLAlchemy statement timings into the per-request accumulator."""

from __future__ import annotations

import logging
import time
from threading import Lock
from typing import Any

from sqlalchemy import event
from sqlalchemy.engine import Engine

from route_logger import timings
from route_logger.config import get_config

logger = logging.getLogger(__name__)

_START_STACK_KEY = "route_logger_query_start"
_SUBSCRIBE_LOCK = Lock()


def _warn(message: str, *args: Any) -> None:
    try:
        if get_config().is_production:
            return
        logger.warning(message, *args)
    except Exception:
        pass


def _execution_key(context: Any) -> int | None:
    return id(context) if context is not None else None


def _before_cursor_execute(conn, cursor, statement, parameters, context, executemany) -> None:
    try:
        key = _execution_key(context)
        stack = conn.info.setdefault(_START_STACK_KEY, [])
        # an engine subscribed both directly and through Engine sees each event twice
        if key is not None and stack and stack[-1][0] == key:
            return
        stack.append((key, time.perf_counter()))
    except Exception as e:
        _warn("route_logger: could not start query timer: %s", e)


def _stop_timer(conn: Any, context: Any) -> None:
    stack = conn.info.get(_START_STACK_KEY)
    if not stack or stack[-1][0] != _execution_key(context):
        return
    _, started = stack.pop()
    timings.record(time.perf_counter() - started)


def _after_cursor_execute(conn, cursor, statement, parameters, context, executemany) -> None:
    try:
        _stop_timer(conn, context)
    except Exception as e:
        _warn("route_logger: could not record query time: %s", e)


def _handle_error(exception_context) -> None:
    try:
        conn = exception_context.connection
        if conn is not None:
            _stop_timer(conn, exception_context.execution_context)
    except Exception as e:
        _warn("route_logger: could not record failed query time: %s", e)


_LISTENERS = (
    ("before_cursor_execute", _before_cursor_execute),
    ("after_cursor_execute", _after_cursor_execute),
    ("handle_error", _handle_error),
)


def subscribe_sql_timings(target: Any = Engine) -> None:
    """Count every statement executed through ``target`` as one sub-operation.

    ``target`` is an engine, or the :class:`~sqlalchemy.engine.Engine` class
    to cover all engines. Subscribing twice is a no-op.
    """
    with _SUBSCRIBE_LOCK:
        for identifier, listener in _LISTENERS:
            if not event.contains(target, identifier, listener):
                event.listen(target, identifier, listener)


def unsubscribe_sql_timings(target: Any = Engine) -> None:
    with _SUBSCRIBE_LOCK:
        for identifier, listener in _LISTENERS:
            if event.contains(target, identifier, listener):
                event.remove(target, identifier, listener)


__all__ = ["subscribe_sql_timings", "unsubscribe_sql_timings"]
