"""Build and emit one structured log record per request.

The subscriber never raises. Writing a record goes through two paths:

- the primary path builds the full record and writes it once; a failing
  write is reported back as a :class:`~route_logger.types.LogOutcome` and is
  not retried, so a broken sink cannot produce duplicate entries;
- the fallback path only runs when the primary path never reached the sink
  (building the record failed). It assembles a minimal record straight from
  the raw environ and writes it once; its own failure is dropped.
"""

from __future__ import annotations

import logging
import time
import traceback
from collections.abc import Mapping
from typing import Any

from route_logger.config import RouteLoggerConfig, get_config
from route_logger.extraction import (
    extract_action,
    extract_controller,
    extract_format,
    extract_format_from_env,
    extract_host,
    extract_params,
    extract_remote_addr,
    extract_request_id,
    extract_source_location,
    extract_status,
    host_from_env,
    remote_addr_from_env,
    request_id_from_env,
    safe_string,
)
from route_logger.filtering import filter_params
from route_logger.logging import default_request_logger
from route_logger.types import (
    UNKNOWN_ACTION,
    ExceptionDescriptor,
    LogOutcome,
    LogRecord,
    RequestContext,
    SupportsTagging,
)

logger = logging.getLogger(__name__)

MAX_BACKTRACE = 10


def exception_class_name(exc: BaseException) -> str:
    cls = type(exc)
    if cls.__module__ == "builtins":
        return cls.__qualname__
    return f"{cls.__module__}.{cls.__qualname__}"


def format_backtrace(exc: BaseException, limit: int = MAX_BACKTRACE) -> list[str]:
    """Innermost frames first, as ``file:line:in name``."""
    frames = traceback.extract_tb(exc.__traceback__)
    return [f"{frame.filename}:{frame.lineno}:in {frame.name}" for frame in reversed(frames)][:limit]


def build_exception_data(exc: BaseException, include_backtrace: bool) -> ExceptionDescriptor:
    try:
        return ExceptionDescriptor(
            class_name=exception_class_name(exc),
            message=str(exc),
            backtrace=format_backtrace(exc) if include_backtrace else None,
        )
    except Exception as e:
        return ExceptionDescriptor(
            class_name="Unknown", message=f"Failed to extract exception data: {e}"
        )


def resolve_sink(config: RouteLoggerConfig | None = None) -> Any:
    """Return the configured sink, or the default tagged request logger."""
    config = config or get_config()
    return config.logger if config.logger is not None else default_request_logger()


class RequestLogSubscriber:
    """Turns a finished :class:`RequestContext` into a log entry.

    Custom subscribers can subclass this and override :meth:`build` or
    :meth:`emit`; configure them with ``subscriber_class``.

    Example:
        >>> subscriber = RequestLogSubscriber(get_config())
        >>> outcome = subscriber(context)
        >>> outcome.succeeded
        True
    """

    def __init__(self, config: RouteLoggerConfig | None = None) -> None:
        self.config = config or get_config()

    def __call__(self, context: RequestContext) -> LogOutcome:
        sink = context.logger if context.logger is not None else resolve_sink(self.config)
        outcome = LogOutcome()
        try:
            record = self.build(context)
            outcome = self.emit(record, context.failure, sink)
            if outcome.succeeded:
                context.logged_successfully = True
        except Exception as e:
            if not outcome.attempted and not context.logged_successfully:
                self.emit_fallback(context, e, sink)
        return outcome

    # ========== Primary path ==========

    def build(self, context: RequestContext) -> LogRecord:
        environ = context.environ if isinstance(context.environ, Mapping) else {}
        if context.duration is not None:
            duration = context.duration
        else:
            duration = time.perf_counter() - context.started_at

        return LogRecord(
            method=safe_string(environ.get("REQUEST_METHOD")),
            path=safe_string(environ.get("PATH_INFO") or environ.get("REQUEST_URI")),
            format=extract_format(context),
            controller=extract_controller(context),
            source_location=extract_source_location(context),
            action=extract_action(context),
            status=extract_status(context),
            host=extract_host(context),
            remote_addr=extract_remote_addr(context),
            request_id=extract_request_id(context),
            duration=duration,
            db=context.db_runtime or 0,
            db_calls=context.db_calls or 0,
            params=filter_params(extract_params(context), config=self.config),
        )

    def emit(self, record: LogRecord, failure: BaseException | None, sink: Any) -> LogOutcome:
        """Write ``record`` once; error level with exception data when a failure exists."""
        try:
            if failure is not None:
                record.exception = build_exception_data(
                    failure, include_backtrace=not self.config.is_production
                )
                self.write("error", record.as_dict(), sink)
            else:
                self.write("info", record.as_dict(), sink)
        except Exception as e:
            self._warn("route_logger log error: %s", e)
            return LogOutcome(attempted=True, succeeded=False, error=e)
        return LogOutcome(attempted=True, succeeded=True)

    def write(self, level: str, data: dict[str, Any], sink: Any) -> None:
        if sink is None:
            return
        tag = self.config.tag
        if tag and isinstance(sink, SupportsTagging):
            with sink.tagged(tag):
                getattr(sink, level)(data)
        else:
            getattr(sink, level)(data)

    # ========== Fallback path ==========

    def emit_fallback(self, context: RequestContext, error: BaseException, sink: Any) -> None:
        """Write a minimal error record after :meth:`build` failed.

        Skipped when the request was already logged or when ``error`` is the
        request's own failure.
        """
        try:
            if context.logged_successfully:
                return
            if error is context.failure:
                return

            environ = context.environ if isinstance(context.environ, Mapping) else {}
            if context.duration is not None:
                duration = context.duration
            else:
                duration = time.perf_counter() - context.started_at

            data: dict[str, Any] = {
                "method": safe_string(environ.get("REQUEST_METHOD")),
                "path": safe_string(environ.get("PATH_INFO") or environ.get("REQUEST_URI")),
                "format": extract_format_from_env(environ),
                "status": extract_status(context),
                "host": host_from_env(environ),
                "remote_addr": remote_addr_from_env(environ),
                "request_id": request_id_from_env(environ),
                "duration": round(float(duration or 0), 2),
                "db": round(float(context.db_runtime or 0), 2),
                "db_calls": context.db_calls or 0,
                "action": extract_action(context) or UNKNOWN_ACTION,
                "controller": extract_controller(context),
            }

            include_backtrace = not self.config.is_production
            described = context.failure if context.failure is not None else error
            data["exception"] = build_exception_data(described, include_backtrace).as_dict()

            self.write("error", data, sink)
        except Exception:
            pass

    def _warn(self, message: str, *args: Any) -> None:
        if self.config.is_production:
            return
        try:
            logger.warning(message, *args)
        except Exception:
            pass


__all__ = [
    "MAX_BACKTRACE",
    "RequestLogSubscriber",
    "build_exception_data",
    "exception_class_name",
    "format_backtrace",
    "resolve_sink",
]
