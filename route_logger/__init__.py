"""Structured per-request logging for Starlette and FastAPI APIs.

Emits one record per request with method, path, route-derived action and
controller, status, timings, database time and sanitized params.
"""

from route_logger.config import RouteLoggerConfig, configure, effective_config, get_config
from route_logger.exceptions import ConfigurationError, RouteLoggerError
from route_logger.instrumentation import subscribe_sql_timings, unsubscribe_sql_timings
from route_logger.middleware import (
    RequestLoggingMiddleware,
    TraceMiddleware,
    capture_exception,
    install,
)
from route_logger.status import StatusResolver, resolve_from_failure
from route_logger.subscriber import RequestLogSubscriber
from route_logger.types import (
    Endpoint,
    LogOutcome,
    LogRecord,
    ParsedRequest,
    RequestContext,
)
from route_logger.wrapper import RequestWrapper

__version__ = "0.1.0"

__all__ = [
    "ConfigurationError",
    "Endpoint",
    "LogOutcome",
    "LogRecord",
    "ParsedRequest",
    "RequestContext",
    "RequestLogSubscriber",
    "RequestLoggingMiddleware",
    "RequestWrapper",
    "RouteLoggerConfig",
    "RouteLoggerError",
    "StatusResolver",
    "TraceMiddleware",
    "__version__",
    "capture_exception",
    "configure",
    "effective_config",
    "get_config",
    "install",
    "resolve_from_failure",
    "subscribe_sql_timings",
    "unsubscribe_sql_timings",
]
