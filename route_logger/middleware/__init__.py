"""ASGI middleware for Starlette and FastAPI applications."""

from typing import Any

from route_logger.instrumentation import subscribe_sql_timings
from route_logger.middleware.logging import RequestLoggingMiddleware, capture_exception
from route_logger.middleware.tracing import TraceMiddleware


def install(
    app: Any,
    trace: bool | None = None,
    sql_timings: bool = True,
    **overrides: Any,
) -> Any:
    """Register request logging on ``app``.

    Stages, outermost first: :class:`TraceMiddleware` (unless ``trace`` is
    False; None defers to the ``TRACE`` setting per request), then
    :class:`RequestLoggingMiddleware` configured with ``overrides``.

    With ``sql_timings`` every SQLAlchemy engine in the process feeds the
    ``db`` and ``db_calls`` fields. The subscription is process-wide and
    happens once however many apps are installed.

    Example:
        >>> app = FastAPI()
        >>> install(app, tag="API", filter_parameters=["ssn"])
    """
    if sql_timings:
        subscribe_sql_timings()
    # add_middleware prepends, so the innermost stage is added first
    app.add_middleware(RequestLoggingMiddleware, **overrides)
    if trace is not False:
        app.add_middleware(TraceMiddleware, enabled=trace)
    return app


__all__ = ["RequestLoggingMiddleware", "TraceMiddleware", "capture_exception", "install"]
