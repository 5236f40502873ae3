"""Optional OpenTelemetry span around each request.

Enabled with ``TRACE=1`` (or ``ROUTE_LOGGER_TRACE``). Tracing problems are
logged and otherwise ignored: the application is always called exactly once
and its response or exception is passed through unchanged.
"""

from __future__ import annotations

import logging
import re
import sys
from typing import Any

from opentelemetry import trace
from starlette.types import ASGIApp, Receive, Scope, Send

from route_logger.config import effective_config

logger = logging.getLogger(__name__)

TRACER_NAME = "route_logger"
MAX_PREFIX_LENGTH = 100

_UNSAFE_PREFIX_CHARS = re.compile(r"[^a-z0-9_]+")


def sanitize_prefix(method: str | None, path: str | None) -> str:
    """``GET /users/1`` -> ``get__users_1``, capped at 100 characters."""
    joined = "_".join(part for part in (method, path) if part).lower()
    return _UNSAFE_PREFIX_CHARS.sub("_", joined)[:MAX_PREFIX_LENGTH]


class TraceMiddleware:
    """Wrap each HTTP request in a server span when tracing is enabled."""

    def __init__(
        self,
        app: ASGIApp,
        *,
        enabled: bool | None = None,
        tracer_provider: Any = None,
    ) -> None:
        self.app = app
        self.enabled = enabled
        self.tracer_provider = tracer_provider

    def is_enabled(self) -> bool:
        if self.enabled is not None:
            return self.enabled
        try:
            return effective_config().trace
        except Exception:
            return False

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http" or not self.is_enabled():
            await self.app(scope, receive, send)
            return

        span_cm = self._start_span(scope)
        entered = False
        if span_cm is not None:
            try:
                span_cm.__enter__()
                entered = True
            except Exception as e:
                log_trace_error(e)

        exc_info: tuple[Any, Any, Any] = (None, None, None)
        try:
            await self.app(scope, receive, send)
        except BaseException:
            exc_info = sys.exc_info()
            raise
        finally:
            if entered:
                try:
                    span_cm.__exit__(*exc_info)
                except Exception as e:
                    log_trace_error(e)

    def _start_span(self, scope: Scope) -> Any:
        try:
            method = scope.get("method")
            path = scope.get("path")
            tracer = trace.get_tracer(TRACER_NAME, tracer_provider=self.tracer_provider)
            return tracer.start_as_current_span(
                " ".join(part for part in (method, path) if part) or "request",
                kind=trace.SpanKind.SERVER,
                attributes={
                    "http.request.method": method or "",
                    "url.path": path or "",
                    "route_logger.prefix": sanitize_prefix(method, path),
                },
            )
        except Exception as e:
            log_trace_error(e)
            return None


def log_trace_error(error: BaseException) -> None:
    try:
        logger.warning("TraceMiddleware: error during trace - %s: %s", type(error).__name__, error)
    except Exception:
        pass


__all__ = ["TraceMiddleware", "log_trace_error", "sanitize_prefix"]
