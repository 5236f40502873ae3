"""Request wrapper: times each request and hands it to the log subscriber.

The wrapper owns the lifecycle of one request::

    IDLE -> TIMING_RESET -> DOWNSTREAM_EXECUTING -> METADATA_CAPTURING -> EMITTED

Any internal error along the way moves the context to ``FAULT_ABSORBED``.
Whatever happens inside, the caller receives exactly what the downstream
chain returned or raised.
"""

from __future__ import annotations

import logging
import time
from typing import Any

from route_logger import timings
from route_logger.config import (
    RouteLoggerConfig,
    effective_config,
    fallback_config,
    get_config,
)
from route_logger.status import resolve_from_failure
from route_logger.subscriber import RequestLogSubscriber, resolve_sink
from route_logger.types import Downstream, LifecycleState, RequestContext

logger = logging.getLogger(__name__)


def status_from_response(response: Any) -> int | None:
    """Read a status from a ``(status, headers, body)`` tuple or a response object."""
    try:
        if isinstance(response, (list, tuple)):
            candidate = response[0] if response else None
        else:
            candidate = getattr(response, "status_code", None)
            if candidate is None:
                candidate = getattr(response, "status", None)
    except Exception:
        return None
    if isinstance(candidate, bool) or not isinstance(candidate, int):
        return None
    return candidate


def base_config() -> RouteLoggerConfig:
    """Return the module-level configuration, or defaults when it cannot load."""
    try:
        return get_config()
    except Exception as e:
        return fallback_config(e)


class RequestWrapper:
    """Wrap a downstream handler with request logging.

    ``app`` is a synchronous callable taking the :class:`RequestContext`.
    Asynchronous adapters drive :meth:`start` and :meth:`finish` themselves.

    Example:
        >>> wrapper = RequestWrapper(handler, tag="API")
        >>> response = wrapper(RequestContext(environ=environ, route=route))
    """

    def __init__(
        self,
        app: Downstream | None = None,
        *,
        config: RouteLoggerConfig | None = None,
        **overrides: Any,
    ) -> None:
        self.app = app
        self.config = config
        self.overrides = overrides

    def resolve_config(self, context: RequestContext) -> RouteLoggerConfig:
        if self.config is not None:
            return self.config
        try:
            return effective_config(context.host_config, **self.overrides)
        except Exception as e:
            base = base_config()
            if base.is_development:
                logger.warning("route_logger: ignoring invalid configuration: %s", e)
            try:
                return effective_config(base=base, **self.overrides)
            except Exception:
                return base

    def __call__(self, context: RequestContext) -> Any:
        if self.app is None:
            raise TypeError("RequestWrapper has no downstream app to call")
        if not self.start(context):
            return self.app(context)

        try:
            response = self.app(context)
        except Exception as e:
            self.finish(context, failure=e)
            raise
        self.finish(context, response=response)
        return response

    # ========== Phases ==========

    def start(self, context: RequestContext) -> bool:
        """Prepare ``context`` for a request; False means logging is disabled."""
        config = self.resolve_config(context)
        if not config.enabled:
            return False

        context.config = config
        context.started_at = time.perf_counter()
        try:
            context.logger = context.logger if context.logger is not None else resolve_sink(config)
        except Exception as e:
            self._warn(config, "route_logger: could not resolve log sink: %s", e)

        try:
            timings.reset()
            context.state = LifecycleState.TIMING_RESET
        except Exception as e:
            self._warn(config, "route_logger: could not reset timings: %s", e)
        context.state = LifecycleState.DOWNSTREAM_EXECUTING
        return True

    def finish(
        self,
        context: RequestContext,
        response: Any = None,
        failure: BaseException | None = None,
    ) -> None:
        """Capture request metadata and emit the record. Never raises."""
        if not isinstance(context.config, RouteLoggerConfig):
            context.config = base_config()
        config = context.config
        try:
            context.duration = time.perf_counter() - context.started_at
            context.state = LifecycleState.METADATA_CAPTURING

            if failure is not None:
                context.failure = failure
                if context.status is None:
                    context.status = resolve_from_failure(failure)
            else:
                context.response = response
                if context.status is None:
                    context.status = status_from_response(response)
                route_failure = getattr(context.route, "failure", None)
                if context.failure is None and route_failure is not None:
                    context.failure = route_failure

            context.db_runtime, context.db_calls = timings.snapshot()
            self.notify(context, config)
            context.state = LifecycleState.EMITTED
        except Exception as e:
            context.state = LifecycleState.FAULT_ABSORBED
            self._warn(config, "route_logger: request logging failed: %s", e)

    def notify(self, context: RequestContext, config: RouteLoggerConfig) -> None:
        subscriber_class = config.subscriber_class or RequestLogSubscriber
        subscriber = subscriber_class(config)
        subscriber(context)

    def _warn(self, config: RouteLoggerConfig, message: str, *args: Any) -> None:
        if not config.is_development:
            return
        try:
            logger.warning(message, *args)
        except Exception:
            pass


__all__ = ["RequestWrapper", "status_from_response"]
