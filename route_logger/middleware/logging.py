"""Request logging middleware for Starlette and FastAPI applications.

Pure ASGI middleware (not ``BaseHTTPMiddleware``) so the request body can be
observed without consuming it. For every HTTP request it:

- builds a WSGI-style environ from the ASGI scope
- tees the request body (bounded by ``max_captured_body``) for param extraction
- records the response status and headers as they are sent
- describes the matched route once the router has run
- hands everything to :class:`~route_logger.wrapper.RequestWrapper`

Exceptions raised by the application are logged and re-raised unchanged.
"""

from __future__ import annotations

import inspect
import io
import json
import logging
from typing import Any
from uuid import uuid4

from starlette.datastructures import QueryParams
from starlette.requests import HTTPConnection
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from route_logger.config import RouteLoggerConfig
from route_logger.extraction import BODY_STREAM_KEY, MIME_FORMATS, REQUEST_ID_KEY
from route_logger.types import Endpoint, ParsedRequest, RequestContext
from route_logger.wrapper import RequestWrapper

logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"
CAPTURED_EXCEPTION_KEY = "route_logger.exception"
HOST_CONFIG_ATTR = "route_logger"


def capture_exception(request_or_scope: Any, exc: BaseException) -> None:
    """Attach a handled exception to the current request.

    Call this from an application exception handler so the request is logged
    at error level with the handled response status.

    Example:
        >>> @app.exception_handler(PaymentError)
        ... async def payment_error(request, exc):
        ...     capture_exception(request, exc)
        ...     return JSONResponse({"error": str(exc)}, status_code=402)
    """
    scope = getattr(request_or_scope, "scope", request_or_scope)
    if isinstance(scope, dict):
        scope[CAPTURED_EXCEPTION_KEY] = exc


def build_environ(scope: Scope, request_id: str) -> dict[str, Any]:
    """Translate an ASGI HTTP scope into CGI-style environ keys."""
    environ: dict[str, Any] = {
        "REQUEST_METHOD": scope.get("method", ""),
        "SCRIPT_NAME": scope.get("root_path", ""),
        "PATH_INFO": scope.get("path", ""),
        "QUERY_STRING": (scope.get("query_string") or b"").decode("latin-1"),
        "wsgi.url_scheme": scope.get("scheme", "http"),
        REQUEST_ID_KEY: request_id,
    }

    server = scope.get("server")
    if server:
        environ["SERVER_NAME"] = str(server[0])
        environ["SERVER_PORT"] = str(server[1]) if len(server) > 1 and server[1] else ""

    client = scope.get("client")
    if client:
        environ["REMOTE_ADDR"] = str(client[0])

    for raw_name, raw_value in scope.get("headers") or []:
        name = raw_name.decode("latin-1").upper().replace("-", "_")
        value = raw_value.decode("latin-1")
        if name in ("CONTENT_TYPE", "CONTENT_LENGTH"):
            key = name
        else:
            key = f"HTTP_{name}"
        if key in environ:
            environ[key] = f"{environ[key]},{value}"
        else:
            environ[key] = value
    return environ


def _request_id_from_scope(scope: Scope) -> str:
    for raw_name, raw_value in scope.get("headers") or []:
        if raw_name.decode("latin-1").lower() == REQUEST_ID_HEADER.lower():
            value = raw_value.decode("latin-1").strip()
            if value:
                return value
    return str(uuid4())


def _source_location(endpoint: Any) -> tuple[str, int] | None:
    try:
        target = inspect.unwrap(endpoint)
        source_file = inspect.getsourcefile(target) or inspect.getfile(target)
        code = getattr(target, "__code__", None)
        if code is None:
            code = getattr(getattr(target, "__call__", None), "__code__", None)
        line = code.co_firstlineno if code is not None else 0
        return source_file, line
    except (TypeError, OSError):
        return None


def _route_verb(method: str, route: Any) -> str | None:
    methods = getattr(route, "methods", None)
    if not methods:
        return method or None
    if method in methods:
        return method
    candidates = sorted(m for m in methods if m != "HEAD")
    return candidates[0] if candidates else method or None


def _content_types(route: Any) -> dict[str, str] | None:
    response_class = getattr(route, "response_class", None)
    response_class = getattr(response_class, "value", response_class)
    media_type = getattr(response_class, "media_type", None)
    if not media_type:
        return None
    fmt = MIME_FORMATS.get(media_type)
    return {fmt: media_type} if fmt else None


def describe_route(scope: Scope) -> Endpoint | None:
    """Build an :class:`Endpoint` from the route the router matched, if any."""
    route = scope.get("route")
    endpoint = scope.get("endpoint") or getattr(route, "endpoint", None)
    if route is None and endpoint is None:
        return None

    method = scope.get("method", "")
    status = getattr(route, "status_code", None)
    return Endpoint(
        verb=_route_verb(method, route),
        path_template=getattr(route, "path_format", None) or getattr(route, "path", None),
        source_location=_source_location(endpoint) if endpoint is not None else None,
        status=status if isinstance(status, int) else None,
        content_types=_content_types(route),
        failure=scope.get(CAPTURED_EXCEPTION_KEY),
    )


def _body_params(content_type: str, body: bytes) -> dict[str, Any]:
    if not body:
        return {}
    media_type = content_type.split(";", 1)[0].strip().lower()
    if media_type == "application/x-www-form-urlencoded":
        return _multi_dict(QueryParams(body.decode("latin-1")))
    if "json" in media_type:
        parsed = json.loads(body)
        return parsed if isinstance(parsed, dict) else {"_json": parsed}
    return {}


def _multi_dict(params: QueryParams) -> dict[str, Any]:
    result: dict[str, Any] = {}
    for key in params.keys():
        values = params.getlist(key)
        result[key] = values if len(values) > 1 else values[0]
    return result


def parse_request(scope: Scope, request_id: str, body: bytes, body_complete: bool) -> ParsedRequest:
    """Collect path, query and body params the way the application sees them."""
    connection = HTTPConnection(scope)
    content_type = connection.headers.get("content-type", "")

    params: dict[str, Any] = dict(scope.get("path_params") or {})
    params.update(_multi_dict(connection.query_params))
    if body_complete:
        try:
            params.update(_body_params(content_type, body))
        except ValueError:
            pass

    return ParsedRequest(
        params=params,
        content_type=content_type or None,
        host=connection.url.hostname,
        remote_addr=connection.client.host if connection.client else None,
        request_id=request_id,
    )


class _BodyTee:
    """Copy of the request body as it is received, up to ``limit`` bytes."""

    def __init__(self, receive: Receive, limit: int) -> None:
        self._receive = receive
        self.limit = limit
        self.buffer = bytearray()
        self.truncated = False
        self.complete = False

    async def __call__(self) -> Message:
        message = await self._receive()
        if message["type"] == "http.request":
            chunk = message.get("body", b"") or b""
            if not self.truncated:
                if len(self.buffer) + len(chunk) > self.limit:
                    self.truncated = True
                    self.buffer.clear()
                else:
                    self.buffer.extend(chunk)
            if not message.get("more_body", False):
                self.complete = not self.truncated
        return message


class RequestLoggingMiddleware:
    """Log one structured record per HTTP request.

    Keyword arguments are per-call configuration overrides, applied on top of
    ``app.state.route_logger`` and the module-level configuration.

    Example:
        >>> app.add_middleware(RequestLoggingMiddleware, tag="API")
    """

    def __init__(
        self,
        app: ASGIApp,
        *,
        config: RouteLoggerConfig | None = None,
        **overrides: Any,
    ) -> None:
        self.app = app
        self.wrapper = RequestWrapper(config=config, **overrides)

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        context = RequestContext(host_config=self._host_config(scope))
        if not self.wrapper.start(context):
            await self.app(scope, receive, send)
            return

        request_id = _request_id_from_scope(scope)
        context.environ = build_environ(scope, request_id)
        scope.setdefault("state", {})["request_id"] = request_id

        tee = _BodyTee(receive, context.config.max_captured_body)
        response_start: dict[str, Any] = {}

        async def send_wrapper(message: Message) -> None:
            if message["type"] == "http.response.start":
                headers = list(message.get("headers", []))
                headers.append((REQUEST_ID_HEADER.lower().encode("latin-1"), request_id.encode("latin-1")))
                message = {**message, "headers": headers}
                response_start["status"] = message.get("status")
                response_start["headers"] = headers
            await send(message)

        try:
            await self.app(scope, tee, send_wrapper)
        except Exception as e:
            self._bind(context, scope, request_id, tee)
            self.wrapper.finish(context, failure=e)
            raise

        self._bind(context, scope, request_id, tee)
        self.wrapper.finish(
            context,
            response=(response_start.get("status"), response_start.get("headers", []), []),
        )

    def _host_config(self, scope: Scope) -> Any:
        app = scope.get("app")
        state = getattr(app, "state", None)
        return getattr(state, HOST_CONFIG_ATTR, None) if state is not None else None

    def _bind(self, context: RequestContext, scope: Scope, request_id: str, tee: _BodyTee) -> None:
        try:
            body = bytes(tee.buffer)
            context.environ[BODY_STREAM_KEY] = io.BytesIO(body)
            context.route = describe_route(scope)
            context.request = parse_request(scope, request_id, body, tee.complete)
        except Exception as e:
            if context.config.is_development:
                logger.warning("route_logger: could not describe request: %s", e)


__all__ = [
    "CAPTURED_EXCEPTION_KEY",
    "REQUEST_ID_HEADER",
    "RequestLoggingMiddleware",
    "build_environ",
    "capture_exception",
    "describe_route",
    "parse_request",
]
