"""Metadata extraction for request log records.

Every public function here takes a :class:`~route_logger.types.RequestContext`
(or its environ) and returns a documented fallback instead of raising, so a
malformed request can degrade a log record but never break one.
"""

from __future__ import annotations

import json
import os
import re
from collections.abc import Mapping, Sequence
from typing import Any

from route_logger.config import RouteLoggerConfig, get_config
from route_logger.status import resolve_from_failure
from route_logger.types import UNKNOWN_ACTION

BODY_STREAM_KEY = "wsgi.input"
NEGOTIATED_FORMAT_KEY = "route_logger.format"
FORMATS_KEY = "route_logger.formats"
REQUEST_ID_KEY = "route_logger.request_id"
DEFAULT_FORMAT = "json"
CONTROLLER_SEPARATOR = "::"
SOURCE_SUFFIX = ".py"

MIME_FORMATS: dict[str, str] = {
    "application/json": "json",
    "application/problem+json": "json",
    "application/vnd.api+json": "jsonapi",
    "application/xml": "xml",
    "text/xml": "xml",
    "text/html": "html",
    "text/plain": "txt",
    "text/csv": "csv",
    "text/javascript": "js",
    "application/javascript": "js",
    "application/x-yaml": "yaml",
    "application/yaml": "yaml",
    "application/x-www-form-urlencoded": "url_encoded_form",
    "multipart/form-data": "multipart_form",
    "application/octet-stream": "binary",
    "application/pdf": "pdf",
    "text/event-stream": "event_stream",
}

_PATH_PARAM = re.compile(r"\{([^}:]+)(?::[^}]*)?\}")
_SEPARATORS = re.compile(r"[:/]")
_REPEATED_UNDERSCORE = re.compile(r"_+")


def safe_string(value: Any) -> str | None:
    if value is None:
        return None
    try:
        return str(value)
    except Exception:
        return None


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _attr(obj: Any, name: str) -> Any:
    try:
        return getattr(obj, name, None)
    except Exception:
        return None


def _environ(context: Any) -> Mapping[str, Any]:
    environ = _attr(context, "environ")
    return environ if isinstance(environ, Mapping) else {}


def _config_for(context: Any) -> RouteLoggerConfig:
    config = _attr(context, "config")
    return config if isinstance(config, RouteLoggerConfig) else get_config()


def _source_location(context: Any) -> tuple[str, Any] | None:
    route = _attr(context, "route")
    location = _attr(route, "source_location") if route is not None else None
    if not location:
        return None
    path = location[0]
    line = location[1] if len(location) > 1 else None
    if not path:
        return None
    return str(path).replace(os.sep, "/"), line


# ========== Status ==========


def extract_status(context: Any) -> int:
    """Resolve the status to log for a request.

    Priority: the status attached by the wrapper, the first element of a
    ``(status, headers, body)`` response, the endpoint's own status when it is
    an error (a success status there may be stale), the captured failure, and
    finally 500 with a failure or 200 without one.
    """
    try:
        status = getattr(context, "status", None)
        if _is_int(status):
            return status

        response = getattr(context, "response", None)
        if isinstance(response, (list, tuple)) and response and _is_int(response[0]):
            return response[0]

        route = getattr(context, "route", None)
        if route is not None:
            try:
                route_status = route.status
            except Exception:
                route_status = None
            if _is_int(route_status) and route_status >= 400:
                return route_status

        failure = getattr(context, "failure", None)
        if failure is not None:
            return resolve_from_failure(failure)
        return 200
    except Exception:
        return 500 if _attr(context, "failure") is not None else 200


# ========== Route naming ==========


def extract_action(context: Any) -> str:
    """Name the action from the route verb and path template.

    Example:
        ``GET /users/:id/posts/:post_id`` -> ``get_users_id_posts_post_id``
    """
    try:
        route = getattr(context, "route", None)
        if route is None:
            return UNKNOWN_ACTION
        verb = route.verb
        path = route.path_template
        if not verb or path is None:
            return UNKNOWN_ACTION

        verb = str(verb).lower()
        path = str(path)
        if path in ("", "/"):
            return verb

        clean_path = _PATH_PARAM.sub(r"\1", path.removeprefix("/"))
        clean_path = _SEPARATORS.sub("_", clean_path)
        clean_path = _REPEATED_UNDERSCORE.sub("_", clean_path).strip("_")
        if not clean_path:
            return verb
        return f"{verb}_{clean_path}"
    except Exception:
        return UNKNOWN_ACTION


def _camelize(segment: str) -> str:
    return "".join(part[:1].upper() + part[1:] for part in segment.split("_") if part)


def extract_controller(context: Any) -> str | None:
    """Derive a namespaced controller name from the endpoint's source file.

    ``{root}/app/api/admin/user_profiles.py`` -> ``Admin::UserProfiles``
    """
    try:
        location = _source_location(context)
        if location is None:
            return None
        file_path = location[0]

        config = _config_for(context)
        root = config.resolved_app_root()
        if not root:
            return None

        prefix = f"{root.rstrip('/')}/{config.controller_prefix.strip('/')}".rstrip("/") + "/"
        if not file_path.startswith(prefix):
            return None

        relative = file_path[len(prefix) :].removesuffix(SOURCE_SUFFIX)
        segments = [_camelize(segment) for segment in relative.split("/") if segment]
        segments = [segment for segment in segments if segment]
        if not segments:
            return None
        return CONTROLLER_SEPARATOR.join(segments)
    except Exception:
        return None


def extract_source_location(context: Any) -> str | None:
    """Return ``"path:line"``, relative to the application root when under it."""
    try:
        location = _source_location(context)
        if location is None:
            return None
        path, line = location

        root = _config_for(context).resolved_app_root()
        if root and root != "/" and path.startswith(root + "/"):
            path = path[len(root) + 1 :]
        return f"{path}:{line}"
    except Exception:
        return None


# ========== Format ==========


def _normalize_format(value: Any) -> str | None:
    text = safe_string(value)
    if text is None:
        return None
    text = text.strip()
    if text.startswith("."):
        text = text[1:]
    return text.lower() or None


def _media_type(value: str) -> str:
    return value.split(";", 1)[0].strip().lower()


def _lookup_mime(media_type: str) -> str | None:
    if not media_type or media_type == "*/*":
        return None
    if media_type in MIME_FORMATS:
        return MIME_FORMATS[media_type]
    if media_type.endswith("+json"):
        return "json"
    if media_type.endswith("+xml"):
        return "xml"
    return None


def _format_from_content_types(environ: Mapping[str, Any], route: Any) -> str | None:
    """Match Content-Type / Accept against the API's declared content types."""
    content_type = environ.get("CONTENT_TYPE") or environ.get("HTTP_CONTENT_TYPE")
    accept = environ.get("HTTP_ACCEPT")
    if not (content_type or accept) or route is None:
        return None

    content_types = getattr(route, "content_types", None)
    if not isinstance(content_types, Mapping):
        return None

    for format_name, mime_type in content_types.items():
        mime_types = mime_type if isinstance(mime_type, (list, tuple)) else [mime_type]
        if content_type and any(str(mime) in content_type for mime in mime_types):
            return str(format_name).lower()
        if accept and any(str(mime) in accept for mime in mime_types):
            return str(format_name).lower()
    return None


def _framework_format(environ: Mapping[str, Any]) -> str | None:
    """Map the request's media types to a short format name."""
    content_type = environ.get("CONTENT_TYPE") or environ.get("HTTP_CONTENT_TYPE")
    if content_type:
        fmt = _lookup_mime(_media_type(str(content_type)))
        if fmt:
            return fmt

    accept = environ.get("HTTP_ACCEPT")
    if accept:
        for entry in str(accept).split(","):
            fmt = _lookup_mime(_media_type(entry))
            if fmt:
                return fmt
    return None


def _first_listed_format(environ: Mapping[str, Any]) -> Any:
    formats = environ.get(FORMATS_KEY)
    if isinstance(formats, Sequence) and not isinstance(formats, str) and formats:
        return formats[0]
    return None


def extract_format(context: Any) -> str:
    """Negotiated response format, ``"json"`` when nothing else is known."""
    environ = _environ(context)
    request = _attr(context, "request")
    route = _attr(context, "route")

    candidates = (
        lambda: environ.get(NEGOTIATED_FORMAT_KEY),
        lambda: request.format if request is not None else None,
        lambda: _format_from_content_types(environ, route),
        lambda: _framework_format(environ),
        lambda: _first_listed_format(environ),
    )
    for candidate in candidates:
        try:
            fmt = _normalize_format(candidate())
        except Exception:
            fmt = None
        if fmt:
            return fmt
    return DEFAULT_FORMAT


def extract_format_from_env(environ: Any, route: Any = None) -> str:
    """Format lookup that only touches the raw environ (used by the fallback path)."""
    if not isinstance(environ, Mapping):
        return DEFAULT_FORMAT

    def content_type() -> str:
        return str(environ.get("CONTENT_TYPE") or environ.get("HTTP_CONTENT_TYPE") or "")

    candidates = (
        lambda: environ.get(NEGOTIATED_FORMAT_KEY),
        lambda: _format_from_content_types(environ, route),
        lambda: _first_listed_format(environ),
        lambda: _lookup_mime(_media_type(content_type())),
        lambda: _media_type(content_type()),
    )
    for candidate in candidates:
        try:
            fmt = _normalize_format(candidate())
        except Exception:
            fmt = None
        if fmt:
            return fmt
    return DEFAULT_FORMAT


# ========== Client / host ==========


def extract_host(context: Any) -> str | None:
    try:
        request = getattr(context, "request", None)
        if request is not None and request.host:
            return safe_string(request.host)
        return host_from_env(_environ(context))
    except Exception:
        return None


def host_from_env(environ: Mapping[str, Any]) -> str | None:
    return safe_string(environ.get("HTTP_HOST") or environ.get("SERVER_NAME"))


def extract_remote_addr(context: Any) -> str | None:
    try:
        request = getattr(context, "request", None)
        if request is not None and request.remote_addr:
            return safe_string(request.remote_addr)
        return remote_addr_from_env(_environ(context))
    except Exception:
        return None


def remote_addr_from_env(environ: Mapping[str, Any]) -> str | None:
    forwarded_for = environ.get("HTTP_X_FORWARDED_FOR")
    if forwarded_for:
        first_ip = str(forwarded_for).split(",")[0].strip()
        if first_ip:
            return first_ip
    return safe_string(environ.get("REMOTE_ADDR"))


def extract_request_id(context: Any) -> str | None:
    try:
        request = getattr(context, "request", None)
        if request is not None and request.request_id:
            return safe_string(request.request_id)
        return request_id_from_env(_environ(context))
    except Exception:
        return None


def request_id_from_env(environ: Mapping[str, Any]) -> str | None:
    return safe_string(environ.get("HTTP_X_REQUEST_ID") or environ.get(REQUEST_ID_KEY))


# ========== Params ==========


def _without_route_info(params: Mapping[Any, Any]) -> dict[Any, Any]:
    return {key: value for key, value in params.items() if key not in ("route_info", b"route_info")}


def _params_to_dict(raw: Any) -> dict[Any, Any]:
    if raw is None:
        return {}
    if hasattr(raw, "model_dump"):
        dumped = raw.model_dump()
        return dumped if isinstance(dumped, dict) else {}
    if isinstance(raw, Mapping):
        return dict(raw)
    return {}


def _is_json_content_type(content_type: str) -> bool:
    return "json" in content_type or "application/vnd.api" in content_type


def _read_preserving_position(stream: Any) -> Any:
    try:
        original_position = stream.tell()
    except Exception:
        original_position = 0
    try:
        stream.seek(0)
    except Exception:
        pass
    try:
        return stream.read()
    finally:
        try:
            stream.seek(original_position)
        except Exception:
            pass


def extract_params(context: Any) -> dict[Any, Any]:
    """Return the request parameters the framework already parsed.

    When there are none, a JSON body is decoded from the body stream, but only
    for JSON content types; the stream's read position is restored afterwards.
    Returns an empty dict on any failure.
    """
    try:
        request = getattr(context, "request", None)
        if request is None:
            return {}

        params = _params_to_dict(request.params)
        if params:
            return _without_route_info(params)

        environ = _environ(context)
        content_type = str(request.content_type or environ.get("CONTENT_TYPE") or "")
        stream = environ.get(BODY_STREAM_KEY)
        if not _is_json_content_type(content_type) or stream is None:
            return {}

        body = _read_preserving_position(stream)
        if not body:
            return {}
        parsed = json.loads(body)
        return _without_route_info(parsed) if isinstance(parsed, dict) else {}
    except Exception:
        return {}


__all__ = [
    "BODY_STREAM_KEY",
    "DEFAULT_FORMAT",
    "FORMATS_KEY",
    "MIME_FORMATS",
    "NEGOTIATED_FORMAT_KEY",
    "REQUEST_ID_KEY",
    "extract_action",
    "extract_controller",
    "extract_format",
    "extract_format_from_env",
    "extract_host",
    "extract_params",
    "extract_remote_addr",
    "extract_request_id",
    "extract_source_location",
    "extract_status",
    "host_from_env",
    "remote_addr_from_env",
    "request_id_from_env",
    "safe_string",
]
