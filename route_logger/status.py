"""Map exceptions to HTTP status codes."""

from __future__ import annotations

import importlib
from collections.abc import Mapping
from functools import lru_cache
from typing import Any

DEFAULT_ERROR_STATUS = 500

# Dotted type names are resolved lazily; libraries that are not installed
# are skipped.
EXCEPTION_STATUS_MAP: dict[str, int] = {
    "sqlalchemy.exc.NoResultFound": 404,
    "werkzeug.exceptions.NotFound": 404,
    "sqlalchemy.exc.IntegrityError": 409,
    "pydantic.ValidationError": 422,
    "fastapi.exceptions.RequestValidationError": 422,
    "sqlalchemy.exc.DataError": 422,
    "starlette.routing.NoMatchFound": 404,
    "werkzeug.exceptions.MethodNotAllowed": 405,
    "builtins.NotImplementedError": 501,
    "werkzeug.exceptions.NotAcceptable": 406,
    "werkzeug.exceptions.BadRequestKeyError": 400,
    "werkzeug.exceptions.BadRequest": 400,
    "json.JSONDecodeError": 400,
}

_STATUS_ACCESSORS = ("status_code", "status")
_STATUS_FIELDS = ("_status", "_status_code", "status")


def _as_status(value: Any) -> int | None:
    if isinstance(value, bool) or not isinstance(value, int):
        return None
    return value


def _qualified_name(cls: type) -> str:
    return f"{cls.__module__}.{cls.__qualname__}"


@lru_cache(maxsize=None)
def _resolve_type(dotted_name: str) -> type | None:
    module_name, _, attr = dotted_name.rpartition(".")
    if not module_name:
        return None
    try:
        resolved = getattr(importlib.import_module(module_name), attr)
    except (ImportError, AttributeError):
        return None
    return resolved if isinstance(resolved, type) else None


class StatusResolver:
    """Derive an HTTP status from an exception.

    Lookup order, first integer wins:

    1. a public ``status_code`` or ``status`` attribute
    2. a private status field stored on the instance
    3. an ``options`` mapping carrying ``status``
    4. the exception type in :data:`EXCEPTION_STATUS_MAP`, else its nearest
       listed ancestor in method resolution order
    5. 500
    """

    def __init__(self, status_map: Mapping[str, int] | None = None) -> None:
        self.status_map = dict(EXCEPTION_STATUS_MAP if status_map is None else status_map)
        self._types: dict[type, int] | None = None

    def resolve_from_failure(self, failure: BaseException | None) -> int:
        if failure is None:
            return DEFAULT_ERROR_STATUS
        for lookup in (
            self._from_accessor,
            self._from_internal_field,
            self._from_options,
            self._from_type_table,
        ):
            try:
                status = lookup(failure)
            except Exception:
                status = None
            if status is not None:
                return status
        return DEFAULT_ERROR_STATUS

    def _from_accessor(self, failure: BaseException) -> int | None:
        for name in _STATUS_ACCESSORS:
            status = _as_status(getattr(failure, name, None))
            if status is not None:
                return status
        return None

    def _from_internal_field(self, failure: BaseException) -> int | None:
        fields = getattr(failure, "__dict__", None) or {}
        for name in _STATUS_FIELDS:
            status = _as_status(fields.get(name))
            if status is not None:
                return status
        return None

    def _from_options(self, failure: BaseException) -> int | None:
        options = getattr(failure, "options", None)
        if not isinstance(options, Mapping):
            return None
        return _as_status(options.get("status"))

    def _from_type_table(self, failure: BaseException) -> int | None:
        resolved = self._resolved_types()
        for cls in type(failure).__mro__:
            for name in (_qualified_name(cls), f"{cls.__module__}.{cls.__name__}"):
                if name in self.status_map:
                    return self.status_map[name]
            if cls in resolved:
                return resolved[cls]
        return None

    def _resolved_types(self) -> dict[type, int]:
        if self._types is None:
            types: dict[type, int] = {}
            for name, status in self.status_map.items():
                exception_type = _resolve_type(name)
                if exception_type is not None:
                    types.setdefault(exception_type, status)
            self._types = types
        return self._types


_default_resolver = StatusResolver()


def resolve_from_failure(failure: BaseException | None) -> int:
    """Resolve ``failure`` with the default exception table."""
    return _default_resolver.resolve_from_failure(failure)


__all__ = [
    "DEFAULT_ERROR_STATUS",
    "EXCEPTION_STATUS_MAP",
    "StatusResolver",
    "resolve_from_failure",
]
