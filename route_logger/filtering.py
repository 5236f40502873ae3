"""Request parameter sanitization.

Two filters are available: a configured :class:`PatternParamFilter` built
from ``filter_parameters`` in the configuration, and a bounded manual walk
used when no filter is configured (or the configured one fails).
"""

from __future__ import annotations

import copy
import re
from collections.abc import Callable, Iterable, Mapping, Sequence
from typing import Any

from route_logger.config import RouteLoggerConfig, get_config
from route_logger.types import ParamFilter

FILTERED = "[FILTERED]"
MAX_DEPTH_EXCEEDED = {FILTERED: "[max_depth_exceeded]"}
FILTERED_PARAMS = ("password", "secret", "token", "key")
PARAM_EXCEPTIONS = frozenset({"controller", "action", "format"})

MAX_DEPTH = 10
MAX_KEYS = 50
MAX_LIST_ITEMS = 100


def should_filter_key(key: Any) -> bool:
    key_lower = str(key).lower()
    return any(param in key_lower for param in FILTERED_PARAMS)


def filter_value(value: Any) -> Any:
    """Redact string values that mention a sensitive word.

    This flags free text such as ``"reset my token"`` too; it is a policy
    choice kept for compatibility with existing log consumers.
    """
    if not isinstance(value, str):
        return value
    value_lower = value.lower()
    if any(param in value_lower for param in FILTERED_PARAMS):
        return FILTERED
    return value


def _filter_list(values: Sequence[Any], depth: int) -> list[Any]:
    if depth > MAX_DEPTH:
        return [dict(MAX_DEPTH_EXCEEDED)]
    filtered: list[Any] = []
    for item in list(values)[:MAX_LIST_ITEMS]:
        if isinstance(item, Mapping):
            filtered.append(filter_parameters_manually(item, depth + 1))
        elif isinstance(item, (list, tuple)):
            filtered.append(_filter_list(item, depth + 1))
        else:
            filtered.append(filter_value(item))
    return filtered


def filter_parameters_manually(params: Any, depth: int = 0) -> dict[Any, Any]:
    """Walk ``params`` redacting sensitive keys and values.

    Nesting deeper than :data:`MAX_DEPTH` collapses to
    :data:`MAX_DEPTH_EXCEEDED`; mappings keep at most :data:`MAX_KEYS` keys and
    lists at most :data:`MAX_LIST_ITEMS` entries.
    """
    if not params:
        return {}
    if depth > MAX_DEPTH:
        return dict(MAX_DEPTH_EXCEEDED)
    if not isinstance(params, Mapping):
        return {}

    try:
        result: dict[Any, Any] = {}
        for key, value in params.items():
            if len(result) >= MAX_KEYS:
                break
            if should_filter_key(key):
                result[key] = FILTERED
            elif isinstance(value, Mapping):
                result[key] = filter_parameters_manually(value, depth + 1)
            elif isinstance(value, (list, tuple)):
                result[key] = _filter_list(value, depth)
            else:
                result[key] = filter_value(value)
        return result
    except Exception:
        return {}


Pattern = str | re.Pattern[str] | Callable[[str], bool]


class PatternParamFilter:
    """Configured parameter filter.

    Patterns are case-insensitive substrings, compiled regular expressions
    or predicates over the key. Matching keys have their values replaced at
    any nesting depth. The default sensitive words are always included.

    Example:
        >>> PatternParamFilter(["ssn"]).filter({"ssn": "123", "name": "bob"})
        {'ssn': '[FILTERED]', 'name': 'bob'}
    """

    def __init__(self, patterns: Iterable[Pattern] = (), mask: str = FILTERED) -> None:
        self.mask = mask
        self._substrings: list[str] = list(FILTERED_PARAMS)
        self._regexes: list[re.Pattern[str]] = []
        self._predicates: list[Callable[[str], bool]] = []
        for pattern in patterns:
            if isinstance(pattern, re.Pattern):
                self._regexes.append(pattern)
            elif callable(pattern):
                self._predicates.append(pattern)
            else:
                text = str(pattern).lower()
                if text and text not in self._substrings:
                    self._substrings.append(text)

    def matches(self, key: Any) -> bool:
        key_text = str(key)
        key_lower = key_text.lower()
        if any(sub in key_lower for sub in self._substrings):
            return True
        if any(regex.search(key_text) for regex in self._regexes):
            return True
        return any(predicate(key_text) for predicate in self._predicates)

    def filter(self, params: Mapping[str, Any]) -> dict[Any, Any]:
        return self._filter_mapping(params)

    def _filter_mapping(self, params: Mapping[Any, Any]) -> dict[Any, Any]:
        return {
            key: self.mask if self.matches(key) else self._filter_value(value)
            for key, value in params.items()
        }

    def _filter_value(self, value: Any) -> Any:
        if isinstance(value, Mapping):
            return self._filter_mapping(value)
        if isinstance(value, (list, tuple)):
            return [self._filter_value(item) for item in value]
        return value


def build_param_filter(config: RouteLoggerConfig | None = None) -> ParamFilter | None:
    """Return the configured filter, or None when no patterns are configured."""
    config = config or get_config()
    if not config.filter_parameters:
        return None
    return PatternParamFilter(config.filter_parameters)


def _without_exceptions(params: Mapping[Any, Any]) -> dict[Any, Any]:
    return {key: value for key, value in params.items() if str(key) not in PARAM_EXCEPTIONS}


def filter_params(
    params: Any,
    param_filter: ParamFilter | None = None,
    config: RouteLoggerConfig | None = None,
) -> dict[Any, Any]:
    """Sanitize request parameters for logging.

    Args:
        params: Parsed request parameters.
        param_filter: Explicit filter; defaults to the configured one.
        config: Configuration used to build the default filter.

    Returns:
        dict: Sanitized parameters without ``controller``/``action``/``format``.
        Never raises.
    """
    if not params or not isinstance(params, Mapping):
        return {}

    try:
        active_filter = param_filter if param_filter is not None else build_param_filter(config)
        if active_filter is not None:
            cleaned = active_filter.filter(copy.deepcopy(dict(params)))
        else:
            cleaned = filter_parameters_manually(params)
        return _without_exceptions(cleaned) if isinstance(cleaned, Mapping) else {}
    except Exception:
        try:
            return _without_exceptions(filter_parameters_manually(params))
        except Exception:
            return {}


__all__ = [
    "FILTERED",
    "FILTERED_PARAMS",
    "MAX_DEPTH",
    "MAX_DEPTH_EXCEEDED",
    "MAX_KEYS",
    "MAX_LIST_ITEMS",
    "PARAM_EXCEPTIONS",
    "PatternParamFilter",
    "build_param_filter",
    "filter_parameters_manually",
    "filter_params",
    "filter_value",
    "should_filter_key",
]
