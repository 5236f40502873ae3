"""Shared types for the request logging pipeline.

Defines the capability interfaces the pipeline talks to (sinks, parameter
filters, route descriptors), the per-request context, and the structured
record that is handed to the sink.
"""

from __future__ import annotations

import time
from collections.abc import Callable, Mapping, Sequence
from contextlib import AbstractContextManager
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol, runtime_checkable

from pydantic import BaseModel, ConfigDict, Field, field_validator

UNKNOWN_ACTION = "unknown"


@runtime_checkable
class LogSink(Protocol):
    """Leveled writer accepting a structured record."""

    def info(self, msg: Any, *args: Any, **kwargs: Any) -> Any: ...

    def error(self, msg: Any, *args: Any, **kwargs: Any) -> Any: ...

    def warning(self, msg: Any, *args: Any, **kwargs: Any) -> Any: ...


@runtime_checkable
class SupportsTagging(Protocol):
    """Anything that can scope a block of writes under one or more tags."""

    def tagged(self, *tags: str) -> AbstractContextManager[Any]: ...


@runtime_checkable
class TaggingLogSink(LogSink, SupportsTagging, Protocol):
    """Leveled sink with tag scopes."""


@runtime_checkable
class ParamFilter(Protocol):
    """Externally configured parameter sanitizer."""

    def filter(self, params: Mapping[str, Any]) -> Mapping[str, Any]: ...


@runtime_checkable
class RouteDescriptor(Protocol):
    """The matched endpoint for a request."""

    verb: str | None
    path_template: str | None
    source_location: tuple[str, int] | None
    status: int | None
    content_types: Mapping[str, str | Sequence[str]] | None
    failure: BaseException | None


@dataclass
class Endpoint:
    """Plain :class:`RouteDescriptor` implementation.

    Framework adapters build one of these from whatever their router exposes.
    """

    verb: str | None = None
    path_template: str | None = None
    source_location: tuple[str, int] | None = None
    status: int | None = None
    content_types: Mapping[str, str | Sequence[str]] | None = None
    failure: BaseException | None = None


@dataclass
class ParsedRequest:
    """Request data the host framework has already parsed."""

    params: Any = None
    format: str | None = None
    content_type: str | None = None
    host: str | None = None
    remote_addr: str | None = None
    request_id: str | None = None


class LifecycleState(str, Enum):
    """States a request passes through inside :class:`RequestWrapper`."""

    IDLE = "idle"
    TIMING_RESET = "timing-reset"
    DOWNSTREAM_EXECUTING = "downstream-executing"
    METADATA_CAPTURING = "metadata-capturing"
    EMITTED = "emitted"
    FAULT_ABSORBED = "fault-absorbed"


@dataclass
class RequestContext:
    """Everything known about one request while it is being handled.

    Owned by the wrapper for the duration of a single request and discarded
    once the response has been returned.
    """

    environ: Mapping[str, Any] = field(default_factory=dict)
    route: RouteDescriptor | None = None
    request: ParsedRequest | None = None
    failure: BaseException | None = None
    response: Any = None
    status: int | None = None
    db_runtime: float = 0.0
    db_calls: int = 0
    duration: float | None = None
    started_at: float = field(default_factory=time.perf_counter)
    state: LifecycleState = LifecycleState.IDLE
    host_config: Any = None
    config: Any = None
    logger: Any = None
    logged_successfully: bool = False


Downstream = Callable[[RequestContext], Any]


class ExceptionDescriptor(BaseModel):
    """Exception sub-record attached to error-level entries."""

    model_config = ConfigDict(populate_by_name=True)

    class_name: str = Field(alias="class")
    message: str
    backtrace: list[str] | None = None

    def as_dict(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class LogRecord(BaseModel):
    """One structured entry per request.

    Field order is the key order of the emitted mapping.
    """

    method: str | None = None
    path: str | None = None
    format: str = "json"
    controller: str | None = None
    source_location: str | None = None
    action: str = UNKNOWN_ACTION
    status: int = 200
    host: str | None = None
    remote_addr: str | None = None
    request_id: str | None = None
    duration: float = 0.0
    db: float = 0.0
    db_calls: int = 0
    params: dict[Any, Any] = Field(default_factory=dict)
    exception: ExceptionDescriptor | None = None

    @field_validator("action", mode="before")
    @classmethod
    def _action_never_empty(cls, value: Any) -> str:
        if not value:
            return UNKNOWN_ACTION
        return str(value)

    @field_validator("status", mode="before")
    @classmethod
    def _status_is_http_code(cls, value: Any) -> int:
        if isinstance(value, bool) or not isinstance(value, int) or not 100 <= value <= 599:
            return 500
        return value

    @field_validator("duration", "db", mode="before")
    @classmethod
    def _round_seconds(cls, value: Any) -> float:
        try:
            return round(float(value or 0), 2)
        except (TypeError, ValueError):
            return 0.0

    def as_dict(self) -> dict[str, Any]:
        """Return the record as an ordered dict, omitting an absent exception."""
        data = self.model_dump(exclude={"exception"})
        if self.exception is not None:
            data["exception"] = self.exception.as_dict()
        return data


@dataclass(frozen=True)
class LogOutcome:
    """Result of one attempt to write a record to the sink."""

    attempted: bool = False
    succeeded: bool = False
    error: BaseException | None = None


__all__ = [
    "Downstream",
    "Endpoint",
    "ExceptionDescriptor",
    "LifecycleState",
    "LogOutcome",
    "LogRecord",
    "LogSink",
    "ParamFilter",
    "ParsedRequest",
    "RequestContext",
    "RouteDescriptor",
    "SupportsTagging",
    "TaggingLogSink",
    "UNKNOWN_ACTION",
]
