"""Per-request accumulation of database (sub-operation) time.

State is kept in a context variable rather than a module global: every thread
starts with an empty context and every asyncio task runs in a copy of its
parent's, so concurrent requests never see each other's counters.

Correctness invariant: the request wrapper calls :func:`reset` on entry to
every request. Worker threads are pooled and reused, and without the reset a
request would inherit the counters of the previous request handled by the
same thread. Work spawned from inside a request (threadpool offload, child
tasks) copies the context and so accumulates into that request's state.
"""

from __future__ import annotations

from contextvars import ContextVar
from dataclasses import dataclass, field
from threading import Lock


@dataclass
class TimingState:
    """Accumulated sub-operation time (seconds) and call count for one request."""

    db_runtime: float = 0.0
    db_calls: int = 0
    _lock: Lock = field(default_factory=Lock, repr=False, compare=False)

    def add(self, duration: float) -> None:
        with self._lock:
            self.db_runtime += max(float(duration), 0.0)
            self.db_calls += 1

    def values(self) -> tuple[float, int]:
        with self._lock:
            return self.db_runtime, self.db_calls


_timing_state: ContextVar[TimingState | None] = ContextVar("route_logger_timing_state", default=None)


class TimingAccumulator:
    """Narrow accessor around the context-local :class:`TimingState`."""

    def __init__(self, var: ContextVar[TimingState | None] = _timing_state) -> None:
        self._var = var

    def reset(self) -> TimingState:
        """Install fresh zeroed counters for the current execution context."""
        state = TimingState()
        self._var.set(state)
        return state

    def record(self, duration: float) -> None:
        """Add one completed sub-operation of ``duration`` seconds."""
        state = self._var.get()
        if state is None:
            state = self.reset()
        state.add(duration)

    def snapshot(self) -> tuple[float, int]:
        """Return ``(db_runtime, db_calls)`` without resetting."""
        state = self._var.get()
        if state is None:
            return 0.0, 0
        return state.values()


timings = TimingAccumulator()


def reset() -> TimingState:
    return timings.reset()


def record(duration: float) -> None:
    timings.record(duration)


def snapshot() -> tuple[float, int]:
    return timings.snapshot()


__all__ = ["TimingAccumulator", "TimingState", "record", "reset", "snapshot", "timings"]
