"""Shared pytest fixtures for the route_logger test suite.

Provides configuration isolation, recording log sinks and route factories
used across all test modules.
"""

import os
from collections.abc import Iterator

import pytest

from route_logger import timings
from route_logger.config import RouteLoggerConfig, configure, reset_config
from route_logger.instrumentation import unsubscribe_sql_timings
from tests.utils.mocks import FailingSink, RecordingSink

# ========== Test Environment Setup ==========


@pytest.fixture(scope="session", autouse=True)
def setup_test_env() -> Iterator[None]:
    """Keep route_logger settings from the shell out of the test run."""
    for name in list(os.environ):
        if name.startswith("ROUTE_LOGGER_") or name in ("TRACE", "APP_ENV"):
            del os.environ[name]

    yield


@pytest.fixture(autouse=True)
def isolated_config() -> Iterator[None]:
    """Give every test a freshly loaded configuration and no global SQL hooks."""
    reset_config()
    timings.reset()
    yield
    reset_config()
    unsubscribe_sql_timings()


# ========== Configuration Fixtures ==========


@pytest.fixture
def app_root() -> str:
    """Application root used for controller and source location naming."""
    return "/srv/app"


@pytest.fixture
def test_config(app_root: str) -> RouteLoggerConfig:
    """Provide the module-level configuration pointed at a fixed app root.

    Returns:
        RouteLoggerConfig: Configuration instance for testing.
    """
    return configure(app_root=app_root, environment="development")


# ========== Sink Fixtures ==========


@pytest.fixture
def recording_sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def failing_sink() -> FailingSink:
    return FailingSink()
