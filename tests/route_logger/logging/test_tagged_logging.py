"""Tests for JSON structured logging and tagged scopes."""

import io
import json
import logging
from collections.abc import Iterator

import pytest

from route_logger.logging import (
    REQUEST_LOGGER_NAME,
    CustomJsonFormatter,
    TaggedLogger,
    TagFilter,
    current_tags,
    default_request_logger,
    get_logger,
    setup_logging,
    tagged_scope,
)
from route_logger.types import TaggingLogSink


@pytest.fixture
def restore_root_logger() -> Iterator[logging.Logger]:
    root = logging.getLogger()
    handlers = list(root.handlers)
    level = root.level
    yield root
    root.handlers[:] = handlers
    root.setLevel(level)


@pytest.fixture
def json_stream() -> Iterator[tuple[logging.Logger, io.StringIO]]:
    stream = io.StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(CustomJsonFormatter("%(timestamp)s %(level)s %(name)s %(message)s"))
    handler.addFilter(TagFilter())

    logger = logging.getLogger("tests.route_logger.json")
    logger.setLevel(logging.INFO)
    logger.addHandler(handler)
    logger.propagate = False
    yield logger, stream
    logger.removeHandler(handler)


def _lines(stream: io.StringIO) -> list[dict]:
    return [json.loads(line) for line in stream.getvalue().splitlines() if line]


class TestTaggedScope:
    def test_tags_nest_and_restore(self) -> None:
        assert current_tags() == ()

        with tagged_scope("Grape"):
            with tagged_scope("v1", ""):
                assert current_tags() == ("Grape", "v1")
            assert current_tags() == ("Grape",)

        assert current_tags() == ()


class TestCustomJsonFormatter:
    def test_dict_message_is_merged(self, json_stream: tuple[logging.Logger, io.StringIO]) -> None:
        logger, stream = json_stream

        logger.info({"method": "GET", "path": "/users", "status": 200})

        entry = _lines(stream)[0]
        assert entry["method"] == "GET"
        assert entry["path"] == "/users"
        assert entry["status"] == 200
        assert entry["level"] == "INFO"
        assert entry["logger"] == "tests.route_logger.json"
        assert entry["function"] == "test_dict_message_is_merged"
        assert "timestamp" in entry

    def test_tags_are_emitted(self, json_stream: tuple[logging.Logger, io.StringIO]) -> None:
        logger, stream = json_stream
        tagged = TaggedLogger(logger)

        with tagged.tagged("Grape"):
            tagged.info({"path": "/users"})
        tagged.info({"path": "/health"})

        first, second = _lines(stream)
        assert first["tags"] == ["Grape"]
        assert "tags" not in second


class TestTaggedLogger:
    def test_satisfies_tagging_sink(self) -> None:
        assert isinstance(TaggedLogger(logging.getLogger("x")), TaggingLogSink)

    def test_default_request_logger(self) -> None:
        logger = default_request_logger()

        assert isinstance(logger, TaggedLogger)
        assert logger.logger.name == REQUEST_LOGGER_NAME

    def test_records_carry_tags(self, caplog: pytest.LogCaptureFixture) -> None:
        logger = TaggedLogger(get_logger("tests.route_logger.tags"))

        with caplog.at_level(logging.INFO, logger="tests.route_logger.tags"):
            with logger.tagged("API", "v2"):
                logger.info("inside")

        assert caplog.records[0].tags == ["API", "v2"]


class TestSetupLogging:
    def test_json_handler_installed(self, restore_root_logger: logging.Logger) -> None:
        setup_logging(level="debug")

        assert restore_root_logger.level == logging.DEBUG
        assert len(restore_root_logger.handlers) == 1
        handler = restore_root_logger.handlers[0]
        assert isinstance(handler.formatter, CustomJsonFormatter)
        assert any(isinstance(f, TagFilter) for f in handler.filters)

    def test_plain_text_handler(self, restore_root_logger: logging.Logger) -> None:
        setup_logging(level="WARNING", json=False)

        handler = restore_root_logger.handlers[0]
        assert not isinstance(handler.formatter, CustomJsonFormatter)
        assert restore_root_logger.level == logging.WARNING
