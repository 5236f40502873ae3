"""Tests for resolving HTTP statuses from exceptions."""

import importlib
import json
from typing import Any

import pytest
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.exc import IntegrityError, NoResultFound
from starlette.exceptions import HTTPException

from route_logger.status import StatusResolver, _resolve_type, resolve_from_failure


class StatusCodeError(Exception):
    status_code = 418


class StatusError(Exception):
    def __init__(self) -> None:
        super().__init__("status")
        self.status = 503


class InternalStatusError(Exception):
    def __init__(self) -> None:
        super().__init__("internal")
        self._status = 402


class OptionsError(Exception):
    def __init__(self) -> None:
        super().__init__("options")
        self.options = {"status": 451}


class BrokenAccessorError(Exception):
    @property
    def status_code(self) -> int:
        raise RuntimeError("accessor exploded")


class BoolStatusError(Exception):
    status_code = True


class Strict(BaseModel):
    count: int


def _validation_error() -> PydanticValidationError:
    try:
        Strict(count="not a number")
    except PydanticValidationError as e:
        return e
    raise AssertionError("expected a validation error")


class TestResolveFromFailure:
    def test_status_code_accessor(self) -> None:
        assert resolve_from_failure(StatusCodeError()) == 418

    def test_status_accessor(self) -> None:
        assert resolve_from_failure(StatusError()) == 503

    def test_internal_status_field(self) -> None:
        assert resolve_from_failure(InternalStatusError()) == 402

    def test_options_status(self) -> None:
        assert resolve_from_failure(OptionsError()) == 451

    def test_http_exception_status(self) -> None:
        assert resolve_from_failure(HTTPException(status_code=404)) == 404

    @pytest.mark.parametrize(
        ("failure", "expected"),
        [
            (NoResultFound("no row"), 404),
            (IntegrityError("insert", {}, Exception("duplicate")), 409),
            (NotImplementedError(), 501),
            (json.JSONDecodeError("bad", "{", 0), 400),
        ],
    )
    def test_known_exception_types(self, failure: BaseException, expected: int) -> None:
        assert resolve_from_failure(failure) == expected

    def test_pydantic_validation_error_is_unprocessable(self) -> None:
        assert resolve_from_failure(_validation_error()) == 422

    def test_unknown_exception_is_server_error(self) -> None:
        assert resolve_from_failure(RuntimeError("boom")) == 500

    def test_none_is_server_error(self) -> None:
        assert resolve_from_failure(None) == 500

    def test_failing_accessor_falls_through(self) -> None:
        assert resolve_from_failure(BrokenAccessorError()) == 500

    def test_bool_is_not_a_status(self) -> None:
        assert resolve_from_failure(BoolStatusError()) == 500

    def test_subclass_matches_table_entry(self) -> None:
        class MissingUser(NoResultFound):
            pass

        assert resolve_from_failure(MissingUser("gone")) == 404


class TestStatusResolver:
    def test_custom_table(self) -> None:
        resolver = StatusResolver({"builtins.KeyError": 400})

        assert resolver.resolve_from_failure(KeyError("id")) == 400
        assert resolver.resolve_from_failure(NotImplementedError()) == 500

    def test_unimportable_entries_are_skipped(self) -> None:
        resolver = StatusResolver({"not_installed.Error": 400, "builtins.LookupError": 404})

        assert resolver.resolve_from_failure(IndexError()) == 404

    def test_nearest_ancestor_wins(self) -> None:
        class MissingRecord(KeyError):
            pass

        resolver = StatusResolver({"builtins.LookupError": 410, "builtins.KeyError": 404})

        assert resolver.resolve_from_failure(MissingRecord("id")) == 404
        assert resolver.resolve_from_failure(IndexError()) == 410

    def test_table_types_are_resolved_once(self, mocker: Any) -> None:
        _resolve_type.cache_clear()
        spy = mocker.spy(importlib, "import_module")
        table = {"not_installed_anywhere.Error": 400}

        for resolver in (StatusResolver(table), StatusResolver(table)):
            assert resolver.resolve_from_failure(RuntimeError("boom")) == 500
            assert resolver.resolve_from_failure(RuntimeError("again")) == 500

        assert spy.call_count == 1
