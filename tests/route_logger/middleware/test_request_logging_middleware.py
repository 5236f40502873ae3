"""Integration tests for the ASGI request logging middleware."""

import inspect
from pathlib import Path
from typing import Any

import pytest
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, text

from route_logger.config import configure
from route_logger.instrumentation import subscribe_sql_timings, unsubscribe_sql_timings
from route_logger.middleware import capture_exception, install
from route_logger.middleware.logging import build_environ, describe_route
from tests.utils.mocks import RecordingSink

pytestmark = pytest.mark.integration


class PaymentError(Exception):
    pass


engine = create_engine("sqlite://")


def create_app(sql_timings: bool = True) -> FastAPI:
    app = FastAPI()

    @app.get("/users/{user_id}")
    async def show_user(user_id: int, verbose: bool = False) -> dict[str, Any]:
        return {"id": user_id}

    @app.post("/users", status_code=201)
    async def create_user(request: Request) -> dict[str, Any]:
        payload = await request.json()
        return {"name": payload.get("name")}

    @app.get("/boom")
    async def boom() -> None:
        raise RuntimeError("kaboom")

    @app.get("/missing")
    async def missing() -> None:
        raise HTTPException(status_code=404, detail="not here")

    @app.post("/payments")
    async def pay() -> None:
        raise PaymentError("card declined")

    @app.get("/reports")
    async def reports() -> dict[str, Any]:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
            conn.execute(text("SELECT 2"))
        return {"ok": True}

    @app.exception_handler(PaymentError)
    async def payment_error(request: Request, exc: PaymentError) -> JSONResponse:
        capture_exception(request, exc)
        return JSONResponse({"error": str(exc)}, status_code=402)

    install(app, trace=False, sql_timings=sql_timings)
    return app


def _package_root() -> str:
    source = Path(inspect.getsourcefile(create_app) or __file__)
    return str(source.parents[3])


@pytest.fixture
def sink() -> RecordingSink:
    sink = RecordingSink()
    configure(
        logger=sink,
        app_root=_package_root(),
        controller_prefix="tests/route_logger/",
        environment="development",
    )
    return sink


@pytest.fixture
def client(sink: RecordingSink) -> TestClient:
    return TestClient(create_app())


class TestRequestLoggingMiddleware:
    def test_successful_request(self, client: TestClient, sink: RecordingSink) -> None:
        response = client.get("/users/7?verbose=true")

        assert response.status_code == 200
        level, record, tags = sink.entries[-1]
        assert level == "info"
        assert tags == ("Grape",)
        assert record["method"] == "GET"
        assert record["path"] == "/users/7"
        assert record["status"] == 200
        assert record["action"] == "get_users_user_id"
        assert record["controller"] == "Middleware::TestRequestLoggingMiddleware"
        assert record["source_location"].startswith(
            "tests/route_logger/middleware/test_request_logging_middleware.py:"
        )
        assert record["format"] == "json"
        assert record["host"] == "testserver"
        assert record["remote_addr"] == "testclient"
        assert record["params"] == {"user_id": "7", "verbose": "true"}
        assert record["request_id"] == response.headers["x-request-id"]

    def test_json_body_params_are_filtered(self, client: TestClient, sink: RecordingSink) -> None:
        response = client.post("/users", json={"name": "Ada", "password": "hunter2"})

        assert response.status_code == 201
        record = sink.last
        assert record["status"] == 201
        assert record["action"] == "post_users"
        assert record["params"] == {"name": "Ada", "password": "[FILTERED]"}

    def test_request_id_header_is_reused(self, client: TestClient, sink: RecordingSink) -> None:
        response = client.get("/users/1", headers={"X-Request-ID": "req-123"})

        assert response.headers["x-request-id"] == "req-123"
        assert sink.last["request_id"] == "req-123"

    def test_unhandled_exception_is_logged_and_reraised(self, client: TestClient, sink: RecordingSink) -> None:
        with pytest.raises(RuntimeError, match="kaboom"):
            client.get("/boom")

        level, record, _ = sink.entries[-1]
        assert level == "error"
        assert record["status"] == 500
        assert record["exception"]["class"] == "RuntimeError"
        assert record["exception"]["message"] == "kaboom"
        assert record["exception"]["backtrace"]

    def test_unhandled_exception_response_is_unchanged(self, sink: RecordingSink) -> None:
        client = TestClient(create_app(), raise_server_exceptions=False)

        response = client.get("/boom")

        assert response.status_code == 500
        assert sink.last["status"] == 500

    def test_handled_http_exception(self, client: TestClient, sink: RecordingSink) -> None:
        response = client.get("/missing")

        assert response.status_code == 404
        level, record, _ = sink.entries[-1]
        assert level == "info"
        assert record["status"] == 404

    def test_captured_exception_logs_error_with_handled_status(
        self, client: TestClient, sink: RecordingSink
    ) -> None:
        response = client.post("/payments")

        assert response.status_code == 402
        level, record, _ = sink.entries[-1]
        assert level == "error"
        assert record["status"] == 402
        assert record["exception"]["message"] == "card declined"

    def test_unmatched_route(self, client: TestClient, sink: RecordingSink) -> None:
        response = client.get("/nowhere")

        assert response.status_code == 404
        assert sink.last["action"] == "unknown"
        assert sink.last["controller"] is None

    def test_database_time(self, client: TestClient, sink: RecordingSink) -> None:
        client.get("/reports")

        assert sink.last["db_calls"] == 2
        assert sink.last["db"] >= 0.0

    def test_engine_subscribed_twice_counts_once(self, client: TestClient, sink: RecordingSink) -> None:
        subscribe_sql_timings(engine)
        try:
            client.get("/reports")
        finally:
            unsubscribe_sql_timings(engine)

        assert sink.last["db_calls"] == 2

    def test_sql_timings_can_be_left_off(self, sink: RecordingSink) -> None:
        client = TestClient(create_app(sql_timings=False))

        client.get("/reports")

        assert sink.last["db_calls"] == 0

    def test_body_over_limit_is_not_parsed(self, client: TestClient, sink: RecordingSink) -> None:
        configure(max_captured_body=8)

        response = client.post("/users", json={"name": "A long enough name"})

        assert response.status_code == 201
        assert response.json() == {"name": "A long enough name"}
        assert sink.last["params"] == {}

    def test_disabled_by_app_state(self, sink: RecordingSink) -> None:
        app = create_app()
        app.state.route_logger = {"enabled": False}

        response = TestClient(app).get("/users/1")

        assert response.status_code == 200
        assert "x-request-id" not in response.headers
        assert sink.entries == []

    def test_app_state_overrides_tag(self, sink: RecordingSink) -> None:
        app = create_app()
        app.state.route_logger = {"tag": "Payments"}

        TestClient(app).get("/users/1")

        assert sink.entries[-1][2] == ("Payments",)


class TestBuildEnviron:
    def test_headers_and_connection(self) -> None:
        scope = {
            "type": "http",
            "method": "POST",
            "path": "/users",
            "root_path": "",
            "query_string": b"page=2",
            "headers": [
                (b"content-type", b"application/json"),
                (b"accept", b"application/json"),
                (b"x-forwarded-for", b"203.0.113.9"),
                (b"accept", b"text/html"),
            ],
            "server": ("api.example.com", 443),
            "client": ("10.0.0.1", 5000),
            "scheme": "https",
        }

        environ = build_environ(scope, "req-1")

        assert environ["REQUEST_METHOD"] == "POST"
        assert environ["PATH_INFO"] == "/users"
        assert environ["QUERY_STRING"] == "page=2"
        assert environ["CONTENT_TYPE"] == "application/json"
        assert environ["HTTP_ACCEPT"] == "application/json,text/html"
        assert environ["HTTP_X_FORWARDED_FOR"] == "203.0.113.9"
        assert environ["SERVER_NAME"] == "api.example.com"
        assert environ["REMOTE_ADDR"] == "10.0.0.1"
        assert environ["route_logger.request_id"] == "req-1"


class TestDescribeRoute:
    def test_no_route(self) -> None:
        assert describe_route({"type": "http", "method": "GET"}) is None

    def test_verb_prefers_request_method(self) -> None:
        class Route:
            methods = {"GET", "HEAD", "POST"}
            path = "/items"
            endpoint = staticmethod(lambda: None)

        assert describe_route({"method": "POST", "route": Route()}).verb == "POST"
        assert describe_route({"method": "OPTIONS", "route": Route()}).verb == "GET"
