from __future__ import annotations

import msgspec
import pytest

from ssr_bridge.exceptions import HTTPError
from ssr_bridge.http import Status, ensure_status, reason_phrase
from ssr_bridge.responses import (
    EventStreamResponse,
    HTMLResponse,
    JSONResponse,
    PlainTextResponse,
    Response,
    error_response,
    exception_to_response,
    not_found_response,
)
from ssr_bridge.streams import ResponseStream


def test_builders_set_content_type() -> None:
    assert PlainTextResponse("hi").header("Content-Type") == "text/plain; charset=utf-8"
    assert HTMLResponse("<p>hi</p>").header("content-type") == "text/html; charset=utf-8"
    json_response = JSONResponse({"ok": True}, status=201, headers=[("x-extra", "1")])
    assert json_response.status == 201
    assert json_response.header("x-extra") == "1"
    assert msgspec.json.decode(json_response.body) == {"ok": True}


def test_with_headers_returns_new_response() -> None:
    response = PlainTextResponse("hi")
    updated = response.with_headers([("x-request-id", "abc")])
    assert response.header("x-request-id") is None
    assert updated.header("x-request-id") == "abc"
    assert updated.text() == "hi"


def test_event_stream_response_headers() -> None:
    stream = ResponseStream()
    response = EventStreamResponse(stream, headers=[("x-connection-id", "c1")])
    assert response.is_streaming
    assert response.stream is stream
    assert response.header("content-type") == "text/event-stream"
    assert response.header("cache-control") == "no-cache"
    assert response.header("connection") == "keep-alive"
    assert response.header("x-connection-id") == "c1"


def test_not_found_has_empty_body() -> None:
    response = not_found_response()
    assert response.status == 404
    assert response.body == b""
    assert not response.is_streaming


def test_error_response_carries_message_only() -> None:
    response = error_response(500, "boom")
    assert response.status == 500
    assert response.text() == "boom"


def test_http_error_renders_json_body() -> None:
    error = HTTPError(Status.UNSUPPORTED_MEDIA_TYPE, {"expected": "application/json"})
    response = exception_to_response(error)
    assert response.status == 415
    assert msgspec.json.decode(response.body) == {
        "error": {
            "status": 415,
            "reason": "Unsupported Media Type",
            "detail": {"expected": "application/json"},
        }
    }


def test_status_helpers() -> None:
    assert ensure_status(Status.NO_CONTENT) == 204
    assert reason_phrase(404) == "Not Found"
    assert reason_phrase(599) == "Unknown Status"
    with pytest.raises(ValueError):
        ensure_status(42)


def test_default_response() -> None:
    response = Response()
    assert response.status == 200
    assert response.headers == ()
    assert response.body == b""
