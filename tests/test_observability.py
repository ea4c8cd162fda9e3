from __future__ import annotations

import json
import logging

import pytest

from ssr_bridge import HTTPError, Observability, ObservabilityConfig, Request, SSRBridge
from ssr_bridge.observability import _default_id_generator
from ssr_bridge.responses import PlainTextResponse
from ssr_bridge.testing import TestClient
from tests.observability_stubs import setup_stub_opentelemetry, setup_stub_sentry


def _events(caplog: pytest.LogCaptureFixture) -> list[dict[str, object]]:
    return [
        json.loads(record.getMessage())
        for record in caplog.records
        if record.name == "ssr_bridge.observability"
    ]


def _bridge(observability: Observability) -> SSRBridge:
    bridge = SSRBridge(observability=observability)

    @bridge.get("/ok")
    async def ok(request: Request) -> str:
        return "ok"

    @bridge.get("/fail")
    async def fail(request: Request) -> None:
        raise RuntimeError("kaboom")

    @bridge.get("/teapot")
    async def teapot(request: Request) -> None:
        raise HTTPError(418, "short and stout")

    return bridge


@pytest.mark.asyncio
async def test_request_success_is_traced_and_logged(
    monkeypatch: pytest.MonkeyPatch, caplog: pytest.LogCaptureFixture
) -> None:
    tracer = setup_stub_opentelemetry(monkeypatch)
    hub = setup_stub_sentry(monkeypatch)
    observability = Observability(id_generator=lambda size: "req-1")

    with caplog.at_level(logging.DEBUG, logger="ssr_bridge.observability"):
        async with TestClient(_bridge(observability)) as client:
            response = await client.get("/ok")

    assert response.header("x-request-id") == "req-1"
    span = tracer.spans[-1]
    assert span.name == "ssr_bridge.dispatch"
    assert span.kind == "server"
    assert span.attributes["http.request.method"] == "GET"
    assert span.attributes["url.path"] == "/ok"
    assert span.attributes["http.response.status_code"] == 200
    assert span.ended
    assert hub.captured == []

    events = _events(caplog)
    assert [e["event"] for e in events] == ["request.start", "request.success"]
    assert events[1]["status"] == 200
    assert events[1]["request_id"] == "req-1"
    assert events[1]["streaming"] is False


@pytest.mark.asyncio
async def test_request_error_is_recorded(monkeypatch: pytest.MonkeyPatch, caplog: pytest.LogCaptureFixture) -> None:
    tracer = setup_stub_opentelemetry(monkeypatch)
    hub = setup_stub_sentry(monkeypatch)
    observability = Observability()

    with caplog.at_level(logging.WARNING, logger="ssr_bridge.observability"):
        async with TestClient(_bridge(observability)) as client:
            response = await client.get("/fail")

    assert response.status == 500
    span = tracer.spans[-1]
    assert span.attributes["http.response.status_code"] == 500
    assert isinstance(span.exceptions[0], RuntimeError)
    assert span.status.status_code == "error"
    assert span.status.description == "kaboom"
    assert isinstance(span.exit_exception, RuntimeError)
    assert [type(exc) for exc in hub.captured] == [RuntimeError]

    (event,) = _events(caplog)
    assert event["event"] == "request.error"
    assert event["error_type"] == "RuntimeError"
    assert event["status"] == 500


@pytest.mark.asyncio
async def test_http_error_status_reaches_span(monkeypatch: pytest.MonkeyPatch) -> None:
    tracer = setup_stub_opentelemetry(monkeypatch, with_status=False)
    observability = Observability(ObservabilityConfig(sentry_enabled=False))

    async with TestClient(_bridge(observability)) as client:
        response = await client.get("/teapot")

    assert response.status == 418
    span = tracer.spans[-1]
    assert span.attributes["http.response.status_code"] == 418
    assert span.status is None


@pytest.mark.asyncio
async def test_sentry_capture_can_be_disabled(monkeypatch: pytest.MonkeyPatch) -> None:
    hub = setup_stub_sentry(monkeypatch)
    config = ObservabilityConfig(opentelemetry_enabled=False, sentry_capture_exceptions=False)

    async with TestClient(_bridge(Observability(config))) as client:
        await client.get("/fail")

    assert hub.captured == []


@pytest.mark.asyncio
async def test_disabled_observability_is_silent(
    monkeypatch: pytest.MonkeyPatch, caplog: pytest.LogCaptureFixture
) -> None:
    tracer = setup_stub_opentelemetry(monkeypatch)
    observability = Observability(ObservabilityConfig(enabled=False))

    with caplog.at_level(logging.DEBUG, logger="ssr_bridge.observability"):
        async with TestClient(_bridge(observability)) as client:
            response = await client.get("/ok")
            reader, controller = await client.stream()
            await reader.frames(1)
            controller.abort()

    assert not observability.enabled
    assert response.header("x-request-id") is None
    assert tracer.spans == []
    assert _events(caplog) == []


@pytest.mark.asyncio
async def test_connection_lifecycle_events(caplog: pytest.LogCaptureFixture) -> None:
    config = ObservabilityConfig(opentelemetry_enabled=False, sentry_enabled=False)
    bridge = SSRBridge(observability=Observability(config))

    with caplog.at_level(logging.DEBUG, logger="ssr_bridge.observability"):
        async with TestClient(bridge) as client:
            reader, controller = await client.stream(query={"room": "lobby"})
            await reader.frames(1)
            bridge.broadcast("chat", "hi")
            controller.abort()

    events = {e["event"]: e for e in _events(caplog)}
    assert events["connection.open"]["room"] == "lobby"
    assert events["broadcast"] == {"event": "broadcast", "event_name": "chat", "delivered": 1, "pruned": 0}
    assert events["connection.close"]["reason"] == "aborted"


def test_existing_request_id_header_is_kept() -> None:
    observability = Observability(ObservabilityConfig(opentelemetry_enabled=False, sentry_enabled=False))
    context = observability.on_request_start(Request(method="GET", url="http://localhost/"))
    response = PlainTextResponse("x", headers=[("X-Request-Id", "upstream")])
    assert observability.on_request_success(context, response).header("x-request-id") == "upstream"


def test_id_generator_rejects_bad_size() -> None:
    with pytest.raises(ValueError):
        _default_id_generator()(0)
