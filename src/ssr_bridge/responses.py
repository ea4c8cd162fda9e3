"""Response primitives."""

from __future__ import annotations

from collections.abc import AsyncIterable
from typing import Any, Iterable

import msgspec

from .exceptions import HTTPError
from .http import Status
from .serialization import json_encode

Headers = tuple[tuple[str, str], ...]

EVENT_STREAM_HEADERS: Headers = (
    ("content-type", "text/event-stream"),
    ("cache-control", "no-cache"),
    ("connection", "keep-alive"),
)


class Response(msgspec.Struct, frozen=True):
    """Immutable response payload.

    ``stream`` is set for streaming responses; the host keeps reading from it
    after the dispatcher has returned, and ``body`` is then ignored.
    """

    status: int = int(Status.OK)
    headers: Headers = ()
    body: bytes = b""
    stream: AsyncIterable[bytes] | None = None

    def with_headers(self, headers: Iterable[tuple[str, str]]) -> "Response":
        """Return a new response with ``headers`` appended."""

        return Response(
            status=self.status,
            headers=self.headers + tuple(headers),
            body=self.body,
            stream=self.stream,
        )

    def header(self, name: str, default: str | None = None) -> str | None:
        lookup = name.lower()
        for key, value in self.headers:
            if key.lower() == lookup:
                return value
        return default

    @property
    def is_streaming(self) -> bool:
        return self.stream is not None

    def text(self) -> str:
        return self.body.decode("utf-8")


def _build(
    body: bytes,
    content_type: str,
    *,
    status: int,
    headers: Iterable[tuple[str, str]] | None,
) -> Response:
    combined = (("content-type", content_type),) + tuple(headers or ())
    return Response(status=status, headers=combined, body=body)


def PlainTextResponse(
    text: str,
    *,
    status: int = int(Status.OK),
    headers: Iterable[tuple[str, str]] | None = None,
) -> Response:
    """Create a plain text response."""

    return _build(text.encode("utf-8"), "text/plain; charset=utf-8", status=status, headers=headers)


def HTMLResponse(
    html: str,
    *,
    status: int = int(Status.OK),
    headers: Iterable[tuple[str, str]] | None = None,
) -> Response:
    """Create an HTML response."""

    return _build(html.encode("utf-8"), "text/html; charset=utf-8", status=status, headers=headers)


def JSONResponse(
    data: Any,
    *,
    status: int = int(Status.OK),
    headers: Iterable[tuple[str, str]] | None = None,
) -> Response:
    """Create a JSON response encoded via :mod:`msgspec`."""

    return _build(json_encode(data), "application/json", status=status, headers=headers)


def EventStreamResponse(
    stream: AsyncIterable[bytes],
    *,
    status: int = int(Status.OK),
    headers: Iterable[tuple[str, str]] | None = None,
) -> Response:
    """Wrap ``stream`` in a ``text/event-stream`` response."""

    return Response(status=status, headers=EVENT_STREAM_HEADERS + tuple(headers or ()), stream=stream)


def exception_to_response(exc: HTTPError) -> Response:
    return Response(
        status=exc.status,
        headers=(("content-type", "application/json"),),
        body=exc.to_response_body(),
    )


def error_response(status: int, message: str) -> Response:
    """Minimal diagnostic response: the message only, never a traceback."""

    return PlainTextResponse(message, status=status)


def not_found_response() -> Response:
    return Response(status=int(Status.NOT_FOUND))


__all__ = [
    "EVENT_STREAM_HEADERS",
    "EventStreamResponse",
    "HTMLResponse",
    "Headers",
    "JSONResponse",
    "PlainTextResponse",
    "Response",
    "error_response",
    "exception_to_response",
    "not_found_response",
]
