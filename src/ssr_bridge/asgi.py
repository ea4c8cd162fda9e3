"""ASGI adapter: drive a bridge from any in-process ASGI transport."""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import AsyncIterable, AsyncIterator
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Mapping
from urllib.parse import urlunsplit

from .cancellation import AbortController
from .requests import adapt_request
from .responses import Response

if TYPE_CHECKING:
    from .bridge import SSRBridge

Receive = Callable[[], Awaitable[Mapping[str, Any]]]
Send = Callable[[Mapping[str, Any]], Awaitable[None]]


class ASGIAdapter:
    """Expose an :class:`~ssr_bridge.bridge.SSRBridge` as an ASGI application.

    ``http.disconnect`` aborts the request's signal, which closes any push
    connection the request opened.
    """

    def __init__(self, bridge: "SSRBridge", *, default_host: str = "localhost") -> None:
        self.bridge = bridge
        self.default_host = default_host

    async def __call__(self, scope: Mapping[str, Any], receive: Receive, send: Send) -> None:
        scope_type = scope.get("type")
        if scope_type == "http":
            await self._handle_http(scope, receive, send)
            return
        if scope_type == "lifespan":
            await self._handle_lifespan(receive, send)
            return
        raise RuntimeError("ASGIAdapter only supports HTTP and lifespan scopes")

    async def _handle_lifespan(self, receive: Receive, send: Send) -> None:
        while True:
            message = await receive()
            message_type = message.get("type")
            if message_type == "lifespan.startup":
                await self.bridge.startup()
                await send({"type": "lifespan.startup.complete"})
            elif message_type == "lifespan.shutdown":
                await self.bridge.shutdown()
                await send({"type": "lifespan.shutdown.complete"})
                return

    def _url_for(self, scope: Mapping[str, Any], headers: Mapping[str, str]) -> str:
        scheme = scope.get("scheme") or "http"
        host = headers.get("host") or self.default_host
        query = (scope.get("query_string") or b"").decode("latin-1")
        return urlunsplit((scheme, host, scope.get("path") or "/", query, ""))

    async def _handle_http(self, scope: Mapping[str, Any], receive: Receive, send: Send) -> None:
        headers = {key.decode("latin-1").lower(): value.decode("latin-1") for key, value in scope.get("headers", [])}
        controller = AbortController()
        body_state: dict[str, Any] = {"buffer": bytearray(), "done": False}

        async def load_body() -> bytes:
            while not body_state["done"]:
                message = await receive()
                message_type = message.get("type")
                if message_type == "http.disconnect":
                    body_state["done"] = True
                    controller.abort("disconnect")
                    continue
                if message_type != "http.request":
                    continue
                chunk = message.get("body", b"")
                if chunk:
                    body_state["buffer"].extend(chunk)
                if not message.get("more_body", False):
                    body_state["done"] = True
            body = bytes(body_state["buffer"])
            body_state["buffer"] = bytearray()
            return body

        request = adapt_request(
            scope.get("method", "GET"),
            self._url_for(scope, headers),
            headers,
            load_body,
            controller.signal,
            max_body_bytes=self.bridge.config.max_request_body_bytes,
        )
        response = await self.bridge.dispatch(request)
        await send(
            {
                "type": "http.response.start",
                "status": response.status,
                "headers": [(k.encode("latin-1"), v.encode("latin-1")) for k, v in response.headers],
            }
        )
        if response.stream is None:
            await send({"type": "http.response.body", "body": response.body})
            return
        await _send_streaming(response, send, receive, controller)


async def _send_streaming(
    response: Response,
    send: Send,
    receive: Receive,
    controller: AbortController,
) -> None:
    sender = asyncio.ensure_future(_send_response_body(response, send))
    watcher = asyncio.ensure_future(_wait_for_disconnect(receive))
    try:
        done, _ = await asyncio.wait({sender, watcher}, return_when=asyncio.FIRST_COMPLETED)
        if sender in done:
            if sender.exception() is not None:
                controller.abort("send_failed")
            await sender
            return
        controller.abort("disconnect")
        sender.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await sender
    finally:
        watcher.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await watcher


async def _wait_for_disconnect(receive: Receive) -> None:
    while True:
        message = await receive()
        if message.get("type") == "http.disconnect":
            return
        await asyncio.sleep(0)


async def _send_response_body(response: Response, send: Send) -> None:
    stream = response.stream
    if stream is None:
        await send({"type": "http.response.body", "body": response.body})
        return
    iterator = _ensure_async_iterator(stream)
    async for chunk in iterator:
        if chunk:
            await send({"type": "http.response.body", "body": chunk, "more_body": True})
    await send({"type": "http.response.body", "body": b"", "more_body": False})


def _ensure_async_iterator(stream: AsyncIterable[bytes]) -> AsyncIterator[bytes]:
    if isinstance(stream, AsyncIterator):
        return stream
    return stream.__aiter__()


__all__ = ["ASGIAdapter"]
