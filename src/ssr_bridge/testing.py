"""Testing helpers."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from typing import Any, Mapping
from urllib.parse import urlencode, urlsplit, urlunsplit

import msgspec

from .bridge import SSRBridge
from .cancellation import AbortController, AbortSignal
from .exceptions import ConfigurationError
from .host import HostCallback, HostRequest
from .responses import Response
from .serialization import json_encode


class SSEFrame(msgspec.Struct, frozen=True):
    """One parsed SSE record as a conformant client would see it."""

    data: str | None = None
    event: str | None = None
    id: str | None = None
    retry: int | None = None
    comment: bool = False

    @property
    def data_lines(self) -> list[str]:
        return [] if self.data is None else self.data.split("\n")


def parse_frames(raw: str) -> list[SSEFrame]:
    """Parse complete SSE records out of ``raw``; a trailing partial record is ignored."""

    frames: list[SSEFrame] = []
    records = raw.replace("\r\n", "\n").split("\n\n")
    for record in records[:-1]:
        event: str | None = None
        event_id: str | None = None
        retry: int | None = None
        data: list[str] = []
        comment = False
        for line in record.split("\n"):
            if not line:
                continue
            if line.startswith(":"):
                comment = True
                continue
            name, _, value = line.partition(":")
            if value.startswith(" "):
                value = value[1:]
            if name == "data":
                data.append(value)
            elif name == "event":
                event = value
            elif name == "id":
                event_id = value
            elif name == "retry" and value.isdigit():
                retry = int(value)
        if data or event is not None:
            frames.append(SSEFrame(data="\n".join(data), event=event, id=event_id, retry=retry))
        elif comment:
            frames.append(SSEFrame(comment=True))
    return frames


class StreamReader:
    """Incrementally read frames from a streaming response."""

    def __init__(self, response: Response) -> None:
        if response.stream is None:
            raise ValueError("Response is not streaming")
        self.response = response
        self._iterator: AsyncIterator[bytes] = response.stream.__aiter__()
        self._pending = ""
        self._buffered: list[SSEFrame] = []
        self.raw = ""

    async def _pull(self) -> bool:
        try:
            chunk = await anext(self._iterator)
        except StopAsyncIteration:
            return False
        text = chunk.decode("utf-8")
        self._pending += text
        self.raw += text
        return True

    def _take(self) -> list[SSEFrame]:
        head, sep, tail = self._pending.rpartition("\n\n")
        if not sep:
            return []
        self._pending = tail
        return parse_frames(head + sep)

    async def frames(self, count: int, *, timeout: float = 1.0) -> list[SSEFrame]:
        """Wait for exactly ``count`` more frames (fewer if the stream ends)."""

        async def fill() -> None:
            while len(self._buffered) < count:
                if not await self._pull():
                    break
                self._buffered.extend(self._take())

        await asyncio.wait_for(fill(), timeout)
        collected, self._buffered = self._buffered[:count], self._buffered[count:]
        return collected

    async def read_all(self, *, timeout: float = 1.0) -> list[SSEFrame]:
        """Drain the stream until it ends."""

        async def drain() -> None:
            while await self._pull():
                pass

        await asyncio.wait_for(drain(), timeout)
        remaining, self._buffered = self._buffered + self._take(), []
        return remaining

    async def aclose(self) -> None:
        closer = getattr(self._iterator, "aclose", None)
        if closer is not None:
            await closer()


class InMemoryHost:
    """A :class:`~ssr_bridge.host.SchemeHost` that keeps callbacks in a dict."""

    def __init__(self) -> None:
        self.handlers: dict[str, HostCallback] = {}

    def handle(self, scheme: str, callback: HostCallback) -> None:
        if scheme in self.handlers:
            raise ConfigurationError(f"Scheme {scheme!r} is already handled")
        self.handlers[scheme] = callback

    def unhandle(self, scheme: str) -> None:
        self.handlers.pop(scheme, None)

    async def fetch(
        self,
        url: str,
        *,
        method: str = "GET",
        headers: Mapping[str, str] | None = None,
        body: bytes | None = None,
        signal: AbortSignal | None = None,
    ) -> Response:
        scheme = urlsplit(url).scheme
        callback = self.handlers.get(scheme)
        if callback is None:
            raise LookupError(f"No handler for scheme {scheme!r}")
        request = HostRequest(method=method, url=url, headers=dict(headers or {}), body=body, signal=signal)
        return await callback(request)


class TestClient:
    """Async test client that executes requests in-process."""

    __test__ = False

    def __init__(self, bridge: SSRBridge, *, base_url: str = "http://localhost") -> None:
        self.bridge = bridge
        self.base_url = base_url.rstrip("/")

    async def __aenter__(self) -> "TestClient":
        await self.bridge.startup()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.bridge.shutdown()

    def url_for(self, path: str, query: Mapping[str, Any] | None = None) -> str:
        if "://" in path:
            return path
        parts = urlsplit(self.base_url + path)
        query_string = urlencode(query or {}, doseq=True) or parts.query
        return urlunsplit((parts.scheme, parts.netloc, parts.path, query_string, ""))

    async def request(
        self,
        method: str,
        path: str,
        *,
        json: Any | None = None,
        form: Mapping[str, Any] | None = None,
        body: bytes | str | None = None,
        query: Mapping[str, Any] | None = None,
        headers: Mapping[str, str] | None = None,
        signal: AbortSignal | None = None,
    ) -> Response:
        request_headers = dict(headers or {})
        payload: bytes | str | None = body
        if json is not None:
            payload = json_encode(json)
            request_headers.setdefault("content-type", "application/json")
        elif form is not None:
            payload = urlencode(form, doseq=True)
            request_headers.setdefault("content-type", "application/x-www-form-urlencoded")
        return await self.bridge.handle(
            HostRequest(
                method=method,
                url=self.url_for(path, query),
                headers=request_headers,
                body=payload,
                signal=signal,
            )
        )

    async def get(self, path: str, **kwargs: Any) -> Response:
        return await self.request("GET", path, **kwargs)

    async def post(self, path: str, **kwargs: Any) -> Response:
        return await self.request("POST", path, **kwargs)

    async def stream(
        self,
        path: str | None = None,
        *,
        query: Mapping[str, Any] | None = None,
    ) -> tuple[StreamReader, AbortController]:
        """Open a streaming request; abort the controller to hang up."""

        controller = AbortController()
        response = await self.get(path or self.bridge.config.stream_path, query=query, signal=controller.signal)
        return StreamReader(response), controller


__all__ = ["InMemoryHost", "SSEFrame", "StreamReader", "TestClient", "parse_frames"]
