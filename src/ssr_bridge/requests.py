"""Request primitives."""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import AsyncIterable, Iterable
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Mapping, MutableMapping, TypeVar, Union
from urllib.parse import SplitResult, parse_qsl, urlsplit

import msgspec

from .cancellation import AbortSignal
from .exceptions import HTTPError, ParseError
from .http import Status
from .serialization import json_decode

if TYPE_CHECKING:
    from .streams import ResponseStream

T = TypeVar("T")

BodyLoader = Callable[[], Awaitable[bytes | bytearray | memoryview | None]]
BodySource = Union[bytes, bytearray, memoryview, str, AsyncIterable[bytes], BodyLoader, None]
HeaderSource = Union[Mapping[str, str], Iterable[tuple[str, str]], None]

_MAX_QUERY_PARAMS = 1024
_FORM_CONTENT_TYPE = "application/x-www-form-urlencoded"
_PATH_SCHEMES = frozenset({"http", "https", "file", ""})


def _normalize_headers(headers: HeaderSource) -> dict[str, str]:
    if headers is None:
        return {}
    items = headers.items() if isinstance(headers, Mapping) else headers
    return {str(key).lower(): str(value) for key, value in items}


def _route_path(url: SplitResult) -> str:
    # Custom schemes address a channel through the URL host: ``sse://stream`` -> ``/stream``.
    if url.scheme in _PATH_SCHEMES:
        return url.path or "/"
    path = "/" + url.netloc if url.netloc else ""
    path += url.path if url.path.startswith("/") or not url.path else "/" + url.path
    return path or "/"


def _parse_pairs(raw: str, *, limit: int, source: str) -> MutableMapping[str, list[str]]:
    parsed: MutableMapping[str, list[str]] = {}
    try:
        pairs = parse_qsl(raw, keep_blank_values=True, max_num_fields=limit)
    except ValueError as exc:
        raise HTTPError(Status.BAD_REQUEST, {"detail": f"too_many_{source}_fields"}) from exc
    for key, value in pairs:
        parsed.setdefault(key, []).append(value)
    return parsed


class Request:
    """Immutable view of a virtual request delivered by the host."""

    __slots__ = (
        "_body",
        "_body_error",
        "_body_lock",
        "_body_source",
        "_form_cache",
        "_json_cache",
        "_max_body_bytes",
        "_query_params",
        "_streams",
        "_text_cache",
        "headers",
        "method",
        "path",
        "signal",
        "url",
    )

    def __init__(
        self,
        *,
        method: str,
        url: str | SplitResult,
        headers: HeaderSource = None,
        body: BodySource = None,
        signal: AbortSignal | None = None,
        max_body_bytes: int | None = None,
    ) -> None:
        self.method = method.upper()
        self.url = url if isinstance(url, SplitResult) else urlsplit(url)
        self.path = _route_path(self.url)
        self.headers = _normalize_headers(headers)
        self.signal = signal or AbortSignal()
        self._max_body_bytes = max_body_bytes
        self._body: bytes | None = None
        self._body_source: BodySource = None
        if isinstance(body, str):
            self._body = body.encode("utf-8")
        elif isinstance(body, (bytes, bytearray, memoryview)):
            self._body = bytes(body)
        else:
            self._body_source = body
        self._body_error: Exception | None = None
        self._body_lock = asyncio.Lock()
        self._text_cache: str | None = None
        self._json_cache: Any = msgspec.UNSET
        self._form_cache: MutableMapping[str, list[str]] | None = None
        self._query_params: MutableMapping[str, list[str]] | None = None
        self._streams: list["ResponseStream"] = []

    @property
    def scheme(self) -> str:
        return self.url.scheme

    @property
    def raw_query(self) -> str:
        return self.url.query

    @property
    def query_params(self) -> MutableMapping[str, list[str]]:
        if self._query_params is None:
            self._query_params = _parse_pairs(self.url.query, limit=_MAX_QUERY_PARAMS, source="query")
        return self._query_params

    def query_param(self, name: str, default: str | None = None) -> str | None:
        values = self.query_params.get(name)
        if not values:
            return default
        return values[-1]

    def header(self, name: str, default: str | None = None) -> str | None:
        return self.headers.get(name.lower(), default)

    @property
    def content_type(self) -> str:
        raw = self.headers.get("content-type", "")
        return raw.split(";", 1)[0].strip().lower()

    async def _ensure_body(self) -> bytes:
        if self._body is None:
            async with self._body_lock:
                if self._body_error is not None:
                    raise self._body_error
                if self._body is None:
                    source, self._body_source = self._body_source, None
                    try:
                        self._body = await self._read_source(source)
                    except Exception as exc:
                        # The source is consumed; later reads repeat the failure.
                        self._body_error = exc
                        raise
        self._check_size(len(self._body))
        return self._body

    def attach_stream(self, stream: "ResponseStream") -> None:
        """Remember a stream opened on behalf of this request."""

        self._streams.append(stream)

    def release_streams(self) -> int:
        """Destroy every attached stream; used when the handler failed."""

        streams, self._streams = self._streams, []
        for stream in streams:
            stream.destroy()
        return len(streams)

    async def _read_source(self, source: BodySource) -> bytes:
        if source is None:
            return b""
        if isinstance(source, AsyncIterable):
            buffer = bytearray()
            async for chunk in source:
                buffer.extend(chunk.encode("utf-8") if isinstance(chunk, str) else chunk)
                self._check_size(len(buffer))
            return bytes(buffer)
        raw = source()
        if inspect.isawaitable(raw):
            raw = await raw
        if raw is None:
            return b""
        data = raw if isinstance(raw, bytes) else bytes(raw)
        self._check_size(len(data))
        return data

    def _check_size(self, size: int) -> None:
        limit = self._max_body_bytes
        if limit is not None and size > limit:
            raise ParseError(f"Request body exceeds {limit} bytes")

    async def body(self) -> bytes:
        return await self._ensure_body()

    async def text(self) -> str:
        if self._text_cache is None:
            body = await self._ensure_body()
            try:
                self._text_cache = body.decode("utf-8")
            except UnicodeDecodeError as exc:
                raise ParseError("Request body is not valid UTF-8") from exc
        return self._text_cache

    async def json(self, model: type[T] | None = None) -> T | Any:
        """Decode the JSON body using :mod:`msgspec`."""

        if self._json_cache is msgspec.UNSET:
            body = await self._ensure_body()
            if not body:
                self._json_cache = None
            else:
                try:
                    self._json_cache = json_decode(body)
                except msgspec.DecodeError as exc:
                    raise ParseError(f"Request body is not valid JSON: {exc}") from exc
        if model is None:
            return self._json_cache
        try:
            return msgspec.convert(self._json_cache, type=model)
        except msgspec.ValidationError as exc:
            raise ParseError(str(exc)) from exc

    async def form(self) -> MutableMapping[str, list[str]]:
        """Decode an ``application/x-www-form-urlencoded`` body."""

        if self._form_cache is None:
            if self.content_type != _FORM_CONTENT_TYPE:
                raise ParseError(f"Unsupported form content type: {self.content_type or 'none'}")
            text = await self.text()
            try:
                self._form_cache = _parse_pairs(text, limit=_MAX_QUERY_PARAMS, source="form")
            except HTTPError as exc:
                raise ParseError("Too many form fields") from exc
        return self._form_cache

    def __repr__(self) -> str:
        return f"Request(method={self.method!r}, path={self.path!r})"


def adapt_request(
    method: str,
    url: str,
    headers: HeaderSource = None,
    body: BodySource = None,
    signal: AbortSignal | None = None,
    *,
    max_body_bytes: int | None = None,
) -> Request:
    """Build a :class:`Request` from the raw fields a host intercepted."""

    return Request(
        method=method or "GET",
        url=url,
        headers=headers,
        body=body,
        signal=signal,
        max_body_bytes=max_body_bytes,
    )


__all__ = ["BodyLoader", "BodySource", "Request", "adapt_request"]
