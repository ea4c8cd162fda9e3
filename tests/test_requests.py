from __future__ import annotations

import msgspec
import pytest

from ssr_bridge.cancellation import AbortController
from ssr_bridge.exceptions import ParseError
from ssr_bridge.requests import Request, adapt_request


class Item(msgspec.Struct):
    name: str
    quantity: int = 1


def test_headers_are_case_insensitive() -> None:
    request = Request(method="get", url="http://localhost/", headers={"X-Token": "abc", "Content-Type": "text/plain; charset=utf-8"})
    assert request.method == "GET"
    assert request.header("x-token") == "abc"
    assert request.header("X-TOKEN") == "abc"
    assert request.header("missing", "fallback") == "fallback"
    assert request.content_type == "text/plain"


def test_headers_accept_pairs() -> None:
    request = Request(method="GET", url="http://localhost/", headers=[("Accept", "text/html")])
    assert request.headers == {"accept": "text/html"}


def test_query_params_keep_every_value() -> None:
    request = Request(method="GET", url="http://localhost/search?tag=a&tag=b&empty=&q=x")
    assert request.path == "/search"
    assert request.raw_query == "tag=a&tag=b&empty=&q=x"
    assert request.query_params["tag"] == ["a", "b"]
    assert request.query_param("tag") == "b"
    assert request.query_param("empty") == ""
    assert request.query_param("nope", "default") == "default"


@pytest.mark.parametrize(
    ("url", "path"),
    [
        ("http://localhost/items", "/items"),
        ("https://app.local", "/"),
        ("sse://stream", "/stream"),
        ("sse://stream/", "/stream/"),
        ("app://updates/live", "/updates/live"),
    ],
)
def test_route_path_by_scheme(url: str, path: str) -> None:
    request = Request(method="GET", url=url)
    assert request.path == path
    assert request.scheme == url.split("://", 1)[0]


def test_missing_signal_gets_a_fresh_one() -> None:
    request = Request(method="GET", url="http://localhost/")
    assert not request.signal.aborted
    controller = AbortController()
    assert Request(method="GET", url="http://localhost/", signal=controller.signal).signal is controller.signal


@pytest.mark.asyncio
async def test_text_and_body_are_memoized() -> None:
    reads = 0

    async def loader() -> bytes:
        nonlocal reads
        reads += 1
        return "héllo".encode()

    request = Request(method="POST", url="http://localhost/", body=loader)
    assert await request.text() == "héllo"
    assert await request.text() == "héllo"
    assert await request.body() == "héllo".encode()
    assert reads == 1


@pytest.mark.asyncio
async def test_body_from_async_iterable() -> None:
    async def chunks():
        yield b"ab"
        yield b"cd"

    request = Request(method="POST", url="http://localhost/", body=chunks())
    assert await request.body() == b"abcd"


@pytest.mark.asyncio
async def test_body_from_sync_callable_and_string() -> None:
    assert await Request(method="POST", url="http://x/", body=lambda: b"raw").body() == b"raw"
    assert await Request(method="POST", url="http://x/", body="text").body() == b"text"
    assert await Request(method="GET", url="http://x/").body() == b""


@pytest.mark.asyncio
async def test_body_size_limit() -> None:
    async def chunks():
        yield b"12345"
        yield b"67890"

    request = Request(method="POST", url="http://x/", body=chunks(), max_body_bytes=8)
    with pytest.raises(ParseError):
        await request.body()
    with pytest.raises(ParseError):
        await request.body()
    with pytest.raises(ParseError):
        await request.text()

    loaded = Request(method="POST", url="http://x/", body=lambda: b"123456789", max_body_bytes=8)
    with pytest.raises(ParseError):
        await loaded.body()


@pytest.mark.asyncio
async def test_failed_body_read_repeats_the_error() -> None:
    async def chunks():
        yield b"partial"
        raise RuntimeError("connection reset")

    request = Request(method="POST", url="http://x/", body=chunks())
    with pytest.raises(RuntimeError, match="connection reset"):
        await request.body()
    with pytest.raises(RuntimeError, match="connection reset"):
        await request.json()


@pytest.mark.asyncio
async def test_json_decoding_and_model_conversion() -> None:
    request = Request(method="POST", url="http://x/", body=b'{"name": "widget", "quantity": 3}')
    assert await request.json() == {"name": "widget", "quantity": 3}
    assert await request.json(Item) == Item(name="widget", quantity=3)


@pytest.mark.asyncio
async def test_empty_json_body_is_none() -> None:
    assert await Request(method="POST", url="http://x/").json() is None


@pytest.mark.asyncio
async def test_invalid_json_raises_parse_error() -> None:
    with pytest.raises(ParseError):
        await Request(method="POST", url="http://x/", body=b"{not json").json()
    with pytest.raises(ParseError):
        await Request(method="POST", url="http://x/", body=b'{"quantity": 2}').json(Item)


@pytest.mark.asyncio
async def test_invalid_utf8_raises_parse_error() -> None:
    with pytest.raises(ParseError):
        await Request(method="POST", url="http://x/", body=b"\xff\xfe").text()


@pytest.mark.asyncio
async def test_urlencoded_form() -> None:
    request = Request(
        method="POST",
        url="http://x/",
        headers={"content-type": "application/x-www-form-urlencoded; charset=utf-8"},
        body="name=a+b&tag=1&tag=2",
    )
    form = await request.form()
    assert form["name"] == ["a b"]
    assert form["tag"] == ["1", "2"]
    assert await request.form() is form


@pytest.mark.asyncio
async def test_form_rejects_other_content_types() -> None:
    request = Request(method="POST", url="http://x/", headers={"content-type": "multipart/form-data"}, body="x")
    with pytest.raises(ParseError):
        await request.form()


def test_adapt_request_defaults_method() -> None:
    request = adapt_request("", "sse://stream?topic=news", {"Accept": "text/event-stream"}, None, None, max_body_bytes=10)
    assert request.method == "GET"
    assert request.path == "/stream"
    assert request.query_param("topic") == "news"
    assert request.header("accept") == "text/event-stream"
