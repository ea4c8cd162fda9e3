from __future__ import annotations

import itertools
import json
import threading

import pytest

from ssr_bridge.cancellation import AbortController
from ssr_bridge.connections import ConnectionManager
from ssr_bridge.exceptions import StreamWriteError
from ssr_bridge.framing import format_event
from ssr_bridge.streams import ResponseStream
from ssr_bridge.testing import parse_frames


def _manager() -> ConnectionManager:
    counter = itertools.count(1)
    return ConnectionManager(id_factory=lambda: f"c{next(counter)}", clock=lambda: 100.0)


def _drain(stream: ResponseStream) -> str:
    # Reads the private buffer so synchronous tests need no event loop.
    chunks = list(stream._buffer)
    stream._buffer.clear()
    return b"".join(chunks).decode()


def test_open_writes_connected_greeting() -> None:
    manager = _manager()
    stream = ResponseStream()
    connection_id = manager.open(stream)

    assert connection_id == "c1"
    assert connection_id in manager
    frames = parse_frames(_drain(stream))
    assert frames[0].event == "connected"
    assert json.loads(frames[0].data or "") == {"connectionId": "c1", "timestamp": 100000}


def test_open_without_announce_writes_nothing() -> None:
    manager = _manager()
    stream = ResponseStream()
    manager.open(stream, announce=False)
    assert stream.buffered == 0


def test_broadcast_writes_one_frame_after_greeting() -> None:
    manager = _manager()
    stream = ResponseStream()
    manager.open(stream)
    _drain(stream)

    assert manager.broadcast("x", "hello") == 1
    assert _drain(stream) == format_event("hello", "x")
    assert _drain(stream) == ""


def test_broadcast_with_no_connections_is_a_no_op() -> None:
    assert _manager().broadcast("x", "hello") == 0


def test_broadcast_filter_by_attributes() -> None:
    manager = _manager()
    news, sports = ResponseStream(), ResponseStream()
    manager.open(news, attributes={"topic": "news"}, announce=False)
    manager.open(sports, attributes={"topic": "sports"}, announce=False)

    delivered = manager.broadcast("update", "goal", lambda c: c.attributes.get("topic") == "sports")

    assert delivered == 1
    assert news.buffered == 0
    assert sports.buffered == 1


def test_destroyed_streams_are_pruned() -> None:
    manager = _manager()
    alive, dead = ResponseStream(), ResponseStream()
    manager.open(alive, announce=False)
    dead_id = manager.open(dead, announce=False)

    dead.destroy()

    assert manager.broadcast(None, "ping") == 1
    assert dead_id not in manager
    assert len(manager) == 1


def test_ended_stream_is_pruned_on_failed_write() -> None:
    manager = _manager()
    stream = ResponseStream()
    connection_id = manager.open(stream, announce=False)
    stream.end()

    assert manager.broadcast("x", "y") == 0
    assert connection_id not in manager


def test_overflowing_connection_drops_frames_but_stays_open() -> None:
    manager = _manager()
    slow = ResponseStream(max_buffered=1)
    fast = ResponseStream()
    slow_id = manager.open(slow, announce=False)
    manager.open(fast, announce=False)

    assert manager.broadcast("x", "1") == 2
    assert manager.broadcast("x", "2") == 1
    assert slow.dropped == 1
    assert slow_id in manager
    assert fast.buffered == 2


def test_close_is_idempotent_and_ends_stream() -> None:
    manager = _manager()
    stream = ResponseStream()
    connection_id = manager.open(stream, announce=False)

    assert manager.close(connection_id) is True
    assert manager.close(connection_id) is False
    assert manager.close("never-existed") is False
    assert not stream.writable
    assert manager.broadcast("x", "y") == 0


def test_abort_removes_connection_and_destroys_stream() -> None:
    manager = _manager()
    controller = AbortController()
    stream = ResponseStream()
    connection_id = manager.open(stream, signal=controller.signal)

    controller.abort()

    assert connection_id not in manager
    assert stream.destroyed
    assert manager.get(connection_id) is None


def test_close_detaches_abort_listener() -> None:
    manager = _manager()
    controller = AbortController()
    stream = ResponseStream()
    connection_id = manager.open(stream, signal=controller.signal, announce=False)
    manager.close(connection_id)
    controller.abort()
    assert not stream.destroyed


def test_open_rejects_closed_stream() -> None:
    stream = ResponseStream()
    stream.end()
    with pytest.raises(StreamWriteError):
        _manager().open(stream)


def test_send_targets_one_connection() -> None:
    manager = _manager()
    first, second = ResponseStream(), ResponseStream()
    first_id = manager.open(first, announce=False)
    manager.open(second, announce=False)

    assert manager.send(first_id, "direct", "only you") is True
    assert manager.send("missing", "direct", "nobody") is False
    assert _drain(first) == format_event("only you", "direct")
    assert second.buffered == 0


def test_heartbeat_writes_comment() -> None:
    manager = _manager()
    stream = ResponseStream()
    manager.open(stream, announce=False)
    assert manager.heartbeat() == 1
    assert _drain(stream) == ":\n\n"


def test_close_all_and_snapshot() -> None:
    manager = _manager()
    streams = [ResponseStream() for _ in range(3)]
    for index, stream in enumerate(streams):
        manager.open(stream, attributes={"n": str(index)}, announce=False)

    snapshot = manager.snapshot()
    assert [entry["id"] for entry in snapshot] == ["c1", "c2", "c3"]
    assert snapshot[1]["attributes"] == {"n": "1"}
    assert snapshot[0]["created_at"] == 100.0

    assert manager.close_all() == 3
    assert len(manager) == 0
    assert all(not stream.writable for stream in streams)


def test_custom_greeting() -> None:
    manager = _manager()
    stream = ResponseStream()

    def greeting(connection_id: str, *, timestamp: float) -> str:
        return format_event(connection_id, "hello")

    manager.open(stream, greeting=greeting)
    assert _drain(stream) == "event: hello\ndata: c1\n\n"


def test_concurrent_broadcasts_never_interleave() -> None:
    manager = _manager()
    stream = ResponseStream(max_buffered=10_000)
    manager.open(stream, announce=False)
    payload = "line one\nline two\nline three"

    def broadcaster(name: str) -> None:
        for _ in range(100):
            manager.broadcast(name, payload)

    threads = [threading.Thread(target=broadcaster, args=(f"t{n}",)) for n in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    frames = parse_frames(_drain(stream))
    assert len(frames) == 400
    assert all(frame.data_lines == ["line one", "line two", "line three"] for frame in frames)
    assert {frame.event for frame in frames} == {"t0", "t1", "t2", "t3"}


def test_duplicate_generated_ids_are_retried() -> None:
    ids = iter(["same", "same", "other"])
    manager = ConnectionManager(id_factory=lambda: next(ids))
    first = manager.open(ResponseStream(), announce=False)
    second = manager.open(ResponseStream(), announce=False)
    assert (first, second) == ("same", "other")
