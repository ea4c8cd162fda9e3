from __future__ import annotations

import asyncio
import logging
import threading

import pytest

from ssr_bridge.cancellation import AbortController


def test_listeners_run_exactly_once() -> None:
    controller = AbortController()
    calls: list[str] = []
    controller.signal.add_listener(lambda: calls.append("first"))
    controller.signal.add_listener(lambda: calls.append("second"))

    assert controller.abort("gone") is True
    assert controller.abort() is False
    assert calls == ["first", "second"]
    assert controller.signal.aborted
    assert controller.signal.reason == "gone"


def test_listener_added_after_abort_runs_immediately() -> None:
    controller = AbortController()
    controller.abort()
    calls: list[int] = []
    controller.signal.add_listener(lambda: calls.append(1))
    assert calls == [1]
    assert controller.signal.reason == "aborted"


def test_removed_listener_is_not_called() -> None:
    controller = AbortController()
    calls: list[int] = []

    def listener() -> None:
        calls.append(1)

    controller.signal.add_listener(listener)
    controller.signal.remove_listener(listener)
    controller.signal.remove_listener(listener)
    controller.abort()
    assert calls == []


def test_failing_listener_is_logged(caplog: pytest.LogCaptureFixture) -> None:
    controller = AbortController()
    calls: list[int] = []

    def broken() -> None:
        raise RuntimeError("listener failed")

    controller.signal.add_listener(broken)
    controller.signal.add_listener(lambda: calls.append(1))
    with caplog.at_level(logging.ERROR, logger="ssr_bridge.cancellation"):
        controller.abort()
    assert calls == [1]
    assert "Abort listener" in caplog.text


@pytest.mark.asyncio
async def test_wait_resolves_on_abort() -> None:
    controller = AbortController()
    waiter = asyncio.create_task(controller.signal.wait())
    await asyncio.sleep(0)
    assert not waiter.done()
    controller.abort()
    await asyncio.wait_for(waiter, 1)


@pytest.mark.asyncio
async def test_wait_resolves_when_aborted_from_another_thread() -> None:
    controller = AbortController()
    waiter = asyncio.create_task(controller.signal.wait())
    await asyncio.sleep(0)
    thread = threading.Thread(target=controller.abort)
    thread.start()
    thread.join()
    await asyncio.wait_for(waiter, 1)


@pytest.mark.asyncio
async def test_wait_returns_immediately_when_already_aborted() -> None:
    controller = AbortController()
    controller.abort()
    await asyncio.wait_for(controller.signal.wait(), 1)
