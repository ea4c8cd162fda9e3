"""Abort signals shared between the host and the handlers it triggers."""

from __future__ import annotations

import asyncio
import logging
import threading
from typing import Any, Callable

logger = logging.getLogger(__name__)

AbortListener = Callable[[], Any]


class AbortSignal:
    """Observable flag that flips once when the host drops a request.

    Listeners run exactly once, synchronously, in the thread that aborts. A
    listener added after the abort runs immediately.
    """

    __slots__ = ("_aborted", "_listeners", "_lock", "_reason", "_waiters")

    def __init__(self) -> None:
        self._aborted = False
        self._reason: Any = None
        self._listeners: list[AbortListener] = []
        self._waiters: list[tuple[asyncio.AbstractEventLoop, asyncio.Future[None]]] = []
        self._lock = threading.Lock()

    @property
    def aborted(self) -> bool:
        return self._aborted

    @property
    def reason(self) -> Any:
        return self._reason

    def add_listener(self, callback: AbortListener) -> None:
        with self._lock:
            if not self._aborted:
                self._listeners.append(callback)
                return
        _invoke(callback)

    def remove_listener(self, callback: AbortListener) -> None:
        with self._lock:
            try:
                self._listeners.remove(callback)
            except ValueError:
                pass

    async def wait(self) -> None:
        """Suspend until the signal is aborted."""

        loop = asyncio.get_running_loop()
        with self._lock:
            if self._aborted:
                return
            future: asyncio.Future[None] = loop.create_future()
            self._waiters.append((loop, future))
        try:
            await future
        finally:
            with self._lock:
                self._waiters = [(lp, fut) for lp, fut in self._waiters if fut is not future]

    def _abort(self, reason: Any) -> bool:
        with self._lock:
            if self._aborted:
                return False
            self._aborted = True
            self._reason = reason
            listeners, self._listeners = self._listeners, []
            waiters, self._waiters = self._waiters, []
        for callback in listeners:
            _invoke(callback)
        for loop, future in waiters:
            if loop.is_closed():
                continue
            loop.call_soon_threadsafe(_resolve, future)
        return True

    def __repr__(self) -> str:
        return f"AbortSignal(aborted={self._aborted!r})"


class AbortController:
    """Owner side of an :class:`AbortSignal`; the host keeps this half."""

    __slots__ = ("signal",)

    def __init__(self) -> None:
        self.signal = AbortSignal()

    def abort(self, reason: Any = None) -> bool:
        """Abort the signal. Returns ``False`` when it was already aborted."""

        return self.signal._abort(reason if reason is not None else "aborted")


def _invoke(callback: AbortListener) -> None:
    try:
        callback()
    except Exception:
        logger.exception("Abort listener %r failed", callback)


def _resolve(future: asyncio.Future[None]) -> None:
    if not future.done():
        future.set_result(None)


__all__ = ["AbortController", "AbortListener", "AbortSignal"]
