"""Writable byte streams handed to the host for streaming responses."""

from __future__ import annotations

import asyncio
import logging
import threading
from collections import deque
from collections.abc import AsyncIterator
from typing import Any, Callable

from .exceptions import StreamWriteError

logger = logging.getLogger(__name__)

CloseCallback = Callable[[], Any]

DEFAULT_BUFFER_SIZE = 256


class ResponseStream:
    """A push stream the host drains incrementally.

    Every ``write`` enqueues one whole chunk under a lock, so concurrent writers
    never interleave partial frames. The buffer is bounded: once
    ``max_buffered`` chunks are waiting, further writes are dropped for this
    stream only and ``write`` returns ``False``.

    ``end`` finishes gracefully (buffered chunks are still delivered);
    ``destroy`` discards them. The stream counts as destroyed once it has been
    destroyed, or ended and fully drained, or the consumer stopped reading.
    """

    def __init__(self, *, max_buffered: int = DEFAULT_BUFFER_SIZE) -> None:
        if max_buffered < 1:
            raise ValueError("max_buffered must be positive")
        self._buffer: deque[bytes] = deque()
        self._max_buffered = max_buffered
        self._lock = threading.Lock()
        self._ended = False
        self._destroyed = False
        self._dropped = 0
        self._close_callbacks: list[CloseCallback] = []
        self._waiter: asyncio.Future[None] | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._consumed = False

    @property
    def destroyed(self) -> bool:
        return self._destroyed

    @property
    def writable(self) -> bool:
        return not (self._ended or self._destroyed)

    @property
    def dropped(self) -> int:
        """Number of chunks discarded because the buffer was full."""

        return self._dropped

    @property
    def buffered(self) -> int:
        return len(self._buffer)

    def write(self, chunk: bytes | str) -> bool:
        """Queue ``chunk`` for the consumer.

        Raises :class:`StreamWriteError` when the stream was ended or destroyed.
        """

        data = chunk.encode("utf-8") if isinstance(chunk, str) else bytes(chunk)
        with self._lock:
            if self._destroyed:
                raise StreamWriteError("write after destroy")
            if self._ended:
                raise StreamWriteError("write after end")
            if len(self._buffer) >= self._max_buffered:
                self._dropped += 1
                return False
            self._buffer.append(data)
        self._wake()
        return True

    def end(self) -> None:
        """Stop accepting writes; the consumer finishes after draining."""

        with self._lock:
            if self._ended or self._destroyed:
                return
            self._ended = True
        self._wake()

    def destroy(self) -> None:
        """Tear the stream down immediately, dropping anything buffered."""

        with self._lock:
            if self._destroyed:
                return
            self._destroyed = True
            self._ended = True
            self._buffer.clear()
            callbacks, self._close_callbacks = self._close_callbacks, []
        self._wake()
        for callback in callbacks:
            try:
                callback()
            except Exception:
                logger.exception("Stream close callback %r failed", callback)

    close = destroy

    def on_close(self, callback: CloseCallback) -> None:
        """Run ``callback`` once when the stream is destroyed."""

        with self._lock:
            if not self._destroyed:
                self._close_callbacks.append(callback)
                return
        callback()

    def _wake(self) -> None:
        waiter = self._waiter
        loop = self._loop
        if waiter is None or loop is None or loop.is_closed():
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            _release(waiter)
        else:
            loop.call_soon_threadsafe(_release, waiter)

    def __aiter__(self) -> AsyncIterator[bytes]:
        if self._consumed:
            raise RuntimeError("ResponseStream can only be consumed once")
        self._consumed = True
        return self._iter_chunks()

    async def _iter_chunks(self) -> AsyncIterator[bytes]:
        self._loop = asyncio.get_running_loop()
        try:
            while True:
                with self._lock:
                    if self._buffer:
                        chunk: bytes | None = self._buffer.popleft()
                    elif self._ended:
                        break
                    else:
                        chunk = None
                        self._waiter = self._loop.create_future()
                if chunk is not None:
                    yield chunk
                    continue
                waiter = self._waiter
                if waiter is not None:
                    await waiter
                self._waiter = None
        finally:
            self._waiter = None
            self.destroy()


def _release(waiter: asyncio.Future[None]) -> None:
    if not waiter.done():
        waiter.set_result(None)


__all__ = ["DEFAULT_BUFFER_SIZE", "ResponseStream"]
