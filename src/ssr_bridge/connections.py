"""Tracking of long-lived push connections and broadcasting to them."""

from __future__ import annotations

import asyncio
import logging
import secrets
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping

from .cancellation import AbortListener, AbortSignal
from .exceptions import StreamWriteError
from .framing import HEARTBEAT, connected_event, format_event
from .observability import Observability
from .streams import ResponseStream

logger = logging.getLogger(__name__)

ConnectionFilter = Callable[["Connection"], bool]
Greeting = Callable[..., str]


def _default_connection_id() -> str:
    return secrets.token_hex(8)


@dataclass(slots=True, eq=False)
class Connection:
    """One open push channel.

    Attributes:
        id: Opaque identity, unique for the manager's lifetime.
        stream: The stream the host is draining.
        created_at: Unix timestamp of when the connection was opened.
        attributes: Free-form labels used by broadcast filters.
        closed: Set once the manager stops tracking the connection.

    """

    id: str
    stream: ResponseStream
    created_at: float
    attributes: Mapping[str, str] = field(default_factory=dict)
    closed: bool = False
    signal: AbortSignal | None = None
    abort_listener: AbortListener | None = None


class ConnectionManager:
    """Sole owner of the set of open connections.

    Dead streams are pruned lazily, whenever a broadcast or close touches them.
    Mutations are serialized by a lock sized to this structure only.
    """

    def __init__(
        self,
        *,
        observability: Observability | None = None,
        id_factory: Callable[[], str] | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._connections: dict[str, Connection] = {}
        self._lock = threading.Lock()
        self._observability = observability or Observability()
        self._id_factory = id_factory or _default_connection_id
        self._clock = clock

    def __len__(self) -> int:
        with self._lock:
            return len(self._connections)

    def __contains__(self, connection_id: object) -> bool:
        with self._lock:
            return connection_id in self._connections

    def get(self, connection_id: str) -> Connection | None:
        with self._lock:
            return self._connections.get(connection_id)

    def ids(self) -> tuple[str, ...]:
        with self._lock:
            return tuple(self._connections)

    def open(
        self,
        stream: ResponseStream,
        *,
        signal: AbortSignal | None = None,
        attributes: Mapping[str, str] | None = None,
        announce: bool = True,
        greeting: Greeting | None = None,
    ) -> str:
        """Start tracking ``stream`` and return the new connection id.

        When ``signal`` fires the connection is closed. With ``announce`` the
        connection-established frame is written before returning.
        """

        if not stream.writable:
            raise StreamWriteError("cannot track a stream that is already closed")
        with self._lock:
            connection_id = self._id_factory()
            while connection_id in self._connections:
                connection_id = self._id_factory()
            connection = Connection(
                id=connection_id,
                stream=stream,
                created_at=self._clock(),
                attributes=dict(attributes or {}),
                signal=signal,
            )
            self._connections[connection_id] = connection
        stream.on_close(lambda: self._remove(connection_id, reason="stream_closed", end_stream=False))
        self._observability.on_connection_open(connection_id, attributes=connection.attributes)
        if announce:
            frame = (greeting or connected_event)(connection_id, timestamp=connection.created_at)
            self._write(connection, frame)
        if signal is not None and not connection.closed:

            def listener() -> None:
                self._remove(connection_id, reason="aborted", end_stream=True, destroy=True)

            connection.abort_listener = listener
            signal.add_listener(listener)
        return connection_id

    def _write(self, connection: Connection, frame: str | bytes) -> bool:
        try:
            return connection.stream.write(frame)
        except StreamWriteError:
            self._remove(connection.id, reason="write_failed", end_stream=False)
            return False

    def send_frame(self, connection_id: str, frame: str | bytes) -> bool:
        """Write a pre-framed record to one connection."""

        connection = self.get(connection_id)
        if connection is None or connection.closed:
            return False
        return self._write(connection, frame)

    def send(self, connection_id: str, event: str | None, payload: str) -> bool:
        return self.send_frame(connection_id, format_event(payload, event))

    def broadcast(
        self,
        event: str | None,
        payload: str,
        filter: ConnectionFilter | None = None,
    ) -> int:
        """Send one SSE event to every live (optionally filtered) connection.

        Returns the number of connections that accepted the frame.
        """

        return self.broadcast_frame(format_event(payload, event), filter, event=event)

    def broadcast_frame(
        self,
        frame: str | bytes,
        filter: ConnectionFilter | None = None,
        *,
        event: str | None = None,
    ) -> int:
        with self._lock:
            snapshot = tuple(self._connections.values())
        delivered = 0
        pruned = 0
        for connection in snapshot:
            if connection.closed:
                continue
            if connection.stream.destroyed:
                self._remove(connection.id, reason="stream_destroyed", end_stream=False)
                pruned += 1
                continue
            if filter is not None and not filter(connection):
                continue
            if self._write(connection, frame):
                delivered += 1
            elif connection.closed:
                pruned += 1
        self._observability.on_broadcast(event, delivered=delivered, pruned=pruned)
        return delivered

    def heartbeat(self) -> int:
        """Write a keep-alive comment to every connection."""

        return self.broadcast_frame(HEARTBEAT, event=None)

    async def run_heartbeat(self, interval: float) -> None:
        """Emit heartbeats every ``interval`` seconds until cancelled."""

        while True:
            await asyncio.sleep(interval)
            self.heartbeat()

    def close(self, connection_id: str, *, reason: str = "closed") -> bool:
        """Stop tracking a connection and end its stream. Idempotent."""

        return self._remove(connection_id, reason=reason, end_stream=True)

    def close_all(self, *, reason: str = "shutdown") -> int:
        closed = 0
        for connection_id in self.ids():
            if self.close(connection_id, reason=reason):
                closed += 1
        return closed

    def _remove(self, connection_id: str, *, reason: str, end_stream: bool, destroy: bool = False) -> bool:
        with self._lock:
            connection = self._connections.pop(connection_id, None)
            if connection is None or connection.closed:
                return False
            connection.closed = True
        if connection.signal is not None and connection.abort_listener is not None:
            connection.signal.remove_listener(connection.abort_listener)
        if end_stream and not connection.stream.destroyed:
            if destroy:
                connection.stream.destroy()
            else:
                connection.stream.end()
        self._observability.on_connection_close(connection_id, reason=reason)
        logger.debug("Connection %s removed (%s)", connection_id, reason)
        return True

    def snapshot(self) -> tuple[dict[str, Any], ...]:
        """Describe open connections without exposing their streams."""

        with self._lock:
            connections = tuple(self._connections.values())
        return tuple(
            {
                "id": connection.id,
                "created_at": connection.created_at,
                "attributes": dict(connection.attributes),
                "buffered": connection.stream.buffered,
                "dropped": connection.stream.dropped,
            }
            for connection in connections
        )


__all__ = ["Connection", "ConnectionFilter", "ConnectionManager"]
