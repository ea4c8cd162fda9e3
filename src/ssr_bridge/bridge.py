"""The bridge service object.

An :class:`SSRBridge` owns the route registry, the dispatcher and the
connection manager for one embedded UI surface. Nothing here is a process-wide
singleton; collaborators receive the bridge they should talk to.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Mapping

import msgspec
from msgspec import structs

from .config import BridgeConfig
from .connections import ConnectionFilter, ConnectionManager, Greeting
from .dispatch import Dispatcher
from .exceptions import ConfigurationError
from .framing import MergeMode, execute_script, merge_fragments, merge_signals
from .host import HostRequest, SchemeHost
from .observability import Observability
from .requests import Request, adapt_request
from .responses import EventStreamResponse, Response
from .routing import Handler, Route, RouteRegistry
from .streams import ResponseStream

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class StreamHandle:
    """What a streaming handler gets back from :meth:`SSRBridge.open_stream`."""

    stream: ResponseStream
    response: Response
    connection_id: str | None = None

    def write(self, frame: str | bytes) -> bool:
        return self.stream.write(frame)


class SSRBridge:
    """Serve an embedded UI surface from in-process handlers."""

    def __init__(
        self,
        config: BridgeConfig | None = None,
        *,
        observability: Observability | None = None,
        connection_id_factory: Callable[[], str] | None = None,
    ) -> None:
        self.config = config or BridgeConfig()
        self.observability = observability or Observability(self.config.observability)
        self.registry = RouteRegistry()
        self.connections = ConnectionManager(
            observability=self.observability,
            id_factory=connection_id_factory,
        )
        self.dispatcher = Dispatcher(self.registry, observability=self.observability, debug=self.config.debug)
        self._lock = threading.Lock()
        self._schemes: tuple[str, ...] | None = None
        self._host: SchemeHost | None = None
        self._handled: list[str] = []
        self._heartbeat_task: asyncio.Task[None] | None = None
        self._closed = False
        if self.config.builtin_stream_route:
            self.registry.register("GET", self.config.stream_path, self._stream_endpoint)

    @classmethod
    def from_config(cls, config: BridgeConfig | Mapping[str, Any]) -> "SSRBridge":
        if isinstance(config, BridgeConfig):
            return cls(config=config)
        return cls(config=msgspec.convert(config, type=BridgeConfig))

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def active(self) -> bool:
        """Whether scheme handlers are currently bound on a host."""

        return self._host is not None

    @property
    def schemes(self) -> tuple[str, ...]:
        return self._schemes if self._schemes is not None else self.config.schemes

    # ------------------------------------------------------------------ host wiring
    def register_schemes(self, *schemes: str) -> tuple[str, ...]:
        """Declare the virtual schemes this bridge serves.

        Must happen once, before :meth:`register_handlers`.
        """

        with self._lock:
            self._ensure_open()
            if self._schemes is not None:
                raise ConfigurationError("Schemes are already registered")
            if self._host is not None:
                raise ConfigurationError("Schemes must be registered before handlers are active")
            chosen = tuple(dict.fromkeys(scheme.strip().lower() for scheme in (schemes or self.config.schemes)))
            if not chosen or any(not scheme for scheme in chosen):
                raise ConfigurationError("At least one non-empty scheme is required")
            self._schemes = chosen
        return chosen

    def register_handlers(self, host: SchemeHost) -> None:
        """Bind :meth:`handle` on ``host`` for every registered scheme."""

        if self._schemes is None:
            self.register_schemes()
        with self._lock:
            self._ensure_open()
            if self._host is not None:
                raise ConfigurationError("Scheme handlers are already active")
            self._host = host
        for scheme in self.schemes:
            host.handle(scheme, self.handle)
            self._handled.append(scheme)
        if self.config.debug:
            logger.debug("Handling schemes: %s", ", ".join(self._handled))

    # ------------------------------------------------------------------ routing
    def register_route(self, path: str, handler: Handler, method: str = "GET") -> Route:
        """Bind ``handler`` to ``method path``; a later registration replaces it."""

        self._ensure_open()
        route = self.registry.register(method, path, handler)
        if self.config.debug:
            logger.debug("Registered route %s %s", route.method, route.path)
        return route

    def route(self, path: str, *, methods: Iterable[str] = ("GET",)) -> Callable[[Handler], Handler]:
        def decorator(func: Handler) -> Handler:
            for method in methods:
                self.register_route(path, func, method)
            return func

        return decorator

    def get(self, path: str) -> Callable[[Handler], Handler]:
        return self.route(path, methods=("GET",))

    def post(self, path: str) -> Callable[[Handler], Handler]:
        return self.route(path, methods=("POST",))

    def put(self, path: str) -> Callable[[Handler], Handler]:
        return self.route(path, methods=("PUT",))

    def delete(self, path: str) -> Callable[[Handler], Handler]:
        return self.route(path, methods=("DELETE",))

    def include(self, *handlers: Handler) -> None:
        self._ensure_open()
        self.registry.include(handlers)

    # ------------------------------------------------------------------ request handling
    async def handle(self, host_request: HostRequest) -> Response:
        """Entry point the host calls for every intercepted request."""

        request = adapt_request(
            host_request.method,
            host_request.url,
            host_request.headers,
            host_request.body,
            host_request.signal,
            max_body_bytes=self.config.max_request_body_bytes,
        )
        return await self.dispatch(request)

    async def dispatch(self, request: Request) -> Response:
        return await self.dispatcher.dispatch(request)

    # ------------------------------------------------------------------ streaming
    def create_stream(self) -> ResponseStream:
        return ResponseStream(max_buffered=self.config.stream_buffer_size)

    def open_stream(
        self,
        request: Request,
        *,
        track: bool = True,
        attributes: Mapping[str, str] | None = None,
        announce: bool = True,
        greeting: Greeting | None = None,
        headers: Iterable[tuple[str, str]] | None = None,
    ) -> StreamHandle:
        """Create an event stream for ``request``.

        With ``track`` the stream is registered as a push connection, so
        broadcasts reach it, and it is closed when the request is aborted.
        """

        stream = self.create_stream()
        request.attach_stream(stream)
        connection_id = None
        if track:
            connection_id = self.connections.open(
                stream,
                signal=request.signal,
                attributes=attributes,
                announce=announce,
                greeting=greeting,
            )
        response = EventStreamResponse(stream, headers=headers)
        return StreamHandle(stream=stream, response=response, connection_id=connection_id)

    def _stream_endpoint(self, request: Request) -> Response:
        attributes = {key: values[-1] for key, values in request.query_params.items() if values}
        handle = self.open_stream(request, attributes=attributes)
        if self.config.debug:
            logger.debug("Opened push connection %s (%d open)", handle.connection_id, len(self.connections))
        return handle.response

    # ------------------------------------------------------------------ push
    @property
    def connection_count(self) -> int:
        return len(self.connections)

    def broadcast(self, event: str | None, payload: str, filter: ConnectionFilter | None = None) -> int:
        """Push one SSE event to every open connection; returns deliveries."""

        delivered = self.connections.broadcast(event, payload, filter)
        if self.config.debug:
            logger.debug("Broadcast %r to %d connection(s)", event, delivered)
        return delivered

    def broadcast_patch(self, *frames: str, filter: ConnectionFilter | None = None) -> int:
        """Push pre-built frames as one atomic write per connection."""

        if not frames:
            return 0
        return self.connections.broadcast_frame("".join(frames), filter)

    def broadcast_signals(
        self,
        signals: Mapping[str, Any],
        *,
        only_if_missing: bool = False,
        filter: ConnectionFilter | None = None,
    ) -> int:
        return self.broadcast_patch(merge_signals(signals, only_if_missing=only_if_missing), filter=filter)

    def broadcast_fragments(
        self,
        selector: str | None,
        fragments: str,
        merge_mode: MergeMode | str = MergeMode.MORPH,
        *,
        filter: ConnectionFilter | None = None,
    ) -> int:
        return self.broadcast_patch(merge_fragments(selector, fragments, merge_mode), filter=filter)

    def broadcast_script(
        self,
        script: str,
        *,
        auto_remove: bool = True,
        filter: ConnectionFilter | None = None,
    ) -> int:
        return self.broadcast_patch(execute_script(script, auto_remove=auto_remove), filter=filter)

    # ------------------------------------------------------------------ lifecycle
    async def startup(self) -> None:
        interval = self.config.heartbeat_interval
        if interval is not None and self._heartbeat_task is None:
            loop = asyncio.get_running_loop()
            self._heartbeat_task = loop.create_task(self.connections.run_heartbeat(interval))

    def cleanup(self) -> None:
        """Close every connection and release every scheme and route.

        Safe with no open connections; calls after the first do nothing.
        """

        with self._lock:
            if self._closed:
                return
            self._closed = True
            host, self._host = self._host, None
            handled, self._handled = self._handled, []
        if self._heartbeat_task is not None:
            self._heartbeat_task.cancel()
        closed = self.connections.close_all()
        if host is not None:
            for scheme in handled:
                try:
                    host.unhandle(scheme)
                except Exception:
                    logger.exception("Failed to release scheme %r", scheme)
        self.registry.clear()
        logger.info("Bridge cleaned up: closed %d connection(s), released %d scheme(s)", closed, len(handled))

    async def shutdown(self) -> None:
        task = self._heartbeat_task
        self.cleanup()
        if task is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await task
            self._heartbeat_task = None

    async def __aenter__(self) -> "SSRBridge":
        await self.startup()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.shutdown()

    def _ensure_open(self) -> None:
        if self._closed:
            raise ConfigurationError("Bridge has been cleaned up")


def create_bridge(config: BridgeConfig | None = None, **overrides: Any) -> SSRBridge:
    """Build a bridge, optionally overriding individual config fields."""

    base = config or BridgeConfig()
    if overrides:
        base = structs.replace(base, **overrides)
    return SSRBridge(base)


__all__ = ["SSRBridge", "StreamHandle", "create_bridge"]
