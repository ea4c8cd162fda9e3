"""In-process request bridge and push channel for embedded UI surfaces."""

from .asgi import ASGIAdapter
from .bridge import SSRBridge, StreamHandle, create_bridge
from .cancellation import AbortController, AbortSignal
from .config import BridgeConfig
from .connections import Connection, ConnectionManager
from .dispatch import Buffered, Dispatcher, Failed, Streaming
from .exceptions import (
    BridgeError,
    ConfigurationError,
    HandlerError,
    HTTPError,
    ParseError,
    RouteNotFound,
    StreamWriteError,
)
from .framing import (
    DatastarEvent,
    MergeMode,
    connected_event,
    datastar_connected,
    execute_script,
    format_comment,
    format_event,
    heartbeat,
    merge_fragments,
    merge_signals,
    remove_fragments,
    remove_signals,
)
from .host import HostRequest, SchemeHost
from .observability import Observability, ObservabilityConfig
from .requests import Request, adapt_request
from .responses import EventStreamResponse, HTMLResponse, JSONResponse, PlainTextResponse, Response
from .routing import Route, RouteRegistry, get, post, route
from .streams import ResponseStream

__all__ = [
    "ASGIAdapter",
    "AbortController",
    "AbortSignal",
    "BridgeConfig",
    "BridgeError",
    "Buffered",
    "ConfigurationError",
    "Connection",
    "ConnectionManager",
    "DatastarEvent",
    "Dispatcher",
    "EventStreamResponse",
    "Failed",
    "HTMLResponse",
    "HTTPError",
    "HandlerError",
    "HostRequest",
    "JSONResponse",
    "MergeMode",
    "Observability",
    "ObservabilityConfig",
    "ParseError",
    "PlainTextResponse",
    "Request",
    "ResponseStream",
    "Response",
    "Route",
    "RouteNotFound",
    "RouteRegistry",
    "SSRBridge",
    "SchemeHost",
    "StreamHandle",
    "StreamWriteError",
    "Streaming",
    "adapt_request",
    "connected_event",
    "create_bridge",
    "datastar_connected",
    "execute_script",
    "format_comment",
    "format_event",
    "get",
    "heartbeat",
    "merge_fragments",
    "merge_signals",
    "post",
    "remove_fragments",
    "remove_signals",
    "route",
]
