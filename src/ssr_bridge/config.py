"""Bridge configuration objects."""

from __future__ import annotations

from msgspec import Struct

from .observability import ObservabilityConfig


class BridgeConfig(Struct, frozen=True):
    """Typed configuration for an :class:`~ssr_bridge.bridge.SSRBridge` instance."""

    debug: bool = False
    schemes: tuple[str, ...] = ("http", "sse")
    stream_path: str = "/stream"
    builtin_stream_route: bool = True
    stream_buffer_size: int = 256
    heartbeat_interval: float | None = None
    max_request_body_bytes: int | None = 1_048_576
    observability: ObservabilityConfig = ObservabilityConfig()

    def __post_init__(self) -> None:
        if self.stream_buffer_size < 1:
            raise ValueError("stream_buffer_size must be positive")
        if self.heartbeat_interval is not None and self.heartbeat_interval <= 0:
            raise ValueError("heartbeat_interval must be positive")
        if not self.stream_path.startswith("/"):
            raise ValueError("stream_path must start with '/'")
