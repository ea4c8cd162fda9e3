"""Bridge exception types."""

from __future__ import annotations

from typing import Any

from .http import Status, ensure_status, reason_phrase
from .serialization import json_encode


class BridgeError(Exception):
    """Base error type."""


class HTTPError(BridgeError):
    """Structured HTTP error a handler raises to choose its own status."""

    def __init__(self, status: int | Status, detail: Any) -> None:
        status_code = ensure_status(status)
        super().__init__(status_code, detail)
        self.status = status_code
        self.detail = detail
        self.reason = reason_phrase(status_code)

    def to_response_body(self) -> bytes:
        return json_encode({"error": {"status": self.status, "reason": self.reason, "detail": self.detail}})


class RouteNotFound(BridgeError, LookupError):
    """No handler is registered for a method and path."""

    def __init__(self, method: str, path: str) -> None:
        super().__init__(f"No route matches {method} {path}")
        self.method = method
        self.path = path


class HandlerError(BridgeError):
    """A route handler raised; the original exception is the ``__cause__``."""

    def __init__(self, method: str, path: str, message: str) -> None:
        super().__init__(message)
        self.method = method
        self.path = path
        self.message = message


class ParseError(BridgeError, ValueError):
    """A request body could not be decoded in the requested shape."""


class StreamWriteError(BridgeError):
    """A write targeted a stream that is already ended or destroyed."""


class ConfigurationError(BridgeError):
    """The bridge was wired up incorrectly during setup."""


__all__ = [
    "BridgeError",
    "ConfigurationError",
    "HTTPError",
    "HandlerError",
    "ParseError",
    "RouteNotFound",
    "StreamWriteError",
]
