"""Observability integration for the bridge."""

from __future__ import annotations

import json
import logging
import secrets
import time
from contextlib import ExitStack
from typing import TYPE_CHECKING, Any, Callable, Mapping

import msgspec

if TYPE_CHECKING:
    from .requests import Request
    from .responses import Response


class ObservabilityConfig(msgspec.Struct, frozen=True):
    """Tracing, error tracking and structured logging configuration."""

    enabled: bool = True
    logger_name: str = "ssr_bridge.observability"
    opentelemetry_enabled: bool = True
    opentelemetry_tracer: str = "ssr_bridge"
    span_name: str = "ssr_bridge.dispatch"
    sentry_enabled: bool = True
    sentry_capture_exceptions: bool = True
    request_id_header: str = "x-request-id"


class _ObservationContext:
    __slots__ = ("log_fields", "request_id", "span", "stack", "start")

    def __init__(
        self,
        *,
        start: float,
        stack: ExitStack | None,
        span: Any | None,
        request_id: str,
        log_fields: Mapping[str, Any] | None = None,
    ) -> None:
        self.start = start
        self.stack = stack
        self.span = span
        self.request_id = request_id
        self.log_fields = dict(log_fields or {})

    def elapsed_ms(self) -> float:
        return round((time.perf_counter() - self.start) * 1000, 3)

    def close(self, error: BaseException | None = None) -> None:
        if self.stack is None:
            return
        stack, self.stack = self.stack, None
        if error is None:
            stack.__exit__(None, None, None)
        else:
            stack.__exit__(type(error), error, error.__traceback__)


def _default_id_generator() -> Callable[[int], str]:
    def generate(size: int) -> str:
        if size <= 0:
            raise ValueError("size must be positive")
        return secrets.token_hex(size)

    return generate


class Observability:
    """Coordinate tracing, error tracking and logging for dispatches and pushes."""

    def __init__(
        self,
        config: ObservabilityConfig | None = None,
        *,
        id_generator: Callable[[int], str] | None = None,
    ) -> None:
        self.config = config or ObservabilityConfig()
        self._tracer = None
        self._server_span_kind = None
        self._status_cls = None
        self._status_error = None
        self._sentry_hub = None
        self._logger = logging.getLogger(self.config.logger_name)
        self._id_generator = id_generator or _default_id_generator()
        if self.config.enabled:
            self._prepare_opentelemetry()
            self._prepare_sentry()
        self._enabled = self.config.enabled

    @property
    def enabled(self) -> bool:
        return self._enabled

    def _prepare_opentelemetry(self) -> None:
        if not self.config.opentelemetry_enabled:
            return
        try:
            from opentelemetry import trace  # type: ignore[import-not-found]
        except ImportError:  # pragma: no cover - optional dependency
            return
        self._tracer = trace.get_tracer(self.config.opentelemetry_tracer)
        self._server_span_kind = getattr(getattr(trace, "SpanKind", None), "SERVER", None)
        status_cls = getattr(trace, "Status", None)
        status_code = getattr(trace, "StatusCode", None)
        if status_cls is not None and status_code is not None:
            self._status_cls = status_cls
            self._status_error = getattr(status_code, "ERROR", None)

    def _prepare_sentry(self) -> None:
        if not self.config.sentry_enabled:
            return
        try:
            import sentry_sdk  # type: ignore[import-not-found]
        except ImportError:  # pragma: no cover - optional dependency
            return
        self._sentry_hub = sentry_sdk.Hub.current

    def _log(self, event: str, fields: Mapping[str, Any] | None = None, *, level: int = logging.INFO) -> None:
        if not self._enabled:
            return
        payload: dict[str, Any] = {"event": event}
        if fields:
            for key, value in fields.items():
                if value is not None:
                    payload[key] = value
        payload["event"] = event
        self._logger.log(level, json.dumps(payload, separators=(",", ":"), default=str))

    # ------------------------------------------------------------------ requests
    def on_request_start(self, request: "Request") -> _ObservationContext | None:
        if not self._enabled:
            return None
        request_id = self._id_generator(6)
        fields = {"method": request.method, "path": request.path, "scheme": request.scheme}
        stack: ExitStack | None = None
        span = None
        if self._tracer is not None:
            stack = ExitStack()
            span = stack.enter_context(
                self._tracer.start_as_current_span(self.config.span_name, kind=self._server_span_kind)
            )
            span.set_attribute("http.request.method", request.method)
            span.set_attribute("url.path", request.path)
            span.set_attribute("ssr_bridge.request_id", request_id)
        context = _ObservationContext(
            start=time.perf_counter(),
            stack=stack,
            span=span,
            request_id=request_id,
            log_fields=fields,
        )
        self._log("request.start", {**fields, "request_id": request_id}, level=logging.DEBUG)
        return context

    def on_request_success(self, context: _ObservationContext | None, response: "Response") -> "Response":
        if context is None:
            return response
        if context.span is not None:
            context.span.set_attribute("http.response.status_code", response.status)
        context.close()
        self._log(
            "request.success",
            {
                **context.log_fields,
                "request_id": context.request_id,
                "status": response.status,
                "streaming": response.stream is not None,
                "duration_ms": context.elapsed_ms(),
            },
        )
        header = self.config.request_id_header
        if not header or any(name.lower() == header for name, _ in response.headers):
            return response
        return response.with_headers(((header, context.request_id),))

    def on_request_error(
        self,
        context: _ObservationContext | None,
        error: BaseException,
        *,
        status_code: int,
    ) -> None:
        if context is None:
            return
        if context.span is not None:
            context.span.set_attribute("http.response.status_code", status_code)
            if hasattr(context.span, "record_exception"):
                context.span.record_exception(error)
            if self._status_cls is not None and self._status_error is not None:
                context.span.set_status(self._status_cls(self._status_error, description=str(error)))
        if self._sentry_hub is not None and self.config.sentry_capture_exceptions:
            self._sentry_hub.capture_exception(error)
        context.close(error)
        self._log(
            "request.error",
            {
                **context.log_fields,
                "request_id": context.request_id,
                "status": status_code,
                "error_type": type(error).__name__,
                "error": str(error),
                "duration_ms": context.elapsed_ms(),
            },
            level=logging.WARNING,
        )

    # ------------------------------------------------------------------ push channel
    def on_connection_open(self, connection_id: str, *, attributes: Mapping[str, str] | None = None) -> None:
        self._log("connection.open", {"connection_id": connection_id, **dict(attributes or {})})

    def on_connection_close(self, connection_id: str, *, reason: str) -> None:
        self._log("connection.close", {"connection_id": connection_id, "reason": reason})

    def on_broadcast(self, event: str | None, *, delivered: int, pruned: int) -> None:
        self._log(
            "broadcast",
            {"event_name": event, "delivered": delivered, "pruned": pruned},
            level=logging.DEBUG,
        )


__all__ = ["Observability", "ObservabilityConfig"]
