"""Turning a resolved request into a Response."""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import AsyncIterable
from dataclasses import dataclass
from typing import Any, Union

from .exceptions import HandlerError, HTTPError, ParseError, RouteNotFound
from .http import Status
from .observability import Observability
from .requests import Request
from .responses import (
    EventStreamResponse,
    HTMLResponse,
    JSONResponse,
    PlainTextResponse,
    Response,
    error_response,
    exception_to_response,
    not_found_response,
)
from .routing import Route, RouteRegistry
from .streams import ResponseStream

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class Buffered:
    response: Response


@dataclass(slots=True, frozen=True)
class Streaming:
    response: Response
    stream: AsyncIterable[bytes]


@dataclass(slots=True, frozen=True)
class Failed:
    error: HandlerError
    status: int

    @property
    def cause(self) -> BaseException | None:
        return self.error.__cause__


Outcome = Union[Buffered, Streaming, Failed]


def coerce_result(result: Any) -> Buffered | Streaming:
    """Classify whatever a handler returned."""

    if isinstance(result, Response):
        if result.stream is not None:
            return Streaming(response=result, stream=result.stream)
        return Buffered(result)
    if isinstance(result, ResponseStream):
        response = EventStreamResponse(result)
        return Streaming(response=response, stream=result)
    if result is None:
        return Buffered(Response(status=int(Status.NO_CONTENT)))
    if isinstance(result, str):
        if result.lstrip().startswith("<"):
            return Buffered(HTMLResponse(result))
        return Buffered(PlainTextResponse(result))
    if isinstance(result, (bytes, bytearray, memoryview)):
        return Buffered(
            Response(headers=(("content-type", "application/octet-stream"),), body=bytes(result))
        )
    return Buffered(JSONResponse(result))


def _status_for(error: BaseException) -> int:
    if isinstance(error, HTTPError):
        return error.status
    if isinstance(error, ParseError):
        return int(Status.BAD_REQUEST)
    return int(Status.INTERNAL_SERVER_ERROR)


def _message_for(error: BaseException) -> str:
    return str(error) or type(error).__name__


class Dispatcher:
    """Resolve, invoke and normalize.

    Handler failures never escape ``dispatch``: they become error responses so
    one broken handler cannot take down other in-flight requests.
    """

    def __init__(
        self,
        registry: RouteRegistry,
        *,
        observability: Observability | None = None,
        debug: bool = False,
    ) -> None:
        self.registry = registry
        self.observability = observability or Observability()
        self.debug = debug

    async def dispatch(self, request: Request) -> Response:
        try:
            route = self.registry.resolve(request.method, request.path)
        except RouteNotFound:
            if self.debug:
                logger.debug("No route for %s %s", request.method, request.path)
            return not_found_response()
        observation = self.observability.on_request_start(request)
        outcome = await self.invoke(route, request)
        if isinstance(outcome, Failed):
            self.observability.on_request_error(observation, outcome.cause or outcome.error, status_code=outcome.status)
            request.release_streams()
            return self.render(outcome)
        if isinstance(outcome, Streaming):
            self._link_abort(request, outcome.stream)
        response = self.render(outcome)
        if self.debug:
            logger.debug("%s %s -> %s", request.method, request.path, response.status)
        return self.observability.on_request_success(observation, response)

    async def invoke(self, route: Route, request: Request) -> Outcome:
        try:
            result = route.invoke(request)
            if inspect.isawaitable(result):
                result = await result
            return coerce_result(result)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            status = _status_for(exc)
            error = HandlerError(request.method, request.path, _message_for(exc))
            error.__cause__ = exc
            if status >= int(Status.INTERNAL_SERVER_ERROR):
                logger.error(
                    "Handler for %s %s failed: %s",
                    request.method,
                    request.path,
                    error.message,
                    exc_info=exc,
                )
            return Failed(error=error, status=status)

    @staticmethod
    def render(outcome: Outcome) -> Response:
        if isinstance(outcome, Buffered):
            return outcome.response
        if isinstance(outcome, Streaming):
            return outcome.response
        cause = outcome.cause
        if isinstance(cause, HTTPError):
            return exception_to_response(cause)
        return error_response(outcome.status, outcome.error.message)

    @staticmethod
    def _link_abort(request: Request, stream: AsyncIterable[bytes]) -> None:
        if isinstance(stream, ResponseStream):
            signal = request.signal
            signal.add_listener(stream.destroy)
            stream.on_close(lambda: signal.remove_listener(stream.destroy))


__all__ = ["Buffered", "Dispatcher", "Failed", "Outcome", "Streaming", "coerce_result"]
