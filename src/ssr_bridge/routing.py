"""Routing utilities."""

from __future__ import annotations

import inspect
import threading
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Iterable, Sequence

from .exceptions import ConfigurationError, RouteNotFound

if TYPE_CHECKING:
    from .requests import Request

Handler = Callable[..., Awaitable[Any] | Any]

_ROUTE_ATTRIBUTE = "__ssr_bridge_route__"


@dataclass(slots=True, frozen=True)
class RouteSpec:
    path: str
    methods: tuple[str, ...]


@dataclass(slots=True, frozen=True)
class Route:
    method: str
    path: str
    handler: Handler
    accepts_url: bool

    def invoke(self, request: "Request") -> Awaitable[Any] | Any:
        if self.accepts_url:
            return self.handler(request, request.url)
        return self.handler(request)


def _accepts_url(handler: Handler) -> bool:
    try:
        signature = inspect.signature(handler)
    except (TypeError, ValueError):
        return False
    positional = 0
    for parameter in signature.parameters.values():
        if parameter.kind is inspect.Parameter.VAR_POSITIONAL:
            return True
        if parameter.kind in (inspect.Parameter.POSITIONAL_ONLY, inspect.Parameter.POSITIONAL_OR_KEYWORD):
            positional += 1
    return positional >= 2


def normalize_method(method: str) -> str:
    normalized = method.strip().upper()
    if not normalized:
        raise ConfigurationError("HTTP method must not be empty")
    return normalized


def normalize_path(path: str) -> str:
    if not path.startswith("/"):
        raise ConfigurationError(f"Route path must start with '/': {path!r}")
    return path


class RouteRegistry:
    """Flat ``(method, path) -> handler`` table.

    Matching is exact; registering an existing pair replaces its handler.
    """

    def __init__(self) -> None:
        self._routes: dict[tuple[str, str], Route] = {}
        self._lock = threading.Lock()

    def register(self, method: str, path: str, handler: Handler) -> Route:
        if not callable(handler):
            raise ConfigurationError(f"Handler for {method} {path} is not callable")
        route = Route(
            method=normalize_method(method),
            path=normalize_path(path),
            handler=handler,
            accepts_url=_accepts_url(handler),
        )
        with self._lock:
            self._routes[(route.method, route.path)] = route
        return route

    def unregister(self, method: str, path: str) -> bool:
        key = (normalize_method(method), path)
        with self._lock:
            return self._routes.pop(key, None) is not None

    def resolve(self, method: str, path: str) -> Route:
        key = (method.upper(), path)
        with self._lock:
            route = self._routes.get(key)
        if route is None:
            raise RouteNotFound(key[0], path)
        return route

    def routes(self) -> tuple[Route, ...]:
        with self._lock:
            return tuple(self._routes.values())

    def clear(self) -> None:
        with self._lock:
            self._routes.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._routes)

    def __contains__(self, key: object) -> bool:
        if not isinstance(key, tuple) or len(key) != 2:
            return False
        method, path = key
        with self._lock:
            return (str(method).upper(), path) in self._routes

    def include(self, handlers: Iterable[Handler]) -> None:
        for handler in handlers:
            spec: RouteSpec | None = getattr(handler, _ROUTE_ATTRIBUTE, None)
            if spec is None:
                raise ConfigurationError(f"Handler {handler!r} missing @route decorator metadata")
            for method in spec.methods:
                self.register(method, spec.path, handler)


def route(path: str, *, methods: Sequence[str] = ("GET",)) -> Callable[[Handler], Handler]:
    """Attach route metadata for :meth:`RouteRegistry.include`."""

    def decorator(func: Handler) -> Handler:
        spec = RouteSpec(path=path, methods=tuple(dict.fromkeys(m.upper() for m in methods)))
        setattr(func, _ROUTE_ATTRIBUTE, spec)
        return func

    return decorator


def get(path: str) -> Callable[[Handler], Handler]:
    return route(path, methods=["GET"])


def post(path: str) -> Callable[[Handler], Handler]:
    return route(path, methods=["POST"])


__all__ = ["Handler", "Route", "RouteRegistry", "RouteSpec", "get", "normalize_method", "post", "route"]
