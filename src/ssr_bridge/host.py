"""Interfaces the embedding host implements or hands to the bridge."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Awaitable, Callable, Mapping, Protocol

from .cancellation import AbortSignal
from .requests import BodySource
from .responses import Response


@dataclass(slots=True, frozen=True)
class HostRequest:
    """Raw fields of one intercepted request, exactly as the host saw them."""

    method: str
    url: str
    headers: Mapping[str, str] = field(default_factory=dict)
    body: BodySource = None
    signal: AbortSignal | None = None


HostCallback = Callable[[HostRequest], Awaitable[Response]]


class SchemeHost(Protocol):
    """The host's interception mechanism for virtual URL schemes."""

    def handle(self, scheme: str, callback: HostCallback) -> None: ...

    def unhandle(self, scheme: str) -> None: ...


__all__ = ["HostCallback", "HostRequest", "SchemeHost"]
