"""Server-sent event framing.

Two wire shapes are produced here, both as plain SSE records:

* generic events, ``event: <name>`` followed by one ``data:`` line per payload
  line, terminated by a blank line;
* Datastar patch events (signals, fragments, scripts), where the structure
  lives in ``data: <field> <value>`` lines understood by the Datastar client.

Every function is pure and returns ``str``; streams encode to UTF-8 on write.
"""

from __future__ import annotations

import time
from enum import Enum
from typing import Any, Iterable, Mapping

from .serialization import json_text

HEARTBEAT = ":\n\n"
CONNECTED_EVENT = "connected"


class DatastarEvent(str, Enum):
    """Event names understood by the Datastar client."""

    MERGE_SIGNALS = "datastar-merge-signals"
    MERGE_FRAGMENTS = "datastar-merge-fragments"
    REMOVE_FRAGMENTS = "datastar-remove-fragments"
    REMOVE_SIGNALS = "datastar-remove-signals"
    EXECUTE_SCRIPT = "datastar-execute-script"

    def __str__(self) -> str:  # pragma: no cover - trivial
        return self.value


class MergeMode(str, Enum):
    """How a fragment patch is applied to its target."""

    MORPH = "morph"
    INNER = "inner"
    OUTER = "outer"
    PREPEND = "prepend"
    APPEND = "append"
    BEFORE = "before"
    AFTER = "after"
    UPSERT_ATTRIBUTES = "upsertAttributes"

    def __str__(self) -> str:  # pragma: no cover - trivial
        return self.value


DEFAULT_MERGE_MODE = MergeMode.MORPH
DEFAULT_SETTLE_DURATION = 300
DEFAULT_SCRIPT_ATTRIBUTES = "type module"


def _payload_lines(payload: str) -> list[str]:
    lines = payload.split("\n")
    return [line[:-1] if line.endswith("\r") else line for line in lines]


def _single_line(value: str, *, field: str) -> str:
    if "\n" in value or "\r" in value:
        raise ValueError(f"SSE {field} must not contain line breaks")
    return value


def format_event(
    payload: str,
    event: str | None = None,
    *,
    event_id: str | None = None,
    retry: int | None = None,
) -> str:
    """Frame ``payload`` as one SSE record.

    A multi-line payload becomes several ``data:`` lines; an empty payload still
    yields a single empty ``data:`` line so the client dispatches the event.
    """

    lines: list[str] = []
    if event_id is not None:
        lines.append(f"id: {_single_line(event_id, field='id')}")
    if event:
        lines.append(f"event: {_single_line(event, field='event name')}")
    for line in _payload_lines(payload):
        lines.append(f"data: {line}")
    if retry is not None:
        lines.append(f"retry: {int(retry)}")
    return "\n".join(lines) + "\n\n"


def format_comment(text: str = "") -> str:
    """Frame a comment record; clients ignore these."""

    if not text:
        return HEARTBEAT
    return "".join(f": {line}\n" for line in _payload_lines(text)) + "\n"


def heartbeat() -> str:
    return HEARTBEAT


def connected_event(connection_id: str, *, timestamp: float | None = None) -> str:
    """The greeting written once to a freshly opened connection."""

    opened_at = int((timestamp if timestamp is not None else time.time()) * 1000)
    return format_event(
        json_text({"connectionId": connection_id, "timestamp": opened_at}),
        CONNECTED_EVENT,
    )


# ---------------------------------------------------------------------- datastar
def _datastar_frame(
    event: DatastarEvent,
    fields: Iterable[tuple[str, str]],
    *,
    event_id: str | None = None,
    retry: int | None = None,
) -> str:
    lines: list[str] = []
    if event_id is not None:
        lines.append(f"id: {_single_line(event_id, field='id')}")
    lines.append(f"event: {event.value}")
    if retry is not None:
        lines.append(f"retry: {int(retry)}")
    for name, value in fields:
        lines.append(f"data: {name} {value}")
    return "\n".join(lines) + "\n\n"


def _multiline_field(name: str, value: str) -> list[tuple[str, str]]:
    return [(name, line) for line in _payload_lines(value)]


def merge_signals(
    signals: Mapping[str, Any],
    *,
    only_if_missing: bool = False,
    event_id: str | None = None,
    retry: int | None = None,
) -> str:
    """Merge ``signals`` into the client's reactive state."""

    fields: list[tuple[str, str]] = []
    if only_if_missing:
        fields.append(("onlyIfMissing", "true"))
    fields.append(("signals", json_text(dict(signals))))
    return _datastar_frame(DatastarEvent.MERGE_SIGNALS, fields, event_id=event_id, retry=retry)


def remove_signals(
    paths: Iterable[str],
    *,
    event_id: str | None = None,
    retry: int | None = None,
) -> str:
    fields = [("paths", _single_line(path, field="signal path")) for path in paths]
    if not fields:
        raise ValueError("remove_signals requires at least one path")
    return _datastar_frame(DatastarEvent.REMOVE_SIGNALS, fields, event_id=event_id, retry=retry)


def merge_fragments(
    selector: str | None,
    fragments: str,
    merge_mode: MergeMode | str = DEFAULT_MERGE_MODE,
    *,
    settle_duration: int = DEFAULT_SETTLE_DURATION,
    use_view_transition: bool = False,
    event_id: str | None = None,
    retry: int | None = None,
) -> str:
    """Patch markup into the page.

    Without a selector the client targets elements by the fragment's own ids.
    Default values are left off the wire.
    """

    mode = MergeMode(merge_mode)
    fields: list[tuple[str, str]] = []
    if selector:
        fields.append(("selector", _single_line(selector, field="selector")))
    if mode is not DEFAULT_MERGE_MODE:
        fields.append(("mergeMode", mode.value))
    if settle_duration != DEFAULT_SETTLE_DURATION:
        fields.append(("settleDuration", str(int(settle_duration))))
    if use_view_transition:
        fields.append(("useViewTransition", "true"))
    fields.extend(_multiline_field("fragments", fragments))
    return _datastar_frame(DatastarEvent.MERGE_FRAGMENTS, fields, event_id=event_id, retry=retry)


def remove_fragments(
    selector: str,
    *,
    settle_duration: int = DEFAULT_SETTLE_DURATION,
    use_view_transition: bool = False,
    event_id: str | None = None,
    retry: int | None = None,
) -> str:
    fields: list[tuple[str, str]] = [("selector", _single_line(selector, field="selector"))]
    if settle_duration != DEFAULT_SETTLE_DURATION:
        fields.append(("settleDuration", str(int(settle_duration))))
    if use_view_transition:
        fields.append(("useViewTransition", "true"))
    return _datastar_frame(DatastarEvent.REMOVE_FRAGMENTS, fields, event_id=event_id, retry=retry)


def execute_script(
    script: str,
    *,
    auto_remove: bool = True,
    attributes: Iterable[str] | None = None,
    event_id: str | None = None,
    retry: int | None = None,
) -> str:
    """Run ``script`` on the client.

    Leading and trailing blank lines are trimmed; each remaining source line is
    sent as its own ``data: script`` line.
    """

    fields: list[tuple[str, str]] = []
    if not auto_remove:
        fields.append(("autoRemove", "false"))
    for attribute in attributes or ():
        attribute = _single_line(attribute, field="script attribute")
        if attribute != DEFAULT_SCRIPT_ATTRIBUTES:
            fields.append(("attributes", attribute))
    fields.extend(_multiline_field("script", script.strip("\n")))
    return _datastar_frame(DatastarEvent.EXECUTE_SCRIPT, fields, event_id=event_id, retry=retry)


def datastar_connected(connection_id: str, *, timestamp: float | None = None) -> str:
    """Greeting for Datastar pages: exposes the connection id as signals."""

    opened_at = int((timestamp if timestamp is not None else time.time()) * 1000)
    return merge_signals({"connection": {"id": connection_id, "connectedAt": opened_at}})


__all__ = [
    "CONNECTED_EVENT",
    "DEFAULT_MERGE_MODE",
    "DEFAULT_SETTLE_DURATION",
    "DatastarEvent",
    "HEARTBEAT",
    "MergeMode",
    "connected_event",
    "datastar_connected",
    "execute_script",
    "format_comment",
    "format_event",
    "heartbeat",
    "merge_fragments",
    "merge_signals",
    "remove_fragments",
    "remove_signals",
]
