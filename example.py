"""Datastar counter served entirely in-process.

``create_app`` wires the routes a webview page would call: ``/`` renders
the page, ``/increment`` and ``/reset`` answer with patch streams and
broadcast the new state to every open ``/updates`` connection, and
``/run-script`` asks the client to execute a snippet.

A real embedding host binds ``bridge.handle`` to its scheme interception.
Running ``python example.py`` instead drives one session through
:class:`~ssr_bridge.testing.InMemoryHost` and prints the frames it receives.
Set ``SSR_BRIDGE_DEBUG=1`` for verbose logging.
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
from dataclasses import dataclass, field

from ssr_bridge import (
    HTMLResponse,
    MergeMode,
    Request,
    Response,
    SSRBridge,
    create_bridge,
    datastar_connected,
    execute_script,
    merge_fragments,
    merge_signals,
)
from ssr_bridge.cancellation import AbortController
from ssr_bridge.testing import InMemoryHost, StreamReader

PAGE = """<!DOCTYPE html>
<html lang="en">
<head>
  <meta charset="UTF-8">
  <title>Datastar in a webview</title>
  <script type="module" src="https://cdn.jsdelivr.net/gh/starfederation/datastar@v1.0.0-beta.11/bundles/datastar.js"></script>
</head>
<body data-signals="{counter: {counter}, time: ''}" data-on-load="@get('/updates')">
  <h1>Counter: <span data-text="$counter">{counter}</span></h1>
  <p>Server time: <span data-text="$time"></span></p>
  <button data-on-click="@post('/increment')">Increment</button>
  <button data-on-click="@post('/reset')">Reset</button>
  <button data-on-click="@post('/run-script')">Run script</button>
  <div id="status-message"></div>
</body>
</html>
"""


@dataclass
class CounterState:
    counter: int = 0
    last_update: float = field(default_factory=time.time)


def _status_fragment(message: str) -> str:
    return f"<p>{message} at {time.strftime('%H:%M:%S')}</p>"


def create_app(bridge: SSRBridge | None = None, *, tick_interval: float = 1.0) -> SSRBridge:
    """Register the counter routes on ``bridge`` (a fresh one by default)."""

    bridge = bridge or create_bridge(debug=os.getenv("SSR_BRIDGE_DEBUG") == "1")
    state = CounterState()

    @bridge.get("/")
    def index(request: Request) -> Response:
        return HTMLResponse(PAGE.replace("{counter}", str(state.counter)))

    def publish(request: Request, message: str) -> Response:
        state.last_update = time.time()
        signals = merge_signals({"counter": state.counter})
        fragment = merge_fragments("#status-message", _status_fragment(message), MergeMode.INNER)
        bridge.broadcast_patch(signals, fragment)
        handle = bridge.open_stream(request, track=False)
        handle.write(signals + fragment)
        handle.stream.end()
        return handle.response

    @bridge.post("/increment")
    def increment(request: Request) -> Response:
        state.counter += 1
        return publish(request, f"Counter was updated to <strong>{state.counter}</strong>")

    @bridge.post("/reset")
    def reset(request: Request) -> Response:
        state.counter = 0
        return publish(request, "Counter was reset")

    @bridge.post("/run-script")
    def run_script(request: Request) -> Response:
        handle = bridge.open_stream(request, track=False)
        handle.write(execute_script('console.log("Script executed from server");'))
        handle.stream.end()
        return handle.response

    @bridge.get("/updates")
    async def updates(request: Request) -> Response:
        handle = bridge.open_stream(request, greeting=datastar_connected)
        handle.write(
            merge_signals(
                {
                    "counter": state.counter,
                    "time": time.strftime("%H:%M:%S"),
                    "connections": bridge.connection_count,
                }
            )
        )

        async def tick() -> None:
            while handle.stream.writable:
                await asyncio.sleep(tick_interval)
                if request.signal.aborted or not handle.stream.writable:
                    return
                handle.write(merge_signals({"time": time.strftime("%H:%M:%S")}))

        task = asyncio.get_running_loop().create_task(tick())
        request.signal.add_listener(task.cancel)
        return handle.response

    return bridge


async def demo() -> None:
    bridge = create_app()
    host = InMemoryHost()
    bridge.register_schemes()
    bridge.register_handlers(host)
    await bridge.startup()
    try:
        controller = AbortController()
        updates = StreamReader(await host.fetch("http://localhost/updates", signal=controller.signal))
        for frame in await updates.frames(2):
            print("updates:", frame.event, frame.data_lines)
        response = await host.fetch("http://localhost/increment", method="POST")
        for frame in await StreamReader(response).read_all():
            print("increment:", frame.event, frame.data_lines)
        for frame in await updates.frames(1):
            print("broadcast:", frame.event, frame.data_lines)
        controller.abort()
        print("open connections after abort:", bridge.connection_count)
    finally:
        await bridge.shutdown()


def main() -> None:
    logging.basicConfig(level=logging.DEBUG if os.getenv("SSR_BRIDGE_DEBUG") == "1" else logging.INFO)
    asyncio.run(demo())


if __name__ == "__main__":
    main()
