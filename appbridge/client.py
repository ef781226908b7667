"""WebSocket client for one application instance running the MCP bridge plugin.

Each client owns a single connection. Requests are correlated with responses
by a per-connection id, so several commands may be in flight at once and
their responses may arrive in any order. Frames without an id are events and
are fanned out to subscribers.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from appbridge.config import DEFAULT_CONNECT_TIMEOUT
from appbridge.errors import (
    CommandTimeoutError,
    EndpointConnectionError,
    HandshakeError,
    ProtocolError,
    RemoteCommandError,
)
from appbridge.protocol import EndpointKey, Event, Request, Response, decode_frame

logger = logging.getLogger(__name__)

ANY_EVENT = "*"

MAX_FRAME_SIZE = 10 * 1024 * 1024  # screenshots can exceed 1MB
PING_INTERVAL = 30
PING_TIMEOUT = 120  # the app may be busy rendering

DEFAULT_COMMAND_TIMEOUT = 5.0
WAIT_MARGIN = 5.0
COMMAND_TIMEOUTS = {
    "capture_native_screenshot": 15.0,
}

HANDSHAKE_COMMAND = "invoke_tauri"
HANDSHAKE_ARGS = {"command": "plugin:mcp-bridge|get_backend_state"}

EventHandler = Callable[[Event], Any]
CloseListener = Callable[["EndpointClient"], Any]

_CLOSED = object()


def default_timeout(command: str, args: dict[str, Any] | None = None) -> float:
    """Seconds to wait for ``command`` when the caller gives no timeout.

    Scripts that wait on UI state carry their own ``timeout`` in
    milliseconds; the request deadline has to outlive it.
    """
    wait_ms = (args or {}).get("timeout")
    if isinstance(wait_ms, (int, float)) and not isinstance(wait_ms, bool) and wait_ms > 0:
        return wait_ms / 1000 + WAIT_MARGIN
    return COMMAND_TIMEOUTS.get(command, DEFAULT_COMMAND_TIMEOUT)


def identifier_from_state(state: Any) -> str | None:
    """Pull the app identifier out of a get_backend_state result."""
    if not isinstance(state, dict):
        return None
    app = state.get("app")
    if isinstance(app, dict) and app.get("identifier"):
        return str(app["identifier"])
    if state.get("identifier"):
        return str(state["identifier"])
    return None


@dataclass(eq=False)
class PendingRequest:
    id: str
    command: str
    issued_at: float
    deadline: float
    future: asyncio.Future[Any]


class EndpointClient:
    """Correlated request/response channel to one ``host:port``."""

    def __init__(
        self,
        host: str,
        port: int,
        *,
        connect_timeout: float = DEFAULT_CONNECT_TIMEOUT,
    ) -> None:
        self.key = EndpointKey.of(host, port)
        self.connect_timeout = connect_timeout
        self._ws = None
        self._next_id = 0
        self._pending: dict[str, PendingRequest] = {}
        self._handlers: dict[str, list[EventHandler]] = {}
        self._close_listeners: list[CloseListener] = []
        self._inbox: asyncio.Queue[Any] | None = None
        self._reader: asyncio.Task[None] | None = None
        self._dispatcher: asyncio.Task[None] | None = None
        self._connecting: asyncio.Task[None] | None = None
        self._handler_tasks: set[asyncio.Task[Any]] = set()
        self._closed = False

    def __repr__(self) -> str:
        state = "connected" if self.connected else "disconnected"
        return f"<EndpointClient {self.key} {state}>"

    @property
    def host(self) -> str:
        return self.key.host

    @property
    def port(self) -> int:
        return self.key.port

    @property
    def url(self) -> str:
        return self.key.url

    @property
    def connected(self) -> bool:
        return self._ws is not None and not self._closed

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    # ── Connection lifecycle ────────────────────────────────────

    async def connect(self) -> None:
        """Open the transport. A no-op when already connected."""
        if self.connected:
            return
        if self._connecting is None:
            self._connecting = asyncio.ensure_future(self._open())
        try:
            await asyncio.shield(self._connecting)
        finally:
            if self._connecting is not None and self._connecting.done():
                self._connecting = None

    async def _open(self) -> None:
        try:
            ws = await websockets.connect(
                self.url,
                open_timeout=self.connect_timeout,
                max_size=MAX_FRAME_SIZE,
                ping_interval=PING_INTERVAL,
                ping_timeout=PING_TIMEOUT,
            )
        except (OSError, asyncio.TimeoutError, WebSocketException) as exc:
            raise EndpointConnectionError(f"Cannot connect to {self.url}: {exc}") from exc

        self._ws = ws
        self._closed = False
        self._inbox = asyncio.Queue()
        self._reader = asyncio.ensure_future(self._read_loop(ws, self._inbox))
        self._dispatcher = asyncio.ensure_future(self._dispatch_loop(self._inbox))
        logger.info("Connected to %s", self.url)

    async def handshake(self, timeout: float | None = None) -> str | None:
        """Ask the app who it is. Returns None for plugins too old to say."""
        try:
            state = await self.execute(
                HANDSHAKE_COMMAND,
                dict(HANDSHAKE_ARGS),
                timeout=timeout if timeout is not None else self.connect_timeout,
            )
        except RemoteCommandError as exc:
            logger.debug("%s did not report an identifier: %s", self.key, exc.remote_message)
            return None
        except (CommandTimeoutError, EndpointConnectionError) as exc:
            raise HandshakeError(f"Handshake with {self.url} failed: {exc}") from exc
        return identifier_from_state(state)

    async def disconnect(self) -> None:
        """Close the transport and fail everything still waiting on it."""
        if self._connecting is not None and not self._connecting.done():
            self._connecting.cancel()
        self._connecting = None
        ws = self._ws
        was_open = self.connected
        self._closed = True
        if ws is not None:
            try:
                await ws.close()
            except (OSError, WebSocketException) as exc:
                logger.debug("Error closing %s: %s", self.url, exc)
        for task in (self._reader, self._dispatcher, *self._handler_tasks):
            if task is not None and not task.done():
                task.cancel()
        self._fail_pending(EndpointConnectionError(f"Disconnected from {self.url}"))
        if was_open:
            logger.info("Disconnected from %s", self.url)
            self._notify_closed()

    def add_close_listener(self, callback: CloseListener) -> None:
        self._close_listeners.append(callback)

    def remove_close_listener(self, callback: CloseListener) -> None:
        if callback in self._close_listeners:
            self._close_listeners.remove(callback)

    def _notify_closed(self) -> None:
        listeners, self._close_listeners = self._close_listeners, []
        for listener in listeners:
            try:
                listener(self)
            except Exception:
                logger.exception("Close listener for %s raised", self.url)

    def _fail_pending(self, error: Exception) -> None:
        pending, self._pending = self._pending, {}
        for request in pending.values():
            if not request.future.done():
                request.future.set_exception(error)

    # ── Commands ────────────────────────────────────────────────

    async def execute(
        self,
        command: str,
        args: dict[str, Any] | None = None,
        timeout: float | None = None,
    ) -> Any:
        """Send ``command`` and wait for its result."""
        if not self.connected:
            raise EndpointConnectionError(f"Not connected to {self.url}")
        if timeout is None:
            timeout = default_timeout(command, args)

        self._next_id += 1
        request = Request(str(self._next_id), command, args or {})
        now = time.monotonic()
        pending = PendingRequest(
            id=request.id,
            command=command,
            issued_at=now,
            deadline=now + timeout,
            future=asyncio.get_running_loop().create_future(),
        )
        self._pending[request.id] = pending
        try:
            try:
                await self._ws.send(request.encode())
            except (ConnectionClosed, OSError) as exc:
                raise EndpointConnectionError(
                    f"Connection to {self.url} lost while sending {command}"
                ) from exc
            try:
                return await asyncio.wait_for(pending.future, timeout)
            except asyncio.TimeoutError:
                raise CommandTimeoutError(
                    f"{command} timed out after {timeout:g}s on {self.url}"
                ) from None
        finally:
            self._pending.pop(request.id, None)

    # ── Events ──────────────────────────────────────────────────

    def on(self, event_type: str, handler: EventHandler) -> None:
        """Subscribe ``handler`` to events of ``event_type`` (``"*"`` for all)."""
        self._handlers.setdefault(event_type, []).append(handler)

    def off(self, event_type: str, handler: EventHandler) -> None:
        handlers = self._handlers.get(event_type)
        if handlers and handler in handlers:
            handlers.remove(handler)
            if not handlers:
                del self._handlers[event_type]

    async def wait_for_event(
        self,
        event_type: str,
        predicate: Callable[[Any], bool] | None = None,
        timeout: float = 60.0,
    ) -> Any:
        """Return the payload of the next matching event.

        Subscribe before triggering whatever produces the event, otherwise an
        early event is missed.
        """
        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()

        def handler(event: Event) -> None:
            if future.done():
                return
            if predicate is None or predicate(event.payload):
                future.set_result(event.payload)

        def on_close(_client: EndpointClient) -> None:
            if not future.done():
                future.set_exception(
                    EndpointConnectionError(f"Connection to {self.url} closed")
                )

        self.on(event_type, handler)
        self.add_close_listener(on_close)
        try:
            return await asyncio.wait_for(future, timeout)
        except asyncio.TimeoutError:
            raise CommandTimeoutError(
                f"No {event_type} event within {timeout:g}s on {self.url}"
            ) from None
        finally:
            self.off(event_type, handler)
            self.remove_close_listener(on_close)

    # ── Inbound frames ──────────────────────────────────────────

    async def _read_loop(self, ws: Any, inbox: asyncio.Queue[Any]) -> None:
        try:
            async for raw in ws:
                inbox.put_nowait(raw)
        except ConnectionClosed as exc:
            logger.warning("Connection to %s closed: %s", self.url, exc)
        finally:
            inbox.put_nowait(_CLOSED)

    async def _dispatch_loop(self, inbox: asyncio.Queue[Any]) -> None:
        while True:
            raw = await inbox.get()
            if raw is _CLOSED:
                break
            try:
                frame = decode_frame(raw)
            except ProtocolError as exc:
                logger.warning("Dropping frame from %s: %s", self.url, exc)
                continue
            if isinstance(frame, Response):
                self._resolve(frame)
            else:
                self._emit(frame)
        self._on_transport_lost()

    def _resolve(self, response: Response) -> None:
        pending = self._pending.pop(response.id, None)
        if pending is None:
            logger.debug("Dropping unmatched response %s from %s", response.id, self.url)
            return
        if pending.future.done():
            return
        if response.ok:
            pending.future.set_result(response.result)
        else:
            pending.future.set_exception(RemoteCommandError(pending.command, response.error))

    def _emit(self, event: Event) -> None:
        """Run handlers in arrival order.

        Coroutine handlers are scheduled as tasks so they can issue commands
        on this client without blocking response dispatch.
        """
        handlers = [*self._handlers.get(event.type, ()), *self._handlers.get(ANY_EVENT, ())]
        if not handlers:
            logger.debug("No subscriber for %s event from %s", event.type, self.url)
        for handler in handlers:
            try:
                result = handler(event)
            except Exception:
                logger.exception("Handler for %s event raised", event.type)
                continue
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                self._handler_tasks.add(task)
                task.add_done_callback(lambda t, kind=event.type: self._handler_done(t, kind))

    def _handler_done(self, task: asyncio.Task[Any], event_type: str) -> None:
        self._handler_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Handler for %s event raised", event_type, exc_info=exc)

    def _on_transport_lost(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._fail_pending(EndpointConnectionError(f"Connection to {self.url} lost"))
        self._notify_closed()

