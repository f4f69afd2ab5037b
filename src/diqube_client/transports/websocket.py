# diqube client
# File: transports/websocket.py
# Version: v6

"""Websocket that re-connects on connection loss and queues messages meanwhile.

The wrapper object lives for the whole session; the underlying
``websockets`` connection is replaced on every reconnect. Re-connecting is a
fixed-interval poll, not an exponential back-off.

Events (see ``EventKind``) are delivered to handlers registered with ``on``:

- OPEN: connection established, after the outbound queue was flushed.
- MESSAGE: a received frame, JSON-decoded if possible, else the raw frame.
- ERROR: a socket error. Errors alone never close the channel.
- CLOSE: the connection is gone.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections import deque
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from ..config import ConnectionConfig

logger = logging.getLogger(__name__)

Connector = Callable[..., Awaitable[Any]]
EventHandler = Callable[[Any], None]


class EventKind(str, Enum):
    OPEN = "open"
    MESSAGE = "message"
    ERROR = "error"
    CLOSE = "close"


class SocketState(str, Enum):
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSED = "closed"


class ReconnectingWebSocket:
    """One logical connection to ``config.url`` that survives reconnects.

    Must be used from within a running asyncio event loop. ``connector`` is
    the coroutine function creating a connection, ``websockets.connect`` by
    default; tests inject fakes here.
    """

    def __init__(self, config: ConnectionConfig, connector: Optional[Connector] = None) -> None:
        self.config = config
        self._connector: Connector = connector or websockets.connect

        self._handlers: Dict[EventKind, List[EventHandler]] = {}
        self._state = SocketState.CLOSED
        self._ws: Any = None
        self._run_task: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        self._writer_task: Optional[asyncio.Task] = None
        self._outbox: Optional[asyncio.Queue] = None
        # Messages that should be sent as soon as a connection is re-established.
        self._queue: Deque[Any] = deque()
        self._closed_on_purpose = False

        if not self.config.lazy:
            self._do_open()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def on(self, kind: EventKind, handler: EventHandler) -> None:
        """Register ``handler`` for events of the given kind."""
        self._handlers.setdefault(EventKind(kind), []).append(handler)

    def send(self, message: Any) -> None:
        """Send ``message`` as JSON, or queue it while disconnected."""
        if self.ready():
            self._outbox.put_nowait(message)
        elif self.config.enqueue:
            self._queue.append(message)
        else:
            logger.warning("Websocket not connected, dropping message: %s", message)

    def open(self) -> None:
        """Open the connection; a no-op while already open or connecting."""
        if self._state is SocketState.CLOSED:
            self._do_open()

    def close(self) -> None:
        """Close on purpose: no automatic reconnect will follow."""
        self._closed_on_purpose = True
        self._cancel_reconnect()

        if self._ws is not None:
            asyncio.get_running_loop().create_task(self._ws.close())
        elif self._run_task is not None and not self._run_task.done():
            # still connecting
            self._run_task.cancel()

    async def wait_closed(self) -> None:
        """Wait until the current connection attempt / connection has ended."""
        if self._run_task is not None:
            try:
                await self._run_task
            except asyncio.CancelledError:
                pass

    def ready(self) -> bool:
        """True if messages can be sent directly (the socket is open)."""
        return self._state is SocketState.OPEN

    @property
    def state(self) -> SocketState:
        return self._state

    @property
    def queued_messages(self) -> int:
        return len(self._queue)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _fire(self, kind: EventKind, data: Any = None) -> None:
        for handler in list(self._handlers.get(kind, [])):
            try:
                handler(data)
            except Exception:  # a failing handler must not kill the connection
                logger.exception("Websocket %s handler %r failed", kind.value, handler)

    def _do_open(self) -> None:
        self._closed_on_purpose = False
        self._state = SocketState.CONNECTING
        self._run_task = asyncio.get_running_loop().create_task(self._run())

    async def _run(self) -> None:
        kwargs: Dict[str, Any] = {}
        if self.config.protocols is not None:
            kwargs["subprotocols"] = list(self.config.protocols)

        try:
            ws = await self._connector(self.config.url, **kwargs)
        except asyncio.CancelledError:
            self._state = SocketState.CLOSED
            self._fire(EventKind.CLOSE)
            raise
        except (OSError, asyncio.TimeoutError, WebSocketException) as exc:
            logger.warning("Could not connect websocket to %s: %s", self.config.url, exc)
            self._state = SocketState.CLOSED
            self._fire(EventKind.ERROR, exc)
            self._connection_lost()
            return

        if self._closed_on_purpose:
            await ws.close()
            self._state = SocketState.CLOSED
            self._fire(EventKind.CLOSE)
            return

        self._ws = ws
        self._state = SocketState.OPEN
        self._cancel_reconnect()
        logger.info("Websocket connected to %s", self.config.url)

        outbox: asyncio.Queue = asyncio.Queue()
        self._outbox = outbox
        # flush strictly in order, before anybody learns about the new connection
        while self._queue:
            outbox.put_nowait(self._queue.popleft())
        self._writer_task = asyncio.get_running_loop().create_task(self._write_loop(ws, outbox))

        self._fire(EventKind.OPEN)

        try:
            async for frame in ws:
                self._handle_frame(frame)
        except ConnectionClosed as exc:
            logger.debug("Websocket connection closed: %s", exc)
        finally:
            self._state = SocketState.CLOSED
            self._ws = None
            self._writer_task.cancel()
            self._writer_task = None
            self._outbox = None
            if self.config.enqueue:
                while not outbox.empty():
                    self._queue.append(outbox.get_nowait())

        self._connection_lost()

    async def _write_loop(self, ws: Any, outbox: asyncio.Queue) -> None:
        while True:
            message = await outbox.get()
            try:
                frame = json.dumps(message)
            except (TypeError, ValueError) as exc:
                logger.warning("Cannot encode message as JSON, dropping it: %s (%s)", message, exc)
                continue

            try:
                await ws.send(frame)
            except asyncio.CancelledError:
                # connection lost while this message was in flight
                self._requeue(message)
                raise
            except ConnectionClosed:
                self._requeue(message)
                return
            except WebSocketException as exc:
                logger.warning("Websocket error while sending: %s", exc)
                self._fire(EventKind.ERROR, exc)

    def _requeue(self, message: Any) -> None:
        """Put an unsent message in front of the queue for the next connection."""
        if self.config.enqueue:
            self._queue.appendleft(message)
        else:
            logger.warning("Websocket closed while sending, dropping message: %s", message)

    def _handle_frame(self, frame: Any) -> None:
        try:
            message = json.loads(frame)
        except (TypeError, ValueError):
            # e.g. keep-alive frames of proxies
            message = frame
        self._fire(EventKind.MESSAGE, message)

    def _connection_lost(self) -> None:
        if not self._closed_on_purpose:
            logger.warning("Websocket closed unexpectedly!")
            if self.config.reconnect and (
                self._reconnect_task is None or self._reconnect_task.done()
            ):
                self._reconnect_task = asyncio.get_running_loop().create_task(self._reconnect_loop())

        self._fire(EventKind.CLOSE)

    async def _reconnect_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.reconnect_interval)
            if self._state is SocketState.CLOSED and not self._closed_on_purpose:
                self.open()

    def _cancel_reconnect(self) -> None:
        if self._reconnect_task is not None:
            self._reconnect_task.cancel()
            self._reconnect_task = None
