# diqube client
# File: remote.py
# Version: v7
"""Remote command execution over the single session websocket.

Every command gets a fresh request id. Results stream back as envelopes
``{requestId, status, dataType?, data?}`` and are routed to the handler that
was registered for that id:

- ``data``: ``DataEvent``; if the handler returns True the request is done.
- ``done``: ``DoneEvent``, then the request is cleaned up.
- ``exception``: ``ExceptionEvent`` with the server's text, then cleanup.
- ``authenticationException``: cleanup and forced logout, no event.

Envelopes for unknown request ids are logged and dropped; a late ``done`` is
expected after a client-side cancel and dropped silently.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Union
import logging

from .auth import LoginState
from .config import ConnectionConfig
from .transports.websocket import EventKind, ReconnectingWebSocket

logger = logging.getLogger(__name__)

STATUS_DATA = "data"
STATUS_DONE = "done"
STATUS_EXCEPTION = "exception"
STATUS_AUTHENTICATION_EXCEPTION = "authenticationException"

COMMAND_CANCEL = "cancel"

# Keys starting with this are client-local annotations, never sent.
LOCAL_FIELD_PREFIX = "$"

# Request ids start at the smallest signed 64 bit integer.
FIRST_REQUEST_ID = -(2**63)


@dataclass(frozen=True)
class DataEvent:
    data_type: Optional[str]
    data: Any


@dataclass(frozen=True)
class ExceptionEvent:
    message: str


@dataclass(frozen=True)
class DoneEvent:
    pass


RemoteEvent = Union[DataEvent, ExceptionEvent, DoneEvent]

# Returning True from a DataEvent means "fully processed, forget the request".
ResultHandler = Callable[[RemoteEvent], Optional[bool]]

SocketFactory = Callable[[ConnectionConfig], ReconnectingWebSocket]


def strip_local_fields(data: Any) -> Any:
    """Deep copy of ``data`` without keys starting with ``$``, at any depth."""
    if isinstance(data, dict):
        return {
            k: strip_local_fields(v)
            for k, v in data.items()
            if not str(k).startswith(LOCAL_FIELD_PREFIX)
        }
    if isinstance(data, (list, tuple)):
        return [strip_local_fields(v) for v in data]
    return data


class RemoteService:
    """Sends commands to the server and demultiplexes their results.

    The socket is created on first use, inside the running event loop.
    """

    def __init__(
        self,
        connection: ConnectionConfig,
        login_state: LoginState,
        socket_factory: Optional[SocketFactory] = None,
    ) -> None:
        self._connection = connection
        self._login_state = login_state
        self._socket_factory: SocketFactory = socket_factory or ReconnectingWebSocket
        self._socket: Optional[ReconnectingWebSocket] = None
        self._request_registry: Dict[str, ResultHandler] = {}
        self._next_request_id = FIRST_REQUEST_ID

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def execute(self, command: str, command_data: Any, handler: ResultHandler) -> str:
        """Send ``command`` and route its results to ``handler``.

        Returns the request id, which can be passed to ``cancel``.
        """
        request_id = str(self._next_request_id)
        self._next_request_id += 1

        socket = self._get_socket()
        if not socket.ready():
            # lazy sockets connect on first use; a no-op while connecting
            socket.open()
        self._request_registry[request_id] = handler

        clean_data = strip_local_fields(command_data)
        frame: Dict[str, Any] = {
            "requestId": request_id,
            "command": command,
            "commandData": clean_data,
        }
        if self._login_state.ticket:
            frame["ticket"] = self._login_state.ticket

        logger.debug("Sending request %s: %s: %s", request_id, command, clean_data)
        socket.send(frame)
        return request_id

    def cancel(self, request_id: str) -> None:
        """Ask the server to stop ``request_id`` and forget it right away."""
        logger.info("Cancelling request %s", request_id)
        self._get_socket().send({"requestId": request_id, "command": COMMAND_CANCEL})
        self._cleanup_request(request_id)

    def is_pending(self, request_id: str) -> bool:
        return request_id in self._request_registry

    @property
    def pending_requests(self) -> int:
        return len(self._request_registry)

    @property
    def connected(self) -> bool:
        return self._socket is not None and self._socket.ready()

    def close(self) -> None:
        if self._socket is not None:
            self._socket.close()

    async def wait_closed(self) -> None:
        if self._socket is not None:
            await self._socket.wait_closed()

    # ------------------------------------------------------------------
    # Socket
    # ------------------------------------------------------------------

    def _get_socket(self) -> ReconnectingWebSocket:
        if self._socket is not None:
            return self._socket

        self._socket = self._socket_factory(self._connection)
        self._socket.on(EventKind.MESSAGE, self._socket_message)
        return self._socket

    def _socket_message(self, envelope: Any) -> None:
        if not isinstance(envelope, dict):
            # non-JSON frames, e.g. keep-alives
            logger.debug("Ignoring non-envelope frame: %r", envelope)
            return

        request_id = envelope.get("requestId")
        status = envelope.get("status")
        data = envelope.get("data")

        logger.debug("Received message on websocket: %s", envelope)

        handler = self._request_registry.get(request_id)
        if handler is None:
            if status != STATUS_DONE:
                logger.warning(
                    "Received data from websocket, but requestId unknown: %s", envelope
                )
            return

        if status == STATUS_DATA:
            if handler(DataEvent(envelope.get("dataType"), data)):
                self._cleanup_request(request_id)
        elif status == STATUS_DONE:
            self._cleanup_request(request_id)
            handler(DoneEvent())
        elif status == STATUS_EXCEPTION:
            logger.warning("Exception on request %s: %s", request_id, data)
            self._cleanup_request(request_id)
            text = data.get("text") if isinstance(data, dict) else data
            handler(ExceptionEvent(str(text)))
        elif status == STATUS_AUTHENTICATION_EXCEPTION:
            logger.warning("Server did not accept our ticket. Executing automatic logout.")
            self._cleanup_request(request_id)
            self._login_state.logout_successful()
        else:
            logger.warning("Unknown status %r on request %s", status, request_id)

    def _cleanup_request(self, request_id: str) -> None:
        logger.debug("Cleaning up request %s", request_id)
        self._request_registry.pop(request_id, None)
