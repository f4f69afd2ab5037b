# diqube client
# File: tests/conftest.py
# Version: v2

"""Shared fixtures: a fake socket standing in for the reconnecting websocket.

The fake records every outbound frame and lets tests deliver server envelopes
synchronously, so no test ever opens a real connection.
"""

from __future__ import annotations

import asyncio
from typing import Any, Callable, Dict, List, Optional, Tuple

import pytest

from diqube_client.analysis import AnalysisService
from diqube_client.auth import LoginState
from diqube_client.config import ConnectionConfig
from diqube_client.execution import ExecutionService
from diqube_client.remote import RemoteService
from diqube_client.transports.websocket import EventKind


class FakeSocket:
    def __init__(self) -> None:
        self.config: Optional[ConnectionConfig] = None
        self.sent: List[Dict[str, Any]] = []
        self.handlers: Dict[EventKind, List[Callable[[Any], None]]] = {}
        self.is_ready = True
        self.opened = 0
        self.closed = False

    def bind(self, config: ConnectionConfig) -> "FakeSocket":
        self.config = config
        return self

    # ReconnectingWebSocket surface used by RemoteService

    def on(self, kind: EventKind, handler: Callable[[Any], None]) -> None:
        self.handlers.setdefault(EventKind(kind), []).append(handler)

    def send(self, message: Any) -> None:
        self.sent.append(message)

    def open(self) -> None:
        self.opened += 1
        self.is_ready = True

    def ready(self) -> bool:
        return self.is_ready

    def close(self) -> None:
        self.closed = True

    async def wait_closed(self) -> None:
        return None

    # test helpers

    def deliver(self, envelope: Any) -> None:
        for handler in list(self.handlers.get(EventKind.MESSAGE, [])):
            handler(envelope)

    def commands(self, command: Optional[str] = None) -> List[Dict[str, Any]]:
        return [f for f in self.sent if command is None or f.get("command") == command]

    def last(self, command: Optional[str] = None) -> Dict[str, Any]:
        frames = self.commands(command)
        assert frames, f"no {command or 'command'} frame was sent"
        return frames[-1]

    def respond(
        self,
        frame: Dict[str, Any],
        status: str,
        data_type: Optional[str] = None,
        data: Any = None,
    ) -> None:
        envelope: Dict[str, Any] = {"requestId": frame["requestId"], "status": status}
        if data_type is not None:
            envelope["dataType"] = data_type
        if data is not None:
            envelope["data"] = data
        self.deliver(envelope)

    def answer(self, frame: Dict[str, Any], data_type: str, data: Any) -> None:
        """Reply with one data envelope followed by done."""
        self.respond(frame, "data", data_type, data)
        self.respond(frame, "done")


_CLOSE = object()


class FakeConnection:
    """Just enough of a websockets client connection."""

    def __init__(self) -> None:
        self.sent: List[str] = []
        self.closed = False
        self._incoming: asyncio.Queue = asyncio.Queue()

    async def send(self, data: str) -> None:
        self.sent.append(data)

    async def close(self) -> None:
        self.closed = True
        self._incoming.put_nowait(_CLOSE)

    def feed(self, frame: Any) -> None:
        self._incoming.put_nowait(frame)

    def drop(self) -> None:
        """Connection lost from the server side."""
        self._incoming.put_nowait(_CLOSE)

    def __aiter__(self) -> "FakeConnection":
        return self

    async def __anext__(self) -> Any:
        frame = await self._incoming.get()
        if frame is _CLOSE:
            raise StopAsyncIteration
        return frame


class FakeConnector:
    """Stands in for ``websockets.connect``; hands out one connection per call.

    ``kinds`` lists connection classes to use for the first calls, in order.
    """

    def __init__(self, failures: int = 0, kinds: Optional[List[type]] = None) -> None:
        self.failures = failures
        self.kinds = list(kinds or [])
        self.calls: List[Tuple[str, Dict[str, Any]]] = []
        self.connections: List[FakeConnection] = []

    async def __call__(self, url: str, **kwargs: Any) -> FakeConnection:
        self.calls.append((url, kwargs))
        if self.failures:
            self.failures -= 1
            raise OSError("connection refused")
        kind = self.kinds.pop(0) if self.kinds else FakeConnection
        conn = kind()
        self.connections.append(conn)
        return conn


async def settle(rounds: int = 5) -> None:
    """Let scheduled callbacks and tasks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


def analysis_json(
    version: int = 3,
    disjunction_values: Optional[List[str]] = None,
    diql: str = "select count()",
) -> Dict[str, Any]:
    """Analysis A1 with slice S1 and qube Q1 (using S1) holding query R1."""
    return {
        "id": "A1",
        "name": "Sales",
        "table": "sales",
        "version": version,
        "owner": "alice",
        "slices": [
            {
                "id": "S1",
                "name": "California",
                "manualConjunction": None,
                "sliceDisjunctions": [
                    {"fieldName": "state", "disjunctionValues": disjunction_values or ["CA"]}
                ],
            }
        ],
        "qubes": [
            {
                "id": "Q1",
                "name": "Overview",
                "sliceId": "S1",
                "queries": [
                    {"id": "R1", "name": "Count", "diql": diql, "displayType": "table"}
                ],
            }
        ],
    }


@pytest.fixture
def socket() -> FakeSocket:
    return FakeSocket()


@pytest.fixture
def login() -> LoginState:
    return LoginState(ticket="ticket-1", username="alice")


@pytest.fixture
def connection() -> ConnectionConfig:
    return ConnectionConfig(url="ws://diqube.test/socket", enqueue=True)


@pytest.fixture
def remote(socket: FakeSocket, login: LoginState, connection: ConnectionConfig) -> RemoteService:
    return RemoteService(connection, login, socket_factory=socket.bind)


@pytest.fixture
def execution(remote: RemoteService) -> ExecutionService:
    return ExecutionService(remote)


@pytest.fixture
def service(remote: RemoteService, execution: ExecutionService) -> AnalysisService:
    return AnalysisService(remote, execution)
