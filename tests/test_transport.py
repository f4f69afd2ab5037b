# diqube client
# File: tests/test_transport.py
# Version: v2

"""ReconnectingWebSocket against an in-memory connector."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, List, Tuple

import pytest

from diqube_client.config import ConnectionConfig
from diqube_client.transports.websocket import EventKind, ReconnectingWebSocket, SocketState

from conftest import FakeConnection, FakeConnector, settle


def _events(ws: ReconnectingWebSocket) -> List[Tuple[str, Any]]:
    events: List[Tuple[str, Any]] = []
    for kind in EventKind:
        ws.on(kind, lambda data, kind=kind: events.append((kind.value, data)))
    return events


async def _shutdown(ws: ReconnectingWebSocket) -> None:
    ws.close()
    await ws.wait_closed()
    await settle()


def _config(**kwargs: Any) -> ConnectionConfig:
    kwargs.setdefault("reconnect_interval_ms", 10)
    return ConnectionConfig(url="ws://diqube.test/socket", **kwargs)


@pytest.mark.asyncio
async def test_connects_immediately_unless_lazy() -> None:
    connector = FakeConnector()
    ws = ReconnectingWebSocket(_config(protocols=["diqube"]), connector)
    assert ws.state is SocketState.CONNECTING
    events = _events(ws)
    await settle()

    assert ws.ready()
    assert connector.calls == [("ws://diqube.test/socket", {"subprotocols": ["diqube"]})]
    assert events == [("open", None)]
    await _shutdown(ws)


@pytest.mark.asyncio
async def test_lazy_socket_waits_for_open() -> None:
    connector = FakeConnector()
    ws = ReconnectingWebSocket(_config(lazy=True), connector)
    await settle()
    assert connector.calls == []
    assert ws.state is SocketState.CLOSED

    ws.open()
    ws.open()  # no-op while connecting
    await settle()
    assert ws.ready()
    assert len(connector.calls) == 1
    await _shutdown(ws)


@pytest.mark.asyncio
async def test_queued_messages_are_flushed_in_order_before_open_event() -> None:
    connector = FakeConnector()
    ws = ReconnectingWebSocket(_config(lazy=True, enqueue=True), connector)
    ws.on(EventKind.OPEN, lambda _: ws.send({"n": "after-open"}))

    for n in range(3):
        ws.send({"n": n})
    assert ws.queued_messages == 3

    ws.open()
    await settle()

    sent = [json.loads(s) for s in connector.connections[0].sent]
    assert sent == [{"n": 0}, {"n": 1}, {"n": 2}, {"n": "after-open"}]
    assert ws.queued_messages == 0
    await _shutdown(ws)


@pytest.mark.asyncio
async def test_messages_are_dropped_while_closed_without_enqueue() -> None:
    connector = FakeConnector()
    ws = ReconnectingWebSocket(_config(lazy=True, enqueue=False), connector)
    ws.send({"n": 1})
    assert ws.queued_messages == 0

    ws.open()
    await settle()
    ws.send({"n": 2})
    await settle()

    assert [json.loads(s) for s in connector.connections[0].sent] == [{"n": 2}]
    await _shutdown(ws)


@pytest.mark.asyncio
async def test_frames_are_json_decoded_with_raw_fallback() -> None:
    connector = FakeConnector()
    ws = ReconnectingWebSocket(_config(), connector)
    received: List[Any] = []
    ws.on(EventKind.MESSAGE, received.append)
    await settle()

    conn = connector.connections[0]
    conn.feed('{"requestId": "1", "status": "done"}')
    conn.feed("keep-alive")
    await settle()

    assert received == [{"requestId": "1", "status": "done"}, "keep-alive"]
    await _shutdown(ws)


@pytest.mark.asyncio
async def test_failing_handler_does_not_break_dispatch() -> None:
    connector = FakeConnector()
    ws = ReconnectingWebSocket(_config(), connector)
    received: List[Any] = []

    def broken(_: Any) -> None:
        raise ValueError("boom")

    ws.on(EventKind.MESSAGE, broken)
    ws.on(EventKind.MESSAGE, received.append)
    await settle()

    connector.connections[0].feed('"hello"')
    await settle()
    assert received == ["hello"]
    assert ws.ready()
    await _shutdown(ws)


@pytest.mark.asyncio
async def test_reconnects_after_unexpected_close_and_flushes_queue() -> None:
    connector = FakeConnector()
    ws = ReconnectingWebSocket(_config(enqueue=True), connector)
    events = _events(ws)
    await settle()

    connector.connections[0].drop()
    await settle()
    assert ws.state is SocketState.CLOSED
    assert ("close", None) in events

    ws.send({"n": "while-down"})
    assert ws.queued_messages == 1

    await asyncio.sleep(0.05)
    await settle()

    assert len(connector.connections) == 2
    assert ws.ready()
    assert [json.loads(s) for s in connector.connections[1].sent] == [{"n": "while-down"}]
    assert [e for e, _ in events].count("open") == 2
    await _shutdown(ws)


@pytest.mark.asyncio
async def test_no_reconnect_when_disabled() -> None:
    connector = FakeConnector()
    ws = ReconnectingWebSocket(_config(reconnect=False), connector)
    await settle()

    connector.connections[0].drop()
    await asyncio.sleep(0.05)

    assert len(connector.connections) == 1
    assert ws.state is SocketState.CLOSED


@pytest.mark.asyncio
async def test_close_on_purpose_does_not_reconnect() -> None:
    connector = FakeConnector()
    ws = ReconnectingWebSocket(_config(), connector)
    events = _events(ws)
    await settle()

    await _shutdown(ws)
    await asyncio.sleep(0.05)

    assert connector.connections[0].closed
    assert len(connector.connections) == 1
    assert ws.state is SocketState.CLOSED
    assert events[-1] == ("close", None)


@pytest.mark.asyncio
async def test_connect_failure_reports_error_and_retries() -> None:
    connector = FakeConnector(failures=1)
    ws = ReconnectingWebSocket(_config(), connector)
    events = _events(ws)
    await settle()

    assert events[0][0] == "error"
    assert isinstance(events[0][1], OSError)
    assert ws.state is SocketState.CLOSED

    await asyncio.sleep(0.05)
    await settle()
    assert ws.ready()
    assert len(connector.calls) == 2
    await _shutdown(ws)


class StalledConnection(FakeConnection):
    """A connection whose sends never complete."""

    def __init__(self) -> None:
        super().__init__()
        self.release = asyncio.Event()

    async def send(self, data: str) -> None:
        await self.release.wait()
        await super().send(data)


@pytest.mark.asyncio
async def test_message_in_flight_is_resent_after_reconnect() -> None:
    connector = FakeConnector(kinds=[StalledConnection])
    ws = ReconnectingWebSocket(_config(enqueue=True), connector)
    await settle()

    ws.send({"n": 1})
    ws.send({"n": 2})
    await settle()
    assert connector.connections[0].sent == []

    connector.connections[0].drop()
    await settle()
    assert ws.state is SocketState.CLOSED
    assert ws.queued_messages == 2

    await asyncio.sleep(0.05)
    await settle()

    assert len(connector.connections) == 2
    assert [json.loads(s) for s in connector.connections[1].sent] == [{"n": 1}, {"n": 2}]
    await _shutdown(ws)


@pytest.mark.asyncio
async def test_unencodable_message_is_skipped(caplog) -> None:
    connector = FakeConnector()
    ws = ReconnectingWebSocket(_config(), connector)
    await settle()

    with caplog.at_level(logging.WARNING, logger="diqube_client.transports.websocket"):
        ws.send({"bad": object()})
        ws.send({"n": 2})
        await settle()

    assert [json.loads(s) for s in connector.connections[0].sent] == [{"n": 2}]
    assert "Cannot encode message as JSON" in caplog.text
    assert ws.ready()
    await _shutdown(ws)
