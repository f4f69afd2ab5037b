# diqube client
# File: tests/test_execution.py
# Version: v1

"""Query execution: streaming merge, single flight and cancellation."""

from __future__ import annotations

from typing import List

import pytest

from diqube_client.errors import QueryExecutionError
from diqube_client.models import CANCELLED, Qube, Query, QueryResults

from conftest import settle


def _table(percent: int, rows, names=("count",)):
    return {
        "rows": rows,
        "columnNames": list(names),
        "columnRequests": ["count()"],
        "percentComplete": percent,
    }


@pytest.fixture
def qube() -> Qube:
    return Qube(id="Q1", name="Overview", slice_id="S1", queries=[Query("R1", "Count", "select count()")])


@pytest.fixture
def query(qube: Qube) -> Query:
    return qube.queries[0]


def test_apply_table_is_monotonic() -> None:
    results = QueryResults()
    assert results.apply_table(_table(40, [[1]]))
    assert results.apply_table(_table(40, [[2]]))

    assert not results.apply_table(_table(10, [[99]], names=("other",)))
    assert results.percent_complete == 40
    assert results.rows == [[2]]
    assert results.column_names == ["count"]

    results.exception = "boom"
    assert not results.apply_table(_table(90, [[3]]))
    assert results.rows == [[2]]


@pytest.mark.asyncio
async def test_execution_streams_and_completes(socket, execution, qube, query) -> None:
    seen: List[int] = []
    future = execution.provide_query_results(
        "A1", 3, qube, query, lambda r: seen.append(r.percent_complete)
    )
    await settle()
    frame = socket.last("analysisQuery")
    assert frame["commandData"] == {
        "analysisId": "A1",
        "analysisVersion": 3,
        "qubeId": "Q1",
        "queryId": "R1",
    }
    assert execution.is_running("R1")

    socket.respond(frame, "data", "table", _table(50, [[20]]))
    socket.respond(frame, "data", "table", _table(30, [[10]]))
    socket.respond(frame, "done")

    results = await future
    assert results is query.results
    assert results.rows == [[20]]
    assert results.percent_complete == 100
    assert results.complete
    assert not execution.is_running("R1")
    # initial snapshot, then the one update that was applied
    assert seen == [0, 50]


@pytest.mark.asyncio
async def test_intermediate_callback_is_never_synchronous(execution, qube, query) -> None:
    seen: List[QueryResults] = []
    execution.provide_query_results("A1", 3, qube, query, seen.append)
    assert seen == []
    await settle()
    assert seen == [query.results]


@pytest.mark.asyncio
async def test_single_in_flight_execution(socket, execution, qube, query) -> None:
    first = execution.provide_query_results("A1", 3, qube, query)
    second = execution.provide_query_results("A1", 3, qube, query)

    assert second is first
    assert len(socket.commands("analysisQuery")) == 1


@pytest.mark.asyncio
async def test_existing_results_are_reused(socket, execution, qube, query) -> None:
    query.results = QueryResults(percent_complete=100, rows=[[42]], column_names=["count"])

    results = await execution.provide_query_results("A1", 3, qube, query)
    assert results is query.results
    assert socket.commands("analysisQuery") == []


@pytest.mark.asyncio
async def test_server_exception_fails_the_future(socket, execution, qube, query) -> None:
    future = execution.provide_query_results("A1", 3, qube, query)
    frame = socket.last("analysisQuery")
    socket.respond(frame, "data", "table", _table(20, [[1]]))
    socket.respond(frame, "exception", data={"text": "Unknown column 'x'"})

    with pytest.raises(QueryExecutionError) as excinfo:
        await future
    assert excinfo.value.results is query.results
    assert query.results.exception == "Unknown column 'x'"
    assert query.results.rows == [[1]]
    assert str(excinfo.value) == "Unknown column 'x'"
    assert not execution.is_running("R1")


@pytest.mark.asyncio
async def test_cancel_marks_snapshot_and_fails_future(socket, execution, qube, query) -> None:
    future = execution.provide_query_results("A1", 3, qube, query)
    frame = socket.last("analysisQuery")

    execution.cancel_query_if_running(query)

    assert socket.last() == {"requestId": frame["requestId"], "command": "cancel"}
    assert query.results.exception == CANCELLED
    assert not execution.is_running("R1")
    with pytest.raises(QueryExecutionError):
        await future

    # late updates of the cancelled request are dropped
    socket.respond(frame, "data", "table", _table(80, [[5]]))
    assert query.results.rows is None


@pytest.mark.asyncio
async def test_cancel_is_idempotent(socket, execution, qube, query) -> None:
    execution.cancel_query_if_running(query)
    assert socket.sent == []
    assert query.results is None

    execution.provide_query_results("A1", 3, qube, query)
    execution.cancel_query_if_running(query)
    sent = list(socket.sent)
    execution.cancel_query_if_running(query)

    assert socket.sent == sent
    assert len(socket.commands("cancel")) == 1
    assert query.results.exception == CANCELLED


@pytest.mark.asyncio
async def test_clearing_results_re_executes_and_cancels_old_run(socket, execution, qube, query) -> None:
    old_future = execution.provide_query_results("A1", 3, qube, query)
    old_frame = socket.last("analysisQuery")

    query.results = None
    new_future = execution.provide_query_results("A1", 3, qube, query)
    new_frame = socket.last("analysisQuery")

    assert new_future is not old_future
    assert new_frame["requestId"] != old_frame["requestId"]
    assert socket.commands("cancel") == [{"requestId": old_frame["requestId"], "command": "cancel"}]

    socket.respond(new_frame, "data", "table", _table(100, [[7]]))
    socket.respond(new_frame, "done")
    assert (await new_future).rows == [[7]]
    with pytest.raises(QueryExecutionError):
        await old_future
