# diqube client
# File: tools/tasks.py
# Version: v4
#
# NOTE: This module is the single place where client operations are exposed
# as MCP tools. The stdio transport simply calls `register_tools(server)`.
# All tools share one lazily created DiqubeClient session.

from __future__ import annotations

import asyncio
import dataclasses
import time
from typing import Any, Dict, List, Optional

from ..analysis import AnalysisService
from ..client import DiqubeClient
from ..errors import DiqubeError, NoAnalysisLoadedError, QueryExecutionError
from ..models import Analysis, Qube, Query, QueryResults, SliceDisjunction

# Upper bound for rows returned by diqube_run_query.
MAX_ROWS_CAP = 10000


# ---------------------------------------------------------------------------
# Internal helpers (session, lookups, result shaping)
# ---------------------------------------------------------------------------


_CLIENT: DiqubeClient | None = None


def _get_client() -> DiqubeClient:
    """Lazily create the session shared by all tools.

    Tests replace this with a no-arg lambda returning a client wired to a
    fake socket.
    """
    global _CLIENT

    if _CLIENT is None:
        _CLIENT = DiqubeClient.from_env()
    return _CLIENT


def _result(summary: str, data: Any, **meta: Any) -> Dict[str, Any]:
    return {"summary": summary, "data": data, "meta": meta}


def _cap_int(value: int, cap: int, min_value: int = 1) -> tuple[int, bool]:
    """Clamp an integer to [min_value, cap]. Returns (effective, cap_applied)."""
    try:
        v = int(value)
    except (TypeError, ValueError):
        v = min_value

    if v < min_value:
        return min_value, True

    if cap > 0 and v > cap:
        return cap, True

    return v, False


def _analysis_service() -> AnalysisService:
    return _get_client().analysis


def _loaded() -> Analysis:
    analysis = _analysis_service().loaded_analysis
    if analysis is None:
        raise NoAnalysisLoadedError()
    return analysis


def _find_qube(analysis: Analysis, qube_id: str) -> Qube:
    qube = analysis.find_qube(qube_id)
    if qube is None:
        raise DiqubeError(f"Qube {qube_id} does not exist in analysis {analysis.id}")
    return qube


def _find_query(qube: Qube, query_id: str) -> Query:
    query = qube.find_query(query_id)
    if query is None:
        raise DiqubeError(f"Query {query_id} does not exist in qube {qube.id}")
    return query


def _disjunctions(values: Optional[Dict[str, List[str]]]) -> List[SliceDisjunction]:
    """``{"field": ["a", "b"]}`` -> slice disjunctions, in the given field order."""
    return [
        SliceDisjunction(field_name=name, disjunction_values=[str(v) for v in vals])
        for name, vals in (values or {}).items()
    ]


def _results_data(results: QueryResults, max_rows: int) -> Dict[str, Any]:
    rows = list(results.rows or [])
    return {
        "column_names": results.column_names or [],
        "column_requests": results.column_requests or [],
        "rows": rows[:max_rows],
        "percent_complete": results.percent_complete,
        "exception": results.exception,
        "truncated": len(rows) > max_rows,
    }


def _outline(analysis: Analysis) -> Dict[str, Any]:
    """Compact view of the loaded analysis, including result state per query."""
    return {
        "id": analysis.id,
        "name": analysis.name,
        "table": analysis.table,
        "version": analysis.version,
        "owner": analysis.owner,
        "slices": [s.to_json() for s in analysis.slices],
        "qubes": [
            {
                "id": qube.id,
                "name": qube.name,
                "slice_id": qube.slice_id,
                "queries": [
                    {
                        "id": q.id,
                        "name": q.name,
                        "diql": q.diql,
                        "display_type": q.display_type,
                        "percent_complete": q.results.percent_complete if q.results else None,
                        "exception": q.results.exception if q.results else None,
                    }
                    for q in qube.queries
                ],
            }
            for qube in analysis.qubes
        ],
    }


# ---------------------------------------------------------------------------
# Core tools
# ---------------------------------------------------------------------------


async def connection_status() -> Dict[str, Any]:
    client = _get_client()
    service = client.analysis
    loaded = service.loaded_analysis

    data = {
        "url": client.config.connection.url,
        "connected": client.connected,
        "pending_requests": client.remote.pending_requests,
        "logged_in": client.login.is_ticket_available(),
        "username": client.login.username,
        "loaded_analysis": loaded.id if loaded else None,
        "loaded_version": loaded.version if loaded else None,
        "newest_version": service.newest_version_of_analysis,
    }
    state = "connected" if data["connected"] else "not connected"
    return _result(f"Websocket {state} to {data['url']}", data)


async def list_tables() -> Dict[str, Any]:
    tables = await _analysis_service().list_all_tables()
    return _result(f"{len(tables)} tables available", {"tables": tables})


async def load_analysis(analysis_id: str, version: Optional[int] = None) -> Dict[str, Any]:
    started = time.time()
    service = _analysis_service()
    analysis = await service.load_analysis(analysis_id, version)
    return _result(
        f"Loaded analysis {analysis.name!r} ({analysis.id}) version {analysis.version}",
        _outline(analysis),
        newest_version=service.newest_version_of_analysis,
        elapsed_ms=int((time.time() - started) * 1000),
    )


async def describe_analysis() -> Dict[str, Any]:
    analysis = _loaded()
    return _result(
        f"Analysis {analysis.id} version {analysis.version}: "
        f"{len(analysis.slices)} slices, {len(analysis.qubes)} qubes",
        _outline(analysis),
        newest_version=_analysis_service().newest_version_of_analysis,
    )


async def create_analysis(name: str, table: str) -> Dict[str, Any]:
    analysis = await _analysis_service().create_analysis(name, table)
    return _result(f"Created and loaded analysis {analysis.id} on {table}", _outline(analysis))


async def clone_analysis() -> Dict[str, Any]:
    source = _loaded()
    clone = await _analysis_service().clone_and_load_current_analysis()
    return _result(
        f"Cloned analysis {source.id} version {source.version} into {clone.id}",
        _outline(clone),
        source_id=source.id,
        source_version=source.version,
    )


# ---------------------------------------------------------------------------
# Slices
# ---------------------------------------------------------------------------


async def add_slice(
    name: str,
    manual_conjunction: Optional[str] = None,
    disjunctions: Optional[Dict[str, List[str]]] = None,
) -> Dict[str, Any]:
    slice_ = await _analysis_service().add_slice(
        name, manual_conjunction, _disjunctions(disjunctions)
    )
    return _result(f"Added slice {slice_.id}", slice_.to_json(), version=_loaded().version)


async def update_slice(
    slice_id: str,
    name: Optional[str] = None,
    manual_conjunction: Optional[str] = None,
    disjunctions: Optional[Dict[str, List[str]]] = None,
) -> Dict[str, Any]:
    current = _loaded().find_slice(slice_id)
    if current is None:
        raise DiqubeError(f"Slice {slice_id} does not exist in the loaded analysis")

    changes: Dict[str, Any] = {}
    if name is not None:
        changes["name"] = name
    if manual_conjunction is not None:
        changes["manual_conjunction"] = manual_conjunction
    if disjunctions is not None:
        changes["slice_disjunctions"] = _disjunctions(disjunctions)

    slice_ = await _analysis_service().update_slice(dataclasses.replace(current, **changes))
    return _result(f"Updated slice {slice_.id}", slice_.to_json(), version=_loaded().version)


async def remove_slice(slice_id: str) -> Dict[str, Any]:
    await _analysis_service().remove_slice(slice_id)
    return _result(f"Removed slice {slice_id}", None, version=_loaded().version)


# ---------------------------------------------------------------------------
# Qubes
# ---------------------------------------------------------------------------


async def add_qube(name: str, slice_id: str) -> Dict[str, Any]:
    qube = await _analysis_service().add_qube(name, slice_id)
    return _result(f"Added qube {qube.id}", qube.to_json(), version=_loaded().version)


async def update_qube(
    qube_id: str, name: Optional[str] = None, slice_id: Optional[str] = None
) -> Dict[str, Any]:
    current = _find_qube(_loaded(), qube_id)
    changes: Dict[str, Any] = {}
    if name is not None:
        changes["name"] = name
    if slice_id is not None:
        changes["slice_id"] = slice_id

    qube = await _analysis_service().update_qube(dataclasses.replace(current, **changes))
    return _result(f"Updated qube {qube.id}", qube.to_json(), version=_loaded().version)


async def remove_qube(qube_id: str) -> Dict[str, Any]:
    await _analysis_service().remove_qube(qube_id)
    return _result(f"Removed qube {qube_id}", None, version=_loaded().version)


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------


async def add_query(qube_id: str, name: str, diql: str) -> Dict[str, Any]:
    query = await _analysis_service().add_query(name, diql, qube_id)
    return _result(f"Added query {query.id} to qube {qube_id}", query.to_json(), version=_loaded().version)


async def update_query(
    qube_id: str,
    query_id: str,
    name: Optional[str] = None,
    diql: Optional[str] = None,
    display_type: Optional[str] = None,
) -> Dict[str, Any]:
    current = _find_query(_find_qube(_loaded(), qube_id), query_id)
    changes: Dict[str, Any] = {}
    if name is not None:
        changes["name"] = name
    if diql is not None:
        changes["diql"] = diql
    if display_type is not None:
        changes["display_type"] = display_type

    query = await _analysis_service().update_query(qube_id, dataclasses.replace(current, **changes))
    return _result(
        f"Updated query {query.id}",
        query.to_json(),
        version=_loaded().version,
        results_kept=query.results is not None,
    )


async def order_query(
    qube_id: str, query_id: str, order_by_request: str, ascending: bool = True
) -> Dict[str, Any]:
    query = await _analysis_service().adjust_query_ordering(
        qube_id, query_id, order_by_request, ascending
    )
    return _result(f"Query {query.id} now reads: {query.diql}", query.to_json(), version=_loaded().version)


async def remove_query(qube_id: str, query_id: str) -> Dict[str, Any]:
    await _analysis_service().remove_query(qube_id, query_id)
    return _result(f"Removed query {query_id}", None, version=_loaded().version)


async def run_query(qube_id: str, query_id: str, max_rows: int = 100) -> Dict[str, Any]:
    """Execute a query (or reuse its successful results) and wait for the final snapshot.

    If the configured timeout passes first, the partial snapshot is returned
    and the execution keeps running in the background.
    """
    started = time.time()
    client = _get_client()
    analysis = _loaded()
    qube = _find_qube(analysis, qube_id)
    query = _find_query(qube, query_id)

    effective_rows, cap_applied = _cap_int(max_rows, MAX_ROWS_CAP, min_value=0)
    timeout = client.config.query_timeout_seconds or None

    if query.results is not None and query.results.failed:
        # failed or cancelled earlier: execute again
        query.results = None

    future = client.analysis.provide_query_results(qube, query)
    timed_out = False
    try:
        # shield: the execution may be shared with other callers
        results = await asyncio.wait_for(asyncio.shield(future), timeout)
    except QueryExecutionError as exc:
        results = exc.results
    except asyncio.TimeoutError:
        timed_out = True
        results = query.results or QueryResults()

    if results.exception is not None:
        summary = f"Query {query.id} failed: {results.exception}"
    elif timed_out:
        summary = f"Query {query.id} still running ({results.percent_complete}% complete)"
    else:
        summary = f"Query {query.id} returned {len(results.rows or [])} rows"

    return _result(
        summary,
        _results_data(results, effective_rows),
        analysis_id=analysis.id,
        analysis_version=analysis.version,
        timed_out=timed_out,
        requested_rows=max_rows,
        effective_rows=effective_rows,
        cap_applied=cap_applied,
        elapsed_ms=int((time.time() - started) * 1000),
    )


async def cancel_query(qube_id: str, query_id: str) -> Dict[str, Any]:
    client = _get_client()
    query = _find_query(_find_qube(_loaded(), qube_id), query_id)

    was_running = client.execution.is_running(query.id)
    client.analysis.cancel_query_if_running(query)
    state = "cancelled" if was_running else "was not running"
    return _result(f"Query {query.id} {state}", {"was_running": was_running})


# ---------------------------------------------------------------------------
# MCP tool registration
# ---------------------------------------------------------------------------


def register_tools(server: Any) -> None:
    """Register MCP tools on an MCP Server-like instance."""
    if server is None or not hasattr(server, "tool"):
        raise ValueError(
            "register_tools(server) expects an MCP Server-like object that exposes a .tool() decorator."
        )

    @server.tool(name="diqube_connection_status", description="Show websocket, login and loaded analysis state.")
    async def mcp_connection_status() -> Dict[str, Any]:
        return await connection_status()

    @server.tool(name="diqube_list_tables", description="List the tables new analyses can be created on.")
    async def mcp_list_tables() -> Dict[str, Any]:
        return await list_tables()

    @server.tool(
        name="diqube_load_analysis",
        description="Load an analysis; the newest version unless a version is given.",
    )
    async def mcp_load_analysis(analysis_id: str, version: Optional[int] = None) -> Dict[str, Any]:
        return await load_analysis(analysis_id=analysis_id, version=version)

    @server.tool(name="diqube_describe_analysis", description="Describe slices, qubes and queries of the loaded analysis.")
    async def mcp_describe_analysis() -> Dict[str, Any]:
        return await describe_analysis()

    @server.tool(name="diqube_create_analysis", description="Create a new analysis on a table and load it.")
    async def mcp_create_analysis(name: str, table: str) -> Dict[str, Any]:
        return await create_analysis(name=name, table=table)

    @server.tool(
        name="diqube_clone_analysis",
        description="Clone the loaded analysis version into a new analysis of the current user and load it.",
    )
    async def mcp_clone_analysis() -> Dict[str, Any]:
        return await clone_analysis()

    @server.tool(
        name="diqube_add_slice",
        description="Add a slice. disjunctions maps a field name to the values it may take.",
    )
    async def mcp_add_slice(
        name: str,
        manual_conjunction: Optional[str] = None,
        disjunctions: Optional[Dict[str, List[str]]] = None,
    ) -> Dict[str, Any]:
        return await add_slice(name=name, manual_conjunction=manual_conjunction, disjunctions=disjunctions)

    @server.tool(name="diqube_update_slice", description="Change name and/or row restriction of a slice.")
    async def mcp_update_slice(
        slice_id: str,
        name: Optional[str] = None,
        manual_conjunction: Optional[str] = None,
        disjunctions: Optional[Dict[str, List[str]]] = None,
    ) -> Dict[str, Any]:
        return await update_slice(
            slice_id=slice_id,
            name=name,
            manual_conjunction=manual_conjunction,
            disjunctions=disjunctions,
        )

    @server.tool(name="diqube_remove_slice", description="Remove a slice from the loaded analysis.")
    async def mcp_remove_slice(slice_id: str) -> Dict[str, Any]:
        return await remove_slice(slice_id=slice_id)

    @server.tool(name="diqube_add_qube", description="Add a qube using an existing slice.")
    async def mcp_add_qube(name: str, slice_id: str) -> Dict[str, Any]:
        return await add_qube(name=name, slice_id=slice_id)

    @server.tool(name="diqube_update_qube", description="Rename a qube and/or switch it to another slice.")
    async def mcp_update_qube(
        qube_id: str, name: Optional[str] = None, slice_id: Optional[str] = None
    ) -> Dict[str, Any]:
        return await update_qube(qube_id=qube_id, name=name, slice_id=slice_id)

    @server.tool(name="diqube_remove_qube", description="Remove a qube and all its queries.")
    async def mcp_remove_qube(qube_id: str) -> Dict[str, Any]:
        return await remove_qube(qube_id=qube_id)

    @server.tool(name="diqube_add_query", description="Add a diql query to a qube.")
    async def mcp_add_query(qube_id: str, name: str, diql: str) -> Dict[str, Any]:
        return await add_query(qube_id=qube_id, name=name, diql=diql)

    @server.tool(name="diqube_update_query", description="Change name, diql or display type of a query.")
    async def mcp_update_query(
        qube_id: str,
        query_id: str,
        name: Optional[str] = None,
        diql: Optional[str] = None,
        display_type: Optional[str] = None,
    ) -> Dict[str, Any]:
        return await update_query(
            qube_id=qube_id, query_id=query_id, name=name, diql=diql, display_type=display_type
        )

    @server.tool(
        name="diqube_order_query",
        description="Order a query's results by one of its column requests, ascending or descending.",
    )
    async def mcp_order_query(
        qube_id: str, query_id: str, order_by_request: str, ascending: bool = True
    ) -> Dict[str, Any]:
        return await order_query(
            qube_id=qube_id, query_id=query_id, order_by_request=order_by_request, ascending=ascending
        )

    @server.tool(name="diqube_remove_query", description="Remove a query from a qube.")
    async def mcp_remove_query(qube_id: str, query_id: str) -> Dict[str, Any]:
        return await remove_query(qube_id=qube_id, query_id=query_id)

    @server.tool(
        name="diqube_run_query",
        description="Execute a query of the loaded analysis and return its rows, columns and progress.",
    )
    async def mcp_run_query(qube_id: str, query_id: str, max_rows: int = 100) -> Dict[str, Any]:
        return await run_query(qube_id=qube_id, query_id=query_id, max_rows=max_rows)

    @server.tool(name="diqube_cancel_query", description="Cancel a running query execution.")
    async def mcp_cancel_query(qube_id: str, query_id: str) -> Dict[str, Any]:
        return await cancel_query(qube_id=qube_id, query_id=query_id)
