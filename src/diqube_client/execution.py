# diqube client
# File: execution.py
# Version: v4
"""Execution of the queries of an analysis and their streamed results.

Results are attached to the ``Query`` object (``query.results``) and updated
in place while ``table`` updates stream in. At most one execution per query
id is in flight at any time.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Dict, Optional
import asyncio
import logging

from .errors import QueryExecutionError
from .models import CANCELLED, Qube, Query, QueryResults
from .remote import DataEvent, DoneEvent, ExceptionEvent, RemoteEvent, RemoteService

logger = logging.getLogger(__name__)

COMMAND_ANALYSIS_QUERY = "analysisQuery"
DATA_TYPE_TABLE = "table"

IntermediateResultsFn = Callable[[QueryResults], None]


@dataclass
class _RunningQuery:
    query_id: str
    request_id: str
    results: QueryResults
    future: "asyncio.Future[QueryResults]"


class ExecutionService:
    def __init__(self, remote: RemoteService) -> None:
        self._remote = remote
        self._running_queries: Dict[str, _RunningQuery] = {}

    def provide_query_results(
        self,
        analysis_id: str,
        analysis_version: int,
        qube: Qube,
        query: Query,
        intermediate_results_fn: Optional[IntermediateResultsFn] = None,
    ) -> "asyncio.Future[QueryResults]":
        """Execute ``query`` unless it has results already.

        Returns a future resolving with ``query.results`` once the server is
        done. On failure or cancellation the future raises
        ``QueryExecutionError`` whose ``results`` is that same snapshot.

        ``intermediate_results_fn`` is called with the snapshot whenever it
        changes, never synchronously from within this call.
        """
        loop = asyncio.get_running_loop()

        if query.results is not None:
            # Already executed, or another caller is executing it right now.
            running = self._running_queries.get(query.id)
            if running is not None and running.results is query.results:
                return running.future
            future: asyncio.Future[QueryResults] = loop.create_future()
            future.set_result(query.results)
            return future

        # Someone cleared query.results to re-execute; there might still be an
        # execution of the old state in flight.
        self.cancel_query_if_running(query)

        results = QueryResults(percent_complete=0)
        query.results = results
        future = loop.create_future()

        if intermediate_results_fn is not None:
            loop.call_soon(intermediate_results_fn, results)

        def handle(event: RemoteEvent) -> bool:
            if isinstance(event, DataEvent):
                if event.data_type == DATA_TYPE_TABLE and isinstance(event.data, dict):
                    if results.apply_table(event.data) and intermediate_results_fn is not None:
                        intermediate_results_fn(results)
                return False

            self._pop_running_query(query.id, request_id)
            if isinstance(event, ExceptionEvent):
                results.exception = event.message
                if not future.done():
                    future.set_exception(QueryExecutionError(results))
            elif isinstance(event, DoneEvent):
                results.percent_complete = 100
                if not future.done():
                    future.set_result(results)
            return False

        request_id = self._remote.execute(
            COMMAND_ANALYSIS_QUERY,
            {
                "analysisId": analysis_id,
                "analysisVersion": analysis_version,
                "qubeId": qube.id,
                "queryId": query.id,
            },
            handle,
        )

        self._running_queries[query.id] = _RunningQuery(
            query_id=query.id, request_id=request_id, results=results, future=future
        )
        return future

    def cancel_query_if_running(self, query: Query) -> None:
        """Cancel the execution of ``query`` if one is in flight; else no-op."""
        running = self._running_queries.pop(query.id, None)
        if running is None:
            return

        self._remote.cancel(running.request_id)

        running.results.exception = CANCELLED
        if query.results is not None:
            query.results.exception = CANCELLED
        if not running.future.done():
            running.future.set_exception(QueryExecutionError(running.results))
            # nobody may be waiting for a cancelled execution
            running.future.exception()

    def is_running(self, query_id: str) -> bool:
        return query_id in self._running_queries

    def _pop_running_query(self, query_id: str, request_id: str) -> Optional[_RunningQuery]:
        running = self._running_queries.get(query_id)
        if running is None or running.request_id != request_id:
            return None
        return self._running_queries.pop(query_id)
