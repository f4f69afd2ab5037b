# diqube client
# File: analysis.py
# Version: v8
"""Loading an analysis (version) and changing it.

The server owns every analysis. This service keeps exactly one of them as the
locally *loaded* analysis, sends every change to the server and integrates the
server's answer (including the new analysis version) only after it arrived.

Query results are expensive. Whenever it is safe they are carried over when a
query object is replaced, be it by an update or by loading another version of
the same analysis:

- results of a query survive as long as its diql is unchanged, its qube still
  uses the same slice and that slice still selects the same rows;
- otherwise they are dropped and a running execution is cancelled.

Callers may read ``loaded_analysis`` to render it, but must change it only
through the methods of this service.
"""

from __future__ import annotations

from typing import Any, Callable, Dict, List, Optional, Sequence, Union
import asyncio
import logging

from .errors import (
    DiqubeError,
    InternalConsistencyError,
    NoAnalysisLoadedError,
    RemoteCommandError,
)
from .execution import ExecutionService, IntermediateResultsFn
from .models import Analysis, Qube, Query, QueryResults, Slice, SliceDisjunction
from .remote import DataEvent, DoneEvent, ExceptionEvent, RemoteEvent, RemoteService

logger = logging.getLogger(__name__)

# result data types
ANALYSIS = "analysis"
ANALYSIS_VERSION = "analysisVersion"
QUBE = "qube"
QUERY = "query"
SLICE = "slice"
TABLE_NAME_LIST = "tableNameList"

VersionListener = Callable[[str, int], None]


class AnalysisService:
    def __init__(self, remote: RemoteService, execution: ExecutionService) -> None:
        self._remote = remote
        self._execution = execution
        self._loaded_analysis: Optional[Analysis] = None
        self._newest_version: Optional[int] = None
        self._version_listeners: List[VersionListener] = []

    @property
    def loaded_analysis(self) -> Optional[Analysis]:
        return self._loaded_analysis

    @property
    def newest_version_of_analysis(self) -> Optional[int]:
        """Newest version known on the server, even if an older one is loaded."""
        return self._newest_version

    def add_version_listener(self, listener: VersionListener) -> None:
        """``listener(analysis_id, version)`` is called whenever the version changes."""
        self._version_listeners.append(listener)

    def remove_version_listener(self, listener: VersionListener) -> None:
        if listener in self._version_listeners:
            self._version_listeners.remove(listener)

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    def set_loaded_analysis(self, analysis: Analysis) -> None:
        """Make an already available analysis the loaded one."""
        for qube in analysis.qubes:
            if qube.queries is None:
                qube.queries = []
        for slice_ in analysis.slices:
            if slice_.slice_disjunctions is None:
                slice_.slice_disjunctions = []

        self._loaded_analysis = analysis
        self._set_current_version(analysis.version)

    async def load_analysis(self, analysis_id: str, version: Optional[int] = None) -> Analysis:
        """Load an analysis from the server; the newest version if ``version`` is None.

        Does nothing if exactly that version is loaded already. If another
        version of the same analysis was loaded, results of unchanged queries
        are carried over.
        """
        loaded = self._loaded_analysis
        if (
            loaded is not None
            and loaded.id == analysis_id
            and version is not None
            and loaded.version == version
        ):
            return loaded

        previous = loaded

        self._loaded_analysis = None
        self._newest_version = None

        if version is not None:
            # A specific version is requested, find out which one is the newest.
            def on_newest_version(data: Dict[str, Any]) -> None:
                self._newest_version = int(data[ANALYSIS_VERSION])

            try:
                await self._command(
                    "newestAnalysisVersion",
                    {"analysisId": analysis_id},
                    ANALYSIS_VERSION,
                    on_data=on_newest_version,
                    on_done=lambda: None,
                )
            except RemoteCommandError as exc:
                raise RemoteCommandError(
                    f"Error while loading analysis {analysis_id}: {exc}"
                ) from exc

        def on_analysis(data: Dict[str, Any]) -> Analysis:
            analysis = Analysis.from_json(data[ANALYSIS])
            if self._newest_version is None:
                self._newest_version = analysis.version
            self.set_loaded_analysis(analysis)

            if previous is not None:
                self._preserve_results_of_previous_analysis(previous, analysis)

            logger.info("Loaded analysis %s version %s", analysis.id, analysis.version)
            return analysis

        command_data: Dict[str, Any] = {"analysisId": analysis_id}
        if version is not None:
            command_data["analysisVersion"] = version

        return await self._command(ANALYSIS, command_data, ANALYSIS, on_data=on_analysis)

    def unload_analysis(self) -> None:
        self._loaded_analysis = None
        self._newest_version = None

    async def create_analysis(self, name: str, table: str) -> Analysis:
        """Create a new, empty analysis on ``table`` and load it."""

        def on_analysis(data: Dict[str, Any]) -> Analysis:
            analysis = Analysis.from_json(data[ANALYSIS])
            self._newest_version = analysis.version
            self.set_loaded_analysis(analysis)
            return analysis

        return await self._command(
            "createAnalysis", {"table": table, "name": name}, ANALYSIS, on_data=on_analysis
        )

    async def clone_and_load_current_analysis(self) -> Analysis:
        """Copy the loaded version into a new analysis of the current user and load that."""
        loaded = self._require_loaded()

        def on_analysis(data: Dict[str, Any]) -> Analysis:
            clone = Analysis.from_json(data[ANALYSIS])
            self._newest_version = clone.version
            self.set_loaded_analysis(clone)
            return clone

        return await self._command(
            "cloneAnalysis", self._analysis_ref(loaded), ANALYSIS, on_data=on_analysis
        )

    async def list_all_tables(self) -> List[str]:
        return await self._command(
            "listAllTables",
            None,
            TABLE_NAME_LIST,
            on_data=lambda data: [str(t) for t in (data.get("tableNames") or [])],
        )

    # ------------------------------------------------------------------
    # Query execution
    # ------------------------------------------------------------------

    def provide_query_results(
        self,
        qube: Qube,
        query: Query,
        intermediate_results_fn: Optional[IntermediateResultsFn] = None,
    ) -> "asyncio.Future[QueryResults]":
        """Execute a query of the loaded analysis, see ``ExecutionService``."""
        loaded = self._loaded_analysis
        if loaded is None:
            future: asyncio.Future[QueryResults] = asyncio.get_running_loop().create_future()
            future.set_exception(NoAnalysisLoadedError())
            return future

        return self._execution.provide_query_results(
            loaded.id, loaded.version, qube, query, intermediate_results_fn
        )

    def cancel_query_if_running(self, query: Query) -> None:
        self._execution.cancel_query_if_running(query)

    # ------------------------------------------------------------------
    # Creating
    # ------------------------------------------------------------------

    async def add_qube(self, name: str, slice_id: str) -> Qube:
        analysis = self._require_loaded()
        self._require_slice(analysis, slice_id)

        def on_qube(data: Dict[str, Any]) -> Qube:
            self._require_still_loaded(analysis)
            qube = Qube.from_json(data[QUBE])
            analysis.qubes.append(qube)
            self._set_current_version(data[ANALYSIS_VERSION])
            return qube

        command_data = self._analysis_ref(analysis)
        command_data.update({"name": name, "sliceId": slice_id})
        return await self._command("createQube", command_data, QUBE, on_data=on_qube)

    async def add_query(self, name: str, diql: str, qube_id: str) -> Query:
        analysis = self._require_loaded()

        def on_query(data: Dict[str, Any]) -> Query:
            self._require_still_loaded(analysis)
            qube = analysis.find_qube(qube_id)
            if qube is None:
                logger.warning("Could not find qube %s to add the new query to.", qube_id)
                raise InternalConsistencyError()
            query = Query.from_json(data[QUERY])
            qube.queries.append(query)
            self._set_current_version(data[ANALYSIS_VERSION])
            return query

        command_data = self._analysis_ref(analysis)
        command_data.update({"name": name, "qubeId": qube_id, "diql": diql})
        return await self._command("createQuery", command_data, QUERY, on_data=on_query)

    async def add_slice(
        self,
        name: str,
        manual_conjunction: Optional[str],
        slice_disjunctions: Sequence[Union[SliceDisjunction, Dict[str, Any]]],
    ) -> Slice:
        analysis = self._require_loaded()

        def on_slice(data: Dict[str, Any]) -> Slice:
            self._require_still_loaded(analysis)
            slice_ = Slice.from_json(data[SLICE])
            analysis.slices.append(slice_)
            self._set_current_version(data[ANALYSIS_VERSION])
            return slice_

        command_data = self._analysis_ref(analysis)
        command_data.update(
            {
                "name": name,
                "manualConjunction": manual_conjunction,
                "sliceDisjunctions": [_disjunction_json(d) for d in slice_disjunctions],
            }
        )
        return await self._command("createSlice", command_data, SLICE, on_data=on_slice)

    # ------------------------------------------------------------------
    # Updating
    # ------------------------------------------------------------------

    async def update_qube(self, new_qube: Qube) -> Qube:
        """Store name and slice of ``new_qube``; queries are changed separately.

        If the slice changed, results of all queries of the qube are dropped.
        ``new_qube`` should not be the object reachable from the loaded
        analysis; the server's version of the qube replaces that one.
        """
        analysis = self._require_loaded()
        self._require_slice(analysis, new_qube.slice_id)

        def on_qube(data: Dict[str, Any]) -> Qube:
            self._require_still_loaded(analysis)
            received = Qube.from_json(data[QUBE])
            idx = _index_of(analysis.qubes, received.id)
            if idx is None:
                logger.warning(
                    "Could not find the qube that should be replaced by the updated qube. "
                    "Did the server change the qube ID?"
                )
                raise InternalConsistencyError()

            old = analysis.qubes[idx]
            if old.slice_id != received.slice_id:
                for query in old.queries:
                    self._drop_results(query)
            else:
                self._carry_over_results(old.queries, received.queries)

            analysis.qubes[idx] = received
            self._set_current_version(data[ANALYSIS_VERSION])
            return received

        command_data = self._analysis_ref(analysis)
        command_data.update(
            {"qubeId": new_qube.id, "qubeName": new_qube.name, "sliceId": new_qube.slice_id}
        )
        return await self._command("updateQube", command_data, QUBE, on_data=on_qube)

    async def update_query(self, qube_id: str, query: Query) -> Query:
        """Store a changed query. Its results survive only if the diql is unchanged."""
        analysis = self._require_loaded()

        query_to_send = query.to_json()
        # Browsers sometimes hand us non-breaking spaces, which diql does not accept.
        query_to_send["diql"] = (query.diql or "").replace("\u00a0", " ")

        command_data = self._analysis_ref(analysis)
        command_data.update({"qubeId": qube_id, "newQuery": query_to_send})
        return await self._command(
            "updateQuery",
            command_data,
            QUERY,
            on_data=lambda data: self._integrate_received_query(analysis, qube_id, data),
        )

    async def adjust_query_ordering(
        self, qube_id: str, query_id: str, order_by_request: str, order_asc: bool
    ) -> Query:
        """Let the server rewrite the ORDER BY of a query.

        ``order_by_request`` is the request string of a column as used in the
        query (not the column name).
        """
        analysis = self._require_loaded()

        command_data = self._analysis_ref(analysis)
        command_data.update(
            {
                "qubeId": qube_id,
                "queryId": query_id,
                "orderByRequest": order_by_request,
                "orderAsc": order_asc,
            }
        )
        return await self._command(
            "adjustQueryOrdering",
            command_data,
            QUERY,
            on_data=lambda data: self._integrate_received_query(analysis, qube_id, data),
        )

    async def update_slice(self, new_slice: Slice) -> Slice:
        """Store a changed slice.

        If the rows it selects changed, results of every query of every qube
        using the slice are dropped.
        """
        analysis = self._require_loaded()

        def on_slice(data: Dict[str, Any]) -> Slice:
            self._require_still_loaded(analysis)
            received = Slice.from_json(data[SLICE])
            idx = _index_of(analysis.slices, received.id)
            if idx is None:
                logger.warning(
                    "Could not find the slice that should be replaced by the updated slice. "
                    "Did the server change the slice ID?"
                )
                raise InternalConsistencyError()

            if not analysis.slices[idx].same_selection(received):
                for qube in analysis.qubes_using_slice(received.id):
                    for query in qube.queries:
                        self._drop_results(query)

            analysis.slices[idx] = received
            self._set_current_version(data[ANALYSIS_VERSION])
            return received

        command_data = self._analysis_ref(analysis)
        command_data["slice"] = new_slice.to_json()
        return await self._command("updateSlice", command_data, SLICE, on_data=on_slice)

    # ------------------------------------------------------------------
    # Removing
    # ------------------------------------------------------------------

    async def remove_qube(self, qube_id: str) -> None:
        analysis = self._require_loaded()

        def on_done() -> None:
            self._require_still_loaded(analysis)
            idx = _index_of(analysis.qubes, qube_id)
            if idx is None:
                logger.warning("Could not find the qube that should have been removed.")
                raise InternalConsistencyError()
            for query in analysis.qubes[idx].queries:
                self._execution.cancel_query_if_running(query)
            del analysis.qubes[idx]

        command_data = self._analysis_ref(analysis)
        command_data["qubeId"] = qube_id
        await self._removal("removeQube", analysis, command_data, on_done)

    async def remove_query(self, qube_id: str, query_id: str) -> None:
        analysis = self._require_loaded()

        def on_done() -> None:
            self._require_still_loaded(analysis)
            qube = analysis.find_qube(qube_id)
            idx = _index_of(qube.queries, query_id) if qube is not None else None
            if idx is None:
                logger.warning("Could not find the query that should have been removed.")
                raise InternalConsistencyError()
            self._execution.cancel_query_if_running(qube.queries[idx])
            del qube.queries[idx]

        command_data = self._analysis_ref(analysis)
        command_data.update({"qubeId": qube_id, "queryId": query_id})
        await self._removal("removeQuery", analysis, command_data, on_done)

    async def remove_slice(self, slice_id: str) -> None:
        analysis = self._require_loaded()

        def on_done() -> None:
            self._require_still_loaded(analysis)
            idx = _index_of(analysis.slices, slice_id)
            if idx is None:
                logger.warning("Could not find the slice that should have been removed.")
                raise InternalConsistencyError()
            del analysis.slices[idx]

        command_data = self._analysis_ref(analysis)
        command_data["sliceId"] = slice_id
        await self._removal("removeSlice", analysis, command_data, on_done)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _command(
        self,
        command: str,
        command_data: Any,
        result_type: str,
        on_data: Optional[Callable[[Dict[str, Any]], Any]] = None,
        on_done: Optional[Callable[[], Any]] = None,
    ) -> "asyncio.Future[Any]":
        """Execute a command and expose its outcome as a future.

        ``on_data`` is called with the payload of every ``result_type`` data
        event; without ``on_done`` its return value resolves the future. With
        ``on_done``, the future resolves with its return value once the
        server is done. Both run while the server's message is dispatched, so
        no other message can interleave with the local change they make.
        """
        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()

        def handle(event: RemoteEvent) -> bool:
            if future.done():
                return False
            try:
                if isinstance(event, DataEvent):
                    if event.data_type == result_type and on_data is not None:
                        value = on_data(event.data)
                        if on_done is None:
                            future.set_result(value)
                elif isinstance(event, ExceptionEvent):
                    future.set_exception(RemoteCommandError(event.message))
                elif isinstance(event, DoneEvent):
                    if on_done is not None:
                        future.set_result(on_done())
                    else:
                        future.set_exception(
                            RemoteCommandError(f"Server sent no {result_type} for {command}")
                        )
            except DiqubeError as exc:
                future.set_exception(exc)
            except (AttributeError, KeyError, TypeError, ValueError) as exc:
                logger.warning("Malformed %s result for %s: %s", result_type, command, exc)
                future.set_exception(InternalConsistencyError())
            return False

        self._remote.execute(command, command_data, handle)
        return future

    async def _removal(
        self,
        command: str,
        analysis: Analysis,
        command_data: Dict[str, Any],
        on_done: Callable[[], None],
    ) -> None:
        def on_version(data: Dict[str, Any]) -> None:
            self._require_still_loaded(analysis)
            self._set_current_version(data[ANALYSIS_VERSION])

        await self._command(command, command_data, ANALYSIS_VERSION, on_data=on_version, on_done=on_done)

    def _integrate_received_query(
        self, analysis: Analysis, qube_id: str, data: Dict[str, Any]
    ) -> Query:
        self._require_still_loaded(analysis)
        received = Query.from_json(data[QUERY])

        qube = analysis.find_qube(qube_id)
        idx = _index_of(qube.queries, received.id) if qube is not None else None
        if idx is None:
            logger.warning(
                "Could not find the query that should be replaced by the updated query. "
                "Did the server change the query ID?"
            )
            raise InternalConsistencyError()

        old = qube.queries[idx]
        if old.diql != received.diql:
            self._drop_results(old)
        else:
            received.results = old.results

        qube.queries[idx] = received
        self._set_current_version(data[ANALYSIS_VERSION])
        return received

    def _carry_over_results(self, old_queries: List[Query], new_queries: List[Query]) -> None:
        new_by_id = {q.id: q for q in new_queries}
        for old in old_queries:
            new = new_by_id.get(old.id)
            if new is not None and new.diql == old.diql:
                new.results = old.results
            else:
                self._drop_results(old)

    def _drop_results(self, query: Query) -> None:
        self._execution.cancel_query_if_running(query)
        query.results = None

    def _preserve_results_of_previous_analysis(self, previous: Analysis, new: Analysis) -> None:
        """Copy results of queries that are equal in both versions of an analysis.

        A query is equal if its diql is, its qube exists in both versions and
        the qube's slice exists in both versions selecting the same rows.
        Executions of all other queries of ``previous`` are cancelled.
        """
        carried = set()

        if previous.id == new.id:
            equal_slice_ids = set()
            for prev_slice in previous.slices:
                new_slice = new.find_slice(prev_slice.id)
                if new_slice is not None and prev_slice.same_selection(new_slice):
                    equal_slice_ids.add(prev_slice.id)

            for prev_qube in previous.qubes:
                if prev_qube.slice_id not in equal_slice_ids:
                    continue
                new_qube = new.find_qube(prev_qube.id)
                if new_qube is None or new_qube.slice_id != prev_qube.slice_id:
                    continue

                for prev_query in prev_qube.queries:
                    if prev_query.results is None:
                        continue
                    new_query = new_qube.find_query(prev_query.id)
                    if new_query is not None and new_query.diql == prev_query.diql:
                        new_query.results = prev_query.results
                        carried.add(prev_query.id)

        for prev_qube in previous.qubes:
            for prev_query in prev_qube.queries:
                if prev_query.id not in carried:
                    self._execution.cancel_query_if_running(prev_query)

        logger.debug("Preserved results of %d queries of analysis %s", len(carried), new.id)

    def _set_current_version(self, version: Any) -> None:
        analysis = self._loaded_analysis
        analysis.version = int(version)
        if self._newest_version is None or analysis.version > self._newest_version:
            self._newest_version = analysis.version

        for listener in list(self._version_listeners):
            try:
                listener(analysis.id, analysis.version)
            except Exception:  # listeners must not break result integration
                logger.warning("Version listener %r failed", listener, exc_info=True)

    def _require_loaded(self) -> Analysis:
        if self._loaded_analysis is None:
            raise NoAnalysisLoadedError()
        return self._loaded_analysis

    def _require_still_loaded(self, analysis: Analysis) -> None:
        if self._loaded_analysis is not analysis:
            logger.warning(
                "Analysis %s was unloaded before the server answered a change on it.", analysis.id
            )
            raise InternalConsistencyError()

    @staticmethod
    def _require_slice(analysis: Analysis, slice_id: str) -> None:
        if analysis.find_slice(slice_id) is None:
            raise DiqubeError(f"Slice {slice_id} does not exist in analysis {analysis.id}")

    @staticmethod
    def _analysis_ref(analysis: Analysis) -> Dict[str, Any]:
        return {"analysisId": analysis.id, "analysisVersion": analysis.version}


def _index_of(items: Sequence[Any], item_id: str) -> Optional[int]:
    for idx, item in enumerate(items):
        if item.id == item_id:
            return idx
    return None


def _disjunction_json(disjunction: Union[SliceDisjunction, Dict[str, Any]]) -> Dict[str, Any]:
    if isinstance(disjunction, SliceDisjunction):
        return disjunction.to_json()
    return SliceDisjunction.from_json(disjunction).to_json()
