# diqube client
# File: errors.py
# Version: v1

"""Exceptions raised by the diqube client services."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .models import QueryResults


NO_ANALYSIS_LOADED = "No analysis loaded"
INTERNAL_ERROR = "Internal error. Please refresh the page."


class DiqubeError(RuntimeError):
    """Base class for all errors surfaced by the client."""


class RemoteCommandError(DiqubeError):
    """The server answered a command with an exception."""


class NoAnalysisLoadedError(DiqubeError):
    def __init__(self) -> None:
        super().__init__(NO_ANALYSIS_LOADED)


class InternalConsistencyError(DiqubeError):
    """The server acknowledged a change on something we cannot find locally.

    There is no local conflict resolution, the caller has to reload.
    """

    def __init__(self) -> None:
        super().__init__(INTERNAL_ERROR)


class QueryExecutionError(DiqubeError):
    """Executing a query failed or was cancelled.

    ``results`` is the snapshot as it was when the failure happened, so any
    partial rows can still be shown next to the error.
    """

    def __init__(self, results: "QueryResults") -> None:
        super().__init__(results.exception or "Query failed")
        self.results = results
