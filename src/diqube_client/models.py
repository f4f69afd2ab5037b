# diqube client
# File: models.py
# Version: v4

"""Domain models: the analysis document and query result snapshots.

The wire format uses camelCase keys; the dataclasses use snake_case and
convert in ``from_json`` / ``to_json``. Fields the server sends that are not
modelled here are kept in ``extra`` so they survive a round trip.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

DISPLAY_TYPE_TABLE = "table"
DISPLAY_TYPE_BARCHART = "barchart"

CANCELLED = "Cancelled."


def _extra(data: Dict[str, Any], known: Iterable[str]) -> Dict[str, Any]:
    """Unknown, non-annotation keys of a received object."""
    known = set(known)
    return {
        k: v
        for k, v in data.items()
        if k not in known and not str(k).startswith("$")
    }


@dataclass
class QueryResults:
    """Evolving result of executing one query.

    ``percent_complete`` never decreases. Once ``exception`` is set the
    snapshot is final and ignores further updates.
    """

    percent_complete: int = 0
    rows: Optional[List[List[Any]]] = None
    column_names: Optional[List[str]] = None
    column_requests: Optional[List[str]] = None
    exception: Optional[str] = None

    @property
    def failed(self) -> bool:
        return self.exception is not None

    @property
    def complete(self) -> bool:
        return self.exception is None and self.percent_complete >= 100

    def apply_table(self, table: Dict[str, Any]) -> bool:
        """Merge a streamed ``table`` payload. Returns True if it was applied."""
        if self.exception is not None:
            return False

        percent = int(table.get("percentComplete") or 0)
        if percent < self.percent_complete:
            return False

        self.rows = table.get("rows")
        self.column_names = table.get("columnNames")
        self.column_requests = table.get("columnRequests")
        self.percent_complete = percent
        return True

    def to_json(self) -> Dict[str, Any]:
        return {
            "percentComplete": self.percent_complete,
            "rows": self.rows,
            "columnNames": self.column_names,
            "columnRequests": self.column_requests,
            "exception": self.exception,
        }


@dataclass
class SliceDisjunction:
    field_name: str
    disjunction_values: List[str] = field(default_factory=list)

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "SliceDisjunction":
        return cls(
            field_name=str(data.get("fieldName") or ""),
            disjunction_values=[str(v) for v in (data.get("disjunctionValues") or [])],
        )

    def to_json(self) -> Dict[str, Any]:
        return {
            "fieldName": self.field_name,
            "disjunctionValues": list(self.disjunction_values),
        }


@dataclass
class Slice:
    """Named row restriction: a manual conjunction plus field disjunctions."""

    id: str
    name: str
    manual_conjunction: Optional[str] = None
    slice_disjunctions: List[SliceDisjunction] = field(default_factory=list)
    extra: Dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    _KEYS = ("id", "name", "manualConjunction", "sliceDisjunctions")

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "Slice":
        return cls(
            id=str(data.get("id")),
            name=str(data.get("name") or ""),
            manual_conjunction=data.get("manualConjunction"),
            slice_disjunctions=[
                SliceDisjunction.from_json(d)
                for d in (data.get("sliceDisjunctions") or [])
                if isinstance(d, dict)
            ],
            extra=_extra(data, cls._KEYS),
        )

    def to_json(self) -> Dict[str, Any]:
        out = dict(self.extra)
        out.update(
            {
                "id": self.id,
                "name": self.name,
                "manualConjunction": self.manual_conjunction,
                "sliceDisjunctions": [d.to_json() for d in self.slice_disjunctions],
            }
        )
        return out

    def same_selection(self, other: "Slice") -> bool:
        """True if both slices restrict rows identically. The name is ignored."""
        return (
            self.manual_conjunction == other.manual_conjunction
            and self.slice_disjunctions == other.slice_disjunctions
        )


@dataclass
class Query:
    """A diql statement plus display metadata.

    ``results`` is attached locally while/after the query executes and is
    never sent to the server.
    """

    id: str
    name: str
    diql: str
    display_type: str = DISPLAY_TYPE_TABLE
    extra: Dict[str, Any] = field(default_factory=dict, compare=False, repr=False)
    results: Optional[QueryResults] = field(default=None, compare=False, repr=False)

    _KEYS = ("id", "name", "diql", "displayType")

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "Query":
        return cls(
            id=str(data.get("id")),
            name=str(data.get("name") or ""),
            diql=str(data.get("diql") or ""),
            display_type=str(data.get("displayType") or DISPLAY_TYPE_TABLE),
            extra=_extra(data, cls._KEYS),
        )

    def to_json(self) -> Dict[str, Any]:
        out = dict(self.extra)
        out.update(
            {
                "id": self.id,
                "name": self.name,
                "diql": self.diql,
                "displayType": self.display_type,
            }
        )
        return out


@dataclass
class Qube:
    """Group of queries that all run against the same slice."""

    id: str
    name: str
    slice_id: str
    queries: List[Query] = field(default_factory=list)
    extra: Dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    _KEYS = ("id", "name", "sliceId", "queries")

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "Qube":
        return cls(
            id=str(data.get("id")),
            name=str(data.get("name") or ""),
            slice_id=str(data.get("sliceId")),
            queries=[
                Query.from_json(q) for q in (data.get("queries") or []) if isinstance(q, dict)
            ],
            extra=_extra(data, cls._KEYS),
        )

    def to_json(self) -> Dict[str, Any]:
        out = dict(self.extra)
        out.update(
            {
                "id": self.id,
                "name": self.name,
                "sliceId": self.slice_id,
                "queries": [q.to_json() for q in self.queries],
            }
        )
        return out

    def find_query(self, query_id: str) -> Optional[Query]:
        for query in self.queries:
            if query.id == query_id:
                return query
        return None


@dataclass
class Analysis:
    """One version of a saved analysis: its slices and qubes."""

    id: str
    name: str
    table: str
    version: int
    owner: Optional[str] = None
    qubes: List[Qube] = field(default_factory=list)
    slices: List[Slice] = field(default_factory=list)
    extra: Dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    _KEYS = ("id", "name", "table", "version", "owner", "qubes", "slices")

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "Analysis":
        return cls(
            id=str(data.get("id")),
            name=str(data.get("name") or ""),
            table=str(data.get("table") or ""),
            version=int(data.get("version") or 0),
            owner=data.get("owner"),
            qubes=[Qube.from_json(q) for q in (data.get("qubes") or []) if isinstance(q, dict)],
            slices=[Slice.from_json(s) for s in (data.get("slices") or []) if isinstance(s, dict)],
            extra=_extra(data, cls._KEYS),
        )

    def to_json(self) -> Dict[str, Any]:
        out = dict(self.extra)
        out.update(
            {
                "id": self.id,
                "name": self.name,
                "table": self.table,
                "version": self.version,
                "owner": self.owner,
                "qubes": [q.to_json() for q in self.qubes],
                "slices": [s.to_json() for s in self.slices],
            }
        )
        return out

    def find_qube(self, qube_id: str) -> Optional[Qube]:
        for qube in self.qubes:
            if qube.id == qube_id:
                return qube
        return None

    def find_slice(self, slice_id: str) -> Optional[Slice]:
        for slice_ in self.slices:
            if slice_.id == slice_id:
                return slice_
        return None

    def qubes_using_slice(self, slice_id: str) -> List[Qube]:
        return [q for q in self.qubes if q.slice_id == slice_id]
