"""
Document store capability set used by the sighting, proximity and ranking
protocols.

A store holds named collections of documents keyed by id. Queries are
immutable builders: every method returns a new ``Query``::

    query = (
        Query("users")
        .order_by("totalSpots", Direction.DESCENDING)
        .start_after(last_snapshot)
        .limit(10)
    )
    page = await store.run(query)

Ordering always breaks ties on document id, in the same direction as the
requested order, so snapshot cursors are exact even when scores repeat.
Documents without a value for the ordered field are left out of ordered
queries.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Union


class Direction(str, Enum):
    ASCENDING = "asc"
    DESCENDING = "desc"


OPERATORS = frozenset({"==", "!=", "<", "<=", ">", ">=", "in"})


@dataclass(frozen=True)
class Snapshot:
    """A document id plus its field values"""
    id: str
    data: Dict[str, Any] = field(default_factory=dict)

    def get(self, name: str, default: Any = None) -> Any:
        return self.data.get(name, default)


@dataclass(frozen=True)
class Increment:
    """Atomic numeric transform: ``update(..., {"totalSpots": Increment(1)})``"""
    amount: Union[int, float] = 1


class _ServerTimestamp:
    def __repr__(self):
        return "SERVER_TIMESTAMP"


#: Replaced by the store's current UTC time when the write is applied.
SERVER_TIMESTAMP = _ServerTimestamp()


@dataclass(frozen=True)
class Filter:
    field: str
    op: str
    value: Any


@dataclass(frozen=True)
class Cursor:
    value: Any
    document_id: Optional[str] = None
    inclusive: bool = True


@dataclass(frozen=True)
class Query:
    collection: str
    filters: Tuple[Filter, ...] = ()
    order_field: Optional[str] = None
    direction: Direction = Direction.ASCENDING
    start: Optional[Cursor] = None
    end: Optional[Cursor] = None
    limit_count: Optional[int] = None

    def where(self, name: str, op: str, value: Any) -> "Query":
        if op not in OPERATORS:
            raise ValueError(f"Unsupported operator {op!r}")
        return replace(self, filters=self.filters + (Filter(name, op, value),))

    def order_by(self, name: str, direction: Direction = Direction.ASCENDING) -> "Query":
        return replace(self, order_field=name, direction=Direction(direction))

    def start_at(self, position: Union[Snapshot, Any]) -> "Query":
        return replace(self, start=self._cursor(position, inclusive=True))

    def start_after(self, position: Union[Snapshot, Any]) -> "Query":
        return replace(self, start=self._cursor(position, inclusive=False))

    def end_at(self, position: Union[Snapshot, Any]) -> "Query":
        return replace(self, end=self._cursor(position, inclusive=True))

    def limit(self, count: int) -> "Query":
        if count < 0:
            raise ValueError("Limit must not be negative")
        return replace(self, limit_count=count)

    def _cursor(self, position: Union[Snapshot, Any], inclusive: bool) -> Cursor:
        if self.order_field is None:
            raise ValueError("Cursors need an order_by field")
        if isinstance(position, Snapshot):
            return Cursor(position.get(self.order_field), position.id, inclusive)
        return Cursor(position, None, inclusive)


class DocumentStore(ABC):
    """Point reads and writes by id plus ordered range queries"""

    def collection(self, name: str) -> Query:
        return Query(name)

    @abstractmethod
    async def add(self, collection: str, data: Dict[str, Any]) -> str:
        """Insert a document under a generated id and return the id"""

    @abstractmethod
    async def get(self, collection: str, document_id: str) -> Optional[Snapshot]:
        pass

    @abstractmethod
    async def set(self, collection: str, document_id: str, data: Dict[str, Any], merge: bool = False) -> None:
        """Create or overwrite; with ``merge`` only the given fields change"""

    @abstractmethod
    async def update(self, collection: str, document_id: str, data: Dict[str, Any]) -> None:
        """Change fields of an existing document; missing documents are an error"""

    @abstractmethod
    async def delete(self, collection: str, document_id: str) -> None:
        pass

    @abstractmethod
    async def run(self, query: Query) -> List[Snapshot]:
        pass

    @abstractmethod
    async def count(self, query: Query) -> int:
        pass

    async def close(self) -> None:
        return None
