"""Record store interface and the in-process backend.

The engine only relies on document CRUD plus one atomic primitive: a
conditional single-document update. Queries, guards and updates use the
MongoDB document syntax so both backends accept the same arguments:

    store.update(
        "products",
        product_id,
        {"$inc": {"stock": -1}, "$set": {"updated_at": now()}},
        guard={"stock": {"$gte": 1}},
    )

returns the updated document, or None when the record is missing or the
guard no longer holds.
"""

import copy
import operator
import threading
from abc import ABC, abstractmethod
from collections.abc import Iterable, Mapping
from typing import Any, Optional

import structlog

from .errors import DuplicateRecordError, InvalidArgumentError, StoreUnavailableError

logger = structlog.get_logger()

ASCENDING = 1
DESCENDING = -1

Document = dict[str, Any]
SortSpec = Iterable[tuple[str, int]]

_COMPARATORS = {
    "$eq": operator.eq,
    "$ne": operator.ne,
    "$gt": operator.gt,
    "$gte": operator.ge,
    "$lt": operator.lt,
    "$lte": operator.le,
}


class RecordStore(ABC):
    """Document store with conditional single-record updates."""

    def __enter__(self) -> "RecordStore":
        self.open()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    @abstractmethod
    def open(self) -> None:
        """Connect to the backend."""

    @abstractmethod
    def close(self) -> None:
        """Release the backend connection."""

    @abstractmethod
    def ensure_unique(self, collection: str, field: str) -> None:
        """Declare that no two records in ``collection`` share ``field``."""

    @abstractmethod
    def get(self, collection: str, record_id: str) -> Optional[Document]:
        """Fetch one record by id."""

    @abstractmethod
    def insert(self, collection: str, doc: Document) -> Document:
        """Insert a record; ``doc`` must carry its ``_id``."""

    @abstractmethod
    def update(
        self,
        collection: str,
        record_id: str,
        changes: Mapping[str, Mapping[str, Any]],
        guard: Optional[Mapping[str, Any]] = None,
    ) -> Optional[Document]:
        """Atomically apply ``$set``/``$inc``/``$push`` changes if ``guard`` still matches."""

    @abstractmethod
    def find(
        self,
        collection: str,
        query: Optional[Mapping[str, Any]] = None,
        sort: Optional[SortSpec] = None,
        skip: int = 0,
        limit: int = 0,
    ) -> list[Document]:
        """Return matching records; ``limit=0`` means no limit."""

    @abstractmethod
    def count(self, collection: str, query: Optional[Mapping[str, Any]] = None) -> int:
        """Count matching records."""

    @abstractmethod
    def delete(self, collection: str, record_id: str) -> Optional[Document]:
        """Remove a record, returning it if it existed."""


def _compare(op: str, actual: Any, expected: Any) -> bool:
    if isinstance(actual, list) and op in ("$eq", "$ne") and not isinstance(expected, list):
        # Array fields match a scalar by membership.
        contains = expected in actual
        return contains if op == "$eq" else not contains
    if op == "$in":
        return actual in expected
    if op == "$nin":
        return actual not in expected
    fn = _COMPARATORS.get(op)
    if fn is None:
        raise InvalidArgumentError(f"unsupported query operator {op}")
    if actual is None and op not in ("$eq", "$ne"):
        return False
    try:
        return fn(actual, expected)
    except TypeError:
        return False


def matches(doc: Mapping[str, Any], query: Optional[Mapping[str, Any]]) -> bool:
    """Evaluate a MongoDB-style query against a document."""
    if not query:
        return True
    for field, condition in query.items():
        actual = doc.get(field)
        if isinstance(condition, Mapping) and condition and all(k.startswith("$") for k in condition):
            if not all(_compare(op, actual, expected) for op, expected in condition.items()):
                return False
        elif not _compare("$eq", actual, condition):
            return False
    return True


def _sort_key(field: str):
    # Missing values sort first, as MongoDB orders nulls.
    def key(doc: Document):
        value = doc.get(field)
        return (value is not None, value if value is not None else 0)

    return key


def apply_changes(doc: Document, changes: Mapping[str, Mapping[str, Any]]) -> Document:
    """Return a copy of ``doc`` with ``$set``, ``$inc`` and ``$push`` applied."""
    unknown = set(changes) - {"$set", "$inc", "$push"}
    if unknown:
        raise InvalidArgumentError(f"unsupported update operators: {sorted(unknown)}")
    updated = dict(doc)
    for field, value in changes.get("$set", {}).items():
        if field == "_id":
            raise InvalidArgumentError("record id cannot be changed")
        updated[field] = value
    for field, delta in changes.get("$inc", {}).items():
        updated[field] = updated.get(field, 0) + delta
    for field, value in changes.get("$push", {}).items():
        updated[field] = list(updated.get(field) or []) + [value]
    return updated


class MemoryRecordStore(RecordStore):
    """Thread-safe in-process store.

    Every operation runs under one lock, so conditional updates are atomic
    with respect to each other.
    """

    def __init__(self) -> None:
        self._collections: dict[str, dict[str, Document]] = {}
        self._unique: dict[str, set[str]] = {}
        self._lock = threading.RLock()
        self._open = False

    def open(self) -> None:
        with self._lock:
            self._open = True
        logger.info("record_store_opened", backend="memory")

    def close(self) -> None:
        with self._lock:
            self._open = False
        logger.info("record_store_closed", backend="memory")

    @property
    def is_open(self) -> bool:
        return self._open

    def _records(self, operation: str, collection: str) -> dict[str, Document]:
        if not self._open:
            raise StoreUnavailableError(operation, collection=collection)
        return self._collections.setdefault(collection, {})

    def _check_unique(self, collection: str, doc: Document, records: dict[str, Document]) -> None:
        for field in self._unique.get(collection, ()):
            if field not in doc:
                continue
            for other in records.values():
                if other["_id"] != doc["_id"] and other.get(field) == doc[field]:
                    raise DuplicateRecordError(collection, field, doc[field])

    def ensure_unique(self, collection: str, field: str) -> None:
        with self._lock:
            self._unique.setdefault(collection, set()).add(field)

    def get(self, collection: str, record_id: str) -> Optional[Document]:
        with self._lock:
            doc = self._records("get", collection).get(record_id)
            return copy.deepcopy(doc) if doc is not None else None

    def insert(self, collection: str, doc: Document) -> Document:
        if "_id" not in doc:
            raise InvalidArgumentError("record must carry an _id")
        with self._lock:
            records = self._records("insert", collection)
            if doc["_id"] in records:
                raise DuplicateRecordError(collection, "_id", doc["_id"])
            self._check_unique(collection, doc, records)
            records[doc["_id"]] = copy.deepcopy(dict(doc))
            return copy.deepcopy(records[doc["_id"]])

    def update(
        self,
        collection: str,
        record_id: str,
        changes: Mapping[str, Mapping[str, Any]],
        guard: Optional[Mapping[str, Any]] = None,
    ) -> Optional[Document]:
        with self._lock:
            records = self._records("update", collection)
            current = records.get(record_id)
            if current is None or not matches(current, guard):
                return None
            updated = apply_changes(current, changes)
            self._check_unique(collection, updated, records)
            records[record_id] = updated
            return copy.deepcopy(updated)

    def find(
        self,
        collection: str,
        query: Optional[Mapping[str, Any]] = None,
        sort: Optional[SortSpec] = None,
        skip: int = 0,
        limit: int = 0,
    ) -> list[Document]:
        with self._lock:
            found = [doc for doc in self._records("find", collection).values() if matches(doc, query)]
            # Stable sorts applied from the least significant key.
            for field, direction in reversed(list(sort or ())):
                found.sort(key=_sort_key(field), reverse=direction == DESCENDING)
            if skip:
                found = found[skip:]
            if limit:
                found = found[:limit]
            return copy.deepcopy(found)

    def count(self, collection: str, query: Optional[Mapping[str, Any]] = None) -> int:
        with self._lock:
            return sum(1 for doc in self._records("count", collection).values() if matches(doc, query))

    def delete(self, collection: str, record_id: str) -> Optional[Document]:
        with self._lock:
            return self._records("delete", collection).pop(record_id, None)
