"""MongoDB backend for the record store."""

from collections.abc import Mapping
from typing import Any, Optional

import structlog
from pymongo import MongoClient, ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

from .errors import DuplicateRecordError, StoreUnavailableError
from .store import Document, RecordStore, SortSpec

logger = structlog.get_logger()


def _duplicate_field(err: DuplicateKeyError) -> tuple[str, Any]:
    details = err.details or {}
    key_value = details.get("keyValue") or {}
    if key_value:
        field, value = next(iter(key_value.items()))
        return field, value
    return "_id", None


class MongoRecordStore(RecordStore):
    """Record store backed by a MongoDB database.

    Conditional updates fold the guard into the ``find_one_and_update``
    filter, which MongoDB applies atomically per document.
    """

    def __init__(self, url: str, database: str, timeout_ms: int = 5000, client: Optional[MongoClient] = None):
        self._url = url
        self._database_name = database
        self._timeout_ms = timeout_ms
        self._client = client
        self._db = None

    def open(self) -> None:
        if self._client is None:
            self._client = MongoClient(
                self._url,
                serverSelectionTimeoutMS=self._timeout_ms,
                tz_aware=True,
            )
        self._db = self._client[self._database_name]
        try:
            self._client.admin.command("ping")
        except PyMongoError as e:
            logger.error("record_store_unreachable", backend="mongo", database=self._database_name, error=str(e))
            raise StoreUnavailableError("open", e) from e
        logger.info("record_store_opened", backend="mongo", database=self._database_name)

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
        self._client = None
        self._db = None
        logger.info("record_store_closed", backend="mongo", database=self._database_name)

    def _collection(self, operation: str, name: str):
        if self._db is None:
            raise StoreUnavailableError(operation, collection=name)
        return self._db[name]

    def ensure_unique(self, collection: str, field: str) -> None:
        try:
            self._collection("ensure_unique", collection).create_index(field, unique=True)
        except PyMongoError as e:
            raise StoreUnavailableError("ensure_unique", e, collection=collection) from e

    def get(self, collection: str, record_id: str) -> Optional[Document]:
        try:
            return self._collection("get", collection).find_one({"_id": record_id})
        except PyMongoError as e:
            raise StoreUnavailableError("get", e, collection=collection) from e

    def insert(self, collection: str, doc: Document) -> Document:
        try:
            self._collection("insert", collection).insert_one(dict(doc))
        except DuplicateKeyError as e:
            field, value = _duplicate_field(e)
            raise DuplicateRecordError(collection, field, value) from e
        except PyMongoError as e:
            raise StoreUnavailableError("insert", e, collection=collection) from e
        return dict(doc)

    def update(
        self,
        collection: str,
        record_id: str,
        changes: Mapping[str, Mapping[str, Any]],
        guard: Optional[Mapping[str, Any]] = None,
    ) -> Optional[Document]:
        query = {"_id": record_id, **(guard or {})}
        try:
            return self._collection("update", collection).find_one_and_update(
                query,
                {op: dict(fields) for op, fields in changes.items()},
                return_document=ReturnDocument.AFTER,
            )
        except DuplicateKeyError as e:
            field, value = _duplicate_field(e)
            raise DuplicateRecordError(collection, field, value) from e
        except PyMongoError as e:
            raise StoreUnavailableError("update", e, collection=collection) from e

    def find(
        self,
        collection: str,
        query: Optional[Mapping[str, Any]] = None,
        sort: Optional[SortSpec] = None,
        skip: int = 0,
        limit: int = 0,
    ) -> list[Document]:
        try:
            cursor = self._collection("find", collection).find(dict(query or {}))
            sort = list(sort or ())
            if sort:
                cursor = cursor.sort(sort)
            if skip:
                cursor = cursor.skip(skip)
            if limit:
                cursor = cursor.limit(limit)
            return list(cursor)
        except PyMongoError as e:
            raise StoreUnavailableError("find", e, collection=collection) from e

    def count(self, collection: str, query: Optional[Mapping[str, Any]] = None) -> int:
        try:
            return self._collection("count", collection).count_documents(dict(query or {}))
        except PyMongoError as e:
            raise StoreUnavailableError("count", e, collection=collection) from e

    def delete(self, collection: str, record_id: str) -> Optional[Document]:
        try:
            return self._collection("delete", collection).find_one_and_delete({"_id": record_id})
        except PyMongoError as e:
            raise StoreUnavailableError("delete", e, collection=collection) from e
