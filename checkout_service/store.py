"""
store.py — Document store used by the checkout pipeline

The pipeline only needs a narrow slice of a document database:
    • point reads by collection + id
    • equality queries
    • batched `in` queries, at most IN_QUERY_LIMIT keys per call
    • atomic create that fails when the id is taken (the idempotency primitive)
    • partial updates and counter increments
    • server-side timestamps

Two backends implement the contract:
    • MongoDocumentStore: production, backed by pymongo
    • InMemoryDocumentStore: local development and tests
"""

import copy
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Protocol

from bson.objectid import ObjectId
from pymongo import MongoClient
from pymongo.errors import DuplicateKeyError, PyMongoError

from .errors import DocumentExists, StoreUnavailable
from .logging_config import get_logger

log = get_logger(__name__)

# Largest number of keys a single `in` query may carry.
IN_QUERY_LIMIT = 10

# Pass as `field` to `find_in` to match on the native document id.
DOCUMENT_ID = "__document_id__"


class _ServerTimestamp:
    def __repr__(self):
        return "SERVER_TIMESTAMP"

    # The placeholder is compared by identity, so copies must be itself.
    def __copy__(self):
        return self

    def __deepcopy__(self, memo):
        return self


# Placeholder value replaced by the store's clock when a document is written.
SERVER_TIMESTAMP = _ServerTimestamp()


@dataclass(frozen=True)
class Document:
    id: str
    data: Dict[str, Any]


class DocumentStore(Protocol):
    """
    Backend-agnostic contract for the checkout pipeline.

    Implementations MUST NOT cache results across calls: prices and coupons
    are read fresh for every request.
    """

    def get(self, collection: str, doc_id: str) -> Optional[Document]:
        ...

    def find(self, collection: str, filters: Dict[str, Any], limit: Optional[int] = None) -> List[Document]:
        ...

    def find_in(self, collection: str, field: str, values: List[str]) -> List[Document]:
        ...

    def create(self, collection: str, doc_id: str, data: Dict[str, Any]) -> Document:
        ...

    def update(self, collection: str, doc_id: str, changes: Dict[str, Any]) -> bool:
        ...

    def increment(self, collection: str, doc_id: str, field: str, amount: int = 1) -> bool:
        ...


def _check_in_query(values: List[str]):
    if len(values) > IN_QUERY_LIMIT:
        raise ValueError(f"'in' queries accept at most {IN_QUERY_LIMIT} values, got {len(values)}")


def _resolve_timestamps(data: Dict[str, Any], now: datetime) -> Dict[str, Any]:
    return {key: (now if value is SERVER_TIMESTAMP else value) for key, value in data.items()}


# --- In-memory backend ---


class InMemoryDocumentStore:
    """
    Thread-safe document store held in process memory.

    Documents are deep-copied on the way in and out so callers never share
    mutable state with the store.
    """

    def __init__(self, clock: Optional[Callable[[], datetime]] = None):
        self._collections: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = threading.RLock()
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def _collection(self, name: str) -> Dict[str, Dict[str, Any]]:
        return self._collections.setdefault(name, {})

    def get(self, collection: str, doc_id: str) -> Optional[Document]:
        with self._lock:
            data = self._collection(collection).get(doc_id)
            if data is None:
                return None
            return Document(doc_id, copy.deepcopy(data))

    def find(self, collection: str, filters: Dict[str, Any], limit: Optional[int] = None) -> List[Document]:
        with self._lock:
            matches = [
                Document(doc_id, copy.deepcopy(data))
                for doc_id, data in self._collection(collection).items()
                if all(data.get(key) == value for key, value in filters.items())
            ]
        return matches[:limit] if limit is not None else matches

    def find_in(self, collection: str, field: str, values: List[str]) -> List[Document]:
        _check_in_query(values)
        wanted = set(values)
        with self._lock:
            return [
                Document(doc_id, copy.deepcopy(data))
                for doc_id, data in self._collection(collection).items()
                if (doc_id if field == DOCUMENT_ID else data.get(field)) in wanted
            ]

    def create(self, collection: str, doc_id: str, data: Dict[str, Any]) -> Document:
        with self._lock:
            docs = self._collection(collection)
            if doc_id in docs:
                raise DocumentExists(collection, doc_id)
            stored = copy.deepcopy(_resolve_timestamps(data, self._clock()))
            docs[doc_id] = stored
            return Document(doc_id, copy.deepcopy(stored))

    def update(self, collection: str, doc_id: str, changes: Dict[str, Any]) -> bool:
        with self._lock:
            data = self._collection(collection).get(doc_id)
            if data is None:
                return False
            data.update(copy.deepcopy(_resolve_timestamps(changes, self._clock())))
            return True

    def increment(self, collection: str, doc_id: str, field: str, amount: int = 1) -> bool:
        with self._lock:
            data = self._collection(collection).get(doc_id)
            if data is None:
                return False
            data[field] = data.get(field, 0) + amount
            return True

    def seed(self, collection: str, documents: Dict[str, Dict[str, Any]]):
        """Bulk-loads documents, replacing any with the same id."""
        with self._lock:
            target = self._collection(collection)
            for doc_id, data in documents.items():
                target[doc_id] = copy.deepcopy(data)


# --- MongoDB backend ---


class MongoDocumentStore:
    """
    Document store backed by a MongoDB database.

    The native document id is `_id`. Ids that look like ObjectIds are matched
    in both their string and ObjectId form, since documents created by other
    tools may use either. Driver errors surface as `StoreUnavailable`.
    """

    def __init__(self, client: MongoClient, database: str):
        self.client = client
        self.db = client[database]

    @classmethod
    def connect(cls, url: str, database: str) -> "MongoDocumentStore":
        # MongoClient connects lazily; no I/O happens here.
        client = MongoClient(url, tz_aware=True, serverSelectionTimeoutMS=5000)
        log.info(f"MongoDB store configured for database '{database}'.")
        return cls(client, database)

    def close(self):
        self.client.close()

    @staticmethod
    def _id_candidates(doc_id: str) -> List[Any]:
        candidates: List[Any] = [doc_id]
        if ObjectId.is_valid(doc_id):
            candidates.append(ObjectId(doc_id))
        return candidates

    @staticmethod
    def _to_document(raw: Dict[str, Any]) -> Document:
        raw = dict(raw)
        return Document(str(raw.pop("_id")), raw)

    @staticmethod
    def _now() -> datetime:
        return datetime.now(timezone.utc)

    def get(self, collection: str, doc_id: str) -> Optional[Document]:
        try:
            raw = self.db[collection].find_one({"_id": {"$in": self._id_candidates(doc_id)}})
        except PyMongoError as e:
            log.error(f"MongoDB read {collection}/{doc_id} failed: {e}")
            raise StoreUnavailable(f"Document store unavailable: {e}")
        return self._to_document(raw) if raw else None

    def find(self, collection: str, filters: Dict[str, Any], limit: Optional[int] = None) -> List[Document]:
        try:
            cursor = self.db[collection].find(filters)
            if limit is not None:
                cursor = cursor.limit(limit)
            return [self._to_document(raw) for raw in cursor]
        except PyMongoError as e:
            log.error(f"MongoDB query on {collection} failed: {e}")
            raise StoreUnavailable(f"Document store unavailable: {e}")

    def find_in(self, collection: str, field: str, values: List[str]) -> List[Document]:
        _check_in_query(values)
        if field == DOCUMENT_ID:
            keys: Iterable[Any] = [c for value in values for c in self._id_candidates(value)]
            query = {"_id": {"$in": list(keys)}}
        else:
            query = {field: {"$in": list(values)}}
        try:
            return [self._to_document(raw) for raw in self.db[collection].find(query)]
        except PyMongoError as e:
            log.error(f"MongoDB 'in' query on {collection}.{field} failed: {e}")
            raise StoreUnavailable(f"Document store unavailable: {e}")

    def create(self, collection: str, doc_id: str, data: Dict[str, Any]) -> Document:
        stored = _resolve_timestamps(data, self._now())
        try:
            self.db[collection].insert_one({"_id": doc_id, **stored})
        except DuplicateKeyError:
            raise DocumentExists(collection, doc_id)
        except PyMongoError as e:
            log.error(f"MongoDB insert {collection}/{doc_id} failed: {e}")
            raise StoreUnavailable(f"Document store unavailable: {e}")
        return Document(doc_id, stored)

    def update(self, collection: str, doc_id: str, changes: Dict[str, Any]) -> bool:
        try:
            result = self.db[collection].update_one(
                {"_id": {"$in": self._id_candidates(doc_id)}},
                {"$set": _resolve_timestamps(changes, self._now())},
            )
        except PyMongoError as e:
            log.error(f"MongoDB update {collection}/{doc_id} failed: {e}")
            raise StoreUnavailable(f"Document store unavailable: {e}")
        return result.matched_count > 0

    def increment(self, collection: str, doc_id: str, field: str, amount: int = 1) -> bool:
        try:
            result = self.db[collection].update_one(
                {"_id": {"$in": self._id_candidates(doc_id)}},
                {"$inc": {field: amount}},
            )
        except PyMongoError as e:
            log.error(f"MongoDB increment {collection}/{doc_id}.{field} failed: {e}")
            raise StoreUnavailable(f"Document store unavailable: {e}")
        return result.matched_count > 0
