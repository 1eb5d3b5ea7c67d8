"""
Document store access layer.

Two implementations share one interface: ``MongoStore`` talks to MongoDB
through pymongo, ``MemoryStore`` keeps documents in process memory and is
used for development and tests. Which one runs is decided by ``Settings``
at startup (see ``create_store``).

Documents are plain dicts. The store assigns ``id`` on insert and returns it
as a key of every document it hands back.
"""
import copy
import logging
import operator
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from bson import ObjectId
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient, ReturnDocument
from pymongo.errors import (
    ExecutionTimeout,
    NetworkTimeout,
    PyMongoError,
    ServerSelectionTimeoutError,
    WTimeoutError,
)

from config import Settings
from errors import NotFound, StoreTimeout, StoreUnavailable, ValidationError

logger = logging.getLogger(__name__)

USERS = "users"
VISITS = "visits"
VISITOR_REQUESTS = "visitor_requests"
NOTIFICATIONS = "notifications"

Filter = Tuple[str, str, Any]

_OPS = {
    "==": operator.eq,
    "!=": operator.ne,
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
    "in": lambda value, options: value in options,
}

_MONGO_OPS = {
    "==": "$eq",
    "!=": "$ne",
    "<": "$lt",
    "<=": "$lte",
    ">": "$gt",
    ">=": "$gte",
    "in": "$in",
}


def new_id() -> str:
    return str(ObjectId())


def now_utc() -> datetime:
    # BSON dates carry milliseconds only
    now = datetime.now(timezone.utc)
    return now.replace(microsecond=now.microsecond // 1000 * 1000)


def doc_to_dict(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not doc:
        return doc
    doc = dict(doc)
    if "_id" in doc:
        doc["id"] = str(doc.pop("_id"))
    return doc


def _check_filters(filters: Iterable[Filter]) -> List[Filter]:
    checked = list(filters or [])
    for field, op, _ in checked:
        if op not in _OPS:
            raise ValidationError(f"Unsupported filter operator '{op}' on {field}")
    return checked


class DocumentStore:
    """Point lookup, filtered/ordered query, insert and partial update."""

    name = "abstract"

    def get(self, collection: str, doc_id: str) -> Dict[str, Any]:
        raise NotImplementedError

    def query(
        self,
        collection: str,
        filters: Sequence[Filter] = (),
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        raise NotImplementedError

    def insert(self, collection: str, data: Dict[str, Any]) -> str:
        raise NotImplementedError

    def update(self, collection: str, doc_id: str, fields: Dict[str, Any]) -> Dict[str, Any]:
        raise NotImplementedError


class MemoryStore(DocumentStore):
    name = "memory"

    def __init__(self, seed: Optional[Dict[str, List[Dict[str, Any]]]] = None):
        self._collections: Dict[str, Dict[str, Dict[str, Any]]] = {}
        for collection, docs in (seed or {}).items():
            for doc in docs:
                self.insert(collection, doc)

    def _collection(self, collection: str) -> Dict[str, Dict[str, Any]]:
        return self._collections.setdefault(collection, {})

    def get(self, collection, doc_id):
        doc = self._collection(collection).get(doc_id)
        if doc is None:
            raise NotFound(f"No document {doc_id} in {collection}")
        return copy.deepcopy(doc)

    def query(self, collection, filters=(), order_by=None, descending=False, limit=None):
        filters = _check_filters(filters)
        matches = []
        for doc in self._collection(collection).values():
            if all(self._matches(doc, field, op, value) for field, op, value in filters):
                matches.append(doc)
        if order_by:
            # documents missing the ordering field sort last either way
            present = [d for d in matches if d.get(order_by) is not None]
            missing = [d for d in matches if d.get(order_by) is None]
            # ties fall back to id, which grows with insertion order
            present.sort(key=lambda d: (d[order_by], str(d["id"])), reverse=descending)
            matches = present + missing
        if limit is not None:
            matches = matches[:limit]
        return [copy.deepcopy(d) for d in matches]

    @staticmethod
    def _matches(doc: Dict[str, Any], field: str, op: str, value: Any) -> bool:
        current = doc.get(field)
        if current is None and op not in ("==", "!=", "in"):
            return False
        try:
            return bool(_OPS[op](current, value))
        except TypeError:
            return False

    def insert(self, collection, data):
        doc = copy.deepcopy(dict(data))
        doc_id = doc.pop("id", None) or new_id()
        doc["id"] = doc_id
        self._collection(collection)[doc_id] = doc
        return doc_id

    def update(self, collection, doc_id, fields):
        docs = self._collection(collection)
        if doc_id not in docs:
            raise NotFound(f"No document {doc_id} in {collection}")
        changes = {k: copy.deepcopy(v) for k, v in fields.items() if k != "id"}
        docs[doc_id].update(changes)
        return copy.deepcopy(docs[doc_id])


class MongoStore(DocumentStore):
    name = "mongo"

    def __init__(self, url: str, database: str, timeout_seconds: float = 10.0, client: Optional[MongoClient] = None):
        timeout_ms = int(timeout_seconds * 1000)
        self.client = client or MongoClient(
            url,
            tz_aware=True,
            serverSelectionTimeoutMS=timeout_ms,
            connectTimeoutMS=timeout_ms,
            socketTimeoutMS=timeout_ms,
        )
        self.db = self.client[database]

    @contextmanager
    def _guard(self, action: str):
        try:
            yield
        except (ServerSelectionTimeoutError, NetworkTimeout, ExecutionTimeout, WTimeoutError) as e:
            logger.error("Store timeout during %s: %s", action, e)
            raise StoreTimeout(error=str(e)) from e
        except PyMongoError as e:
            logger.error("Store error during %s: %s", action, e)
            raise StoreUnavailable(error=str(e)) from e

    def get(self, collection, doc_id):
        with self._guard(f"get {collection}"):
            doc = self.db[collection].find_one({"_id": doc_id})
        if doc is None:
            raise NotFound(f"No document {doc_id} in {collection}")
        return doc_to_dict(doc)

    def query(self, collection, filters=(), order_by=None, descending=False, limit=None):
        criteria: Dict[str, Dict[str, Any]] = {}
        for field, op, value in _check_filters(filters):
            key = "_id" if field == "id" else field
            criteria.setdefault(key, {})[_MONGO_OPS[op]] = value
        with self._guard(f"query {collection}"):
            cursor = self.db[collection].find(criteria)
            if order_by:
                direction = DESCENDING if descending else ASCENDING
                cursor = cursor.sort([(order_by, direction), ("_id", direction)])
            if limit is not None:
                cursor = cursor.limit(limit)
            return [doc_to_dict(d) for d in cursor]

    def insert(self, collection, data):
        doc = dict(data)
        doc["_id"] = doc.pop("id", None) or new_id()
        with self._guard(f"insert {collection}"):
            self.db[collection].insert_one(doc)
        return doc["_id"]

    def update(self, collection, doc_id, fields):
        changes = {k: v for k, v in fields.items() if k != "id"}
        with self._guard(f"update {collection}"):
            doc = self.db[collection].find_one_and_update(
                {"_id": doc_id},
                {"$set": changes},
                return_document=ReturnDocument.AFTER,
            )
        if doc is None:
            raise NotFound(f"No document {doc_id} in {collection}")
        return doc_to_dict(doc)


def create_store(settings: Settings) -> DocumentStore:
    backend = settings.store_backend
    if backend == "auto":
        backend = "mongo" if settings.database_url else "memory"
    if backend == "mongo":
        if not settings.database_url:
            raise RuntimeError("STORE_BACKEND=mongo requires DATABASE_URL")
        logger.info("Using MongoDB store (database=%s)", settings.database_name)
        return MongoStore(settings.database_url, settings.database_name, settings.store_timeout_seconds)
    if backend == "memory":
        logger.warning("Using in-memory store; data is lost on restart")
        return MemoryStore()
    raise RuntimeError(f"Unknown STORE_BACKEND '{settings.store_backend}'")


# -------------------- Model helpers --------------------

def create_document(store: DocumentStore, collection: str, model: BaseModel) -> str:
    data = model.model_dump(by_alias=True, exclude={"id"}, exclude_none=True)
    return store.insert(collection, data)

