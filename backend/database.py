import copy
import logging
import random
import threading
from collections import Counter
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Sequence, Tuple
from uuid import uuid4

from bson import ObjectId
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.errors import PyMongoError

from config import DATABASE_NAME, DATABASE_TIMEOUT_MS, DATABASE_URL, STORAGE_BACKEND
from schemas import utcnow

logger = logging.getLogger(__name__)

Filter = Dict[str, Any]
Sort = Sequence[Tuple[str, int]]

_client: Optional[MongoClient] = None
_db = None


def get_db():
    global _client, _db
    if _db is None:
        _client = MongoClient(DATABASE_URL, serverSelectionTimeoutMS=DATABASE_TIMEOUT_MS, tz_aware=True)
        _db = _client[DATABASE_NAME]
    return _db


class DocumentStore(ABC):
    """Keyed-record collections shared by every backend.

    Filters are equality matches on top-level fields; ``{"$in": [...]}`` is
    the only operator understood. Update paths may be dotted, in which case
    nested keys are created on first use. Returned documents carry a string
    ``_id``.
    """

    @abstractmethod
    def insert(self, collection: str, data: Dict[str, Any]) -> str: ...

    def insert_many(self, collection: str, items: List[Dict[str, Any]]) -> List[str]:
        return [self.insert(collection, item) for item in items]

    @abstractmethod
    def find(self, collection: str, filter_dict: Filter | None = None, sort: Sort | None = None,
             skip: int = 0, limit: int = 100) -> List[Dict[str, Any]]: ...

    def find_one(self, collection: str, filter_dict: Filter) -> Optional[Dict[str, Any]]:
        found = self.find(collection, filter_dict, limit=1)
        return found[0] if found else None

    @abstractmethod
    def update_one(self, collection: str, filter_dict: Filter, values: Dict[str, Any] | None = None,
                   increments: Dict[str, Any] | None = None, on_insert: Dict[str, Any] | None = None,
                   upsert: bool = False) -> bool: ...

    @abstractmethod
    def delete_one(self, collection: str, filter_dict: Filter) -> bool: ...

    @abstractmethod
    def count(self, collection: str, filter_dict: Filter | None = None) -> int: ...

    @abstractmethod
    def sample(self, collection: str, filter_dict: Filter, size: int) -> List[Dict[str, Any]]: ...

    @abstractmethod
    def total(self, collection: str, field: str, filter_dict: Filter | None = None) -> float: ...

    @abstractmethod
    def group_count(self, collection: str, fields: Sequence[str],
                    filter_dict: Filter | None = None) -> List[Tuple[Tuple[Any, ...], int]]:
        """Count documents per distinct combination of ``fields`` (missing values are None)."""


def _mongo_filter(filter_dict: Filter | None) -> Filter:
    filter_dict = dict(filter_dict or {})
    doc_id = filter_dict.get("_id")
    if isinstance(doc_id, str):
        if not ObjectId.is_valid(doc_id):
            # no stored document can match a malformed id
            filter_dict["_id"] = {"$in": []}
        else:
            filter_dict["_id"] = ObjectId(doc_id)
    return filter_dict


def _public(doc: Dict[str, Any]) -> Dict[str, Any]:
    return {**doc, "_id": str(doc.get("_id"))}


class MongoStore(DocumentStore):
    def __init__(self, db):
        self.db = db

    def ping(self) -> None:
        self.db.client.admin.command("ping")

    def insert(self, collection, data):
        now = utcnow()
        data = dict(data)
        data.setdefault("createdAt", now)
        data.setdefault("updatedAt", now)
        result = self.db[collection].insert_one(data)
        return str(result.inserted_id)

    def insert_many(self, collection, items):
        if not items:
            return []
        now = utcnow()
        docs = [{"createdAt": now, "updatedAt": now, **item} for item in items]
        result = self.db[collection].insert_many(docs)
        return [str(i) for i in result.inserted_ids]

    def find(self, collection, filter_dict=None, sort=None, skip=0, limit=100):
        cursor = self.db[collection].find(_mongo_filter(filter_dict))
        if sort:
            cursor = cursor.sort([(field, DESCENDING if direction < 0 else ASCENDING) for field, direction in sort])
        cursor = cursor.skip(skip).limit(limit)
        return [_public(doc) for doc in cursor]

    def update_one(self, collection, filter_dict, values=None, increments=None, on_insert=None, upsert=False):
        update: Dict[str, Any] = {"$set": {**(values or {}), "updatedAt": utcnow()}}
        if increments:
            update["$inc"] = increments
        if on_insert:
            update["$setOnInsert"] = {"createdAt": utcnow(), **on_insert}
        result = self.db[collection].update_one(_mongo_filter(filter_dict), update, upsert=upsert)
        return result.matched_count > 0 or result.upserted_id is not None

    def delete_one(self, collection, filter_dict):
        return self.db[collection].delete_one(_mongo_filter(filter_dict)).deleted_count > 0

    def count(self, collection, filter_dict=None):
        return self.db[collection].count_documents(_mongo_filter(filter_dict))

    def sample(self, collection, filter_dict, size):
        pipeline = [{"$match": _mongo_filter(filter_dict)}, {"$sample": {"size": size}}]
        return [_public(doc) for doc in self.db[collection].aggregate(pipeline)]

    def total(self, collection, field, filter_dict=None):
        pipeline = [
            {"$match": _mongo_filter(filter_dict)},
            {"$group": {"_id": None, "total": {"$sum": f"${field}"}}},
        ]
        rows = list(self.db[collection].aggregate(pipeline))
        return rows[0]["total"] if rows else 0

    def group_count(self, collection, fields, filter_dict=None):
        pipeline = [
            {"$match": _mongo_filter(filter_dict)},
            {"$group": {"_id": {field: f"${field}" for field in fields}, "count": {"$sum": 1}}},
        ]
        return [(tuple(row["_id"].get(field) for field in fields), row["count"])
                for row in self.db[collection].aggregate(pipeline)]


def _matches(doc: Dict[str, Any], filter_dict: Filter | None) -> bool:
    for key, expected in (filter_dict or {}).items():
        actual = doc.get(key)
        if isinstance(expected, dict) and "$in" in expected:
            if actual not in expected["$in"]:
                return False
        elif actual != expected:
            return False
    return True


def _walk(doc: Dict[str, Any], path: str) -> Tuple[Dict[str, Any], str]:
    *parents, leaf = path.split(".")
    node = doc
    for part in parents:
        node = node.setdefault(part, {})
    return node, leaf


def _sort_key(field: str):
    # missing values sort first ascending, like Mongo's null ordering
    def key(doc):
        value = doc.get(field)
        return (value is not None, value)
    return key


class MemoryStore(DocumentStore):
    """Process-local fallback used when no document database is reachable."""

    def __init__(self):
        self._collections: Dict[str, List[Dict[str, Any]]] = {}
        self._lock = threading.Lock()

    def _rows(self, collection: str) -> List[Dict[str, Any]]:
        return self._collections.setdefault(collection, [])

    def insert(self, collection, data):
        now = utcnow()
        doc = copy.deepcopy(data)
        doc.setdefault("createdAt", now)
        doc.setdefault("updatedAt", now)
        doc["_id"] = uuid4().hex
        with self._lock:
            self._rows(collection).append(doc)
        return doc["_id"]

    def find(self, collection, filter_dict=None, sort=None, skip=0, limit=100):
        with self._lock:
            rows = [doc for doc in self._rows(collection) if _matches(doc, filter_dict)]
            for field, direction in reversed(list(sort or [])):
                rows.sort(key=_sort_key(field), reverse=direction < 0)
            return copy.deepcopy(rows[skip:skip + limit])

    def update_one(self, collection, filter_dict, values=None, increments=None, on_insert=None, upsert=False):
        with self._lock:
            rows = self._rows(collection)
            doc = next((d for d in rows if _matches(d, filter_dict)), None)
            if doc is None:
                if not upsert:
                    return False
                doc = {k: v for k, v in filter_dict.items() if not isinstance(v, dict)}
                doc.update({"_id": uuid4().hex, "createdAt": utcnow()})
                for path, value in (on_insert or {}).items():
                    node, leaf = _walk(doc, path)
                    node[leaf] = copy.deepcopy(value)
                rows.append(doc)
            for path, value in (values or {}).items():
                node, leaf = _walk(doc, path)
                node[leaf] = copy.deepcopy(value)
            for path, amount in (increments or {}).items():
                node, leaf = _walk(doc, path)
                node[leaf] = node.get(leaf, 0) + amount
            doc["updatedAt"] = utcnow()
            return True

    def delete_one(self, collection, filter_dict):
        with self._lock:
            rows = self._rows(collection)
            for i, doc in enumerate(rows):
                if _matches(doc, filter_dict):
                    del rows[i]
                    return True
            return False

    def count(self, collection, filter_dict=None):
        with self._lock:
            return sum(1 for doc in self._rows(collection) if _matches(doc, filter_dict))

    def sample(self, collection, filter_dict, size):
        with self._lock:
            rows = [doc for doc in self._rows(collection) if _matches(doc, filter_dict)]
            return copy.deepcopy(random.sample(rows, min(size, len(rows))))

    def total(self, collection, field, filter_dict=None):
        with self._lock:
            return sum(doc.get(field) or 0 for doc in self._rows(collection) if _matches(doc, filter_dict))

    def group_count(self, collection, fields, filter_dict=None):
        with self._lock:
            counts = Counter(tuple(doc.get(field) for field in fields)
                             for doc in self._rows(collection) if _matches(doc, filter_dict))
        return list(counts.items())


def connect_store(backend: str = STORAGE_BACKEND) -> DocumentStore:
    """Pick the storage backend once, at process startup."""
    if backend == "memory":
        logger.info("Using in-memory storage")
        return MemoryStore()
    store = MongoStore(get_db())
    try:
        store.ping()
    except PyMongoError as exc:
        if backend == "mongo":
            raise
        logger.warning("MongoDB unreachable at %s (%s), switching to in-memory storage", DATABASE_URL, exc)
        return MemoryStore()
    logger.info("Connected to MongoDB database %s", DATABASE_NAME)
    return store
