"""
Database Helper Functions with MongoDB and a local in-process fallback.

- If DATABASE_URL and DATABASE_NAME are configured, documents live in MongoDB
  (a replica set is required for multi-document transactions).
- Otherwise an in-process store with the same surface is used. It keeps
  documents in memory, understands the subset of the MongoDB query/update
  language this service issues, and serializes transactions with a lock.
  It is meant for development and tests: API and workers must then share
  one process.

Both stores expose the same operations: find_one, find, insert_one,
update_one, find_one_and_update, delete_one, delete_many, count_documents,
create_index and transaction(fn). Every operation accepts an optional
``session`` so it can take part in a transaction.
"""
from __future__ import annotations

import copy
import threading
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, TypeVar, Union

from pydantic import BaseModel
from pymongo import MongoClient, ReturnDocument
from pymongo.errors import DuplicateKeyError

T = TypeVar("T")
Sort = Optional[Sequence[Tuple[str, int]]]

_MISSING = object()


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex


class MongoStore:
    """Document store backed by a MongoDB database."""

    def __init__(self, url: str, name: str, client: Optional[MongoClient] = None):
        self._client = client or MongoClient(url, tz_aware=True)
        self.db = self._client[name]
        self.name = name

    def find_one(self, collection: str, filter: Optional[dict] = None, sort: Sort = None,
                 projection: Optional[dict] = None, session=None) -> Optional[dict]:
        return self.db[collection].find_one(filter or {}, projection, sort=sort, session=session)

    def find(self, collection: str, filter: Optional[dict] = None, sort: Sort = None,
             limit: Optional[int] = None, projection: Optional[dict] = None, session=None) -> List[dict]:
        cursor = self.db[collection].find(filter or {}, projection, session=session)
        if sort:
            cursor = cursor.sort(list(sort))
        if limit:
            cursor = cursor.limit(limit)
        return list(cursor)

    def insert_one(self, collection: str, doc: dict, session=None) -> str:
        doc.setdefault("_id", new_id())
        self.db[collection].insert_one(doc, session=session)
        return doc["_id"]

    def update_one(self, collection: str, filter: dict, update: dict, session=None) -> int:
        return self.db[collection].update_one(filter, update, session=session).matched_count

    def find_one_and_update(self, collection: str, filter: dict, update: dict, sort: Sort = None,
                            session=None) -> Optional[dict]:
        return self.db[collection].find_one_and_update(
            filter, update, sort=list(sort) if sort else None,
            return_document=ReturnDocument.AFTER, session=session,
        )

    def delete_one(self, collection: str, filter: dict, session=None) -> int:
        return self.db[collection].delete_one(filter, session=session).deleted_count

    def delete_many(self, collection: str, filter: dict, session=None) -> int:
        return self.db[collection].delete_many(filter, session=session).deleted_count

    def count_documents(self, collection: str, filter: Optional[dict] = None, session=None) -> int:
        return self.db[collection].count_documents(filter or {}, session=session)

    def create_index(self, collection: str, keys: Union[str, Sequence[Tuple[str, int]]], unique: bool = False) -> None:
        self.db[collection].create_index(keys, unique=unique)

    def transaction(self, fn: Callable[[Any], T]) -> T:
        """Run ``fn(session)`` in a multi-document transaction.

        Write conflicts between concurrent transactions surface as transient
        errors; with_transaction aborts and re-runs ``fn`` in that case, so
        ``fn`` must not have side effects outside the database.
        """
        with self._client.start_session() as session:
            return session.with_transaction(fn)

    def collection_names(self) -> List[str]:
        return self.db.list_collection_names()

    def ping(self) -> bool:
        self._client.admin.command("ping")
        return True


class LocalStore:
    """In-process document store speaking a subset of the MongoDB dialect."""

    name = "local"

    def __init__(self):
        self._collections: Dict[str, Dict[str, dict]] = {}
        self._unique: Dict[str, List[str]] = {}
        self._lock = threading.RLock()

    def _coll(self, collection: str) -> Dict[str, dict]:
        return self._collections.setdefault(collection, {})

    def find_one(self, collection: str, filter: Optional[dict] = None, sort: Sort = None,
                 projection: Optional[dict] = None, session=None) -> Optional[dict]:
        docs = self.find(collection, filter, sort=sort, limit=1, projection=projection)
        return docs[0] if docs else None

    def find(self, collection: str, filter: Optional[dict] = None, sort: Sort = None,
             limit: Optional[int] = None, projection: Optional[dict] = None, session=None) -> List[dict]:
        with self._lock:
            docs = self._select(collection, filter or {}, sort)
            if limit:
                docs = docs[:limit]
            return [_project(copy.deepcopy(d), projection) for d in docs]

    def insert_one(self, collection: str, doc: dict, session=None) -> str:
        with self._lock:
            stored = copy.deepcopy(doc)
            stored.setdefault("_id", new_id())
            coll = self._coll(collection)
            if stored["_id"] in coll:
                raise DuplicateKeyError(f"duplicate _id {stored['_id']!r} in {collection}", 11000)
            for field in self._unique.get(collection, []):
                value = _get_path(stored, field)
                if value is not _MISSING and any(_get_path(d, field) == value for d in coll.values()):
                    raise DuplicateKeyError(f"duplicate {field} {value!r} in {collection}", 11000)
            coll[stored["_id"]] = stored
            doc.setdefault("_id", stored["_id"])
            return stored["_id"]

    def update_one(self, collection: str, filter: dict, update: dict, session=None) -> int:
        with self._lock:
            docs = self._select(collection, filter, None)
            if not docs:
                return 0
            _apply_update(docs[0], update)
            return 1

    def find_one_and_update(self, collection: str, filter: dict, update: dict, sort: Sort = None,
                            session=None) -> Optional[dict]:
        with self._lock:
            docs = self._select(collection, filter, sort)
            if not docs:
                return None
            _apply_update(docs[0], update)
            return copy.deepcopy(docs[0])

    def delete_one(self, collection: str, filter: dict, session=None) -> int:
        with self._lock:
            docs = self._select(collection, filter, None)
            if not docs:
                return 0
            del self._coll(collection)[docs[0]["_id"]]
            return 1

    def delete_many(self, collection: str, filter: dict, session=None) -> int:
        with self._lock:
            docs = self._select(collection, filter, None)
            coll = self._coll(collection)
            for d in docs:
                del coll[d["_id"]]
            return len(docs)

    def count_documents(self, collection: str, filter: Optional[dict] = None, session=None) -> int:
        with self._lock:
            return len(self._select(collection, filter or {}, None))

    def create_index(self, collection: str, keys: Union[str, Sequence[Tuple[str, int]]], unique: bool = False) -> None:
        if unique and isinstance(keys, str):
            with self._lock:
                fields = self._unique.setdefault(collection, [])
                if keys not in fields:
                    fields.append(keys)

    def transaction(self, fn: Callable[[Any], T]) -> T:
        """Run ``fn`` holding the store lock; roll every collection back on error."""
        with self._lock:
            snapshot = copy.deepcopy(self._collections)
            try:
                return fn(None)
            except BaseException:
                self._collections = snapshot
                raise

    def collection_names(self) -> List[str]:
        with self._lock:
            return [name for name, docs in self._collections.items() if docs]

    def ping(self) -> bool:
        return True

    def _select(self, collection: str, filter: dict, sort: Sort) -> List[dict]:
        docs = [d for d in self._coll(collection).values() if _matches(d, filter)]
        for field, direction in reversed(list(sort or [])):
            docs.sort(key=lambda d, f=field: _sort_key(_get_path(d, f)), reverse=direction < 0)
        return docs


DocumentStore = Union[MongoStore, LocalStore]


def connect(settings) -> DocumentStore:
    """Build the document store described by the settings."""
    if settings.use_mongo:
        return MongoStore(settings.database_url, settings.database_name)
    return LocalStore()


def ensure_indexes(store: DocumentStore) -> None:
    store.create_index("order", "order_id", unique=True)
    store.create_index("order", [("user", 1), ("created_at", -1)])
    store.create_index("cart", "user", unique=True)
    store.create_index("jobs", [("queue", 1), ("status", 1), ("available_at", 1)])
    store.create_index("outbox", [("dispatched", 1), ("created_at", 1)])
    store.create_index("gallery", [("status", 1), ("order", 1)])


def create_document(store: DocumentStore, collection_name: str, data: Union[BaseModel, Dict[str, Any]], session=None) -> str:
    """Insert a single document with timestamps.

    Returns the inserted document id as a string.
    """
    if isinstance(data, BaseModel):
        data_dict = data.model_dump()
    else:
        data_dict = dict(data)

    data_dict["created_at"] = now_utc()
    data_dict["updated_at"] = now_utc()
    return store.insert_one(collection_name, data_dict, session=session)


def get_documents(store: DocumentStore, collection_name: str, filter_dict: Optional[Dict[str, Any]] = None,
                  limit: Optional[int] = None, sort: Sort = None):
    """Get documents from collection."""
    return store.find(collection_name, filter_dict or {}, sort=sort, limit=limit)


# ---------------------
# Local query engine
# ---------------------

def _get_path(doc: Any, path: str) -> Any:
    current = doc
    for part in path.split("."):
        if isinstance(current, list) and part.isdigit():
            index = int(part)
            if index >= len(current):
                return _MISSING
            current = current[index]
        elif isinstance(current, dict):
            if part not in current:
                return _MISSING
            current = current[part]
        else:
            return _MISSING
    return current


def _container(doc: dict, path: str, create: bool) -> Tuple[Any, str]:
    parts = path.split(".")
    current: Any = doc
    for part in parts[:-1]:
        if isinstance(current, list):
            if not part.isdigit() or int(part) >= len(current):
                raise ValueError(f"cannot traverse array at {path!r}")
            current = current[int(part)]
        else:
            if part not in current or current[part] is None:
                if not create:
                    return None, parts[-1]
                current[part] = {}
            current = current[part]
    return current, parts[-1]


def _set_path(doc: dict, path: str, value: Any) -> None:
    parent, key = _container(doc, path, create=True)
    if isinstance(parent, list):
        parent[int(key)] = value
    else:
        parent[key] = value


def _unset_path(doc: dict, path: str) -> None:
    parent, key = _container(doc, path, create=False)
    if isinstance(parent, dict):
        parent.pop(key, None)


def _apply_update(doc: dict, update: dict) -> None:
    for op, fields in update.items():
        if op == "$set":
            for path, value in fields.items():
                _set_path(doc, path, copy.deepcopy(value))
        elif op == "$unset":
            for path in fields:
                _unset_path(doc, path)
        elif op == "$inc":
            for path, amount in fields.items():
                current = _get_path(doc, path)
                _set_path(doc, path, (0 if current is _MISSING else current) + amount)
        elif op == "$push":
            for path, value in fields.items():
                current = _get_path(doc, path)
                if current is _MISSING or current is None:
                    current = []
                    _set_path(doc, path, current)
                if not isinstance(current, list):
                    raise ValueError(f"$push target {path!r} is not an array")
                if isinstance(value, dict) and "$each" in value:
                    current.extend(copy.deepcopy(value["$each"]))
                else:
                    current.append(copy.deepcopy(value))
        else:
            raise ValueError(f"unsupported update operator {op!r}")


def _compare(value: Any, op: str, operand: Any) -> bool:
    if op == "$exists":
        return (value is not _MISSING) == bool(operand)
    if op == "$eq":
        return _equals(value, operand)
    if op == "$ne":
        return not _equals(value, operand)
    if op == "$in":
        return any(_equals(value, o) for o in operand)
    if op == "$nin":
        return not any(_equals(value, o) for o in operand)
    if value is _MISSING or value is None:
        return False
    if op == "$lt":
        return value < operand
    if op == "$lte":
        return value <= operand
    if op == "$gt":
        return value > operand
    if op == "$gte":
        return value >= operand
    raise ValueError(f"unsupported query operator {op!r}")


def _equals(value: Any, expected: Any) -> bool:
    if value is _MISSING:
        return expected is None
    if isinstance(value, list) and not isinstance(expected, list):
        return expected in value
    return value == expected


def _matches(doc: dict, filter: dict) -> bool:
    for key, condition in filter.items():
        if key == "$or":
            if not any(_matches(doc, sub) for sub in condition):
                return False
            continue
        if key == "$and":
            if not all(_matches(doc, sub) for sub in condition):
                return False
            continue
        value = _get_path(doc, key)
        if isinstance(condition, dict) and condition and all(k.startswith("$") for k in condition):
            if not all(_compare(value, op, operand) for op, operand in condition.items()):
                return False
        elif not _equals(value, condition):
            return False
    return True


def _sort_key(value: Any):
    if value is _MISSING or value is None:
        return (0, 0)
    return (1, value)


def _project(doc: dict, projection: Optional[dict]) -> dict:
    if not projection:
        return doc
    include = [k for k, v in projection.items() if v]
    if include:
        projected = {k: doc[k] for k in include if k in doc}
        if projection.get("_id", 1) and "_id" in doc:
            projected["_id"] = doc["_id"]
        return projected
    return {k: v for k, v in doc.items() if projection.get(k, 1)}
