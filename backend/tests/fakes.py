"""
In-memory stand-in for the slice of the Motor API the billing services use.

Supports the filter, update and projection operators found in services/,
unique (and sparse) indexes raising pymongo's DuplicateKeyError, and
sessions whose transactions roll back every write made through them when
the block raises. Every operation yields to the event loop once so
concurrent coroutines interleave the way they would against a server.
"""
import asyncio
import copy
from typing import Any, Dict, List, Optional

from bson import ObjectId
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

_MISSING = object()


def run_sync(coro):
    """Drive a coroutine that only awaits fake collections, without an event loop."""
    try:
        while True:
            coro.send(None)
    except StopIteration as stop:
        return stop.value


def _get(doc: Dict[str, Any], path: str):
    current = doc
    for part in path.split("."):
        if not isinstance(current, dict) or part not in current:
            return _MISSING
        current = current[part]
    return current


def _set(doc: Dict[str, Any], path: str, value: Any) -> None:
    parts = path.split(".")
    for part in parts[:-1]:
        doc = doc.setdefault(part, {})
    doc[parts[-1]] = value


def _unset(doc: Dict[str, Any], path: str) -> None:
    parts = path.split(".")
    for part in parts[:-1]:
        doc = doc.get(part)
        if not isinstance(doc, dict):
            return
    doc.pop(parts[-1], None)


def _comparable(a, b) -> bool:
    return a is not _MISSING and a is not None and b is not None


def _match_operator(value, op: str, arg) -> bool:
    if op == "$in":
        if value is _MISSING:
            return None in arg
        if isinstance(value, list):
            return any(v in arg for v in value)
        return value in arg
    if op == "$nin":
        return not _match_operator(value, "$in", arg)
    if op == "$ne":
        if value is _MISSING:
            return arg is not None
        if isinstance(value, list) and not isinstance(arg, list):
            return arg not in value
        return value != arg
    if op == "$exists":
        return (value is not _MISSING) == bool(arg)
    if op in ("$lt", "$lte", "$gt", "$gte"):
        if not _comparable(value, arg):
            return False
        try:
            if op == "$lt":
                return value < arg
            if op == "$lte":
                return value <= arg
            if op == "$gt":
                return value > arg
            return value >= arg
        except TypeError:
            return False
    raise NotImplementedError(f"Unsupported query operator {op}")


def matches(doc: Dict[str, Any], query: Optional[Dict[str, Any]]) -> bool:
    for key, condition in (query or {}).items():
        if key == "$or":
            if not any(matches(doc, sub) for sub in condition):
                return False
            continue
        if key == "$and":
            if not all(matches(doc, sub) for sub in condition):
                return False
            continue
        value = _get(doc, key)
        if isinstance(condition, dict) and condition and all(k.startswith("$") for k in condition):
            if not all(_match_operator(value, op, arg) for op, arg in condition.items()):
                return False
        elif condition is None:
            if value is not _MISSING and value is not None:
                return False
        elif isinstance(value, list) and not isinstance(condition, list):
            if condition not in value:
                return False
        elif value is _MISSING or value != condition:
            return False
    return True


def project(doc: Dict[str, Any], projection: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    doc = copy.deepcopy(doc)
    if not projection:
        return doc
    include = {k for k, v in projection.items() if v and k != "_id"}
    if include:
        result = {k: doc[k] for k in include if k in doc}
        if projection.get("_id", 1) and "_id" in doc:
            result["_id"] = doc["_id"]
        return result
    for key, flag in projection.items():
        if not flag:
            doc.pop(key, None)
    return doc


def apply_update(doc: Dict[str, Any], update: Dict[str, Any], inserting: bool = False) -> None:
    for op, fields in update.items():
        if op == "$set":
            for path, value in fields.items():
                _set(doc, path, copy.deepcopy(value))
        elif op == "$setOnInsert":
            if inserting:
                for path, value in fields.items():
                    _set(doc, path, copy.deepcopy(value))
        elif op == "$inc":
            for path, amount in fields.items():
                current = _get(doc, path)
                _set(doc, path, (0 if current is _MISSING or current is None else current) + amount)
        elif op == "$unset":
            for path in fields:
                _unset(doc, path)
        elif op in ("$push", "$addToSet"):
            for path, value in fields.items():
                current = _get(doc, path)
                items = list(current) if isinstance(current, list) else []
                new = value["$each"] if isinstance(value, dict) and "$each" in value else [value]
                for item in new:
                    if op == "$addToSet" and item in items:
                        continue
                    items.append(copy.deepcopy(item))
                _set(doc, path, items)
        else:
            raise NotImplementedError(f"Unsupported update operator {op}")


class FakeCursor:
    def __init__(self, docs: List[Dict[str, Any]], projection: Optional[Dict[str, Any]]):
        self._docs = docs
        self._projection = projection
        self._limit = 0

    def sort(self, key_or_list, direction=None):
        keys = [(key_or_list, direction or 1)] if isinstance(key_or_list, str) else list(key_or_list)
        for key, order in reversed(keys):
            present = [d for d in self._docs if _get(d, key) not in (_MISSING, None)]
            absent = [d for d in self._docs if _get(d, key) in (_MISSING, None)]
            present.sort(key=lambda d: _get(d, key), reverse=order < 0)
            self._docs = absent + present if order > 0 else present + absent
        return self

    def limit(self, n: int):
        self._limit = n
        return self

    def _results(self) -> List[Dict[str, Any]]:
        docs = self._docs[: self._limit] if self._limit else self._docs
        return [project(d, self._projection) for d in docs]

    async def to_list(self, length=None):
        await asyncio.sleep(0)
        results = self._results()
        return results if length is None else results[:length]

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for doc in self._results():
            await asyncio.sleep(0)
            yield doc


class FakeCollection:
    def __init__(self, name: str):
        self.name = name
        self.docs: List[Dict[str, Any]] = []
        self.unique_indexes: List[tuple] = []

    async def create_index(self, keys, unique: bool = False, sparse: bool = False, **kwargs):
        await asyncio.sleep(0)
        fields = (keys,) if isinstance(keys, str) else tuple(k for k, _ in keys)
        if unique:
            self.unique_indexes.append((fields, sparse))
        return "_".join(fields)

    def _check_unique(self, candidate: Dict[str, Any], check_id: bool = False) -> None:
        indexes = [(("_id",), False)] + self.unique_indexes if check_id else self.unique_indexes
        for fields, sparse in indexes:
            values = tuple(_get(candidate, f) for f in fields)
            if sparse and all(v is _MISSING for v in values):
                continue
            key = tuple(None if v is _MISSING else v for v in values)
            for other in self.docs:
                if other is candidate:
                    continue
                other_key = tuple(None if v is _MISSING else v for v in (_get(other, f) for f in fields))
                if other_key == key:
                    raise DuplicateKeyError(
                        f"E11000 duplicate key error collection: {self.name} index: {'_'.join(fields)}",
                        11000,
                    )

    def _record(self, session, undo) -> None:
        if session is not None and session.in_transaction:
            session.undo.append(undo)

    async def insert_one(self, document: Dict[str, Any], session=None):
        await asyncio.sleep(0)
        explicit_id = "_id" in document
        document.setdefault("_id", ObjectId())
        stored = copy.deepcopy(document)
        self._check_unique(stored, check_id=explicit_id)
        self.docs.append(stored)
        self._record(session, lambda: self.docs.remove(stored))
        return type("InsertOneResult", (), {"inserted_id": stored["_id"]})()

    async def find_one(self, filter=None, projection=None, session=None, **kwargs):
        await asyncio.sleep(0)
        for doc in self.docs:
            if matches(doc, filter):
                return project(doc, projection)
        return None

    def find(self, filter=None, projection=None, session=None, **kwargs):
        return FakeCursor([d for d in self.docs if matches(d, filter)], projection)

    async def count_documents(self, filter=None, session=None, **kwargs):
        await asyncio.sleep(0)
        return sum(1 for d in self.docs if matches(d, filter))

    def _update(self, filter, update, upsert, session):
        for doc in self.docs:
            if matches(doc, filter):
                before = copy.deepcopy(doc)
                apply_update(doc, update)
                try:
                    self._check_unique(doc)
                except DuplicateKeyError:
                    doc.clear()
                    doc.update(before)
                    raise

                def restore(doc=doc, before=before):
                    doc.clear()
                    doc.update(before)

                self._record(session, restore)
                return before, doc
        if not upsert:
            return None, None
        doc = {
            k: copy.deepcopy(v) for k, v in (filter or {}).items()
            if not k.startswith("$") and not (isinstance(v, dict) and any(x.startswith("$") for x in v))
        }
        apply_update(doc, update, inserting=True)
        explicit_id = "_id" in doc
        doc.setdefault("_id", ObjectId())
        self._check_unique(doc, check_id=explicit_id)
        self.docs.append(doc)
        self._record(session, lambda: self.docs.remove(doc))
        return None, doc

    async def update_one(self, filter, update, upsert: bool = False, session=None, **kwargs):
        await asyncio.sleep(0)
        before, after = self._update(filter, update, upsert, session)
        return type("UpdateResult", (), {
            "matched_count": 1 if before is not None else 0,
            "modified_count": 1 if before is not None else 0,
            "upserted_id": after["_id"] if before is None and after is not None else None,
        })()

    async def find_one_and_update(
        self,
        filter,
        update,
        projection=None,
        return_document=ReturnDocument.BEFORE,
        upsert: bool = False,
        session=None,
        **kwargs,
    ):
        await asyncio.sleep(0)
        before, after = self._update(filter, update, upsert, session)
        if after is None:
            return None
        if return_document == ReturnDocument.AFTER:
            return project(after, projection)
        return project(before, projection) if before is not None else None


class FakeDatabase:
    def __init__(self, name: str = "billing_test"):
        self.name = name
        self._collections: Dict[str, FakeCollection] = {}

    def __getitem__(self, name: str) -> FakeCollection:
        if name not in self._collections:
            self._collections[name] = FakeCollection(name)
        return self._collections[name]

    def __getattr__(self, name: str) -> FakeCollection:
        if name.startswith("_"):
            raise AttributeError(name)
        return self[name]

    async def command(self, name: str, *args, **kwargs):
        await asyncio.sleep(0)
        return {"ok": 1.0}


class _FakeTransaction:
    def __init__(self, session: "FakeSession"):
        self.session = session

    async def __aenter__(self):
        self.session.in_transaction = True
        self.session.undo = []
        return self

    async def __aexit__(self, exc_type, exc, tb):
        self.session.in_transaction = False
        if exc_type is not None:
            for undo in reversed(self.session.undo):
                undo()
            self.session.aborted += 1
        else:
            self.session.committed += 1
        self.session.undo = []
        return False


class FakeSession:
    def __init__(self):
        self.in_transaction = False
        self.undo: List = []
        self.committed = 0
        self.aborted = 0

    def start_transaction(self):
        return _FakeTransaction(self)

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False


class FakeClient:
    def __init__(self, db: Optional[FakeDatabase] = None):
        self.db = db or FakeDatabase()
        self.sessions: List[FakeSession] = []

    def __getitem__(self, name: str) -> FakeDatabase:
        return self.db

    async def start_session(self):
        await asyncio.sleep(0)
        session = FakeSession()
        self.sessions.append(session)
        return session

    def close(self):
        pass
