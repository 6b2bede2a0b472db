"""
Pytest configuration and shared test helpers for backend tests.

InMemoryDB stands in for the motor database: enough of the collection API
(find_one, insert_one, update_one, find_one_and_update, find().sort().limit())
and query operators for the notification services to run unmodified.
"""
import copy
import os
import sys
from pathlib import Path
from types import SimpleNamespace
from unittest.mock import patch

# Skip heavy server startup (MongoDB, scheduler) when running under pytest.
os.environ.setdefault("PYTEST_RUNNING", "1")
os.environ.setdefault("NOTIFICATION_PROVIDER_MODE", "mock")

backend_root = Path(__file__).resolve().parent.parent
if str(backend_root) not in sys.path:
    sys.path.insert(0, str(backend_root))

import pytest
from pymongo import ReturnDocument

_MISSING = object()


def _get(doc, key):
    value = doc
    for part in key.split("."):
        if not isinstance(value, dict) or part not in value:
            return _MISSING
        value = value[part]
    return value


def _expr_value(doc, operand):
    if isinstance(operand, str) and operand.startswith("$"):
        value = _get(doc, operand[1:])
        return None if value is _MISSING else value
    return operand


def _match_operator(value, op, arg):
    present = value is not _MISSING
    v = value if present else None
    if op == "$ne":
        return v != arg
    if op == "$in":
        return v in arg
    if op == "$exists":
        return present == bool(arg)
    if v is None:
        return False
    if op == "$lte":
        return v <= arg
    if op == "$lt":
        return v < arg
    if op == "$gte":
        return v >= arg
    if op == "$gt":
        return v > arg
    raise NotImplementedError(op)


def matches(doc, query):
    for key, cond in query.items():
        if key == "$or":
            if not any(matches(doc, sub) for sub in cond):
                return False
            continue
        if key == "$and":
            if not all(matches(doc, sub) for sub in cond):
                return False
            continue
        if key == "$expr":
            (op, (left, right)), = cond.items()
            if not _match_operator(_expr_value(doc, left), op, _expr_value(doc, right)):
                return False
            continue
        value = _get(doc, key)
        if isinstance(cond, dict) and cond and all(k.startswith("$") for k in cond):
            if not all(_match_operator(value, op, arg) for op, arg in cond.items()):
                return False
        elif (None if value is _MISSING else value) != cond:
            return False
    return True


def _project(doc, projection):
    doc = copy.deepcopy(doc)
    if not projection:
        return doc
    included = [k for k, v in projection.items() if v and k != "_id"]
    if included:
        return {k: doc[k] for k in included if k in doc}
    return {k: v for k, v in doc.items() if projection.get(k, 1)}


class _Cursor:
    def __init__(self, docs):
        self._docs = docs

    def sort(self, key, direction=1):
        self._docs.sort(key=lambda d: (d.get(key) is None, d.get(key)), reverse=direction < 0)
        return self

    def limit(self, n):
        if n:
            self._docs = self._docs[:n]
        return self

    async def to_list(self, length=None):
        return self._docs[:length] if length else list(self._docs)


class InMemoryCollection:
    def __init__(self):
        self.docs = []

    def _apply_update(self, doc, update, inserting=False):
        for key, value in update.get("$set", {}).items():
            doc[key] = copy.deepcopy(value)
        if inserting:
            for key, value in update.get("$setOnInsert", {}).items():
                doc[key] = copy.deepcopy(value)
        for key in update.get("$unset", {}):
            doc.pop(key, None)
        for key, value in update.get("$inc", {}).items():
            doc[key] = doc.get(key, 0) + value

    async def insert_one(self, doc, **kw):
        self.docs.append(copy.deepcopy(doc))
        return SimpleNamespace(inserted_id=len(self.docs))

    async def find_one(self, query=None, projection=None, **kw):
        for doc in self.docs:
            if matches(doc, query or {}):
                return _project(doc, projection)
        return None

    def find(self, query=None, projection=None, **kw):
        return _Cursor([_project(d, projection) for d in self.docs if matches(d, query or {})])

    async def count_documents(self, query, **kw):
        return sum(1 for d in self.docs if matches(d, query))

    async def update_one(self, query, update, upsert=False, **kw):
        for doc in self.docs:
            if matches(doc, query):
                before = copy.deepcopy(doc)
                self._apply_update(doc, update)
                return SimpleNamespace(matched_count=1, modified_count=int(before != doc), upserted_id=None)
        if upsert:
            doc = {k: v for k, v in query.items() if not k.startswith("$") and not isinstance(v, dict)}
            self._apply_update(doc, update, inserting=True)
            self.docs.append(doc)
            return SimpleNamespace(matched_count=0, modified_count=0, upserted_id=len(self.docs))
        return SimpleNamespace(matched_count=0, modified_count=0, upserted_id=None)

    async def find_one_and_update(self, query, update, projection=None, return_document=ReturnDocument.BEFORE, **kw):
        for doc in self.docs:
            if matches(doc, query):
                before = _project(doc, projection)
                self._apply_update(doc, update)
                return _project(doc, projection) if return_document == ReturnDocument.AFTER else before
        return None


class InMemoryDB:
    def __init__(self):
        self._collections = {}

    def __getitem__(self, name):
        return self._collections.setdefault(name, InMemoryCollection())

    def __getattr__(self, name):
        if name.startswith("_"):
            raise AttributeError(name)
        return self[name]


@pytest.fixture
def store():
    """Fresh in-memory database wired into every service via database.get_db()."""
    from database import database

    db = InMemoryDB()
    with patch.object(database, "get_db", return_value=db):
        yield db


@pytest.fixture
def seeded_store(store):
    """store with the starter templates from database.DEFAULT_TEMPLATES."""
    from database import DEFAULT_TEMPLATES
    from models import utc_now

    for t in DEFAULT_TEMPLATES:
        store.notification_templates.docs.append({
            "subject_template": None,
            "html_template": None,
            "is_active": True,
            "version": 1,
            "updated_at": utc_now(),
            **copy.deepcopy(t),
        })
    return store


@pytest.fixture
def client():
    """Return a TestClient for the main FastAPI app (server:app). Use for unit-style API tests."""
    from fastapi.testclient import TestClient
    from server import app

    return TestClient(app)
