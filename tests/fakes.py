import json
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from typing import Any, Dict, List, Optional, Tuple

import httpx
from pymongo.errors import DuplicateKeyError

from database import InMemoryTaskRepository


class FakeClock:
    """Settable UTC clock for stores and token services."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2025, 6, 2, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class FakeMonotonic:
    def __init__(self):
        self.value = 1000.0

    def __call__(self) -> float:
        return self.value


class LosingRaceRepository(InMemoryTaskRepository):
    """Task repository whose first `losses` replace() calls report a concurrent write."""

    def __init__(self, losses: int):
        super().__init__()
        self.losses = losses
        self.replace_calls = 0

    def replace(self, task, expected_version):
        self.replace_calls += 1
        if self.losses > 0:
            self.losses -= 1
            return False
        return super().replace(task, expected_version)


# pymongo stand-ins


def _matches(doc: Dict[str, Any], query: Dict[str, Any]) -> bool:
    return all(doc.get(k) == v for k, v in query.items())


class FakeCursor:
    def __init__(self, docs: List[Dict[str, Any]]):
        self.docs = docs

    def sort(self, keys: List[Tuple[str, int]]) -> "FakeCursor":
        for key, direction in reversed(keys):
            self.docs.sort(key=lambda d: d.get(key), reverse=direction < 0)
        return self

    def __iter__(self):
        return iter(self.docs)


class FakeCollection:
    """Just enough of pymongo's Collection for the repositories."""

    def __init__(self):
        self.docs: List[Dict[str, Any]] = []
        self.unique_fields: List[str] = []

    def create_index(self, keys, unique: bool = False):
        if unique:
            self.unique_fields.extend(k for k, _ in keys)
        return "_".join(k for k, _ in keys)

    def _check_unique(self, doc: Dict[str, Any], exclude_id: Any = None) -> None:
        for field in ["_id", *self.unique_fields]:
            for other in self.docs:
                if other["_id"] != exclude_id and other.get(field) == doc.get(field):
                    raise DuplicateKeyError(f"duplicate key on {field}")

    def find_one(self, query: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        for doc in self.docs:
            if _matches(doc, query):
                return json.loads(json.dumps(doc))
        return None

    def find(self, query: Dict[str, Any]) -> FakeCursor:
        return FakeCursor([json.loads(json.dumps(d)) for d in self.docs if _matches(d, query)])

    def insert_one(self, doc: Dict[str, Any]):
        self._check_unique(doc)
        self.docs.append(json.loads(json.dumps(doc)))
        return SimpleNamespace(inserted_id=doc["_id"])

    def replace_one(self, query: Dict[str, Any], doc: Dict[str, Any]):
        for i, existing in enumerate(self.docs):
            if _matches(existing, query):
                self._check_unique(doc, exclude_id=existing["_id"])
                self.docs[i] = json.loads(json.dumps(doc))
                return SimpleNamespace(matched_count=1, modified_count=1)
        return SimpleNamespace(matched_count=0, modified_count=0)

    def find_one_and_delete(self, query: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        for i, doc in enumerate(self.docs):
            if _matches(doc, query):
                return self.docs.pop(i)
        return None

    def count_documents(self, query: Dict[str, Any]) -> int:
        return sum(1 for d in self.docs if _matches(d, query))


class FakeDatabase(dict):
    def __missing__(self, name: str) -> FakeCollection:
        collection = self[name] = FakeCollection()
        return collection


# HTTP stand-ins


class FakeServer:
    """
    Scripted API for httpx.MockTransport.

    Routes map (method, path) to a list of responses consumed in order (the
    last one repeats) or to a callable taking the request. `online = False`
    makes every request fail with ConnectError.
    """

    def __init__(self):
        self.routes: Dict[Tuple[str, str], Any] = {}
        self.requests: List[httpx.Request] = []
        self.online = True

    def on(self, method: str, path: str, *responses: Any) -> None:
        if len(responses) == 1 and callable(responses[0]):
            self.routes[(method, path)] = responses[0]
        else:
            self.routes[(method, path)] = list(responses)

    def calls(self, method: str, path: str) -> List[httpx.Request]:
        return [r for r in self.requests if r.method == method and r.url.path == path]

    def handler(self, request: httpx.Request) -> httpx.Response:
        if not self.online:
            raise httpx.ConnectError("offline", request=request)
        self.requests.append(request)
        route = self.routes.get((request.method, request.url.path))
        if route is None:
            return httpx.Response(404, json={"success": False, "message": "Route not found"})
        if callable(route):
            return route(request)
        scripted = route.pop(0) if len(route) > 1 else route[0]
        if isinstance(scripted, Exception):
            raise scripted
        status, body = scripted
        return httpx.Response(status, json=body)

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


def json_body(request: httpx.Request) -> Any:
    return json.loads(request.content or b"null")


def task_doc(task_id: str, **fields: Any) -> Dict[str, Any]:
    doc = {
        "id": task_id,
        "ownerId": "u1",
        "title": f"Task {task_id}",
        "description": "",
        "status": "pending",
        "priority": "medium",
        "progress": 0,
        "createdAt": "2025-06-01T09:00:00Z",
        "updatedAt": "2025-06-01T09:00:00Z",
        "progressHistory": [],
        "timeEntries": [],
        "dailyUpdates": [],
        "totalTimeSpent": 0.0,
    }
    doc.update(fields)
    return doc
