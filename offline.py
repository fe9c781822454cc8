"""
Offline support for the API client, as an httpx transport.

GETs under the API prefix go to the network first; successful answers are
remembered by URL and served back when the network fails or answers with an
error other than 401. Mutations that cannot reach the server (or that it
refuses for a reason other than authentication) are written to a
SQLite-backed queue and replayed, oldest first, by `sync()`.

Wire it in with ``ApiClient(base_url, transport=OfflineSyncTransport(...))``.
"""
import json
import logging
import sqlite3
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Tuple, Union

import httpx

from schemas import utcnow

logger = logging.getLogger(__name__)

QUEUED_METHODS = ("POST", "PUT", "PATCH", "DELETE")

# Left to the client: it refreshes its token and retries with a fresh header
UNAUTHORIZED = 401

# Dropped when re-serving a body that httpx has already decoded
_STALE_HEADERS = ("content-encoding", "content-length", "transfer-encoding")


@dataclass
class QueuedRequest:
    id: int
    method: str
    url: str
    headers: Dict[str, str]
    body: bytes
    timestamp: str

    @property
    def request_id(self) -> Optional[str]:
        return self.headers.get("x-request-id")

    def to_request(self) -> httpx.Request:
        return httpx.Request(self.method, self.url, headers=self.headers, content=self.body)


@dataclass
class SyncReport:
    attempted: int = 0
    succeeded: int = 0
    failed: int = 0


class PendingRequestQueue:
    """
    Durable FIFO of requests waiting to be replayed.

    One connection is held for the queue's lifetime (so ":memory:" works) and
    guarded by a lock; sqlite3 is told not to pin it to the creating thread.
    """

    def __init__(self, path: Union[str, Path] = ":memory:"):
        self.path = str(path)
        if self.path != ":memory:":
            Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(self.path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._ensure_schema()

    def _ensure_schema(self) -> None:
        with self._lock, self._conn:
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS pending_requests (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    method TEXT NOT NULL,
                    url TEXT NOT NULL,
                    headers TEXT NOT NULL DEFAULT '{}',
                    body BLOB NOT NULL DEFAULT X'',
                    request_id TEXT,
                    timestamp TEXT NOT NULL
                )
                """
            )
            self._conn.execute("CREATE INDEX IF NOT EXISTS idx_pending_request_id ON pending_requests(request_id)")

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def enqueue(self, request: httpx.Request) -> Optional[int]:
        """Store a request; a request id already waiting in the queue is not stored twice."""
        headers = dict(request.headers)
        request_id = headers.get("x-request-id")
        with self._lock, self._conn:
            if request_id:
                row = self._conn.execute(
                    "SELECT id FROM pending_requests WHERE request_id = ?", (request_id,)
                ).fetchone()
                if row is not None:
                    return None
            cur = self._conn.execute(
                "INSERT INTO pending_requests (method, url, headers, body, request_id, timestamp) VALUES (?, ?, ?, ?, ?, ?)",
                (request.method, str(request.url), json.dumps(headers), request.read(), request_id, utcnow().isoformat()),
            )
            return cur.lastrowid

    def pending(self) -> List[QueuedRequest]:
        with self._lock:
            rows = self._conn.execute("SELECT * FROM pending_requests ORDER BY id ASC").fetchall()
        return [
            QueuedRequest(
                id=row["id"],
                method=row["method"],
                url=row["url"],
                headers=json.loads(row["headers"]),
                body=bytes(row["body"]),
                timestamp=row["timestamp"],
            )
            for row in rows
        ]

    def remove(self, entry_id: int) -> None:
        with self._lock, self._conn:
            self._conn.execute("DELETE FROM pending_requests WHERE id = ?", (entry_id,))

    def discard_request_id(self, request_id: str) -> int:
        with self._lock, self._conn:
            cur = self._conn.execute("DELETE FROM pending_requests WHERE request_id = ?", (request_id,))
            return cur.rowcount

    def __len__(self) -> int:
        with self._lock:
            return self._conn.execute("SELECT COUNT(*) FROM pending_requests").fetchone()[0]


def _json_response(status_code: int, payload: dict) -> httpx.Response:
    return httpx.Response(status_code, json=payload)


class OfflineSyncTransport(httpx.BaseTransport):
    def __init__(self, inner: httpx.BaseTransport, queue: PendingRequestQueue, api_prefix: str = "/api"):
        self.inner = inner
        self.queue = queue
        self.api_prefix = api_prefix
        self._responses: Dict[str, Tuple[int, List[Tuple[str, str]], bytes]] = {}
        self._sync_lock = threading.Lock()

    def close(self) -> None:
        self.inner.close()

    def handle_request(self, request: httpx.Request) -> httpx.Response:
        if not request.url.path.startswith(self.api_prefix):
            return self.inner.handle_request(request)
        if request.method == "GET":
            return self._get(request)
        return self._mutate(request)

    def _forward(self, request: httpx.Request) -> httpx.Response:
        response = self.inner.handle_request(request)
        try:
            content = response.read()
        finally:
            response.close()
        headers = [(k, v) for k, v in response.headers.multi_items() if k.lower() not in _STALE_HEADERS]
        return httpx.Response(response.status_code, headers=headers, content=content, request=request)

    def _remember(self, url: str, response: httpx.Response) -> None:
        self._responses[url] = (response.status_code, list(response.headers.multi_items()), response.content)

    def _replay_cached(self, request: httpx.Request) -> Optional[httpx.Response]:
        cached = self._responses.get(str(request.url))
        if cached is None:
            return None
        status_code, headers, content = cached
        logger.info("serving %s from offline cache", request.url.path)
        return httpx.Response(status_code, headers=headers, content=content, request=request)

    def _get(self, request: httpx.Request) -> httpx.Response:
        try:
            response = self._forward(request)
        except httpx.TransportError as exc:
            logger.warning("GET %s unreachable: %s", request.url.path, exc)
            cached = self._replay_cached(request)
            if cached is not None:
                return cached
            return _json_response(503, {"success": False, "message": "No network connection and no cached data available"})
        if response.is_success:
            self._remember(str(request.url), response)
            return response
        if response.status_code == UNAUTHORIZED:
            return response
        return self._replay_cached(request) or response

    def _mutate(self, request: httpx.Request) -> httpx.Response:
        try:
            response = self._forward(request)
        except httpx.TransportError as exc:
            logger.warning("%s %s unreachable, queued: %s", request.method, request.url.path, exc)
            self.queue.enqueue(request)
            return _json_response(
                202,
                {"success": False, "queued": True, "message": "Request queued; it will be sent when the connection is back"},
            )
        request_id = request.headers.get("x-request-id")
        if response.is_success:
            # a retry got through; drop any copy an earlier attempt queued
            if request_id:
                self.queue.discard_request_id(request_id)
        elif request.method in QUEUED_METHODS and response.status_code != UNAUTHORIZED:
            logger.warning("%s %s answered %s, queued", request.method, request.url.path, response.status_code)
            self.queue.enqueue(request)
        return response

    def sync(self) -> SyncReport:
        """Replay queued requests once each, oldest first; failures stay queued."""
        report = SyncReport()
        if not self._sync_lock.acquire(blocking=False):
            logger.info("sync already running")
            return report
        try:
            for entry in self.queue.pending():
                report.attempted += 1
                try:
                    response = self._forward(entry.to_request())
                except httpx.TransportError as exc:
                    logger.warning("replay #%d %s %s failed: %s", entry.id, entry.method, entry.url, exc)
                    report.failed += 1
                    continue
                if response.is_success:
                    self.queue.remove(entry.id)
                    report.succeeded += 1
                else:
                    logger.warning("replay #%d %s %s answered %s", entry.id, entry.method, entry.url, response.status_code)
                    report.failed += 1
        finally:
            self._sync_lock.release()
        logger.info("sync attempted=%d succeeded=%d failed=%d", report.attempted, report.succeeded, report.failed)
        return report

    def on_reconnect(self) -> SyncReport:
        return self.sync()
