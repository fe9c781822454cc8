"""
Python client for the TaskFlow API.

`ApiClient` wraps an httpx.Client: bearer tokens, bounded retry with linear
backoff for transient failures, one refresh-and-replay on an expired token,
and a fixed table of user-facing error messages.

`TaskService` sits on top with a short-lived response cache and the degraded
fallbacks the dashboard relies on when stats or analytics are unreachable.
"""
import copy
import json
import logging
import math
import time
import uuid
from typing import Any, Callable, Dict, List, Optional, Tuple

import httpx

from analytics import build_dashboard, compute_progress_analytics, compute_stats, is_overdue
from schemas import ProgressAnalytics, Task, TaskStats, utcnow

logger = logging.getLogger(__name__)

ERROR_MESSAGES = {
    "network": "Network error: Unable to connect to server",
    "timeout": "Request timeout. Please try again.",
    "unauthorized": "You are not authorized to perform this action",
    "forbidden": "Access denied",
    "not_found": "Resource not found",
    "conflict": "This item was changed elsewhere. Please reload and try again.",
    "validation": "Please check your input and try again",
    "server_error": "Internal server error",
    "generic": "Something went wrong. Please try again.",
}

AUTH_ENDPOINTS = ("/auth/login", "/auth/register", "/auth/refresh", "/auth/logout")

STATS_KEY = "task_stats"
ANALYTICS_KEY = "task_analytics"


def error_kind(status: Optional[int]) -> str:
    if status is None:
        return "generic"
    if status in (400, 422):
        return "validation"
    if status == 401:
        return "unauthorized"
    if status == 403:
        return "forbidden"
    if status == 404:
        return "not_found"
    if status == 409:
        return "conflict"
    if status >= 500:
        return "server_error"
    return "generic"


def _is_auth_endpoint(path: str) -> bool:
    return any(path.startswith(p) for p in AUTH_ENDPOINTS)


class ApiError(Exception):
    def __init__(
        self,
        message: str,
        status: Optional[int] = None,
        kind: str = "generic",
        original_message: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.status = status
        self.kind = kind
        self.original_message = original_message or message

    @property
    def retryable(self) -> bool:
        if self.kind in ("network", "timeout"):
            return True
        return self.status is not None and self.status >= 500


class ApiClient:
    def __init__(
        self,
        base_url: str = "http://localhost:8000/api",
        transport: Optional[httpx.BaseTransport] = None,
        timeout: float = 30.0,
        max_attempts: int = 3,
        backoff_seconds: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.http = httpx.Client(base_url=base_url.rstrip("/"), transport=transport, timeout=timeout)
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds
        self.sleep = sleep
        self.token: Optional[str] = None
        self.refresh_token: Optional[str] = None
        self.user: Optional[Dict[str, Any]] = None

    def close(self) -> None:
        self.http.close()

    def __enter__(self) -> "ApiClient":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    @property
    def is_authenticated(self) -> bool:
        return bool(self.token)

    # Session

    def set_session(self, data: Dict[str, Any]) -> None:
        self.token = data.get("token") or self.token
        self.refresh_token = data.get("refreshToken") or self.refresh_token
        if data.get("user"):
            self.user = data["user"]

    def clear_session(self) -> None:
        self.token = None
        self.refresh_token = None
        self.user = None

    # Transport

    def _headers(self, request_id: str) -> Dict[str, str]:
        headers = {"X-Request-Id": request_id}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    def _send(self, method: str, path: str, json_body: Any, params: Optional[Dict[str, Any]], request_id: str) -> httpx.Response:
        try:
            return self.http.request(method, path, json=json_body, params=params, headers=self._headers(request_id))
        except httpx.TimeoutException as exc:
            raise ApiError(ERROR_MESSAGES["timeout"], kind="timeout", original_message=str(exc)) from exc
        except httpx.TransportError as exc:
            raise ApiError(ERROR_MESSAGES["network"], kind="network", original_message=str(exc)) from exc

    def _parse(self, response: httpx.Response, path: str) -> Dict[str, Any]:
        try:
            data = response.json()
        except ValueError:
            data = {"message": response.text or response.reason_phrase}
        if not isinstance(data, dict):
            data = {"data": data}
        if response.is_success:
            return data

        server_message = data.get("message")
        kind = error_kind(response.status_code)
        if server_message and (kind == "validation" or _is_auth_endpoint(path)):
            message = server_message
        else:
            message = ERROR_MESSAGES[kind]
        raise ApiError(message, status=response.status_code, kind=kind, original_message=server_message)

    def _request_with_retry(
        self,
        method: str,
        path: str,
        json_body: Any,
        params: Optional[Dict[str, Any]],
        request_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        request_id = request_id or uuid.uuid4().hex
        for attempt in range(1, self.max_attempts + 1):
            try:
                return self._parse(self._send(method, path, json_body, params, request_id), path)
            except ApiError as exc:
                if not exc.retryable or attempt >= self.max_attempts:
                    raise
                delay = self.backoff_seconds * attempt
                logger.warning(
                    "%s %s failed kind=%s status=%s; retry %d/%d in %.1fs",
                    method, path, exc.kind, exc.status, attempt, self.max_attempts - 1, delay,
                )
                self.sleep(delay)
        raise ApiError(ERROR_MESSAGES["generic"])

    def request(
        self,
        method: str,
        path: str,
        json_body: Any = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        params = _clean_params(params)
        # One id per logical request, kept across retries and the post-refresh
        # replay, so a server or offline queue can spot duplicates
        request_id = uuid.uuid4().hex
        try:
            return self._request_with_retry(method, path, json_body, params, request_id)
        except ApiError as exc:
            if exc.status != 401 or _is_auth_endpoint(path):
                raise
            if not (self.token and self.refresh_token):
                self.clear_session()
                raise ApiError("Please log in to continue.", 401, "unauthorized", exc.original_message) from exc
            try:
                self.refresh_auth_token()
            except ApiError as refresh_exc:
                logger.warning("token refresh failed: %s", refresh_exc.original_message)
                self.clear_session()
                raise ApiError(
                    "Your session has expired. Please log in again.", 401, "unauthorized", exc.original_message
                ) from refresh_exc
            return self._request_with_retry(method, path, json_body, params, request_id)

    def get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        return self.request("GET", path, params=params)

    def post(self, path: str, data: Any = None) -> Dict[str, Any]:
        return self.request("POST", path, json_body=data)

    def put(self, path: str, data: Any = None) -> Dict[str, Any]:
        return self.request("PUT", path, json_body=data)

    def patch(self, path: str, data: Any = None) -> Dict[str, Any]:
        return self.request("PATCH", path, json_body=data)

    def delete(self, path: str) -> Dict[str, Any]:
        return self.request("DELETE", path)

    # Auth

    def register(self, email: str, password: str, name: Optional[str] = None) -> Dict[str, Any]:
        body = {"email": email, "password": password}
        if name:
            body["name"] = name
        data = self.post("/auth/register", body)
        self.set_session(data)
        return data

    def login(self, email: str, password: str) -> Dict[str, Any]:
        data = self.post("/auth/login", {"email": email, "password": password})
        self.set_session(data)
        return data

    def refresh_auth_token(self) -> Dict[str, Any]:
        if not self.refresh_token:
            raise ApiError("No refresh token available", 401, "unauthorized")
        data = self._request_with_retry("POST", "/auth/refresh", {"refreshToken": self.refresh_token}, None)
        if not data.get("token"):
            raise ApiError("Invalid refresh response", kind="generic")
        self.set_session(data)
        return data

    def get_profile(self) -> Dict[str, Any]:
        data = self.get("/auth/profile")
        self.user = data.get("user", self.user)
        return data

    def logout(self) -> None:
        try:
            if self.token:
                self.post("/auth/logout")
        except ApiError as exc:
            logger.info("logout request failed, clearing session anyway: %s", exc.message)
        finally:
            self.clear_session()


def _clean_params(params: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not params:
        return None
    out = {}
    for key, value in params.items():
        if value is None or value == "":
            continue
        if isinstance(value, (list, tuple, set)):
            value = ",".join(str(v) for v in value)
        elif isinstance(value, bool):
            value = "true" if value else "false"
        out[key] = value
    return out or None


def _tasks_from(docs: List[Dict[str, Any]]) -> List[Task]:
    return [Task.model_validate(d) for d in docs]


def _lists_task(data: Any, task_id: str) -> bool:
    if not isinstance(data, dict) or not isinstance(data.get("tasks"), list):
        return False
    return any(isinstance(t, dict) and t.get("id") == task_id for t in data["tasks"])


def _sanitize_items(items: Optional[List[Any]]) -> List[str]:
    return [str(i).strip() for i in (items or []) if i is not None and str(i).strip()]


class TaskService:
    """Task operations over `ApiClient` with a time-boxed response cache."""

    def __init__(self, api: ApiClient, ttl_seconds: float = 300.0, clock: Callable[[], float] = time.monotonic):
        self.api = api
        self.ttl_seconds = ttl_seconds
        self.clock = clock
        self._cache: Dict[str, Tuple[float, Any]] = {}
        # Last unfiltered task list seen; feeds the offline fallbacks
        self._last_tasks: List[Task] = []

    # Cache

    def _cached(self, key: str) -> Optional[Any]:
        entry = self._cache.get(key)
        if entry is None:
            return None
        stored_at, data = entry
        if self.clock() - stored_at >= self.ttl_seconds:
            del self._cache[key]
            return None
        return copy.deepcopy(data)

    def _store(self, key: str, data: Any) -> None:
        self._cache[key] = (self.clock(), copy.deepcopy(data))

    def invalidate_cache(self) -> None:
        self._cache.clear()

    def invalidate_task_cache(self, task_id: str) -> None:
        for key, (_, data) in list(self._cache.items()):
            if key == f"task_{task_id}" or key.startswith((STATS_KEY, ANALYTICS_KEY)) or _lists_task(data, task_id):
                del self._cache[key]

    def cache_stats(self) -> Dict[str, Any]:
        return {"size": len(self._cache), "keys": list(self._cache), "ttlSeconds": self.ttl_seconds}

    # Reads

    def get_all_tasks(self, filters: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        filters = dict(filters or {})
        key = json.dumps(filters, sort_keys=True, default=str)
        cached = self._cached(key)
        if cached is not None:
            return cached
        data = self.api.get("/tasks", params=filters)
        data.setdefault("tasks", [])
        data.setdefault("total", len(data["tasks"]))
        if not filters:
            self._last_tasks = _tasks_from(data["tasks"])
        self._store(key, data)
        return data

    def get_task(self, task_id: str) -> Dict[str, Any]:
        key = f"task_{task_id}"
        cached = self._cached(key)
        if cached is not None:
            return cached
        data = self.api.get(f"/tasks/{task_id}")
        self._store(key, data)
        return data

    def _fallback_tasks(self) -> List[Task]:
        if self._last_tasks:
            return list(self._last_tasks)
        try:
            self.get_all_tasks()
        except ApiError as exc:
            logger.warning("no task list for local fallback: %s", exc.message)
        return list(self._last_tasks)

    def get_task_stats(self) -> Dict[str, Any]:
        cached = self._cached(STATS_KEY)
        if cached is not None:
            return cached
        try:
            data = self.api.get("/tasks/stats")
        except ApiError as exc:
            logger.warning("stats unavailable, computing locally: %s", exc.message)
            stats = compute_stats(self._fallback_tasks(), now=utcnow())
            return {"success": True, "stats": stats.to_public(), "degraded": True, "message": "Statistics computed locally"}
        self._store(STATS_KEY, data)
        return data

    def get_analytics(self, task_id: Optional[str] = None) -> Dict[str, Any]:
        key = ANALYTICS_KEY if task_id is None else f"{ANALYTICS_KEY}_{task_id}"
        cached = self._cached(key)
        if cached is not None:
            return cached
        try:
            data = self.api.get("/tasks/analytics", params={"taskId": task_id})
        except ApiError as exc:
            logger.warning("analytics unavailable, computing locally: %s", exc.message)
            tasks = self._fallback_tasks()
            if task_id is not None:
                tasks = [t for t in tasks if t.id == task_id]
            analytics = compute_progress_analytics(tasks)
            return {"success": True, "analytics": analytics.to_public(), "degraded": True, "message": "Analytics computed locally"}
        self._store(key, data)
        return data

    def get_recent_activity(self, limit: int = 10) -> Dict[str, Any]:
        return self.get_all_tasks({"limit": limit, "sortBy": "lastWorkedOn", "sortOrder": "desc"})

    def get_overdue_tasks(self) -> Dict[str, Any]:
        data = self.get_all_tasks({"status": "pending,in-progress", "sortBy": "dueDate", "sortOrder": "asc"})
        now = utcnow()
        overdue = [doc for doc, task in zip(data["tasks"], _tasks_from(data["tasks"])) if is_overdue(task, now)]
        return {"success": True, "tasks": overdue, "total": len(overdue), "message": "Overdue tasks retrieved successfully"}

    def search_tasks(self, query: str, filters: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        return self.get_all_tasks({"search": query, **(filters or {})})

    def get_dashboard(self) -> Dict[str, Any]:
        """Dashboard widgets from the server aggregates, or from the last task list when offline."""
        try:
            tasks = _tasks_from(self.get_all_tasks()["tasks"])
            stats = TaskStats.model_validate(self._fetch(STATS_KEY, "/tasks/stats")["stats"])
            analytics = ProgressAnalytics.model_validate(self._fetch(ANALYTICS_KEY, "/tasks/analytics")["analytics"])
            degraded = False
        except ApiError as exc:
            logger.warning("dashboard degraded to cached tasks: %s", exc.message)
            tasks = list(self._last_tasks)
            stats = compute_stats(tasks, now=utcnow())
            analytics = compute_progress_analytics(tasks)
            degraded = True
        dashboard = build_dashboard(stats, analytics, tasks)
        dashboard["degraded"] = degraded
        return dashboard

    def _fetch(self, key: str, path: str) -> Dict[str, Any]:
        cached = self._cached(key)
        if cached is not None:
            return cached
        data = self.api.get(path)
        self._store(key, data)
        return data

    # Writes

    def create_task(self, task: Dict[str, Any]) -> Dict[str, Any]:
        data = self.api.post("/tasks", task)
        self.invalidate_cache()
        return data

    def update_task(self, task_id: str, changes: Dict[str, Any]) -> Dict[str, Any]:
        data = self.api.put(f"/tasks/{task_id}", changes)
        self.invalidate_task_cache(task_id)
        return data

    def update_task_status(self, task_id: str, status: str) -> Dict[str, Any]:
        if status not in ("pending", "in-progress", "completed"):
            raise ApiError(f"Invalid status: {status}", kind="validation")
        data = self.api.patch(f"/tasks/{task_id}", {"status": status})
        self.invalidate_task_cache(task_id)
        return data

    def update_progress(self, task_id: str, progress: int, note: str = "") -> Dict[str, Any]:
        if isinstance(progress, bool) or not isinstance(progress, (int, float)) or not 0 <= progress <= 100:
            raise ApiError("Progress must be between 0 and 100", kind="validation")
        if isinstance(progress, float) and not progress.is_integer():
            raise ApiError("Progress must be a whole number", kind="validation")
        data = self.api.patch(f"/tasks/{task_id}/progress", {"progress": int(progress), "note": note or ""})
        self.invalidate_task_cache(task_id)
        return data

    def add_time_entry(self, task_id: str, hours: float, description: str = "") -> Dict[str, Any]:
        if isinstance(hours, bool) or not isinstance(hours, (int, float)) or not math.isfinite(hours) or hours <= 0:
            raise ApiError("Hours must be greater than 0", kind="validation")
        data = self.api.post(f"/tasks/{task_id}/time", {"hours": float(hours), "description": description or ""})
        self.invalidate_task_cache(task_id)
        return data

    def add_daily_update(self, task_id: str, update: Dict[str, Any]) -> Dict[str, Any]:
        body = {
            "workedOn": bool(update.get("workedOn")),
            "accomplishments": _sanitize_items(update.get("accomplishments")),
            "blockers": _sanitize_items(update.get("blockers")),
            "nextSteps": _sanitize_items(update.get("nextSteps")),
            "mood": update.get("mood") or "neutral",
        }
        if update.get("status"):
            body["status"] = update["status"]
        data = self.api.post(f"/tasks/{task_id}/daily-update", body)
        self.invalidate_task_cache(task_id)
        return data

    def delete_task(self, task_id: str) -> Dict[str, Any]:
        data = self.api.delete(f"/tasks/{task_id}")
        self.invalidate_cache()
        return data
