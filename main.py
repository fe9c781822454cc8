import logging
import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import uvicorn
from fastapi import APIRouter, Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from auth import AuthGateway, TokenService, get_auth_gateway, get_current_user
from config import LOCAL_ORIGIN_REGEX, Settings, get_settings
from database import create_repositories
from errors import InternalError, NotFound, TaskFlowError, ValidationError
from logging_setup import setup_logging
from schemas import (
    DailyUpdateBody,
    LoginBody,
    ProfileBody,
    ProgressBody,
    RefreshBody,
    RegisterBody,
    TaskCreate,
    TaskPatch,
    TimeBody,
    User,
    utcnow,
)
from store import CredentialStore, TaskStore, seed_demo_data

logger = logging.getLogger(__name__)

API_VERSION = "2.0.0"
FEATURES = ["progress-tracking", "time-tracking", "daily-updates", "analytics"]

# Body fields whose absence gets a friendlier message than "<field> is required"
REQUIRED_MESSAGES = {"title": "Task title is required"}


def success(message: str, **payload: Any) -> Dict[str, Any]:
    return {"success": True, **payload, "message": message}


def failure(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "message": message})


def get_credentials(request: Request) -> CredentialStore:
    return request.app.state.credentials


def get_task_store(request: Request) -> TaskStore:
    return request.app.state.tasks


def _request_context(request: Request) -> str:
    route = request.scope.get("route")
    op = getattr(route, "name", None) or request.url.path
    user_id = getattr(request.state, "user_id", None) or "-"
    task_id = request.path_params.get("task_id", "-")
    return f"op={op} user={user_id} task={task_id}"


# Task list query

def _is_date_field(name: str) -> bool:
    return "date" in name.lower() or name.endswith("At") or name.endswith("On")


def _sort_value(value: Any, as_date: bool) -> Any:
    if as_date and isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return value
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return value


def query_tasks(
    tasks: List[Dict[str, Any]],
    status: Optional[str] = None,
    priority: Optional[str] = None,
    search: Optional[str] = None,
    sort_by: Optional[str] = None,
    sort_order: str = "asc",
    limit: Optional[int] = None,
) -> List[Dict[str, Any]]:
    """
    Filter, sort and truncate public task dicts, in that order.

    `status` is a comma-separated OR-list; `search` matches title or
    description case-insensitively. Sorting is on a camelCase field; tasks
    without a scalar value for it go last whichever the order.
    """
    if status:
        wanted = {s.strip() for s in status.split(",") if s.strip()}
        tasks = [t for t in tasks if t["status"] in wanted]
    if priority:
        tasks = [t for t in tasks if t["priority"] == priority]
    if search:
        needle = search.lower()
        tasks = [
            t for t in tasks
            if needle in t["title"].lower() or needle in (t.get("description") or "").lower()
        ]
    if sort_by:
        as_date = _is_date_field(sort_by)
        sortable = [t for t in tasks if isinstance(t.get(sort_by), (str, int, float))]
        rest = [t for t in tasks if not isinstance(t.get(sort_by), (str, int, float))]
        sortable.sort(key=lambda t: _sort_value(t[sort_by], as_date), reverse=sort_order == "desc")
        tasks = sortable + rest
    if limit is not None:
        tasks = tasks[:limit]
    return tasks


# Auth routes
auth_router = APIRouter(prefix="/auth")


@auth_router.post("/register", status_code=201)
def register(
    body: RegisterBody,
    credentials: CredentialStore = Depends(get_credentials),
    gateway: AuthGateway = Depends(get_auth_gateway),
):
    if not body.email or not body.password:
        raise ValidationError("Email and password are required")
    user = credentials.create(body.email, body.password, name=body.name)
    token, refresh_token = gateway.issue_tokens(user)
    logger.info("registered user=%s", user.id)
    return success("User registered successfully", user=user.to_public(), token=token, refreshToken=refresh_token)


@auth_router.post("/login")
def login(
    body: LoginBody,
    credentials: CredentialStore = Depends(get_credentials),
    gateway: AuthGateway = Depends(get_auth_gateway),
):
    if not body.email or not body.password:
        raise ValidationError("Email and password are required")
    user = credentials.find_by_email(body.email)
    if user is None or not credentials.verify_password(user, body.password):
        return failure(401, "Invalid email or password")
    token, refresh_token = gateway.issue_tokens(user)
    return success("Login successful", user=user.to_public(), token=token, refreshToken=refresh_token)


@auth_router.get("/profile")
def get_profile(user: User = Depends(get_current_user)):
    return success("Profile retrieved successfully", user=user.to_public())


@auth_router.put("/profile")
def update_profile(
    body: ProfileBody,
    user: User = Depends(get_current_user),
    credentials: CredentialStore = Depends(get_credentials),
):
    updated = credentials.update_profile(user.id, name=body.name, email=body.email)
    return success("Profile updated successfully", user=updated.to_public())


@auth_router.post("/refresh")
def refresh(body: Optional[RefreshBody] = None, gateway: AuthGateway = Depends(get_auth_gateway)):
    token, refresh_token, user = gateway.refresh(body.refresh_token if body else None)
    return success("Token refreshed successfully", token=token, refreshToken=refresh_token, user=user.to_public())


@auth_router.post("/logout")
def logout():
    # Tokens are stateless; the client drops its copies.
    return success("Logged out successfully")


# Tasks
task_router = APIRouter(prefix="/tasks")


@task_router.get("/health")
def task_health(request: Request):
    return success(
        "Task service is healthy",
        timestamp=utcnow().isoformat(),
        totalTasks=request.app.state.tasks.count(),
        totalUsers=request.app.state.credentials.count(),
        service="TaskService",
        version=API_VERSION,
        features=FEATURES,
    )


@task_router.get("")
def list_tasks(
    status: Optional[str] = None,
    priority: Optional[str] = None,
    search: Optional[str] = None,
    limit: Optional[int] = Query(None, ge=1),
    sort_by: Optional[str] = Query(None, alias="sortBy"),
    sort_order: str = Query("asc", alias="sortOrder"),
    user: User = Depends(get_current_user),
    store: TaskStore = Depends(get_task_store),
):
    docs = [t.to_public() for t in store.find_all_by_owner(user.id)]
    docs = query_tasks(docs, status, priority, search, sort_by, sort_order, limit)
    return success("Tasks retrieved successfully", tasks=docs, total=len(docs))


@task_router.get("/stats")
def task_stats(user: User = Depends(get_current_user), store: TaskStore = Depends(get_task_store)):
    return success("Statistics retrieved successfully", stats=store.get_stats(user.id).to_public())


@task_router.get("/analytics")
def task_analytics(
    task_id: Optional[str] = Query(None, alias="taskId"),
    user: User = Depends(get_current_user),
    store: TaskStore = Depends(get_task_store),
):
    analytics = store.get_progress_analytics(user.id, task_id)
    return success("Analytics retrieved successfully", analytics=analytics.to_public())


@task_router.post("", status_code=201)
def create_task(body: TaskCreate, user: User = Depends(get_current_user), store: TaskStore = Depends(get_task_store)):
    task = store.create(body, user.id)
    return success("Task created successfully", task=task.to_public())


@task_router.get("/{task_id}")
def get_task(task_id: str, user: User = Depends(get_current_user), store: TaskStore = Depends(get_task_store)):
    task = store.find_by_id_for_owner(task_id, user.id)
    if task is None:
        raise NotFound()
    return success("Task retrieved successfully", task=task.to_public())


@task_router.put("/{task_id}")
@task_router.patch("/{task_id}")
def update_task(
    task_id: str,
    body: TaskPatch,
    user: User = Depends(get_current_user),
    store: TaskStore = Depends(get_task_store),
):
    task = store.update(task_id, user.id, body)
    return success("Task updated successfully", task=task.to_public())


@task_router.delete("/{task_id}")
def delete_task(task_id: str, user: User = Depends(get_current_user), store: TaskStore = Depends(get_task_store)):
    task = store.delete(task_id, user.id)
    return success("Task deleted successfully", task=task.to_public())


@task_router.patch("/{task_id}/progress")
def update_progress(
    task_id: str,
    body: ProgressBody,
    user: User = Depends(get_current_user),
    store: TaskStore = Depends(get_task_store),
):
    task = store.add_progress_update(task_id, user.id, body.progress, body.note)
    return success("Progress updated successfully", task=task.to_public())


@task_router.post("/{task_id}/time")
def add_time_entry(
    task_id: str,
    body: TimeBody,
    user: User = Depends(get_current_user),
    store: TaskStore = Depends(get_task_store),
):
    task = store.add_time_entry(task_id, user.id, body.hours, body.description)
    return success("Time entry added successfully", task=task.to_public())


@task_router.post("/{task_id}/daily-update")
def add_daily_update(
    task_id: str,
    body: DailyUpdateBody,
    user: User = Depends(get_current_user),
    store: TaskStore = Depends(get_task_store),
):
    task = store.add_daily_update(task_id, user.id, body)
    return success("Daily update added successfully", task=task.to_public())


# Service
service_router = APIRouter()


@service_router.get("/")
def root(request: Request):
    return {
        "message": "TaskFlow API is running!",
        "version": request.app.version,
        "timestamp": utcnow().isoformat(),
        "endpoints": {"auth": "/api/auth", "tasks": "/api/tasks", "health": "/api/health"},
    }


@service_router.get("/api/health")
def health(request: Request):
    return success(
        "Server is healthy",
        timestamp=utcnow().isoformat(),
        uptime=round(time.monotonic() - request.app.state.started_at, 3),
        storage="in-memory" if request.app.state.settings.in_memory else "mongodb",
    )


# Error handlers

async def handle_taskflow_error(request: Request, exc: TaskFlowError):
    logger.warning("%s status=%s %s", _request_context(request), exc.status_code, exc.message)
    return failure(exc.status_code, exc.message)


def _validation_message(exc: RequestValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return ValidationError.default_message
    first = errors[0]
    if first.get("type") == "json_invalid":
        return "Invalid JSON body"
    field = ".".join(str(p) for p in first.get("loc", ()) if p not in ("body", "query", "path"))
    if first.get("type") == "missing":
        if not field:
            return "Request body is required"
        return REQUIRED_MESSAGES.get(field, f"{field} is required")
    return f"{field}: {first['msg']}" if field else first["msg"]


async def handle_validation_error(request: Request, exc: RequestValidationError):
    message = _validation_message(exc)
    logger.warning("%s status=400 %s", _request_context(request), message)
    return failure(400, message)


async def handle_http_error(request: Request, exc: StarletteHTTPException):
    if exc.status_code == 404:
        message = f"Route {request.method} {request.url.path} not found"
    else:
        message = str(exc.detail)
    return failure(exc.status_code, message)


async def handle_unexpected_error(request: Request, exc: Exception):
    logger.exception("%s status=500 unhandled error", _request_context(request))
    return failure(InternalError.status_code, InternalError.default_message)


async def log_requests(request: Request, call_next):
    started = time.perf_counter()
    response = await call_next(request)
    logger.info(
        "%s %s status=%s duration_ms=%.1f user=%s",
        request.method,
        request.url.path,
        response.status_code,
        (time.perf_counter() - started) * 1000,
        getattr(request.state, "user_id", None) or "-",
    )
    return response


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or get_settings()

    users, tasks = create_repositories(settings)
    credentials = CredentialStore(users, bcrypt_rounds=settings.bcrypt_rounds)
    task_store = TaskStore(tasks)
    if settings.seed_demo_data:
        seed_demo_data(credentials, task_store)

    app = FastAPI(title="TaskFlow API", version=API_VERSION)
    app.state.settings = settings
    app.state.credentials = credentials
    app.state.tasks = task_store
    app.state.auth = AuthGateway(TokenService.from_settings(settings), credentials)
    app.state.started_at = time.monotonic()

    app.middleware("http")(log_requests)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_origin_regex=LOCAL_ORIGIN_REGEX,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=["*"],
    )

    app.add_exception_handler(TaskFlowError, handle_taskflow_error)
    app.add_exception_handler(RequestValidationError, handle_validation_error)
    app.add_exception_handler(StarletteHTTPException, handle_http_error)
    app.add_exception_handler(Exception, handle_unexpected_error)

    app.include_router(service_router)
    app.include_router(auth_router, prefix="/api")
    app.include_router(task_router, prefix="/api")
    return app


app = create_app()


def run() -> None:
    settings = get_settings()
    setup_logging(settings.log_level)
    uvicorn.run(create_app(settings), host="0.0.0.0", port=settings.port)


if __name__ == "__main__":
    run()
