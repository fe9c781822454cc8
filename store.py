"""Credential and task stores: the business rules sitting on the repositories."""
import math
import uuid
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from passlib.context import CryptContext

from analytics import compute_progress_analytics, compute_stats
from errors import Conflict, DuplicateEmail, NotFound, UserNotFound, ValidationError
from schemas import (
    DailyUpdate,
    DailyUpdateBody,
    ProgressAnalytics,
    ProgressHistoryEntry,
    Role,
    Task,
    TaskCreate,
    TaskPatch,
    TaskStats,
    TimeEntry,
    User,
    utcnow,
)

MIN_PASSWORD_LENGTH = 6
MAX_HOURS_PER_DAY = 24
MAX_SAVE_ATTEMPTS = 5


def new_id() -> str:
    return uuid.uuid4().hex


class CredentialStore:
    def __init__(self, users, bcrypt_rounds: int = 12):
        self.users = users
        self.pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto", bcrypt__rounds=bcrypt_rounds)

    def hash_password(self, password: str) -> str:
        return self.pwd_context.hash(password)

    def verify_password(self, user: User, password: str) -> bool:
        try:
            return self.pwd_context.verify(password, user.password_hash)
        except ValueError:
            # unrecognised or malformed stored hash
            return False

    def find_by_email(self, email: str) -> Optional[User]:
        return self.users.find_by_email(email)

    def find_by_id(self, user_id: str) -> Optional[User]:
        return self.users.get(user_id)

    def create(self, email: str, password: str, name: Optional[str] = None, role: Role = "user") -> User:
        email = email.strip().lower()
        if len(password) < MIN_PASSWORD_LENGTH:
            raise ValidationError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters long")
        if self.users.find_by_email(email):
            raise DuplicateEmail()
        now = utcnow()
        user = User(
            id=new_id(),
            email=email,
            password_hash=self.hash_password(password),
            name=(name or "").strip() or email.split("@")[0],
            role=role,
            created_at=now,
            updated_at=now,
        )
        self.users.insert(user)
        return user

    def update_profile(self, user_id: str, name: Optional[str] = None, email: Optional[str] = None) -> User:
        user = self.users.get(user_id)
        if user is None:
            raise UserNotFound()
        if email is not None:
            email = email.strip().lower()
            existing = self.users.find_by_email(email)
            if existing is not None and existing.id != user.id:
                raise DuplicateEmail()
            user.email = email
        if name is not None:
            user.name = name
        user.updated_at = utcnow()
        self.users.save(user)
        return user

    def count(self) -> int:
        return self.users.count()


def _stamp_completion(task: Task, now: datetime, completed_now: bool = False) -> None:
    # completedAt is set once and never cleared
    if task.completed_at is not None:
        return
    if completed_now:
        task.completed_at = now
        task.progress = 100
    elif task.progress == 100:
        task.completed_at = now


class TaskStore:
    def __init__(self, tasks, clock: Callable[[], datetime] = utcnow):
        self.tasks = tasks
        self.clock = clock

    def create(self, data: TaskCreate, owner_id: str) -> Task:
        now = self.clock()
        task = Task(
            id=new_id(),
            owner_id=owner_id,
            title=data.title,
            description=data.description,
            status=data.status,
            priority=data.priority,
            progress=data.progress,
            due_date=data.due_date,
            estimated_hours=data.estimated_hours,
            created_at=now,
            updated_at=now,
        )
        _stamp_completion(task, now, completed_now=task.status == "completed")
        self.tasks.insert(task)
        return task

    def find_all_by_owner(self, owner_id: str) -> List[Task]:
        return self.tasks.list_by_owner(owner_id)

    def find_by_id_for_owner(self, task_id: str, owner_id: str) -> Optional[Task]:
        return self.tasks.get(task_id, owner_id)

    def _mutate(self, task_id: str, owner_id: str, apply: Callable[[Task, datetime], None]) -> Task:
        """Load, apply, and compare-and-swap the task, retrying on a lost race."""
        for _ in range(MAX_SAVE_ATTEMPTS):
            task = self.tasks.get(task_id, owner_id)
            if task is None:
                raise NotFound()
            read_version = task.version
            now = self.clock()
            apply(task, now)
            task.updated_at = now
            task.version = read_version + 1
            if self.tasks.replace(task, expected_version=read_version):
                return task
        raise Conflict()

    def update(self, task_id: str, owner_id: str, patch: TaskPatch) -> Task:
        changes = patch.changes()

        def apply(task: Task, now: datetime) -> None:
            for name, value in changes.items():
                setattr(task, name, value)
            _stamp_completion(task, now, completed_now=changes.get("status") == "completed")

        return self._mutate(task_id, owner_id, apply)

    def delete(self, task_id: str, owner_id: str) -> Task:
        removed = self.tasks.remove(task_id, owner_id)
        if removed is None:
            raise NotFound()
        return removed

    def add_progress_update(self, task_id: str, owner_id: str, progress: int, note: Optional[str] = "") -> Task:
        if isinstance(progress, bool) or not isinstance(progress, int) or not 0 <= progress <= 100:
            raise ValidationError("Progress must be between 0 and 100")

        def apply(task: Task, now: datetime) -> None:
            day = now.date()
            task.progress = progress
            task.progress_history[day] = ProgressHistoryEntry(date=day, progress=progress, note=note or "")
            task.last_worked_on = now
            _stamp_completion(task, now)

        return self._mutate(task_id, owner_id, apply)

    def add_time_entry(self, task_id: str, owner_id: str, hours: float, description: Optional[str] = "") -> Task:
        if isinstance(hours, bool) or not isinstance(hours, (int, float)) or not math.isfinite(hours) or hours <= 0:
            raise ValidationError("Hours must be greater than 0")
        if hours > MAX_HOURS_PER_DAY:
            raise ValidationError(f"Hours must be at most {MAX_HOURS_PER_DAY} per day")

        def apply(task: Task, now: datetime) -> None:
            day = now.date()
            task.time_entries[day] = TimeEntry(date=day, hours=hours, description=description or "")
            task.last_worked_on = now

        return self._mutate(task_id, owner_id, apply)

    def add_daily_update(self, task_id: str, owner_id: str, body: DailyUpdateBody) -> Task:
        def apply(task: Task, now: datetime) -> None:
            day = now.date()
            task.daily_updates[day] = DailyUpdate(
                date=day,
                worked_on=body.worked_on,
                status=body.status or task.status,
                accomplishments=list(body.accomplishments),
                blockers=list(body.blockers),
                next_steps=list(body.next_steps),
                mood=body.mood,
            )
            if body.worked_on:
                task.last_worked_on = now

        return self._mutate(task_id, owner_id, apply)

    def get_stats(self, owner_id: str) -> TaskStats:
        return compute_stats(self.find_all_by_owner(owner_id), now=self.clock())

    def get_progress_analytics(self, owner_id: str, task_id: Optional[str] = None) -> ProgressAnalytics:
        if task_id is None:
            tasks = self.find_all_by_owner(owner_id)
        else:
            task = self.find_by_id_for_owner(task_id, owner_id)
            tasks = [task] if task else []
        return compute_progress_analytics(tasks)

    def count(self) -> int:
        return self.tasks.count()


def seed_demo_data(credentials: CredentialStore, store: TaskStore) -> None:
    """Two demo accounts (password123) and two tasks with a couple of days of history."""
    if credentials.find_by_email("test@example.com"):
        return
    user = credentials.create("test@example.com", "password123", name="Test User")
    credentials.create("admin@example.com", "password123", name="Admin User", role="admin")

    now = store.clock()
    yesterday, today = (now - timedelta(days=1)).date(), now.date()

    setup = Task(
        id=new_id(),
        owner_id=user.id,
        title="Complete project setup",
        description="Set up the TaskFlow application with authentication",
        status="completed",
        priority="high",
        progress=100,
        due_date=now,
        estimated_hours=8,
        created_at=now - timedelta(days=1),
        updated_at=now,
        completed_at=now,
        last_worked_on=now,
        progress_history=[
            {"date": yesterday, "progress": 30, "note": "Initial setup and planning"},
            {"date": today, "progress": 100, "note": "Completed authentication system"},
        ],
        time_entries=[
            {"date": yesterday, "hours": 4, "description": "Project scaffolding and initial setup"},
            {"date": today, "hours": 4.5, "description": "Authentication implementation and testing"},
        ],
        daily_updates=[
            {
                "date": yesterday,
                "workedOn": True,
                "status": "in-progress",
                "accomplishments": ["Set up project structure", "Configured build tools"],
                "nextSteps": ["Implement user authentication"],
                "mood": "productive",
            },
            {
                "date": today,
                "workedOn": True,
                "status": "completed",
                "accomplishments": ["Completed authentication", "Added login/register forms"],
                "nextSteps": ["Move to next task"],
                "mood": "satisfied",
            },
        ],
    )
    design = Task(
        id=new_id(),
        owner_id=user.id,
        title="Design user interface",
        description="Create mockups and wireframes for the app",
        status="in-progress",
        priority="medium",
        progress=65,
        due_date=now + timedelta(days=1),
        estimated_hours=12,
        created_at=now - timedelta(hours=12),
        updated_at=now,
        last_worked_on=now,
        progress_history=[
            {"date": yesterday, "progress": 25, "note": "Created initial wireframes"},
            {"date": today, "progress": 65, "note": "Finished dashboard design"},
        ],
        time_entries=[
            {"date": yesterday, "hours": 3, "description": "Wireframe creation and user flow mapping"},
            {"date": today, "hours": 2.5, "description": "Dashboard UI design and component library"},
        ],
        daily_updates=[
            {
                "date": today,
                "workedOn": True,
                "status": "in-progress",
                "accomplishments": ["Completed dashboard mockups", "Created component library"],
                "blockers": ["Waiting for feedback on color scheme"],
                "nextSteps": ["Design task management interface"],
                "mood": "creative",
            },
        ],
    )
    for task in (setup, design):
        store.tasks.insert(task)
