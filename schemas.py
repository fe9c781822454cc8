"""
Application Schemas

Records kept by the stores and the bodies accepted by the API. Every model
serializes with camelCase keys (the wire format) and also accepts snake_case
field names when built in Python.

- User -> "user" collection
- Task -> "task" collection, embedding its progress history, time entries and
  daily updates. Those three are keyed by calendar day, so there is at most one
  entry per task per day; on the wire they are arrays ordered by date.

totalTimeSpent is derived from the time entries and never stored.
"""
from datetime import date as Date
from datetime import datetime, timezone
from typing import Annotated, Any, Dict, List, Literal, Optional

from pydantic import (
    AfterValidator,
    BaseModel,
    ConfigDict,
    EmailStr,
    Field,
    SerializationInfo,
    computed_field,
    field_serializer,
    field_validator,
)
from pydantic.alias_generators import to_camel

Status = Literal["pending", "in-progress", "completed"]
Priority = Literal["low", "medium", "high"]
Role = Literal["user", "admin"]
Mood = Literal["frustrated", "blocked", "neutral", "productive", "creative", "satisfied", "excited"]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Naive timestamps are taken to be UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


UtcDatetime = Annotated[datetime, AfterValidator(as_utc)]


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_public(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


# Records

class User(CamelModel):
    id: str
    email: str = Field(..., description="Stored lower-cased")
    password_hash: str = Field(..., description="BCrypt hashed password")
    name: str
    role: Role = "user"
    created_at: UtcDatetime = Field(default_factory=utcnow)
    updated_at: UtcDatetime = Field(default_factory=utcnow)

    def to_public(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude={"password_hash"})


class ProgressHistoryEntry(CamelModel):
    date: Date
    progress: int = Field(..., ge=0, le=100)
    note: str = ""


class TimeEntry(CamelModel):
    date: Date
    hours: float = Field(..., gt=0, le=24)
    description: str = ""


class DailyUpdate(CamelModel):
    date: Date
    worked_on: bool = False
    status: Status = "pending"
    accomplishments: List[str] = Field(default_factory=list)
    blockers: List[str] = Field(default_factory=list)
    next_steps: List[str] = Field(default_factory=list)
    mood: Mood = "neutral"


class Task(CamelModel):
    id: str
    owner_id: str
    title: str = Field(..., min_length=1, max_length=100)
    description: str = Field("", max_length=500)
    status: Status = "pending"
    priority: Priority = "medium"
    progress: int = Field(0, ge=0, le=100)
    due_date: Optional[UtcDatetime] = None
    estimated_hours: Optional[float] = Field(None, ge=0)
    created_at: UtcDatetime = Field(default_factory=utcnow)
    updated_at: UtcDatetime = Field(default_factory=utcnow)
    completed_at: Optional[UtcDatetime] = None
    last_worked_on: Optional[UtcDatetime] = None
    version: int = Field(0, description="Bumped on every save; used for compare-and-swap")

    progress_history: Dict[Date, ProgressHistoryEntry] = Field(default_factory=dict)
    time_entries: Dict[Date, TimeEntry] = Field(default_factory=dict)
    daily_updates: Dict[Date, DailyUpdate] = Field(default_factory=dict)

    @field_validator("description", mode="before")
    @classmethod
    def _description_default(cls, value: Any) -> Any:
        return "" if value is None else value

    @field_validator("progress_history", "time_entries", "daily_updates", mode="before")
    @classmethod
    def _key_by_date(cls, value: Any) -> Any:
        if isinstance(value, list):
            keyed = {}
            for entry in value:
                day = entry["date"] if isinstance(entry, dict) else entry.date
                keyed[day] = entry
            return keyed
        return value

    @field_serializer("progress_history", "time_entries", "daily_updates")
    def _dated_list(self, value: Dict[Date, CamelModel], info: SerializationInfo) -> List[Any]:
        return [
            value[day].model_dump(mode=info.mode, by_alias=bool(info.by_alias))
            for day in sorted(value)
        ]

    @computed_field(alias="totalTimeSpent")
    @property
    def total_time_spent(self) -> float:
        return float(sum(entry.hours for entry in self.time_entries.values()))

    def to_public(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude={"version"})


# Request bodies

class RegisterBody(CamelModel):
    email: Optional[EmailStr] = None
    password: Optional[str] = None
    name: Optional[str] = Field(None, max_length=100)


class LoginBody(CamelModel):
    email: Optional[str] = None
    password: Optional[str] = None


class RefreshBody(CamelModel):
    refresh_token: Optional[str] = None


class ProfileBody(CamelModel):
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    email: Optional[EmailStr] = None

    @field_validator("name", mode="before")
    @classmethod
    def _strip_name(cls, value: Any) -> Any:
        return value.strip() if isinstance(value, str) else value


class TaskCreate(CamelModel):
    title: str = Field(..., min_length=1, max_length=100)
    description: str = Field("", max_length=500)
    status: Status = "pending"
    priority: Priority = "medium"
    progress: int = Field(0, ge=0, le=100)
    due_date: Optional[UtcDatetime] = None
    estimated_hours: Optional[float] = Field(None, ge=0)

    @field_validator("title", mode="before")
    @classmethod
    def _strip_title(cls, value: Any) -> Any:
        return value.strip() if isinstance(value, str) else value

    @field_validator("description", mode="before")
    @classmethod
    def _description_default(cls, value: Any) -> Any:
        return "" if value is None else value


# Fields a patch may clear by sending null
CLEARABLE_FIELDS = frozenset({"due_date", "estimated_hours"})


class TaskPatch(CamelModel):
    """
    Partial update. Only fields the caller actually sent are applied; unknown
    keys (id, ownerId, timeEntries, ...) are dropped by the model.
    """

    title: Optional[str] = Field(None, min_length=1, max_length=100)
    description: Optional[str] = Field(None, max_length=500)
    status: Optional[Status] = None
    priority: Optional[Priority] = None
    progress: Optional[int] = Field(None, ge=0, le=100)
    due_date: Optional[UtcDatetime] = None
    estimated_hours: Optional[float] = Field(None, ge=0)

    @field_validator("title", mode="before")
    @classmethod
    def _strip_title(cls, value: Any) -> Any:
        return value.strip() if isinstance(value, str) else value

    def changes(self) -> Dict[str, Any]:
        out = {}
        for name in self.model_fields_set:
            value = getattr(self, name)
            if value is None and name not in CLEARABLE_FIELDS:
                continue
            out[name] = value
        return out


class ProgressBody(CamelModel):
    progress: int
    note: Optional[str] = ""


class TimeBody(CamelModel):
    hours: float = Field(..., allow_inf_nan=False)
    description: Optional[str] = ""


class DailyUpdateBody(CamelModel):
    worked_on: bool = False
    status: Optional[Status] = None
    accomplishments: List[str] = Field(default_factory=list)
    blockers: List[str] = Field(default_factory=list)
    next_steps: List[str] = Field(default_factory=list)
    mood: Mood = "neutral"


# Aggregates

class TaskStats(CamelModel):
    total: int = 0
    completed: int = 0
    in_progress: int = 0
    pending: int = 0
    overdue: int = 0
    average_progress: float = 0.0
    total_time_spent: float = 0.0


class DayProductivity(CamelModel):
    tasks_worked_on: int = 0
    total_progress: int = 0
    accomplishments: int = 0
    blockers: int = 0


class ProgressAnalytics(CamelModel):
    total_tasks: int = 0
    average_progress: float = 0.0
    total_time_spent: float = 0.0
    total_estimated_hours: float = 0.0
    productivity_by_day: Dict[str, DayProductivity] = Field(default_factory=dict)
    time_by_day: Dict[str, float] = Field(default_factory=dict)
