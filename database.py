"""
Persistence backends for users and tasks.

Without DATABASE_URL the app keeps everything in process memory; otherwise it
uses MongoDB through pymongo, one collection per record type ("user", "task").

Repositories hand out copies. Task writers mutate their copy and hand it back
through `replace`, which only succeeds while the stored version still matches
the one they read.
"""
import logging
import threading
from typing import Any, Dict, List, Optional, Tuple

from pymongo import ASCENDING, MongoClient
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from config import Settings
from errors import DuplicateEmail
from schemas import Task, User

logger = logging.getLogger(__name__)


# In-memory

class InMemoryUserRepository:
    def __init__(self):
        self._users: Dict[str, User] = {}
        self._lock = threading.RLock()

    def get(self, user_id: str) -> Optional[User]:
        with self._lock:
            user = self._users.get(user_id)
            return user.model_copy(deep=True) if user else None

    def find_by_email(self, email: str) -> Optional[User]:
        needle = email.strip().lower()
        with self._lock:
            for user in self._users.values():
                if user.email.lower() == needle:
                    return user.model_copy(deep=True)
        return None

    def insert(self, user: User) -> None:
        with self._lock:
            if self._email_taken(user.email, exclude_id=None):
                raise DuplicateEmail()
            self._users[user.id] = user.model_copy(deep=True)

    def save(self, user: User) -> None:
        with self._lock:
            if self._email_taken(user.email, exclude_id=user.id):
                raise DuplicateEmail()
            self._users[user.id] = user.model_copy(deep=True)

    def count(self) -> int:
        with self._lock:
            return len(self._users)

    def _email_taken(self, email: str, exclude_id: Optional[str]) -> bool:
        needle = email.lower()
        return any(u.email.lower() == needle and u.id != exclude_id for u in self._users.values())


class InMemoryTaskRepository:
    """Insertion-ordered task map guarded by a re-entrant lock."""

    def __init__(self):
        self._tasks: Dict[str, Task] = {}
        self._lock = threading.RLock()

    def get(self, task_id: str, owner_id: str) -> Optional[Task]:
        with self._lock:
            task = self._tasks.get(task_id)
            if task is None or task.owner_id != owner_id:
                return None
            return task.model_copy(deep=True)

    def list_by_owner(self, owner_id: str) -> List[Task]:
        with self._lock:
            return [t.model_copy(deep=True) for t in self._tasks.values() if t.owner_id == owner_id]

    def insert(self, task: Task) -> None:
        with self._lock:
            self._tasks[task.id] = task.model_copy(deep=True)

    def replace(self, task: Task, expected_version: int) -> bool:
        with self._lock:
            current = self._tasks.get(task.id)
            if current is None or current.owner_id != task.owner_id or current.version != expected_version:
                return False
            self._tasks[task.id] = task.model_copy(deep=True)
            return True

    def remove(self, task_id: str, owner_id: str) -> Optional[Task]:
        with self._lock:
            task = self._tasks.get(task_id)
            if task is None or task.owner_id != owner_id:
                return None
            return self._tasks.pop(task_id)

    def count(self) -> int:
        with self._lock:
            return len(self._tasks)


# MongoDB

def _user_doc(user: User) -> Dict[str, Any]:
    doc = user.model_dump(mode="json", by_alias=True)
    doc["_id"] = doc.pop("id")
    return doc


def _task_doc(task: Task) -> Dict[str, Any]:
    doc = task.model_dump(mode="json", by_alias=True, exclude={"total_time_spent"})
    doc["_id"] = doc.pop("id")
    return doc


def _from_doc(model, doc: Optional[Dict[str, Any]]):
    if doc is None:
        return None
    data = dict(doc)
    data["id"] = str(data.pop("_id"))
    return model.model_validate(data)


class MongoUserRepository:
    def __init__(self, db: Database):
        self.collection = db["user"]
        self.collection.create_index([("email", ASCENDING)], unique=True)

    def get(self, user_id: str) -> Optional[User]:
        return _from_doc(User, self.collection.find_one({"_id": user_id}))

    def find_by_email(self, email: str) -> Optional[User]:
        return _from_doc(User, self.collection.find_one({"email": email.strip().lower()}))

    def insert(self, user: User) -> None:
        try:
            self.collection.insert_one(_user_doc(user))
        except DuplicateKeyError:
            raise DuplicateEmail()

    def save(self, user: User) -> None:
        try:
            self.collection.replace_one({"_id": user.id}, _user_doc(user))
        except DuplicateKeyError:
            raise DuplicateEmail()

    def count(self) -> int:
        return self.collection.count_documents({})


class MongoTaskRepository:
    def __init__(self, db: Database):
        self.collection = db["task"]
        self.collection.create_index([("ownerId", ASCENDING), ("createdAt", ASCENDING)])

    def get(self, task_id: str, owner_id: str) -> Optional[Task]:
        return _from_doc(Task, self.collection.find_one({"_id": task_id, "ownerId": owner_id}))

    def list_by_owner(self, owner_id: str) -> List[Task]:
        docs = self.collection.find({"ownerId": owner_id}).sort([("createdAt", ASCENDING), ("_id", ASCENDING)])
        return [_from_doc(Task, d) for d in docs]

    def insert(self, task: Task) -> None:
        self.collection.insert_one(_task_doc(task))

    def replace(self, task: Task, expected_version: int) -> bool:
        result = self.collection.replace_one(
            {"_id": task.id, "ownerId": task.owner_id, "version": expected_version},
            _task_doc(task),
        )
        return result.matched_count == 1

    def remove(self, task_id: str, owner_id: str) -> Optional[Task]:
        return _from_doc(Task, self.collection.find_one_and_delete({"_id": task_id, "ownerId": owner_id}))

    def count(self) -> int:
        return self.collection.count_documents({})


def get_database(settings: Settings) -> Optional[Database]:
    if settings.in_memory:
        return None
    client = MongoClient(settings.database_url)
    return client[settings.database_name]


def create_repositories(settings: Settings) -> Tuple[Any, Any]:
    db = get_database(settings)
    if db is None:
        logger.info("storage=in-memory")
        return InMemoryUserRepository(), InMemoryTaskRepository()
    logger.info("storage=mongodb database=%s", settings.database_name)
    return MongoUserRepository(db), MongoTaskRepository(db)
