from typing import Callable, Dict

import pytest
from fastapi.testclient import TestClient

from config import Settings
from database import InMemoryTaskRepository, InMemoryUserRepository
from main import create_app
from store import CredentialStore, TaskStore

from .fakes import FakeClock


@pytest.fixture()
def settings() -> Settings:
    # bcrypt's minimum cost keeps hashing fast in tests
    return Settings(jwt_secret="test-secret", bcrypt_rounds=4)


@pytest.fixture()
def app(settings: Settings):
    return create_app(settings)


@pytest.fixture()
def client(app) -> TestClient:
    with TestClient(app) as c:
        yield c


@pytest.fixture()
def register(client: TestClient) -> Callable[..., Dict[str, str]]:
    """Register a user and return bearer headers for it."""

    def _register(email: str = "a@x.com", password: str = "secret1", name: str = None) -> Dict[str, str]:
        body = {"email": email, "password": password}
        if name:
            body["name"] = name
        res = client.post("/api/auth/register", json=body)
        assert res.status_code == 201, res.text
        return {"Authorization": f"Bearer {res.json()['token']}"}

    return _register


@pytest.fixture()
def auth_headers(register) -> Dict[str, str]:
    return register()


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def credentials() -> CredentialStore:
    return CredentialStore(InMemoryUserRepository(), bcrypt_rounds=4)


@pytest.fixture()
def task_store(clock: FakeClock) -> TaskStore:
    return TaskStore(InMemoryTaskRepository(), clock=clock)
