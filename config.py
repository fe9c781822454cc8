"""
Application settings loaded from environment variables (+ optional .env).

Absence of DATABASE_URL means in-memory mode. Localhost origins are always
allowed by CORS; CORS_ORIGINS adds an explicit allow-list on top.
"""
import os
from dataclasses import dataclass, field
from functools import lru_cache
from typing import List, Optional

from dotenv import load_dotenv

load_dotenv(override=False)

DEFAULT_JWT_SECRET = "dev-secret-change-me"

DEFAULT_CORS_ORIGINS = [
    "http://localhost:3000",
    "http://localhost:5173",
    "http://127.0.0.1:3000",
    "http://127.0.0.1:5173",
]

# Any scheme/port on localhost or 127.0.0.1
LOCAL_ORIGIN_REGEX = r"https?://(localhost|127\.0\.0\.1)(:\d+)?"


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_list(name: str, default: List[str]) -> List[str]:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return list(default)
    return [p.strip() for p in raw.replace(",", " ").split() if p.strip()]


@dataclass(frozen=True)
class Settings:
    jwt_secret: str = DEFAULT_JWT_SECRET
    jwt_algorithm: str = "HS256"
    access_token_expire_minutes: int = 60 * 24
    refresh_token_expire_days: int = 7

    database_url: Optional[str] = None
    database_name: str = "taskflow"

    port: int = 8000
    cors_origins: List[str] = field(default_factory=lambda: list(DEFAULT_CORS_ORIGINS))

    bcrypt_rounds: int = 12
    log_level: str = "INFO"
    seed_demo_data: bool = False

    @property
    def in_memory(self) -> bool:
        return not self.database_url

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            jwt_secret=os.getenv("JWT_SECRET") or DEFAULT_JWT_SECRET,
            jwt_algorithm=os.getenv("JWT_ALGORITHM") or "HS256",
            access_token_expire_minutes=_env_int("ACCESS_TOKEN_EXPIRE_MINUTES", 60 * 24),
            refresh_token_expire_days=_env_int("REFRESH_TOKEN_EXPIRE_DAYS", 7),
            database_url=os.getenv("DATABASE_URL") or None,
            database_name=os.getenv("DATABASE_NAME") or "taskflow",
            port=_env_int("PORT", 8000),
            cors_origins=_env_list("CORS_ORIGINS", DEFAULT_CORS_ORIGINS),
            bcrypt_rounds=_env_int("BCRYPT_ROUNDS", 12),
            log_level=(os.getenv("LOG_LEVEL") or "INFO").upper(),
            seed_demo_data=_env_bool("SEED_DEMO_DATA", False),
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings.from_env()
