import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Tuple

import jwt
from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from config import DEFAULT_JWT_SECRET, Settings
from errors import InvalidToken, Unauthorized, UserNotFound
from schemas import User, utcnow
from store import CredentialStore

logger = logging.getLogger(__name__)

ACCESS = "access"
REFRESH = "refresh"


@dataclass(frozen=True)
class TokenClaims:
    subject_id: str
    token_type: str
    expires_at: datetime
    email: Optional[str] = None
    role: Optional[str] = None


class TokenService:
    def __init__(
        self,
        secret: str,
        algorithm: str = "HS256",
        access_ttl: timedelta = timedelta(hours=24),
        refresh_ttl: timedelta = timedelta(days=7),
        clock: Callable[[], datetime] = utcnow,
    ):
        self.secret = secret
        self.algorithm = algorithm
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl
        self.clock = clock

    @classmethod
    def from_settings(cls, settings: Settings) -> "TokenService":
        if settings.jwt_secret == DEFAULT_JWT_SECRET:
            logger.warning("JWT_SECRET is not set; using the development secret")
        return cls(
            secret=settings.jwt_secret,
            algorithm=settings.jwt_algorithm,
            access_ttl=timedelta(minutes=settings.access_token_expire_minutes),
            refresh_ttl=timedelta(days=settings.refresh_token_expire_days),
        )

    def _encode(self, claims: dict, ttl: timedelta) -> str:
        now = self.clock()
        to_encode = claims.copy()
        to_encode.update({"iat": now, "exp": now + ttl})
        return jwt.encode(to_encode, self.secret, algorithm=self.algorithm)

    def issue_access_token(self, user: User) -> str:
        return self._encode({"sub": user.id, "email": user.email, "role": user.role, "type": ACCESS}, self.access_ttl)

    def issue_refresh_token(self, user: User) -> str:
        return self._encode({"sub": user.id, "type": REFRESH}, self.refresh_ttl)

    def decode(self, token: str, expected_type: str = ACCESS) -> TokenClaims:
        try:
            payload = jwt.decode(
                token,
                self.secret,
                algorithms=[self.algorithm],
                options={"require": ["exp", "sub"]},
            )
        except jwt.ExpiredSignatureError:
            raise InvalidToken("Token expired")
        except jwt.PyJWTError:
            raise InvalidToken()
        if payload.get("type") != expected_type:
            raise InvalidToken()
        return TokenClaims(
            subject_id=str(payload["sub"]),
            token_type=payload["type"],
            expires_at=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
            email=payload.get("email"),
            role=payload.get("role"),
        )

    def verify(self, token: str) -> TokenClaims:
        return self.decode(token, ACCESS)


class AuthGateway:
    """Issues token pairs and resolves bearer tokens to users."""

    def __init__(self, tokens: TokenService, credentials: CredentialStore):
        self.tokens = tokens
        self.credentials = credentials

    def issue_tokens(self, user: User) -> Tuple[str, str]:
        return self.tokens.issue_access_token(user), self.tokens.issue_refresh_token(user)

    def authenticate(self, token: Optional[str]) -> User:
        if not token:
            raise Unauthorized()
        claims = self.tokens.verify(token)
        user = self.credentials.find_by_id(claims.subject_id)
        if user is None:
            raise UserNotFound()
        return user

    def refresh(self, refresh_token: Optional[str]) -> Tuple[str, str, User]:
        if not refresh_token:
            raise Unauthorized("Refresh token required")
        try:
            claims = self.tokens.decode(refresh_token, REFRESH)
        except InvalidToken:
            raise InvalidToken("Invalid refresh token")
        user = self.credentials.find_by_id(claims.subject_id)
        if user is None:
            raise UserNotFound()
        access, refresh = self.issue_tokens(user)
        return access, refresh, user


bearer_scheme = HTTPBearer(auto_error=False)


def get_auth_gateway(request: Request) -> AuthGateway:
    return request.app.state.auth


# Dependency to get current user from JWT
def get_current_user(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    gateway: AuthGateway = Depends(get_auth_gateway),
) -> User:
    user = gateway.authenticate(credentials.credentials if credentials else None)
    request.state.user_id = user.id
    return user
