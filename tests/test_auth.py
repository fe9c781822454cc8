from datetime import timedelta

import jwt
import pytest

from auth import ACCESS, REFRESH, AuthGateway, TokenService
from errors import InvalidToken, Unauthorized, UserNotFound


@pytest.fixture()
def tokens() -> TokenService:
    return TokenService("test-secret")


@pytest.fixture()
def gateway(tokens, credentials) -> AuthGateway:
    return AuthGateway(tokens, credentials)


@pytest.fixture()
def user(credentials):
    return credentials.create("a@x.com", "secret1")


def test_access_token_round_trip(tokens, user):
    claims = tokens.verify(tokens.issue_access_token(user))

    assert claims.subject_id == user.id
    assert claims.email == "a@x.com"
    assert claims.role == "user"
    assert claims.token_type == ACCESS


def test_access_token_lifetime_defaults_to_a_day(tokens, user):
    payload = jwt.decode(tokens.issue_access_token(user), "test-secret", algorithms=["HS256"])
    assert payload["exp"] - payload["iat"] == int(timedelta(hours=24).total_seconds())


def test_refresh_token_is_not_an_access_token(tokens, user):
    refresh = tokens.issue_refresh_token(user)

    assert tokens.decode(refresh, REFRESH).subject_id == user.id
    with pytest.raises(InvalidToken):
        tokens.verify(refresh)


def test_expired_token(user):
    expired = TokenService("test-secret", access_ttl=timedelta(seconds=-30))
    with pytest.raises(InvalidToken, match="expired"):
        expired.verify(expired.issue_access_token(user))


def test_token_signed_with_another_secret(tokens, user):
    forged = TokenService("someone-else").issue_access_token(user)
    with pytest.raises(InvalidToken):
        tokens.verify(forged)


def test_garbage_token(tokens):
    with pytest.raises(InvalidToken):
        tokens.verify("not.a.jwt")


def test_authenticate(gateway, tokens, user):
    assert gateway.authenticate(tokens.issue_access_token(user)).id == user.id

    with pytest.raises(Unauthorized):
        gateway.authenticate(None)


def test_authenticate_deleted_user(gateway, tokens, credentials):
    ghost = credentials.create("ghost@x.com", "secret1").model_copy(update={"id": "gone"})
    with pytest.raises(UserNotFound):
        gateway.authenticate(tokens.issue_access_token(ghost))


def test_refresh_issues_new_pair(gateway, tokens, user):
    _, refresh = gateway.issue_tokens(user)

    access, new_refresh, refreshed_user = gateway.refresh(refresh)

    assert refreshed_user.id == user.id
    assert tokens.verify(access).subject_id == user.id
    assert tokens.decode(new_refresh, REFRESH).subject_id == user.id


def test_refresh_rejects_access_tokens_and_blanks(gateway, user):
    access, _ = gateway.issue_tokens(user)

    with pytest.raises(InvalidToken, match="Invalid refresh token"):
        gateway.refresh(access)
    with pytest.raises(Unauthorized, match="Refresh token required"):
        gateway.refresh(None)
