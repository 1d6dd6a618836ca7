"""Tests for bearer-token authentication."""

import time

import jwt
import pytest

from meshgen_gateway.auth import AuthError, AuthUser, JwtAuthenticator, bearer_token


SECRET = "another-test-secret-of-32-bytes-or-more"


def test_issue_and_authenticate():
    auth = JwtAuthenticator(SECRET)

    user = auth.authenticate(auth.issue("u1", role="admin", email="a@example.com"))

    assert user.id == "u1"
    assert user.role == "ADMIN"
    assert user.is_admin
    assert user == AuthUser(id="u1", role="ADMIN")


def test_role_defaults_to_user():
    token = jwt.encode({"sub": "u2"}, SECRET, algorithm="HS256")

    user = JwtAuthenticator(SECRET).authenticate(token)

    assert user.role == "USER"
    assert not user.is_admin


@pytest.mark.parametrize(
    "token",
    [
        jwt.encode({"sub": "u1"}, "some-other-secret-of-32-bytes-long!!", algorithm="HS256"),
        jwt.encode({"role": "ADMIN"}, SECRET, algorithm="HS256"),
        jwt.encode({"sub": "u1", "exp": int(time.time()) - 60}, SECRET, algorithm="HS256"),
        "garbage",
    ],
)
def test_rejected_tokens(token):
    with pytest.raises(AuthError):
        JwtAuthenticator(SECRET).authenticate(token)


def test_missing_secret_rejects_everything():
    with pytest.raises(AuthError):
        JwtAuthenticator(None).authenticate(jwt.encode({"sub": "u1"}, SECRET, algorithm="HS256"))


@pytest.mark.parametrize("header", [None, "", "Basic abc", "Bearer ", "Bearer"])
def test_bearer_token_rejects_malformed_headers(header):
    with pytest.raises(AuthError):
        bearer_token(header)


def test_bearer_token():
    assert bearer_token("Bearer abc.def.ghi") == "abc.def.ghi"
    assert bearer_token("bearer  token ") == "token"
