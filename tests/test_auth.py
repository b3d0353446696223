"""Bearer token verification."""

from __future__ import annotations

import time

import pytest
from jose import jwt

from marketplace.auth import current_user, decode_token
from marketplace.errors import Unauthorized

SECRET = "auth-test-secret"


def _token(secret=SECRET, **claims):
    payload = {"sub": "user-1", "aud": "authenticated", "exp": int(time.time()) + 60}
    payload.update(claims)
    return jwt.encode(payload, secret, algorithm="HS256")


class TestDecodeToken:
    def test_valid(self):
        claims = decode_token(_token(), secret=SECRET)
        assert claims["sub"] == "user-1"

    def test_expired(self):
        assert decode_token(_token(exp=int(time.time()) - 10), secret=SECRET) is None

    def test_wrong_audience(self):
        assert decode_token(_token(aud="service_role"), secret=SECRET) is None

    def test_wrong_secret(self):
        assert decode_token(_token(secret="other"), secret=SECRET) is None

    def test_unconfigured_secret(self):
        assert decode_token(_token(), secret="") is None


class TestCurrentUser:
    def test_bearer_header(self, monkeypatch):
        monkeypatch.setattr("marketplace.auth.AUTH_JWT_SECRET", SECRET)
        user = current_user(f"Bearer {_token(email='a@example.com')}")
        assert user.id == "user-1"
        assert user.email == "a@example.com"

    @pytest.mark.parametrize("header", [None, "", "Basic abc", "Bearer not-a-jwt"])
    def test_rejected(self, monkeypatch, header):
        monkeypatch.setattr("marketplace.auth.AUTH_JWT_SECRET", SECRET)
        with pytest.raises(Unauthorized):
            current_user(header)

    def test_token_without_subject(self, monkeypatch):
        monkeypatch.setattr("marketplace.auth.AUTH_JWT_SECRET", SECRET)
        with pytest.raises(Unauthorized):
            current_user(f"Bearer {_token(sub='')}")
