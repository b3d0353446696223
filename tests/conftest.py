"""Shared fixtures: an app wired to the in-memory store, tokens, signed deliveries."""

from __future__ import annotations

import time

import pytest
from fastapi.testclient import TestClient
from jose import jwt

from fakes import WEBHOOK_SECRET, MemoryStore, encode, stripe_signature
from marketplace.main import create_app
from marketplace.metrics import Metrics
from marketplace.ratelimit import RateLimiter
from marketplace.webhooks import WebhookGate

JWT_SECRET = "jwt-test-secret"


@pytest.fixture()
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture()
def metrics() -> Metrics:
    return Metrics()


@pytest.fixture()
def limiter() -> RateLimiter:
    return RateLimiter()


@pytest.fixture()
def gate(metrics) -> WebhookGate:
    return WebhookGate(secret=WEBHOOK_SECRET, metrics=metrics)


@pytest.fixture()
def app(store, metrics, limiter, gate):
    return create_app(store=store, rate_limiter=limiter, metrics=metrics, webhook_gate=gate)


@pytest.fixture()
def client(app) -> TestClient:
    return TestClient(app, raise_server_exceptions=False)


@pytest.fixture()
def make_token(monkeypatch):
    """Return a factory for bearer tokens the app will accept."""
    monkeypatch.setattr("marketplace.auth.AUTH_JWT_SECRET", JWT_SECRET)

    def _make(user_id: str, **claims) -> str:
        payload = {
            "sub": user_id,
            "aud": "authenticated",
            "exp": int(time.time()) + 3600,
            "email": f"{user_id[:8]}@example.com",
        }
        payload.update(claims)
        return jwt.encode(payload, JWT_SECRET, algorithm="HS256")

    return _make


@pytest.fixture()
def auth(make_token):
    def _headers(user_id: str) -> dict:
        return {"Authorization": f"Bearer {make_token(user_id)}"}

    return _headers


@pytest.fixture()
def deliver(client):
    """POST a signed webhook delivery."""

    def _deliver(payload: dict, signature=None):
        body = encode(payload)
        headers = {"Content-Type": "application/json"}
        headers["Stripe-Signature"] = signature if signature is not None else stripe_signature(body)
        return client.post("/webhooks/payment", content=body, headers=headers)

    return _deliver
