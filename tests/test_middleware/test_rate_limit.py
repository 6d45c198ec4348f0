"""Tests for the access-governor HTTP middleware."""

import asyncio
import os
import sys

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..'))

from fastapi import FastAPI
from fastapi.testclient import TestClient
from starlette.requests import Request

from taskengine.cache.memory import InMemoryCacheAdapter
from taskengine.governor.access import AccessGovernor
from taskengine.middleware.rate_limit import AccessGovernorMiddleware, request_identity

SLOT_KEY = "ratelimit:concurrent:ip:testclient"


def _client(cache, **limits) -> TestClient:
    governor = AccessGovernor(cache, **limits)
    app = FastAPI()
    app.add_middleware(AccessGovernorMiddleware, governor=governor)

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    @app.get("/api/v1/tasks")
    async def list_tasks():
        return {"tasks": []}

    @app.post("/api/v1/tasks")
    async def start_task():
        return {"active": await cache.get(SLOT_KEY)}

    return TestClient(app)


# === Request rate ===


def test_requests_carry_rate_limit_headers():
    client = _client(InMemoryCacheAdapter(), max_requests=5, window_seconds=60)

    resp = client.get("/api/v1/tasks")

    assert resp.status_code == 200
    assert resp.headers["X-RateLimit-Limit"] == "5"
    assert resp.headers["X-RateLimit-Remaining"] == "4"
    assert "X-RateLimit-Reset" in resp.headers
    assert "Retry-After" not in resp.headers


def test_requests_over_the_limit_get_429():
    client = _client(InMemoryCacheAdapter(), max_requests=2, window_seconds=60)

    assert client.get("/api/v1/tasks").status_code == 200
    assert client.get("/api/v1/tasks").status_code == 200
    resp = client.get("/api/v1/tasks")

    assert resp.status_code == 429
    body = resp.json()
    assert body["success"] is False
    assert body["error"]["code"] == "RATE_LIMIT_EXCEEDED"
    assert body["error"]["details"]["limit"] == 2
    assert body["error"]["details"]["current"] == 3
    assert resp.headers["X-RateLimit-Remaining"] == "0"
    assert int(resp.headers["Retry-After"]) >= 1


def test_health_is_exempt():
    client = _client(InMemoryCacheAdapter(), max_requests=1, window_seconds=60)

    for _ in range(5):
        resp = client.get("/health")
        assert resp.status_code == 200
        assert "X-RateLimit-Limit" not in resp.headers


# === Concurrent executions ===


def test_execution_holds_a_slot_for_the_request():
    cache = InMemoryCacheAdapter()
    client = _client(cache, max_requests=100, max_concurrent=1)

    resp = client.post("/api/v1/tasks")

    assert resp.status_code == 200
    assert resp.json() == {"active": 1}
    assert asyncio.run(cache.get(SLOT_KEY)) is None


def test_execution_rejected_when_slots_are_taken():
    cache = InMemoryCacheAdapter()
    asyncio.run(cache.set(SLOT_KEY, 1))
    client = _client(cache, max_requests=100, max_concurrent=1)

    resp = client.post("/api/v1/tasks")

    assert resp.status_code == 429
    assert resp.json()["error"]["code"] == "CONCURRENT_LIMIT_EXCEEDED"
    assert asyncio.run(cache.get(SLOT_KEY)) == 1
    # Reads do not need a slot
    assert client.get("/api/v1/tasks").status_code == 200


def test_no_cache_allows_everything():
    governor = AccessGovernor(None, max_requests=1)
    app = FastAPI()
    app.add_middleware(AccessGovernorMiddleware, governor=governor)

    @app.get("/api/v1/tasks")
    async def list_tasks():
        return {"tasks": []}

    client = TestClient(app)
    assert all(client.get("/api/v1/tasks").status_code == 200 for _ in range(3))


# === Identity ===


def test_request_identity_precedence():
    with_user = Request({"type": "http", "headers": [], "state": {"user_id": "u1"}, "client": ("10.0.0.1", 1234)})
    with_ip = Request({"type": "http", "headers": [], "client": ("10.0.0.1", 1234)})
    with_key = Request({"type": "http", "headers": [(b"x-api-key", b"k1")]})

    assert request_identity(with_user) == "user:u1"
    assert request_identity(with_ip) == "ip:10.0.0.1"
    assert request_identity(with_key) == "key:k1"
