"""Tests for token-bucket rate limiting middleware."""

from fastapi import FastAPI
from fastapi.testclient import TestClient

from vvip.core.middleware.request_id import RequestIdMiddleware
from vvip.core.middleware.ratelimit import RateLimitMiddleware
from vvip.core.ratelimit import (
    InMemoryRateLimiter,
    RateLimitConfig,
    RoutePolicy,
    build_rate_limit_config_from_env,
    policy_for,
)


class FakeTime:
    def __init__(self):
        self.current = 0.0

    def advance(self, seconds: float):
        self.current += seconds

    def __call__(self):
        return self.current


def _make_app(config, fake_time):
    test_app = FastAPI()
    test_app.add_middleware(RequestIdMiddleware)
    test_app.add_middleware(RateLimitMiddleware, config=config, time_fn=fake_time)

    @test_app.get("/api/billing/status")
    async def status():
        return {"ok": True}

    @test_app.post("/api/billing/subscriptions/cancel")
    async def cancel():
        return {"ok": True}

    @test_app.post("/api/billing/webhook")
    async def webhook():
        return {"received": True}

    return test_app


def test_read_rate_limit_enforced_and_resets():
    fake_time = FakeTime()
    config = RateLimitConfig(enabled=True, per_minute_default=2, burst_default=2)
    client = TestClient(_make_app(config, fake_time))

    resp1 = client.get("/api/billing/status", headers={"X-User-Id": "member1"})
    resp2 = client.get("/api/billing/status", headers={"X-User-Id": "member1"})
    resp3 = client.get("/api/billing/status", headers={"X-User-Id": "member1"})

    assert resp1.status_code == 200
    assert resp2.status_code == 200
    assert resp3.status_code == 429

    rid = resp3.headers.get("x-request-id")
    payload = resp3.json()
    assert payload["error"]["code"] == "rate_limited"
    assert payload["error"]["request_id"] == rid
    assert resp3.headers.get("Retry-After")

    fake_time.advance(61)
    resp4 = client.get("/api/billing/status", headers={"X-User-Id": "member1"})
    assert resp4.status_code == 200


def test_billing_mutations_get_half_budget():
    config = RateLimitConfig(enabled=True, per_minute_default=4, burst_default=4)
    client = TestClient(_make_app(config, FakeTime()))

    codes = [
        client.post("/api/billing/subscriptions/cancel", headers={"X-User-Id": "member2"}).status_code
        for _ in range(3)
    ]
    assert codes == [200, 200, 429]

    # Reads use a separate bucket
    assert client.get("/api/billing/status", headers={"X-User-Id": "member2"}).status_code == 200


def test_accounts_are_limited_independently():
    config = RateLimitConfig(enabled=True, per_minute_default=1, burst_default=1)
    client = TestClient(_make_app(config, FakeTime()))

    assert client.get("/api/billing/status", headers={"X-User-Id": "a"}).status_code == 200
    assert client.get("/api/billing/status", headers={"X-User-Id": "a"}).status_code == 429
    assert client.get("/api/billing/status", headers={"X-User-Id": "b"}).status_code == 200


def test_webhook_is_never_limited():
    config = RateLimitConfig(enabled=True, per_minute_default=1, burst_default=1)
    client = TestClient(_make_app(config, FakeTime()))

    codes = {client.post("/api/billing/webhook").status_code for _ in range(5)}
    assert codes == {200}


def test_disabled_by_default():
    config = build_rate_limit_config_from_env({})
    assert config.enabled is False
    client = TestClient(_make_app(config, FakeTime()))

    codes = {client.get("/api/billing/status", headers={"X-User-Id": "c"}).status_code for _ in range(50)}
    assert codes == {200}


def test_config_from_env_ignores_invalid_values():
    config = build_rate_limit_config_from_env({
        "RATE_LIMIT_ENABLED": "true",
        "RATE_LIMIT_PER_MINUTE_DEFAULT": "abc",
        "RATE_LIMIT_BURST_DEFAULT": "-5",
    })
    assert config.enabled is True
    assert config.per_minute_default == 120
    assert config.burst_default == 30


def test_policy_for_routes():
    config = RateLimitConfig(enabled=True, per_minute_default=10, burst_default=6)
    assert policy_for("/api/billing/webhook", "POST", config) is None
    assert policy_for("/api/billing/subscriptions", "POST", config) == RoutePolicy(per_minute=5, burst=3)
    assert policy_for("/api/billing/status", "GET", config) == RoutePolicy(per_minute=10, burst=6)


def test_idle_buckets_are_pruned():
    fake_time = FakeTime()
    limiter = InMemoryRateLimiter(RateLimitConfig(enabled=True), time_fn=fake_time)
    policy = RoutePolicy(per_minute=60, burst=1)
    for n in range(10001):
        limiter.allow(f"old:{n}", policy)

    fake_time.advance(3600)
    limiter.allow("fresh", policy)

    assert list(limiter.buckets) == ["fresh"]


def test_production_ignores_rotating_user_header(monkeypatch):
    monkeypatch.setenv("ENV", "production")
    config = RateLimitConfig(enabled=True, per_minute_default=4, burst_default=4)
    client = TestClient(_make_app(config, FakeTime()))

    codes = [
        client.post("/api/billing/subscriptions/cancel", headers={"X-User-Id": f"spoof{n}"}).status_code
        for n in range(20)
    ]

    assert codes[:2] == [200, 200]
    assert set(codes[2:]) == {429}


def test_production_keys_on_authorization(monkeypatch):
    monkeypatch.setenv("ENV", "production")
    config = RateLimitConfig(enabled=True, per_minute_default=1, burst_default=1)
    client = TestClient(_make_app(config, FakeTime()))

    first = {"Authorization": "Bearer token-a", "X-User-Id": "x1"}
    assert client.get("/api/billing/status", headers=first).status_code == 200
    assert client.get("/api/billing/status", headers={**first, "X-User-Id": "x2"}).status_code == 429
    assert client.get("/api/billing/status", headers={"Authorization": "Bearer token-b"}).status_code == 200
