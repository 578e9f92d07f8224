"""Tests for normalized error responses."""

from datetime import datetime, timezone

from fastapi import FastAPI
from fastapi.testclient import TestClient

from vvip.core.errors import (
    AppError,
    CommitmentActiveError,
    app_error_handler,
)
from vvip.core.middleware.ratelimit import RateLimitMiddleware
from vvip.core.middleware.request_id import RequestIdMiddleware
from vvip.core.ratelimit import RateLimitConfig
from vvip.main import app


def test_validation_error_has_standard_shape(reset_db):
    client = TestClient(app)
    resp = client.post(
        "/api/billing/subscriptions/change",
        headers={"X-User-Id": "acct_errors"},
        json={"plan_id": "Diamond"},
    )
    assert resp.status_code == 400
    body = resp.json()
    rid = resp.headers.get("x-request-id")
    assert body["error"]["code"] == "invalid_plan"
    assert body["error"]["request_id"] == rid
    assert body["detail"] == body["error"]["message"]


def test_unauthorized_normalized():
    client = TestClient(app)
    resp = client.get("/api/billing/payments")
    assert resp.status_code == 401
    body = resp.json()
    assert body["error"]["code"] == "unauthorized"
    assert body["error"]["request_id"] == resp.headers.get("x-request-id")


def test_commitment_error_carries_details():
    test_app = FastAPI()
    test_app.add_middleware(RequestIdMiddleware)
    test_app.add_exception_handler(AppError, app_error_handler)
    until = datetime(2025, 4, 30, 12, 0, tzinfo=timezone.utc)

    @test_app.post("/cancel")
    async def cancel():
        raise CommitmentActiveError(10, until)

    resp = TestClient(test_app).post("/cancel")

    assert resp.status_code == 403
    body = resp.json()
    assert body["error"]["code"] == "commitment_active"
    assert body["remaining_days"] == 10
    assert body["commitment_until"] == "2025-04-30T12:00:00+00:00"
    assert "2025-04-30" in body["error"]["message"]


def test_rate_limit_error_code():
    test_app = FastAPI()
    config = RateLimitConfig(enabled=True, per_minute_default=1, burst_default=1)
    test_app.add_middleware(RequestIdMiddleware)
    test_app.add_middleware(RateLimitMiddleware, config=config)

    @test_app.get("/api/billing/status")
    async def status():
        return {"ok": True}

    client = TestClient(test_app)

    first = client.get("/api/billing/status", headers={"X-User-Id": "rl-account"})
    assert first.status_code == 200

    second = client.get("/api/billing/status", headers={"X-User-Id": "rl-account"})
    assert second.status_code == 429
    assert second.json()["error"]["code"] == "rate_limited"
