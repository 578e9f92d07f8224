"""
Health and diagnostics API.

Provides lightweight endpoints for operational monitoring without exposing secrets.
"""

import logging
import os
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy import inspect

from vvip.core.database import check_connection, get_engine
from vvip.core.logging import get_request_id

logger = logging.getLogger("vvip")

router = APIRouter(prefix="/api/health", tags=["health"])
root_router = APIRouter(tags=["health"])

REQUIRED_TABLES = [
    "accounts",
    "subscription_records",
    "billing_events",
    "payments",
]


class HealthResponse(BaseModel):
    ok: bool
    db_connected: bool
    billing_enabled: bool
    stripe_mode: Optional[str] = None  # test | live
    has_pub_key: bool
    has_webhook_secret: bool
    computed_at: str  # UTC ISO format


@root_router.get("/healthz")
def healthz():
    """Lightweight liveness check (no deps)."""
    return {"status": "ok"}


@root_router.get("/readyz")
def readyz():
    """Readiness check: DB connectivity + required tables."""
    try:
        engine = get_engine()
        with engine.connect() as conn:
            conn.exec_driver_sql("SELECT 1")

        inspector = inspect(engine)
        missing = [t for t in REQUIRED_TABLES if not inspector.has_table(t)]
        if missing:
            detail = f"missing tables: {', '.join(missing)}"
            logger.warning(f"[readyz] {detail}")
            return JSONResponse(status_code=503, content={"status": "error", "detail": detail})

        return {"status": "ok"}
    except Exception as e:
        logger.error(f"[readyz] readiness check failed: {e}")
        return JSONResponse(status_code=503, content={"status": "error", "detail": "database unreachable"})


@router.get("", response_model=HealthResponse)
def health(now: Optional[str] = Query(None)):
    """
    Service health: database and billing configuration.

    Reports which Stripe mode is configured without exposing any key.

    Args:
        now: Optional ISO timestamp for deterministic testing (overrides system time)
    """
    secret_key = os.getenv("STRIPE_SECRET_KEY") or ""
    stripe_mode = None
    if secret_key:
        stripe_mode = "live" if secret_key.startswith("sk_live") else "test"

    db_connected = check_connection()
    logger.info(
        "health.check",
        extra={"request_id": get_request_id(), "status": "ok" if db_connected else "degraded"},
    )
    return HealthResponse(
        ok=db_connected,
        db_connected=db_connected,
        billing_enabled=bool(secret_key),
        stripe_mode=stripe_mode,
        has_pub_key=bool(os.getenv("STRIPE_PUBLISHABLE_KEY")),
        has_webhook_secret=bool(os.getenv("STRIPE_WEBHOOK_SECRET")),
        computed_at=now or datetime.now(timezone.utc).isoformat(),
    )
