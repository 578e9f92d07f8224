"""
Auth utilities for the membership API.

Validates HS256 session JWTs issued by the identity provider and extracts the
account id. Falls back to the X-User-Id header outside production (tests,
local development).
"""
import logging
import os
from typing import Optional

import jwt
from fastapi import Header, HTTPException, Request

from vvip.core.config import settings

logger = logging.getLogger(__name__)


def verify_session_jwt(token: str) -> dict:
    """
    Verify a session JWT and return its claims.

    Raises:
        HTTPException 401: Invalid or expired token, or auth not configured
    """
    secret = os.getenv("AUTH_JWT_SECRET") or settings.AUTH_JWT_SECRET
    if not secret:
        logger.warning("AUTH_JWT_SECRET not configured; rejecting bearer token")
        raise HTTPException(status_code=401, detail="Authentication not configured")

    audience = os.getenv("AUTH_JWT_AUDIENCE") or settings.AUTH_JWT_AUDIENCE
    try:
        claims = jwt.decode(
            token,
            secret,
            algorithms=["HS256"],
            audience=audience,
            options={"verify_aud": bool(audience), "require": ["sub", "exp"]},
        )
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.InvalidTokenError as e:
        logger.debug(f"Invalid token: {e}")
        raise HTTPException(status_code=401, detail="Invalid token")
    return claims


def header_fallback_allowed() -> bool:
    return os.getenv("ENV", settings.ENV).lower() != "production"


async def get_current_account_id(
    request: Request,
    x_user_id: Optional[str] = Header(None, description="Development/test account ID"),
) -> str:
    """
    Extract current account ID from request context.

    Priority:
    1. Bearer JWT from Authorization header ('sub' claim)
    2. X-User-Id header (not in production)
    3. Raise 401 Unauthorized

    After successful auth, the account (and its Free subscription record)
    is upserted.
    """
    from vvip.features.accounts.service import get_or_create_account

    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        claims = verify_session_jwt(auth_header[7:])
        account_id = str(claims["sub"])
        get_or_create_account(account_id, email=claims.get("email"))
        return account_id

    if x_user_id and header_fallback_allowed():
        get_or_create_account(x_user_id)
        return x_user_id

    raise HTTPException(
        status_code=401,
        detail="Missing Authorization (Bearer JWT) header",
    )
