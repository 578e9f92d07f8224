import hashlib
import logging
import os
import time
from typing import Callable, Optional

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from vvip.core.auth import header_fallback_allowed
from vvip.core.errors import RateLimitError, app_error_handler
from vvip.core.logging import get_request_id
from vvip.core.ratelimit import (
    MUTATING_METHODS,
    InMemoryRateLimiter,
    RateLimitConfig,
    build_rate_limit_config_from_env,
    policy_for,
)

logger = logging.getLogger("vvip")


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Token-bucket rate limiting middleware (opt-in via env)."""

    def __init__(self, app, *, config: Optional[RateLimitConfig] = None, env: Optional[dict] = None, time_fn: Optional[Callable[[], float]] = None):
        super().__init__(app)
        self.config = config or build_rate_limit_config_from_env(env if env is not None else os.environ)
        self.limiter = InMemoryRateLimiter(self.config, time_fn=time_fn or time.monotonic)

    def _client_key(self, request: Request, category: str) -> str:
        # Same trust rule as authentication: the header is ignored in production
        account_id = request.headers.get("X-User-Id") if header_fallback_allowed() else None
        if not account_id:
            auth = request.headers.get("Authorization")
            if auth:
                # Never keep raw credentials as dictionary keys
                account_id = hashlib.sha256(auth.encode("utf-8")).hexdigest()[:16]
        if account_id:
            return f"account:{account_id}:{category}"

        ip = request.headers.get("x-forwarded-for") or (request.client.host if request.client else "unknown")
        return f"ip:{ip}:{category}"

    async def dispatch(self, request: Request, call_next):
        if not self.config.enabled:
            return await call_next(request)

        policy = policy_for(request.url.path, request.method, self.config)
        if policy is None:
            return await call_next(request)

        category = "mutation" if request.method.upper() in MUTATING_METHODS else "read"
        key = self._client_key(request, category)

        if self.limiter.allow(key, policy):
            return await call_next(request)

        rid = getattr(request.state, "request_id", None) or get_request_id()
        logger.warning("ratelimit.blocked", extra={"path": request.url.path, "method": request.method})

        response = await app_error_handler(
            request,
            RateLimitError("Rate limit exceeded for this endpoint", request_id=rid),
        )
        retry_after = max(1, int(60 / max(1, policy.per_minute)))
        response.headers["Retry-After"] = str(retry_after)
        response.headers["X-RateLimit-Limit"] = str(policy.per_minute)
        response.headers["X-RateLimit-Remaining"] = "0"
        return response
