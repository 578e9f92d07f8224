"""
Token-bucket rate limiter.

- In-memory, keyed by account+category or ip+category.
- Disabled unless RATE_LIMIT_ENABLED is set.
- Billing mutations get half the default budget; Stripe webhooks are never limited.
"""

import time
from dataclasses import dataclass
from typing import Callable, Dict, Mapping, Optional

WEBHOOK_PATH = "/api/billing/webhook"
BILLING_PREFIX = "/api/billing"
MUTATING_METHODS = {"POST", "PUT", "PATCH", "DELETE"}

# Buckets idle this long are dropped
IDLE_BUCKET_SECONDS = 600


@dataclass
class RateLimitConfig:
    enabled: bool = False
    per_minute_default: int = 120
    burst_default: int = 30


@dataclass
class RoutePolicy:
    per_minute: int
    burst: int


class TokenBucket:
    def __init__(self, capacity: int, refill_rate_per_sec: float, time_fn: Callable[[], float] = time.monotonic):
        self.capacity = max(1, capacity)
        self.tokens = float(self.capacity)
        self.refill_rate = max(0.0, refill_rate_per_sec)
        self.time_fn = time_fn
        self.last_seen = self.time_fn()

    def allow(self, cost: float = 1.0) -> bool:
        now = self.time_fn()
        elapsed = now - self.last_seen
        if elapsed > 0:
            self.tokens = min(self.capacity, self.tokens + elapsed * self.refill_rate)
            self.last_seen = now
        if self.tokens >= cost:
            self.tokens -= cost
            return True
        return False


class InMemoryRateLimiter:
    def __init__(self, config: RateLimitConfig, time_fn: Callable[[], float] = time.monotonic):
        self.config = config
        self.time_fn = time_fn
        self.buckets: Dict[str, TokenBucket] = {}

    def _prune(self) -> None:
        cutoff = self.time_fn() - IDLE_BUCKET_SECONDS
        for key in [k for k, b in self.buckets.items() if b.last_seen < cutoff]:
            del self.buckets[key]

    def allow(self, key: str, policy: RoutePolicy) -> bool:
        bucket = self.buckets.get(key)
        if bucket is None:
            if len(self.buckets) > 10000:
                self._prune()
            bucket = TokenBucket(
                capacity=policy.burst,
                refill_rate_per_sec=policy.per_minute / 60.0,
                time_fn=self.time_fn,
            )
            self.buckets[key] = bucket
        return bucket.allow()


def policy_for(path: str, method: str, config: RateLimitConfig) -> Optional[RoutePolicy]:
    """Route policy, or None when the route is exempt."""
    if path == WEBHOOK_PATH:
        return None
    if path.startswith(BILLING_PREFIX) and method.upper() in MUTATING_METHODS:
        return RoutePolicy(
            per_minute=max(1, config.per_minute_default // 2),
            burst=max(1, config.burst_default // 2),
        )
    return RoutePolicy(per_minute=config.per_minute_default, burst=config.burst_default)


def build_rate_limit_config_from_env(env: Mapping[str, str]) -> RateLimitConfig:
    def _bool(name: str, default: bool) -> bool:
        raw = env.get(name)
        if raw is None:
            return default
        return str(raw).lower() in {"1", "true", "yes", "on"}

    def _int(name: str, default: int) -> int:
        raw = env.get(name)
        if raw is None:
            return default
        try:
            value = int(raw)
        except ValueError:
            return default
        return value if value > 0 else default

    return RateLimitConfig(
        enabled=_bool("RATE_LIMIT_ENABLED", False),
        per_minute_default=_int("RATE_LIMIT_PER_MINUTE_DEFAULT", 120),
        burst_default=_int("RATE_LIMIT_BURST_DEFAULT", 30),
    )
