"""
ratelimit/limiter.py -- CheckRateLimit over the durable counter store.

check() never raises for a rejected request; it returns a decision the
caller can render. enforce() is the raising variant used by the HTTP guard.

For a fixed key inside one window, `remaining` is non-increasing: call n
returns max(0, limit - n). When the window closes the next call starts a new
window and returns limit - 1.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import datetime

from core.clock import Clock, to_epoch, utc_now
from core.config import Settings, get_settings
from core.errors import RateLimitExceeded, storage_errors
from ratelimit.store import RateLimitStore

logger = logging.getLogger("sessionguard.ratelimit")


@dataclass
class RateLimitDecision:
    allowed: bool
    remaining: int
    limit: int
    reset_at: datetime
    retry_after: int  # seconds until reset_at, 0 when allowed


def rate_limit_key(route: str, identity: str) -> str:
    return f"{route}:{identity}"


class RateLimiter:
    def __init__(
        self,
        store: RateLimitStore,
        settings: Settings | None = None,
        clock: Clock = utc_now,
        max_requests: int | None = None,
        window_seconds: int | None = None,
    ) -> None:
        settings = settings or get_settings()
        self._store = store
        self._clock = clock
        self.max_requests = max_requests or settings.rate_limit_max_requests
        self.window_seconds = window_seconds or settings.rate_limit_window_seconds

    def check(self, key: str) -> RateLimitDecision:
        now = self._clock()
        with storage_errors("ratelimit.check"):
            hits, reset_at = self._store.hit(key, now, self.window_seconds)
        allowed = hits <= self.max_requests
        retry_after = 0 if allowed else max(1, math.ceil(to_epoch(reset_at) - to_epoch(now)))
        if not allowed:
            logger.warning("Rate limit exceeded key=%s hits=%d retry_after=%ds", key, hits, retry_after)
        return RateLimitDecision(
            allowed=allowed,
            remaining=max(0, self.max_requests - hits),
            limit=self.max_requests,
            reset_at=reset_at,
            retry_after=retry_after,
        )

    def enforce(self, key: str) -> RateLimitDecision:
        decision = self.check(key)
        if not decision.allowed:
            raise RateLimitExceeded(
                reset_at=decision.reset_at,
                retry_after=decision.retry_after,
                limit=decision.limit,
            )
        return decision
