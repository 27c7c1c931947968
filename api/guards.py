"""
api/guards.py -- Durable rate-limit guard for sensitive routes.

    @router.post("/auth/recovery", dependencies=[Depends(rate_limit("recovery"))])

The guard runs before the route body, keys the counter as
"<route>:<client address>" and raises RateLimitExceeded (-> 429 with
Retry-After) once the window's quota is spent.
"""

from __future__ import annotations

from fastapi import Request

from ratelimit.limiter import RateLimitDecision, rate_limit_key


def client_address(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def rate_limit(route: str):
    def _guard(request: Request) -> RateLimitDecision:
        return request.app.state.rate_limiter.enforce(rate_limit_key(route, client_address(request)))

    _guard.__name__ = f"rate_limit_{route}"
    return _guard
