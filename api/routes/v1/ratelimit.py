"""
api/routes/v1/ratelimit.py -- CheckRateLimit for calling surfaces.

  POST /api/v1/rate-limit/check   -- count one attempt against "<route>:<client address>"

Public. The caller names the route; the identity half of the key is always
the client's own address, so a caller can only spend its own quota. A
rejected check is a normal 200 response with allowed=false -- the caller
decides how to message it.
"""

from __future__ import annotations

from fastapi import APIRouter, Request

from api.guards import client_address
from api.models import RateLimitCheckRequest, RateLimitCheckResponse
from ratelimit.limiter import rate_limit_key

router = APIRouter()


@router.post("/rate-limit/check", response_model=RateLimitCheckResponse)
def check(request: Request, body: RateLimitCheckRequest) -> RateLimitCheckResponse:
    decision = request.app.state.rate_limiter.check(rate_limit_key(body.route, client_address(request)))
    return RateLimitCheckResponse(
        allowed=decision.allowed,
        remaining=decision.remaining,
        limit=decision.limit,
        reset_at=decision.reset_at,
        retry_after=decision.retry_after,
    )
