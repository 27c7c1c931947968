"""
api/limiter.py -- Shared slowapi flood guard.

Import this in api/main.py (to mount as middleware) and in the route modules
that apply per-route limits with @limiter.limit().

This is an in-memory, per-process, per-IP guard for the public
ceremony-start routes only. It protects the challenge table from being
flooded; it is not the source of truth for brute-force limits. Those are the
durable counters in ratelimit/, applied through api.guards.rate_limit().
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from core.config import get_settings

limiter = Limiter(key_func=get_remote_address, storage_uri="memory://")

CEREMONY_START_LIMIT = get_settings().ceremony_start_rate_limit
