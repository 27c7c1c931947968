"""ratelimit/ -- Durable request-rate limits for SessionGuard.

Layer rule: ratelimit/ imports only core/, stdlib, and third-party libraries.
"""
