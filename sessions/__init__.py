"""sessions/ -- Device sessions, anomaly detection, and security alerts for SessionGuard.

Layer rule: sessions/ imports only core/, auth.models / auth.roles types,
stdlib, and third-party libraries. It does NOT import from api/ or ratelimit/.
"""
