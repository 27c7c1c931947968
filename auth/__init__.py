"""auth/ -- Identity, WebAuthn ceremonies, MFA, and impersonation for SessionGuard.

Layer rule: auth/ imports only core/, stdlib, and third-party libraries.
It does NOT import from api/, sessions/, or ratelimit/.
api/ imports from auth/, not the other way around.
"""
