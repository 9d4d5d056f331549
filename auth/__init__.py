"""auth/ -- Accounts, credentials and the authentication flows for AuthGate.

Layer rule: auth/ imports stdlib, third-party libraries, core/, ratelimit/
and notify/. It does NOT import from api/. api/ imports from auth/, not the
other way around.
"""
