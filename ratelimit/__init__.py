"""ratelimit/ -- Progressive brute-force protection for AuthGate.

Layer rule: ratelimit/ imports only stdlib, third-party libraries and core/.
It does NOT import from api/, auth/ or notify/. auth/ flows import from
ratelimit/, not the other way around.
"""
