"""notify/ -- Outbound email for AuthGate (verification and password-reset codes).

Layer rule: notify/ imports only stdlib, third-party libraries and core/.
"""
