"""auth/ -- Authentication core for admin-auth.

Components (leaves first): tokens (credential hasher + bearer tokens),
lockout, store (users), sessions, csrf, audit, service (orchestrator).

Layer rule: auth/ imports only stdlib, third-party libraries and core/.
It does NOT import from api/ or client/.
api/ imports from auth/, not the other way around.
"""
