"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Stores and the
AuthService do the work; these own the domain shape.

Timestamps are ISO 8601 UTC strings with microsecond precision (see
auth.store.iso), matching how they are stored.

Layer rule: no imports from api/ or client/.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any


class Role(str, Enum):
    admin = "admin"
    developer = "developer"
    viewer = "viewer"


class AuditAction(str, Enum):
    USER_REGISTERED = "USER_REGISTERED"
    USER_LOGIN = "USER_LOGIN"
    USER_LOGIN_FAILED = "USER_LOGIN_FAILED"
    USER_LOCKED = "USER_LOCKED"
    USER_LOGOUT = "USER_LOGOUT"
    TOKEN_REJECTED = "TOKEN_REJECTED"
    SESSION_REVOKED = "SESSION_REVOKED"
    USER_STATUS_CHANGED = "USER_STATUS_CHANGED"


@dataclass
class User:
    """An administrative-interface account.

    password_hash is the Credential Hasher output. It is never logged and
    never serialized outward -- api/ maps User to UserPublic explicitly.

    login_attempts / locked_until drive the lockout state machine in
    auth/lockout.py. They are only ever written through the narrow,
    field-scoped updates in UserStore, never by a full-row save.
    """

    username: str
    email: str
    password_hash: str
    role: str = Role.developer.value
    id: int | None = None
    is_active: bool = True
    login_attempts: int = 0
    locked_until: str | None = None
    created_at: str | None = None
    updated_at: str | None = None
    last_login: str | None = None


@dataclass
class Session:
    """One successful login.

    token_hash is HMAC-SHA256(SECRET_KEY, raw_token). The raw bearer token is
    never persisted, so a leaked sessions table holds nothing a client could
    present. jti mirrors the token's jti claim.
    """

    user_id: int
    token_hash: str
    jti: str
    expires_at: str
    id: int | None = None
    is_active: bool = True
    ip_address: str | None = None
    user_agent: str | None = None
    created_at: str | None = None


@dataclass
class AuditLogEntry:
    """Append-only security record. user_id is None for pre-auth events."""

    action: str
    user_id: int | None = None
    resource_type: str | None = None
    resource_id: int | None = None
    old_values: dict[str, Any] | None = None
    new_values: dict[str, Any] | None = None
    ip_address: str | None = None
    user_agent: str | None = None
    id: int | None = None
    created_at: str | None = None


@dataclass
class RequestContext:
    """Client metadata captured at the boundary and threaded into the core."""

    ip_address: str | None = None
    user_agent: str | None = None


@dataclass
class AuthContext:
    """Result of a successful token + session check."""

    user: User
    session: Session
    claims: dict[str, Any]
