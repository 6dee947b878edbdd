"""
core/errors.py -- Closed error taxonomy shared by auth/ and api/.

Every failure the auth core can report is one ErrorKind member. The kind is
chosen once, at the raise site, and carries its own stable machine code, HTTP
status and default message. The API layer renders any AuthError from its kind
alone -- it never inspects message text or re-derives codes.

Exception classes mirror the taxonomy the boundary reports on:
  ValidationError      malformed input                     400
  AuthenticationError  bad credentials, missing/bad token  401/403
  AuthorizationError   deactivated or locked account       403/423
  ConflictError        duplicate registration              409
  NotFoundError        user vanished mid-request           404
  InfrastructureError  store unreachable                   500
  CsrfError            anti-forgery gate                   403

Each class restricts the kinds it accepts so a ConflictError can never be
raised with, say, ACCOUNT_LOCKED.

Layer rule: core/ is the kernel. No imports from api/, auth/, or client/.
"""

from __future__ import annotations

from enum import Enum
from typing import Any


class ErrorKind(Enum):
    """Stable error kinds: (machine code, HTTP status, default message)."""

    VALIDATION = ("validation_error", 400, "Request validation failed.")
    NO_TOKEN_PROVIDED = ("no_token_provided", 400, "No token provided.")
    INVALID_CREDENTIALS = ("invalid_credentials", 401, "Invalid credentials.")
    TOKEN_REQUIRED = ("token_required", 401, "Access token required.")
    TOKEN_INVALID = ("token_invalid", 403, "Invalid or expired token.")
    SESSION_INVALID = ("session_invalid", 403, "Session expired or invalid.")
    ACCOUNT_DEACTIVATED = ("account_deactivated", 403, "Account is deactivated.")
    ACCOUNT_LOCKED = ("account_locked", 423, "Account temporarily locked due to too many failed attempts.")
    CONFLICT = ("conflict", 409, "Username or email already exists.")
    NOT_FOUND = ("not_found", 404, "User not found.")
    CSRF_MISSING = ("csrf_missing", 403, "CSRF token required. Fetch a new token and retry.")
    CSRF_REFRESH_REQUIRED = ("csrf_refresh_required", 403, "CSRF token expired. Fetch a new token and retry.")
    CSRF_INVALID = ("csrf_invalid", 403, "Invalid CSRF token.")
    RATE_LIMITED = ("rate_limited", 429, "Too many requests.")
    INTERNAL = ("internal_error", 500, "An unexpected error occurred.")

    def __init__(self, code: str, status: int, message: str) -> None:
        self.code = code
        self.status = status
        self.message = message

    @classmethod
    def from_code(cls, code: str) -> "ErrorKind | None":
        """Return the kind for a machine code, or None for unknown codes."""
        for kind in cls:
            if kind.code == code:
                return kind
        return None


class AuthError(Exception):
    """Base class for every error the auth core reports to the boundary."""

    allowed_kinds: frozenset[ErrorKind] = frozenset(ErrorKind)

    def __init__(self, kind: ErrorKind, message: str | None = None, details: Any = None) -> None:
        if kind not in self.allowed_kinds:
            raise TypeError(f"{type(self).__name__} cannot carry {kind.name}")
        self.kind = kind
        self.message = message or kind.message
        self.details = details
        super().__init__(self.message)

    @property
    def status_code(self) -> int:
        return self.kind.status

    @property
    def code(self) -> str:
        return self.kind.code


class ValidationError(AuthError):
    allowed_kinds = frozenset({ErrorKind.VALIDATION, ErrorKind.NO_TOKEN_PROVIDED})


class AuthenticationError(AuthError):
    allowed_kinds = frozenset(
        {
            ErrorKind.INVALID_CREDENTIALS,
            ErrorKind.TOKEN_REQUIRED,
            ErrorKind.TOKEN_INVALID,
            ErrorKind.SESSION_INVALID,
            ErrorKind.CSRF_MISSING,
            ErrorKind.CSRF_REFRESH_REQUIRED,
            ErrorKind.CSRF_INVALID,
        }
    )


class CsrfError(AuthenticationError):
    allowed_kinds = frozenset({ErrorKind.CSRF_MISSING, ErrorKind.CSRF_REFRESH_REQUIRED, ErrorKind.CSRF_INVALID})


class AuthorizationError(AuthError):
    allowed_kinds = frozenset({ErrorKind.ACCOUNT_DEACTIVATED, ErrorKind.ACCOUNT_LOCKED})


class ConflictError(AuthError):
    allowed_kinds = frozenset({ErrorKind.CONFLICT})

    def __init__(self, message: str | None = None, details: Any = None) -> None:
        super().__init__(ErrorKind.CONFLICT, message, details)


class NotFoundError(AuthError):
    allowed_kinds = frozenset({ErrorKind.NOT_FOUND})

    def __init__(self, message: str | None = None, details: Any = None) -> None:
        super().__init__(ErrorKind.NOT_FOUND, message, details)


class InfrastructureError(AuthError):
    """Storage or other collaborator failure. Never carries internal detail outward."""

    allowed_kinds = frozenset({ErrorKind.INTERNAL})

    def __init__(self, message: str | None = None) -> None:
        super().__init__(ErrorKind.INTERNAL, message)
