"""
API request and response models for admin-auth REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

UserPublic never includes password_hash or lockout counters -- the mapping
from User is explicit, field by field.
"""

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from auth.models import Session, User
from auth.service import EMAIL_PATTERN, PASSWORD_MAX_LENGTH, USERNAME_PATTERN, password_policy_errors

# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class RegisterRequest(BaseModel):
    """Request body for POST /api/v1/auth/register."""

    username: str = Field(min_length=3, max_length=50, pattern=USERNAME_PATTERN)
    email: str = Field(min_length=3, max_length=255, pattern=EMAIL_PATTERN)
    # Passwords are taken verbatim: leading/trailing spaces are significant.
    password: str = Field(max_length=PASSWORD_MAX_LENGTH)

    @field_validator("username", "email", mode="before")
    @classmethod
    def strip_whitespace(cls, value: Any) -> Any:
        return value.strip() if isinstance(value, str) else value

    @field_validator("password")
    @classmethod
    def enforce_password_policy(cls, value: str) -> str:
        errors = password_policy_errors(value)
        if errors:
            raise ValueError(" ".join(errors))
        return value


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login. username accepts a username or an email."""

    username: str = Field(min_length=3, max_length=255)
    password: str = Field(min_length=6, max_length=PASSWORD_MAX_LENGTH)

    @field_validator("username")
    @classmethod
    def strip_identifier(cls, value: str) -> str:
        return value.strip()


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class UserPublic(BaseModel):
    """Outward-facing user profile."""

    model_config = ConfigDict(frozen=True)

    id: int
    username: str
    email: str
    role: str
    created_at: Optional[str] = None
    last_login: Optional[str] = None

    @classmethod
    def from_user(cls, user: User) -> "UserPublic":
        return cls(
            id=user.id,
            username=user.username,
            email=user.email,
            role=user.role,
            created_at=user.created_at,
            last_login=user.last_login,
        )


class RegisterResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str = "User registered successfully."
    userId: int  # noqa: N815 -- wire name


class LoginResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str = "Login successful."
    token: str
    token_type: str = "bearer"
    expires_in: int
    user: UserPublic


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str


class ProfileResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    user: UserPublic


class CsrfTokenResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    csrfToken: str  # noqa: N815 -- wire name
    expires_in: int


class SessionInfo(BaseModel):
    """One active session. The token hash is never exposed."""

    model_config = ConfigDict(frozen=True)

    id: int
    created_at: Optional[str]
    expires_at: str
    ip_address: Optional[str]
    user_agent: Optional[str]
    current: bool

    @classmethod
    def from_session(cls, session: Session, current_session_id: int) -> "SessionInfo":
        return cls(
            id=session.id,
            created_at=session.created_at,
            expires_at=session.expires_at,
            ip_address=session.ip_address,
            user_agent=session.user_agent,
            current=session.id == current_session_id,
        )


class RevokedCountResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    revoked: int


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    details: Optional[Any] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)
