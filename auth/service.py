"""
auth/service.py -- Authentication orchestrator.

Composes the credential hasher, lockout tracker, token issuer, session store
and audit log into the operations the API exposes: register, login, logout,
authenticate (token + session check), profile, and session management.

Login state machine:
  Received -> AccountChecked -> CredentialChecked -> TokenIssued
           -> SessionPersisted -> AuditRecorded -> Responded

The lockout reset and the session insert share one transaction; the audit
write runs after it commits, so a failed audit never undoes a login.

Error policy:
  - Unknown user and wrong password raise the same INVALID_CREDENTIALS kind
    with the same message (enumeration resistance).
  - Deactivated and locked accounts are reported distinctly; neither is a
    secret. Both still spend one dummy bcrypt verify so a refusal costs the
    same time as a real credential check [C1].
  - Token failures collapse to TOKEN_INVALID; a valid token without an active
    session is SESSION_INVALID (the server-side revocation path).
  - Storage failures become InfrastructureError at this boundary. The raw
    driver error is logged here and never reaches the response. No retries.

Every method is synchronous. FastAPI runs sync handlers in a worker thread
that is not cancelled on client disconnect, so session persistence and the
audit write complete even if the response is discarded.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from auth.audit import AuditLog
from auth.lockout import LockoutTracker
from auth.models import AuditAction, AuthContext, RequestContext, Role, Session, User
from auth.sessions import SessionStore
from auth.store import UserStore, utcnow
from auth.tokens import (
    create_access_token,
    decode_access_token,
    equalize_timing,
    hash_password,
    hash_token,
    verify_password,
)
from core.config import get_settings
from core.errors import (
    AuthenticationError,
    AuthorizationError,
    ConflictError,
    ErrorKind,
    InfrastructureError,
    NotFoundError,
    ValidationError,
)

logger = logging.getLogger("adminauth.auth")

# ---------------------------------------------------------------------------
# Input rules -- shared with api/models.py so both layers agree
# ---------------------------------------------------------------------------

USERNAME_PATTERN = r"^[A-Za-z0-9]{3,50}$"
EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"
PASSWORD_MIN_LENGTH = 8
PASSWORD_MAX_LENGTH = 255


def password_policy_errors(password: str) -> list[str]:
    """Return human-readable policy violations (empty list = acceptable)."""
    errors: list[str] = []
    if len(password) < PASSWORD_MIN_LENGTH:
        errors.append(f"Password must be at least {PASSWORD_MIN_LENGTH} characters.")
    if len(password) > PASSWORD_MAX_LENGTH:
        errors.append(f"Password must be at most {PASSWORD_MAX_LENGTH} characters.")
    if not re.search(r"[a-z]", password):
        errors.append("Password must contain a lowercase letter.")
    if not re.search(r"[A-Z]", password):
        errors.append("Password must contain an uppercase letter.")
    if not re.search(r"\d", password):
        errors.append("Password must contain a number.")
    return errors


def registration_errors(username: str, email: str, password: str) -> list[dict]:
    """Validate registration input. Returns [{"field", "message"}, ...]."""
    errors: list[dict] = []
    if not re.match(USERNAME_PATTERN, username or ""):
        errors.append({"field": "username", "message": "Username must be 3-50 alphanumeric characters."})
    if len(email or "") > 255 or not re.match(EMAIL_PATTERN, email or ""):
        errors.append({"field": "email", "message": "Valid email required."})
    errors.extend({"field": "password", "message": msg} for msg in password_policy_errors(password or ""))
    return errors


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


@dataclass
class LoginResult:
    token: str
    expires_at: datetime
    expires_in: int
    user: User
    session_id: int


@contextmanager
def _storage_guard(operation: str) -> Iterator[None]:
    """Translate storage-driver failures into InfrastructureError."""
    try:
        yield
    except SQLAlchemyError as exc:
        logger.exception("Storage failure during %s", operation)
        raise InfrastructureError() from exc


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


class AuthService:
    """Usage:
    service = AuthService.from_engine(create_auth_engine())
    service.register("alice", "alice@example.com", "Password123")
    result = service.login("alice", "Password123")
    ctx = service.authenticate(result.token)
    """

    def __init__(
        self,
        users: UserStore,
        sessions: SessionStore,
        audit: AuditLog,
        lockout: LockoutTracker | None = None,
        session_expire_seconds: int | None = None,
    ) -> None:
        self.users = users
        self.sessions = sessions
        self.audit = audit
        self.lockout = lockout or LockoutTracker(users)
        self.session_ttl = timedelta(seconds=session_expire_seconds or get_settings().session_expire_seconds)

    @classmethod
    def from_engine(cls, engine: Engine) -> "AuthService":
        users = UserStore(engine)
        return cls(users=users, sessions=SessionStore(engine), audit=AuditLog(engine))

    # ------------------------------------------------------------------
    # Register
    # ------------------------------------------------------------------

    def register(
        self,
        username: str,
        email: str,
        password: str,
        ctx: RequestContext | None = None,
        role: Role = Role.developer,
    ) -> User:
        """Create an account. Duplicate username/email -> ConflictError, and no row is written."""
        errors = registration_errors(username, email, password)
        if errors:
            raise ValidationError(ErrorKind.VALIDATION, details=errors)

        with _storage_guard("register"):
            if self.users.exists(username, email):
                raise ConflictError()
            new_user = User(username=username, email=email, password_hash=hash_password(password), role=role.value)
            try:
                user_id = self.users.create_user(new_user)
            except IntegrityError as exc:
                # A concurrent registration won the race after exists() passed.
                raise ConflictError() from exc
            self.audit.record(
                AuditAction.USER_REGISTERED,
                user_id=user_id,
                ctx=ctx,
                resource_type="user",
                resource_id=user_id,
                new_values={"username": username, "email": email, "role": role.value},
            )
            created = self.users.get_by_id(user_id)
        if created is None:
            raise InfrastructureError()
        logger.info("User registered: user_id=%s", user_id)
        return created

    # ------------------------------------------------------------------
    # Login
    # ------------------------------------------------------------------

    def login(self, identifier: str, password: str, ctx: RequestContext | None = None) -> LoginResult:
        with _storage_guard("login"):
            user = self.users.get_by_login(identifier)
            if user is None:
                equalize_timing(password)
                logger.warning("Login refused: unknown identifier")
                self.audit.record(AuditAction.USER_LOGIN_FAILED, ctx=ctx, new_values={"reason": "unknown_user"})
                raise AuthenticationError(ErrorKind.INVALID_CREDENTIALS)

            if not user.is_active:
                equalize_timing(password)
                logger.warning("Login refused: user_id=%s deactivated", user.id)
                raise AuthorizationError(ErrorKind.ACCOUNT_DEACTIVATED)

            if self.lockout.is_locked(user):
                equalize_timing(password)
                logger.warning("Login refused: user_id=%s locked until %s", user.id, user.locked_until)
                raise AuthorizationError(
                    ErrorKind.ACCOUNT_LOCKED,
                    details={"locked_until": user.locked_until, "retry_after": self.lockout.retry_after(user)},
                )

            if not verify_password(password, user.password_hash):
                outcome = self.lockout.record_failure(user)
                self.audit.record(
                    AuditAction.USER_LOGIN_FAILED,
                    user_id=user.id,
                    ctx=ctx,
                    new_values={"reason": "bad_password", "attempts": outcome.attempts},
                )
                if outcome.just_locked:
                    self.audit.record(
                        AuditAction.USER_LOCKED,
                        user_id=user.id,
                        ctx=ctx,
                        resource_type="user",
                        resource_id=user.id,
                        new_values={"locked_until": outcome.locked_until, "attempts": outcome.attempts},
                    )
                raise AuthenticationError(ErrorKind.INVALID_CREDENTIALS)

            issued = create_access_token(user.id, user.username, user.role)
            # Lockout reset and session insert commit together or not at all.
            with self.users.engine.begin() as conn:
                self.lockout.record_success(user, conn=conn)
                session_id = self.sessions.create(
                    user_id=user.id,
                    token_hash=hash_token(issued.token),
                    jti=issued.jti,
                    expires_at=utcnow() + self.session_ttl,
                    ip_address=(ctx or RequestContext()).ip_address,
                    user_agent=(ctx or RequestContext()).user_agent,
                    conn=conn,
                )
            self.audit.record(
                AuditAction.USER_LOGIN,
                user_id=user.id,
                ctx=ctx,
                resource_type="session",
                resource_id=session_id,
            )
            refreshed = self.users.get_by_id(user.id) or user
        logger.info("Login succeeded: user_id=%s session_id=%s", user.id, session_id)
        return LoginResult(
            token=issued.token,
            expires_at=issued.expires_at,
            expires_in=int((issued.expires_at - issued.issued_at).total_seconds()),
            user=refreshed,
            session_id=session_id,
        )

    # ------------------------------------------------------------------
    # Logout
    # ------------------------------------------------------------------

    def logout(self, token: str | None, ctx: RequestContext | None = None) -> bool:
        """Revoke the session behind a presented token. Returns True if a session was revoked.

        Only the signature is checked: an expired token still identifies its
        session, and revoking an already-expired session is harmless. A token
        with a bad signature is tolerated (nothing is revoked).
        """
        if not token:
            raise ValidationError(ErrorKind.NO_TOKEN_PROVIDED)

        claims = decode_access_token(token, verify_exp=False)
        if claims is None:
            logger.info("Logout with unverifiable token; nothing revoked")
            self.audit.record(AuditAction.TOKEN_REJECTED, ctx=ctx, new_values={"operation": "logout"})
            return False

        with _storage_guard("logout"):
            revoked = self.sessions.revoke_by_token(hash_token(token))
            self.audit.record(AuditAction.USER_LOGOUT, user_id=claims["user_id"], ctx=ctx, resource_type="session")
        return revoked

    # ------------------------------------------------------------------
    # Token + session check
    # ------------------------------------------------------------------

    def authenticate(self, token: str | None, ctx: RequestContext | None = None) -> AuthContext:
        """Require a valid, unexpired token AND a matching active session."""
        if not token:
            raise AuthenticationError(ErrorKind.TOKEN_REQUIRED)

        claims = decode_access_token(token)
        if claims is None:
            logger.warning("Token rejected: invalid or expired")
            self.audit.record(AuditAction.TOKEN_REJECTED, ctx=ctx, new_values={"reason": "token_invalid"})
            raise AuthenticationError(ErrorKind.TOKEN_INVALID)

        with _storage_guard("authenticate"):
            session = self.sessions.find_active(hash_token(token))
            if session is None or session.user_id != claims["user_id"]:
                logger.warning("Token rejected: no active session for user_id=%s", claims["user_id"])
                self.audit.record(
                    AuditAction.TOKEN_REJECTED,
                    user_id=claims["user_id"],
                    ctx=ctx,
                    new_values={"reason": "session_invalid"},
                )
                raise AuthenticationError(ErrorKind.SESSION_INVALID)
            user = self.users.get_by_id(session.user_id)

        if user is None:
            raise NotFoundError()
        if not user.is_active:
            raise AuthorizationError(ErrorKind.ACCOUNT_DEACTIVATED)
        return AuthContext(user=user, session=session, claims=claims)

    def profile(self, token: str | None, ctx: RequestContext | None = None) -> User:
        return self.authenticate(token, ctx).user

    # ------------------------------------------------------------------
    # Session management
    # ------------------------------------------------------------------

    def list_sessions(self, auth: AuthContext) -> list[Session]:
        with _storage_guard("list_sessions"):
            return self.sessions.list_active_for_user(auth.user.id)

    def revoke_session(self, auth: AuthContext, session_id: int, ctx: RequestContext | None = None) -> None:
        """Revoke one of the caller's own sessions. Other users' sessions look nonexistent."""
        with _storage_guard("revoke_session"):
            if not self.sessions.revoke(session_id, user_id=auth.user.id):
                raise NotFoundError("Session not found.")
            self.audit.record(
                AuditAction.SESSION_REVOKED,
                user_id=auth.user.id,
                ctx=ctx,
                resource_type="session",
                resource_id=session_id,
            )

    def revoke_other_sessions(self, auth: AuthContext, ctx: RequestContext | None = None) -> int:
        """Revoke every session of the caller except the one making the request."""
        with _storage_guard("revoke_other_sessions"):
            count = self.sessions.revoke_all_for_user(auth.user.id, except_session_id=auth.session.id)
            if count:
                self.audit.record(
                    AuditAction.SESSION_REVOKED,
                    user_id=auth.user.id,
                    ctx=ctx,
                    resource_type="session",
                    new_values={"revoked": count, "kept": auth.session.id},
                )
        return count

    def purge_expired_sessions(self) -> int:
        with _storage_guard("purge_expired_sessions"):
            purged = self.sessions.purge_expired()
        if purged:
            logger.info("Purged %d expired or revoked sessions", purged)
        return purged

    # ------------------------------------------------------------------
    # Operator actions
    # ------------------------------------------------------------------

    def unlock(self, identifier: str) -> bool:
        """Clear a user's lockout state. Returns False if the user does not exist."""
        with _storage_guard("unlock"):
            user = self.users.get_by_login(identifier)
            if user is None:
                return False
            self.lockout.unlock(user)
        logger.info("Lockout cleared: user_id=%s", user.id)
        return True

    def set_active(self, identifier: str, active: bool) -> bool:
        """Activate or deactivate an account. Returns False if the user does not exist.

        Deactivation also revokes every open session, so existing tokens stop
        working on their next request instead of at expiry.
        """
        with _storage_guard("set_active"):
            user = self.users.get_by_login(identifier)
            if user is None:
                return False
            self.users.update_user(user.id, is_active=active)
            revoked = 0 if active else self.sessions.revoke_all_for_user(user.id)
            self.audit.record(
                AuditAction.USER_STATUS_CHANGED,
                user_id=user.id,
                resource_type="user",
                resource_id=user.id,
                old_values={"is_active": user.is_active},
                new_values={"is_active": active, "sessions_revoked": revoked},
            )
        logger.info("Account %s: user_id=%s", "activated" if active else "deactivated", user.id)
        return True

    def active_session_count(self) -> int:
        with _storage_guard("active_session_count"):
            return self.sessions.count_active()
