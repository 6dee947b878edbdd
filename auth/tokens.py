"""
auth/tokens.py -- Password hashing, bearer-token JWTs, and token hashing.

Security design decisions:
  Passwords: bcrypt with a fixed work factor (Settings.bcrypt_rounds, 12 in
       production). verify_password() returns False for any mismatch,
       including malformed stored hashes -- it never raises. The _DUMMY_HASH
       constant enables timing equalization: every login path that refuses
       before checking the real hash still spends one bcrypt verify, so
       response time does not reveal whether a username exists or is
       deactivated [C1].

  JWT: python-jose with HS256. Tokens carry user_id, username, role, iat,
       exp and a random jti -- no other PII. decode_access_token() returns
       None on any failure (bad signature, expired, malformed, missing
       claims) so callers cannot tell which check failed. Revocation is NOT
       a property of the token: the session table is the authority.

  Token hashes: the session table stores HMAC-SHA256(SECRET_KEY, raw_token).
       A stolen table yields nothing presentable, and the deterministic hash
       allows O(1) lookup. bcrypt's intentional slowness is unnecessary for a
       256-bit-entropy signed value.

Layer rule: no imports from api/ or client/. Import from core/ is allowed.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import bcrypt
from jose import JWTError, jwt

from core.config import get_settings

logger = logging.getLogger("adminauth.auth")

# ---------------------------------------------------------------------------
# Config -- read once at module load via the lru_cache singleton [M6]
# ---------------------------------------------------------------------------

_settings = get_settings()

_ALGORITHM = "HS256"
_REQUIRED_CLAIMS = ("user_id", "username", "role", "jti")

# bcrypt only consumes the first 72 bytes; bcrypt>=5 raises instead of
# truncating. Truncate explicitly so hash_password() never fails on
# well-formed input and verify_password() agrees with it.
_BCRYPT_MAX_BYTES = 72

# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage, no passlib wrapper)
# ---------------------------------------------------------------------------


def _encode_password(plain: str) -> bytes:
    return plain.encode("utf-8")[:_BCRYPT_MAX_BYTES]


def hash_password(plain: str) -> str:
    """Return a salted bcrypt hash of the plaintext password."""
    salt = bcrypt.gensalt(rounds=_settings.bcrypt_rounds)
    return bcrypt.hashpw(_encode_password(plain), salt).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash.

    Malformed or empty stored hashes make bcrypt raise ValueError; that is a
    mismatch, not an error.
    """
    try:
        return bcrypt.checkpw(_encode_password(plain), hashed.encode("utf-8"))
    except (ValueError, TypeError):
        return False


# Computed once at module load so the first refused login is not measurably
# slower than later ones.
_DUMMY_HASH: str = hash_password("adminauth_timing_dummy")


def equalize_timing(plain: str) -> None:
    """Spend one bcrypt verify against the dummy hash [C1].

    Called on every refusal path that would otherwise return before the
    real hash comparison (unknown user, deactivated account, locked account).
    """
    verify_password(plain, _DUMMY_HASH)


# ---------------------------------------------------------------------------
# JWT encode / decode
# ---------------------------------------------------------------------------


@dataclass
class IssuedToken:
    token: str
    jti: str
    issued_at: datetime
    expires_at: datetime


def create_access_token(user_id: int, username: str, role: str, expire_seconds: int = 0) -> IssuedToken:
    """Encode a signed JWT with user identity, a random jti and a fixed expiry.

    Args:
        user_id:        Numeric user ID stored in the DB.
        username:       Username (also the JWT subject claim).
        role:           User role ("admin", "developer", "viewer").
        expire_seconds: Lifetime override. If 0 (default), uses
                        Settings.token_expire_seconds (1 hour).
    """
    duration = expire_seconds if expire_seconds > 0 else _settings.token_expire_seconds
    issued_at = datetime.now(timezone.utc)
    expires_at = issued_at + timedelta(seconds=duration)
    jti = secrets.token_hex(16)
    payload = {
        "sub": username,
        "user_id": user_id,
        "username": username,
        "role": role,
        "jti": jti,
        "iat": issued_at,
        "exp": expires_at,
    }
    token = jwt.encode(payload, _settings.secret_key, algorithm=_ALGORITHM)
    return IssuedToken(token=token, jti=jti, issued_at=issued_at, expires_at=expires_at)


def decode_access_token(token: str, verify_exp: bool = True) -> dict | None:
    """Decode and verify a JWT. Returns the payload dict or None on any failure.

    verify_exp=False checks the signature only. Logout uses it so an expired
    token can still identify the session to revoke; nothing else should.
    """
    try:
        payload = jwt.decode(
            token,
            _settings.secret_key,
            algorithms=[_ALGORITHM],
            options={"verify_exp": verify_exp},
        )
    except JWTError:
        return None
    if any(claim not in payload for claim in _REQUIRED_CLAIMS):
        return None
    if not isinstance(payload["user_id"], int):
        return None
    return payload


# ---------------------------------------------------------------------------
# Token hashing
# ---------------------------------------------------------------------------


def hash_token(raw_token: str) -> str:
    """Return HMAC-SHA256(SECRET_KEY, raw_token) as a hex string."""
    return hmac.new(
        _settings.secret_key.encode(),
        raw_token.encode(),
        hashlib.sha256,
    ).hexdigest()


def token_hashes_match(a: str, b: str) -> bool:
    """Constant-time comparison of two token hashes."""
    return hmac.compare_digest(a.encode(), b.encode())


def extract_bearer(authorization: str | None) -> str | None:
    """Return the token from an 'Authorization: Bearer <token>' header value."""
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()
