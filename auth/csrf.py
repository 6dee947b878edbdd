"""
auth/csrf.py -- Double-submit anti-forgery tokens with fixed-interval rotation.

Mint:
  A fresh random secret goes into an httpOnly, SameSite=strict cookie (the
  source of truth). The caller receives an itsdangerous timed token that
  signs that secret under SECRET_KEY with the "csrf" salt. The token is
  useless without the cookie, and the cookie is unreadable to script.

Validate (state-changing methods only):
  header or cookie absent                   -> csrf_missing
  bad signature / payload differs to cookie -> csrf_invalid
  signature ok, older than rotation         -> csrf_refresh_required

The refresh signal lets a client re-mint and retry once without treating an
aged token as an attack. Nothing is persisted server-side beyond the cookie.
"""

from __future__ import annotations

import hmac
import logging
import secrets
import time
from collections.abc import Callable

from itsdangerous import BadData, SignatureExpired, TimestampSigner, URLSafeTimedSerializer

from core.config import get_settings
from core.errors import CsrfError, ErrorKind

logger = logging.getLogger("adminauth.csrf")

SAFE_METHODS = frozenset({"GET", "HEAD", "OPTIONS"})
STATE_CHANGING_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})

_SALT = "csrf"

# Tolerated clock skew for tokens stamped slightly in the future.
_MAX_FUTURE_SKEW_SECONDS = 30


def requires_csrf(method: str) -> bool:
    return method.upper() in STATE_CHANGING_METHODS


class _ClockedSigner(TimestampSigner):
    """TimestampSigner that stamps and ages tokens against an injected clock."""

    def __init__(self, *args, clock: Callable[[], float] = time.time, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self._clock = clock

    def get_timestamp(self) -> int:
        return int(self._clock())


class CsrfGuard:
    """Issues and validates anti-forgery tokens. Holds configuration only, no per-client state."""

    def __init__(
        self,
        secret_key: str | None = None,
        rotation_seconds: int | None = None,
        cookie_name: str | None = None,
        header_name: str | None = None,
        cookie_max_age: int | None = None,
        secure_cookies: bool | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        settings = get_settings()
        self._secret_key = secret_key or settings.secret_key
        self._clock = clock
        self.rotation_seconds = rotation_seconds or settings.csrf_rotation_seconds
        self.cookie_name = cookie_name or settings.csrf_cookie_name
        self.header_name = header_name or settings.csrf_header_name
        self.cookie_max_age = cookie_max_age or settings.csrf_cookie_max_age
        self.secure_cookies = settings.secure_cookies if secure_cookies is None else secure_cookies

    def _serializer(self, now: float | None = None) -> URLSafeTimedSerializer:
        clock = self._clock if now is None else (lambda: now)
        return URLSafeTimedSerializer(
            self._secret_key,
            salt=_SALT,
            signer=_ClockedSigner,
            signer_kwargs={"clock": clock},
        )

    # ------------------------------------------------------------------
    # Mint
    # ------------------------------------------------------------------

    def token_for(self, cookie_secret: str, now: float | None = None) -> str:
        """Sign cookie_secret into a token stamped at now (default: the guard's clock)."""
        return self._serializer(now).dumps(cookie_secret)

    def mint(self, now: float | None = None) -> tuple[str, str]:
        """Return (cookie_secret, token) for a fresh anti-forgery pair."""
        cookie_secret = secrets.token_urlsafe(32)
        return cookie_secret, self.token_for(cookie_secret, now)

    def issue(self, response, now: float | None = None) -> str:
        """Mint a pair, set the secret cookie on the response, and return the token."""
        cookie_secret, token = self.mint(now)
        response.set_cookie(
            self.cookie_name,
            value=cookie_secret,
            httponly=True,
            samesite="strict",
            secure=self.secure_cookies,
            max_age=self.cookie_max_age,
            path="/",
        )
        return token

    def clear(self, response) -> None:
        response.delete_cookie(self.cookie_name, path="/")

    # ------------------------------------------------------------------
    # Validate
    # ------------------------------------------------------------------

    @staticmethod
    def _matches(cookie_secret: str, payload) -> bool:
        return isinstance(payload, str) and hmac.compare_digest(payload.encode(), cookie_secret.encode())

    def validate(self, cookie_secret: str | None, header_token: str | None, now: float | None = None) -> None:
        """Raise CsrfError unless header_token is a fresh token bound to cookie_secret."""
        if not cookie_secret or not header_token:
            raise CsrfError(ErrorKind.CSRF_MISSING)

        serializer = self._serializer(now)
        try:
            # Timestamps are whole seconds: age > rotation - 1 means age >= rotation.
            payload = serializer.loads(header_token, max_age=self.rotation_seconds - 1)
        except SignatureExpired as exc:
            # Raised only once the signature has verified; it also covers future stamps.
            current = now if now is not None else self._clock()
            if exc.date_signed is not None and exc.date_signed.timestamp() > current + _MAX_FUTURE_SKEW_SECONDS:
                raise CsrfError(ErrorKind.CSRF_INVALID) from None
            try:
                expired_payload = serializer.load_payload(exc.payload)
            except BadData:
                raise CsrfError(ErrorKind.CSRF_INVALID) from None
            if not self._matches(cookie_secret, expired_payload):
                raise CsrfError(ErrorKind.CSRF_INVALID) from None
            raise CsrfError(ErrorKind.CSRF_REFRESH_REQUIRED) from None
        except BadData:
            raise CsrfError(ErrorKind.CSRF_INVALID) from None

        if not self._matches(cookie_secret, payload):
            raise CsrfError(ErrorKind.CSRF_INVALID)
