"""
client/session.py -- CSRF-aware HTTP client for the admin-auth API.

The anti-forgery token lives in a ClientContext owned by one AdminClient
instance. There is no module-level token: two clients in the same process
(two tenants, two test users) never see each other's token or bearer.

Flow for a state-changing request:
  1. If the context has no token, or the token is within refresh_margin of
     the server's rotation interval, GET /csrf-token first.
  2. Send the request with X-CSRF-Token.
  3. On csrf_refresh_required or csrf_missing, re-mint and retry exactly
     once. csrf_invalid is never retried.

Every call returns the parsed JSON body (None for 204) or raises ApiError,
whose .kind is the server's ErrorKind.

Layer rule: may import from core/ only.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any

import requests

from core.errors import ErrorKind

logger = logging.getLogger("adminauth.client")

_STATE_CHANGING = frozenset({"POST", "PUT", "PATCH", "DELETE"})
_RETRYABLE_CSRF = frozenset({ErrorKind.CSRF_REFRESH_REQUIRED, ErrorKind.CSRF_MISSING})


class ApiError(Exception):
    """A non-2xx response, decoded from the {"error": {...}} envelope."""

    def __init__(self, status: int, code: str, message: str, details: Any = None) -> None:
        super().__init__(f"{status} {code}: {message}")
        self.status = status
        self.code = code
        self.message = message
        self.details = details
        # None when the server sent a code this client does not know.
        self.kind = ErrorKind.from_code(code)


@dataclass
class ClientContext:
    """Per-client credentials threaded through every request."""

    csrf_token: str | None = None
    csrf_fetched_at: float | None = None
    bearer: str | None = None

    def csrf_is_fresh(self, rotation_seconds: int, margin_seconds: int, now: float | None = None) -> bool:
        if self.csrf_token is None or self.csrf_fetched_at is None:
            return False
        current = now if now is not None else time.time()
        return current - self.csrf_fetched_at < rotation_seconds - margin_seconds

    def forget_csrf(self) -> None:
        self.csrf_token = None
        self.csrf_fetched_at = None


class AdminClient:
    """Usage:
        client = AdminClient("https://admin.example.com")
        client.login("alice", "Password123")
        me = client.profile()
        client.logout()

    `session` may be any object with a requests-style request() method that
    keeps cookies between calls (requests.Session, or FastAPI's TestClient).
    """

    def __init__(
        self,
        base_url: str = "",
        session: Any = None,
        api_prefix: str = "/api/v1",
        csrf_header_name: str = "X-CSRF-Token",
        rotation_seconds: int = 30 * 60,
        refresh_margin_seconds: int = 60,
        timeout: float | None = 10,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.http = session if session is not None else requests.Session()
        self.api_prefix = api_prefix
        self.csrf_header_name = csrf_header_name
        self.rotation_seconds = rotation_seconds
        self.refresh_margin_seconds = refresh_margin_seconds
        self.timeout = timeout
        self.context = ClientContext()

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _url(self, path: str) -> str:
        return f"{self.base_url}{self.api_prefix}{path}"

    def _send(self, method: str, path: str, json: Any = None) -> Any:
        headers = {"Accept": "application/json"}
        if self.context.bearer:
            headers["Authorization"] = f"Bearer {self.context.bearer}"
        if method in _STATE_CHANGING and self.context.csrf_token:
            headers[self.csrf_header_name] = self.context.csrf_token
        kwargs: dict[str, Any] = {"headers": headers}
        if json is not None:
            kwargs["json"] = json
        if self.timeout is not None:
            kwargs["timeout"] = self.timeout
        return self.http.request(method, self._url(path), **kwargs)

    @staticmethod
    def _decode(resp: Any) -> Any:
        if 200 <= resp.status_code < 300:
            if resp.status_code == 204 or not resp.content:
                return None
            return resp.json()
        try:
            error = resp.json().get("error", {})
        except ValueError:
            error = {}
        raise ApiError(
            resp.status_code,
            error.get("code", f"http_{resp.status_code}"),
            error.get("message", resp.text),
            error.get("details"),
        )

    def refresh_csrf(self) -> str:
        """Mint a new anti-forgery token; the server sets the matching cookie on self.http."""
        body = self._decode(self.http.request("GET", self._url("/csrf-token"), headers={"Accept": "application/json"}))
        self.context.csrf_token = body["csrfToken"]
        self.context.csrf_fetched_at = time.time()
        return self.context.csrf_token

    def request(self, method: str, path: str, json: Any = None) -> Any:
        method = method.upper()
        if method in _STATE_CHANGING and not self.context.csrf_is_fresh(
            self.rotation_seconds, self.refresh_margin_seconds
        ):
            self.refresh_csrf()
        try:
            return self._decode(self._send(method, path, json))
        except ApiError as exc:
            if method not in _STATE_CHANGING or exc.kind not in _RETRYABLE_CSRF:
                raise
            logger.info("CSRF token rejected (%s); refreshing and retrying once", exc.code)
            self.refresh_csrf()
            return self._decode(self._send(method, path, json))

    # ------------------------------------------------------------------
    # Endpoints
    # ------------------------------------------------------------------

    def register(self, username: str, email: str, password: str) -> dict:
        return self.request("POST", "/auth/register", {"username": username, "email": email, "password": password})

    def login(self, identifier: str, password: str) -> dict:
        body = self.request("POST", "/auth/login", {"username": identifier, "password": password})
        self.context.bearer = body["token"]
        return body

    def logout(self) -> dict:
        try:
            return self.request("POST", "/auth/logout")
        finally:
            self.context.bearer = None
            self.context.forget_csrf()

    def profile(self) -> dict:
        return self.request("GET", "/auth/profile")["user"]

    def sessions(self) -> list[dict]:
        return self.request("GET", "/auth/sessions")

    def revoke_session(self, session_id: int) -> None:
        self.request("DELETE", f"/auth/sessions/{session_id}")

    def revoke_other_sessions(self) -> int:
        return self.request("DELETE", "/auth/sessions")["revoked"]

    def health(self) -> dict:
        return self.request("GET", "/health")
