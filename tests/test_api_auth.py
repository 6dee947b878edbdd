"""
tests/test_api_auth.py -- Integration tests for /api/v1 auth routes through the real ASGI stack.

Covers:
  - Full lifecycle: register -> login -> profile -> logout -> profile refused
  - Enumeration resistance: unknown user and wrong password give identical bodies
  - Concurrent sessions: revoking one leaves the other usable
  - Lockout over HTTP: 423 with Retry-After, counter not advanced while locked
  - CSRF gate: missing/invalid/aged tokens rejected before any side effect
  - Error envelope, validation 400, Cache-Control headers
"""

from __future__ import annotations

import time

from fastapi.testclient import TestClient

from api.main import app

API = "/api/v1"
PASSWORD = "Password123"


def _bearer(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


def _error(resp) -> dict:
    body = resp.json()
    assert set(body) == {"error"}, body
    return body["error"]


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


class TestLifecycle:
    def test_register_login_profile_logout(self, api_client: TestClient, csrf_headers):
        """The end-to-end path from account creation to server-side revocation."""
        resp = api_client.post(
            f"{API}/auth/register",
            json={"username": "alice", "email": "alice@example.com", "password": PASSWORD},
            headers=csrf_headers(),
        )
        assert resp.status_code == 201, f"Expected 201, got {resp.status_code}: {resp.text}"
        assert resp.json()["message"] == "User registered successfully."
        user_id = resp.json()["userId"]

        resp = api_client.post(
            f"{API}/auth/login",
            json={"username": "alice", "password": PASSWORD},
            headers=csrf_headers(),
        )
        assert resp.status_code == 200, resp.text
        body = resp.json()
        assert body["token_type"] == "bearer"
        assert body["expires_in"] == 3600
        assert body["user"] == {
            "id": user_id,
            "username": "alice",
            "email": "alice@example.com",
            "role": "developer",
            "created_at": body["user"]["created_at"],
            "last_login": body["user"]["last_login"],
        }
        assert "password_hash" not in resp.text
        assert resp.headers["cache-control"] == "no-store"
        token = body["token"]

        resp = api_client.get(f"{API}/auth/profile", headers=_bearer(token))
        assert resp.status_code == 200, resp.text
        assert resp.json()["user"]["username"] == "alice"
        assert resp.headers["cache-control"] == "no-store"

        resp = api_client.post(f"{API}/auth/logout", headers=_bearer(token))
        assert resp.status_code == 200, resp.text
        assert resp.json() == {"message": "Logout successful."}

        resp = api_client.get(f"{API}/auth/profile", headers=_bearer(token))
        assert resp.status_code == 403
        assert _error(resp)["code"] == "session_invalid"

    def test_login_by_email(self, api_client, make_user, login_token):
        username = make_user()
        token = login_token(f"{username}@example.com")
        resp = api_client.get(f"{API}/auth/profile", headers=_bearer(token))
        assert resp.json()["user"]["username"] == username

    def test_duplicate_registration_is_409(self, api_client, make_user, csrf_headers):
        username = make_user()
        resp = api_client.post(
            f"{API}/auth/register",
            json={"username": username, "email": "fresh@example.com", "password": PASSWORD},
            headers=csrf_headers(),
        )
        assert resp.status_code == 409
        assert _error(resp)["code"] == "conflict"


# ---------------------------------------------------------------------------
# Login failure modes
# ---------------------------------------------------------------------------


class TestLoginFailures:
    def test_unknown_user_and_wrong_password_are_identical(self, api_client, make_user, csrf_headers):
        username = make_user()
        unknown = api_client.post(
            f"{API}/auth/login",
            json={"username": "nosuchuser", "password": PASSWORD},
            headers=csrf_headers(),
        )
        wrong = api_client.post(
            f"{API}/auth/login",
            json={"username": username, "password": "WrongPassword1"},
            headers=csrf_headers(),
        )
        assert unknown.status_code == wrong.status_code == 401
        assert unknown.json() == wrong.json()
        assert _error(unknown)["message"] == "Invalid credentials."

    def test_lockout_after_five_failures(self, api_client, make_user, csrf_headers):
        username = make_user("locked")
        for attempt in range(5):
            resp = api_client.post(
                f"{API}/auth/login",
                json={"username": username, "password": "WrongPassword1"},
                headers=csrf_headers(),
            )
            assert resp.status_code == 401, f"attempt {attempt + 1}: {resp.text}"

        resp = api_client.post(
            f"{API}/auth/login",
            json={"username": username, "password": PASSWORD},
            headers=csrf_headers(),
        )
        assert resp.status_code == 423, resp.text
        error = _error(resp)
        assert error["code"] == "account_locked"
        assert 0 < error["details"]["retry_after"] <= 3600
        assert int(resp.headers["retry-after"]) == error["details"]["retry_after"]

        user = app.state.auth_service.users.get_by_login(username)
        assert user.login_attempts == 5

    def test_deactivated_account_is_403(self, api_client, make_user, csrf_headers):
        username = make_user("inactive")
        store = app.state.auth_service.users
        store.update_user(store.get_by_login(username).id, is_active=False)

        resp = api_client.post(
            f"{API}/auth/login",
            json={"username": username, "password": PASSWORD},
            headers=csrf_headers(),
        )
        assert resp.status_code == 403
        assert _error(resp)["code"] == "account_deactivated"

    def test_invalid_body_is_400_with_field_details(self, api_client, csrf_headers):
        resp = api_client.post(
            f"{API}/auth/register",
            json={"username": "x", "email": "nope", "password": "weak"},
            headers=csrf_headers(),
        )
        assert resp.status_code == 400, resp.text
        error = _error(resp)
        assert error["code"] == "validation_error"
        assert {d["field"] for d in error["details"]} == {"username", "email", "password"}


# ---------------------------------------------------------------------------
# Token and session checks
# ---------------------------------------------------------------------------


class TestTokens:
    def test_profile_without_token_is_401(self, api_client):
        resp = api_client.get(f"{API}/auth/profile")
        assert resp.status_code == 401
        assert _error(resp)["code"] == "token_required"

    def test_profile_with_bad_token_is_403(self, api_client):
        resp = api_client.get(f"{API}/auth/profile", headers=_bearer("not.a.token"))
        assert resp.status_code == 403
        assert _error(resp) == {"code": "token_invalid", "message": "Invalid or expired token.", "details": None}

    def test_logout_without_token_is_400(self, api_client, csrf_headers):
        resp = api_client.post(f"{API}/auth/logout", headers=csrf_headers())
        assert resp.status_code == 400
        assert _error(resp)["code"] == "no_token_provided"

    def test_logout_with_unverifiable_token_is_200(self, api_client):
        resp = api_client.post(f"{API}/auth/logout", headers=_bearer("not.a.token"))
        assert resp.status_code == 200

    def test_second_session_survives_revocation_of_first(self, api_client, make_user, login_token):
        username = make_user("multi")
        first = login_token(username)
        second = login_token(username)
        assert first != second

        assert api_client.post(f"{API}/auth/logout", headers=_bearer(first)).status_code == 200

        assert api_client.get(f"{API}/auth/profile", headers=_bearer(first)).status_code == 403
        assert api_client.get(f"{API}/auth/profile", headers=_bearer(second)).status_code == 200

    def test_list_and_revoke_sessions(self, api_client, make_user, login_token):
        username = make_user("lister")
        current = login_token(username)
        other = login_token(username)

        resp = api_client.get(f"{API}/auth/sessions", headers=_bearer(current))
        assert resp.status_code == 200
        listed = resp.json()
        assert len(listed) == 2
        assert sum(1 for s in listed if s["current"]) == 1
        assert all("token_hash" not in s for s in listed)
        other_id = next(s["id"] for s in listed if not s["current"])

        resp = api_client.delete(f"{API}/auth/sessions/{other_id}", headers=_bearer(current))
        assert resp.status_code == 204
        assert api_client.get(f"{API}/auth/profile", headers=_bearer(other)).status_code == 403

        resp = api_client.delete(f"{API}/auth/sessions/{other_id + 100000}", headers=_bearer(current))
        assert resp.status_code == 404

    def test_revoke_other_sessions(self, api_client, make_user, login_token):
        username = make_user("signout")
        current = login_token(username)
        login_token(username)
        login_token(username)

        resp = api_client.delete(f"{API}/auth/sessions", headers=_bearer(current))
        assert resp.status_code == 200
        assert resp.json() == {"revoked": 2}
        assert api_client.get(f"{API}/auth/profile", headers=_bearer(current)).status_code == 200


# ---------------------------------------------------------------------------
# Anti-forgery gate
# ---------------------------------------------------------------------------


class TestCsrfGate:
    def test_csrf_token_endpoint_sets_cookie(self, api_client):
        resp = api_client.get(f"{API}/csrf-token")
        assert resp.status_code == 200
        assert resp.json()["expires_in"] == 1800
        assert "csrf_secret=" in resp.headers["set-cookie"]
        assert "httponly" in resp.headers["set-cookie"].lower()
        assert resp.headers["cache-control"] == "no-store"

    def test_register_without_header_is_rejected_and_creates_nothing(self, api_client):
        resp = api_client.post(
            f"{API}/auth/register",
            json={"username": "forged", "email": "forged@example.com", "password": PASSWORD},
        )
        assert resp.status_code == 403
        assert _error(resp)["code"] == "csrf_missing"
        assert app.state.auth_service.users.get_by_login("forged") is None

    def test_header_not_matching_cookie_is_invalid(self, api_client, csrf_headers):
        stale = csrf_headers()
        csrf_headers()  # rotates the cookie; the first token no longer matches
        resp = api_client.post(
            f"{API}/auth/login",
            json={"username": "whoever", "password": PASSWORD},
            headers=stale,
        )
        assert resp.status_code == 403
        assert _error(resp)["code"] == "csrf_invalid"

    def test_non_ascii_digit_header_is_invalid_not_500(self, api_client):
        guard = app.state.csrf_guard
        api_client.get(f"{API}/csrf-token")
        resp = api_client.post(
            f"{API}/auth/login",
            json={"username": "whoever", "password": PASSWORD},
            headers={guard.header_name: b"\xb2.abcdef"},
        )
        assert resp.status_code == 403
        assert _error(resp)["code"] == "csrf_invalid"

    def test_aged_token_requires_refresh(self, api_client):
        guard = app.state.csrf_guard
        api_client.get(f"{API}/csrf-token")
        issued_at = int(time.time()) - guard.rotation_seconds - 1
        token = guard.token_for(api_client.cookies.get(guard.cookie_name), now=issued_at)
        resp = api_client.post(
            f"{API}/auth/login",
            json={"username": "whoever", "password": PASSWORD},
            headers={guard.header_name: token},
        )
        assert resp.status_code == 403
        assert _error(resp)["code"] == "csrf_refresh_required"

    def test_logout_clears_csrf_cookie(self, api_client, make_user, login_token):
        token = login_token(make_user("clear"))
        resp = api_client.post(f"{API}/auth/logout", headers=_bearer(token))
        assert resp.status_code == 200
        set_cookie = resp.headers["set-cookie"]
        assert set_cookie.startswith("csrf_secret=")
        assert "Max-Age=0" in set_cookie or "expires=" in set_cookie.lower()

    def test_safe_methods_are_not_gated(self, api_client):
        assert api_client.get(f"{API}/health").status_code == 200


def test_unknown_route_uses_error_envelope(api_client):
    resp = api_client.get(f"{API}/no-such-route")
    assert resp.status_code == 404
    assert _error(resp)["code"] == "http_404"
