"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication and CSRF.

get_auth_context()  Authorization: Bearer <token> -> AuthContext, or raises
                    the AuthError chosen by AuthService.authenticate().
verify_csrf()       Double-submit gate for state-changing methods. Runs as a
                    route dependency, so it rejects before the handler body
                    (and therefore before any side effect) executes.

Requests carrying a Bearer header are exempt from the CSRF gate: browsers
never attach that header to a cross-site request on their own, so a forged
request cannot carry it.

Layer rule: may import from fastapi because this module is part of the
FastAPI dependency injection system. No imports from api/ or client/.
"""

from __future__ import annotations

import logging

from fastapi import Depends, Request

from auth.csrf import CsrfGuard, requires_csrf
from auth.models import AuthContext, RequestContext
from auth.service import AuthService
from auth.tokens import extract_bearer
from core.errors import CsrfError

logger = logging.getLogger("adminauth.csrf")


def get_auth_service(request: Request) -> AuthService:
    return request.app.state.auth_service


def get_csrf_guard(request: Request) -> CsrfGuard:
    return request.app.state.csrf_guard


def request_context(request: Request) -> RequestContext:
    """Client IP and User-Agent for audit records."""
    return RequestContext(
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("User-Agent"),
    )


def bearer_token(request: Request) -> str | None:
    return extract_bearer(request.headers.get("Authorization"))


def get_auth_context(
    request: Request,
    service: AuthService = Depends(get_auth_service),
    ctx: RequestContext = Depends(request_context),
) -> AuthContext:
    """Require a valid token and an active session.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(auth: AuthContext = Depends(get_auth_context)): ...
    """
    auth = service.authenticate(bearer_token(request), ctx)
    request.state.user_id = auth.user.id
    return auth


def verify_csrf(request: Request, guard: CsrfGuard = Depends(get_csrf_guard)) -> None:
    """Reject state-changing requests whose X-CSRF-Token does not match the cookie."""
    if not requires_csrf(request.method):
        return
    if bearer_token(request) is not None:
        return
    try:
        guard.validate(
            request.cookies.get(guard.cookie_name),
            request.headers.get(guard.header_name),
        )
    except CsrfError as exc:
        logger.warning(
            "CSRF rejected: %s %s reason=%s ip=%s",
            request.method,
            request.url.path,
            exc.code,
            request.client.host if request.client else "unknown",
        )
        raise
