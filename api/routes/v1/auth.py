"""
api/routes/v1/auth.py -- Authentication, session and anti-forgery endpoints.

Routes:
  GET    /api/v1/csrf-token            -- mint anti-forgery token; sets secret cookie
  POST   /api/v1/auth/register         -- create account (201)
  POST   /api/v1/auth/login            -- password login; returns bearer token
  POST   /api/v1/auth/logout           -- revoke the presented token's session
  GET    /api/v1/auth/profile          -- current user (token + active session)
  GET    /api/v1/auth/sessions         -- caller's active sessions
  DELETE /api/v1/auth/sessions/{id}    -- revoke one of the caller's sessions
  DELETE /api/v1/auth/sessions         -- revoke all the caller's other sessions

Security:
  [H2] POST /login is rate-limited per IP (Settings.login_rate_limit).
  [M5] Cache-Control: no-store on token-bearing and profile responses.
  CSRF: every state-changing route declares verify_csrf as a route-level
        dependency, so a forged request is rejected before the handler runs.
  IDOR guard: DELETE /sessions/{id} passes the caller's user_id to the store;
        the WHERE clause requires both to match.

Handlers are plain `def`: FastAPI runs them in a worker thread that finishes
its side effects (session row, audit entry) even if the client disconnects.
Errors are raised as core.errors.AuthError and rendered once by the handler
in api/main.py.
"""

from fastapi import APIRouter, Depends, Request, Response
from fastapi.responses import JSONResponse

from api.limiter import limiter, login_rate_limit
from api.models import (
    CsrfTokenResponse,
    LoginRequest,
    LoginResponse,
    MessageResponse,
    ProfileResponse,
    RegisterRequest,
    RegisterResponse,
    RevokedCountResponse,
    SessionInfo,
    UserPublic,
)
from auth.csrf import CsrfGuard
from auth.dependencies import (
    bearer_token,
    get_auth_context,
    get_auth_service,
    get_csrf_guard,
    request_context,
    verify_csrf,
)
from auth.models import AuthContext, RequestContext
from auth.service import AuthService

router = APIRouter()

_NO_STORE = {"Cache-Control": "no-store"}


# ---------------------------------------------------------------------------
# Anti-forgery
# ---------------------------------------------------------------------------


@router.get("/csrf-token", response_model=CsrfTokenResponse)
def csrf_token(response: Response, guard: CsrfGuard = Depends(get_csrf_guard)) -> CsrfTokenResponse:
    """Mint a fresh anti-forgery token and set the matching httpOnly cookie.

    Each call rotates the cookie secret, so tokens minted earlier stop
    validating once the client stores the new cookie.
    """
    token = guard.issue(response)
    response.headers.update(_NO_STORE)
    return CsrfTokenResponse(csrfToken=token, expires_in=guard.rotation_seconds)


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@router.post(
    "/auth/register",
    response_model=RegisterResponse,
    status_code=201,
    dependencies=[Depends(verify_csrf)],
)
def register(
    body: RegisterRequest,
    service: AuthService = Depends(get_auth_service),
    ctx: RequestContext = Depends(request_context),
) -> RegisterResponse:
    """Create a developer account. Duplicate username or email -> 409, nothing written."""
    user = service.register(body.username, body.email, body.password, ctx)
    return RegisterResponse(userId=user.id)


@router.post("/auth/login", response_model=LoginResponse, dependencies=[Depends(verify_csrf)])
@limiter.limit(login_rate_limit)  # [H2] below @router: the limited wrapper is the registered endpoint
def login(
    request: Request,
    body: LoginRequest,
    service: AuthService = Depends(get_auth_service),
    ctx: RequestContext = Depends(request_context),
) -> JSONResponse:
    """Authenticate with username-or-email and password; return a bearer token.

    Unknown user and wrong password produce the identical 401 body.
    Deactivated (403) and locked (423) accounts are reported distinctly.
    """
    result = service.login(body.username, body.password, ctx)
    payload = LoginResponse(
        token=result.token,
        token_type="bearer",  # noqa: S106 # nosec B106 -- OAuth token type, not a password
        expires_in=result.expires_in,
        user=UserPublic.from_user(result.user),
    )
    return JSONResponse(status_code=200, content=payload.model_dump(), headers=_NO_STORE)


@router.post("/auth/logout", response_model=MessageResponse, dependencies=[Depends(verify_csrf)])
def logout(
    request: Request,
    service: AuthService = Depends(get_auth_service),
    guard: CsrfGuard = Depends(get_csrf_guard),
    ctx: RequestContext = Depends(request_context),
) -> JSONResponse:
    """Revoke the session behind the presented bearer token.

    An expired token is accepted (signature-only check); an unverifiable one
    is tolerated. Only a missing token is an error (400).
    """
    service.logout(bearer_token(request), ctx)
    resp = JSONResponse(content=MessageResponse(message="Logout successful.").model_dump())
    guard.clear(resp)
    return resp


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.get("/auth/profile", response_model=ProfileResponse)
def profile(response: Response, auth: AuthContext = Depends(get_auth_context)) -> ProfileResponse:
    """Return the current user's public profile."""
    response.headers.update(_NO_STORE)
    return ProfileResponse(user=UserPublic.from_user(auth.user))


@router.get("/auth/sessions", response_model=list[SessionInfo])
def list_sessions(
    auth: AuthContext = Depends(get_auth_context),
    service: AuthService = Depends(get_auth_service),
) -> list[SessionInfo]:
    """List the caller's active sessions; the one making this request has current=true."""
    return [SessionInfo.from_session(s, auth.session.id) for s in service.list_sessions(auth)]


@router.delete("/auth/sessions/{session_id}", status_code=204, dependencies=[Depends(verify_csrf)])
def revoke_session(
    session_id: int,
    auth: AuthContext = Depends(get_auth_context),
    service: AuthService = Depends(get_auth_service),
    ctx: RequestContext = Depends(request_context),
) -> Response:
    """Revoke one of the caller's sessions. Other sessions are unaffected."""
    service.revoke_session(auth, session_id, ctx)
    return Response(status_code=204)


@router.delete("/auth/sessions", response_model=RevokedCountResponse, dependencies=[Depends(verify_csrf)])
def revoke_other_sessions(
    auth: AuthContext = Depends(get_auth_context),
    service: AuthService = Depends(get_auth_service),
    ctx: RequestContext = Depends(request_context),
) -> RevokedCountResponse:
    """Sign out everywhere else: revoke every session except the current one."""
    return RevokedCountResponse(revoked=service.revoke_other_sessions(auth, ctx))
