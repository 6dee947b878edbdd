"""
api/main.py -- FastAPI application entry point for the admin-auth service.

Run with:      uvicorn api.main:app --reload
               python main.py serve

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter

Lifespan handles startup (engine, schema, service graph, purge task) and
shutdown (cancel purge task, dispose engine) symmetrically.

Every error leaves the process in one envelope:
    {"error": {"code": "...", "message": "...", "details": ...}}
AuthError subclasses are rendered from their ErrorKind alone.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from starlette.exceptions import HTTPException as StarletteHTTPException

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from auth.csrf import CsrfGuard
from auth.service import AuthService
from auth.store import UserStore, create_auth_engine
from core.config import get_settings
from core.errors import AuthError, ErrorKind, InfrastructureError

APP_VERSION = "1.0.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("adminauth.api")

settings = get_settings()

_NO_STORE = {"Cache-Control": "no-store"}

# ---------------------------------------------------------------------------
# Background purge task
# ---------------------------------------------------------------------------


async def _purge_loop(app: FastAPI) -> None:
    """Delete revoked and expired session rows every session_purge_interval_seconds.

    CancelledError from task.cancel() during shutdown propagates out of
    asyncio.sleep and unwinds the coroutine. A storage failure is already
    logged by the service; the loop keeps running and tries again next round.
    """
    while True:
        await asyncio.sleep(settings.session_purge_interval_seconds)
        try:
            await asyncio.to_thread(app.state.auth_service.purge_expired_sessions)
        except InfrastructureError:
            logger.warning("Session purge skipped this round")


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Build the service graph on startup and tear it down on shutdown.

    Startup order matters:
      1. Engine first -- create_auth_engine() also creates the schema.
      2. Service and CSRF guard second -- both read from app.state per request.
      3. Purge task last -- references app.state.auth_service.
    """
    logger.info("admin-auth API starting up")
    engine = create_auth_engine(settings.database_url)
    app.state.engine = engine
    app.state.auth_service = AuthService.from_engine(engine)
    app.state.csrf_guard = CsrfGuard()
    if not UserStore(engine).has_users():
        logger.warning("No accounts exist yet -- create one with: python main.py create-admin")
    app.state.purge_task = asyncio.create_task(_purge_loop(app))

    yield

    app.state.purge_task.cancel()
    engine.dispose()
    logger.info("admin-auth API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="admin-auth API",
    description="Authentication core for the administration web interface.",
    version=APP_VERSION,
    lifespan=lifespan,
    docs_url="/docs" if settings.debug else None,
    redoc_url=None,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# Register in the order you want the request to encounter them:
# TrustedHost -> CORS -> SlowAPI.
# ---------------------------------------------------------------------------

app.add_middleware(TrustedHostMiddleware, allowed_hosts=settings.allowed_hosts)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "DELETE"],
    allow_headers=["Content-Type", "Authorization", settings.csrf_header_name],
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    ms = (time.perf_counter() - start) * 1000
    logger.info(
        "%s %s %d %.1fms %s",
        request.method,
        request.url.path,
        response.status_code,
        ms,
        request.client.host if request.client else "unknown",
    )
    return response


# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


def _error_response(kind_code: str, status: int, message: str, details=None, headers=None) -> JSONResponse:
    return JSONResponse(
        status_code=status,
        content=ErrorResponse(error=ErrorDetail(code=kind_code, message=message, details=details)).model_dump(),
        headers=headers,
    )


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    """Render any AuthError from its kind: code, status and message.

    INTERNAL always carries the generic message; whatever text the raise site
    attached stays in the server log. A locked account also gets Retry-After.
    """
    headers = dict(_NO_STORE)
    if exc.kind is ErrorKind.INTERNAL:
        logger.error("Internal failure on %s %s: %s", request.method, request.url.path, exc.message)
        return _error_response(exc.code, exc.status_code, exc.kind.message, headers=headers)
    if exc.kind is ErrorKind.ACCOUNT_LOCKED and isinstance(exc.details, dict):
        retry_after = exc.details.get("retry_after")
        if retry_after is not None:
            headers["Retry-After"] = str(retry_after)
    return _error_response(exc.code, exc.status_code, exc.message, exc.details, headers)


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error when a rate limit is exceeded."""
    retry_after = int(getattr(exc, "retry_after", 60))
    kind = ErrorKind.RATE_LIMITED
    return _error_response(kind.code, kind.status, kind.message, str(exc.detail), {"Retry-After": str(retry_after)})


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 400 with one {"field", "message"} entry per failed field."""
    details = [
        {"field": str(err["loc"][-1]) if err.get("loc") else "body", "message": err.get("msg", "")}
        for err in exc.errors()
    ]
    kind = ErrorKind.VALIDATION
    return _error_response(kind.code, kind.status, kind.message, details)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Return a structured error for framework-raised HTTP exceptions (404 route, 405 method)."""
    return _error_response(f"http_{exc.status_code}", exc.status_code, str(exc.detail))


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception is written to the log only, never to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    kind = ErrorKind.INTERNAL
    return _error_response(kind.code, kind.status, kind.message)


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py (not in a router) so it is always reachable
# regardless of router registration state. No rate limit applied.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", tags=["Health"])
def health(request: Request) -> JSONResponse:
    """Return liveness plus a per-component status. 503 when the database is unreachable."""
    components = {"app": "ok"}
    try:
        with request.app.state.engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        components["database"] = "ok"
    except SQLAlchemyError:
        logger.exception("Health check: database unreachable")
        components["database"] = "unavailable"
    healthy = all(v == "ok" for v in components.values())
    body = HealthResponse(status="healthy" if healthy else "degraded", version=APP_VERSION, components=components)
    return JSONResponse(status_code=200 if healthy else 503, content=body.model_dump())
