"""
api/main.py -- FastAPI application entry point for the Precinct admin panel.

Serves the identity and authorization core: OAuth and local login, session
validation, and the permission queries the admin UI renders from.

Run with:  uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter

Lifespan builds every collaborator once and stores it on app.state; routes and
auth.dependencies read them from there. Shutdown cancels the revocation purge
task and closes the document store.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from api.routes.v1.oauth import router as oauth_router
from api.routes.v1.permissions import router as permissions_router
from api.routes.v1.roles import router as roles_router
from auth.audit import AuditLog
from auth.errors import AuthError, ConfigurationError, PermissionDenied, SessionError
from auth.flow import LoginFlow
from auth.lockout import LoginLockout
from auth.permissions import REASON_NOT_AUTHENTICATED, PermissionEngine
from auth.roles import CachedRolesConfig, DocumentRolesConfigSource, RoleMappingResolver
from auth.sessions import SessionManager
from auth.store import AccountStore
from core.config import get_settings
from docstore.store import DocumentStore

API_VERSION = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("precinct.api")

# ---------------------------------------------------------------------------
# Background purge task
# ---------------------------------------------------------------------------


async def _purge_loop(app: FastAPI) -> None:
    """Drop expired session revocation records every hour.

    Logout already purges opportunistically; this keeps the namespace bounded
    on deployments where nobody logs out for a long time.
    """
    while True:
        await asyncio.sleep(60 * 60)
        removed = await asyncio.to_thread(app.state.sessions.purge_revocations)
        if removed:
            logger.info("Purged %d expired session revocations", removed)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


def build_state(app: FastAPI, docstore: DocumentStore) -> None:
    """Wire the collaborators onto app.state around one document store.

    Also used by the test suite with an in-memory store.
    """
    settings = get_settings()
    app.state.docstore = docstore
    app.state.accounts = AccountStore(docstore)
    app.state.resolver = RoleMappingResolver(CachedRolesConfig(DocumentRolesConfigSource(docstore)), settings)
    app.state.permissions = PermissionEngine(app.state.resolver)
    app.state.sessions = SessionManager(docstore, settings)
    app.state.audit = AuditLog()
    app.state.login_lockout = LoginLockout(docstore, settings)
    app.state.login_flow = LoginFlow(
        app.state.sessions,
        app.state.resolver,
        app.state.accounts,
        app.state.audit,
        settings,
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Startup order matters: the document store first, then everything that
    reads from it, then the purge task that references app.state.sessions.
    """
    logger.info("Precinct admin API starting up")
    build_state(app, DocumentStore())
    if not app.state.sessions.is_configured():
        logger.error("SESSION_SECRET is not configured -- every login will be refused")
    app.state.purge_task = asyncio.create_task(_purge_loop(app))

    yield

    app.state.purge_task.cancel()
    app.state.docstore.close()
    logger.info("Precinct admin API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Precinct Admin API",
    description="Identity and authorization core for the Precinct admin panel.",
    version=API_VERSION,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# Register in the order you want the request to encounter them:
# TrustedHost -> CORS -> SlowAPI.
# ---------------------------------------------------------------------------

app.add_middleware(
    TrustedHostMiddleware,
    allowed_hosts=get_settings().allowed_hosts,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST"],
    allow_headers=["Content-Type"],
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter

# ---------------------------------------------------------------------------
# Request logging middleware
# ---------------------------------------------------------------------------


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
app.include_router(oauth_router, prefix="/api/v1", tags=["OAuth"])
app.include_router(permissions_router, prefix="/api/v1", tags=["Permissions"])
app.include_router(roles_router, prefix="/api/v1", tags=["Roles"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


def _error(status_code: int, code: str, message: str, detail: str | None = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=ErrorDetail(code=code, message=message, detail=detail)).model_dump(),
    )


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error when a rate limit is exceeded."""
    retry_after = int(getattr(exc, "retry_after", 60))
    response = _error(429, "rate_limited", "Too many requests.", str(exc))
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with structured error when request body or query params fail validation."""
    return _error(422, "validation_error", "Request validation failed.", str(exc.errors()))


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Return a structured error for all FastAPI/Starlette HTTP exceptions.

    When detail is already a structured dict, use it directly as the error
    field rather than stringifying it.
    """
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})
    return _error(exc.status_code, f"http_{exc.status_code}", str(exc.detail))


@app.exception_handler(PermissionDenied)
async def permission_denied_handler(request: Request, exc: PermissionDenied) -> JSONResponse:
    """403 carrying the engine's reason; the UI renders different affordances per reason.

    An anonymous caller gets 401, the same status get_current_principal() uses.
    """
    if exc.reason == REASON_NOT_AUTHENTICATED:
        return _error(401, "unauthorized", exc.reason)
    return _error(403, exc.error_code, exc.reason)


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    """Any other auth failure that reaches a JSON route. The reason stays in the log."""
    logger.warning("Auth error on %s %s: %s (%s)", request.method, request.url.path, exc.category, exc.reason)
    if isinstance(exc, ConfigurationError):
        return _error(503, exc.error_code, "Authentication is not configured.")
    if isinstance(exc, SessionError):
        return _error(401, exc.error_code, "Authentication required.")
    return _error(400, exc.error_code, "Authentication failed.")


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception is written to the log only, never to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return _error(500, "internal_error", "An unexpected error occurred.")


# ---------------------------------------------------------------------------
# Health endpoint
#
# No rate limit applied -- health checks from load balancers and monitoring
# systems must not be throttled.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", include_in_schema=True, tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Return liveness, version, and whether logins can currently succeed."""
    docstore_ok = request.app.state.docstore.ping()
    return HealthResponse(
        status="ok" if docstore_ok else "degraded",
        version=API_VERSION,
        auth_configured=request.app.state.sessions.is_configured(),
        docstore="ok" if docstore_ok else "unavailable",
    )
