"""
api/routes/v1/auth.py -- Local login, logout, session and provider listing.

Routes:
  POST /api/v1/auth/login      -- username/password login; sets session cookie
  POST /api/v1/auth/logout     -- revokes the session and clears the cookie
  GET  /api/v1/auth/session    -- current principal (401 when unauthenticated)
  GET  /api/v1/auth/providers  -- configured OAuth providers (public)

Security:
  [H2] POST /login is rate-limited per IP (LOGIN_RATE_LIMIT, default 10/minute).
  [H3] Failed logins are also counted per username and IP (auth/lockout.py).
       A locked pair gets 429 with Retry-After, even for the right password.
  [C1] LoginFlow.login_with_password() goes through authenticate_account(),
       which equalizes timing -- never inline the account lookup here.
  [M5] Cache-Control: no-store on login and logout responses.
  The same generic error is returned for an unknown username and a wrong
  password so the response never reveals which accounts exist.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from api.limiter import limiter
from api.models import LoginRequest, MessageResponse, OAuthProviderInfo, SessionResponse
from auth.dependencies import client_ip, get_current_principal, try_get_current_principal
from auth.errors import ConfigurationError, InvalidCredentialsError
from auth.flow import LoginFlow
from auth.lockout import LoginLockout
from auth.models import Principal
from auth.providers import get_enabled_providers
from auth.sessions import SessionManager
from core.config import get_settings

logger = logging.getLogger("precinct.api.auth")

# Auth policy:
# - POST /api/v1/auth/login:      public -- login endpoint must be unauthenticated
# - POST /api/v1/auth/logout:     public -- revoking/clearing needs no valid session
# - GET  /api/v1/auth/providers:  public -- login page renders buttons from this
# - GET  /api/v1/auth/session:    requires auth (get_current_principal)
router = APIRouter()


@limiter.limit(get_settings().login_rate_limit)  # [H2] must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/login", response_model=SessionResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with username and password; set the session cookie."""
    flow: LoginFlow = request.app.state.login_flow
    sessions: SessionManager = request.app.state.sessions
    lockout: LoginLockout = request.app.state.login_lockout
    ip = client_ip(request)

    retry_after = lockout.retry_after(body.username, ip)  # [H3]
    if retry_after is not None:
        resp = JSONResponse(
            status_code=429,
            content={"error": {"code": "locked_out", "message": "Too many failed attempts. Try again later."}},
        )
        resp.headers["Retry-After"] = str(retry_after)
        resp.headers["Cache-Control"] = "no-store"  # [M5]
        return resp

    try:
        issued = flow.login_with_password(body.username, body.password, request)
    except InvalidCredentialsError:
        lockout.record_failure(body.username, ip)
        resp = JSONResponse(
            status_code=401,
            content={"error": {"code": "bad_credentials", "message": "Invalid username or password."}},
        )
        resp.headers["Cache-Control"] = "no-store"  # [M5]
        return resp
    except ConfigurationError:
        resp = JSONResponse(
            status_code=503,
            content={"error": {"code": "server_config", "message": "Authentication is not configured."}},
        )
        resp.headers["Cache-Control"] = "no-store"  # [M5]
        return resp

    lockout.clear(body.username, ip)
    resp = JSONResponse(status_code=200, content=SessionResponse.from_principal(issued.principal).model_dump())
    sessions.set_session_cookie(resp, issued)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


@router.post("/auth/logout", response_model=MessageResponse)
def logout(request: Request) -> JSONResponse:
    """Revoke the current session token and clear the cookie."""
    sessions: SessionManager = request.app.state.sessions
    principal = try_get_current_principal(request)
    sessions.revoke(request)
    if principal is not None:
        request.app.state.audit.logout(principal)
    resp = JSONResponse(content=MessageResponse(message="Logged out.").model_dump())
    sessions.clear_session_cookie(resp)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


@router.get("/auth/session", response_model=SessionResponse)
def session(principal: Principal = Depends(get_current_principal)) -> SessionResponse:
    """Return the principal carried by the current session."""
    return SessionResponse.from_principal(principal)


@router.get("/auth/providers", response_model=list[OAuthProviderInfo])
def list_providers() -> list[OAuthProviderInfo]:
    """Return the configured OAuth providers. Empty when none is configured."""
    return [OAuthProviderInfo(**p) for p in get_enabled_providers()]
