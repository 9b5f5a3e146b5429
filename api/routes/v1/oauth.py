"""
api/routes/v1/oauth.py -- OAuth login initiation and callback.

Routes:
  GET /api/v1/auth/{provider}/login     -- 302 to the provider authorize URL
  GET /api/v1/auth/{provider}/callback  -- 302 to the return path or the login page

The browser only ever sees redirects from the callback. Every failure lands
on LOGIN_PAGE?error=<code> where <code> comes from the raised AuthError
subclass; unexpected exceptions are logged and reported as callback_failed.

Security:
  State and PKCE verifier live in short-lived HttpOnly cookies scoped to the
  provider. They are cleared on every callback outcome, success or failure.
  The returnTo path is validated both when stored and when read back.
  [M5] Cache-Control: no-store on every response from this router.
"""

from __future__ import annotations

import logging
from typing import Optional
from urllib.parse import quote

from fastapi import APIRouter, Query, Request
from fastapi.responses import JSONResponse, RedirectResponse

from api.models import ErrorDetail, ErrorResponse
from auth.errors import AuthError, ConfigurationError
from auth.flow import CallbackParams, LoginFlow
from auth.handshake import (
    clear_handshake_cookies,
    pkce_cookie_name,
    read_return_path,
    set_handshake_cookies,
    state_cookie_name,
)
from auth.providers import PROVIDERS
from core.config import get_settings

logger = logging.getLogger("precinct.api.oauth")

# Auth policy: both routes are public -- they are how a session gets created.
router = APIRouter()


def _login_redirect(error_code: str) -> RedirectResponse:
    url = f"{get_settings().login_page}?error={quote(error_code, safe='')}"
    return RedirectResponse(url, status_code=302)


def _no_store(resp):
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


def _unknown_provider(provider: str) -> JSONResponse:
    return JSONResponse(
        status_code=404,
        content=ErrorResponse(
            error=ErrorDetail(code="unknown_provider", message=f"Unknown login provider '{provider}'.")
        ).model_dump(),
    )


@router.get("/auth/{provider}/login", name="oauth_login")
def oauth_login(
    request: Request,
    provider: str,
    return_to: Optional[str] = Query(default=None, alias="returnTo"),
):
    """Start an OAuth login: store state + PKCE verifier and redirect to the provider."""
    if provider not in PROVIDERS:
        return _no_store(_unknown_provider(provider))

    flow: LoginFlow = request.app.state.login_flow
    if not flow.sessions.is_configured():
        logger.error("Login attempt for %s while SESSION_SECRET is unset", provider)
        return _no_store(_login_redirect(ConfigurationError.error_code))

    redirect_uri = str(request.url_for("oauth_callback", provider=provider))
    try:
        start = flow.initiate(provider, redirect_uri, return_to)
    except ConfigurationError as e:
        logger.warning("Login initiation refused: %s", e.reason)
        return _no_store(
            JSONResponse(
                status_code=503,
                content=ErrorResponse(
                    error=ErrorDetail(
                        code=ConfigurationError.error_code,
                        message=f"{provider.capitalize()} login is not configured. Contact the administrator.",
                    )
                ).model_dump(),
            )
        )

    resp = RedirectResponse(start.authorize_url, status_code=302)
    set_handshake_cookies(resp, provider, start.state, start.code_verifier, start.return_to)
    return _no_store(resp)


@router.get("/auth/{provider}/callback", name="oauth_callback")
def oauth_callback(
    request: Request,
    provider: str,
    code: Optional[str] = None,
    state: Optional[str] = None,
    error: Optional[str] = None,
    error_description: Optional[str] = None,
):
    """Complete an OAuth login. Always answers with a redirect."""
    flow: LoginFlow = request.app.state.login_flow
    params = CallbackParams(
        code=code,
        state=state,
        error=error,
        error_description=error_description,
        stored_state=request.cookies.get(state_cookie_name(provider)),
        code_verifier=request.cookies.get(pkce_cookie_name(provider)),
    )
    redirect_uri = str(request.url_for("oauth_callback", provider=provider))

    try:
        issued = flow.complete(provider, params, redirect_uri, request)
    except AuthError as e:
        resp = _login_redirect(e.error_code)
    except Exception:
        logger.exception("Unexpected error in %s callback", provider)
        resp = _login_redirect("callback_failed")
    else:
        resp = RedirectResponse(read_return_path(request.cookies, provider), status_code=302)
        flow.sessions.set_session_cookie(resp, issued)

    clear_handshake_cookies(resp, provider)
    return _no_store(resp)
