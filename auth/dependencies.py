"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication and authorization.

try_get_current_principal() is the soft variant (returns None on failure).
get_current_principal() wraps it and raises HTTP 401 if unauthenticated.
require_super_admin() wraps get_current_principal() and raises HTTP 403.
require_page_permission(page, action, field) builds a dependency that asks the
permission engine and raises PermissionDenied carrying the engine's reason.
The handler in api/main.py renders "not authenticated" as 401 and every other
reason as 403.

Collaborators are read from request.app.state, populated by the lifespan in
api/main.py: sessions (SessionManager), permissions (PermissionEngine),
audit (AuditLog).

Layer rule: no imports from api/. auth/dependencies.py may import from fastapi
because it is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from fastapi import HTTPException, Request

from auth.errors import PermissionDenied
from auth.models import ROLE_SUPER_ADMIN, Principal
from auth.permissions import PermissionContext


def try_get_current_principal(request: Request) -> Principal | None:
    """Validate the session cookie. Never raises."""
    return request.app.state.sessions.validate(request)


def get_current_principal(request: Request) -> Principal:
    """Require authentication. Raises HTTP 401 if the request is not authenticated.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(principal: Principal = Depends(get_current_principal)): ...
    """
    principal = try_get_current_principal(request)
    if principal is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
        )
    return principal


def require_super_admin(request: Request) -> Principal:
    """Require the super_admin role. 401 if unauthenticated, 403 otherwise."""
    principal = get_current_principal(request)
    if principal.role != ROLE_SUPER_ADMIN:
        raise HTTPException(
            status_code=403,
            detail={"code": "forbidden", "message": "Super admin access required."},
        )
    return principal


def client_ip(request: Request) -> str | None:
    return request.client.host if request.client else None


def require_page_permission(page_id: str, action: str = "view", field: str | None = None):
    """Dependency factory for routes guarded by a page permission.

    field names the field the route writes, so allowed_fields and
    blocked_fields apply. Conditions are evaluated against the client IP.

    Use as a FastAPI dependency:
        @router.post("/events", dependencies=[Depends(require_page_permission("events", "create"))])
    """

    def dependency(request: Request) -> Principal:
        principal = try_get_current_principal(request)
        context = PermissionContext(field_id=field, client_ip=client_ip(request))
        result = request.app.state.permissions.check(principal, page_id, action, context)
        if not result.allowed:
            request.app.state.audit.denied(principal, page_id, action, result.reason)
            raise PermissionDenied(result.reason or "forbidden")
        return principal

    return dependency
