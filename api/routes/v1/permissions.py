"""
api/routes/v1/permissions.py -- Permission queries for the admin UI.

Routes:
  GET /api/v1/permissions/check            -- one decision (public; anonymous is denied)
  GET /api/v1/permissions/pages/{page_id}  -- everything the principal may do on a page
  GET /api/v1/permissions/summary          -- one row per page with any access

The UI uses these to decide which buttons, fields and sub-actions to render.
Every decision comes from PermissionEngine; nothing here interprets
restrictions itself. Denied checks are written to the audit log.
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query, Request

from api.models import (
    PageAccessResponse,
    PageSummaryRow,
    PermissionCheckResponse,
    PermissionSummaryResponse,
    QuantityLimitModel,
    TimeRestrictionModel,
)
from auth.dependencies import client_ip, get_current_principal, try_get_current_principal
from auth.models import Principal
from auth.permissions import PermissionContext, PermissionEngine

# Auth policy:
# - GET /api/v1/permissions/check:   public -- an anonymous caller gets allowed=false
# - GET /api/v1/permissions/pages/*: requires auth (get_current_principal)
# - GET /api/v1/permissions/summary: requires auth (get_current_principal)
router = APIRouter()


def _engine(request: Request) -> PermissionEngine:
    return request.app.state.permissions


@router.get("/permissions/check", response_model=PermissionCheckResponse)
def check_permission(
    request: Request,
    page: str = Query(min_length=1, max_length=100),
    action: str = Query(default="view", min_length=1, max_length=50),
    field: Optional[str] = Query(default=None, max_length=100),
    owner: Optional[str] = Query(default=None, max_length=200),
    group: Optional[str] = Query(default=None, max_length=200),
    actions_today: Optional[int] = Query(default=None, alias="actionsToday", ge=0),
) -> PermissionCheckResponse:
    """Decide whether the current principal may perform action on page.

    Advisory only: the UI uses the answer to decide what to render. owner,
    group and actionsToday come from the caller, so a max_per_day condition
    is skipped when actionsToday is omitted. A route that performs the action
    must run its own check with a server-side count (PermissionContext.actions_today)
    rather than trust this endpoint.
    """
    principal = try_get_current_principal(request)
    context = PermissionContext(
        item_owner_id=owner,
        field_id=field,
        client_ip=client_ip(request),
        group_id=group,
        actions_today=actions_today,
    )
    result = _engine(request).check(principal, page, action, context)
    if not result.allowed:
        request.app.state.audit.denied(principal, page, action, result.reason)
    return PermissionCheckResponse.from_result(result)


@router.get("/permissions/pages/{page_id}", response_model=PageAccessResponse)
def page_access(
    request: Request,
    page_id: str,
    principal: Principal = Depends(get_current_principal),
) -> PageAccessResponse:
    engine = _engine(request)
    time_restrictions = engine.get_time_restrictions(principal, page_id)
    limits = engine.get_quantity_limits(principal, page_id)
    allowed_fields = engine.get_allowed_fields(principal, page_id)
    blocked_fields = engine.get_blocked_fields(principal, page_id)
    return PageAccessResponse(
        page_id=page_id,
        can_access=engine.can_access_page(principal, page_id),
        actions=list(engine.get_allowed_actions(principal, page_id)),
        sub_actions=list(engine.get_allowed_sub_actions(principal, page_id)),
        allowed_fields=list(allowed_fields) if allowed_fields is not None else None,
        blocked_fields=list(blocked_fields) if blocked_fields is not None else None,
        time_restrictions=TimeRestrictionModel.from_domain(time_restrictions) if time_restrictions else None,
        limits=[QuantityLimitModel.from_domain(q) for q in limits] if limits is not None else None,
    )


@router.get("/permissions/summary", response_model=PermissionSummaryResponse)
def permission_summary(
    request: Request,
    principal: Principal = Depends(get_current_principal),
) -> PermissionSummaryResponse:
    rows = _engine(request).permission_summary(principal)
    return PermissionSummaryResponse(role=principal.role, pages=[PageSummaryRow.from_summary(s) for s in rows])
