"""
auth/permissions.py -- Page permission engine.

Answers "may this principal perform <action> on <page>?" and the helper
queries pages use to shape their UI (allowed actions, sub-actions, fields,
time windows and quantity limits).

Decision order for check():
  1. No principal                    -> deny "not authenticated".
  2. super_admin                     -> allow, nothing else is consulted.
  3. Grant lookup, first hit wins:
       ExplicitGrant     -- the page permission from the principal's role
                            mapping (live, see RoleMappingResolver).
       OverseerCarveOut  -- subdivision_overseer gets view/edit on exactly
                            "subdivisions" and "department-data", limited to a
                            fixed field list per page. Kept exactly as it is
                            for backward compatibility; do not generalize.
       LegacyGrant       -- page id -> legacy permission id, intersected with
                            the flat permission list; grants view/edit/create.
     No grant -> deny "no permission for this page".
  4. Action, then field, then conditions in list order. The first failing
     condition wins and its description is the reason. Annotating
     conditions (requires_approval, time_restricted, requires_2fa) never deny;
     they set a flag on the result for the caller.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import ipaddress
import logging
from dataclasses import dataclass, field
from typing import assert_never

from auth.models import (
    ALL_ACTIONS,
    ALL_SUB_ACTIONS,
    ROLE_SUBDIVISION_OVERSEER,
    ROLE_SUPER_ADMIN,
    IpWhitelist,
    MaxPerDay,
    OwnItemsOnly,
    PagePermission,
    PermissionCheckResult,
    PermissionCondition,
    Principal,
    QuantityLimit,
    Requires2FA,
    RequiresApproval,
    Restrictions,
    SubdivisionOnly,
    TimeRestricted,
    TimeRestriction,
)
from auth.roles import RoleMappingResolver

logger = logging.getLogger("precinct.auth.permissions")

REASON_NOT_AUTHENTICATED = "not authenticated"
REASON_NO_PAGE_PERMISSION = "no permission for this page"

# Page id -> coarse legacy permission id.
LEGACY_PAGE_PERMISSIONS: dict[str, str] = {
    "garage": "warehouse",
    "events": "events",
    "resources": "resources",
    "uniforms": "uniforms",
    "theme-settings": "theme-settings",
    "department-data": "department-data",
    "subdivisions": "subdivisions",
    "footer": "footer",
    "user-management": "user-management",
    "roles-management": "roles-management",
    "webhook-settings": "webhook-settings",
    "chain-of-command-webhook": "chain-of-command-webhook",
    "subdivision-leadership-webhook": "subdivision-leadership-webhook",
    "arrest-reports": "arrest-reports",
    "form-builder": "form-builder",
    "arrests-database": "arrest-reports",
    "images": "warehouse",
}

LEGACY_ACTIONS = ("view", "edit", "create")

OVERSEER_ACTIONS = ("view", "edit")
OVERSEER_FIELDS: dict[str, tuple[str, ...]] = {
    "subdivisions": ("availability", "details"),
    "department-data": ("subdivision_leadership",),
}

# Used when a page permission grants actions but lists no sub-actions.
DEFAULT_SUB_ACTIONS: dict[str, tuple[str, ...]] = {
    "view": ("view_list", "view_details"),
    "create": ("create_publish",),
    "edit": ("edit_content", "edit_status"),
    "delete": ("delete_soft",),
    "manage": ("manage_settings",),
}


@dataclass(frozen=True)
class PermissionContext:
    """Request-specific facts conditions are evaluated against. All optional."""

    item_owner_id: str | None = None
    field_id: str | None = None
    client_ip: str | None = None
    group_id: str | None = None
    actions_today: int | None = None


@dataclass(frozen=True)
class PageSummary:
    page_id: str
    page_name: str
    actions: tuple[str, ...]
    sub_actions: tuple[str, ...]
    has_field_restrictions: bool
    has_time_restrictions: bool
    has_limits: bool
    conditions: tuple[str, ...] = field(default_factory=tuple)

    @property
    def has_restrictions(self) -> bool:
        return self.has_field_restrictions or bool(self.conditions)


# ---------------------------------------------------------------------------
# Grant strategies
# ---------------------------------------------------------------------------


class ExplicitGrant:
    name = "explicit"

    def grant(
        self, principal: Principal, page_id: str, page_permissions: tuple[PagePermission, ...] | None
    ) -> PagePermission | None:
        for perm in page_permissions or ():
            if perm.page_id == page_id:
                return perm
        return None


class OverseerCarveOut:
    name = "overseer"

    def grant(
        self, principal: Principal, page_id: str, page_permissions: tuple[PagePermission, ...] | None
    ) -> PagePermission | None:
        if principal.role != ROLE_SUBDIVISION_OVERSEER or page_id not in OVERSEER_FIELDS:
            return None
        return PagePermission(
            page_id=page_id,
            actions=OVERSEER_ACTIONS,
            restrictions=Restrictions(allowed_fields=OVERSEER_FIELDS[page_id]),
        )


class LegacyGrant:
    name = "legacy"

    def grant(
        self, principal: Principal, page_id: str, page_permissions: tuple[PagePermission, ...] | None
    ) -> PagePermission | None:
        legacy_id = LEGACY_PAGE_PERMISSIONS.get(page_id)
        if legacy_id is None or legacy_id not in principal.permissions:
            return None
        return PagePermission(page_id=page_id, actions=LEGACY_ACTIONS)


# ---------------------------------------------------------------------------
# Conditions
# ---------------------------------------------------------------------------


def _ip_allowed(client_ip: str, allowed: tuple[str, ...]) -> bool:
    try:
        address = ipaddress.ip_address(client_ip)
    except ValueError:
        return False
    for entry in allowed:
        try:
            if "/" in entry:
                if address in ipaddress.ip_network(entry, strict=False):
                    return True
            elif address == ipaddress.ip_address(entry):
                return True
        except ValueError:
            logger.warning("Ignoring invalid ip_whitelist entry %r", entry)
    return False


def _apply_condition(
    condition: PermissionCondition,
    principal: Principal,
    context: PermissionContext,
    result: PermissionCheckResult,
) -> str | None:
    """Evaluate one condition. Returns a denial reason, or None to continue."""
    match condition:
        case OwnItemsOnly():
            if context.item_owner_id is not None and context.item_owner_id != principal.identity_id:
                return condition.description or "You can only modify your own items"
        case MaxPerDay(limit=limit):
            if context.actions_today is not None and context.actions_today >= limit:
                return condition.description or f"Daily limit of {limit} reached"
        case RequiresApproval():
            result.requires_approval = True
        case TimeRestricted():
            result.is_time_restricted = True
        case Requires2FA():
            result.is_2fa_required = True
        case IpWhitelist(allowed_ips=allowed_ips):
            if context.client_ip and allowed_ips and not _ip_allowed(context.client_ip, allowed_ips):
                return condition.description or "Access denied from this IP address"
        case SubdivisionOnly(group_ids=group_ids):
            if context.group_id and group_ids and context.group_id not in group_ids:
                return condition.description or "Access restricted to specific subdivisions"
        case _:
            assert_never(condition)
    return None


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class PermissionEngine:
    """Usage:
    engine = PermissionEngine(resolver)
    result = engine.check(principal, "events", "edit", PermissionContext(field_id="title"))
    if not result.allowed:
        raise PermissionDenied(result.reason)
    """

    def __init__(self, resolver: RoleMappingResolver | None = None, grants=None) -> None:
        self.resolver = resolver
        self.grants = tuple(grants) if grants is not None else (ExplicitGrant(), OverseerCarveOut(), LegacyGrant())

    # ------------------------------------------------------------------
    # Grant lookup
    # ------------------------------------------------------------------

    def _page_permissions(self, principal: Principal) -> tuple[PagePermission, ...] | None:
        if self.resolver is None:
            return principal.page_permissions
        return self.resolver.live_page_permissions(principal)

    def explicit_permission(self, principal: Principal, page_id: str) -> PagePermission | None:
        """The role mapping's own entry for this page, ignoring fallbacks."""
        return ExplicitGrant().grant(principal, page_id, self._page_permissions(principal))

    def find_grant(self, principal: Principal, page_id: str) -> PagePermission | None:
        page_permissions = self._page_permissions(principal)
        for strategy in self.grants:
            grant = strategy.grant(principal, page_id, page_permissions)
            if grant is not None:
                return grant
        return None

    # ------------------------------------------------------------------
    # Decisions
    # ------------------------------------------------------------------

    def check(
        self,
        principal: Principal | None,
        page_id: str,
        action: str,
        context: PermissionContext | None = None,
    ) -> PermissionCheckResult:
        if principal is None:
            return PermissionCheckResult(allowed=False, reason=REASON_NOT_AUTHENTICATED)
        if principal.role == ROLE_SUPER_ADMIN:
            return PermissionCheckResult(allowed=True)

        grant = self.find_grant(principal, page_id)
        if grant is None:
            return PermissionCheckResult(allowed=False, reason=REASON_NO_PAGE_PERMISSION)

        if action not in grant.actions:
            return PermissionCheckResult(allowed=False, reason=f"action '{action}' not permitted on this page")

        context = context or PermissionContext()
        restrictions = grant.restrictions
        if context.field_id and restrictions is not None:
            blocked = restrictions.blocked_fields or ()
            allowed = restrictions.allowed_fields
            if context.field_id in blocked or (allowed and context.field_id not in allowed):
                return PermissionCheckResult(
                    allowed=False, reason=f"not permitted to modify field '{context.field_id}'"
                )

        result = PermissionCheckResult(allowed=True, restrictions=restrictions)
        for condition in restrictions.conditions if restrictions is not None else ():
            reason = _apply_condition(condition, principal, context, result)
            if reason is not None:
                return PermissionCheckResult(allowed=False, reason=reason, restrictions=restrictions)
        return result

    def check_many(self, principal: Principal | None, checks) -> dict[str, PermissionCheckResult]:
        """Run check() for each (page_id, action) pair. Keys are "page:action"."""
        return {f"{page_id}:{action}": self.check(principal, page_id, action) for page_id, action in checks}

    def can_access_page(self, principal: Principal | None, page_id: str) -> bool:
        return self.check(principal, page_id, "view").allowed

    # ------------------------------------------------------------------
    # Helper queries
    # ------------------------------------------------------------------

    def get_allowed_actions(self, principal: Principal | None, page_id: str) -> tuple[str, ...]:
        if principal is None:
            return ()
        if principal.role == ROLE_SUPER_ADMIN:
            return ALL_ACTIONS
        grant = self.find_grant(principal, page_id)
        return grant.actions if grant is not None else ()

    def get_allowed_sub_actions(self, principal: Principal | None, page_id: str) -> tuple[str, ...]:
        if principal is None:
            return ()
        if principal.role == ROLE_SUPER_ADMIN:
            return ALL_SUB_ACTIONS
        explicit = self.explicit_permission(principal, page_id)
        if explicit is not None and explicit.sub_actions is not None:
            return explicit.sub_actions
        sub_actions: list[str] = []
        for action in self.get_allowed_actions(principal, page_id):
            sub_actions.extend(DEFAULT_SUB_ACTIONS.get(action, ()))
        return tuple(sub_actions)

    def check_sub_action(self, principal: Principal | None, page_id: str, sub_action: str) -> bool:
        if principal is None:
            return False
        if principal.role == ROLE_SUPER_ADMIN:
            return True
        return sub_action in self.get_allowed_sub_actions(principal, page_id)

    def get_allowed_fields(self, principal: Principal | None, page_id: str) -> tuple[str, ...] | None:
        """Fields the principal may modify. None means every field."""
        if principal is None:
            return ()
        if principal.role == ROLE_SUPER_ADMIN:
            return None
        grant = self.find_grant(principal, page_id)
        if grant is None or grant.restrictions is None:
            return None
        return grant.restrictions.allowed_fields

    def get_blocked_fields(self, principal: Principal | None, page_id: str) -> tuple[str, ...] | None:
        if principal is None or principal.role == ROLE_SUPER_ADMIN:
            return None
        grant = self.find_grant(principal, page_id)
        if grant is None or grant.restrictions is None:
            return None
        return grant.restrictions.blocked_fields

    def can_access_field(self, principal: Principal | None, page_id: str, field_id: str) -> bool:
        """Blocked list first; a field in both lists is not accessible."""
        if principal is None:
            return False
        if principal.role == ROLE_SUPER_ADMIN:
            return True
        blocked = self.get_blocked_fields(principal, page_id)
        if blocked and field_id in blocked:
            return False
        allowed = self.get_allowed_fields(principal, page_id)
        if allowed is None:
            return True
        return field_id in allowed

    def get_time_restrictions(self, principal: Principal | None, page_id: str) -> TimeRestriction | None:
        if principal is None or principal.role == ROLE_SUPER_ADMIN:
            return None
        explicit = self.explicit_permission(principal, page_id)
        if explicit is None or explicit.restrictions is None:
            return None
        return explicit.restrictions.time_restrictions

    def get_quantity_limits(self, principal: Principal | None, page_id: str) -> tuple[QuantityLimit, ...] | None:
        if principal is None or principal.role == ROLE_SUPER_ADMIN:
            return None
        explicit = self.explicit_permission(principal, page_id)
        if explicit is None or explicit.restrictions is None:
            return None
        return explicit.restrictions.limits

    def permission_summary(self, principal: Principal | None) -> list[PageSummary]:
        """One entry per configured page definition the principal has any action on."""
        if principal is None or self.resolver is None:
            return []
        summary = []
        for page in self.resolver.page_definitions():
            actions = self.get_allowed_actions(principal, page.id)
            if not actions:
                continue
            explicit = self.explicit_permission(principal, page.id)
            conditions = (
                tuple(c.kind for c in explicit.restrictions.conditions)
                if explicit is not None and explicit.restrictions is not None
                else ()
            )
            limits = self.get_quantity_limits(principal, page.id)
            summary.append(
                PageSummary(
                    page_id=page.id,
                    page_name=page.name,
                    actions=actions,
                    sub_actions=self.get_allowed_sub_actions(principal, page.id),
                    has_field_restrictions=(
                        self.get_allowed_fields(principal, page.id) is not None
                        or self.get_blocked_fields(principal, page.id) is not None
                    ),
                    has_time_restrictions=self.get_time_restrictions(principal, page.id) is not None,
                    has_limits=bool(limits),
                    conditions=conditions,
                )
            )
        return summary
