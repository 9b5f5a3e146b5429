"""
auth/roles.py -- Role mapping resolver and the roles configuration source.

Turns a provider membership record (a list of provider role ids) into an
internal role, a flat permission list and, when a dynamic mapping matched, a
page-permission table.

Pieces:
  RolesConfigSource      -- protocol: load() -> RolesConfig | None.
  DocumentRolesConfigSource
                         -- reads the single versioned record roles-config/config
                            from the document store and maps it to frozen
                            dataclasses. Unknown condition types reject the whole
                            record (the previous snapshot keeps serving).
  CachedRolesConfig      -- cache.SnapshotCache around a source. Refreshes
                            replace the snapshot reference, never mutate it.
  DynamicMappingStrategy / LegacyRoleStrategy
                         -- tried in order by RoleMappingResolver.resolve().
                            First non-None result wins.

Stored JSON shape (camelCase, shared with the admin management surface):
    {
      "version": 3,
      "discordRoleMappings": [
        {"id": "role-1", "discordRoleId": "1234", "roleName": "Sergeant",
         "internalRole": "custom", "permissions": ["events"], "priority": 10,
         "isActive": true,
         "pagePermissions": [{"pageId": "events", "actions": ["view", "edit"],
                              "restrictions": {"allowedFields": ["title"]}}]}
      ],
      "pageDefinitions": [...],
      "availablePermissions": [...]
    }

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from typing import Any, Protocol

from sqlalchemy.exc import SQLAlchemyError

from auth.models import (
    CONDITION_TYPES,
    INTERNAL_ROLES,
    ROLE_CUSTOM,
    ROLE_SUBDIVISION_OVERSEER,
    ROLE_SUPER_ADMIN,
    HourWindow,
    IpWhitelist,
    MaxPerDay,
    PageDefinition,
    PagePermission,
    PermissionCondition,
    PermissionDefinition,
    Principal,
    QuantityLimit,
    Restrictions,
    RoleMapping,
    RoleResolution,
    RolesConfig,
    SubdivisionOnly,
    TimeRestriction,
)
from cache.store import SnapshotCache
from core.config import Settings, get_settings
from docstore.store import DocumentStore

logger = logging.getLogger("precinct.auth.roles")

ROLES_CONFIG_NAMESPACE = "roles-config"
ROLES_CONFIG_KEY = "config"

# Fixed permission lists of the static roles used when no mapping matches.
LEGACY_ROLE_PERMISSIONS: dict[str, tuple[str, ...]] = {
    ROLE_SUPER_ADMIN: (
        "warehouse",
        "events",
        "resources",
        "uniforms",
        "theme-settings",
        "department-data",
        "subdivisions",
        "user-management",
    ),
    ROLE_SUBDIVISION_OVERSEER: ("department-data-subdivisions", "subdivisions"),
    ROLE_CUSTOM: ("warehouse", "events", "resources", "uniforms"),
}

DEFAULT_PERMISSIONS: tuple[PermissionDefinition, ...] = (
    PermissionDefinition("warehouse", "Warehouse", "Manage inventory & images", "content"),
    PermissionDefinition("events", "Events", "Manage community events", "content"),
    PermissionDefinition("resources", "Resources", "Manage department resources", "content"),
    PermissionDefinition("uniforms", "Uniforms", "Manage uniform inventory", "content"),
    PermissionDefinition("theme-settings", "Theme Settings", "Seasonal themes & effects", "content"),
    PermissionDefinition("department-data", "Department Data", "Awards & Chain of Command", "content"),
    PermissionDefinition(
        "department-data-subdivisions",
        "Subdivision Data Only",
        "Only subdivision leadership in department data",
        "content",
    ),
    PermissionDefinition("subdivisions", "Subdivisions", "Manage division availability", "content"),
    PermissionDefinition("footer", "Footer Settings", "Customize site footer", "content"),
    PermissionDefinition("user-management", "User Management", "Manage admin accounts", "admin"),
    PermissionDefinition("roles-management", "Roles Management", "Manage Discord roles and permissions", "admin"),
    PermissionDefinition("webhook-settings", "Webhook Settings", "Discord webhook configuration", "webhook"),
    PermissionDefinition("chain-of-command-webhook", "Chain of Command Webhook", "Discord CoC auto-poster", "webhook"),
    PermissionDefinition(
        "subdivision-leadership-webhook", "Subdivision Leadership Webhook", "Discord subdivision poster", "webhook"
    ),
    PermissionDefinition("arrest-reports", "Arrest Reports", "Manage case statuses", "content"),
)


def mask_role_id(role_id: str) -> str:
    """Display form of a provider role id: only the last 8 characters survive."""
    return f"***{role_id[-8:]}" if role_id else ""


# ---------------------------------------------------------------------------
# JSON <-> dataclass mappers
#
# Also used by auth/sessions.py to embed page permissions in session tokens.
# ---------------------------------------------------------------------------


def _opt_tuple(value: Any) -> tuple[str, ...] | None:
    if value is None:
        return None
    return tuple(str(v) for v in value)


def condition_from_dict(d: dict) -> PermissionCondition:
    """Build one condition variant from its stored form. Raises ValueError on an unknown type."""
    kind = d.get("type")
    if kind not in CONDITION_TYPES:
        raise ValueError(f"Unknown permission condition type: {kind!r}")
    description = d.get("description")
    if kind == MaxPerDay.kind:
        return MaxPerDay(limit=int(d.get("limit", d.get("value", 0)) or 0), description=description)
    if kind == IpWhitelist.kind:
        return IpWhitelist(allowed_ips=tuple(d.get("allowedIps") or ()), description=description)
    if kind == SubdivisionOnly.kind:
        groups = d.get("groupIds", d.get("subdivisionIds")) or ()
        return SubdivisionOnly(group_ids=tuple(str(g) for g in groups), description=description)
    return CONDITION_TYPES[kind](description=description)


def condition_to_dict(condition: PermissionCondition) -> dict:
    d: dict[str, Any] = {"type": condition.kind}
    if condition.description is not None:
        d["description"] = condition.description
    if isinstance(condition, MaxPerDay):
        d["value"] = condition.limit
    elif isinstance(condition, IpWhitelist):
        d["allowedIps"] = list(condition.allowed_ips)
    elif isinstance(condition, SubdivisionOnly):
        d["subdivisionIds"] = list(condition.group_ids)
    return d


def _time_restriction_from_dict(d: dict | None) -> TimeRestriction | None:
    if not d:
        return None
    return TimeRestriction(
        allowed_days=tuple(int(x) for x in d.get("allowedDays") or ()),
        allowed_hours=tuple(HourWindow(start=h["start"], end=h["end"]) for h in d.get("allowedHours") or ()),
        timezone=d.get("timezone"),
    )


def _time_restriction_to_dict(t: TimeRestriction) -> dict:
    d: dict[str, Any] = {
        "allowedDays": list(t.allowed_days),
        "allowedHours": [{"start": h.start, "end": h.end} for h in t.allowed_hours],
    }
    if t.timezone:
        d["timezone"] = t.timezone
    return d


def _restrictions_from_dict(d: dict | None) -> Restrictions | None:
    if d is None:
        return None
    limits = d.get("limits")
    return Restrictions(
        allowed_fields=_opt_tuple(d.get("allowedFields")),
        blocked_fields=_opt_tuple(d.get("blockedFields")),
        conditions=tuple(condition_from_dict(c) for c in d.get("conditions") or ()),
        time_restrictions=_time_restriction_from_dict(d.get("timeRestrictions")),
        limits=(
            tuple(QuantityLimit(type=x["type"], action=x["action"], limit=int(x["limit"])) for x in limits)
            if limits is not None
            else None
        ),
    )


def restrictions_to_dict(r: Restrictions) -> dict:
    d: dict[str, Any] = {}
    if r.allowed_fields is not None:
        d["allowedFields"] = list(r.allowed_fields)
    if r.blocked_fields is not None:
        d["blockedFields"] = list(r.blocked_fields)
    if r.conditions:
        d["conditions"] = [condition_to_dict(c) for c in r.conditions]
    if r.time_restrictions is not None:
        d["timeRestrictions"] = _time_restriction_to_dict(r.time_restrictions)
    if r.limits is not None:
        d["limits"] = [{"type": x.type, "action": x.action, "limit": x.limit} for x in r.limits]
    return d


def page_permission_from_dict(d: dict) -> PagePermission:
    return PagePermission(
        page_id=str(d["pageId"]),
        actions=tuple(str(a) for a in d.get("actions") or ()),
        sub_actions=_opt_tuple(d.get("subActions")),
        restrictions=_restrictions_from_dict(d.get("restrictions")),
    )


def page_permission_to_dict(p: PagePermission) -> dict:
    d: dict[str, Any] = {"pageId": p.page_id, "actions": list(p.actions)}
    if p.sub_actions is not None:
        d["subActions"] = list(p.sub_actions)
    if p.restrictions is not None:
        d["restrictions"] = restrictions_to_dict(p.restrictions)
    return d


def page_permissions_from_list(items: list[dict] | None) -> tuple[PagePermission, ...] | None:
    """Map a stored list, keeping the first entry per pageId."""
    if items is None:
        return None
    seen: set[str] = set()
    result = []
    for item in items:
        perm = page_permission_from_dict(item)
        if perm.page_id in seen:
            logger.warning("Duplicate page permission for %s ignored", perm.page_id)
            continue
        seen.add(perm.page_id)
        result.append(perm)
    return tuple(result)


def _mapping_from_dict(d: dict) -> RoleMapping:
    internal_role = d.get("internalRole", ROLE_CUSTOM)
    if internal_role not in INTERNAL_ROLES:
        raise ValueError(f"Unknown internal role: {internal_role!r}")
    return RoleMapping(
        id=str(d["id"]),
        provider_role_id=str(d.get("discordRoleId") or d.get("providerRoleId") or ""),
        internal_role=internal_role,
        permissions=tuple(str(p) for p in d.get("permissions") or ()),
        page_permissions=page_permissions_from_list(d.get("pagePermissions")),
        priority=int(d.get("priority", 0)),
        role_name=str(d.get("roleName", "")),
        description=str(d.get("description") or ""),
        # Absent means active; only an explicit false disables a mapping.
        is_active=d.get("isActive") is not False,
    )


def mapping_to_dict(m: RoleMapping, mask: bool = False) -> dict:
    d: dict[str, Any] = {
        "id": m.id,
        "discordRoleId": mask_role_id(m.provider_role_id) if mask else m.provider_role_id,
        "roleName": m.role_name,
        "internalRole": m.internal_role,
        "permissions": list(m.permissions),
        "priority": m.priority,
        "description": m.description,
        "isActive": m.is_active,
    }
    if m.page_permissions is not None:
        d["pagePermissions"] = [page_permission_to_dict(p) for p in m.page_permissions]
    return d


def _page_definition_from_dict(d: dict) -> PageDefinition:
    fields = d.get("restrictableFields") or ()
    return PageDefinition(
        id=str(d["id"]),
        name=str(d.get("name", d["id"])),
        available_actions=tuple(d.get("availableActions") or ()),
        available_sub_actions=tuple(d.get("availableSubActions") or ()),
        restrictable_fields=tuple(f["id"] if isinstance(f, dict) else str(f) for f in fields),
        available_conditions=tuple(d.get("availableConditions") or ()),
    )


def roles_config_from_dict(d: dict) -> RolesConfig:
    """Map the stored record. The default permission catalog is merged in."""
    stored_perms = tuple(
        PermissionDefinition(
            id=str(p["id"]),
            name=str(p.get("name", p["id"])),
            description=str(p.get("description", "")),
            category=str(p.get("category", "other")),
        )
        for p in d.get("availablePermissions") or ()
    )
    known = {p.id for p in stored_perms}
    merged = stored_perms + tuple(p for p in DEFAULT_PERMISSIONS if p.id not in known)
    return RolesConfig(
        mappings=tuple(_mapping_from_dict(m) for m in d.get("discordRoleMappings") or ()),
        page_definitions=tuple(_page_definition_from_dict(p) for p in d.get("pageDefinitions") or ()),
        available_permissions=merged,
        version=int(d.get("version", 0)),
    )


def roles_config_to_dict(config: RolesConfig, mask: bool = False) -> dict:
    return {
        "version": config.version,
        "discordRoleMappings": [mapping_to_dict(m, mask=mask) for m in config.mappings],
        "pageDefinitions": [
            {
                "id": p.id,
                "name": p.name,
                "availableActions": list(p.available_actions),
                "availableSubActions": list(p.available_sub_actions),
                "restrictableFields": list(p.restrictable_fields),
                "availableConditions": list(p.available_conditions),
            }
            for p in config.page_definitions
        ],
        "availablePermissions": [
            {"id": p.id, "name": p.name, "description": p.description, "category": p.category}
            for p in config.available_permissions
        ],
    }


# ---------------------------------------------------------------------------
# Configuration source + cache
# ---------------------------------------------------------------------------


class RolesConfigSource(Protocol):
    def load(self) -> RolesConfig | None: ...


class DocumentRolesConfigSource:
    """Reads roles-config/config from the document store.

    A missing record is an empty configuration (legacy roles only). A record
    that fails to map, or a store error, returns None so the cache keeps the
    previous snapshot and retries on next access.
    """

    def __init__(self, docstore: DocumentStore) -> None:
        self._docs = docstore

    def load(self) -> RolesConfig | None:
        try:
            data = self._docs.get_json(ROLES_CONFIG_NAMESPACE, ROLES_CONFIG_KEY)
        except SQLAlchemyError:
            logger.exception("Roles configuration read failed")
            return None
        if data is None:
            return RolesConfig(available_permissions=DEFAULT_PERMISSIONS)
        try:
            return roles_config_from_dict(data)
        except (KeyError, TypeError, ValueError) as e:
            logger.error("Roles configuration rejected: %s", e)
            return None

    def save(self, config: RolesConfig) -> None:
        self._docs.set_json(ROLES_CONFIG_NAMESPACE, ROLES_CONFIG_KEY, roles_config_to_dict(config))


class CachedRolesConfig:
    """TTL-cached view of a RolesConfigSource.

    invalidate() is the hook for the admin management surface: call it after
    writing a new record so the next request reloads.
    """

    def __init__(self, source: RolesConfigSource, ttl: float | None = None) -> None:
        self.source = source
        self._cache: SnapshotCache[RolesConfig] = SnapshotCache(
            source.load,
            ttl=get_settings().role_cache_ttl_seconds if ttl is None else ttl,
        )

    def get(self) -> RolesConfig:
        return self._cache.get() or RolesConfig(available_permissions=DEFAULT_PERMISSIONS)

    def invalidate(self) -> None:
        self._cache.invalidate()
        logger.info("Roles configuration cache invalidated")


# ---------------------------------------------------------------------------
# Resolution strategies
# ---------------------------------------------------------------------------


class DynamicMappingStrategy:
    """Active mappings only, highest priority first, first membership hit wins."""

    source = "mapping"

    def resolve(self, config: RolesConfig, membership_roles: set[str]) -> RoleResolution | None:
        active = [m for m in config.mappings if m.is_active]
        # sorted() is stable, so equal priorities keep their stored order.
        for mapping in sorted(active, key=lambda m: m.priority, reverse=True):
            if mapping.provider_role_id and mapping.provider_role_id in membership_roles:
                return RoleResolution(
                    role=mapping.internal_role,
                    permissions=mapping.permissions,
                    page_permissions=mapping.page_permissions,
                    mapping_id=mapping.id,
                    source=self.source,
                )
        return None


class LegacyRoleStrategy:
    """Static role ids from settings, checked highest privilege first."""

    source = "legacy"

    def __init__(self, settings: Settings) -> None:
        self._checks = (
            (settings.discord_superadmin_role_id, ROLE_SUPER_ADMIN),
            (settings.discord_subdiv_role_id, ROLE_SUBDIVISION_OVERSEER),
            (settings.discord_allothers_role_id, ROLE_CUSTOM),
        )

    def resolve(self, config: RolesConfig, membership_roles: set[str]) -> RoleResolution | None:
        for role_id, role in self._checks:
            if role_id and role_id in membership_roles:
                return RoleResolution(role=role, permissions=LEGACY_ROLE_PERMISSIONS[role], source=self.source)
        return None


class RoleMappingResolver:
    """Resolve membership roles to a RoleResolution.

    Usage:
        resolver = RoleMappingResolver(CachedRolesConfig(DocumentRolesConfigSource(docs)))
        resolution = resolver.resolve(["1234", "5678"])   # None means "no role"
    """

    def __init__(self, config: CachedRolesConfig, settings: Settings | None = None, strategies=None) -> None:
        self.config = config
        settings = settings or get_settings()
        self.strategies = (
            tuple(strategies)
            if strategies is not None
            else (DynamicMappingStrategy(), LegacyRoleStrategy(settings))
        )

    def resolve(self, membership_roles) -> RoleResolution | None:
        roles = {str(r) for r in membership_roles}
        config = self.config.get()
        for strategy in self.strategies:
            resolution = strategy.resolve(config, roles)
            if resolution is not None:
                logger.debug("Resolved role %s via %s", resolution.role, strategy.source)
                return resolution
        return None

    def find_mapping(self, mapping_id: str | None) -> RoleMapping | None:
        """Return the active mapping with this id, or None."""
        if not mapping_id:
            return None
        for mapping in self.config.get().mappings:
            if mapping.id == mapping_id and mapping.is_active:
                return mapping
        return None

    def live_page_permissions(self, principal: Principal) -> tuple[PagePermission, ...] | None:
        """Current page permissions for the mapping a session was issued from.

        Edits to the mapping apply to existing sessions within one cache TTL.
        When the mapping was removed or deactivated, the table embedded in the
        session at issuance is used.
        """
        mapping = self.find_mapping(principal.mapping_id)
        if mapping is not None:
            return mapping.page_permissions
        return principal.page_permissions

    def page_definitions(self) -> tuple[PageDefinition, ...]:
        return self.config.get().page_definitions
