"""
auth/models.py -- Domain dataclasses for identity and authorization entities.

Pattern: Data class (pure data container, zero logic). Stores, the resolver and
the permission engine do the work; these classes only own the shape.

Values that are shared across requests (anything reachable from the cached
roles configuration, and the Principal rebuilt from a session token) are
frozen and use tuples, so no request can mutate a value another request is
reading.

Layer rule: no imports from api/, cache/, or docstore/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, ClassVar

# ---------------------------------------------------------------------------
# Vocabulary
# ---------------------------------------------------------------------------

ROLE_SUPER_ADMIN = "super_admin"
ROLE_SUBDIVISION_OVERSEER = "subdivision_overseer"
ROLE_CUSTOM = "custom"
INTERNAL_ROLES = (ROLE_SUPER_ADMIN, ROLE_SUBDIVISION_OVERSEER, ROLE_CUSTOM)

ALL_ACTIONS = (
    "view",
    "create",
    "edit",
    "delete",
    "manage",
    "export",
    "import",
    "bulk_edit",
    "archive",
    "restore",
)

ALL_SUB_ACTIONS = (
    "view_list",
    "view_details",
    "view_history",
    "view_analytics",
    "view_sensitive",
    "create_draft",
    "create_publish",
    "create_template",
    "edit_content",
    "edit_metadata",
    "edit_status",
    "edit_permissions",
    "edit_settings",
    "delete_soft",
    "delete_permanent",
    "delete_bulk",
    "manage_users",
    "manage_settings",
    "manage_integrations",
    "manage_webhooks",
)

LIMIT_TYPES = ("per_hour", "per_day", "per_week", "per_month", "total")


# ---------------------------------------------------------------------------
# Credentials and accounts
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Credential:
    """A username plus its self-describing password hash.

    hash is either "$pbkdf2-sha256$<iterations>$<salt-hex>$<key-hex>" or, for
    accounts that predate hashing, the legacy plaintext value.
    """

    username: str
    hash: str


@dataclass
class AdminAccount:
    """A local (username/password) admin panel account."""

    username: str
    password_hash: str
    display_name: str
    role: str  # one of INTERNAL_ROLES
    permissions: list[str] = field(default_factory=list)
    id: str = ""
    created_at: str | None = None
    updated_at: str | None = None

    @property
    def credential(self) -> Credential:
        return Credential(username=self.username, hash=self.password_hash)


@dataclass
class GoogleAccount:
    """A Google identity known to the panel.

    Registered as "pending" with no roles on first sign-in. Roles are assigned
    by an admin and feed the role resolver exactly like guild roles do.
    """

    id: str  # "google-<sub>"
    google_id: str
    email: str
    name: str
    picture: str = ""
    status: str = "pending"  # "pending", "active", "denied"
    roles: list[str] = field(default_factory=list)
    created_at: str | None = None
    last_login: str | None = None


# ---------------------------------------------------------------------------
# OAuth handshake
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PKCEPair:
    verifier: str  # 43-128 url-safe chars; never sent to the provider's authorize endpoint
    challenge: str  # base64url(sha256(verifier)), no padding


@dataclass(frozen=True)
class StateValidation:
    valid: bool
    reason: str | None = None  # "missing", "mismatch", "malformed", "expired"


# ---------------------------------------------------------------------------
# Identity (the only data trusted across the provider boundary)
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Identity:
    provider: str  # "discord", "google", "local"
    provider_user_id: str
    username: str
    display_name: str
    raw_profile: dict[str, Any] = field(default_factory=dict, compare=False)
    membership_roles: tuple[str, ...] = ()

    @property
    def identity_id(self) -> str:
        return f"{self.provider}-{self.provider_user_id}"


# ---------------------------------------------------------------------------
# Permission conditions -- one variant per kind
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class OwnItemsOnly:
    kind: ClassVar[str] = "own_items_only"
    description: str | None = None


@dataclass(frozen=True)
class MaxPerDay:
    kind: ClassVar[str] = "max_per_day"
    limit: int = 0
    description: str | None = None


@dataclass(frozen=True)
class RequiresApproval:
    kind: ClassVar[str] = "requires_approval"
    description: str | None = None


@dataclass(frozen=True)
class TimeRestricted:
    kind: ClassVar[str] = "time_restricted"
    description: str | None = None


@dataclass(frozen=True)
class Requires2FA:
    kind: ClassVar[str] = "requires_2fa"
    description: str | None = None


@dataclass(frozen=True)
class IpWhitelist:
    kind: ClassVar[str] = "ip_whitelist"
    allowed_ips: tuple[str, ...] = ()
    description: str | None = None


@dataclass(frozen=True)
class SubdivisionOnly:
    kind: ClassVar[str] = "subdivision_only"
    group_ids: tuple[str, ...] = ()
    description: str | None = None


PermissionCondition = (
    OwnItemsOnly | MaxPerDay | RequiresApproval | TimeRestricted | Requires2FA | IpWhitelist | SubdivisionOnly
)

CONDITION_TYPES: dict[str, type] = {
    cls.kind: cls
    for cls in (OwnItemsOnly, MaxPerDay, RequiresApproval, TimeRestricted, Requires2FA, IpWhitelist, SubdivisionOnly)
}


# ---------------------------------------------------------------------------
# Page permissions
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class HourWindow:
    start: str  # "HH:MM"
    end: str


@dataclass(frozen=True)
class TimeRestriction:
    allowed_days: tuple[int, ...] = ()  # 0 = Sunday
    allowed_hours: tuple[HourWindow, ...] = ()
    timezone: str | None = None


@dataclass(frozen=True)
class QuantityLimit:
    type: str  # one of LIMIT_TYPES
    action: str
    limit: int


@dataclass(frozen=True)
class Restrictions:
    allowed_fields: tuple[str, ...] | None = None
    blocked_fields: tuple[str, ...] | None = None
    conditions: tuple[PermissionCondition, ...] = ()
    time_restrictions: TimeRestriction | None = None
    limits: tuple[QuantityLimit, ...] | None = None


@dataclass(frozen=True)
class PagePermission:
    page_id: str
    actions: tuple[str, ...]
    sub_actions: tuple[str, ...] | None = None
    restrictions: Restrictions | None = None


# ---------------------------------------------------------------------------
# Roles configuration (the single versioned record in the document store)
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RoleMapping:
    id: str
    provider_role_id: str
    internal_role: str
    permissions: tuple[str, ...] = ()
    page_permissions: tuple[PagePermission, ...] | None = None
    priority: int = 0
    role_name: str = ""
    description: str = ""
    is_active: bool = True


@dataclass(frozen=True)
class PermissionDefinition:
    id: str
    name: str
    description: str = ""
    category: str = "other"  # "content", "webhook", "admin", "other"


@dataclass(frozen=True)
class PageDefinition:
    id: str
    name: str
    available_actions: tuple[str, ...] = ()
    available_sub_actions: tuple[str, ...] = ()
    restrictable_fields: tuple[str, ...] = ()
    available_conditions: tuple[str, ...] = ()


@dataclass(frozen=True)
class RolesConfig:
    mappings: tuple[RoleMapping, ...] = ()
    page_definitions: tuple[PageDefinition, ...] = ()
    available_permissions: tuple[PermissionDefinition, ...] = ()
    version: int = 0


# ---------------------------------------------------------------------------
# Resolution, sessions and decisions
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RoleResolution:
    role: str
    permissions: tuple[str, ...]
    page_permissions: tuple[PagePermission, ...] | None = None
    mapping_id: str | None = None  # None for legacy static roles
    source: str = "mapping"  # "mapping" or "legacy"


@dataclass(frozen=True)
class Principal:
    """The authenticated, role-bound caller rebuilt from a validated session."""

    identity_id: str
    username: str
    display_name: str
    provider: str
    role: str
    permissions: tuple[str, ...] = ()
    page_permissions: tuple[PagePermission, ...] | None = None
    mapping_id: str | None = None
    issued_at: int = 0
    expires_at: int = 0
    fingerprint: str = ""
    session_id: str = ""


@dataclass
class PermissionCheckResult:
    allowed: bool
    reason: str | None = None
    restrictions: Restrictions | None = None
    requires_approval: bool = False
    is_time_restricted: bool = False
    is_2fa_required: bool = False
