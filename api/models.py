"""
API request and response models for the Precinct admin REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Separation of concerns: auth/ models = domain truth; api/ models = API contract.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from auth.models import PermissionCheckResult, Principal, QuantityLimit, Restrictions, TimeRestriction
from auth.permissions import PageSummary
from auth.roles import restrictions_to_dict

# ---------------------------------------------------------------------------
# Errors / health
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "ok"
    version: str
    auth_configured: bool
    docstore: str = "ok"


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login.

    Only the username is stripped. The password is compared exactly as sent,
    so leading or trailing spaces stored by the CLI survive the transport.
    """

    username: str = Field(min_length=1, max_length=255)
    # max_length keeps PBKDF2 input bounded; complexity is enforced on password set, not here.
    password: str = Field(min_length=1, max_length=255)

    @field_validator("username", mode="before")
    @classmethod
    def strip_username(cls, value: object) -> object:
        """Strip before the length check so a blank username is still rejected."""
        return value.strip() if isinstance(value, str) else value


class SessionResponse(BaseModel):
    """The validated session principal. Returned by login and GET /auth/session."""

    model_config = ConfigDict(frozen=True)

    identity_id: str
    username: str
    display_name: str
    provider: str
    role: str
    permissions: list[str]
    mapping_id: Optional[str] = None
    issued_at: int
    expires_at: int

    @classmethod
    def from_principal(cls, p: Principal) -> "SessionResponse":
        return cls(
            identity_id=p.identity_id,
            username=p.username,
            display_name=p.display_name,
            provider=p.provider,
            role=p.role,
            permissions=list(p.permissions),
            mapping_id=p.mapping_id,
            issued_at=p.issued_at,
            expires_at=p.expires_at,
        )


class OAuthProviderInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    label: str


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str


# ---------------------------------------------------------------------------
# Permissions
# ---------------------------------------------------------------------------


def _restrictions(r: Restrictions | None) -> Optional[dict]:
    return restrictions_to_dict(r) if r is not None else None


class PermissionCheckResponse(BaseModel):
    """Response for GET /api/v1/permissions/check."""

    model_config = ConfigDict(frozen=True)

    allowed: bool
    reason: Optional[str] = None
    restrictions: Optional[dict] = None
    requires_approval: bool = False
    is_time_restricted: bool = False
    is_2fa_required: bool = False

    @classmethod
    def from_result(cls, result: PermissionCheckResult) -> "PermissionCheckResponse":
        return cls(
            allowed=result.allowed,
            reason=result.reason,
            restrictions=_restrictions(result.restrictions),
            requires_approval=result.requires_approval,
            is_time_restricted=result.is_time_restricted,
            is_2fa_required=result.is_2fa_required,
        )


class HourWindowModel(BaseModel):
    start: str
    end: str


class TimeRestrictionModel(BaseModel):
    allowed_days: list[int] = []
    allowed_hours: list[HourWindowModel] = []
    timezone: Optional[str] = None

    @classmethod
    def from_domain(cls, t: TimeRestriction) -> "TimeRestrictionModel":
        return cls(
            allowed_days=list(t.allowed_days),
            allowed_hours=[HourWindowModel(start=h.start, end=h.end) for h in t.allowed_hours],
            timezone=t.timezone,
        )


class QuantityLimitModel(BaseModel):
    type: str
    action: str
    limit: int

    @classmethod
    def from_domain(cls, q: QuantityLimit) -> "QuantityLimitModel":
        return cls(type=q.type, action=q.action, limit=q.limit)


class PageAccessResponse(BaseModel):
    """Response for GET /api/v1/permissions/pages/{page_id}.

    allowed_fields None means every field may be modified.
    """

    page_id: str
    can_access: bool
    actions: list[str]
    sub_actions: list[str]
    allowed_fields: Optional[list[str]] = None
    blocked_fields: Optional[list[str]] = None
    time_restrictions: Optional[TimeRestrictionModel] = None
    limits: Optional[list[QuantityLimitModel]] = None


class PageSummaryRow(BaseModel):
    model_config = ConfigDict(frozen=True)

    page_id: str
    page_name: str
    actions: list[str]
    sub_actions: list[str]
    has_restrictions: bool
    has_field_restrictions: bool
    has_time_restrictions: bool
    has_limits: bool
    conditions: list[str]

    @classmethod
    def from_summary(cls, s: PageSummary) -> "PageSummaryRow":
        return cls(
            page_id=s.page_id,
            page_name=s.page_name,
            actions=list(s.actions),
            sub_actions=list(s.sub_actions),
            has_restrictions=s.has_restrictions,
            has_field_restrictions=s.has_field_restrictions,
            has_time_restrictions=s.has_time_restrictions,
            has_limits=s.has_limits,
            conditions=list(s.conditions),
        )


class PermissionSummaryResponse(BaseModel):
    role: str
    pages: list[PageSummaryRow]


# ---------------------------------------------------------------------------
# Roles configuration
# ---------------------------------------------------------------------------


class RolesConfigResponse(BaseModel):
    """Masked roles configuration for the management surface. Role ids show only their last 8 chars."""

    version: int
    discord_role_mappings: list[dict]
    page_definitions: list[dict]
    available_permissions: list[dict]
