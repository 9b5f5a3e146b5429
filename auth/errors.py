"""
auth/errors.py -- Error taxonomy for the login flow and authorization checks.

Every failure in the identity core is one of these categories. They are raised
inside auth/ and caught at the route boundary (api/), which turns them into a
redirect carrying error_code or into the JSON error envelope. The reason
string is for the server log and the audit trail; only PermissionDenied's
reason is meant for the client, because the UI renders different affordances
for "not authenticated", "forbidden action", "forbidden field" and each
condition.

Layer rule: stdlib only.
"""

from __future__ import annotations


class AuthError(Exception):
    """Base class. category names the failure class, error_code the redirect code."""

    category = "auth"
    error_code = "callback_failed"

    def __init__(self, reason: str, *, identity: str | None = None) -> None:
        super().__init__(reason)
        self.reason = reason
        # Partial identity (e.g. "discord-1234") when known; logged, never returned.
        self.identity = identity


class ConfigurationError(AuthError):
    """Signing secret or provider credentials absent. Raised before any network call."""

    category = "configuration"
    error_code = "server_config"


class ProtocolError(AuthError):
    """State or PKCE validation failure, expired state, malformed callback parameters."""

    category = "protocol"
    error_code = "state_mismatch"


class MissingParamsError(ProtocolError):
    error_code = "missing_params"


class ProviderError(AuthError):
    """Non-2xx from the token exchange or the profile/membership fetch."""

    category = "provider"
    error_code = "callback_failed"


class ProviderDeniedError(ProviderError):
    """The provider redirected back with ?error= (user cancelled, consent denied, ...)."""

    error_code = "provider_error"


class MembershipError(AuthError):
    """Authenticated with the provider but not a member of the required group."""

    category = "membership"
    error_code = "not_member"


class AuthorizationError(AuthError):
    """Authenticated and a member, but no role resolves."""

    category = "authorization"
    error_code = "no_role"


class SessionError(AuthError):
    """Session token malformed, badly signed, expired, revoked, or bound to another client."""

    category = "session"
    error_code = "session_invalid"


class PermissionDenied(AuthError):
    """Authenticated session, but the requested page/action/field/condition check failed."""

    category = "permission"
    error_code = "forbidden"


class InvalidCredentialsError(AuthError):
    """Local username/password login did not match an account."""

    category = "credentials"
    error_code = "invalid_credentials"
