"""
auth/flow.py -- Login orchestration: OAuth initiation/callback and local login.

LoginFlow wires the pieces together in the order the callback must run them:

    configured? -> provider error? -> params present? -> state valid?
      -> exchange code (PKCE) -> profile -> membership -> resolve role
      -> issue session

Every failure is raised as an auth.errors subclass carrying the redirect
error_code; the route turns it into /admin/login?error=<code>. Nothing here
touches HTTP responses or cookies -- the caller clears the handshake cookies
on every outcome.

No session is issued until the whole chain succeeds, so an abandoned or
failed callback leaves nothing to clean up.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace

from auth.audit import AuditLog
from auth.errors import (
    AuthError,
    AuthorizationError,
    ConfigurationError,
    InvalidCredentialsError,
    MembershipError,
    MissingParamsError,
    ProtocolError,
    ProviderDeniedError,
)
from auth.handshake import generate_pkce_pair, generate_state, is_valid_return_path, validate_state
from auth.models import AdminAccount, Identity, RoleResolution
from auth.passwords import authenticate_account
from auth.providers import IdentityProviderAdapter, get_adapter
from auth.roles import RoleMappingResolver
from auth.sessions import IssuedSession, SessionManager
from auth.store import AccountStore
from core.config import Settings, get_settings

logger = logging.getLogger("precinct.auth.flow")


@dataclass(frozen=True)
class LoginStart:
    authorize_url: str
    state: str
    code_verifier: str
    return_to: str | None  # already validated; None means "use the default"


@dataclass(frozen=True)
class CallbackParams:
    code: str | None
    state: str | None
    error: str | None
    error_description: str | None
    stored_state: str | None
    code_verifier: str | None


class LoginFlow:
    def __init__(
        self,
        sessions: SessionManager,
        resolver: RoleMappingResolver,
        accounts: AccountStore,
        audit: AuditLog,
        settings: Settings | None = None,
        adapters: dict[str, IdentityProviderAdapter] | None = None,
    ) -> None:
        self.sessions = sessions
        self.resolver = resolver
        self.accounts = accounts
        self.audit = audit
        self.settings = settings or get_settings()
        self._adapters = adapters

    def adapter(self, provider: str) -> IdentityProviderAdapter:
        """Configured adapter for a provider name. Raises ConfigurationError otherwise."""
        adapter = self._adapters.get(provider) if self._adapters is not None else get_adapter(provider, self.settings)
        if adapter is None:
            raise ConfigurationError(f"unknown provider {provider!r}")
        if not adapter.is_configured():
            raise ConfigurationError(f"{provider} credentials are not configured")
        return adapter

    def _require_configured(self) -> None:
        if not self.sessions.is_configured():
            raise ConfigurationError("session signing secret is not configured")

    # ------------------------------------------------------------------
    # OAuth
    # ------------------------------------------------------------------

    def initiate(self, provider: str, redirect_uri: str, return_to: str | None = None) -> LoginStart:
        """Create state + PKCE for a new login attempt and build the authorize URL."""
        self._require_configured()
        adapter = self.adapter(provider)
        state = generate_state()
        pkce = generate_pkce_pair()
        return LoginStart(
            authorize_url=adapter.authorization_url(redirect_uri, state, pkce.challenge),
            state=state,
            code_verifier=pkce.verifier,
            return_to=return_to if is_valid_return_path(return_to) else None,
        )

    def complete(self, provider: str, params: CallbackParams, redirect_uri: str, request) -> IssuedSession:
        """Run the callback chain. Raises an AuthError subclass on any failure."""
        try:
            issued = self._complete(provider, params, redirect_uri, request)
        except AuthError as e:
            self.audit.login_failed(e, provider)
            raise
        self.audit.login_succeeded(issued.principal)
        return issued

    def _complete(self, provider: str, params: CallbackParams, redirect_uri: str, request) -> IssuedSession:
        self._require_configured()
        adapter = self.adapter(provider)

        if params.error:
            raise ProviderDeniedError(f"{provider} reported {params.error!r}")
        if not params.code or not params.state or not params.stored_state:
            raise MissingParamsError("code, state or stored state missing")

        check = validate_state(
            params.stored_state,
            params.state,
            max_age_ms=self.settings.state_max_age_seconds * 1000,
        )
        if not check.valid:
            raise ProtocolError(f"state {check.reason}")

        token = adapter.exchange_code(params.code, redirect_uri, params.code_verifier)
        identity = adapter.fetch_profile(token)
        identity = replace(identity, membership_roles=tuple(self._membership(adapter, identity)))

        resolution = self.resolver.resolve(identity.membership_roles)
        if resolution is None:
            raise AuthorizationError("no admin role assigned", identity=identity.identity_id)
        return self.sessions.issue(identity, resolution, request)

    def _membership(self, adapter: IdentityProviderAdapter, identity: Identity) -> list[str]:
        if adapter.has_membership:
            roles = adapter.fetch_membership(identity.provider_user_id)
            if roles is None:
                raise MembershipError("not a member of the required group", identity=identity.identity_id)
            return roles

        # Profile-only providers: roles come from the local account registry.
        account, is_new = self.accounts.get_or_register_google(identity)
        if account.status == "denied":
            raise MembershipError("account access was denied", identity=identity.identity_id)
        if is_new:
            logger.info("New %s account %s awaits role assignment", identity.provider, identity.identity_id)
        return account.roles if account.status == "active" else []

    # ------------------------------------------------------------------
    # Local credentials
    # ------------------------------------------------------------------

    def login_with_password(self, username: str, password: str, request) -> IssuedSession:
        """Authenticate a local admin account and issue a session for it."""
        try:
            self._require_configured()
            account = authenticate_account(self.accounts, username, password)
            if account is None:
                raise InvalidCredentialsError("invalid username or password", identity=f"local-{username.lower()}")
            issued = self.sessions.issue(*_local_identity(account), request)
        except AuthError as e:
            self.audit.login_failed(e, "local")
            raise
        self.audit.login_succeeded(issued.principal)
        return issued


def _local_identity(account: AdminAccount) -> tuple[Identity, RoleResolution]:
    identity = Identity(
        provider="local",
        provider_user_id=account.username.lower(),
        username=account.username,
        display_name=account.display_name,
    )
    resolution = RoleResolution(role=account.role, permissions=tuple(account.permissions), source="local")
    return identity, resolution
