"""
auth/providers.py -- Identity provider adapters (Discord, Google).

Each adapter turns an authorization code into a normalized Identity. Nothing
else from a provider crosses into the core: raw response bodies are never
logged or returned to the client.

Transport:
  Token exchange: Authlib's requests-backed OAuth2Session.fetch_token(), with
       the PKCE code_verifier. Any OAuth error, transport error or unreadable
       response is a ProviderError. No retry -- the user restarts the flow.
  Profile / membership: a module-level requests.Session, bounded by
       provider_timeout_seconds. Non-2xx is a ProviderError.

Security notes:
  [H1] Google: the email must be verified by the provider, otherwise the
       login fails. An unverified address could belong to anyone.

  Discord guild membership is looked up with the bot token, not the user's
       token. HTTP 404 means "not a member" and is returned as None so the
       flow can report not_member instead of a provider failure.

Layer rule: no imports from api/, cache/, or docstore/.
"""

from __future__ import annotations

import logging
from urllib.parse import urlencode

import requests
from authlib.common.errors import AuthlibBaseError
from authlib.integrations.requests_client import OAuth2Session

from auth.errors import ProviderError
from auth.models import Identity
from core.config import Settings, get_settings

logger = logging.getLogger("precinct.auth.providers")

# Shared across adapters for connection pooling. Known provider hosts only,
# so a short redirect limit is plenty.
_session = requests.Session()
_session.max_redirects = 3


class IdentityProviderAdapter:
    """Base adapter. Subclasses set the endpoint constants and fetch_profile()."""

    name = ""
    label = ""
    authorize_endpoint = ""
    token_endpoint = ""
    scopes: tuple[str, ...] = ()
    extra_authorize_params: dict[str, str] = {}
    # True when the provider reports group membership (fetch_membership()).
    has_membership = False

    def __init__(self, settings: Settings | None = None) -> None:
        self.settings = settings or get_settings()

    @property
    def client_id(self) -> str:
        raise NotImplementedError

    @property
    def client_secret(self) -> str:
        raise NotImplementedError

    @property
    def timeout(self) -> float:
        return self.settings.provider_timeout_seconds

    def is_configured(self) -> bool:
        return bool(self.client_id and self.client_secret)

    # ------------------------------------------------------------------
    # OAuth2 authorization code + PKCE
    # ------------------------------------------------------------------

    def authorization_url(self, redirect_uri: str, state: str, code_challenge: str) -> str:
        params = {
            "client_id": self.client_id,
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "scope": " ".join(self.scopes),
            "state": state,
            "code_challenge": code_challenge,
            "code_challenge_method": "S256",
            **self.extra_authorize_params,
        }
        return f"{self.authorize_endpoint}?{urlencode(params)}"

    def exchange_code(self, code: str, redirect_uri: str, pkce_verifier: str | None) -> dict:
        """Redeem the authorization code. Returns the token dict."""
        client = OAuth2Session(
            client_id=self.client_id,
            client_secret=self.client_secret,
            scope=" ".join(self.scopes),
            redirect_uri=redirect_uri,
            token_endpoint_auth_method="client_secret_post",
        )
        try:
            params = {"code": code, "timeout": self.timeout}
            if pkce_verifier:
                params["code_verifier"] = pkce_verifier
            token = client.fetch_token(self.token_endpoint, **params)
        except (AuthlibBaseError, requests.RequestException, ValueError) as e:
            logger.warning("%s token exchange failed: %s", self.name, type(e).__name__)
            raise ProviderError(f"{self.name} token exchange failed") from e
        finally:
            client.close()
        if not token or not token.get("access_token"):
            raise ProviderError(f"{self.name} token response has no access_token")
        return dict(token)

    # ------------------------------------------------------------------
    # Profile / membership
    # ------------------------------------------------------------------

    def fetch_profile(self, token: dict) -> Identity:
        raise NotImplementedError

    def fetch_membership(self, provider_user_id: str) -> list[str] | None:
        raise NotImplementedError(f"{self.name} has no membership lookup")

    def _get(self, url: str, headers: dict[str, str], step: str) -> requests.Response:
        try:
            return _session.get(url, headers=headers, timeout=self.timeout)
        except requests.RequestException as e:
            logger.warning("%s %s request failed: %s", self.name, step, type(e).__name__)
            raise ProviderError(f"{self.name} {step} request failed") from e

    def _json(self, resp: requests.Response, step: str) -> dict:
        if not resp.ok:
            logger.warning("%s %s returned HTTP %s", self.name, step, resp.status_code)
            raise ProviderError(f"{self.name} {step} returned HTTP {resp.status_code}")
        try:
            data = resp.json()
        except ValueError as e:
            raise ProviderError(f"{self.name} {step} returned invalid JSON") from e
        if not isinstance(data, dict):
            raise ProviderError(f"{self.name} {step} returned an unexpected body")
        return data


class DiscordAdapter(IdentityProviderAdapter):
    name = "discord"
    label = "Discord"
    api_base = "https://discord.com/api/v10"
    authorize_endpoint = "https://discord.com/oauth2/authorize"
    token_endpoint = "https://discord.com/api/v10/oauth2/token"  # noqa: S105 -- URL, not a password
    scopes = ("identify", "guilds.members.read")
    extra_authorize_params = {"prompt": "consent"}
    has_membership = True

    @property
    def client_id(self) -> str:
        return self.settings.discord_client_id

    @property
    def client_secret(self) -> str:
        return self.settings.discord_client_secret

    def is_configured(self) -> bool:
        s = self.settings
        return bool(s.discord_client_id and s.discord_client_secret and s.discord_guild_id and s.discord_bot_token)

    def fetch_profile(self, token: dict) -> Identity:
        resp = self._get(
            f"{self.api_base}/users/@me",
            {"Authorization": f"Bearer {token['access_token']}"},
            "profile",
        )
        profile = self._json(resp, "profile")
        if not profile.get("id") or not profile.get("username"):
            raise ProviderError("discord profile is missing id or username")
        return Identity(
            provider=self.name,
            provider_user_id=str(profile["id"]),
            username=str(profile["username"]),
            display_name=str(profile.get("global_name") or profile["username"]),
            raw_profile=profile,
        )

    def fetch_membership(self, provider_user_id: str) -> list[str] | None:
        """Role ids of the user in the configured guild, or None if not a member."""
        resp = self._get(
            f"{self.api_base}/guilds/{self.settings.discord_guild_id}/members/{provider_user_id}",
            {"Authorization": f"Bot {self.settings.discord_bot_token}"},
            "membership",
        )
        if resp.status_code == 404:
            return None
        member = self._json(resp, "membership")
        return [str(r) for r in member.get("roles") or []]


class GoogleAdapter(IdentityProviderAdapter):
    name = "google"
    label = "Google"
    authorize_endpoint = "https://accounts.google.com/o/oauth2/v2/auth"
    token_endpoint = "https://oauth2.googleapis.com/token"  # noqa: S105 -- URL, not a password
    userinfo_endpoint = "https://www.googleapis.com/oauth2/v2/userinfo"
    scopes = ("openid", "email", "profile")
    extra_authorize_params = {"access_type": "offline", "prompt": "consent"}

    @property
    def client_id(self) -> str:
        return self.settings.google_client_id

    @property
    def client_secret(self) -> str:
        return self.settings.google_client_secret

    def fetch_profile(self, token: dict) -> Identity:
        resp = self._get(
            self.userinfo_endpoint,
            {"Authorization": f"Bearer {token['access_token']}"},
            "profile",
        )
        profile = self._json(resp, "profile")
        # [H1] v2 userinfo says verified_email, OIDC userinfo says email_verified.
        if not (profile.get("verified_email") or profile.get("email_verified")):
            raise ProviderError("google email is not verified")
        if not profile.get("id") and not profile.get("sub"):
            raise ProviderError("google profile is missing id")
        if not profile.get("email"):
            raise ProviderError("google profile is missing email")
        email = str(profile["email"])
        return Identity(
            provider=self.name,
            provider_user_id=str(profile.get("id") or profile["sub"]),
            username=email,
            display_name=str(profile.get("name") or email),
            raw_profile=profile,
        )


PROVIDERS: dict[str, type[IdentityProviderAdapter]] = {
    DiscordAdapter.name: DiscordAdapter,
    GoogleAdapter.name: GoogleAdapter,
}


def get_adapter(name: str, settings: Settings | None = None) -> IdentityProviderAdapter | None:
    """Adapter instance for a provider name, or None for an unknown name."""
    cls = PROVIDERS.get(name)
    return cls(settings) if cls is not None else None


def get_enabled_providers(settings: Settings | None = None) -> list[dict]:
    """Return {"name", "label"} for every fully configured provider.

    Used by GET /api/v1/auth/providers so the login page renders only the
    buttons that can work.
    """
    providers = []
    for cls in PROVIDERS.values():
        adapter = cls(settings)
        if adapter.is_configured():
            providers.append({"name": adapter.name, "label": adapter.label})
    return providers
