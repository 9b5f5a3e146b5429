"""
tests/test_auth_routes.py -- Integration tests for the login, session and permission routes.

These tests go through the real ASGI stack using the client fixture
(follow_redirects=False) and assert on Location and Set-Cookie headers
directly. The only thing replaced is the provider adapter: a MagicMock stands
in for Discord so no request leaves the process.

Coverage:
  - OAuth initiation: 302 to the provider with handshake cookies; 503 for an
    unconfigured provider; 404 for an unknown one
  - OAuth callback: missing params, provider error, state mismatch, not a
    member, no role, success; handshake cookies cleared on every outcome and
    no session cookie on failure
  - Local login: success sets the session cookie, bad credentials -> 401,
    password whitespace kept, per-account lockout with Retry-After
  - GET /auth/session and logout revocation
  - Permission check/page/summary endpoints
  - Roles config: masked for super admins, 403 for everyone else, reload
    guarded by the roles-management page permission
  - require_page_permission on a small router: 403 with the engine's reason
    for a forbidden action, a forbidden field and a failing condition; 401
    for an anonymous caller
"""

from __future__ import annotations

from collections.abc import Generator
from unittest.mock import MagicMock
from urllib.parse import parse_qs, urlparse

import pytest
from fastapi import Depends, FastAPI
from fastapi.testclient import TestClient

from api.main import build_state, permission_denied_handler
from auth.dependencies import require_page_permission
from auth.errors import PermissionDenied
from auth.flow import LoginFlow
from auth.handshake import generate_state, pkce_cookie_name, return_to_cookie_name, state_cookie_name
from auth.lockout import LoginLockout
from auth.models import (
    AdminAccount,
    Identity,
    IpWhitelist,
    MaxPerDay,
    PagePermission,
    Principal,
    Restrictions,
    RoleResolution,
)
from auth.passwords import hash_password
from auth.roles import ROLES_CONFIG_KEY, ROLES_CONFIG_NAMESPACE
from auth.sessions import SESSION_COOKIE_NAME
from conftest import SUBDIV_ROLE_ID, TEST_ADMIN_PASSWORD, TEST_ADMIN_USERNAME, FakeRequest, make_docstore

CALLBACK = "/api/v1/auth/discord/callback"


def _set_cookies(resp) -> list[str]:
    return resp.headers.get_list("set-cookie")


def _cookie_names(resp) -> set[str]:
    return {header.split("=", 1)[0] for header in _set_cookies(resp)}


def _fake_discord(roles: list[str] | None) -> MagicMock:
    adapter = MagicMock()
    adapter.is_configured.return_value = True
    adapter.has_membership = True
    adapter.exchange_code.return_value = {"access_token": "at", "token_type": "Bearer"}
    adapter.fetch_profile.return_value = Identity(
        provider="discord", provider_user_id="42", username="officer", display_name="Officer Friendly"
    )
    adapter.fetch_membership.return_value = roles
    return adapter


def _install(client: TestClient, monkeypatch: pytest.MonkeyPatch, adapter: MagicMock) -> None:
    state = client.app.state
    flow = LoginFlow(state.sessions, state.resolver, state.accounts, state.audit, adapters={"discord": adapter})
    monkeypatch.setattr(state, "login_flow", flow)


def _callback(client: TestClient, return_to: str | None = None):
    state = generate_state()
    client.cookies.set(state_cookie_name("discord"), state)
    client.cookies.set(pkce_cookie_name("discord"), "verifier-123")
    if return_to:
        client.cookies.set(return_to_cookie_name("discord"), return_to)
    return client.get(CALLBACK, params={"code": "abc", "state": state})


def _local_login(client: TestClient):
    return client.post(
        "/api/v1/auth/login",
        json={"username": TEST_ADMIN_USERNAME, "password": TEST_ADMIN_PASSWORD},
    )


def _login(client: TestClient, username: str, password: str):
    return client.post("/api/v1/auth/login", json={"username": username, "password": password})


def _save_admin(client: TestClient, username: str, password: str) -> None:
    client.app.state.accounts.save_admin(
        AdminAccount(
            username=username,
            password_hash=hash_password(password, iterations=1000),
            display_name=username,
            role="super_admin",
        )
    )


def _scoped_session(client: TestClient, *page_permissions: PagePermission) -> None:
    """Put a custom-role session carrying exactly these page permissions in the cookie jar."""
    identity = Identity(provider="discord", provider_user_id="77", username="clerk", display_name="Clerk")
    resolution = RoleResolution(role="custom", permissions=(), page_permissions=page_permissions)
    issued = client.app.state.sessions.issue(identity, resolution, FakeRequest())
    client.cookies.set(SESSION_COOKIE_NAME, issued.token)


class StepClock:
    def __init__(self) -> None:
        self.now = 1_700_000_000.0

    def __call__(self) -> float:
        return self.now


class TestOAuthLogin:
    def test_redirects_to_provider_with_handshake_cookies(self, client: TestClient) -> None:
        resp = client.get("/api/v1/auth/discord/login", params={"returnTo": "/admin/events"})
        assert resp.status_code == 302
        location = urlparse(resp.headers["location"])
        assert f"{location.scheme}://{location.netloc}{location.path}" == "https://discord.com/oauth2/authorize"

        params = parse_qs(location.query)
        assert params["redirect_uri"] == ["http://testserver/api/v1/auth/discord/callback"]
        assert params["code_challenge_method"] == ["S256"]
        assert params["state"] == [client.cookies.get(state_cookie_name("discord"))]
        assert _cookie_names(resp) >= {
            state_cookie_name("discord"),
            pkce_cookie_name("discord"),
            return_to_cookie_name("discord"),
        }
        assert resp.headers["cache-control"] == "no-store"

    def test_unsafe_return_path_not_stored(self, client: TestClient) -> None:
        resp = client.get("/api/v1/auth/discord/login", params={"returnTo": "//evil.example"})
        assert resp.status_code == 302
        assert return_to_cookie_name("discord") not in _cookie_names(resp)

    def test_unconfigured_provider(self, client: TestClient) -> None:
        resp = client.get("/api/v1/auth/google/login")
        assert resp.status_code == 503
        assert resp.json()["error"]["code"] == "server_config"

    def test_unknown_provider(self, client: TestClient) -> None:
        resp = client.get("/api/v1/auth/github/login")
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "unknown_provider"

    def test_providers_listing(self, client: TestClient) -> None:
        resp = client.get("/api/v1/auth/providers")
        assert resp.status_code == 200
        assert resp.json() == [{"name": "discord", "label": "Discord"}]


class TestOAuthCallbackFailures:
    def test_empty_stored_state_is_missing_params(self, client: TestClient) -> None:
        resp = client.get(
            CALLBACK,
            params={"code": "abc", "state": "xyz"},
            headers={"Cookie": f"{state_cookie_name('discord')}="},
        )
        assert resp.status_code == 302
        assert resp.headers["location"] == "/admin/login?error=missing_params"
        assert SESSION_COOKIE_NAME not in _cookie_names(resp)

    def test_provider_error(self, client: TestClient) -> None:
        resp = client.get(CALLBACK, params={"error": "access_denied"})
        assert resp.headers["location"] == "/admin/login?error=provider_error"

    def test_state_mismatch(self, client: TestClient) -> None:
        client.cookies.set(state_cookie_name("discord"), generate_state())
        resp = client.get(CALLBACK, params={"code": "abc", "state": generate_state()})
        assert resp.headers["location"] == "/admin/login?error=state_mismatch"
        assert SESSION_COOKIE_NAME not in _cookie_names(resp)

    def test_not_member(self, client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
        _install(client, monkeypatch, _fake_discord(None))
        resp = _callback(client)
        assert resp.headers["location"] == "/admin/login?error=not_member"

    def test_no_role(self, client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
        _install(client, monkeypatch, _fake_discord(["123"]))
        resp = _callback(client)
        assert resp.headers["location"] == "/admin/login?error=no_role"
        assert SESSION_COOKIE_NAME not in _cookie_names(resp)

    def test_unexpected_exception(self, client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
        adapter = _fake_discord([SUBDIV_ROLE_ID])
        adapter.fetch_profile.side_effect = KeyError("id")
        _install(client, monkeypatch, adapter)
        resp = _callback(client)
        assert resp.headers["location"] == "/admin/login?error=callback_failed"

    def test_handshake_cookies_cleared_on_failure(self, client: TestClient) -> None:
        resp = client.get(CALLBACK, params={"error": "access_denied"})
        cleared = [h.lower() for h in _set_cookies(resp) if h.startswith(state_cookie_name("discord"))]
        assert cleared
        assert "max-age=0" in cleared[0]


class TestOAuthCallbackSuccess:
    def test_session_issued_and_redirected(self, client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
        adapter = _fake_discord([SUBDIV_ROLE_ID])
        _install(client, monkeypatch, adapter)
        resp = _callback(client)

        assert resp.status_code == 302
        assert resp.headers["location"] == "/admin"
        assert SESSION_COOKIE_NAME in _cookie_names(resp)
        adapter.exchange_code.assert_called_once_with(
            "abc", "http://testserver/api/v1/auth/discord/callback", "verifier-123"
        )
        adapter.fetch_membership.assert_called_once_with("42")

        session = client.get("/api/v1/auth/session").json()
        assert session["identity_id"] == "discord-42"
        assert session["role"] == "subdivision_overseer"
        assert session["display_name"] == "Officer Friendly"

    def test_return_path_honored(self, client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
        _install(client, monkeypatch, _fake_discord([SUBDIV_ROLE_ID]))
        resp = _callback(client, return_to="%2Fadmin%2Fsubdivisions")
        assert resp.headers["location"] == "/admin/subdivisions"

    def test_handshake_cookies_cleared_on_success(self, client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
        _install(client, monkeypatch, _fake_discord([SUBDIV_ROLE_ID]))
        resp = _callback(client)
        cleared = {h.split("=", 1)[0] for h in _set_cookies(resp) if "max-age=0" in h.lower()}
        assert {state_cookie_name("discord"), pkce_cookie_name("discord")} <= cleared


class TestLocalLogin:
    def test_login_sets_session(self, client: TestClient) -> None:
        resp = _local_login(client)
        assert resp.status_code == 200
        assert resp.json()["role"] == "super_admin"
        assert resp.json()["identity_id"] == "local-chief"
        assert SESSION_COOKIE_NAME in _cookie_names(resp)
        assert resp.headers["cache-control"] == "no-store"

    def test_username_case_insensitive(self, client: TestClient) -> None:
        resp = client.post(
            "/api/v1/auth/login",
            json={"username": TEST_ADMIN_USERNAME.upper(), "password": TEST_ADMIN_PASSWORD},
        )
        assert resp.status_code == 200

    @pytest.mark.parametrize(
        "username,password",
        [(TEST_ADMIN_USERNAME, "wrong-password"), ("nobody", TEST_ADMIN_PASSWORD)],
    )
    def test_bad_credentials(self, client: TestClient, username: str, password: str) -> None:
        resp = client.post("/api/v1/auth/login", json={"username": username, "password": password})
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "bad_credentials"
        assert SESSION_COOKIE_NAME not in _cookie_names(resp)

    def test_empty_body_rejected(self, client: TestClient) -> None:
        resp = client.post("/api/v1/auth/login", json={"username": "", "password": ""})
        assert resp.status_code == 422

    def test_blank_username_rejected(self, client: TestClient) -> None:
        assert _login(client, "   ", TEST_ADMIN_PASSWORD).status_code == 422

    def test_password_whitespace_kept(self, client: TestClient) -> None:
        _save_admin(client, "Spacey", "Spaced-Pass-42! ")
        assert _login(client, "Spacey", "Spaced-Pass-42!").status_code == 401

        resp = _login(client, "  spacey ", "Spaced-Pass-42! ")
        assert resp.status_code == 200
        assert resp.json()["identity_id"] == "local-spacey"


def _install_lockout(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> StepClock:
    clock = StepClock()
    monkeypatch.setattr(client.app.state, "login_lockout", LoginLockout(client.app.state.docstore, clock=clock))
    return clock


class TestLoginLockout:
    PASSWORD = "Lock-And-Key-42!"

    def test_locked_after_repeated_failures(self, client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
        _install_lockout(client, monkeypatch)
        _save_admin(client, "Locksmith", self.PASSWORD)
        for _ in range(5):
            assert _login(client, "locksmith", "wrong-password").status_code == 401

        resp = _login(client, "Locksmith", self.PASSWORD)
        assert resp.status_code == 429
        assert resp.json()["error"]["code"] == "locked_out"
        assert resp.headers["retry-after"] == "1800"
        assert resp.headers["cache-control"] == "no-store"
        assert SESSION_COOKIE_NAME not in _cookie_names(resp)

    def test_lock_expires(self, client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
        clock = _install_lockout(client, monkeypatch)
        _save_admin(client, "Sleeper", self.PASSWORD)
        for _ in range(5):
            _login(client, "Sleeper", "wrong-password")

        clock.now += 1799
        resp = _login(client, "Sleeper", self.PASSWORD)
        assert resp.status_code == 429
        assert resp.headers["retry-after"] == "1"

        clock.now += 1
        assert _login(client, "Sleeper", self.PASSWORD).status_code == 200

    def test_success_resets_count(self, client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
        _install_lockout(client, monkeypatch)
        _save_admin(client, "Resetti", self.PASSWORD)
        for _ in range(4):
            assert _login(client, "Resetti", "wrong-password").status_code == 401
        assert _login(client, "Resetti", self.PASSWORD).status_code == 200

        for _ in range(4):
            assert _login(client, "Resetti", "wrong-password").status_code == 401
        assert _login(client, "Resetti", self.PASSWORD).status_code == 200


class TestSession:
    def test_anonymous_session_is_401(self, client: TestClient) -> None:
        resp = client.get("/api/v1/auth/session")
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "unauthorized"

    def test_logout_revokes_token(self, client: TestClient) -> None:
        _local_login(client)
        token = client.cookies.get(SESSION_COOKIE_NAME)
        assert client.get("/api/v1/auth/session").status_code == 200

        resp = client.post("/api/v1/auth/logout")
        assert resp.status_code == 200
        assert SESSION_COOKIE_NAME in _cookie_names(resp)

        # Replaying the old token after logout must fail.
        client.cookies.set(SESSION_COOKIE_NAME, token)
        assert client.get("/api/v1/auth/session").status_code == 401

    def test_logout_without_session(self, client: TestClient) -> None:
        assert client.post("/api/v1/auth/logout").status_code == 200

    def test_token_bound_to_user_agent(self, client: TestClient) -> None:
        _local_login(client)
        resp = client.get("/api/v1/auth/session", headers={"User-Agent": "curl/8.0"})
        assert resp.status_code == 401


class TestPermissionRoutes:
    def test_anonymous_check(self, client: TestClient) -> None:
        resp = client.get("/api/v1/permissions/check", params={"page": "events"})
        assert resp.status_code == 200
        assert resp.json()["allowed"] is False
        assert resp.json()["reason"] == "not authenticated"

    def test_super_admin_check(self, client: TestClient) -> None:
        _local_login(client)
        resp = client.get("/api/v1/permissions/check", params={"page": "events", "action": "delete"})
        assert resp.json()["allowed"] is True

    def test_overseer_field_checks(self, client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
        _install(client, monkeypatch, _fake_discord([SUBDIV_ROLE_ID]))
        _callback(client)
        ok = client.get(
            "/api/v1/permissions/check", params={"page": "subdivisions", "action": "edit", "field": "availability"}
        )
        denied = client.get(
            "/api/v1/permissions/check", params={"page": "subdivisions", "action": "edit", "field": "budget"}
        )
        assert ok.json()["allowed"] is True
        assert denied.json()["allowed"] is False

        page = client.get("/api/v1/permissions/pages/subdivisions").json()
        assert page["can_access"] is True
        assert page["actions"] == ["view", "edit"]
        assert page["allowed_fields"] == ["availability", "details"]

    def test_check_daily_limit_needs_caller_count(self, client: TestClient) -> None:
        restrictions = Restrictions(conditions=(MaxPerDay(limit=3),))
        _scoped_session(
            client, PagePermission(page_id="events", actions=("view", "create"), restrictions=restrictions)
        )
        params = {"page": "events", "action": "create"}

        over = client.get("/api/v1/permissions/check", params={**params, "actionsToday": 3}).json()
        assert over["allowed"] is False
        assert over["reason"] == "Daily limit of 3 reached"
        # Without a count the condition cannot be evaluated here.
        assert client.get("/api/v1/permissions/check", params=params).json()["allowed"] is True

    def test_page_access_requires_auth(self, client: TestClient) -> None:
        assert client.get("/api/v1/permissions/pages/events").status_code == 401
        assert client.get("/api/v1/permissions/summary").status_code == 401

    def test_super_admin_page_access(self, client: TestClient) -> None:
        _local_login(client)
        page = client.get("/api/v1/permissions/pages/events").json()
        assert page["can_access"] is True
        assert page["allowed_fields"] is None
        assert "manage" in page["actions"]

    def test_summary(self, client: TestClient) -> None:
        _local_login(client)
        resp = client.get("/api/v1/permissions/summary")
        assert resp.status_code == 200
        assert resp.json()["role"] == "super_admin"


class TestRolesConfigRoutes:
    def test_requires_super_admin(self, client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
        assert client.get("/api/v1/roles-config").status_code == 401
        _install(client, monkeypatch, _fake_discord([SUBDIV_ROLE_ID]))
        _callback(client)
        resp = client.get("/api/v1/roles-config")
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "forbidden"

    def test_masked_after_reload(self, client: TestClient) -> None:
        client.app.state.docstore.set_json(
            ROLES_CONFIG_NAMESPACE,
            ROLES_CONFIG_KEY,
            {
                "version": 2,
                "discordRoleMappings": [
                    {"id": "m1", "discordRoleId": "555555555512345678", "internalRole": "custom", "priority": 1}
                ],
            },
        )
        _local_login(client)
        assert client.post("/api/v1/roles-config/reload").status_code == 200

        data = client.get("/api/v1/roles-config").json()
        assert data["version"] == 2
        assert data["discord_role_mappings"][0]["discordRoleId"] == "***12345678"

    def test_reload_anonymous_is_401(self, client: TestClient) -> None:
        resp = client.post("/api/v1/roles-config/reload")
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "unauthorized"
        assert resp.json()["error"]["message"] == "not authenticated"

    def test_reload_needs_edit_on_roles_management(self, client: TestClient) -> None:
        _scoped_session(client, PagePermission(page_id="roles-management", actions=("view",)))
        resp = client.post("/api/v1/roles-config/reload")
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "forbidden"
        assert resp.json()["error"]["message"] == "action 'edit' not permitted on this page"

        _scoped_session(client, PagePermission(page_id="roles-management", actions=("view", "edit")))
        assert client.post("/api/v1/roles-config/reload").status_code == 200

    def test_reload_without_page_grant(self, client: TestClient) -> None:
        _scoped_session(client, PagePermission(page_id="events", actions=("view", "edit")))
        resp = client.post("/api/v1/roles-config/reload")
        assert resp.status_code == 403
        assert resp.json()["error"]["message"] == "no permission for this page"

    def test_reload_ip_condition(self, client: TestClient) -> None:
        restrictions = Restrictions(conditions=(IpWhitelist(allowed_ips=("10.0.0.0/8",)),))
        _scoped_session(
            client, PagePermission(page_id="roles-management", actions=("view", "edit"), restrictions=restrictions)
        )
        resp = client.post("/api/v1/roles-config/reload")
        assert resp.status_code == 403
        assert resp.json()["error"]["message"] == "Access denied from this IP address"


BUDGET_URL = "/events/e1/budget"


@pytest.fixture(scope="module")
def guarded_client() -> Generator[TestClient, None, None]:
    """A bare app with one route that writes the budget field of the events page."""
    guarded = FastAPI()
    store = make_docstore()
    build_state(guarded, store)
    guarded.add_exception_handler(PermissionDenied, permission_denied_handler)

    @guarded.post(BUDGET_URL)
    def set_budget(
        principal: Principal = Depends(require_page_permission("events", "edit", field="budget")),
    ) -> dict:
        return {"updated_by": principal.identity_id}

    with TestClient(guarded) as c:
        yield c
    store.close()


class TestPagePermissionGuard:
    def test_anonymous(self, guarded_client: TestClient) -> None:
        guarded_client.cookies.clear()
        resp = guarded_client.post(BUDGET_URL)
        assert resp.status_code == 401
        assert resp.json()["error"]["message"] == "not authenticated"

    def test_allowed(self, guarded_client: TestClient) -> None:
        _scoped_session(guarded_client, PagePermission(page_id="events", actions=("view", "edit")))
        resp = guarded_client.post(BUDGET_URL)
        assert resp.status_code == 200
        assert resp.json() == {"updated_by": "discord-77"}

    def test_forbidden_action(self, guarded_client: TestClient) -> None:
        _scoped_session(guarded_client, PagePermission(page_id="events", actions=("view",)))
        resp = guarded_client.post(BUDGET_URL)
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "forbidden"
        assert resp.json()["error"]["message"] == "action 'edit' not permitted on this page"

    @pytest.mark.parametrize(
        "restrictions",
        [Restrictions(allowed_fields=("title",)), Restrictions(blocked_fields=("budget",))],
        ids=["not-in-allowed", "blocked"],
    )
    def test_forbidden_field(self, guarded_client: TestClient, restrictions: Restrictions) -> None:
        _scoped_session(
            guarded_client, PagePermission(page_id="events", actions=("view", "edit"), restrictions=restrictions)
        )
        resp = guarded_client.post(BUDGET_URL)
        assert resp.status_code == 403
        assert resp.json()["error"]["message"] == "not permitted to modify field 'budget'"

    def test_condition_description_is_the_reason(self, guarded_client: TestClient) -> None:
        restrictions = Restrictions(
            conditions=(IpWhitelist(allowed_ips=("10.0.0.1",), description="Station network only"),)
        )
        _scoped_session(
            guarded_client, PagePermission(page_id="events", actions=("view", "edit"), restrictions=restrictions)
        )
        resp = guarded_client.post(BUDGET_URL)
        assert resp.status_code == 403
        assert resp.json()["error"]["message"] == "Station network only"
