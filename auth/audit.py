"""
auth/audit.py -- Audit trail for logins, login failures and denials.

Every event is written to the "precinct.audit" logger. When
AUDIT_WEBHOOK_URL is set, the same event is posted to a Discord webhook as an
embed. Webhook failures are logged and swallowed: a broken audit channel must
never break a login.

Records carry the failure category, the reason and the partial identity when
one is known. Secrets, tokens and provider bodies are never included.

Layer rule: no imports from api/, cache/, or docstore/.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

import requests

from auth.errors import AuthError
from auth.models import Principal
from core.config import get_settings

logger = logging.getLogger("precinct.audit")

_WEBHOOK_TIMEOUT = 5  # seconds

_COLORS = {
    "login": 0x2ECC71,
    "logout": 0xE74C3C,
    "failure": 0xE74C3C,
    "denied": 0xF39C12,
}


class AuditLog:
    """Usage:
    audit = AuditLog()
    audit.login_succeeded(principal)
    audit.login_failed(err, provider="discord")
    """

    def __init__(self, webhook_url: str | None = None) -> None:
        self.webhook_url = get_settings().audit_webhook_url if webhook_url is None else webhook_url

    def login_succeeded(self, principal: Principal) -> None:
        logger.info(
            "login ok identity=%s provider=%s role=%s mapping=%s",
            principal.identity_id,
            principal.provider,
            principal.role,
            principal.mapping_id or "-",
        )
        self._post(
            "login",
            "User Login",
            f"**{principal.display_name}** logged into the admin panel",
            [("Username", principal.username), ("Role", principal.role), ("Provider", principal.provider)],
        )

    def login_failed(self, error: AuthError, provider: str) -> None:
        logger.warning(
            "login failed provider=%s category=%s code=%s identity=%s reason=%s",
            provider,
            error.category,
            error.error_code,
            error.identity or "-",
            error.reason,
        )
        self._post(
            "failure",
            "Login Failed",
            f"{provider} login was rejected ({error.error_code})",
            [("Category", error.category), ("Identity", error.identity or "unknown")],
        )

    def logout(self, principal: Principal) -> None:
        logger.info("logout identity=%s session=%s", principal.identity_id, principal.session_id)

    def denied(self, principal: Principal | None, page_id: str, action: str, reason: str | None) -> None:
        identity = principal.identity_id if principal is not None else "-"
        logger.info("denied identity=%s page=%s action=%s reason=%s", identity, page_id, action, reason)

    # ------------------------------------------------------------------
    # Webhook
    # ------------------------------------------------------------------

    def _post(self, kind: str, title: str, description: str, fields: list[tuple[str, str]]) -> None:
        if not self.webhook_url:
            return
        embed = {
            "title": title,
            "description": description,
            "color": _COLORS.get(kind, 0x95A5A6),
            "fields": [{"name": name, "value": value, "inline": True} for name, value in fields],
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "footer": {"text": "Precinct Activity Logger"},
        }
        try:
            resp = requests.post(self.webhook_url, json={"embeds": [embed]}, timeout=_WEBHOOK_TIMEOUT)
            if not resp.ok:
                logger.error("Audit webhook returned HTTP %s", resp.status_code)
        except requests.RequestException as e:
            logger.error("Audit webhook failed: %s", type(e).__name__)
