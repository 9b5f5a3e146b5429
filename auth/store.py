"""
auth/store.py -- Local admin accounts and the Google account registry.

Pattern: Repository + Data Mapper over docstore.DocumentStore.
AccountStore is the repository; _dict_to_admin / _admin_to_dict and their
Google counterparts are the mappers. Route and flow code never touches the
stored JSON shape directly.

Storage layout (document store namespaces):
  admin-users/users            -- one JSON array with every local admin account.
                                  The whole array is rewritten on change, so a
                                  reader never sees a partially updated list.
  google-accounts/google-<sub> -- one document per Google identity.

Usernames are matched case-insensitively, display casing is preserved.

Layer rule: no imports from api/ or cache/.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from auth.models import INTERNAL_ROLES, AdminAccount, GoogleAccount, Identity
from docstore.store import DocumentStore

logger = logging.getLogger("precinct.auth.store")

ADMIN_NAMESPACE = "admin-users"
ADMIN_KEY = "users"
GOOGLE_NAMESPACE = "google-accounts"

GOOGLE_STATUSES = ("pending", "active", "denied")


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class AccountStore:
    """Repository for AdminAccount and GoogleAccount records.

    Usage:
        store = AccountStore(DocumentStore())
        store.save_admin(AdminAccount(username="Chief", password_hash=hash_password("..."), ...))
        account = store.get_admin("chief")
    """

    def __init__(self, docstore: DocumentStore) -> None:
        self._docs = docstore

    # ------------------------------------------------------------------
    # Local admin accounts
    # ------------------------------------------------------------------

    def _load_admins(self) -> list[AdminAccount]:
        data = self._docs.get_json(ADMIN_NAMESPACE, ADMIN_KEY)
        if not isinstance(data, list):
            return []
        return [_dict_to_admin(d) for d in data if isinstance(d, dict)]

    def _write_admins(self, accounts: list[AdminAccount]) -> None:
        self._docs.set_json(ADMIN_NAMESPACE, ADMIN_KEY, [_admin_to_dict(a) for a in accounts])

    def list_admins(self) -> list[AdminAccount]:
        """Return every local admin account ordered by username."""
        return sorted(self._load_admins(), key=lambda a: a.username.lower())

    def get_admin(self, username: str) -> AdminAccount | None:
        """Case-insensitive lookup. Returns None if not found."""
        wanted = username.lower()
        for account in self._load_admins():
            if account.username.lower() == wanted:
                return account
        return None

    def save_admin(self, account: AdminAccount) -> AdminAccount:
        """Insert a new account or replace the one with the same username.

        Raises ValueError for a role outside INTERNAL_ROLES.
        """
        if account.role not in INTERNAL_ROLES:
            raise ValueError(f"Unknown role: {account.role!r}")
        now = _now_iso()
        accounts = self._load_admins()
        wanted = account.username.lower()
        for i, existing in enumerate(accounts):
            if existing.username.lower() == wanted:
                account.id = account.id or existing.id
                account.created_at = existing.created_at
                account.updated_at = now
                accounts[i] = account
                break
        else:
            account.id = account.id or f"admin-{wanted}"
            account.created_at = account.created_at or now
            account.updated_at = now
            accounts.append(account)
        self._write_admins(accounts)
        return account

    def update_admin_password(self, username: str, password_hash: str) -> bool:
        """Replace the stored hash for one account. Returns False if not found."""
        accounts = self._load_admins()
        wanted = username.lower()
        for account in accounts:
            if account.username.lower() == wanted:
                account.password_hash = password_hash
                account.updated_at = _now_iso()
                self._write_admins(accounts)
                return True
        return False

    def delete_admin(self, username: str) -> bool:
        accounts = self._load_admins()
        remaining = [a for a in accounts if a.username.lower() != username.lower()]
        if len(remaining) == len(accounts):
            return False
        self._write_admins(remaining)
        return True

    # ------------------------------------------------------------------
    # Google account registry
    # ------------------------------------------------------------------

    def get_google_account(self, account_id: str) -> GoogleAccount | None:
        data = self._docs.get_json(GOOGLE_NAMESPACE, account_id)
        return _dict_to_google(data) if isinstance(data, dict) else None

    def list_google_accounts(self) -> list[GoogleAccount]:
        accounts = []
        for key in self._docs.list_keys(GOOGLE_NAMESPACE):
            account = self.get_google_account(key)
            if account is not None:
                accounts.append(account)
        return accounts

    def get_or_register_google(self, identity: Identity) -> tuple[GoogleAccount, bool]:
        """Return (account, is_new) for a Google identity.

        First sight registers the account as "pending" with no roles. Known
        accounts get their profile fields and last_login refreshed.
        """
        account_id = identity.identity_id
        now = _now_iso()
        account = self.get_google_account(account_id)
        is_new = account is None
        if account is None:
            account = GoogleAccount(
                id=account_id,
                google_id=identity.provider_user_id,
                email=identity.username,
                name=identity.display_name,
                picture=str(identity.raw_profile.get("picture") or ""),
                created_at=now,
            )
            logger.info("Registered new Google account %s as pending", account_id)
        else:
            account.email = identity.username
            account.name = identity.display_name
            account.picture = str(identity.raw_profile.get("picture") or account.picture)
        account.last_login = now
        self._docs.set_json(GOOGLE_NAMESPACE, account_id, _google_to_dict(account))
        return account, is_new

    def assign_google_roles(self, account_id: str, roles: list[str], status: str = "active") -> GoogleAccount | None:
        """Set the role ids (and status) of a registered Google account."""
        if status not in GOOGLE_STATUSES:
            raise ValueError(f"Unknown account status: {status!r}")
        account = self.get_google_account(account_id)
        if account is None:
            return None
        account.roles = list(roles)
        account.status = status
        self._docs.set_json(GOOGLE_NAMESPACE, account_id, _google_to_dict(account))
        return account


# ---------------------------------------------------------------------------
# Mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _dict_to_admin(d: dict) -> AdminAccount:
    # "password" is the field name of records written before hashing existed.
    return AdminAccount(
        username=str(d.get("username", "")),
        password_hash=str(d.get("passwordHash") or d.get("password") or ""),
        display_name=str(d.get("displayName") or d.get("username", "")),
        role=str(d.get("role", "custom")),
        permissions=[str(p) for p in d.get("permissions") or []],
        id=str(d.get("id", "")),
        created_at=d.get("createdAt"),
        updated_at=d.get("updatedAt"),
    )


def _admin_to_dict(a: AdminAccount) -> dict:
    return {
        "id": a.id,
        "username": a.username,
        "passwordHash": a.password_hash,
        "displayName": a.display_name,
        "role": a.role,
        "permissions": list(a.permissions),
        "createdAt": a.created_at,
        "updatedAt": a.updated_at,
    }


def _dict_to_google(d: dict) -> GoogleAccount:
    return GoogleAccount(
        id=str(d.get("id", "")),
        google_id=str(d.get("googleId", "")),
        email=str(d.get("email", "")),
        name=str(d.get("name", "")),
        picture=str(d.get("picture") or ""),
        status=str(d.get("status", "pending")),
        roles=[str(r) for r in d.get("roles") or []],
        created_at=d.get("createdAt"),
        last_login=d.get("lastLogin"),
    )


def _google_to_dict(a: GoogleAccount) -> dict:
    return {
        "id": a.id,
        "googleId": a.google_id,
        "email": a.email,
        "name": a.name,
        "picture": a.picture,
        "status": a.status,
        "roles": list(a.roles),
        "createdAt": a.created_at,
        "lastLogin": a.last_login,
    }
