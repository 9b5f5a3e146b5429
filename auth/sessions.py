"""
auth/sessions.py -- Signed, client-bound session tokens.

Security design decisions:
  Token: python-jose HS256 JWT signed with SESSION_SECRET. The token carries
       the whole principal (identity, role, permissions, page permissions,
       mapping id) so validation needs no store round trip. Only revocation
       (explicit logout) consults the document store.

  Validation order: signature -> expiry -> fingerprint -> revocation. The
       first failure short-circuits. validate() never raises: every failure is
       logged at DEBUG with its reason and degrades to "unauthenticated".

  Fingerprint: SHA-256 of the User-Agent header, recorded as "fp" at issuance.
       A cookie replayed from a different client class is rejected even when
       the signature and expiry are fine. Compared with constant_time_equals().

  [M7] is_configured() is False when SESSION_SECRET is empty. issue() then
       raises ConfigurationError and validate() returns None, so an unsigned
       or throwaway-signed session can never be produced or accepted.

  Revocation: logout stores the token id (jti) under revoked-sessions/<jti>
       with the token's own expiry. Expired revocation records are purged on
       each logout.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import hashlib
import logging
import secrets
import time
from dataclasses import dataclass
from typing import Callable

from jose import JWTError, jwt
from sqlalchemy.exc import SQLAlchemyError

from auth.errors import ConfigurationError, SessionError
from auth.handshake import constant_time_equals
from auth.models import Identity, Principal, RoleResolution
from auth.roles import page_permission_to_dict, page_permissions_from_list
from core.config import Settings, get_settings
from docstore.store import DocumentStore

logger = logging.getLogger("precinct.auth.sessions")

SESSION_COOKIE_NAME = "precinct_session"
REVOKED_NAMESPACE = "revoked-sessions"
_ALGORITHM = "HS256"

_REQUIRED_CLAIMS = ("sub", "role", "iat", "exp", "fp", "jti")


@dataclass(frozen=True)
class IssuedSession:
    token: str
    principal: Principal
    max_age: int  # seconds; cookie Max-Age and token lifetime agree


class SessionManager:
    """Issue and validate session tokens.

    Usage:
        sessions = SessionManager(docstore)
        issued = sessions.issue(identity, resolution, request)
        sessions.set_session_cookie(response, issued)
        principal = sessions.validate(request)     # None when unauthenticated
    """

    def __init__(
        self,
        docstore: DocumentStore | None = None,
        settings: Settings | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._docs = docstore
        self._settings = settings or get_settings()
        self._clock = clock

    @property
    def ttl_seconds(self) -> int:
        return self._settings.session_ttl_seconds

    def is_configured(self) -> bool:
        return bool(self._settings.session_secret)

    @staticmethod
    def fingerprint(request) -> str:
        user_agent = request.headers.get("user-agent", "")
        return hashlib.sha256(user_agent.encode("utf-8")).hexdigest()

    # ------------------------------------------------------------------
    # Issue
    # ------------------------------------------------------------------

    def issue(self, identity: Identity, resolution: RoleResolution, request) -> IssuedSession:
        """Sign a token for a resolved identity, bound to the requesting client."""
        if not self.is_configured():
            raise ConfigurationError("session signing secret is not configured", identity=identity.identity_id)

        now = int(self._clock())
        principal = Principal(
            identity_id=identity.identity_id,
            username=identity.username,
            display_name=identity.display_name,
            provider=identity.provider,
            role=resolution.role,
            permissions=tuple(resolution.permissions),
            page_permissions=resolution.page_permissions,
            mapping_id=resolution.mapping_id,
            issued_at=now,
            expires_at=now + self.ttl_seconds,
            fingerprint=self.fingerprint(request),
            session_id=secrets.token_hex(16),
        )
        token = jwt.encode(_principal_to_claims(principal), self._settings.session_secret, algorithm=_ALGORITHM)
        logger.info("Issued session %s for %s (role=%s)", principal.session_id, principal.identity_id, principal.role)
        return IssuedSession(token=token, principal=principal, max_age=self.ttl_seconds)

    # ------------------------------------------------------------------
    # Validate
    # ------------------------------------------------------------------

    def decode(self, token: str, fingerprint: str) -> Principal:
        """Run every check in order. Raises SessionError on the first failure."""
        if not self.is_configured():
            raise SessionError("session signing secret is not configured")

        # 1. Signature. Expiry is checked below against the injected clock.
        try:
            claims = jwt.decode(
                token,
                self._settings.session_secret,
                algorithms=[_ALGORITHM],
                options={"verify_exp": False},
            )
        except JWTError as e:
            raise SessionError(f"bad token: {e}") from e
        if any(claim not in claims for claim in _REQUIRED_CLAIMS):
            raise SessionError("token is missing required claims")

        # 2. Expiry
        if int(claims["exp"]) <= int(self._clock()):
            raise SessionError("token expired", identity=claims["sub"])

        # 3. Client binding
        if not constant_time_equals(str(claims["fp"]), fingerprint):
            raise SessionError("fingerprint mismatch", identity=claims["sub"])

        # 4. Revocation
        if self._is_revoked(str(claims["jti"])):
            raise SessionError("token revoked", identity=claims["sub"])

        try:
            return _claims_to_principal(claims)
        except (KeyError, TypeError, ValueError) as e:
            raise SessionError(f"malformed claims: {e}", identity=claims.get("sub")) from e

    def validate(self, request) -> Principal | None:
        """Return the session principal, or None for any invalid or absent session."""
        token = request.cookies.get(SESSION_COOKIE_NAME)
        if not token:
            return None
        try:
            return self.decode(token, self.fingerprint(request))
        except SessionError as e:
            logger.debug("Session rejected (%s): %s", e.identity or "unknown", e.reason)
            return None

    # ------------------------------------------------------------------
    # Revocation
    # ------------------------------------------------------------------

    def _is_revoked(self, session_id: str) -> bool:
        if self._docs is None:
            return False
        try:
            return self._docs.get_json(REVOKED_NAMESPACE, session_id) is not None
        except SQLAlchemyError as e:
            # Fail closed: a session that cannot be checked is not accepted.
            raise SessionError("revocation store unavailable") from e

    def revoke(self, request) -> bool:
        """Revoke the request's session token. Returns True if a token was revoked.

        Only a token with a valid signature is recorded; anything else cannot be
        used anyway.
        """
        token = request.cookies.get(SESSION_COOKIE_NAME)
        if not token or not self.is_configured() or self._docs is None:
            return False
        try:
            claims = jwt.decode(
                token,
                self._settings.session_secret,
                algorithms=[_ALGORITHM],
                options={"verify_exp": False},
            )
        except JWTError:
            return False
        session_id = claims.get("jti")
        if not session_id:
            return False
        self._docs.set_json(REVOKED_NAMESPACE, str(session_id), {"exp": int(claims.get("exp", 0))})
        self.purge_revocations()
        logger.info("Revoked session %s for %s", session_id, claims.get("sub"))
        return True

    def purge_revocations(self) -> int:
        """Delete revocation records whose token has expired anyway."""
        if self._docs is None:
            return 0
        now = int(self._clock())
        removed = 0
        for key in self._docs.list_keys(REVOKED_NAMESPACE):
            record = self._docs.get_json(REVOKED_NAMESPACE, key) or {}
            if int(record.get("exp", 0)) <= now and self._docs.delete(REVOKED_NAMESPACE, key):
                removed += 1
        return removed

    # ------------------------------------------------------------------
    # Cookie helpers
    # ------------------------------------------------------------------

    def set_session_cookie(self, response, issued: IssuedSession) -> None:
        """Write the session token as an httpOnly cookie.

        max_age matches the token expiry so both expire together.
        """
        response.set_cookie(
            SESSION_COOKIE_NAME,
            value=issued.token,
            max_age=issued.max_age,
            path="/",
            httponly=True,
            secure=self._settings.secure_cookies,
            samesite="lax",
        )

    def clear_session_cookie(self, response) -> None:
        response.delete_cookie(
            SESSION_COOKIE_NAME,
            path="/",
            httponly=True,
            secure=self._settings.secure_cookies,
            samesite="lax",
        )


# ---------------------------------------------------------------------------
# Claims mappers
# ---------------------------------------------------------------------------


def _principal_to_claims(p: Principal) -> dict:
    return {
        "sub": p.identity_id,
        "name": p.username,
        "display_name": p.display_name,
        "provider": p.provider,
        "role": p.role,
        "permissions": list(p.permissions),
        "page_permissions": (
            [page_permission_to_dict(pp) for pp in p.page_permissions] if p.page_permissions is not None else None
        ),
        "mapping_id": p.mapping_id,
        "iat": p.issued_at,
        "exp": p.expires_at,
        "fp": p.fingerprint,
        "jti": p.session_id,
    }


def _claims_to_principal(claims: dict) -> Principal:
    return Principal(
        identity_id=str(claims["sub"]),
        username=str(claims.get("name", "")),
        display_name=str(claims.get("display_name", "")),
        provider=str(claims.get("provider", "")),
        role=str(claims["role"]),
        permissions=tuple(str(p) for p in claims.get("permissions") or ()),
        page_permissions=page_permissions_from_list(claims.get("page_permissions")),
        mapping_id=claims.get("mapping_id"),
        issued_at=int(claims["iat"]),
        expires_at=int(claims["exp"]),
        fingerprint=str(claims["fp"]),
        session_id=str(claims["jti"]),
    )
