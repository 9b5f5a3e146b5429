"""
auth/handshake.py -- CSRF state, PKCE pairs, and return-path validation.

Everything here is a pure function over CSPRNG output and the clock. The only
state is what the caller persists in the short-lived handshake cookies, which
are set at login initiation and cleared unconditionally at the callback.

Security notes:
  [S1] State format is <64 hex chars>.<base36 issue time in ms>. The state is
       compared with constant_time_equals() BEFORE the timestamp is parsed, so
       a forged state never reaches the parser and a mismatch reveals nothing
       about where the strings diverge.

  [S2] A state older than STATE_MAX_AGE_MS is rejected even when it matches
       the cookie exactly. This bounds the replay window of a leaked callback
       URL.

  [S3] PKCE verifier: 64 random bytes, URL-safe base64 without padding
       (86 chars, inside RFC 7636's 43-128 range). Challenge: S256.

  [C2] safe_return_path() accepts only server-local paths. "//host" and "/.."
       style values fall back to the default landing path.

Layer rule: no imports from api/, cache/, or docstore/.
"""

from __future__ import annotations

import base64
import hashlib
import secrets
import string
import time
from urllib.parse import quote, unquote

from auth.models import PKCEPair, StateValidation
from core.config import get_settings

STATE_MAX_AGE_MS = 10 * 60 * 1000
HANDSHAKE_COOKIE_MAX_AGE = 600  # seconds

_BASE36_DIGITS = string.digits + string.ascii_lowercase


# ---------------------------------------------------------------------------
# Constant-time comparison (shared primitive)
# ---------------------------------------------------------------------------


def constant_time_equals(a: str, b: str) -> bool:
    """Compare two secrets without short-circuiting on the first differing byte.

    Lengths are compared first; unequal lengths fail immediately. Equal-length
    inputs are XOR-accumulated over every byte so the loop always runs to the
    end. Used for OAuth state, password-derived keys, and any other secret
    comparison in the codebase.
    """
    left = a.encode("utf-8")
    right = b.encode("utf-8")
    if len(left) != len(right):
        return False
    result = 0
    for x, y in zip(left, right):
        result |= x ^ y
    return result == 0


# ---------------------------------------------------------------------------
# OAuth state [S1][S2]
# ---------------------------------------------------------------------------


def _now_ms() -> int:
    return int(time.time() * 1000)


def _to_base36(value: int) -> str:
    if value == 0:
        return "0"
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36_DIGITS[rem])
    return "".join(reversed(digits))


def generate_state(now_ms: int | None = None) -> str:
    """Return a fresh state token: 32 random bytes as hex, a dot, base36 issue time."""
    issued = _now_ms() if now_ms is None else now_ms
    return f"{secrets.token_hex(32)}.{_to_base36(issued)}"


def validate_state(
    stored: str | None,
    received: str | None,
    now_ms: int | None = None,
    max_age_ms: int = STATE_MAX_AGE_MS,
) -> StateValidation:
    """Check the callback state against the cookie copy.

    Fails closed on any missing value. The timestamp is only parsed after the
    constant-time compare succeeds [S1].
    """
    if not stored or not received:
        return StateValidation(valid=False, reason="missing")

    if not constant_time_equals(stored, received):
        return StateValidation(valid=False, reason="mismatch")

    _, sep, encoded_ts = received.rpartition(".")
    if not sep or not encoded_ts:
        return StateValidation(valid=False, reason="malformed")
    try:
        issued = int(encoded_ts, 36)
    except ValueError:
        return StateValidation(valid=False, reason="malformed")

    now = _now_ms() if now_ms is None else now_ms
    if now - issued > max_age_ms:
        return StateValidation(valid=False, reason="expired")
    return StateValidation(valid=True)


# ---------------------------------------------------------------------------
# PKCE [S3]
# ---------------------------------------------------------------------------


def _b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def generate_code_verifier() -> str:
    return _b64url(secrets.token_bytes(64))


def generate_code_challenge(verifier: str) -> str:
    return _b64url(hashlib.sha256(verifier.encode("ascii")).digest())


def generate_pkce_pair() -> PKCEPair:
    verifier = generate_code_verifier()
    return PKCEPair(verifier=verifier, challenge=generate_code_challenge(verifier))


# ---------------------------------------------------------------------------
# Return path [C2]
# ---------------------------------------------------------------------------


def is_valid_return_path(path: str | None) -> bool:
    if not path or not path.startswith("/"):
        return False
    return "//" not in path and ".." not in path


def safe_return_path(path: str | None, default: str | None = None) -> str:
    """Return path if it is a safe server-local path, otherwise the default landing path."""
    fallback = default if default is not None else get_settings().default_return_path
    return path if is_valid_return_path(path) else fallback


# ---------------------------------------------------------------------------
# Handshake cookies
# ---------------------------------------------------------------------------


def state_cookie_name(provider: str) -> str:
    return f"{provider}_oauth_state"


def pkce_cookie_name(provider: str) -> str:
    return f"{provider}_oauth_pkce"


def return_to_cookie_name(provider: str) -> str:
    return f"{provider}_oauth_return_to"


def _set_cookie(response, name: str, value: str, max_age: int) -> None:
    response.set_cookie(
        name,
        value=value,
        max_age=max_age,
        path="/",
        httponly=True,
        secure=get_settings().secure_cookies,
        samesite="lax",
    )


def set_handshake_cookies(response, provider: str, state: str, verifier: str, return_to: str | None) -> None:
    """Persist state, PKCE verifier and (validated) return path for the callback."""
    _set_cookie(response, state_cookie_name(provider), state, HANDSHAKE_COOKIE_MAX_AGE)
    _set_cookie(response, pkce_cookie_name(provider), verifier, HANDSHAKE_COOKIE_MAX_AGE)
    if is_valid_return_path(return_to):
        _set_cookie(response, return_to_cookie_name(provider), quote(return_to, safe=""), HANDSHAKE_COOKIE_MAX_AGE)


def clear_handshake_cookies(response, provider: str) -> None:
    """Expire all three handshake cookies. Called on every callback outcome."""
    for name in (state_cookie_name(provider), pkce_cookie_name(provider), return_to_cookie_name(provider)):
        _set_cookie(response, name, "", 0)


def read_return_path(cookies: dict[str, str], provider: str) -> str:
    """Decode and re-validate the return-path cookie; default landing path otherwise."""
    raw = cookies.get(return_to_cookie_name(provider))
    return safe_return_path(unquote(raw) if raw else None)
