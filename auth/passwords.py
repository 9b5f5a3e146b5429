"""
auth/passwords.py -- Password hashing, verification, and complexity rules.

Security design decisions:
  Hashing: PBKDF2-HMAC-SHA256 via hashlib, 32-byte random salt, 32-byte key,
       PBKDF2_ITERATIONS rounds. The stored string is self-describing:
           $pbkdf2-sha256$<iterations>$<salt-hex>$<key-hex>
       so verification recovers every parameter from the stored value alone,
       and raising the iteration constant in a redeploy never breaks existing
       hashes (needs_rehash() flags them for upgrade on next login).

  Comparison: the recomputed key is compared with
       auth.handshake.constant_time_equals() -- length first, then a
       full-length XOR accumulation [C1].

  [LEGACY] Stored values without the $pbkdf2-sha256$ tag are plaintext
       passwords from before hashing was introduced. verify_password() falls
       back to direct comparison for them so those accounts can still log in
       once and be upgraded by authenticate_account(). Remove this branch once
       no plaintext records remain (`python main.py audit` lists them).

  Timing equalization: authenticate_account() always runs one verification,
       against _DUMMY_HASH when the username is unknown, so response time does
       not reveal whether an account exists.

Layer rule: no imports from api/ or cache/.
"""

from __future__ import annotations

import hashlib
import logging
import re
import secrets
from typing import TYPE_CHECKING

from auth.handshake import constant_time_equals

if TYPE_CHECKING:
    from auth.models import AdminAccount
    from auth.store import AccountStore

logger = logging.getLogger("precinct.auth.passwords")

PBKDF2_ITERATIONS = 600_000  # OWASP minimum for PBKDF2-SHA256; change only by redeploy
SALT_BYTES = 32
KEY_BYTES = 32
HASH_TAG = "pbkdf2-sha256"
_PREFIX = f"${HASH_TAG}$"

MIN_PASSWORD_LENGTH = 12
MAX_PASSWORD_LENGTH = 128

_SYMBOL_RE = re.compile(r"""[!@#$%^&*()_+\-=\[\]{};':"\\|,.<>/?]""")
_WEAK_PATTERNS = (
    re.compile(r"^(.)\1+$"),
    re.compile(r"^(012|123|234|345|456|567|678|789|890)+$", re.IGNORECASE),
    re.compile(
        r"^(abc|bcd|cde|def|efg|fgh|ghi|hij|ijk|jkl|klm|lmn|mno|nop|opq|pqr|qrs|rst|stu|tuv|uvw|vwx|wxy|xyz)+$",
        re.IGNORECASE,
    ),
)


# ---------------------------------------------------------------------------
# Hash / verify
# ---------------------------------------------------------------------------


def _derive(password: str, salt: bytes, iterations: int) -> bytes:
    return hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt, iterations, dklen=KEY_BYTES)


def hash_password(password: str, iterations: int = PBKDF2_ITERATIONS) -> str:
    """Return a fresh salted PBKDF2-SHA256 hash in the self-describing format."""
    salt = secrets.token_bytes(SALT_BYTES)
    key = _derive(password, salt, iterations)
    return f"{_PREFIX}{iterations}${salt.hex()}${key.hex()}"


def _parse(stored: str) -> tuple[int, bytes, str] | None:
    """Split a tagged hash into (iterations, salt, key-hex). None if malformed."""
    parts = stored.split("$")
    if len(parts) != 5 or parts[0] != "" or parts[1] != HASH_TAG:
        return None
    try:
        iterations = int(parts[2], 10)
        salt = bytes.fromhex(parts[3])
    except ValueError:
        return None
    if iterations < 1 or not salt or not parts[4]:
        return None
    return iterations, salt, parts[4].lower()


def is_legacy_plaintext(stored: str) -> bool:
    return not stored.startswith(_PREFIX)


def verify_password(password: str, stored: str) -> bool:
    """Return True if password matches the stored value.

    Tagged values are recomputed with their own iteration count and salt.
    Untagged values are legacy plaintext [LEGACY].
    """
    if is_legacy_plaintext(stored):
        logger.warning("Verifying a legacy plaintext credential -- rehash pending")
        return constant_time_equals(password, stored)

    parsed = _parse(stored)
    if parsed is None:
        return False
    iterations, salt, expected_hex = parsed
    computed_hex = _derive(password, salt, iterations).hex()
    return constant_time_equals(computed_hex, expected_hex)


def needs_rehash(stored: str) -> bool:
    """True for plaintext, malformed, or under-iterated hashes."""
    if is_legacy_plaintext(stored):
        return True
    parsed = _parse(stored)
    if parsed is None:
        return True
    return parsed[0] < PBKDF2_ITERATIONS


# ---------------------------------------------------------------------------
# Complexity
# ---------------------------------------------------------------------------


def validate_password_complexity(password: str) -> list[str]:
    """Return every violated rule (empty list means the password is acceptable)."""
    errors: list[str] = []

    if len(password) < MIN_PASSWORD_LENGTH:
        errors.append(f"Password must be at least {MIN_PASSWORD_LENGTH} characters long")
    if len(password) > MAX_PASSWORD_LENGTH:
        errors.append(f"Password must not exceed {MAX_PASSWORD_LENGTH} characters")
    if not re.search(r"[a-z]", password):
        errors.append("Password must contain at least one lowercase letter")
    if not re.search(r"[A-Z]", password):
        errors.append("Password must contain at least one uppercase letter")
    if not re.search(r"[0-9]", password):
        errors.append("Password must contain at least one number")
    if not _SYMBOL_RE.search(password):
        errors.append("Password must contain at least one special character")

    if any(p.search(password) for p in _WEAK_PATTERNS):
        errors.append("Password contains weak patterns (sequential or repeated characters)")

    return errors


# ---------------------------------------------------------------------------
# Account authentication (constant-time) [C1]
# ---------------------------------------------------------------------------

# Computed once at module load so the first login attempt is not measurably
# slower than subsequent ones.
_DUMMY_HASH: str = hash_password("precinct_timing_dummy")


def authenticate_account(store: AccountStore, username: str, password: str) -> AdminAccount | None:
    """Authenticate a local username/password login with timing equalization.

    Username lookup is case-insensitive. On success, a stored value flagged by
    needs_rehash() is replaced with a fresh hash before returning.

    Returns the AdminAccount on success, None on any failure.
    """
    account = store.get_admin(username)
    if account is None:
        # Equalize timing -- do NOT return early before deriving a key [C1]
        verify_password(password, _DUMMY_HASH)
        return None
    if not verify_password(password, account.password_hash):
        return None
    if needs_rehash(account.password_hash):
        store.update_admin_password(account.username, hash_password(password))
        logger.info("Upgraded stored password hash for %s", account.username)
    return account
