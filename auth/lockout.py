"""
auth/lockout.py -- Per-account lockout for the password login.

slowapi (api/limiter.py) already caps requests per client IP. That alone never
stops an attacker who rotates addresses against one account, so failed
password attempts are also counted per username and IP pair.

Policy (defaults, see core/config.py):
  LOGIN_MAX_ATTEMPTS failures inside LOGIN_WINDOW_SECONDS lock the pair for
  LOGIN_LOCKOUT_SECONDS. Only failures are recorded; a successful login
  clears the record. While locked, even the right password is refused.

Storage layout:
  login-attempts/<ip>:<username> -- {"attempts": [epoch seconds, ...],
                                     "locked_until": epoch seconds | null}
  The username is lowercased with everything outside [a-z0-9] dropped, so
  "Chief", "chief" and " chief " share one record.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
import math
import re
import time
from typing import Callable

from core.config import Settings, get_settings
from docstore.store import DocumentStore

logger = logging.getLogger("precinct.auth.lockout")

LOCKOUT_NAMESPACE = "login-attempts"

_USERNAME_NOISE = re.compile(r"[^a-z0-9]")


def lockout_key(username: str, client_ip: str | None) -> str:
    return f"{client_ip or 'unknown'}:{_USERNAME_NOISE.sub('', username.lower())}"


class LoginLockout:
    """Failed-attempt counter keyed on username and client IP.

    Usage:
        lockout = LoginLockout(docstore)
        retry_after = lockout.retry_after("chief", "203.0.113.7")   # None unless locked
        lockout.record_failure("chief", "203.0.113.7")
        lockout.clear("chief", "203.0.113.7")
    """

    def __init__(
        self,
        docstore: DocumentStore,
        settings: Settings | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._docs = docstore
        settings = settings or get_settings()
        self.max_attempts = settings.login_max_attempts
        self.window_seconds = settings.login_window_seconds
        self.lockout_seconds = settings.login_lockout_seconds
        self._clock = clock

    def _recent(self, record: dict, now: float) -> list[float]:
        window_start = now - self.window_seconds
        return [float(t) for t in record.get("attempts") or () if float(t) > window_start]

    def retry_after(self, username: str, client_ip: str | None) -> int | None:
        """Seconds until the pair may try again, or None when it is not locked."""
        record = self._docs.get_json(LOCKOUT_NAMESPACE, lockout_key(username, client_ip))
        if not isinstance(record, dict):
            return None
        now = self._clock()
        locked_until = record.get("locked_until")
        if locked_until is not None and float(locked_until) > now:
            return max(1, math.ceil(float(locked_until) - now))
        return None

    def record_failure(self, username: str, client_ip: str | None) -> bool:
        """Count one failed attempt. Returns True when this failure starts a lockout."""
        key = lockout_key(username, client_ip)
        record = self._docs.get_json(LOCKOUT_NAMESPACE, key)
        if not isinstance(record, dict):
            record = {}
        now = self._clock()
        attempts = self._recent(record, now)
        attempts.append(now)

        locked = len(attempts) >= self.max_attempts
        self._docs.set_json(
            LOCKOUT_NAMESPACE,
            key,
            {"attempts": attempts, "locked_until": now + self.lockout_seconds if locked else None},
        )
        if locked:
            logger.warning(
                "Locked out %s for %ds after %d failed logins", key, self.lockout_seconds, len(attempts)
            )
        return locked

    def clear(self, username: str, client_ip: str | None) -> None:
        self._docs.delete(LOCKOUT_NAMESPACE, lockout_key(username, client_ip))
