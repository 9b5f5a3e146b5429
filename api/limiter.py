"""
api/limiter.py -- The one slowapi Limiter the whole app counts against.

api/main.py mounts it (SlowAPIMiddleware + app.state.limiter) and
api/routes/v1/auth.py decorates the password login with
@limiter.limit(LOGIN_RATE_LIMIT). Buckets are keyed by client IP and kept in
process memory, so each worker counts on its own; behind several workers the
effective limit is LOGIN_RATE_LIMIT times the worker count.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

limiter = Limiter(key_func=get_remote_address, storage_uri="memory://")
