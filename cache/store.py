"""
cache/store.py -- Process-wide TTL snapshot cache.

Holds one value produced by a loader callable plus the time it was fetched.
Readers get the cached value while it is younger than the TTL; the first
reader after expiry calls the loader and publishes the result.

Invariants:
  - The cached value is never mutated in place. A refresh builds a new
    _Snapshot and replaces the reference under a short lock, so a reader sees
    either the old snapshot or the new one, never a mix.
  - The lock is NOT held while the loader runs (the loader may do network or
    database I/O). Two requests may race and both refresh; the loader is
    idempotent so the extra call is harmless and the later publish wins.
  - A loader that raises or returns None does not replace a previous value and
    does not stamp a fetch time, so the next access retries.
  - invalidate() bumps a generation counter. A load that started before the
    bump still publishes its value, but already stale, so the next get()
    reloads and the write that prompted the invalidation is picked up.

Usage:
    cache = SnapshotCache(load_roles_config, ttl=60)
    config = cache.get()      # loads on first call, then serves for 60s
    cache.invalidate()        # next get() reloads
"""

import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Generic, Optional, TypeVar

T = TypeVar("T")

_DEFAULT_TTL = 60.0  # seconds


@dataclass(frozen=True)
class _Snapshot(Generic[T]):
    value: T
    fetched_at: float


class SnapshotCache(Generic[T]):
    def __init__(
        self,
        loader: Callable[[], Optional[T]],
        ttl: float = _DEFAULT_TTL,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl = ttl
        self._loader = loader
        self._clock = clock
        self._lock = threading.Lock()
        self._snapshot: Optional[_Snapshot[T]] = None
        self._generation = 0

    def get(self) -> Optional[T]:
        """Return the cached value, refreshing it first if it is stale or absent."""
        snapshot = self._snapshot
        if snapshot is not None and self._clock() - snapshot.fetched_at < self.ttl:
            return snapshot.value

        generation = self._generation
        fetched_at = self._clock()
        value = self._loader()
        if value is None:
            # Keep serving the previous value (if any); retry on next access.
            return snapshot.value if snapshot is not None else None

        with self._lock:
            if generation != self._generation:
                fetched_at = float("-inf")
            self._snapshot = _Snapshot(value=value, fetched_at=fetched_at)
        return value

    def peek(self) -> Optional[Any]:
        """Return the current value without triggering a refresh."""
        snapshot = self._snapshot
        return snapshot.value if snapshot is not None else None

    def invalidate(self) -> None:
        """Mark the cached value stale so the next get() reloads it.

        The value itself is kept: if that reload fails it keeps serving.
        """
        with self._lock:
            self._generation += 1
            snapshot = self._snapshot
            if snapshot is not None:
                self._snapshot = _Snapshot(value=snapshot.value, fetched_at=float("-inf"))
