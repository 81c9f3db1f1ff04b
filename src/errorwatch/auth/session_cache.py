"""Bounded TTL cache of validated dashboard sessions.

Learn: Every protected dashboard request carries a session cookie. Asking
the identity provider about it on every request would put the provider on
the hot path, so successful validations are remembered for a short TTL.

The cache is an optimization only: a miss always falls back to upstream
validation, and an overflow evicts the oldest entry instead of failing.
One instance is created by the app factory and injected where needed.
"""

import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Optional

DEFAULT_TTL_SECONDS = 30.0
DEFAULT_MAX_SIZE = 1000


@dataclass(frozen=True)
class Principal:
    """Identity resolved for a request. Never persisted."""

    id: str
    email: Optional[str] = None
    name: Optional[str] = None


@dataclass(frozen=True)
class SessionCacheEntry:
    principal: Principal
    expires_at: float


class SessionCache:
    """Thread-safe token → principal cache with TTL and a size bound.

    Insertion order doubles as age order: ``put`` moves a refreshed token
    to the end, and eviction pops from the front.
    """

    def __init__(
        self,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        max_size: int = DEFAULT_MAX_SIZE,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_size < 1:
            raise ValueError("max_size must be at least 1")
        self.ttl_seconds = ttl_seconds
        self.max_size = max_size
        self._clock = clock
        self._entries: OrderedDict[str, SessionCacheEntry] = OrderedDict()
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def get(self, token: str) -> Optional[Principal]:
        """Return the cached principal, or None if absent or expired."""
        with self._lock:
            entry = self._entries.get(token)
            if entry is None:
                self.misses += 1
                return None
            if entry.expires_at <= self._clock():
                del self._entries[token]
                self.misses += 1
                return None
            self.hits += 1
            return entry.principal

    def put(self, token: str, principal: Principal) -> None:
        """Cache a principal for ``ttl_seconds``, evicting the oldest at capacity."""
        with self._lock:
            if token in self._entries:
                del self._entries[token]
            while len(self._entries) >= self.max_size:
                self._entries.popitem(last=False)
            self._entries[token] = SessionCacheEntry(
                principal=principal,
                expires_at=self._clock() + self.ttl_seconds,
            )

    def invalidate(self, token: str) -> None:
        """Drop a token immediately (e.g. upstream revoked the session)."""
        with self._lock:
            self._entries.pop(token, None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def stats(self) -> dict:
        with self._lock:
            return {
                "size": len(self._entries),
                "max_size": self.max_size,
                "ttl_seconds": self.ttl_seconds,
                "hits": self.hits,
                "misses": self.misses,
            }
