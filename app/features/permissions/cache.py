"""
Short-lived cache of permission decisions.

Held on `app.state.permission_cache` and handed to the resolver through a
dependency; the resolver never reaches for a module global. Every write route
touching roles, role permissions, user roles or ABAC rules invalidates it.
"""
import json
import threading
import time
from collections import OrderedDict
from typing import Any, Callable, Dict, Optional, Tuple

from app.core import config
from app.utils import get_logger


log = get_logger(__name__)

CacheKey = Tuple[str, str, str, str]


class PermissionCache:
    """
    TTL + LRU cache keyed by (user_id, resource, action, serialized context).

    A ttl of zero or less disables the cache: `get` always misses and `put`
    stores nothing.
    """

    def __init__(
        self,
        ttl_seconds: float = 0,
        maxsize: int = 4096,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl = ttl_seconds
        self.maxsize = maxsize
        self._clock = clock
        self._lock = threading.RLock()
        self._data: OrderedDict[CacheKey, Tuple[float, bool]] = OrderedDict()

    @property
    def enabled(self) -> bool:
        return self.ttl > 0

    @staticmethod
    def make_key(user_id: str, resource: str, action: str, context: Optional[Dict[str, Any]] = None) -> CacheKey:
        serialized = json.dumps(context or {}, sort_keys=True, default=str)
        return (user_id, resource, action, serialized)

    def get(self, key: CacheKey) -> Optional[bool]:
        if not self.enabled:
            return None
        now = self._clock()
        with self._lock:
            item = self._data.get(key)
            if item is None:
                return None
            stored_at, allowed = item
            if now - stored_at > self.ttl:
                self._data.pop(key, None)
                return None
            self._data.move_to_end(key)
            return allowed

    def put(self, key: CacheKey, allowed: bool) -> None:
        if not self.enabled:
            return
        with self._lock:
            self._data[key] = (self._clock(), allowed)
            self._data.move_to_end(key)
            while len(self._data) > self.maxsize:
                self._data.popitem(last=False)

    def invalidate_user(self, user_id: str) -> None:
        """Drop every decision cached for one user (their role assignments changed)."""
        with self._lock:
            stale = [key for key in self._data if key[0] == user_id]
            for key in stale:
                del self._data[key]
        if stale:
            log.debug("Invalidated %d cached decisions for user %s", len(stale), user_id)

    def invalidate_all(self) -> None:
        """Drop everything (a role, its permissions or an ABAC rule changed)."""
        with self._lock:
            self._data.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)


def build_permission_cache() -> PermissionCache:
    """Cache configured from the environment; disabled unless a TTL is set."""
    return PermissionCache(
        ttl_seconds=config.PERMISSION_CACHE_TTL_SECONDS,
        maxsize=config.PERMISSION_CACHE_MAX_ENTRIES,
    )
