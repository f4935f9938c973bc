"""
Key/value caches with per-entry expiry.

Entries are purged lazily: an expired entry is removed when it is next read.
Two backends are provided, an in-process dictionary and a wrapper around a
Django cache alias so deployments can share entries across processes.
"""
import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)


@dataclass
class CacheEntry:
    value: Any
    expires_at: float
    created_at: float


class TTLCache:
    """Interface shared by the cache backends."""

    def get_entry(self, key: str) -> Optional[CacheEntry]:
        raise NotImplementedError

    def set(self, key: str, value: Any, ttl_seconds: Optional[float] = None) -> None:
        raise NotImplementedError

    def delete(self, key: str) -> None:
        raise NotImplementedError

    def clear(self) -> None:
        raise NotImplementedError

    def get(self, key: str, default: Any = None) -> Any:
        entry = self.get_entry(key)
        return default if entry is None else entry.value

    def values(self) -> List[Any]:
        """Live values, where the backend can enumerate them."""
        return []

    def stats(self) -> Dict[str, Any]:
        return {}

    def __contains__(self, key: str) -> bool:
        return self.get_entry(key) is not None


class InMemoryTTLCache(TTLCache):
    """
    Thread-safe in-process TTL cache.

    Args:
        default_ttl: Lifetime in seconds for entries stored without an explicit ttl.
        clock: Callable returning the current time in seconds; injectable for tests.
    """

    def __init__(self, default_ttl: float, clock: Callable[[], float] = time.time):
        self.default_ttl = default_ttl
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def get_entry(self, key: str) -> Optional[CacheEntry]:
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self.misses += 1
                return None
            if entry.expires_at <= now:
                del self._entries[key]
                self.misses += 1
                return None
            self.hits += 1
            return entry

    def set(self, key: str, value: Any, ttl_seconds: Optional[float] = None) -> None:
        now = self._clock()
        ttl = self.default_ttl if ttl_seconds is None else ttl_seconds
        with self._lock:
            self._entries[key] = CacheEntry(value=value, expires_at=now + ttl, created_at=now)

    def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self.hits = 0
            self.misses = 0

    def purge_expired(self) -> int:
        """Drop every expired entry and return how many were removed."""
        now = self._clock()
        with self._lock:
            expired = [k for k, e in self._entries.items() if e.expires_at <= now]
            for key in expired:
                del self._entries[key]
        if expired:
            logger.debug(f"Purged {len(expired)} expired cache entries")
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def values(self) -> List[Any]:
        now = self._clock()
        with self._lock:
            return [e.value for e in self._entries.values() if e.expires_at > now]

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            size = len(self._entries)
            oldest = min((e.created_at for e in self._entries.values()), default=None)
        total = self.hits + self.misses
        return {
            'size': size,
            'hits': self.hits,
            'misses': self.misses,
            'hit_rate': (self.hits / total) if total else 0.0,
            'oldest_entry': oldest,
        }


class DjangoTTLCache(TTLCache):
    """
    TTL cache backed by a Django cache alias.

    The expiry timestamp is stored alongside the value so the lazy purge
    semantics hold even for backends that keep entries past their timeout.
    """

    def __init__(self, alias: str = 'default', default_ttl: float = 3600, key_prefix: str = 'delivery_routing',
                 clock: Callable[[], float] = time.time):
        from django.core.cache import caches
        self._cache = caches[alias]
        self.default_ttl = default_ttl
        self.key_prefix = key_prefix
        self._clock = clock

    def _key(self, key: str) -> str:
        return f"{self.key_prefix}:{key}"

    def get_entry(self, key: str) -> Optional[CacheEntry]:
        stored = self._cache.get(self._key(key))
        if stored is None:
            return None
        if stored.expires_at <= self._clock():
            self._cache.delete(self._key(key))
            return None
        return stored

    def set(self, key: str, value: Any, ttl_seconds: Optional[float] = None) -> None:
        now = self._clock()
        ttl = self.default_ttl if ttl_seconds is None else ttl_seconds
        entry = CacheEntry(value=value, expires_at=now + ttl, created_at=now)
        self._cache.set(self._key(key), entry, timeout=int(ttl) + 1)

    def delete(self, key: str) -> None:
        self._cache.delete(self._key(key))

    def clear(self) -> None:
        logger.warning("Clearing the Django cache alias used by delivery routing")
        self._cache.clear()
