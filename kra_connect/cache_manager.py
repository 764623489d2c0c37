"""
In-Process LRU Cache Manager
============================

Bounded response cache for verification results with:
- Per-entry TTL with lazy expiry (expired entries are dropped on access)
- Least-recently-used eviction, at most one entry per insert
- Bulk invalidation of key families (e.g. every 'verify_pin' entry)
- Deterministic request fingerprints shared by single and batch lookups

Every mutating method is one critical section under a non-reentrant lock.
No locked method calls another locked method.
"""

import hashlib
import re
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Pattern, Union

import structlog
from prometheus_client import Counter

logger = structlog.get_logger(__name__)

# Prometheus metrics
cache_hits = Counter(
    'kra_connect_cache_hits_total',
    'Total cache hits',
    ['cache']
)
cache_misses = Counter(
    'kra_connect_cache_misses_total',
    'Total cache misses (absent or expired)',
    ['cache']
)
cache_evictions = Counter(
    'kra_connect_cache_evictions_total',
    'Entries evicted to respect max_size',
    ['cache']
)

DEFAULT_MAX_SIZE = 100
DEFAULT_TTL_SECONDS = 3600.0


def request_fingerprint(operation: str, *identifiers: str) -> str:
    """
    Build the cache key for one logical request.

    Identifiers are trimmed and uppercased before hashing so that
    ' p051234567a' and 'P051234567A' share an entry. The operation name is
    kept in clear as a prefix so key families can be invalidated together.

    Args:
        operation: Operation name (e.g. 'verify_pin')
        *identifiers: Identifier values for the request

    Returns:
        Key of the form '<operation>:<hash>'
    """
    normalized = '|'.join(str(identifier).strip().upper() for identifier in identifiers)
    digest = hashlib.sha256(f"{operation}|{normalized}".encode('utf-8')).hexdigest()[:32]
    return f"{operation}:{digest}"


@dataclass
class CacheEntry:
    """Cached value with its expiry and last access time."""
    value: Any
    expires_at: float
    last_accessed: float

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at


class CacheManager:
    """
    LRU cache with TTL, owned by one client instance.

    Usage:
        cache = CacheManager(max_size=100, default_ttl=3600)
        cache.set(key, result, ttl=1800)
        cached = cache.get(key)  # None on miss or expiry
    """

    def __init__(
        self,
        max_size: int = DEFAULT_MAX_SIZE,
        default_ttl: float = DEFAULT_TTL_SECONDS,
        name: str = 'default',
        clock: Callable[[], float] = time.monotonic
    ):
        """
        Initialize cache manager.

        Args:
            max_size: Maximum number of entries kept
            default_ttl: TTL in seconds used when set() receives none
            name: Label for metrics and logs
            clock: Monotonic time source (injectable for tests)
        """
        if max_size < 0:
            raise ValueError("max_size cannot be negative")
        if default_ttl <= 0:
            raise ValueError("default_ttl must be greater than 0")

        self.max_size = max_size
        self.default_ttl = default_ttl
        self.name = name
        self._clock = clock
        self._entries: 'OrderedDict[str, CacheEntry]' = OrderedDict()
        self._lock = threading.Lock()

        logger.debug("Cache initialized", cache=name, max_size=max_size, default_ttl=default_ttl)

    def get(self, key: str) -> Optional[Any]:
        """
        Return the cached value, or None if absent or expired.

        An expired entry is removed on this call. A hit moves the entry to
        the most-recently-used position.
        """
        with self._lock:
            now = self._clock()
            entry = self._entries.get(key)

            if entry is None:
                cache_misses.labels(cache=self.name).inc()
                return None

            if entry.is_expired(now):
                del self._entries[key]
                cache_misses.labels(cache=self.name).inc()
                logger.debug("Cache entry expired", cache=self.name, key=key)
                return None

            entry.last_accessed = now
            self._entries.move_to_end(key)
            cache_hits.labels(cache=self.name).inc()
            return entry.value

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        """
        Store a value, replacing any previous entry for the key.

        Args:
            key: Cache key (see request_fingerprint)
            value: Value to cache
            ttl: Time-to-live in seconds (None = default_ttl)
        """
        effective_ttl = self.default_ttl if ttl is None else ttl
        if effective_ttl <= 0:
            raise ValueError("ttl must be greater than 0")

        evicted = None
        with self._lock:
            now = self._clock()
            self._entries[key] = CacheEntry(value=value, expires_at=now + effective_ttl, last_accessed=now)
            self._entries.move_to_end(key)

            if len(self._entries) > self.max_size:
                # Head of the chain is the least recently used
                evicted, _ = self._entries.popitem(last=False)

        if evicted is not None:
            cache_evictions.labels(cache=self.name).inc()
            logger.debug("Cache evicted LRU entry", cache=self.name, key=evicted)

    def has(self, key: str) -> bool:
        """True if the key is present and not expired (does not touch recency)."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return False
            if entry.is_expired(self._clock()):
                del self._entries[key]
                return False
            return True

    def remove(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def clear(self) -> None:
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
        logger.info("Cache cleared", cache=self.name, removed=count)

    def cleanup(self) -> int:
        """Remove every expired entry. Returns the number removed."""
        with self._lock:
            now = self._clock()
            expired = [key for key, entry in self._entries.items() if entry.is_expired(now)]
            for key in expired:
                del self._entries[key]
        return len(expired)

    def remove_pattern(self, pattern: Union[Callable[[str], bool], str, Pattern]) -> int:
        """
        Remove every key matching a predicate or regular expression.

        Args:
            pattern: Callable taking a key, or a regex (string or compiled)
                searched against each key, e.g. r'^verify_pin:'

        Returns:
            Number of entries removed
        """
        if callable(pattern):
            predicate = pattern
        else:
            compiled = re.compile(pattern) if isinstance(pattern, str) else pattern
            predicate = lambda key: compiled.search(key) is not None

        with self._lock:
            matching = [key for key in self._entries if predicate(key)]
            for key in matching:
                del self._entries[key]

        if matching:
            logger.info("Cache pattern invalidated", cache=self.name, removed=len(matching))
        return len(matching)

    def keys(self) -> List[str]:
        """All keys, least recently used first (including expired ones)."""
        with self._lock:
            return list(self._entries)

    def valid_keys(self) -> List[str]:
        with self._lock:
            now = self._clock()
            return [key for key, entry in self._entries.items() if not entry.is_expired(now)]

    def size(self) -> int:
        with self._lock:
            return len(self._entries)

    def __len__(self) -> int:
        return self.size()

    @property
    def is_empty(self) -> bool:
        return self.size() == 0

    @property
    def is_full(self) -> bool:
        return self.size() >= self.max_size

    def get_stats(self) -> Dict[str, Any]:
        """
        Get cache statistics for monitoring.

        Counting expired entries does not remove them.
        """
        with self._lock:
            now = self._clock()
            size = len(self._entries)
            expired = sum(1 for entry in self._entries.values() if entry.is_expired(now))

        return {
            'size': size,
            'max_size': self.max_size,
            'expired_count': expired,
            'valid_count': size - expired,
            'utilization': round(size / self.max_size * 100, 2) if self.max_size else 0.0,
        }
