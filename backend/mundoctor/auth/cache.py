"""
Authentication Cache
Bounded, time-expiring map from credential fingerprint to verified principal
"""

import hashlib
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple

logger = logging.getLogger(__name__)

CACHE_KEY_PREFIX = "auth:"


@dataclass
class CacheEntry:
    value: Any
    inserted_at: float


class CacheBackend(Protocol):
    """Storage behind the auth cache; swap for a shared store to coordinate instances"""

    def get(self, key: str) -> Optional[CacheEntry]: ...

    def set(self, key: str, entry: CacheEntry) -> None: ...

    def delete(self, key: str) -> None: ...

    def items(self) -> List[Tuple[str, CacheEntry]]: ...

    def clear(self) -> None: ...

    def __len__(self) -> int: ...


class InMemoryCacheBackend:
    """Process-local backend; entries are kept in insertion order"""

    def __init__(self) -> None:
        self._data: Dict[str, CacheEntry] = {}

    def get(self, key: str) -> Optional[CacheEntry]:
        return self._data.get(key)

    def set(self, key: str, entry: CacheEntry) -> None:
        self._data.pop(key, None)
        self._data[key] = entry

    def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def items(self) -> List[Tuple[str, CacheEntry]]:
        return list(self._data.items())

    def clear(self) -> None:
        self._data.clear()

    def __len__(self) -> int:
        return len(self._data)


class AuthCache:
    """
    TTL cache for verified principals.

    Entries are expired lazily on read and by ``sweep``. When an insert pushes
    the cache past ``max_entries`` the oldest ``evict_fraction`` of the ceiling
    is dropped in one pass.
    """

    def __init__(
        self,
        ttl_seconds: float = 300.0,
        max_entries: int = 1000,
        evict_fraction: float = 0.2,
        key_length: int = 50,
        backend: Optional[CacheBackend] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self.evict_fraction = evict_fraction
        self.key_length = key_length
        self.backend: CacheBackend = backend if backend is not None else InMemoryCacheBackend()
        self.clock = clock

    def key_for(self, credential: str) -> str:
        """Derive a bounded cache key from the raw Authorization value"""
        digest = hashlib.sha256(credential.encode("utf-8")).hexdigest()
        return CACHE_KEY_PREFIX + digest[: self.key_length]

    def get(self, key: str) -> Optional[Tuple[Any, float]]:
        """Return ``(value, age_seconds)`` for a live entry, or None"""
        entry = self.backend.get(key)
        if entry is None:
            return None

        age = self.clock() - entry.inserted_at
        if age >= self.ttl_seconds:
            self.backend.delete(key)
            return None
        return entry.value, age

    def put(self, key: str, value: Any) -> None:
        self.backend.set(key, CacheEntry(value=value, inserted_at=self.clock()))
        if len(self.backend) > self.max_entries:
            self._evict_oldest(max(1, int(self.max_entries * self.evict_fraction)))

    def invalidate(self, key: str) -> None:
        self.backend.delete(key)

    def clear(self) -> None:
        self.backend.clear()

    def __len__(self) -> int:
        return len(self.backend)

    def sweep(self) -> int:
        """Remove expired entries and enforce the size ceiling. Returns entries removed."""
        now = self.clock()
        removed = 0
        for key, entry in self.backend.items():
            if now - entry.inserted_at >= self.ttl_seconds:
                self.backend.delete(key)
                removed += 1

        overflow = len(self.backend) - self.max_entries
        if overflow > 0:
            removed += self._evict_oldest(overflow)

        if removed:
            logger.debug(f"Auth cache sweep removed {removed} entries, {len(self.backend)} remaining")
        return removed

    def _evict_oldest(self, count: int) -> int:
        oldest = sorted(self.backend.items(), key=lambda item: item[1].inserted_at)[:count]
        for key, _ in oldest:
            self.backend.delete(key)
        logger.info(f"Auth cache evicted {len(oldest)} oldest entries")
        return len(oldest)
