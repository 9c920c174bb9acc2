"""
Bounded in-process cache with TTL expiry and LRU eviction, on cachetools.

- Entries older than ``ttl_seconds`` are treated as absent; lookups and
  ``sweep()`` drop expired entries and count them.
- When ``max_entries`` is reached, the least recently used entry is evicted.
- Writes to the same key are last-write-wins. Operations never await, so no
  lock is required inside one event loop.
"""
import base64
import hashlib
import json
import time
from typing import Any, Callable, Dict, Generic, Optional, TypeVar

import cachetools

from crm_ai.core.logging import get_logger
from crm_ai.core.metrics import update_cache_size

logger = get_logger(__name__)

V = TypeVar("V")


class _EvictionTrackingTTLCache(cachetools.TTLCache):
    """cachetools TTLCache that reports each LRU eviction to a callback."""

    def __init__(self, maxsize, ttl, timer, on_evict):
        super().__init__(maxsize=maxsize, ttl=ttl, timer=timer)
        self._on_evict = on_evict

    def popitem(self):
        key, value = super().popitem()
        self._on_evict(key)
        return key, value


class TTLCache(Generic[V]):
    """Named cache with metrics on top of ``cachetools.TTLCache``."""

    def __init__(
        self,
        name: str,
        ttl_seconds: float,
        max_entries: int = 1000,
        clock: Callable[[], float] = time.monotonic,
    ):
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        if max_entries <= 0:
            raise ValueError("max_entries must be positive")
        self.name = name
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._entries = _EvictionTrackingTTLCache(max_entries, ttl_seconds, clock, self._evicted)
        self.evictions = 0
        self.expirations = 0

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    def _evicted(self, key: str) -> None:
        self.evictions += 1
        logger.debug("cache_evicted", cache_type=self.name, key=key)

    def sweep(self) -> int:
        """Drop all expired entries. Returns the number removed."""
        before = len(self._entries)
        self._entries.expire()
        removed = before - len(self._entries)
        if removed:
            self.expirations += removed
            update_cache_size(self.name, len(self._entries))
        return removed

    def get(self, key: str) -> Optional[V]:
        self.sweep()
        return self._entries.get(key)

    def set(self, key: str, value: V) -> None:
        self.sweep()
        self._entries[key] = value
        update_cache_size(self.name, len(self._entries))

    def delete(self, key: str) -> bool:
        removed = self._entries.pop(key, None) is not None
        if removed:
            update_cache_size(self.name, len(self._entries))
        return removed

    def clear(self) -> int:
        self.sweep()
        count = len(self._entries)
        # MutableMapping.clear goes through popitem, which would count as evictions.
        for key in list(self._entries.keys()):
            del self._entries[key]
        update_cache_size(self.name, 0)
        return count

    def stats(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "size": len(self._entries),
            "max_entries": self.max_entries,
            "ttl_seconds": self.ttl_seconds,
            "evictions": self.evictions,
            "expirations": self.expirations,
        }


def hash_text(text: str) -> str:
    """Stable hex digest used in cache keys."""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def fingerprint(params: Dict[str, Any], length: int = 24) -> str:
    """
    URL-safe base64 of the SHA-256 of the canonical JSON of ``params``,
    truncated to ``length`` characters.
    """
    canonical = json.dumps(params, sort_keys=True, default=str, separators=(",", ":"))
    digest = hashlib.sha256(canonical.encode("utf-8")).digest()
    return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")[:length]
