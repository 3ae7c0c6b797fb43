"""
TTL + LRU Result Cache

Capacity-bounded cache for expensive idempotent lookups. Every entry has an
absolute expiry fixed at insertion; `get` treats an expired entry as absent
and removes it. When full, the least-recently-used entry is evicted before
insertion. A background loop sweeps expired entries for cold keys.

Two instances back the pipeline: one for full answers (short TTL, small)
and one for retrieved documents (long TTL, larger). Query helpers namespace
keys by cache name so the two never share keys.
"""

import asyncio
import json
import logging
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Dict, Generic, Optional, TypeVar

from .keys import query_key

logger = logging.getLogger("copilot.cache")

V = TypeVar("V")


@dataclass
class CacheConfig:
    max_size: int = 1000
    default_ttl_s: float = 3600
    cleanup_interval_s: float = 300
    max_memory_bytes: int = 100 * 1024 * 1024


@dataclass
class CacheEntry(Generic[V]):
    key: str
    value: V
    created_at: float
    expires_at: float
    hits: int = 0

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at


class ResultCache(Generic[V]):
    """
    LRU ordering lives in an OrderedDict: the front is least recently used.
    All table mutations happen under a lock.
    """

    def __init__(
        self,
        config: Optional[CacheConfig] = None,
        name: str = "cache",
        clock: Callable[[], float] = time.time
    ):
        self.config = config or CacheConfig()
        self.name = name
        self._clock = clock
        self._entries: "OrderedDict[str, CacheEntry[V]]" = OrderedDict()
        self._lock = threading.Lock()
        self._cleanup_task: Optional[asyncio.Task] = None
        self._stats = {"hits": 0, "misses": 0, "evictions": 0, "expirations": 0}

        logger.info(
            f"ResultCache '{name}' initialized (max_size={self.config.max_size}, "
            f"ttl={self.config.default_ttl_s}s)"
        )

    # ------------------------------------------------------------------
    # Raw key API
    # ------------------------------------------------------------------

    def set(self, key: str, value: V, ttl_s: Optional[float] = None) -> None:
        ttl = self.config.default_ttl_s if ttl_s is None else ttl_s
        now = self._clock()
        with self._lock:
            if key in self._entries:
                del self._entries[key]
            else:
                while len(self._entries) >= self.config.max_size:
                    evicted, _ = self._entries.popitem(last=False)
                    self._stats["evictions"] += 1
                    logger.debug(f"[{self.name}] evicted LRU entry {evicted[:24]}")
            self._entries[key] = CacheEntry(key=key, value=value, created_at=now, expires_at=now + ttl)

    def get(self, key: str) -> Optional[V]:
        """Value for key, or None when missing or expired"""
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._stats["misses"] += 1
                return None
            if entry.is_expired(now):
                del self._entries[key]
                self._stats["expirations"] += 1
                self._stats["misses"] += 1
                return None
            entry.hits += 1
            self._entries.move_to_end(key)
            self._stats["hits"] += 1
            return entry.value

    def has(self, key: str) -> bool:
        """Presence check; does not touch recency or hit counts"""
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return False
            if entry.is_expired(now):
                del self._entries[key]
                self._stats["expirations"] += 1
                return False
            return True

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            for name in self._stats:
                self._stats[name] = 0
        logger.info(f"[{self.name}] cleared")

    def cleanup(self) -> int:
        """Remove every expired entry. Returns the count removed."""
        now = self._clock()
        with self._lock:
            expired = [key for key, entry in self._entries.items() if entry.is_expired(now)]
            for key in expired:
                del self._entries[key]
            self._stats["expirations"] += len(expired)

        if expired:
            logger.debug(f"[{self.name}] cleaned up {len(expired)} expired entries")
        return len(expired)

    def __len__(self) -> int:
        return len(self._entries)

    # ------------------------------------------------------------------
    # Query-tuple helpers
    # ------------------------------------------------------------------

    def query_key(self, query: str, mode: str, options: Optional[Dict[str, Any]] = None) -> str:
        return query_key(query, mode, options, prefix=self.name)

    def get_query(self, query: str, mode: str, options: Optional[Dict[str, Any]] = None) -> Optional[V]:
        return self.get(self.query_key(query, mode, options))

    def set_query(
        self,
        query: str,
        mode: str,
        value: V,
        options: Optional[Dict[str, Any]] = None,
        ttl_s: Optional[float] = None
    ) -> None:
        self.set(self.query_key(query, mode, options), value, ttl_s)

    def has_query(self, query: str, mode: str, options: Optional[Dict[str, Any]] = None) -> bool:
        return self.has(self.query_key(query, mode, options))

    def delete_query(self, query: str, mode: str, options: Optional[Dict[str, Any]] = None) -> bool:
        return self.delete(self.query_key(query, mode, options))

    # ------------------------------------------------------------------
    # Background sweep
    # ------------------------------------------------------------------

    async def start_cleanup_loop(self):
        """Start background cleanup task"""
        if self._cleanup_task is not None:
            return

        async def cleanup_loop():
            while True:
                try:
                    await asyncio.sleep(self.config.cleanup_interval_s)
                    self.cleanup()
                except asyncio.CancelledError:
                    break
                except Exception as e:
                    logger.error(f"Error in cache cleanup loop: {e}")

        self._cleanup_task = asyncio.create_task(cleanup_loop())
        logger.info(f"Started cleanup loop for cache '{self.name}'")

    async def stop_cleanup_loop(self):
        """Stop background cleanup task"""
        if self._cleanup_task is not None:
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass
            self._cleanup_task = None
            logger.info(f"Stopped cleanup loop for cache '{self.name}'")

    # ------------------------------------------------------------------
    # Stats
    # ------------------------------------------------------------------

    def get_stats(self) -> Dict[str, Any]:
        now = self._clock()
        with self._lock:
            entries = list(self._entries.values())
            counters = dict(self._stats)

        lookups = counters["hits"] + counters["misses"]
        ages = [(now - e.created_at) * 1000 for e in entries]
        return {
            "name": self.name,
            "size": len(entries),
            "max_size": self.config.max_size,
            "total_hits": sum(e.hits for e in entries),
            **counters,
            "hit_rate": round(counters["hits"] / lookups, 3) if lookups else 0.0,
            "average_age_ms": round(sum(ages) / len(ages), 1) if ages else 0.0,
            "memory_usage_bytes": sum(_estimate_size(e) for e in entries),
            "max_memory_bytes": self.config.max_memory_bytes,
            "default_ttl_s": self.config.default_ttl_s,
        }


def _estimate_size(entry: CacheEntry) -> int:
    """Rough footprint: UTF-16 width of the key and the JSON-rendered value"""
    rendered = json.dumps(entry.value, default=_render)
    return (len(entry.key) + len(rendered)) * 2


def _render(value: Any) -> Any:
    if hasattr(value, "model_dump"):
        return value.model_dump()
    return str(value)
