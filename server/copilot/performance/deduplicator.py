"""
In-Flight Request Deduplication

Collapses concurrent calls that share a key into one physical operation.
Every caller sharing a key receives the same result or the same error.

The shared operation runs as its own task and callers await it through
asyncio.shield, so a caller that gives up (timeout, cancellation) never
cancels the operation for the others. If it eventually succeeds, whatever
it wrote to caches stays there for later callers.

Usage:
    dedup = RequestDeduplicator()
    results = await dedup.deduplicate_search(query, "balanced", lambda: provider.search(query, 5))
"""

import asyncio
import logging
import threading
import time
from dataclasses import dataclass
from functools import partial
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar

from .keys import hash_payload, http_request_key, normalize_query, query_key

logger = logging.getLogger("copilot.dedup")

T = TypeVar("T")


@dataclass
class DeduplicatorConfig:
    max_pending_age_s: float = 30.0
    cleanup_interval_s: float = 10.0
    enabled: bool = True


@dataclass
class PendingOperation:
    """One shared in-flight operation"""
    key: str
    task: asyncio.Future
    started_at: float
    waiters: int = 1

    def age_s(self, now: float) -> float:
        return now - self.started_at


class RequestDeduplicator:
    """
    Process-wide table of in-flight operations keyed by a deterministic hash.

    Table mutations happen under a lock and without an await between the
    lookup and the insert, so two callers can never both start an operation
    for the same key.
    """

    def __init__(
        self,
        config: Optional[DeduplicatorConfig] = None,
        clock: Callable[[], float] = time.time
    ):
        self.config = config or DeduplicatorConfig()
        self._clock = clock
        self._pending: Dict[str, PendingOperation] = {}
        self._lock = threading.Lock()
        self._total_saved = 0
        self._started = 0
        self._swept = 0
        self._cleanup_task: Optional[asyncio.Task] = None

        logger.info(
            f"RequestDeduplicator initialized (enabled={self.config.enabled}, "
            f"max_age={self.config.max_pending_age_s}s)"
        )

    async def deduplicate(self, key: str, operation: Callable[[], Awaitable[T]]) -> T:
        """Run operation, or join the in-flight one already registered under key."""
        if not self.config.enabled:
            return await operation()

        now = self._clock()
        with self._lock:
            pending = self._pending.get(key)
            if (
                pending is not None
                and not pending.task.done()
                and pending.age_s(now) < self.config.max_pending_age_s
            ):
                pending.waiters += 1
                self._total_saved += 1
                task = pending.task
                joined = True
            else:
                task = asyncio.ensure_future(operation())
                self._pending[key] = PendingOperation(key=key, task=task, started_at=now)
                self._started += 1
                task.add_done_callback(partial(self._settle, key))
                joined = False

        if joined:
            logger.debug(f"Joined in-flight operation {key[:24]}")
        return await asyncio.shield(task)

    def _settle(self, key: str, task: asyncio.Future) -> None:
        with self._lock:
            pending = self._pending.get(key)
            if pending is not None and pending.task is task:
                del self._pending[key]
        if not task.cancelled():
            task.exception()  # every waiter may have given up already

    # ------------------------------------------------------------------
    # Key helpers
    # ------------------------------------------------------------------

    async def deduplicate_http_request(
        self,
        url: str,
        operation: Callable[[], Awaitable[T]],
        method: str = "GET",
        body: Any = None,
        headers: Optional[Dict[str, str]] = None
    ) -> T:
        return await self.deduplicate(http_request_key(url, method, body, headers), operation)

    async def deduplicate_search(
        self,
        query: str,
        mode: str,
        operation: Callable[[], Awaitable[T]],
        options: Optional[Dict[str, Any]] = None
    ) -> T:
        return await self.deduplicate(query_key(query, mode, options, prefix="search"), operation)

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def sweep(self) -> int:
        """Drop registrations older than max_pending_age_s. Returns the count removed."""
        now = self._clock()
        with self._lock:
            stale = [
                key for key, pending in self._pending.items()
                if pending.age_s(now) >= self.config.max_pending_age_s
            ]
            for key in stale:
                del self._pending[key]
            self._swept += len(stale)

        if stale:
            logger.warning(f"Swept {len(stale)} stale pending operations")
        return len(stale)

    async def start_cleanup_loop(self):
        """Start background sweep task"""
        if self._cleanup_task is not None:
            return

        async def cleanup_loop():
            while True:
                try:
                    await asyncio.sleep(self.config.cleanup_interval_s)
                    self.sweep()
                except asyncio.CancelledError:
                    break
                except Exception as e:
                    logger.error(f"Error in dedup sweep loop: {e}")

        self._cleanup_task = asyncio.create_task(cleanup_loop())
        logger.info("Started dedup sweep loop")

    async def stop_cleanup_loop(self):
        """Stop background sweep task"""
        if self._cleanup_task is not None:
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass
            self._cleanup_task = None
            logger.info("Stopped dedup sweep loop")

    async def stop(self):
        """Stop the sweep and forget every registration"""
        await self.stop_cleanup_loop()
        self.clear()

    def clear(self) -> None:
        """Forget registrations and counters. In-flight operations keep running."""
        with self._lock:
            self._pending.clear()
            self._total_saved = 0
            self._started = 0
            self._swept = 0

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def get_stats(self) -> Dict[str, Any]:
        now = self._clock()
        with self._lock:
            pending: List[PendingOperation] = list(self._pending.values())
            total_saved = self._total_saved
            started = self._started
            swept = self._swept

        ages = [p.age_s(now) * 1000 for p in pending]
        return {
            "enabled": self.config.enabled,
            "pending_count": len(pending),
            "requests_saved": sum(p.waiters - 1 for p in pending),
            "total_requests_saved": total_saved,
            "operations_started": started,
            "stale_swept": swept,
            "average_age_ms": round(sum(ages) / len(ages), 1) if ages else 0.0,
            "config": {
                "max_pending_age_s": self.config.max_pending_age_s,
                "cleanup_interval_s": self.config.cleanup_interval_s,
            },
        }


class SearchRequestDeduplicator(RequestDeduplicator):
    """Key helpers for the search pipeline's expensive calls"""

    async def deduplicate_page_extraction(
        self,
        url: str,
        operation: Callable[[], Awaitable[T]]
    ) -> T:
        return await self.deduplicate(hash_payload({"url": url}, prefix="page"), operation)

    async def deduplicate_embedding(
        self,
        texts: List[str],
        model: str,
        operation: Callable[[], Awaitable[T]]
    ) -> T:
        return await self.deduplicate(
            hash_payload({"model": model, "texts": texts}, prefix="embed"),
            operation
        )

    async def deduplicate_query_generation(
        self,
        query: str,
        history: List[Any],
        operation: Callable[[], Awaitable[T]],
        options: Optional[Dict[str, Any]] = None
    ) -> T:
        return await self.deduplicate(
            hash_payload(
                {"query": normalize_query(query), "history": history, "options": options or {}},
                prefix="querygen"
            ),
            operation
        )
