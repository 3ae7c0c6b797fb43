"""
Adaptive Timeout Controller

Derives a per-operation-class timeout from recent latency instead of a
fixed constant. For each class:

    timeout = clamp(p95(recent successes) + max(avg * 0.5, 2000ms), min, max)

With no successful history the base timeout is used. The cached timeout for
a class is recomputed on every `recompute_every`-th record rather than per
call.

Usage:
    timeouts = SearchTimeoutManager()
    results = await timeouts.run_search(lambda: provider.search(q, 5), search_type="web")
"""

import asyncio
import logging
import math
import threading
import time
from collections import deque
from dataclasses import dataclass, fields
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Sequence, TypeVar

from core.exceptions import OperationTimeoutError

logger = logging.getLogger("copilot.timeout")

T = TypeVar("T")

PROGRESSIVE_TIMEOUTS_MS = (5000, 15000, 30000)


@dataclass
class TimeoutConfig:
    base_timeout_ms: float = 30000
    max_timeout_ms: float = 120000
    min_timeout_ms: float = 5000
    adaptive_enabled: bool = True
    history_size: int = 100
    sample_window: int = 20       # recent successes used for p95
    recompute_every: int = 10
    min_buffer_ms: float = 2000
    tolerance_ms: float = 100     # slack when deciding a failure was our timeout


@dataclass
class LatencyRecord:
    operation: str
    duration_ms: float
    success: bool
    timestamp: float


@dataclass
class TimedTask:
    id: str
    operation: str
    task: Callable[[], Awaitable[Any]]
    timeout_ms: Optional[float] = None


@dataclass
class TimedResult:
    id: str
    result: Any = None
    error: Optional[BaseException] = None
    duration_ms: float = 0.0
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "ok": self.ok,
            "error": str(self.error) if self.error else None,
            "duration_ms": round(self.duration_ms, 1),
            "timed_out": self.timed_out,
        }


class AdaptiveTimeout:
    """Races operations against timeouts learned from their own latency history."""

    def __init__(self, config: Optional[TimeoutConfig] = None):
        self.config = config or TimeoutConfig()
        self._history: Dict[str, Deque[LatencyRecord]] = {}
        self._record_counts: Dict[str, int] = {}
        self._timeouts: Dict[str, float] = {}
        self._lock = threading.Lock()

        logger.info(
            f"AdaptiveTimeout initialized (base={self.config.base_timeout_ms}ms, "
            f"min={self.config.min_timeout_ms}ms, max={self.config.max_timeout_ms}ms, "
            f"adaptive={self.config.adaptive_enabled})"
        )

    # ------------------------------------------------------------------
    # Timeout computation
    # ------------------------------------------------------------------

    def get_timeout(self, operation: str) -> float:
        """Current timeout (ms) for an operation class"""
        if not self.config.adaptive_enabled:
            return self.config.base_timeout_ms

        with self._lock:
            cached = self._timeouts.get(operation)
        if cached is not None:
            return cached

        timeout = self.compute_adaptive_timeout(operation)
        with self._lock:
            self._timeouts.setdefault(operation, timeout)
            return self._timeouts[operation]

    def compute_adaptive_timeout(self, operation: str) -> float:
        """p95 of recent successes plus buffer, clamped. Base timeout with no history."""
        with self._lock:
            history = list(self._history.get(operation, ()))

        successes = [r.duration_ms for r in history if r.success][-self.config.sample_window:]
        if not successes:
            return self.config.base_timeout_ms

        ordered = sorted(successes)
        p95 = ordered[max(0, math.ceil(len(ordered) * 0.95) - 1)]
        average = sum(ordered) / len(ordered)
        buffer = max(average * 0.5, self.config.min_buffer_ms)

        return self._clamp(p95 + buffer)

    def _clamp(self, timeout_ms: float) -> float:
        return max(self.config.min_timeout_ms, min(self.config.max_timeout_ms, timeout_ms))

    def record(self, operation: str, duration_ms: float, success: bool) -> None:
        """Append a latency record; refresh the cached timeout every Nth record."""
        with self._lock:
            history = self._history.get(operation)
            if history is None:
                history = deque(maxlen=self.config.history_size)
                self._history[operation] = history
            history.append(LatencyRecord(operation, duration_ms, success, time.time()))
            count = self._record_counts.get(operation, 0) + 1
            self._record_counts[operation] = count

        if self.config.adaptive_enabled and count % self.config.recompute_every == 0:
            timeout = self.compute_adaptive_timeout(operation)
            with self._lock:
                previous = self._timeouts.get(operation)
                self._timeouts[operation] = timeout
            if previous != timeout:
                logger.debug(f"Timeout for {operation} adjusted: {previous} -> {timeout:.0f}ms")

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def run_with_timeout(
        self,
        operation: str,
        task: Callable[[], Awaitable[T]],
        timeout_ms: Optional[float] = None
    ) -> T:
        """
        Race task() against the class timeout (or the explicit override).

        Raises OperationTimeoutError only when the elapsed time confirms the
        race was lost to our timeout; other failures propagate unchanged.
        """
        timeout = timeout_ms if timeout_ms is not None else self.get_timeout(operation)
        start = time.perf_counter()
        try:
            result = await asyncio.wait_for(task(), timeout=timeout / 1000)
        except asyncio.TimeoutError as e:
            elapsed = (time.perf_counter() - start) * 1000
            self.record(operation, elapsed, False)
            if elapsed >= timeout - self.config.tolerance_ms:
                logger.debug(f"{operation} timed out after {elapsed:.0f}ms (limit {timeout:.0f}ms)")
                raise OperationTimeoutError(operation, timeout) from e
            raise
        except Exception:
            self.record(operation, (time.perf_counter() - start) * 1000, False)
            raise

        self.record(operation, (time.perf_counter() - start) * 1000, True)
        return result

    async def run_with_progressive_timeout(
        self,
        operation: str,
        task: Callable[[], Awaitable[T]],
        timeouts_ms: Sequence[float] = PROGRESSIVE_TIMEOUTS_MS
    ) -> T:
        """Retry task against increasing fixed timeouts. Non-timeout errors raise immediately."""
        last_error: Optional[OperationTimeoutError] = None
        for attempt, timeout in enumerate(timeouts_ms, start=1):
            try:
                return await self.run_with_timeout(operation, task, timeout_ms=timeout)
            except OperationTimeoutError as e:
                last_error = e
                logger.debug(f"{operation} attempt {attempt} timed out at {timeout}ms")

        if last_error is None:
            raise ValueError("run_with_progressive_timeout needs at least one timeout")
        raise last_error

    async def run_batch_with_timeouts(self, tasks: List[TimedTask]) -> List[TimedResult]:
        """Run tasks concurrently, each under its class timeout; one result per task."""

        async def run_one(item: TimedTask) -> TimedResult:
            start = time.perf_counter()
            try:
                result = await self.run_with_timeout(item.operation, item.task, item.timeout_ms)
                return TimedResult(id=item.id, result=result, duration_ms=(time.perf_counter() - start) * 1000)
            except Exception as e:
                return TimedResult(
                    id=item.id,
                    error=e,
                    duration_ms=(time.perf_counter() - start) * 1000,
                    timed_out=isinstance(e, OperationTimeoutError),
                )

        return list(await asyncio.gather(*(run_one(t) for t in tasks)))

    # ------------------------------------------------------------------
    # Management
    # ------------------------------------------------------------------

    def update_config(self, **changes) -> None:
        known = {f.name for f in fields(TimeoutConfig)}
        unknown = set(changes) - known
        if unknown:
            raise ValueError(f"Unknown timeout settings: {sorted(unknown)}")

        adaptive_changed = (
            "adaptive_enabled" in changes
            and changes["adaptive_enabled"] != self.config.adaptive_enabled
        )
        for name, value in changes.items():
            setattr(self.config, name, value)

        with self._lock:
            if "history_size" in changes:
                self._history = {
                    op: deque(history, maxlen=self.config.history_size)
                    for op, history in self._history.items()
                }
            if adaptive_changed or {"min_timeout_ms", "max_timeout_ms", "base_timeout_ms"} & set(changes):
                self._timeouts.clear()

        logger.info(f"Timeout config updated: {changes}")

    def clear(self, operation: Optional[str] = None) -> None:
        with self._lock:
            if operation is None:
                self._history.clear()
                self._record_counts.clear()
                self._timeouts.clear()
            else:
                self._history.pop(operation, None)
                self._record_counts.pop(operation, None)
                self._timeouts.pop(operation, None)

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            snapshot = {op: list(history) for op, history in self._history.items()}

        operations = {}
        for op, history in snapshot.items():
            successes = [r.duration_ms for r in history if r.success]
            total = len(history)
            operations[op] = {
                "total": total,
                "successful": len(successes),
                "failed": total - len(successes),
                "success_rate": round(len(successes) / total, 3) if total else 0.0,
                "average_duration_ms": round(sum(successes) / len(successes), 1) if successes else 0.0,
                "current_timeout_ms": round(self.get_timeout(op), 1),
            }

        return {
            "operations": operations,
            "config": {
                "base_timeout_ms": self.config.base_timeout_ms,
                "min_timeout_ms": self.config.min_timeout_ms,
                "max_timeout_ms": self.config.max_timeout_ms,
                "adaptive_enabled": self.config.adaptive_enabled,
                "history_size": self.config.history_size,
            },
        }


class SearchTimeoutManager(AdaptiveTimeout):
    """Adaptive timeouts with search presets and one helper per operation class"""

    def __init__(self, config: Optional[TimeoutConfig] = None):
        super().__init__(config or TimeoutConfig(
            base_timeout_ms=30000,
            max_timeout_ms=90000,
            min_timeout_ms=10000,
            history_size=50,
        ))

    async def run_search(
        self,
        task: Callable[[], Awaitable[T]],
        search_type: str = "web",
        timeout_ms: Optional[float] = None
    ) -> T:
        return await self.run_with_timeout(f"search-{search_type}", task, timeout_ms)

    async def run_page_extraction(self, task: Callable[[], Awaitable[T]]) -> T:
        return await self.run_with_timeout("page-extraction", task)

    async def run_embedding(self, task: Callable[[], Awaitable[T]]) -> T:
        return await self.run_with_timeout("embedding", task)

    async def run_query_generation(self, task: Callable[[], Awaitable[T]]) -> T:
        return await self.run_with_timeout("query-generation", task)
