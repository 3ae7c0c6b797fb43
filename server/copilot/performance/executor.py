"""
Bounded-Concurrency Task Executor

Runs independent async operations under a concurrency cap with a
per-task timeout and linear-backoff retry.

Execution modes:
- execute(): all-or-propagate, one value per task, raises the first
  unrecovered failure
- execute_with_results(): best-effort, one TaskResult per task so callers
  keep the successes and drop the failures
- execute_batched(): priority-sorted groups run one after another, each
  group internally parallel
- execute_with_limit(): tasks produced by a (possibly async) generator run
  through aiometer with at most `limit` in flight, started in order

Usage:
    executor = ParallelExecutor(ExecutorConfig(max_concurrency=5))
    results = await executor.execute_with_results([
        ParallelTask(id="search-0", task=lambda: search("a"), priority=2),
        ParallelTask(id="search-1", task=lambda: search("b")),
    ])
    documents = [r.result for r in results if r.ok]
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from functools import partial
from typing import (
    Any,
    AsyncIterable,
    Awaitable,
    Callable,
    Dict,
    Generic,
    Iterable,
    List,
    Optional,
    TypeVar,
    Union,
)

import aiometer

from core.exceptions import OperationTimeoutError

logger = logging.getLogger("copilot.executor")

T = TypeVar("T")


@dataclass
class ExecutorConfig:
    """Concurrency and retry policy"""
    max_concurrency: int = 5
    default_timeout_ms: float = 30000
    retry_attempts: int = 3
    retry_delay_ms: float = 1000  # multiplied by the attempt number


@dataclass
class ParallelTask(Generic[T]):
    """A unit of work owned by the executor while it runs"""
    id: str
    task: Callable[[], Awaitable[T]]
    priority: int = 0
    timeout_ms: Optional[float] = None


@dataclass
class TaskResult(Generic[T]):
    """Outcome of one task in best-effort mode"""
    id: str
    result: Optional[T] = None
    error: Optional[BaseException] = None
    duration_ms: float = 0.0

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def timed_out(self) -> bool:
        return isinstance(self.error, OperationTimeoutError)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "ok": self.ok,
            "error": str(self.error) if self.error else None,
            "timed_out": self.timed_out,
            "duration_ms": round(self.duration_ms, 1),
        }


TaskSource = Union[
    Iterable[ParallelTask],
    AsyncIterable[ParallelTask],
    Callable[[], Union[Iterable[ParallelTask], AsyncIterable[ParallelTask]]],
]


async def _collect_tasks(source: TaskSource) -> List[ParallelTask]:
    if callable(source):
        source = source()
    if hasattr(source, "__aiter__"):
        return [task async for task in source]
    return list(source)


class ParallelExecutor:
    """
    Runs ParallelTasks concurrently, never more than max_concurrency at once.

    Concurrent submissions sharing a task id share one execution.
    """

    def __init__(self, config: Optional[ExecutorConfig] = None):
        self.config = config or ExecutorConfig()
        self._semaphore = asyncio.Semaphore(self.config.max_concurrency)
        self._active_jobs: Dict[str, asyncio.Future] = {}
        self._waiting = 0
        self._running = 0
        self._peak_running = 0
        self._stats = {
            "completed": 0,
            "failed": 0,
            "retries": 0,
            "timeouts": 0,
        }

        logger.info(
            f"ParallelExecutor initialized (concurrency={self.config.max_concurrency}, "
            f"timeout={self.config.default_timeout_ms}ms, retries={self.config.retry_attempts})"
        )

    # ------------------------------------------------------------------
    # Execution modes
    # ------------------------------------------------------------------

    async def execute(self, tasks: List[ParallelTask[T]]) -> List[T]:
        """Run all tasks; return values in input order or raise the first failure."""
        order = _dispatch_order(tasks)
        values = await asyncio.gather(*(self._execute_task(tasks[i]) for i in order))
        results: List[Any] = [None] * len(tasks)
        for position, index in enumerate(order):
            results[index] = values[position]
        return results

    async def execute_with_results(self, tasks: List[ParallelTask[T]]) -> List[TaskResult[T]]:
        """Run all tasks; return exactly one TaskResult per task, in input order."""
        order = _dispatch_order(tasks)
        settled = await asyncio.gather(*(self._settle(tasks[i]) for i in order))
        results: List[Any] = [None] * len(tasks)
        for position, index in enumerate(order):
            results[index] = settled[position]

        failures = sum(1 for r in results if not r.ok)
        if failures:
            logger.debug(f"Best-effort batch finished: {len(results) - failures}/{len(results)} succeeded")
        return results

    async def execute_batched(
        self,
        tasks: List[ParallelTask[T]],
        batch_size: Optional[int] = None
    ) -> List[T]:
        """Run priority-sorted groups sequentially, each group in parallel."""
        size = batch_size or self.config.max_concurrency
        ordered = sorted(tasks, key=lambda t: t.priority, reverse=True)

        results: List[T] = []
        for start in range(0, len(ordered), size):
            batch = ordered[start:start + size]
            logger.debug(f"Running batch {start // size + 1} ({len(batch)} tasks)")
            results.extend(await self.execute(batch))
        return results

    async def execute_with_limit(self, task_source: TaskSource, limit: int) -> List[T]:
        """
        Run tasks from a (possibly async) generator with at most `limit` in
        flight, started in production order. Returns values in that order.
        """
        if limit < 1:
            raise ValueError("limit must be at least 1")

        tasks = await _collect_tasks(task_source)
        jobs = [partial(self._execute_task, task) for task in tasks]
        return list(await aiometer.run_all(jobs, max_at_once=limit))

    # ------------------------------------------------------------------
    # Single task
    # ------------------------------------------------------------------

    async def _settle(self, task: ParallelTask[T]) -> TaskResult[T]:
        start = time.perf_counter()
        try:
            result = await self._execute_task(task)
            return TaskResult(id=task.id, result=result, duration_ms=(time.perf_counter() - start) * 1000)
        except Exception as e:
            return TaskResult(id=task.id, error=e, duration_ms=(time.perf_counter() - start) * 1000)

    async def _execute_task(self, task: ParallelTask[T]) -> T:
        job = self._active_jobs.get(task.id)
        if job is not None:
            logger.debug(f"Task {task.id} already running, joining")
            return await asyncio.shield(job)

        job = asyncio.ensure_future(self._run_limited(task))
        self._active_jobs[task.id] = job
        job.add_done_callback(lambda finished, key=task.id: self._forget(key, finished))
        return await job

    def _forget(self, key: str, job: asyncio.Future) -> None:
        if self._active_jobs.get(key) is job:
            del self._active_jobs[key]
        if not job.cancelled():
            job.exception()  # mark retrieved for joiners that went away

    async def _run_limited(self, task: ParallelTask[T]) -> T:
        self._waiting += 1
        try:
            await self._semaphore.acquire()
        finally:
            self._waiting -= 1

        self._running += 1
        self._peak_running = max(self._peak_running, self._running)
        try:
            return await self._run_with_retry(task)
        finally:
            self._running -= 1
            self._semaphore.release()

    async def _run_with_retry(self, task: ParallelTask[T]) -> T:
        attempts = max(1, self.config.retry_attempts)
        last_error: Optional[Exception] = None

        for attempt in range(1, attempts + 1):
            try:
                result = await self._run_with_timeout(task)
                self._stats["completed"] += 1
                return result
            except Exception as e:
                last_error = e
                if attempt < attempts:
                    self._stats["retries"] += 1
                    delay_s = self.config.retry_delay_ms * attempt / 1000
                    logger.debug(
                        f"Task {task.id} attempt {attempt}/{attempts} failed ({type(e).__name__}), "
                        f"retrying in {delay_s:.2f}s"
                    )
                    await asyncio.sleep(delay_s)

        self._stats["failed"] += 1
        logger.warning(f"Task {task.id} failed after {attempts} attempts: {last_error}")
        raise last_error

    async def _run_with_timeout(self, task: ParallelTask[T]) -> T:
        timeout_ms = task.timeout_ms or self.config.default_timeout_ms
        try:
            return await asyncio.wait_for(task.task(), timeout=timeout_ms / 1000)
        except asyncio.TimeoutError as e:
            self._stats["timeouts"] += 1
            raise OperationTimeoutError(f"task:{task.id}", timeout_ms) from e

    # ------------------------------------------------------------------
    # Management
    # ------------------------------------------------------------------

    @property
    def running(self) -> int:
        return self._running

    @property
    def peak_running(self) -> int:
        return self._peak_running

    def get_stats(self) -> Dict[str, Any]:
        return {
            "active_jobs": len(self._active_jobs),
            "running": self._running,
            "peak_running": self._peak_running,
            "waiting": self._waiting,
            "max_concurrency": self.config.max_concurrency,
            **self._stats,
            "config": {
                "max_concurrency": self.config.max_concurrency,
                "default_timeout_ms": self.config.default_timeout_ms,
                "retry_attempts": self.config.retry_attempts,
                "retry_delay_ms": self.config.retry_delay_ms,
            },
        }

    def clear(self) -> None:
        """Forget tracked jobs and counters. Running jobs finish on their own."""
        self._active_jobs.clear()
        self._peak_running = self._running
        for key in self._stats:
            self._stats[key] = 0


class SearchParallelExecutor(ParallelExecutor):
    """Search-specific helpers on top of the generic executor"""

    async def execute_searches(
        self,
        queries: List[str],
        search_fn: Callable[[str], Awaitable[T]],
        priority: int = 0,
        timeout_ms: Optional[float] = None
    ) -> List[T]:
        tasks = [
            ParallelTask(
                id=f"search-{index}-{query[:20]}",
                task=lambda q=query: search_fn(q),
                priority=priority,
                timeout_ms=timeout_ms,
            )
            for index, query in enumerate(queries)
        ]
        return await self.execute(tasks)

    async def execute_with_fallback(
        self,
        primary_tasks: List[ParallelTask[T]],
        fallback_tasks: List[ParallelTask[T]]
    ) -> List[T]:
        try:
            return await self.execute(primary_tasks)
        except Exception as e:
            logger.warning(f"Primary tasks failed, falling back: {e}")
            return await self.execute(fallback_tasks)


def _dispatch_order(tasks: List[ParallelTask]) -> List[int]:
    """Indices sorted by descending priority; stable for equal priorities."""
    return sorted(range(len(tasks)), key=lambda i: -tasks[i].priority)
