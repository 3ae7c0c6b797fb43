"""
Tests for the adaptive timeout controller.
"""

import asyncio
import math

import pytest

from core.exceptions import OperationTimeoutError
from copilot.performance.timeout import (
    AdaptiveTimeout,
    SearchTimeoutManager,
    TimedTask,
    TimeoutConfig,
)


def make_controller(**overrides) -> AdaptiveTimeout:
    config = TimeoutConfig(base_timeout_ms=3000, min_timeout_ms=1000, max_timeout_ms=60000)
    for name, value in overrides.items():
        setattr(config, name, value)
    return AdaptiveTimeout(config)


async def returns(value, delay: float = 0.0):
    if delay:
        await asyncio.sleep(delay)
    return value


class TestTimeoutComputation:
    """p95 plus buffer, clamped, recomputed periodically."""

    def test_no_history_uses_base(self):
        """Without history the base timeout applies."""
        controller = make_controller()
        assert controller.get_timeout("search-web") == 3000

    def test_adaptive_disabled_uses_base(self):
        """Adaptive mode off ignores history."""
        controller = make_controller(adaptive_enabled=False)
        for _ in range(10):
            controller.record("search-web", 20000, True)
        assert controller.get_timeout("search-web") == 3000

    def test_p95_plus_minimum_buffer(self):
        """Small latencies get the 2000ms minimum buffer on top of p95."""
        controller = make_controller()
        for duration in range(100, 1100, 100):  # 100..1000
            controller.record("op", duration, True)

        # ceil(10 * 0.95) - 1 = 9 -> 1000ms; avg 550 -> buffer 2000
        assert controller.compute_adaptive_timeout("op") == 3000
        assert controller.get_timeout("op") == 3000

    def test_buffer_scales_with_average(self):
        """Large latencies get avg * 0.5 as buffer."""
        controller = make_controller()
        for _ in range(10):
            controller.record("op", 10000, True)

        assert controller.compute_adaptive_timeout("op") == 15000

    def test_clamped_to_bounds(self):
        """Results stay inside [min, max]."""
        controller = make_controller(min_timeout_ms=5000, max_timeout_ms=20000, min_buffer_ms=100)
        for _ in range(10):
            controller.record("fast", 10, True)
            controller.record("slow", 50000, True)

        assert controller.compute_adaptive_timeout("fast") == 5000
        assert controller.compute_adaptive_timeout("slow") == 20000

    def test_failures_do_not_shape_timeout(self):
        """Only successful durations feed the percentile."""
        controller = make_controller()
        for _ in range(10):
            controller.record("op", 50000, False)
        assert controller.compute_adaptive_timeout("op") == 3000

    def test_uses_recent_window(self):
        """Only the latest sample_window successes count."""
        controller = make_controller(sample_window=5)
        for _ in range(20):
            controller.record("op", 30000, True)
        for _ in range(5):
            controller.record("op", 1000, True)

        assert controller.compute_adaptive_timeout("op") == 3000

    def test_cached_timeout_refreshes_every_tenth_record(self):
        """The cached value only changes on every recompute_every-th record."""
        controller = make_controller()
        assert controller.get_timeout("op") == 3000

        for _ in range(9):
            controller.record("op", 10000, True)
        assert controller.get_timeout("op") == 3000

        controller.record("op", 10000, True)
        assert controller.get_timeout("op") == 15000

    def test_converges_above_p95_plus_buffer(self):
        """After increasing latencies the timeout covers p95 plus the minimum buffer."""
        controller = make_controller(max_timeout_ms=120000)
        durations = [500 + i * 150 for i in range(20)]
        for d in durations:
            controller.record("op", d, True)

        timeout = controller.get_timeout("op")
        ordered = sorted(durations)
        p95 = ordered[math.ceil(len(ordered) * 0.95) - 1]
        assert timeout >= p95 + 2000
        assert 1000 <= timeout <= 120000

    def test_history_is_bounded(self):
        """The per-class history keeps only history_size records."""
        controller = make_controller(history_size=5)
        for i in range(12):
            controller.record("op", 100 + i, True)
        assert controller.get_stats()["operations"]["op"]["total"] == 5


class TestRunWithTimeout:
    """Racing operations against the computed timeout."""

    @pytest.mark.asyncio
    async def test_success_is_recorded(self):
        """A fast operation returns its value and records a success."""
        controller = make_controller()
        assert await controller.run_with_timeout("op", lambda: returns("ok")) == "ok"

        stats = controller.get_stats()["operations"]["op"]
        assert stats["successful"] == 1
        assert stats["success_rate"] == 1.0

    @pytest.mark.asyncio
    async def test_timeout_raises_operation_timeout(self):
        """Losing the race raises OperationTimeoutError naming the class."""
        controller = make_controller()

        with pytest.raises(OperationTimeoutError) as exc_info:
            await controller.run_with_timeout("op", lambda: returns("late", 1.0), timeout_ms=20)

        assert exc_info.value.operation == "op"
        assert exc_info.value.timeout_ms == 20
        assert exc_info.value.kind == "timeout"
        assert controller.get_stats()["operations"]["op"]["failed"] == 1

    @pytest.mark.asyncio
    async def test_other_errors_propagate_unchanged(self):
        """Non-timeout failures are recorded and re-raised as-is."""
        controller = make_controller()

        async def broken():
            raise KeyError("missing")

        with pytest.raises(KeyError):
            await controller.run_with_timeout("op", broken)
        assert controller.get_stats()["operations"]["op"]["failed"] == 1

    @pytest.mark.asyncio
    async def test_early_timeout_error_is_not_ours(self):
        """A TimeoutError raised well before the limit is passed through."""
        controller = make_controller()

        async def raises_timeout():
            raise asyncio.TimeoutError()

        with pytest.raises(asyncio.TimeoutError) as exc_info:
            await controller.run_with_timeout("op", raises_timeout, timeout_ms=5000)
        assert not isinstance(exc_info.value, OperationTimeoutError)


class TestProgressiveTimeout:
    """Increasing fixed timeouts."""

    @pytest.mark.asyncio
    async def test_succeeds_on_longer_timeout(self):
        """An operation too slow for the first timeout succeeds on the second."""
        controller = make_controller()
        attempts = 0

        async def slowish():
            nonlocal attempts
            attempts += 1
            await asyncio.sleep(0.05)
            return "eventually"

        result = await controller.run_with_progressive_timeout("op", slowish, timeouts_ms=(10, 1000))

        assert result == "eventually"
        assert attempts == 2

    @pytest.mark.asyncio
    async def test_raises_last_timeout_when_all_fail(self):
        """Every timeout lost raises the final OperationTimeoutError."""
        controller = make_controller()

        with pytest.raises(OperationTimeoutError) as exc_info:
            await controller.run_with_progressive_timeout(
                "op", lambda: returns("never", 1.0), timeouts_ms=(10, 20)
            )
        assert exc_info.value.timeout_ms == 20

    @pytest.mark.asyncio
    async def test_non_timeout_error_raises_immediately(self):
        """Other failures are not retried."""
        controller = make_controller()
        attempts = 0

        async def broken():
            nonlocal attempts
            attempts += 1
            raise ValueError("bad input")

        with pytest.raises(ValueError):
            await controller.run_with_progressive_timeout("op", broken, timeouts_ms=(10, 20, 30))
        assert attempts == 1


class TestBatchAndManagement:
    """Batch runs, config updates, clear and stats."""

    @pytest.mark.asyncio
    async def test_batch_reports_each_task(self):
        """One TimedResult per task, with timeouts flagged."""
        controller = make_controller()

        async def broken():
            raise RuntimeError("nope")

        results = await controller.run_batch_with_timeouts([
            TimedTask(id="fast", operation="op", task=lambda: returns(1)),
            TimedTask(id="slow", operation="op", task=lambda: returns(2, 1.0), timeout_ms=20),
            TimedTask(id="bad", operation="op", task=broken),
        ])

        assert [r.id for r in results] == ["fast", "slow", "bad"]
        assert results[0].ok and results[0].result == 1
        assert results[1].timed_out
        assert not results[2].ok and not results[2].timed_out

    def test_update_config_drops_cached_timeouts(self):
        """Switching adaptive mode resets cached values."""
        controller = make_controller()
        for _ in range(10):
            controller.record("op", 10000, True)
        assert controller.get_timeout("op") == 15000

        controller.update_config(adaptive_enabled=False)
        assert controller.get_timeout("op") == 3000

        controller.update_config(adaptive_enabled=True)
        assert controller.get_timeout("op") == 15000

    def test_update_config_rejects_unknown_fields(self):
        controller = make_controller()
        with pytest.raises(ValueError):
            controller.update_config(not_a_setting=1)

    def test_clear_single_class(self):
        """clear(op) forgets one class and leaves others."""
        controller = make_controller()
        controller.record("a", 100, True)
        controller.record("b", 100, True)

        controller.clear("a")
        operations = controller.get_stats()["operations"]
        assert "a" not in operations
        assert "b" in operations

        controller.clear()
        assert controller.get_stats()["operations"] == {}


class TestSearchTimeoutManager:
    """Search presets and per-class helpers."""

    def test_presets(self):
        manager = SearchTimeoutManager()
        assert manager.config.base_timeout_ms == 30000
        assert manager.config.min_timeout_ms == 10000
        assert manager.config.max_timeout_ms == 90000
        assert manager.config.history_size == 50

    @pytest.mark.asyncio
    async def test_helpers_record_under_their_class(self):
        """Each helper records latency under its own operation class."""
        manager = SearchTimeoutManager()
        await manager.run_search(lambda: returns(1), search_type="news")
        await manager.run_page_extraction(lambda: returns(2))
        await manager.run_embedding(lambda: returns(3))
        await manager.run_query_generation(lambda: returns(4))

        operations = manager.get_stats()["operations"]
        assert set(operations) == {"search-news", "page-extraction", "embedding", "query-generation"}
