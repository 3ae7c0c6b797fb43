"""
Performance Registry

Owns the process-wide performance components (answer cache, document cache,
deduplicator, executor, timeout controller), built once from settings and
exposed through get_performance_registry(). Tests build fresh registries
directly instead of sharing the global one.
"""

import logging
from enum import Enum
from typing import Any, Dict, Optional, Union

from core.exceptions import ValidationError

from .cache import CacheConfig, ResultCache
from .deduplicator import DeduplicatorConfig, SearchRequestDeduplicator
from .executor import ExecutorConfig, SearchParallelExecutor
from .timeout import SearchTimeoutManager, TimeoutConfig

logger = logging.getLogger("copilot.performance")


class Component(str, Enum):
    """Management targets"""
    CACHE = "cache"
    EXECUTOR = "executor"
    DEDUPLICATOR = "deduplicator"
    TIMEOUT = "timeout"
    ALL = "all"

    @classmethod
    def _missing_(cls, value):
        if isinstance(value, str):
            value = value.lower()
            if value == "parallel":
                return cls.EXECUTOR
            for member in cls:
                if member.value == value:
                    return member
        return None


def parse_component(value: Union[str, Component, None]) -> Component:
    """Component from user input, defaulting to ALL"""
    if value is None or value == "":
        return Component.ALL
    try:
        return Component(value)
    except ValueError:
        raise ValidationError(
            f"Unknown component '{value}'",
            field="component",
            allowed=[c.value for c in Component],
        )


class PerformanceRegistry:
    """Holder for the performance components with management operations"""

    def __init__(
        self,
        answer_cache: ResultCache,
        document_cache: ResultCache,
        deduplicator: SearchRequestDeduplicator,
        executor: SearchParallelExecutor,
        timeouts: SearchTimeoutManager
    ):
        self.answer_cache = answer_cache
        self.document_cache = document_cache
        self.deduplicator = deduplicator
        self.executor = executor
        self.timeouts = timeouts

    @classmethod
    def from_settings(cls, settings=None) -> "PerformanceRegistry":
        if settings is None:
            from config.settings import get_settings
            settings = get_settings()

        return cls(
            answer_cache=ResultCache(
                CacheConfig(
                    max_size=settings.answer_cache_max_size,
                    default_ttl_s=settings.answer_cache_ttl_s,
                    cleanup_interval_s=settings.cache_cleanup_interval_s,
                    max_memory_bytes=50 * 1024 * 1024,
                ),
                name="answers",
            ),
            document_cache=ResultCache(
                CacheConfig(
                    max_size=settings.document_cache_max_size,
                    default_ttl_s=settings.document_cache_ttl_s,
                    cleanup_interval_s=settings.cache_cleanup_interval_s,
                    max_memory_bytes=200 * 1024 * 1024,
                ),
                name="documents",
            ),
            deduplicator=SearchRequestDeduplicator(DeduplicatorConfig(
                max_pending_age_s=settings.dedup_max_pending_age_s,
                cleanup_interval_s=settings.dedup_cleanup_interval_s,
                enabled=settings.dedup_enabled,
            )),
            executor=SearchParallelExecutor(ExecutorConfig(
                max_concurrency=settings.executor_max_concurrency,
                default_timeout_ms=settings.executor_default_timeout_ms,
                retry_attempts=settings.executor_retry_attempts,
                retry_delay_ms=settings.executor_retry_delay_ms,
            )),
            timeouts=SearchTimeoutManager(TimeoutConfig(
                base_timeout_ms=settings.timeout_base_ms,
                min_timeout_ms=settings.timeout_min_ms,
                max_timeout_ms=settings.timeout_max_ms,
                adaptive_enabled=settings.timeout_adaptive_enabled,
                history_size=settings.timeout_history_size,
            )),
        )

    # ------------------------------------------------------------------
    # Management operations
    # ------------------------------------------------------------------

    def get_stats(self, component: Union[str, Component, None] = Component.ALL) -> Dict[str, Any]:
        component = parse_component(component)
        sections = {
            Component.CACHE: lambda: {
                "answers": self.answer_cache.get_stats(),
                "documents": self.document_cache.get_stats(),
            },
            Component.EXECUTOR: self.executor.get_stats,
            Component.DEDUPLICATOR: self.deduplicator.get_stats,
            Component.TIMEOUT: self.timeouts.get_stats,
        }
        if component is Component.ALL:
            return {c.value: build() for c, build in sections.items()}
        return {component.value: sections[component]()}

    def clear(self, component: Union[str, Component, None] = Component.ALL) -> None:
        component = parse_component(component)
        if component in (Component.CACHE, Component.ALL):
            self.answer_cache.clear()
            self.document_cache.clear()
        if component in (Component.EXECUTOR, Component.ALL):
            self.executor.clear()
        if component in (Component.DEDUPLICATOR, Component.ALL):
            self.deduplicator.clear()
        if component in (Component.TIMEOUT, Component.ALL):
            self.timeouts.clear()
        logger.info(f"Cleared performance component: {component.value}")

    def cleanup(self, component: Union[str, Component, None] = Component.CACHE) -> int:
        """Purge expired cache entries. Only caches hold expirable state."""
        component = parse_component(component)
        if component not in (Component.CACHE, Component.ALL):
            raise ValidationError(
                f"cleanup is only supported for cache, not '{component.value}'",
                field="component",
            )
        removed = self.answer_cache.cleanup() + self.document_cache.cleanup()
        logger.info(f"Cache cleanup removed {removed} expired entries")
        return removed

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self):
        """Start background sweeps"""
        await self.answer_cache.start_cleanup_loop()
        await self.document_cache.start_cleanup_loop()
        await self.deduplicator.start_cleanup_loop()

    async def stop(self):
        """Stop background sweeps"""
        await self.answer_cache.stop_cleanup_loop()
        await self.document_cache.stop_cleanup_loop()
        await self.deduplicator.stop()


# Global instance
_registry: Optional[PerformanceRegistry] = None


def get_performance_registry() -> PerformanceRegistry:
    """Get the global performance registry instance"""
    global _registry
    if _registry is None:
        _registry = PerformanceRegistry.from_settings()
    return _registry


def reset_performance_registry(registry: Optional[PerformanceRegistry] = None) -> None:
    """Replace (or drop) the global registry"""
    global _registry
    _registry = registry
