"""
Performance layer for the copilot pipeline:
bounded executor, in-flight deduplication, adaptive timeouts, TTL/LRU caches
"""

from .cache import CacheConfig, CacheEntry, ResultCache
from .deduplicator import (
    DeduplicatorConfig,
    PendingOperation,
    RequestDeduplicator,
    SearchRequestDeduplicator,
)
from .executor import (
    ExecutorConfig,
    ParallelExecutor,
    ParallelTask,
    SearchParallelExecutor,
    TaskResult,
)
from .keys import hash_payload, http_request_key, normalize_query, query_key
from .registry import (
    Component,
    PerformanceRegistry,
    get_performance_registry,
    parse_component,
    reset_performance_registry,
)
from .timeout import (
    AdaptiveTimeout,
    LatencyRecord,
    SearchTimeoutManager,
    TimedResult,
    TimedTask,
    TimeoutConfig,
)

__all__ = [
    "AdaptiveTimeout",
    "CacheConfig",
    "CacheEntry",
    "Component",
    "DeduplicatorConfig",
    "ExecutorConfig",
    "LatencyRecord",
    "ParallelExecutor",
    "ParallelTask",
    "PendingOperation",
    "PerformanceRegistry",
    "RequestDeduplicator",
    "ResultCache",
    "SearchParallelExecutor",
    "SearchRequestDeduplicator",
    "SearchTimeoutManager",
    "TaskResult",
    "TimedResult",
    "TimedTask",
    "TimeoutConfig",
    "get_performance_registry",
    "hash_payload",
    "http_request_key",
    "normalize_query",
    "parse_component",
    "query_key",
    "reset_performance_registry",
]
