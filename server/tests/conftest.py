"""
Shared pytest fixtures for copilot server tests.

Provides scripted collaborators (search provider, fetcher, language model,
embedding model) and a fresh performance registry per test.
"""

import asyncio
import sys
from pathlib import Path
from typing import Dict, Iterable, List, Optional

import pytest

# Add server directory to path
SERVER_DIR = Path(__file__).parent.parent
sys.path.insert(0, str(SERVER_DIR))

from core.exceptions import UpstreamError  # noqa: E402
from copilot.models import CopilotConfig, WebSearchResult  # noqa: E402
from copilot.performance import (  # noqa: E402
    CacheConfig,
    DeduplicatorConfig,
    ExecutorConfig,
    PerformanceRegistry,
    ResultCache,
    SearchParallelExecutor,
    SearchRequestDeduplicator,
    SearchTimeoutManager,
    TimeoutConfig,
)
from copilot.pipeline import CopilotPipeline  # noqa: E402
from copilot.providers import (  # noqa: E402
    ContentFetcher,
    EmbeddingModel,
    FetchedPage,
    LanguageModel,
    SearchProvider,
)


# ============================================
# Scripted collaborators
# ============================================

class FakeSearchProvider(SearchProvider):
    """Returns canned results; queries in `failing` raise UpstreamError."""

    def __init__(
        self,
        results: Optional[Dict[str, List[WebSearchResult]]] = None,
        failing: Iterable[str] = (),
        default_count: int = 3,
        delay: float = 0.0
    ):
        self.results = results or {}
        self.failing = set(failing)
        self.default_count = default_count
        self.delay = delay
        self.calls: List[str] = []

    async def search(self, query: str, max_results: int = 10) -> List[WebSearchResult]:
        self.calls.append(query)
        if self.delay:
            await asyncio.sleep(self.delay)
        if query in self.failing:
            raise UpstreamError("searxng", f"HTTP 502 for {query}")
        if query in self.results:
            return self.results[query][:max_results]
        slug = query.lower().replace(" ", "-")
        return [
            WebSearchResult(
                title=f"{query} result {i}",
                url=f"https://example.com/{slug}/{i}",
                snippet=f"Snippet {i} about {query}",
            )
            for i in range(self.default_count)
        ][:max_results]


class FakeFetcher(ContentFetcher):
    """Pages by URL; URLs in `failing` raise UpstreamError."""

    def __init__(self, failing: Iterable[str] = ()):
        self.failing = set(failing)
        self.calls: List[str] = []

    async def fetch(self, url: str) -> FetchedPage:
        self.calls.append(url)
        if url in self.failing:
            raise UpstreamError("fetcher", f"HTTP 404 for {url}")
        return FetchedPage(url=url, title="Fetched page", text=f"Full page text of {url}. " * 20)


class ScriptedLanguageModel(LanguageModel):
    """
    Answers by prompt kind: sub-query prompts get `query_response`, page
    summaries get `summary`, synthesis streams `answer_chunks`.
    """

    def __init__(
        self,
        query_response: str = "photosynthesis process\n</queries>",
        summary: str = "Dense summary of the page.",
        answer_chunks: Optional[List[str]] = None,
        stream_error: Optional[Exception] = None,
        fail_after: int = 0,
        query_error: Optional[Exception] = None
    ):
        self.query_response = query_response
        self.summary = summary
        self.answer_chunks = answer_chunks if answer_chunks is not None else [
            "Photosynthesis ", "converts light ", "into chemical energy [1]."
        ]
        self.stream_error = stream_error
        self.fail_after = fail_after
        self.query_error = query_error
        self.prompts: List[str] = []

    async def complete(self, prompt: str, system: Optional[str] = None) -> str:
        self.prompts.append(prompt)
        if "<queries>" in prompt:
            if self.query_error is not None:
                raise self.query_error
            return self.query_response
        return self.summary

    async def stream(self, prompt: str, system: Optional[str] = None):
        self.prompts.append(prompt)
        for index, chunk in enumerate(self.answer_chunks):
            if self.stream_error is not None and index == self.fail_after:
                raise self.stream_error
            yield chunk
        if self.stream_error is not None and self.fail_after >= len(self.answer_chunks):
            raise self.stream_error


class FakeEmbeddingModel(EmbeddingModel):
    """Vectors by exact text, `default` for everything else."""

    def __init__(
        self,
        vectors: Optional[Dict[str, List[float]]] = None,
        default: Optional[List[float]] = None,
        error: Optional[Exception] = None
    ):
        self.vectors = vectors or {}
        self.default = default or [1.0, 0.0]
        self.error = error
        self.calls: List[List[str]] = []

    async def embed_documents(self, texts: List[str]) -> List[List[float]]:
        self.calls.append(list(texts))
        if self.error is not None:
            raise self.error
        return [self.vectors.get(text, self.default) for text in texts]


# ============================================
# Performance layer fixtures
# ============================================

def build_registry(
    executor_config: Optional[ExecutorConfig] = None,
    timeout_config: Optional[TimeoutConfig] = None,
    dedup_config: Optional[DeduplicatorConfig] = None
) -> PerformanceRegistry:
    """Registry with small limits and near-zero retry delays"""
    return PerformanceRegistry(
        answer_cache=ResultCache(CacheConfig(max_size=50, default_ttl_s=60), name="answers"),
        document_cache=ResultCache(CacheConfig(max_size=100, default_ttl_s=60), name="documents"),
        deduplicator=SearchRequestDeduplicator(dedup_config or DeduplicatorConfig()),
        executor=SearchParallelExecutor(executor_config or ExecutorConfig(
            max_concurrency=4,
            default_timeout_ms=2000,
            retry_attempts=2,
            retry_delay_ms=1,
        )),
        timeouts=SearchTimeoutManager(timeout_config or TimeoutConfig(
            base_timeout_ms=2000,
            min_timeout_ms=100,
            max_timeout_ms=5000,
        )),
    )


@pytest.fixture
def registry():
    """A fresh performance registry, never the process-wide one."""
    return build_registry()


@pytest.fixture
def search_provider():
    return FakeSearchProvider()


@pytest.fixture
def fetcher():
    return FakeFetcher()


@pytest.fixture
def llm():
    return ScriptedLanguageModel()


@pytest.fixture
def embeddings():
    return FakeEmbeddingModel()


@pytest.fixture
def copilot_config():
    return CopilotConfig(max_queries=3, rerank_threshold=0.7)


@pytest.fixture
def make_pipeline(search_provider, fetcher, llm, embeddings, copilot_config, registry):
    """Factory building a pipeline from the default fakes plus overrides."""

    def _make(**overrides) -> CopilotPipeline:
        parts = {
            "search_provider": search_provider,
            "fetcher": fetcher,
            "llm": llm,
            "embeddings": embeddings,
            "config": copilot_config,
            "registry": registry,
        }
        parts.update(overrides)
        return CopilotPipeline(**parts)

    return _make
