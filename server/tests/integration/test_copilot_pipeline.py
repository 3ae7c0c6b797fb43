"""
End-to-end pipeline runs over scripted collaborators.

Each run must end with exactly one terminal event, and degraded stages
must not abort the run.
"""

import pytest

from copilot.events import CopilotEventType
from copilot.models import CopilotConfig, CopilotRequest, OptimizationMode, SearchDocument
from core.exceptions import UpstreamError

from conftest import FakeFetcher, FakeSearchProvider


def types_of(events):
    return [e.type for e in events]


def answer_of(events):
    return "".join(e.data for e in events if e.type is CopilotEventType.ANSWER_CHUNK)


def assert_single_terminal(events):
    terminal = [e for e in events if e.terminal]
    assert len(terminal) == 1
    assert events[-1] is terminal[0]


class TestHappyPath:
    """Single sub-query, relevant documents, streamed answer."""

    @pytest.mark.asyncio
    async def test_single_query_run_streams_answer_and_ends(self, make_pipeline, search_provider):
        pipeline = make_pipeline(config=CopilotConfig(max_queries=1, rerank_threshold=0.7))

        events = await pipeline.collect(CopilotRequest(query="What is photosynthesis?"))

        kinds = types_of(events)
        assert kinds[0] is CopilotEventType.STATUS
        assert events[0].metadata["stage"] == "query_generation"
        assert kinds[1] is CopilotEventType.THINKING
        assert CopilotEventType.ERROR not in kinds
        assert kinds[-1] is CopilotEventType.END
        assert_single_terminal(events)

        assert answer_of(events) == "Photosynthesis converts light into chemical energy [1]."
        summary = events[-1].metadata
        assert summary["state"] == "done"
        assert summary["sub_queries"] == ["photosynthesis process"]
        assert len(summary["sources"]) == 3
        assert all(source["similarity"] >= 0.7 for source in summary["sources"])
        assert search_provider.calls == ["photosynthesis process"]

    @pytest.mark.asyncio
    async def test_repeat_query_served_from_answer_cache(self, make_pipeline, search_provider, llm):
        pipeline = make_pipeline(config=CopilotConfig(max_queries=1))
        request = CopilotRequest(query="What is photosynthesis?")

        first = await pipeline.collect(request)
        calls_after_first = list(search_provider.calls)
        prompts_after_first = len(llm.prompts)

        second = await pipeline.collect(CopilotRequest(query="  what is   PHOTOSYNTHESIS? "))

        assert answer_of(second) == answer_of(first)
        assert second[-1].type is CopilotEventType.END
        assert second[-1].metadata["from_cache"] is True
        assert search_provider.calls == calls_after_first
        assert len(llm.prompts) == prompts_after_first

    @pytest.mark.asyncio
    async def test_mode_limits_sub_queries(self, make_pipeline, llm):
        llm.query_response = "a\nb\nc\nd\n</queries>"
        pipeline = make_pipeline(config=CopilotConfig(max_queries=5))

        events = await pipeline.collect(CopilotRequest(query="q", optimization_mode=OptimizationMode.SPEED))

        assert events[-1].metadata["sub_queries"] == ["a", "b"]

    @pytest.mark.asyncio
    async def test_quality_mode_uses_four_queries_by_default(self, make_pipeline, llm):
        llm.query_response = "a\nb\nc\nd\ne\n</queries>"
        pipeline = make_pipeline(config=CopilotConfig())

        events = await pipeline.collect(CopilotRequest(query="q", optimization_mode=OptimizationMode.QUALITY))

        assert events[-1].type is CopilotEventType.END
        assert events[-1].metadata["sub_queries"] == ["a", "b", "c", "d"]

    @pytest.mark.asyncio
    async def test_synthesis_prompt_numbers_sources(self, make_pipeline, llm):
        pipeline = make_pipeline(config=CopilotConfig(max_queries=1))

        await pipeline.collect(CopilotRequest(query="What is photosynthesis?"))

        synthesis_prompt = llm.prompts[-1]
        assert "[1] photosynthesis process result 0" in synthesis_prompt
        assert "URL: https://example.com/photosynthesis-process/0" in synthesis_prompt


class TestDegradation:
    """Stage failures with a safe fallback do not fail the run."""

    @pytest.mark.asyncio
    async def test_partial_search_failures_still_end(self, make_pipeline, llm):
        llm.query_response = "first angle\nsecond angle\nthird angle\n</queries>"
        provider = FakeSearchProvider(failing={"first angle", "second angle"})
        pipeline = make_pipeline(search_provider=provider)

        events = await pipeline.collect(CopilotRequest(query="q"))

        assert events[-1].type is CopilotEventType.END
        assert_single_terminal(events)
        summary = events[-1].metadata
        assert summary["documents_retrieved"] == 3
        assert {d["sub_query"] for d in summary["degradations"]} == {"first angle", "second angle"}
        assert all(d["kind"] == "upstream" for d in summary["degradations"])

    @pytest.mark.asyncio
    async def test_all_searches_failing_still_synthesizes(self, make_pipeline):
        provider = FakeSearchProvider(failing={"photosynthesis process"})
        pipeline = make_pipeline(search_provider=provider)

        events = await pipeline.collect(CopilotRequest(query="What is photosynthesis?"))

        assert events[-1].type is CopilotEventType.END
        assert events[-1].metadata["sources"] == []

    @pytest.mark.asyncio
    async def test_unparsable_query_output_uses_original(self, make_pipeline, llm, search_provider):
        llm.query_response = "I am not sure what you mean."
        pipeline = make_pipeline()

        events = await pipeline.collect(CopilotRequest(query="What is photosynthesis?"))

        assert events[-1].type is CopilotEventType.END
        assert events[-1].metadata["sub_queries"] == ["What is photosynthesis?"]
        assert search_provider.calls == ["What is photosynthesis?"]

    @pytest.mark.asyncio
    async def test_query_generation_error_uses_original(self, make_pipeline, llm):
        llm.query_error = UpstreamError("ollama", "model not loaded")
        pipeline = make_pipeline()

        events = await pipeline.collect(CopilotRequest(query="What is photosynthesis?"))

        summary = events[-1].metadata
        assert events[-1].type is CopilotEventType.END
        assert summary["sub_queries"] == ["What is photosynthesis?"]
        assert summary["degradations"][0]["stage"] == "query_generation"

    @pytest.mark.asyncio
    async def test_embedding_failure_falls_back_to_unranked(self, make_pipeline, embeddings):
        embeddings.error = RuntimeError("embedding service down")
        pipeline = make_pipeline(config=CopilotConfig(max_queries=1, max_reranked_documents=2))

        events = await pipeline.collect(CopilotRequest(query="What is photosynthesis?"))

        sources = events[-1].metadata["sources"]
        assert events[-1].type is CopilotEventType.END
        assert [s["url"] for s in sources] == [
            "https://example.com/photosynthesis-process/0",
            "https://example.com/photosynthesis-process/1",
        ]
        assert all(s["similarity"] is None for s in sources)

    @pytest.mark.asyncio
    async def test_irrelevant_documents_are_dropped(self, make_pipeline, embeddings):
        embeddings.vectors = {"What is photosynthesis?": [1.0, 0.0]}
        embeddings.default = [0.0, 1.0]
        pipeline = make_pipeline(config=CopilotConfig(max_queries=1))

        events = await pipeline.collect(CopilotRequest(query="What is photosynthesis?"))

        assert events[-1].type is CopilotEventType.END
        assert events[-1].metadata["sources"] == []


class TestExtraction:
    """Optional full-page extraction."""

    @pytest.mark.asyncio
    async def test_failed_page_keeps_snippet(self, make_pipeline, llm):
        failing_url = "https://example.com/photosynthesis-process/1"
        fetcher = FakeFetcher(failing={failing_url})
        pipeline = make_pipeline(
            fetcher=fetcher,
            config=CopilotConfig(max_queries=1, enable_page_extraction=True),
        )

        events = await pipeline.collect(CopilotRequest(query="What is photosynthesis?"))

        assert events[-1].type is CopilotEventType.END
        summary = events[-1].metadata
        assert len(summary["sources"]) == 3
        assert any(d["stage"] == "content_extraction" and d["url"] == failing_url for d in summary["degradations"])
        assert "content_extraction" in summary["stage_timings_ms"]
        assert len(set(fetcher.calls)) == 3

        synthesis_prompt = llm.prompts[-1]
        assert "Dense summary of the page." in synthesis_prompt
        assert "Snippet 1 about photosynthesis process" in synthesis_prompt

    @pytest.mark.asyncio
    async def test_page_summaries_cached_by_exact_url(self, make_pipeline, fetcher, llm):
        """URLs differing only in case are different pages."""
        pipeline = make_pipeline(config=CopilotConfig(max_queries=1, enable_page_extraction=True))
        upper = SearchDocument(title="t", url="https://youtu.be/watch?v=AbC", content="snippet")
        lower = SearchDocument(title="t", url="https://youtu.be/watch?v=abc", content="snippet")

        llm.summary = "Summary of AbC."
        first = await pipeline._extract_single(upper)
        llm.summary = "Summary of abc."
        second = await pipeline._extract_single(lower)
        again = await pipeline._extract_single(upper)

        assert first.content == "Summary of AbC."
        assert second.content == "Summary of abc."
        assert again.content == "Summary of AbC."
        assert fetcher.calls == [upper.url, lower.url]


class TestFailures:
    """Unrecoverable errors end with one error event."""

    @pytest.mark.asyncio
    async def test_synthesis_failure_before_first_token(self, make_pipeline, llm, registry):
        llm.stream_error = RuntimeError("connection reset")
        llm.fail_after = 0
        pipeline = make_pipeline()

        events = await pipeline.collect(CopilotRequest(query="What is photosynthesis?"))

        assert_single_terminal(events)
        assert events[-1].type is CopilotEventType.ERROR
        assert events[-1].error_kind == "upstream"
        assert events[-1].error_code == "ERR_4005"
        assert CopilotEventType.ANSWER_CHUNK not in types_of(events)
        assert len(registry.answer_cache) == 0

    @pytest.mark.asyncio
    async def test_synthesis_failure_mid_stream_is_not_cached(self, make_pipeline, llm, registry):
        llm.stream_error = UpstreamError("ollama", "stream interrupted")
        llm.fail_after = 2
        pipeline = make_pipeline()

        events = await pipeline.collect(CopilotRequest(query="What is photosynthesis?"))

        assert types_of(events).count(CopilotEventType.ANSWER_CHUNK) == 2
        assert events[-1].type is CopilotEventType.ERROR
        assert_single_terminal(events)
        assert len(registry.answer_cache) == 0

    @pytest.mark.asyncio
    async def test_empty_query_is_rejected(self, make_pipeline, search_provider):
        pipeline = make_pipeline()

        events = await pipeline.collect(CopilotRequest(query="   "))

        assert len(events) == 1
        assert events[0].type is CopilotEventType.ERROR
        assert events[0].error_kind == "validation"
        assert search_provider.calls == []


class TestSharedWork:
    """Concurrent runs share retrieval through the performance layer."""

    @pytest.mark.asyncio
    async def test_documents_cached_across_runs(self, make_pipeline, search_provider, registry):
        pipeline = make_pipeline(config=CopilotConfig(max_queries=1))

        await pipeline.collect(CopilotRequest(query="What is photosynthesis?"))
        registry.answer_cache.clear()
        await pipeline.collect(CopilotRequest(query="What is photosynthesis?"))

        assert search_provider.calls == ["photosynthesis process"]
