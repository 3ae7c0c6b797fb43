"""
Copilot Search Orchestration Pipeline

One run per user query, stages strictly in sequence:

    QueryGeneration -> ParallelRetrieval -> [ContentExtraction] -> Reranking -> Synthesis -> Done

with FAILED reachable from any stage on an unrecoverable error. The run is
an async generator of CopilotEvents that ends with exactly one `end` or
`error` event.

Degradation policy:
- query generation failure: use the original query as the only sub-query
- failed retrieval or extraction tasks: dropped from the stage output
- embedding failure: unranked URL-deduplicated documents, capped
- synthesis failure: FAILED, single `error` event

Usage:
    pipeline = CopilotPipeline(searxng, fetcher, llm, embeddings)
    async for event in pipeline.run(CopilotRequest(query="What is photosynthesis?")):
        print(event.to_sse())
"""

import logging
from typing import AsyncIterator, List, Optional

from core.exceptions import AppException, ErrorCode, PipelineError, UpstreamError, ValidationError

from . import events
from .events import CopilotEvent
from .models import (
    CopilotConfig,
    CopilotRequest,
    PipelineRun,
    PipelineStage,
    SearchDocument,
)
from .performance import ParallelTask, PerformanceRegistry, get_performance_registry, hash_payload
from .prompts import build_extraction_prompt, build_synthesis_prompt
from .providers import ContentFetcher, EmbeddingModel, LanguageModel, SearchProvider
from .query_generator import generate_sub_queries
from .reranker import dedupe_by_url, rerank

logger = logging.getLogger("copilot.pipeline")

# Namespaces inside the document cache
WEB_SEARCH_NAMESPACE = "web-search"
PAGE_EXTRACTION_NAMESPACE = "page-extraction"


class CopilotPipeline:
    """Multi-query search and synthesis over injected collaborators"""

    def __init__(
        self,
        search_provider: SearchProvider,
        fetcher: ContentFetcher,
        llm: LanguageModel,
        embeddings: EmbeddingModel,
        config: Optional[CopilotConfig] = None,
        registry: Optional[PerformanceRegistry] = None
    ):
        self.search_provider = search_provider
        self.fetcher = fetcher
        self.llm = llm
        self.embeddings = embeddings
        self.config = config or CopilotConfig.from_settings()
        self.registry = registry or get_performance_registry()

    async def run(self, request: CopilotRequest) -> AsyncIterator[CopilotEvent]:
        run = PipelineRun(
            query=request.query.strip(),
            mode=request.optimization_mode,
            history=list(request.history),
            system_instructions=request.system_instructions,
        )
        rid = run.request_id

        if not run.query:
            exc = ValidationError("Query must not be empty", field="query", code=ErrorCode.QUERY_EMPTY)
            run.fail(exc)
            logger.info(f"[{rid}] Rejected empty query")
            yield events.error(rid, exc)
            return

        logger.info(f"[{rid}] Copilot run started: '{run.query[:60]}' (mode={run.mode.value})")

        cached = self.registry.answer_cache.get_query(run.query, run.mode.value)
        if cached is not None:
            run.answer = cached
            run.from_cache = True
            run.advance(PipelineStage.DONE)
            logger.info(f"[{rid}] Answer served from cache")
            yield events.status(rid, "Using cached answer", cached=True)
            yield events.answer_chunk(rid, cached)
            yield events.end(rid, **run.summary())
            return

        try:
            yield events.status(rid, "Generating search queries...", stage=PipelineStage.QUERY_GENERATION.value)
            yield events.thinking(rid, "Generating multiple search queries for comprehensive research...")
            run.sub_queries = await self._generate_queries(run)

            run.advance(PipelineStage.PARALLEL_RETRIEVAL)
            yield events.status(rid, "Searching multiple sources...", queries=run.sub_queries)
            run.retrieved = await self._retrieve(run)

            if self.config.enable_page_extraction and run.retrieved:
                run.advance(PipelineStage.CONTENT_EXTRACTION)
                yield events.status(rid, "Extracting full page content...")
                run.retrieved = await self._extract(run)

            run.advance(PipelineStage.RERANKING)
            run.reranked = await self._rerank(run)

            run.advance(PipelineStage.SYNTHESIS)
            yield events.status(rid, "Synthesizing answer...", sources=len(run.reranked))
            async for chunk in self._synthesize(run):
                yield events.answer_chunk(rid, chunk)

        except AppException as e:
            logger.error(f"[{rid}] Run failed in {run.state.value}: {e.message}")
            run.fail(e)
            yield events.error(rid, e)
            return
        except Exception as e:
            logger.exception(f"[{rid}] Unexpected failure in {run.state.value}: {e}")
            wrapped = PipelineError(f"Unexpected failure during {run.state.value}: {e}")
            run.fail(wrapped)
            yield events.error(rid, wrapped)
            return

        if run.answer:
            self.registry.answer_cache.set_query(run.query, run.mode.value, run.answer)
        run.advance(PipelineStage.DONE)
        logger.info(
            f"[{rid}] Copilot run finished in {run.elapsed_ms:.0f}ms "
            f"({len(run.sub_queries)} queries, {len(run.reranked)} sources, {len(run.errors)} degradations)"
        )
        yield events.end(rid, **run.summary())

    async def collect(self, request: CopilotRequest) -> List[CopilotEvent]:
        """Run to completion and return every event"""
        return [event async for event in self.run(request)]

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    async def _generate_queries(self, run: PipelineRun) -> List[str]:
        limit = self.config.query_limit(run.mode)
        history = [message.model_dump() for message in run.history]
        dedup = self.registry.deduplicator

        async def generate():
            return await generate_sub_queries(self.llm, run.query, run.history, limit)

        try:
            queries = await self.registry.timeouts.run_query_generation(
                lambda: dedup.deduplicate_query_generation(run.query, history, generate, {"limit": limit})
            )
        except Exception as e:
            logger.warning(f"[{run.request_id}] Query generation failed, using original query: {e}")
            run.record_error(PipelineStage.QUERY_GENERATION, e)
            queries = [run.query]

        logger.debug(f"[{run.request_id}] Sub-queries: {queries}")
        return queries

    async def _retrieve(self, run: PipelineRun) -> List[SearchDocument]:
        timeouts = self.registry.timeouts
        dedup = self.registry.deduplicator
        mode = run.mode.value

        def search_task(query: str):
            return lambda: timeouts.run_search(
                lambda: dedup.deduplicate_search(query, mode, lambda: self._search_single(query)),
                search_type="web",
            )

        tasks = [
            ParallelTask(
                id=f"{run.request_id}-search-{index}",
                task=search_task(query),
                priority=2 if index == 0 else 1,
                timeout_ms=timeouts.config.max_timeout_ms,
            )
            for index, query in enumerate(run.sub_queries)
        ]
        results = await self.registry.executor.execute_with_results(tasks)

        documents: List[SearchDocument] = []
        for query, result in zip(run.sub_queries, results):
            if result.ok:
                documents.extend(result.result)
            else:
                logger.warning(f"[{run.request_id}] Search failed for '{query[:40]}': {result.error}")
                run.record_error(PipelineStage.PARALLEL_RETRIEVAL, result.error, sub_query=query)

        logger.debug(f"[{run.request_id}] Retrieved {len(documents)} documents from {len(run.sub_queries)} queries")
        return documents

    async def _search_single(self, query: str) -> List[SearchDocument]:
        """Document cache first, then the search provider"""
        limit = self.config.max_sources_per_query
        options = {"max_results": limit}
        cache = self.registry.document_cache

        cached = cache.get_query(query, WEB_SEARCH_NAMESPACE, options)
        if cached is not None:
            logger.debug(f"Document cache hit for '{query[:40]}'")
            return cached

        results = await self.search_provider.search(query, max_results=limit)
        documents = [
            SearchDocument.from_result(result, source_query=query)
            for result in results
            if result.url
        ][:limit]
        cache.set_query(query, WEB_SEARCH_NAMESPACE, documents, options)
        return documents

    async def _extract(self, run: PipelineRun) -> List[SearchDocument]:
        unique = dedupe_by_url(run.retrieved)
        targets = unique[:self.config.max_extraction_urls]
        timeouts = self.registry.timeouts
        dedup = self.registry.deduplicator

        def extraction_task(doc: SearchDocument):
            return lambda: timeouts.run_page_extraction(
                lambda: dedup.deduplicate_page_extraction(doc.url, lambda: self._extract_single(doc))
            )

        tasks = [
            ParallelTask(
                id=f"{run.request_id}-extract-{index}",
                task=extraction_task(doc),
                timeout_ms=timeouts.config.max_timeout_ms,
            )
            for index, doc in enumerate(targets)
        ]
        results = await self.registry.executor.execute_with_results(tasks)

        extracted: List[SearchDocument] = []
        for doc, result in zip(targets, results):
            if result.ok:
                extracted.append(result.result)
            else:
                logger.warning(f"[{run.request_id}] Extraction failed for {doc.url[:60]}: {result.error}")
                run.record_error(PipelineStage.CONTENT_EXTRACTION, result.error, url=doc.url)
                extracted.append(doc)

        succeeded = sum(1 for r in results if r.ok)
        logger.debug(f"[{run.request_id}] Extracted {succeeded}/{len(targets)} pages")
        return extracted + unique[len(targets):]

    async def _extract_single(self, doc: SearchDocument) -> SearchDocument:
        cache = self.registry.document_cache
        # URLs are case-sensitive: hash the raw URL, never a normalized query
        key = hash_payload({"url": doc.url}, prefix=PAGE_EXTRACTION_NAMESPACE)
        cached = cache.get(key)
        if cached is not None:
            return doc.model_copy(update={"content": cached, "extracted": True})

        page = await self.fetcher.fetch(doc.url)
        content = page.text[:self.config.extraction_content_chars]
        summary = (await self.llm.complete(build_extraction_prompt(content))).strip()
        if not summary:
            raise UpstreamError("ollama", "empty page summary", url=doc.url)

        cache.set(key, summary)
        return doc.model_copy(update={
            "title": doc.title or page.title,
            "content": summary,
            "extracted": True,
        })

    async def _rerank(self, run: PipelineRun) -> List[SearchDocument]:
        timeouts = self.registry.timeouts
        dedup = self.registry.deduplicator
        model = self.config.embedding_model

        async def embed(texts: List[str]) -> List[List[float]]:
            return await timeouts.run_embedding(
                lambda: dedup.deduplicate_embedding(texts, model, lambda: self.embeddings.embed_documents(texts))
            )

        return await rerank(
            run.query,
            run.retrieved,
            embed,
            threshold=self.config.rerank_threshold,
            cap=self.config.max_reranked_documents,
        )

    async def _synthesize(self, run: PipelineRun) -> AsyncIterator[str]:
        prompt = build_synthesis_prompt(run.query, run.reranked, run.system_instructions)
        try:
            async for chunk in self.llm.stream(prompt):
                if chunk:
                    run.answer += chunk
                    yield chunk
        except AppException:
            raise
        except Exception as e:
            raise UpstreamError("ollama", f"synthesis failed: {e}", code=ErrorCode.SYNTHESIS_FAILED) from e

    async def close(self) -> None:
        for collaborator in (self.search_provider, self.fetcher, self.llm, self.embeddings):
            await collaborator.close()
