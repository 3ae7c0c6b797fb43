"""
Copilot Search API Endpoints

Multi-query search and synthesis:
- POST /api/v1/copilot/stream  Server-Sent Events, one per pipeline event
- POST /api/v1/copilot         collected answer with the run summary
"""

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends
from fastapi.responses import StreamingResponse

from config.settings import get_settings
from copilot import CopilotConfig, CopilotEventType, CopilotPipeline, CopilotRequest
from copilot.fetcher import HttpContentFetcher
from copilot.ollama import OllamaEmbeddingModel, OllamaLanguageModel
from copilot.performance import get_performance_registry
from copilot.searxng import SearXNGSearchProvider

logger = logging.getLogger("api.copilot")

router = APIRouter(prefix="/api/v1/copilot", tags=["Copilot"])

_pipeline: Optional[CopilotPipeline] = None


def build_pipeline(settings=None) -> CopilotPipeline:
    """Pipeline wired to SearXNG and Ollama from settings"""
    settings = settings or get_settings()
    return CopilotPipeline(
        search_provider=SearXNGSearchProvider(
            settings.searxng_url,
            timeout=settings.http_timeout_seconds,
            language=settings.search_language,
        ),
        fetcher=HttpContentFetcher(timeout=settings.http_timeout_seconds),
        llm=OllamaLanguageModel(
            settings.ollama_url,
            settings.chat_model,
            timeout=settings.http_timeout_seconds,
        ),
        embeddings=OllamaEmbeddingModel(
            settings.ollama_url,
            settings.embedding_model,
            timeout=settings.http_timeout_seconds,
        ),
        config=CopilotConfig.from_settings(settings),
        registry=get_performance_registry(),
    )


def get_pipeline() -> CopilotPipeline:
    """Get the shared pipeline instance"""
    global _pipeline
    if _pipeline is None:
        _pipeline = build_pipeline()
    return _pipeline


async def close_pipeline() -> None:
    global _pipeline
    if _pipeline is not None:
        await _pipeline.close()
        _pipeline = None


@router.post("/stream")
async def copilot_stream(
    request: CopilotRequest,
    pipeline: CopilotPipeline = Depends(get_pipeline)
):
    """
    Stream a copilot run as Server-Sent Events.

    Event types: status, thinking, answer-chunk, error, end. The stream
    always ends with exactly one `error` or `end` event.
    """
    logger.info(f"Copilot stream request: '{request.query[:60]}' (mode={request.optimization_mode.value})")

    async def generate_events():
        """Generator for SSE events"""
        async for event in pipeline.run(request):
            yield event.to_sse()

    return StreamingResponse(
        generate_events(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",  # Disable nginx buffering
        }
    )


@router.post("")
async def copilot_answer(
    request: CopilotRequest,
    pipeline: CopilotPipeline = Depends(get_pipeline)
) -> Dict[str, Any]:
    """Run to completion and return the answer in one response"""
    events = await pipeline.collect(request)
    terminal = events[-1]
    answer = "".join(e.data for e in events if e.type == CopilotEventType.ANSWER_CHUNK)

    if terminal.type == CopilotEventType.ERROR:
        return {
            "success": False,
            "data": None,
            "meta": {"request_id": terminal.request_id},
            "errors": [{
                "code": terminal.error_code,
                "kind": terminal.error_kind,
                "message": terminal.data,
            }],
        }

    return {
        "success": True,
        "data": {"answer": answer, **terminal.metadata},
        "meta": {"request_id": terminal.request_id},
    }
