"""
Copilot search: multi-query retrieval, reranking and streamed synthesis
"""

from .events import CopilotEvent, CopilotEventType
from .models import (
    ChatMessage,
    CopilotConfig,
    CopilotRequest,
    OptimizationMode,
    PipelineRun,
    PipelineStage,
    SearchDocument,
    WebSearchResult,
)
from .pipeline import CopilotPipeline
from .providers import ContentFetcher, EmbeddingModel, FetchedPage, LanguageModel, SearchProvider

__all__ = [
    "ChatMessage",
    "ContentFetcher",
    "CopilotConfig",
    "CopilotEvent",
    "CopilotEventType",
    "CopilotPipeline",
    "CopilotRequest",
    "EmbeddingModel",
    "FetchedPage",
    "LanguageModel",
    "OptimizationMode",
    "PipelineRun",
    "PipelineStage",
    "SearchDocument",
    "SearchProvider",
    "WebSearchResult",
]
