"""
Pydantic models and run state for the copilot search pipeline
"""

import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from core.exceptions import PipelineError, error_kind


class OptimizationMode(str, Enum):
    """Speed/quality trade-off; bounds the number of generated sub-queries"""
    SPEED = "speed"
    BALANCED = "balanced"
    QUALITY = "quality"

    @property
    def query_limit(self) -> int:
        return {"speed": 2, "balanced": 3, "quality": 4}[self.value]


class ChatMessage(BaseModel):
    """One prior conversation turn"""
    role: str = Field(..., description="human or assistant")
    content: str


class CopilotRequest(BaseModel):
    """Input to one pipeline run"""
    query: str = Field(..., description="User question")
    history: List[ChatMessage] = Field(default_factory=list)
    optimization_mode: OptimizationMode = OptimizationMode.BALANCED
    system_instructions: Optional[str] = Field(None, description="Extra instructions for synthesis")


class CopilotConfig(BaseModel):
    """Pipeline tuning values"""
    max_queries: int = Field(5, ge=1, le=5)
    max_sources_per_query: int = Field(5, ge=1)
    rerank_threshold: float = Field(0.7, ge=0.0, le=1.0)
    enable_page_extraction: bool = False
    max_extraction_urls: int = Field(10, ge=1)
    max_reranked_documents: int = Field(15, ge=1)
    extraction_content_chars: int = Field(4000, ge=100)
    embedding_model: str = "default"

    @classmethod
    def from_settings(cls, settings=None) -> "CopilotConfig":
        if settings is None:
            from config.settings import get_settings
            settings = get_settings()
        return cls(
            max_queries=settings.max_queries,
            max_sources_per_query=settings.max_sources_per_query,
            rerank_threshold=settings.rerank_threshold,
            enable_page_extraction=settings.enable_page_extraction,
            max_extraction_urls=settings.max_extraction_urls,
            max_reranked_documents=settings.max_reranked_documents,
            extraction_content_chars=settings.extraction_content_chars,
            embedding_model=settings.embedding_model,
        )

    def query_limit(self, mode: OptimizationMode) -> int:
        return min(mode.query_limit, self.max_queries)


class WebSearchResult(BaseModel):
    """Raw result returned by a search provider"""
    title: str
    url: str
    snippet: str = ""
    source_domain: str = ""


class SearchDocument(BaseModel):
    """A retrieved source. Immutable: extraction and reranking produce copies."""
    model_config = ConfigDict(frozen=True)

    title: str
    url: str
    content: str
    source_query: str = ""
    similarity: Optional[float] = None
    extracted: bool = False

    @field_validator("url")
    @classmethod
    def url_not_empty(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("url must not be empty")
        return v

    @classmethod
    def from_result(cls, result: WebSearchResult, source_query: str) -> "SearchDocument":
        return cls(
            title=result.title,
            url=result.url,
            content=result.snippet,
            source_query=source_query,
        )


class PipelineStage(str, Enum):
    QUERY_GENERATION = "query_generation"
    PARALLEL_RETRIEVAL = "parallel_retrieval"
    CONTENT_EXTRACTION = "content_extraction"
    RERANKING = "reranking"
    SYNTHESIS = "synthesis"
    DONE = "done"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (PipelineStage.DONE, PipelineStage.FAILED)


_STAGE_ORDER = [
    PipelineStage.QUERY_GENERATION,
    PipelineStage.PARALLEL_RETRIEVAL,
    PipelineStage.CONTENT_EXTRACTION,
    PipelineStage.RERANKING,
    PipelineStage.SYNTHESIS,
    PipelineStage.DONE,
]


@dataclass
class PipelineRun:
    """
    State of one user request. Stages only move forward; FAILED is
    reachable from any non-terminal stage.
    """
    query: str
    mode: OptimizationMode = OptimizationMode.BALANCED
    history: List[ChatMessage] = field(default_factory=list)
    system_instructions: Optional[str] = None
    request_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])

    state: PipelineStage = PipelineStage.QUERY_GENERATION
    sub_queries: List[str] = field(default_factory=list)
    retrieved: List[SearchDocument] = field(default_factory=list)
    reranked: List[SearchDocument] = field(default_factory=list)
    answer: str = ""
    from_cache: bool = False
    stage_timings: Dict[str, float] = field(default_factory=dict)
    errors: List[Dict[str, Any]] = field(default_factory=list)

    started_at: float = field(default_factory=time.perf_counter)
    _stage_started: float = field(default_factory=time.perf_counter, repr=False)

    def advance(self, stage: PipelineStage) -> None:
        if self.state.terminal:
            raise PipelineError(f"Run {self.request_id} already finished ({self.state.value})")
        if stage is not PipelineStage.FAILED and _STAGE_ORDER.index(stage) <= _STAGE_ORDER.index(self.state):
            raise PipelineError(
                f"Illegal stage transition {self.state.value} -> {stage.value}",
                request_id=self.request_id,
            )
        self._close_stage()
        self.state = stage

    def _close_stage(self) -> None:
        now = time.perf_counter()
        self.stage_timings[self.state.value] = round((now - self._stage_started) * 1000, 1)
        self._stage_started = now

    def record_error(self, stage: PipelineStage, exc: BaseException, **details) -> None:
        """Keep a degradation that did not abort the run"""
        self.errors.append({
            "stage": stage.value,
            "kind": error_kind(exc),
            "message": str(exc),
            **details,
        })

    def fail(self, exc: BaseException) -> None:
        if not self.state.terminal:
            self.record_error(self.state, exc)
            self.advance(PipelineStage.FAILED)

    @property
    def elapsed_ms(self) -> float:
        return round((time.perf_counter() - self.started_at) * 1000, 1)

    def summary(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "from_cache": self.from_cache,
            "sub_queries": self.sub_queries,
            "documents_retrieved": len(self.retrieved),
            "sources": [{"title": d.title, "url": d.url, "similarity": d.similarity} for d in self.reranked],
            "stage_timings_ms": self.stage_timings,
            "degradations": self.errors,
            "elapsed_ms": self.elapsed_ms,
        }
