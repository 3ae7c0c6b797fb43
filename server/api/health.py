"""
Health Check API Endpoint for the copilot server
"""

from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import APIRouter, Depends

from config.settings import get_settings
from copilot.performance import PerformanceRegistry

from .performance import get_registry

router = APIRouter(prefix="/api/v1/health", tags=["health"])


@router.get("")
async def health_check(registry: PerformanceRegistry = Depends(get_registry)) -> Dict[str, Any]:
    """Liveness plus a short view of performance-layer load"""
    settings = get_settings()
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "version": "0.1.0",
        "environment": settings.environment,
        "collaborators": {
            "searxng": settings.searxng_url,
            "ollama": settings.ollama_url,
            "chat_model": settings.chat_model,
            "embedding_model": settings.embedding_model,
        },
        "performance": {
            "answer_cache_size": len(registry.answer_cache),
            "document_cache_size": len(registry.document_cache),
            "pending_deduplicated": registry.deduplicator.pending_count,
            "executor_running": registry.executor.running,
        },
    }
