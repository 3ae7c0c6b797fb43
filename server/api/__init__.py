"""
Copilot Server API Module
REST and SSE endpoints for the copilot search pipeline
"""

from .copilot import router as copilot_router
from .health import router as health_router
from .performance import router as performance_router

__all__ = [
    "copilot_router",
    "health_router",
    "performance_router",
]
