"""
Copilot Server Main Application
FastAPI server for multi-query search and synthesis
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from config import settings, setup_logging
from core.exceptions import AppException
from copilot.performance import get_performance_registry

from api.copilot import close_pipeline, router as copilot_router
from api.health import router as health_router
from api.performance import router as performance_router

# Configure logging
setup_logging()
logger = logging.getLogger("copilot_server")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Manage application lifespan events
    """
    logger.info("Starting copilot server")
    logger.info(f"Environment: {settings.environment}")
    logger.info(f"Debug mode: {settings.debug}")

    registry = get_performance_registry()
    await registry.start()
    logger.info("Performance sweeps started")

    try:
        yield
    finally:
        logger.info("Shutting down copilot server")
        await registry.stop()
        await close_pipeline()
        logger.info("Performance sweeps stopped and collaborator clients closed")


app = FastAPI(
    title="Copilot Search Server",
    description="Multi-query search and synthesis with bounded concurrency, deduplication, adaptive timeouts and caching",
    version="0.1.0",
    docs_url="/docs" if settings.debug else None,
    redoc_url="/redoc" if settings.debug else None,
    lifespan=lifespan
)

app.include_router(copilot_router)
app.include_router(performance_router)
app.include_router(health_router)


def _error_meta(request: Request) -> dict:
    return {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "request_id": getattr(request.state, "request_id", None),
        "path": str(request.url.path)
    }


@app.exception_handler(AppException)
async def app_exception_handler(request: Request, exc: AppException):
    """
    Handler for application exceptions.

    Response format:
    {
        "success": false,
        "data": null,
        "meta": {"timestamp": "...", "request_id": "...", "path": "..."},
        "errors": [{"code": "ERR_xxxx", "kind": "...", "message": "...", "details": {...}}]
    }
    """
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "success": False,
            "data": None,
            "meta": _error_meta(request),
            "errors": [exc.to_dict()]
        }
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """
    Global exception handler for unhandled errors.
    Logs the error and returns unified error response format.
    """
    logger.error(f"Unhandled exception: {exc}", exc_info=True)

    error_details = {"type": type(exc).__name__}
    if settings.debug:
        error_details["detail"] = str(exc)

    return JSONResponse(
        status_code=500,
        content={
            "success": False,
            "data": None,
            "meta": _error_meta(request),
            "errors": [{
                "code": "ERR_9001",
                "kind": "internal",
                "message": "An unexpected error occurred" if not settings.debug else str(exc),
                "details": error_details
            }]
        }
    )


if __name__ == "__main__":
    uvicorn.run(
        "main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level="info" if not settings.debug else "debug",
        access_log=True
    )
