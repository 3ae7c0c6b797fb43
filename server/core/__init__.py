"""
Copilot Server Core Components
Shared exception hierarchy for the pipeline, performance layer and API
"""

from .exceptions import (
    AppException,
    ErrorCode,
    OperationTimeoutError,
    PipelineError,
    RateLimitError,
    UpstreamError,
    ValidationError,
    error_kind,
)

__all__ = [
    "AppException",
    "ErrorCode",
    "OperationTimeoutError",
    "PipelineError",
    "RateLimitError",
    "UpstreamError",
    "ValidationError",
    "error_kind",
]
