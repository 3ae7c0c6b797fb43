"""
Unified exception handling for the copilot server.

Every failure the pipeline surfaces is an AppException carrying a stable
error code and an error kind. The kind is what clients see in the terminal
`error` event of a copilot stream.

Usage:
    from core.exceptions import UpstreamError, ValidationError

    # Raise a validation error
    raise ValidationError("Query must not be empty", field="query")

    # Wrap a failed collaborator call
    raise UpstreamError("searxng", "HTTP 502 from /search", query=query)
"""

from enum import Enum
from typing import Optional, Dict, Any


class ErrorCode(str, Enum):
    """
    Standardized error codes.

    Code ranges:
    - 1xxx: Validation errors
    - 4xxx: Pipeline errors
    - 5xxx: External service errors (SearXNG, Ollama, page fetcher)
    - 9xxx: System errors (internal, timeout, rate limited)
    """

    # Validation errors (1xxx)
    VALIDATION_ERROR = "ERR_1001"
    QUERY_EMPTY = "ERR_1005"

    # Pipeline errors (4xxx)
    SYNTHESIS_FAILED = "ERR_4005"

    # External service errors (5xxx)
    UPSTREAM_ERROR = "ERR_5000"
    OLLAMA_ERROR = "ERR_5001"
    SEARXNG_ERROR = "ERR_5003"
    FETCHER_ERROR = "ERR_5006"
    EMBEDDING_ERROR = "ERR_5009"

    # System errors (9xxx)
    INTERNAL_ERROR = "ERR_9001"
    OPERATION_TIMEOUT = "ERR_9002"
    RATE_LIMITED = "ERR_9003"


class AppException(Exception):
    """
    Base exception for all application errors.

    Provides unified error response format:
    {
        "success": false,
        "data": null,
        "meta": {...},
        "errors": [{"code": "ERR_xxxx", "message": "...", "details": {...}}]
    }

    Args:
        code: ErrorCode enum value
        message: Human-readable error message
        status_code: HTTP status code (default 400)
        details: Additional error context (optional)
    """

    kind = "internal"

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        status_code: int = 400,
        details: Optional[Dict[str, Any]] = None
    ):
        self.code = code
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to error response format."""
        result = {
            "code": self.code.value,
            "kind": self.kind,
            "message": self.message,
        }
        if self.details:
            result["details"] = self.details
        return result


# =============================================================================
# Convenience subclasses for the pipeline's error kinds
# =============================================================================

class ValidationError(AppException):
    """Raised when caller input is malformed."""

    kind = "validation"

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        code: ErrorCode = ErrorCode.VALIDATION_ERROR,
        **details
    ):
        super().__init__(
            code=code,
            message=message,
            status_code=400,
            details={"field": field, **details} if field else details
        )


class OperationTimeoutError(AppException):
    """Raised when an operation exceeds its allotted time."""

    kind = "timeout"

    def __init__(
        self,
        operation: str,
        timeout_ms: float,
        message: Optional[str] = None,
        **details
    ):
        self.operation = operation
        self.timeout_ms = timeout_ms
        super().__init__(
            code=ErrorCode.OPERATION_TIMEOUT,
            message=message or f"Operation '{operation}' timed out after {timeout_ms:.0f}ms",
            status_code=504,
            details={"operation": operation, "timeout_ms": timeout_ms, **details}
        )


class UpstreamError(AppException):
    """Raised when a collaborator (search, fetch, model, embedding) fails or returns invalid data."""

    kind = "upstream"

    def __init__(
        self,
        service: str,
        message: str,
        code: Optional[ErrorCode] = None,
        **details
    ):
        # Auto-detect error code based on service name
        if code is None:
            code_map = {
                "ollama": ErrorCode.OLLAMA_ERROR,
                "searxng": ErrorCode.SEARXNG_ERROR,
                "fetcher": ErrorCode.FETCHER_ERROR,
                "embedding": ErrorCode.EMBEDDING_ERROR,
            }
            code = code_map.get(service.lower(), ErrorCode.UPSTREAM_ERROR)

        self.service = service
        super().__init__(
            code=code,
            message=f"{service} error: {message}",
            status_code=502,
            details={"service": service, **details}
        )


class RateLimitError(AppException):
    """Raised when a collaborator signals throttling."""

    kind = "rate_limit"

    def __init__(
        self,
        service: str,
        message: str = "Rate limit exceeded",
        retry_after: Optional[float] = None,
        **details
    ):
        self.service = service
        self.retry_after = retry_after
        extra = {"service": service, **details}
        if retry_after is not None:
            extra["retry_after"] = retry_after
        super().__init__(
            code=ErrorCode.RATE_LIMITED,
            message=f"{service}: {message}",
            status_code=429,
            details=extra
        )


class PipelineError(AppException):
    """Raised when a pipeline stage fails with no safe fallback."""

    kind = "internal"

    def __init__(
        self,
        message: str,
        code: ErrorCode = ErrorCode.INTERNAL_ERROR,
        **details
    ):
        super().__init__(
            code=code,
            message=message,
            status_code=500,
            details=details
        )


def error_kind(exc: BaseException) -> str:
    """Error kind for any exception, `internal` for non-application errors."""
    if isinstance(exc, AppException):
        return exc.kind
    return "internal"
