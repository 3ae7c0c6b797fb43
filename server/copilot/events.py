"""
Copilot stream events

A pipeline run yields a sequence of CopilotEvents ending in exactly one
terminal event: `end` on success or `error` on failure.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from core.exceptions import AppException, error_kind


class CopilotEventType(str, Enum):
    STATUS = "status"
    THINKING = "thinking"
    ANSWER_CHUNK = "answer-chunk"
    ERROR = "error"
    END = "end"

    @property
    def terminal(self) -> bool:
        return self in (CopilotEventType.ERROR, CopilotEventType.END)


@dataclass
class CopilotEvent:
    """One event in a copilot stream"""

    type: CopilotEventType
    request_id: str
    data: str = ""
    metadata: Dict[str, Any] = field(default_factory=dict)
    error_kind: Optional[str] = None
    error_code: Optional[str] = None
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    @property
    def terminal(self) -> bool:
        return self.type.terminal

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "type": self.type.value,
            "request_id": self.request_id,
            "timestamp": self.timestamp,
            "data": self.data,
        }
        if self.metadata:
            result["metadata"] = self.metadata
        if self.error_kind:
            result["error_kind"] = self.error_kind
        if self.error_code:
            result["error_code"] = self.error_code
        return result

    def to_sse(self) -> str:
        """Convert to Server-Sent Event format"""
        return f"event: {self.type.value}\ndata: {json.dumps(self.to_dict(), default=str)}\n\n"


def status(request_id: str, message: str, **metadata) -> CopilotEvent:
    return CopilotEvent(CopilotEventType.STATUS, request_id, data=message, metadata=metadata)


def thinking(request_id: str, message: str) -> CopilotEvent:
    return CopilotEvent(CopilotEventType.THINKING, request_id, data=message)


def answer_chunk(request_id: str, text: str) -> CopilotEvent:
    return CopilotEvent(CopilotEventType.ANSWER_CHUNK, request_id, data=text)


def end(request_id: str, **metadata) -> CopilotEvent:
    return CopilotEvent(CopilotEventType.END, request_id, metadata=metadata)


def error(request_id: str, exc: BaseException) -> CopilotEvent:
    """Terminal error event carrying the error kind and message"""
    code = exc.code.value if isinstance(exc, AppException) else None
    message = exc.message if isinstance(exc, AppException) else str(exc) or type(exc).__name__
    return CopilotEvent(
        CopilotEventType.ERROR,
        request_id,
        data=message,
        error_kind=error_kind(exc),
        error_code=code,
    )
