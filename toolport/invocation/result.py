"""Invocation request and tagged result models."""

from __future__ import annotations

import hashlib
import json
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from toolport.errors import ToolportError, error_for_kind


class InvocationMode(str, Enum):
    STATELESS = "stateless"
    SESSION = "session"


class InvocationRequest(BaseModel):
    """One call: target, canonical parameters and mode."""

    server: str
    tool: str
    params: Dict[str, Any] = Field(default_factory=dict)
    mode: InvocationMode = InvocationMode.STATELESS
    call_id: str = ""
    timestamp: str = ""

    def model_post_init(self, __context: Any) -> None:
        if not self.timestamp:
            self.timestamp = datetime.now(timezone.utc).isoformat()
        if not self.call_id:
            raw = f"{self.server}.{self.tool}:{self.params}:{self.timestamp}"
            self.call_id = hashlib.sha256(raw.encode()).hexdigest()[:12]

    @property
    def qualified_name(self) -> str:
        return f"{self.server}.{self.tool}"


class InvocationResult(BaseModel):
    """
    Success carries ``value``; failure carries ``error_kind`` + ``message``
    and, when the remote side sent one, the untouched ``payload``.
    """

    ok: bool
    value: Any = None
    error_kind: Optional[str] = None
    message: str = ""
    payload: Any = None
    call_id: str = ""
    tool_name: str = ""
    duration_ms: int = 0

    @classmethod
    def success(cls, value: Any, request: Optional[InvocationRequest] = None, duration_ms: int = 0) -> "InvocationResult":
        return cls(ok=True, value=value, duration_ms=duration_ms, **_request_fields(request))

    @classmethod
    def failure(
        cls,
        error: ToolportError,
        request: Optional[InvocationRequest] = None,
        duration_ms: int = 0,
    ) -> "InvocationResult":
        return cls(
            ok=False,
            error_kind=error.kind,
            message=error.message,
            payload=getattr(error, "payload", None),
            duration_ms=duration_ms,
            **_request_fields(request),
        )

    def unwrap(self) -> Any:
        """Return the success value or raise the failure as an exception."""
        if self.ok:
            return self.value
        raise error_for_kind(self.error_kind or "ToolportError", self.message, self.payload)


def _request_fields(request: Optional[InvocationRequest]) -> Dict[str, str]:
    if request is None:
        return {}
    return {"call_id": request.call_id, "tool_name": request.qualified_name}


def payload_from_mcp_result(result: Dict[str, Any]) -> Any:
    """
    The structured value a ``tools/call`` result stands for.

    ``structuredContent`` wins; a single text part holding JSON is decoded;
    anything else is returned unchanged.
    """
    if not isinstance(result, dict):
        return result
    if result.get("structuredContent") is not None:
        return result["structuredContent"]
    content = result.get("content")
    if isinstance(content, list) and len(content) == 1:
        part = content[0]
        if isinstance(part, dict) and part.get("type") == "text":
            text = part.get("text", "")
            try:
                return json.loads(text)
            except ValueError:
                return text
    return result
