from __future__ import annotations

from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from toolflow.service.schemas import CamelModel, WorkflowResult

_VALID_ERROR_CODES = frozenset({
    "not_found",
    "validation_error",
    "conflict",
    "server_error",
    "invalid_configuration",
    "gateway_failure",
    "gateway_timeout",
    "malformed_response",
    "dispatcher_fault",
    "guardrail_unavailable",
    "orchestrator_closed",
    "invalid_json",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    """API envelope format shared by every route."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class WorkflowStatusResponse(CamelModel):
    execution_id: str
    status: str
    current_iteration: int
    max_iterations: int
    active_tools: List[str] = Field(default_factory=list)
    cancel_requested: bool = False
    total_tool_calls: int = 0
    started_at: str
    finished_at: Optional[str] = None
    duration_ms: int = 0


class WorkflowListResponse(CamelModel):
    items: List[WorkflowStatusResponse]
    statistics: Dict[str, int]


class WorkflowCancelResponse(CamelModel):
    execution_id: str
    cancelled: bool
    status: str


__all__ = [
    "Envelope",
    "ErrorBody",
    "WorkflowCancelResponse",
    "WorkflowListResponse",
    "WorkflowResult",
    "WorkflowStatusResponse",
]
