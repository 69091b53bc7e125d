from __future__ import annotations

from typing import Optional


class WorkflowError(Exception):
    """Base class for execution-level failures.

    Each exception class defines both an HTTP status_code and a stable
    error_code. The error_code is the short machine classification carried by
    a failed execution and by API error envelopes:
    - invalid_configuration (400)
    - not_found (404)
    - conflict (409)
    - dispatcher_fault (500)
    - gateway_failure / malformed_response (502)
    - guardrail_unavailable (503)
    - gateway_timeout (504)
    """

    status_code: int = 500
    error_code: str = "server_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}

    def to_dict(self) -> dict:
        return {"code": self.error_code, "message": self.message, "details": self.detail or None}


class InvalidConfigurationError(WorkflowError):
    """Start parameters are invalid; fatal and never retried (400)."""
    status_code = 400
    error_code = "invalid_configuration"


class NotFoundError(WorkflowError):
    """Execution id is unknown or has been evicted (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(WorkflowError):
    """An execution with the same id is still live (409)."""
    status_code = 409
    error_code = "conflict"


class GatewayFailure(WorkflowError):
    """Model backend call failed (502)."""
    status_code = 502
    error_code = "gateway_failure"


class MalformedResponseError(GatewayFailure):
    """Model response carried neither text nor tool use, or was inconsistent."""
    error_code = "malformed_response"


class GatewayTimeout(GatewayFailure):
    """Model call exceeded its timeout (504)."""
    status_code = 504
    error_code = "gateway_timeout"


class DispatcherFault(WorkflowError):
    """Dispatcher-internal failure such as an unavailable result store (500)."""
    status_code = 500
    error_code = "dispatcher_fault"


class GuardrailUnavailable(WorkflowError):
    """Guardrail evaluation failed and the configuration forbids failing open (503)."""
    status_code = 503
    error_code = "guardrail_unavailable"


# Tool-turn error codes. These are reported back to the model and never abort
# the loop.
TOOL_NOT_FOUND = "tool_not_found"
PARAMETER_VALIDATION = "parameter_validation"
TOOL_TIMEOUT = "tool_timeout"
TOOL_ERROR = "tool_error"
IDEMPOTENCY_KEY_REQUIRED = "idempotency_key_required"
IDEMPOTENCY_CONFLICT = "idempotency_conflict"


class ToolError(Exception):
    """Raised by tool handlers to report a recoverable failure to the model."""

    def __init__(
        self, message: str, *, code: str = TOOL_ERROR, detail: Optional[dict] = None
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.detail = detail or {}


__all__ = [
    "WorkflowError",
    "InvalidConfigurationError",
    "NotFoundError",
    "ConflictError",
    "GatewayFailure",
    "MalformedResponseError",
    "GatewayTimeout",
    "DispatcherFault",
    "GuardrailUnavailable",
    "ToolError",
    "TOOL_NOT_FOUND",
    "PARAMETER_VALIDATION",
    "TOOL_TIMEOUT",
    "TOOL_ERROR",
    "IDEMPOTENCY_KEY_REQUIRED",
    "IDEMPOTENCY_CONFLICT",
]
