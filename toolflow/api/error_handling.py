from __future__ import annotations

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from toolflow.api.schemas import Envelope, ErrorBody
from toolflow.logging import get_logger, sanitize_error_message
from toolflow.service.errors import WorkflowError

logger = get_logger(__name__)

_STATUS_TO_CODE = {
    400: "validation_error",
    404: "not_found",
    409: "conflict",
    422: "validation_error",
    500: "server_error",
    502: "gateway_failure",
    503: "guardrail_unavailable",
    504: "gateway_timeout",
}


def _error_code_for_status(status_code: int) -> str:
    return _STATUS_TO_CODE.get(status_code, "server_error")


def _error_response(
    status_code: int,
    message: str,
    details: dict | list | None = None,
    code: str | None = None,
) -> JSONResponse:
    """Build an error envelope response."""
    error_body = ErrorBody(
        code=code or _error_code_for_status(status_code), message=message, details=details
    )
    envelope = Envelope(status="error", error=error_body)
    return JSONResponse(status_code=status_code, content=envelope.model_dump())


def register_exception_handlers(app: FastAPI) -> None:
    """Install consistent exception handlers for workflow and request errors."""

    @app.exception_handler(WorkflowError)
    async def handle_workflow_error(request: Request, exc: WorkflowError):
        log_fn = logger.error if exc.status_code >= 500 else logger.warning
        log_fn(
            "workflow_error",
            path=request.url.path,
            method=request.method,
            status_code=exc.status_code,
            error_code=exc.error_code,
            message=exc.message,
        )
        message = exc.message
        if exc.status_code >= 500:
            message = sanitize_error_message(message)
        return _error_response(exc.status_code, message, exc.detail, code=exc.error_code)

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        errors = [
            {
                "loc": [str(part) for part in error.get("loc", ())],
                "message": error.get("msg", ""),
                "type": error.get("type"),
            }
            for error in exc.errors()
        ]
        logger.warning(
            "request_validation_error",
            path=request.url.path,
            method=request.method,
            error_count=len(errors),
        )
        return _error_response(400, "invalid request", {"errors": errors}, code="validation_error")

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException):
        message = exc.detail if isinstance(exc.detail, str) else "http error"
        details = exc.detail if isinstance(exc.detail, (dict, list)) else None
        if exc.status_code >= 500:
            logger.error(
                "http_error",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
                message=message,
            )
        return _error_response(exc.status_code, message, details)

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.error(
            "unhandled_exception",
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
            error=sanitize_error_message(str(exc)),
        )
        return _error_response(500, "internal server error", code="server_error")
