from __future__ import annotations

import asyncio
import json
from typing import Any, Dict, Optional
from uuid import uuid4

from fastapi import APIRouter, Path, WebSocket, WebSocketDisconnect
from pydantic import ValidationError

from toolflow.api.schemas import (
    Envelope,
    WorkflowCancelResponse,
    WorkflowListResponse,
    WorkflowStatusResponse,
)
from toolflow.logging import get_logger, sanitize_error_message
from toolflow.service.errors import WorkflowError
from toolflow.service.runtime import Runtime, get_runtime
from toolflow.service.schemas import WorkflowRequest

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

_EXECUTION_ID = Path(..., max_length=128, pattern=r"^[A-Za-z0-9_.:-]+$")


@router.post("/workflows", response_model=Envelope)
async def start_workflow(body: WorkflowRequest) -> Envelope:
    """Run a workflow to its end and return the result."""
    runtime = get_runtime()
    result = await runtime.orchestrator.start(body)
    return Envelope(status="ok", data=result.to_wire())


@router.get("/workflows", response_model=Envelope)
async def list_workflows() -> Envelope:
    runtime = get_runtime()
    response = WorkflowListResponse(
        items=[WorkflowStatusResponse.model_validate(item) for item in runtime.orchestrator.list_active()],
        statistics=runtime.orchestrator.statistics(),
    )
    return Envelope(status="ok", data=response.to_wire())


@router.get("/workflows/{execution_id}", response_model=Envelope)
async def get_workflow_result(execution_id: str = _EXECUTION_ID) -> Envelope:
    runtime = get_runtime()
    result = runtime.orchestrator.get_result(execution_id)
    return Envelope(status="ok", data=result.to_wire())


@router.get("/workflows/{execution_id}/status", response_model=Envelope)
async def get_workflow_status(execution_id: str = _EXECUTION_ID) -> Envelope:
    runtime = get_runtime()
    snapshot = runtime.orchestrator.get_status(execution_id)
    return Envelope(status="ok", data=WorkflowStatusResponse.model_validate(snapshot).to_wire())


@router.post("/workflows/{execution_id}/cancel", response_model=Envelope)
async def cancel_workflow(execution_id: str = _EXECUTION_ID) -> Envelope:
    runtime = get_runtime()
    # unknown ids surface as 404 here; the orchestrator itself treats them as a no-op
    runtime.orchestrator.get_status(execution_id)
    cancelled = runtime.orchestrator.cancel(execution_id)
    snapshot = runtime.orchestrator.get_status(execution_id)
    response = WorkflowCancelResponse(
        execution_id=execution_id, cancelled=cancelled, status=snapshot["status"]
    )
    return Envelope(status="ok", data=response.to_wire())


async def _listen_for_cancel(ws: WebSocket, runtime: Runtime, execution_id: str) -> None:
    """Handle client control frames while an execution streams."""
    while True:
        try:
            msg = await ws.receive_json()
        except WebSocketDisconnect:
            runtime.orchestrator.cancel(execution_id)
            return
        except json.JSONDecodeError:
            continue
        action = msg.get("action") if isinstance(msg, dict) else None
        if action == "cancel":
            runtime.orchestrator.cancel(execution_id)
        elif action == "ping":
            await ws.send_json({"event": "pong", "data": None})


def _error_frame(code: str, message: str, request_id: str, details: Any = None) -> Dict[str, Any]:
    envelope = Envelope(
        status="error",
        error={"code": code, "message": message, "details": details},
        request_id=request_id,
    )
    return envelope.model_dump()


@router.websocket("/workflows/stream")
async def websocket_workflow(ws: WebSocket):
    """Stream progress events of one execution over a WebSocket.

    The first client frame is the workflow request. The server answers with
    ``{"event": "progress"}`` frames and a final ``{"event": "result"}``.
    """
    runtime = get_runtime()
    await ws.accept()
    request_id = str(uuid4())
    execution_id: Optional[str] = None
    try:
        init = await ws.receive_json()
        if not isinstance(init, dict):
            logger.warning("websocket_invalid_request", request_id=request_id)
            await ws.send_json(
                _error_frame(
                    "validation_error", "request frame must be a JSON object", request_id
                )
            )
            await ws.close(code=4400)
            return
        request_id = init.get("requestId") or request_id
        request = WorkflowRequest.model_validate(init.get("request", init))

        events = runtime.orchestrator.stream(request)
        cancel_listener: Optional[asyncio.Task] = None
        try:
            async for event in events:
                if execution_id is None:
                    execution_id = event.execution_id
                    cancel_listener = asyncio.create_task(
                        _listen_for_cancel(ws, runtime, execution_id)
                    )
                await ws.send_json({"event": "progress", "data": event.to_dict()})
        finally:
            if cancel_listener is not None:
                cancel_listener.cancel()
            await events.aclose()

        result = runtime.orchestrator.get_result(execution_id)
        await ws.send_json({"event": "result", "data": result.to_wire(), "request_id": request_id})
        await ws.close(code=1000)
    except WebSocketDisconnect:
        logger.info("websocket_disconnected", request_id=request_id, execution_id=execution_id)
    except json.JSONDecodeError:
        logger.warning("websocket_invalid_json", request_id=request_id)
        await ws.send_json(_error_frame("invalid_json", "Invalid JSON in request", request_id))
        await ws.close(code=1003)
    except ValidationError as exc:
        logger.warning("websocket_invalid_request", request_id=request_id)
        await ws.send_json(
            _error_frame(
                "validation_error",
                "invalid request",
                request_id,
                exc.errors(include_url=False, include_context=False),
            )
        )
        await ws.close(code=4400)
    except WorkflowError as exc:
        logger.warning(
            "websocket_workflow_error",
            request_id=request_id,
            error_code=exc.error_code,
            message=exc.message,
        )
        message = exc.message if exc.status_code < 500 else sanitize_error_message(exc.message)
        await ws.send_json(_error_frame(exc.error_code, message, request_id, exc.detail))
        await ws.close(code=4400 if exc.status_code < 500 else 1011)
    except Exception as exc:
        logger.error(
            "unhandled_websocket_error",
            request_id=request_id,
            execution_id=execution_id,
            error_type=type(exc).__name__,
        )
        try:
            await ws.send_json(
                _error_frame("server_error", "An internal error occurred", request_id)
            )
            await ws.close(code=1011)
        except (WebSocketDisconnect, RuntimeError):
            # connection already gone
            return
