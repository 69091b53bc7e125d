from __future__ import annotations

import asyncio
import concurrent.futures
import inspect
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Mapping, Optional, Sequence, Set, Tuple, Union

from pydantic import ValidationError

from toolflow.config import Settings, get_settings
from toolflow.logging import get_logger, log_workflow_trace
from toolflow.service.dispatcher import MAX_TOOL_WORKERS, ToolDispatcher
from toolflow.service.errors import (
    GatewayFailure,
    GatewayTimeout,
    InvalidConfigurationError,
    MalformedResponseError,
    NotFoundError,
    WorkflowError,
)
from toolflow.service.gateway import ConverseRequest, GatewayEvent, ModelGateway, ModelResponse
from toolflow.service.guardrail import DIRECTION_INPUT, DIRECTION_OUTPUT, GuardrailGate
from toolflow.service.registry import ExecutionRegistry
from toolflow.service.schemas import GuardrailConfig, ToolConfig, WorkflowRequest, WorkflowResult
from toolflow.service.tools import ToolContext, ToolRegistry
from toolflow.storage.common import ToolResultStore
from toolflow.storage.memory import MemoryResultStore
from toolflow.storage.models import (
    ConversationTurn,
    Execution,
    ExecutionStatus,
    GuardrailEvaluation,
    WorkflowProgressEvent,
)

STOP_ITERATION_LIMIT = "iteration_limit_reached"
STOP_GUARDRAIL = "guardrail_intervened"
STOP_CANCELLED = "cancelled"
STOP_ERROR = "error"

TRUNCATION_NOTICE = "\n\n[Response truncated due to iteration limit]"
DATASET_SEPARATOR = "\n\nData to analyze:\n"

ProgressSink = Callable[[Dict[str, Any]], Union[None, Awaitable[None]]]


def compose_user_prompt(user_prompt: str, dataset_content: Optional[str]) -> str:
    if dataset_content:
        return f"{user_prompt}{DATASET_SEPARATOR}{dataset_content}"
    return user_prompt


def merge_usage(total: Dict[str, int], usage: Optional[Dict[str, Any]]) -> None:
    for key, value in (usage or {}).items():
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            total[key] = total.get(key, 0) + int(value)


class WorkflowOrchestrator:
    """Drives the model call / tool dispatch loop for each execution.

    ``stream(request)`` is the primary interface: an async iterator of
    :class:`WorkflowProgressEvent` that ends with exactly one terminal event
    (``completion``, ``cancelled`` or ``error``). ``start`` consumes the stream
    and returns the :class:`WorkflowResult`.

    Invalid start parameters raise :class:`InvalidConfigurationError` before
    anything is registered. Every later failure ends the execution in
    ``error`` with the partial history kept on the result.
    """

    def __init__(
        self,
        gateway: ModelGateway,
        *,
        tool_registry: Optional[ToolRegistry] = None,
        guardrail_gate: Optional[GuardrailGate] = None,
        execution_registry: Optional[ExecutionRegistry] = None,
        result_store: Optional[ToolResultStore] = None,
        settings: Optional[Settings] = None,
        handler_allowlist: Optional[Sequence[str]] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.gateway = gateway
        self.tool_registry = tool_registry or ToolRegistry()
        self.guardrail_gate = guardrail_gate or GuardrailGate()
        self.registry = execution_registry or ExecutionRegistry(
            grace_seconds=self.settings.registry_grace_seconds
        )
        self.result_store = result_store or MemoryResultStore()
        self.handler_allowlist = handler_allowlist
        self.logger = get_logger(__name__)
        workers = max(1, min(self.settings.tool_workers, MAX_TOOL_WORKERS))
        self._tool_executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=workers, thread_name_prefix="toolflow-tool"
        )
        self._closed = False

    # ------------------------------------------------------------------
    # lifecycle
    # ------------------------------------------------------------------

    async def close(self) -> None:
        """Cancel live executions and release the worker pool, store and gateway."""
        if self._closed:
            return
        self._closed = True
        live = self.registry.live_ids()
        for execution_id in live:
            self.cancel(execution_id)
        self._tool_executor.shutdown(wait=False, cancel_futures=True)
        await self.result_store.close()
        close_gateway = getattr(self.gateway, "close", None)
        if close_gateway is not None:
            await close_gateway()
        self.logger.info("orchestrator_closed", cancelled_executions=len(live))

    async def __aenter__(self) -> "WorkflowOrchestrator":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # public operations
    # ------------------------------------------------------------------

    async def start(
        self,
        request: Union[WorkflowRequest, Mapping[str, Any]],
        on_stream_update: Optional[ProgressSink] = None,
    ) -> WorkflowResult:
        """Run an execution to its end and return the result.

        ``on_stream_update`` receives each progress event as a dict, one at a
        time and in order.
        """
        execution: Optional[Execution] = None
        async for event in self.stream(request):
            if execution is None:
                execution = self.registry.get(event.execution_id)
            if on_stream_update is not None:
                await self._notify(on_stream_update, event)
        return WorkflowResult.from_execution(execution)

    async def start_workflow(
        self,
        model: str,
        system_prompt: str,
        user_prompt: str,
        dataset_content: Optional[str],
        tool_config: Union[ToolConfig, Mapping[str, Any]],
        *,
        max_iterations: Optional[int] = None,
        execution_id: Optional[str] = None,
        guardrail_config: Union[GuardrailConfig, Mapping[str, Any], None] = None,
        on_stream_update: Optional[ProgressSink] = None,
        stream: bool = False,
        tool_execution: bool = True,
    ) -> WorkflowResult:
        request = self._coerce_request(
            {
                "model": model,
                "system_prompt": system_prompt,
                "user_prompt": user_prompt,
                "dataset_content": dataset_content,
                "tool_config": tool_config,
                "max_iterations": max_iterations,
                "execution_id": execution_id,
                "guardrail_config": guardrail_config,
                "stream": stream,
                "tool_execution": tool_execution,
            }
        )
        return await self.start(request, on_stream_update)

    def cancel(self, execution_id: str) -> bool:
        """Request cooperative cancellation; unknown or finished ids are a no-op."""
        try:
            execution = self.registry.get(execution_id)
        except NotFoundError:
            self.logger.debug("cancel_unknown_execution", execution_id=execution_id)
            return False
        if execution.is_terminal:
            return False
        execution.cancel_requested = True
        self.logger.info(
            "execution_cancel_requested",
            execution_id=execution_id,
            status=execution.status.value,
            iteration=execution.current_iteration,
        )
        return True

    def get_status(self, execution_id: str) -> Dict[str, Any]:
        return self.registry.snapshot(execution_id)

    def get_result(self, execution_id: str) -> WorkflowResult:
        return WorkflowResult.from_execution(self.registry.get(execution_id))

    def list_active(self):
        return self.registry.list_active()

    def statistics(self) -> Dict[str, int]:
        return self.registry.statistics()

    def cleanup(self) -> int:
        """Evict terminal executions whose grace period has passed."""
        return self.registry.evict_expired()

    # ------------------------------------------------------------------
    # event stream
    # ------------------------------------------------------------------

    async def stream(
        self, request: Union[WorkflowRequest, Mapping[str, Any]]
    ) -> AsyncIterator[WorkflowProgressEvent]:
        request = self._coerce_request(request)
        execution, tools = self._prepare(request)
        dispatcher = ToolDispatcher(
            tools,
            self.result_store,
            default_timeout_seconds=self.settings.tool_timeout_seconds,
            idempotency_ttl_seconds=self.settings.idempotency_ttl_seconds,
            claim_ttl_seconds=self.settings.idempotency_claim_ttl_seconds,
            idempotency_wait_seconds=self.settings.idempotency_wait_seconds,
            executor=self._tool_executor,
        )
        log = self.logger.bind(execution_id=execution.id, model=execution.model)
        log.info(
            "execution_started",
            max_iterations=execution.max_iterations,
            tools=tools.names(),
            streaming=request.stream,
        )
        drive = self._drive(execution, request, tools, dispatcher, log)
        try:
            async for event in drive:
                yield event
        except WorkflowError as exc:
            yield self._fail(execution, exc, log)
        except Exception as exc:
            log.error(
                "execution_failed_unexpectedly",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            yield self._fail(
                execution,
                WorkflowError(
                    "Unexpected workflow failure",
                    detail={"errorType": type(exc).__name__},
                ),
                log,
            )
        finally:
            await drive.aclose()
            if not execution.is_terminal:
                # consumer stopped iterating or the surrounding task was cancelled
                execution.cancel_requested = True
                execution.stop_reason = STOP_CANCELLED
                execution.final_text = self._partial_text(execution)
                execution.transition(ExecutionStatus.CANCELLED, reason="event stream closed")
                log.info("execution_abandoned", iteration=execution.current_iteration)
            self.registry.mark_terminal(execution.id)
            log_workflow_trace(
                [event.to_dict() for event in execution.workflow],
                logger=log,
                status=execution.status.value,
                duration_ms=execution.duration_ms(),
            )

    async def _drive(
        self,
        execution: Execution,
        request: WorkflowRequest,
        tools: ToolRegistry,
        dispatcher: ToolDispatcher,
        log: Any,
    ) -> AsyncIterator[WorkflowProgressEvent]:
        execution.transition(ExecutionStatus.INITIALIZING)
        yield self._emit(
            execution,
            "execution_start",
            {"model": execution.model, "toolNames": tools.names(), "streaming": request.stream},
        )

        guardrail = request.guardrail_config
        user_text = compose_user_prompt(request.user_prompt, request.dataset_content)
        if guardrail is not None and guardrail.screen_input:
            evaluation = await self.guardrail_gate.evaluate(user_text, DIRECTION_INPUT, guardrail)
            execution.guardrail_evaluations.append(evaluation)
            yield self._guardrail_event(execution, evaluation)
            if evaluation.intervened:
                user_text = evaluation.filtered_content
        execution.append_turn(ConversationTurn.user(user_text))

        if execution.cancel_requested:
            yield self._cancel(execution, log)
            return
        execution.transition(ExecutionStatus.ITERATING)

        seen_tool_use_ids: Set[str] = set()
        while True:
            if execution.cancel_requested:
                yield self._cancel(execution, log)
                return

            iteration = execution.advance_iteration()
            yield self._emit(execution, "iteration_start", {})
            yield self._emit(
                execution, "model_request", {"messageCount": len(execution.conversation)}
            )

            screen_output = guardrail is not None and guardrail.screen_output
            held_tokens: List[str] = []
            response: Optional[ModelResponse] = None
            async for item in self._call_model(execution, request, tools):
                if item.type == "token":
                    # Screened output is only streamed once the guardrail has passed it.
                    if screen_output:
                        held_tokens.append(item.text)
                    else:
                        yield self._emit(execution, "token", {"text": item.text}, record=False)
                elif item.type == "response":
                    response = item.response
            if response is None:
                raise MalformedResponseError("Model stream ended without a response")
            merge_usage(execution.usage, response.usage)
            self._check_response(response, seen_tool_use_ids)

            text = response.text or ""
            intervened = False
            if text and screen_output:
                evaluation = await self.guardrail_gate.evaluate(text, DIRECTION_OUTPUT, guardrail)
                execution.guardrail_evaluations.append(evaluation)
                yield self._guardrail_event(execution, evaluation)
                if evaluation.intervened:
                    text = evaluation.filtered_content
                    intervened = True
                    held_tokens = [text] if text else []
            for token in held_tokens:
                yield self._emit(execution, "token", {"text": token}, record=False)

            execution.append_turn(ConversationTurn.assistant(text, tuple(response.tool_calls)))
            yield self._emit(
                execution,
                "model_response",
                {
                    "stopReason": response.stop_reason,
                    "toolUseCount": len(response.tool_calls),
                    "usage": dict(response.usage),
                },
            )

            if intervened and (guardrail.terminate_on_output_intervention or not response.tool_calls):
                yield self._complete(
                    execution, text, STOP_GUARDRAIL, log, reason="output guardrail intervened"
                )
                return
            if not response.tool_calls:
                yield self._complete(execution, text, response.stop_reason, log)
                return

            requested = [call.summary() for call in response.tool_calls]
            yield self._emit(execution, "tool_requests", {"toolRequests": requested})

            if execution.current_iteration >= execution.max_iterations:
                execution.iteration_limit_reached = True
                partial = self._partial_text(execution)
                yield self._emit(
                    execution,
                    "iteration_limit_reached",
                    {"pendingToolRequests": requested, "hasPartialText": bool(partial)},
                )
                log.warning("iteration_limit_reached", pending_tools=len(requested))
                final_text = f"{partial}{TRUNCATION_NOTICE}" if partial else ""
                yield self._complete(
                    execution, final_text, STOP_ITERATION_LIMIT, log, reason="iteration limit reached"
                )
                return

            if execution.cancel_requested:
                yield self._cancel(execution, log)
                return

            results = []
            for call in response.tool_calls:
                execution.active_tools.append(call.tool_name)
                yield self._emit(
                    execution,
                    "tool_execution",
                    {
                        "toolName": call.tool_name,
                        "toolUseId": call.tool_use_id,
                        "parameters": call.parameters,
                    },
                )
                try:
                    result = await dispatcher.dispatch(
                        call,
                        ToolContext(
                            execution_id=execution.id,
                            tool_use_id=call.tool_use_id,
                            iteration=iteration,
                            metadata=dict(call.metadata),
                        ),
                    )
                finally:
                    execution.active_tools.remove(call.tool_name)
                results.append(result)
                execution.tool_executions.append(result)
                if result.success:
                    yield self._emit(
                        execution,
                        "tool_result",
                        {
                            "toolName": result.tool_name,
                            "toolUseId": result.tool_use_id,
                            "success": True,
                            "fromCache": result.from_cache,
                            "durationMs": result.duration_ms,
                        },
                    )
                else:
                    yield self._emit(
                        execution,
                        "tool_error",
                        {
                            "toolName": result.tool_name,
                            "toolUseId": result.tool_use_id,
                            "success": False,
                            "error": result.error,
                            "errorCode": result.error_code,
                        },
                    )
            for result in results:
                execution.append_turn(ConversationTurn.from_tool_result(result))

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------

    def _coerce_request(
        self, request: Union[WorkflowRequest, Mapping[str, Any]]
    ) -> WorkflowRequest:
        if isinstance(request, WorkflowRequest):
            return request
        try:
            return WorkflowRequest.model_validate(dict(request))
        except ValidationError as exc:
            raise InvalidConfigurationError(
                "Invalid workflow request",
                detail={"errors": exc.errors(include_url=False, include_context=False)},
            ) from exc

    def _prepare(self, request: WorkflowRequest) -> Tuple[Execution, ToolRegistry]:
        if self._closed:
            raise WorkflowError(
                "Orchestrator is closed", status_code=503, error_code="orchestrator_closed"
            )
        if not request.model.strip():
            raise InvalidConfigurationError("model is required")
        if not request.user_prompt.strip():
            raise InvalidConfigurationError("userPrompt is required")
        max_iterations = (
            request.max_iterations
            if request.max_iterations is not None
            else self.settings.default_max_iterations
        )
        if max_iterations < 1:
            raise InvalidConfigurationError(
                "maxIterations must be at least 1", detail={"maxIterations": max_iterations}
            )
        if max_iterations > self.settings.max_iterations_hard_cap:
            raise InvalidConfigurationError(
                f"maxIterations may not exceed {self.settings.max_iterations_hard_cap}",
                detail={"maxIterations": max_iterations},
            )
        if request.tool_execution:
            if not request.tool_config.tools:
                raise InvalidConfigurationError(
                    "Tool execution requested but toolConfig defines no tools"
                )
            tools = self.tool_registry.scoped(request.tool_config, allowlist=self.handler_allowlist)
        else:
            tools = ToolRegistry()

        execution = Execution.new(request.model, max_iterations, request.execution_id)
        self.registry.register(execution.id, execution)
        return execution, tools

    async def _call_model(
        self, execution: Execution, request: WorkflowRequest, tools: ToolRegistry
    ) -> AsyncIterator[GatewayEvent]:
        converse_request = ConverseRequest(
            model=execution.model,
            system_prompt=request.system_prompt,
            messages=tuple(execution.conversation),
            tools=tools.specs(),
            max_tokens=request.max_tokens or self.settings.model_max_tokens,
            temperature=(
                request.temperature
                if request.temperature is not None
                else self.settings.model_temperature
            ),
        )
        timeout = self.settings.model_timeout_seconds or None
        try:
            if request.stream:
                loop = asyncio.get_running_loop()
                deadline = loop.time() + timeout if timeout else None
                events = self.gateway.converse_stream(converse_request)
                try:
                    while True:
                        remaining = max(deadline - loop.time(), 0.001) if deadline else None
                        try:
                            item = await asyncio.wait_for(events.__anext__(), timeout=remaining)
                        except StopAsyncIteration:
                            break
                        yield item
                finally:
                    aclose = getattr(events, "aclose", None)
                    if aclose is not None:
                        await aclose()
            else:
                response = await asyncio.wait_for(
                    self.gateway.converse(converse_request), timeout=timeout
                )
                yield GatewayEvent(type="response", response=response)
        except asyncio.TimeoutError as exc:
            raise GatewayTimeout(
                f"Model call exceeded {timeout}s",
                detail={"model": execution.model, "iteration": execution.current_iteration},
            ) from exc
        except WorkflowError:
            raise
        except Exception as exc:
            raise GatewayFailure(
                f"Model call failed: {type(exc).__name__}",
                detail={"model": execution.model, "iteration": execution.current_iteration},
            ) from exc

    @staticmethod
    def _check_response(response: ModelResponse, seen: Set[str]) -> None:
        if not response.tool_calls and not (response.text or "").strip():
            raise MalformedResponseError(
                "Model returned neither text nor a tool request",
                detail={"stopReason": response.stop_reason},
            )
        ids = [call.tool_use_id for call in response.tool_calls]
        duplicates = {i for i in ids if ids.count(i) > 1} | (set(ids) & seen)
        if duplicates:
            raise MalformedResponseError(
                "Model reused tool use ids", detail={"toolUseIds": sorted(duplicates)}
            )
        seen.update(ids)

    @staticmethod
    def _partial_text(execution: Execution) -> str:
        for turn in reversed(execution.conversation):
            if turn.role == "assistant" and turn.content.strip():
                return turn.content
        return ""

    def _emit(
        self,
        execution: Execution,
        event_type: str,
        payload: Dict[str, Any],
        *,
        record: bool = True,
    ) -> WorkflowProgressEvent:
        event = WorkflowProgressEvent(
            type=event_type,
            execution_id=execution.id,
            iteration=execution.current_iteration,
            max_iterations=execution.max_iterations,
            payload=payload,
        )
        if record:
            execution.workflow.append(event)
        return event

    def _guardrail_event(
        self, execution: Execution, evaluation: GuardrailEvaluation
    ) -> WorkflowProgressEvent:
        return self._emit(
            execution,
            "guardrail",
            {
                "direction": evaluation.direction,
                "action": evaluation.action,
                "violationCount": len(evaluation.violations),
                "degraded": evaluation.degraded,
                "guardrailId": evaluation.guardrail_id,
            },
        )

    def _complete(
        self,
        execution: Execution,
        text: str,
        stop_reason: str,
        log: Any,
        *,
        reason: str = "model returned a final response",
    ) -> WorkflowProgressEvent:
        execution.final_text = text
        execution.stop_reason = stop_reason
        execution.transition(ExecutionStatus.COMPLETED, reason=reason)
        log.info(
            "execution_completed",
            stop_reason=stop_reason,
            iterations=execution.current_iteration,
            tool_calls=len(execution.tool_executions),
        )
        return self._emit(
            execution,
            "completion",
            {
                "success": True,
                "finalResponse": text,
                "stopReason": stop_reason,
                "iterationLimitReached": execution.iteration_limit_reached,
                "totalToolCalls": len(execution.tool_executions),
            },
        )

    def _cancel(self, execution: Execution, log: Any) -> WorkflowProgressEvent:
        execution.stop_reason = STOP_CANCELLED
        execution.final_text = self._partial_text(execution)
        execution.transition(ExecutionStatus.CANCELLED, reason="cancelled by request")
        log.info("execution_cancelled", iteration=execution.current_iteration)
        return self._emit(
            execution,
            "cancelled",
            {
                "success": False,
                "stopReason": STOP_CANCELLED,
                "totalToolCalls": len(execution.tool_executions),
            },
        )

    def _fail(self, execution: Execution, exc: WorkflowError, log: Any) -> WorkflowProgressEvent:
        execution.error = exc.to_dict()
        execution.stop_reason = STOP_ERROR
        execution.final_text = self._partial_text(execution)
        execution.transition(ExecutionStatus.ERROR, reason=exc.message)
        log.warning(
            "execution_failed",
            error_code=exc.error_code,
            error=exc.message,
            iteration=execution.current_iteration,
        )
        return self._emit(
            execution,
            "error",
            {
                "success": False,
                "stopReason": STOP_ERROR,
                "error": exc.message,
                "errorCode": exc.error_code,
                "totalToolCalls": len(execution.tool_executions),
            },
        )

    async def _notify(self, sink: ProgressSink, event: WorkflowProgressEvent) -> None:
        try:
            outcome = sink(event.to_dict())
            if inspect.isawaitable(outcome):
                await outcome
        except Exception as exc:
            self.logger.warning(
                "progress_sink_failed",
                execution_id=event.execution_id,
                event_type=event.type,
                error_type=type(exc).__name__,
            )
