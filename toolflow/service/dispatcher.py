from __future__ import annotations

import asyncio
import concurrent.futures
import time
from typing import Any, Callable, Dict, List, Optional, Set

from toolflow.config import MAX_TOOL_TIMEOUT_SECONDS
from toolflow.logging import get_logger
from toolflow.service.errors import (
    IDEMPOTENCY_CONFLICT,
    IDEMPOTENCY_KEY_REQUIRED,
    PARAMETER_VALIDATION,
    TOOL_ERROR,
    TOOL_NOT_FOUND,
    TOOL_TIMEOUT,
    DispatcherFault,
    ToolError,
)
from toolflow.service.tools import Tool, ToolContext, ToolRegistry
from toolflow.storage.common import (
    DEFAULT_CLAIM_TTL_SECONDS,
    DEFAULT_IDEMPOTENCY_TTL_SECONDS,
    ToolResultStore,
    completed_record,
    idempotency_cache_key,
    in_progress_record,
    is_completed,
)
from toolflow.storage.errors import StoreUnavailableError
from toolflow.storage.models import ToolCallRequest, ToolCallResult

DEFAULT_TOOL_TIMEOUT_SECONDS = 15
DEFAULT_TOOL_WORKERS = 8
MAX_TOOL_WORKERS = 16
IDEMPOTENCY_POLL_INTERVAL_SECONDS = 0.05


class ToolDispatcher:
    """Turns a :class:`ToolCallRequest` into a :class:`ToolCallResult`.

    Every tool-level failure (unknown tool, invalid parameters, missing
    idempotency key, timeout, handler exception) comes back as an unsuccessful
    result so the model can react to it. Only result store failures escape, as
    :class:`DispatcherFault`.

    A write tool whose handler times out or is cancelled keeps its idempotency
    claim until the handler actually stops; the result is then stored, or the
    claim released, in the background.
    """

    def __init__(
        self,
        registry: ToolRegistry,
        store: ToolResultStore,
        *,
        default_timeout_seconds: float = DEFAULT_TOOL_TIMEOUT_SECONDS,
        idempotency_ttl_seconds: int = DEFAULT_IDEMPOTENCY_TTL_SECONDS,
        claim_ttl_seconds: int = DEFAULT_CLAIM_TTL_SECONDS,
        idempotency_wait_seconds: float = 10.0,
        executor: Optional[concurrent.futures.Executor] = None,
        tool_workers: int = DEFAULT_TOOL_WORKERS,
    ) -> None:
        self.registry = registry
        self.store = store
        self.default_timeout_seconds = min(default_timeout_seconds, MAX_TOOL_TIMEOUT_SECONDS)
        self.idempotency_ttl_seconds = idempotency_ttl_seconds
        self.claim_ttl_seconds = claim_ttl_seconds
        self.idempotency_wait_seconds = idempotency_wait_seconds
        self.logger = get_logger(__name__)
        self._owns_executor = executor is None
        self._executor = executor or concurrent.futures.ThreadPoolExecutor(
            max_workers=max(1, min(tool_workers, MAX_TOOL_WORKERS)),
            thread_name_prefix="toolflow-tool",
        )
        self._executor_shutdown = False
        self._background: Set[asyncio.Future] = set()

    def shutdown(self, wait: bool = True) -> None:
        """Shut down the worker pool if this dispatcher created it."""
        if self._executor_shutdown or not self._owns_executor:
            return
        self._executor_shutdown = True
        self._executor.shutdown(wait=wait, cancel_futures=not wait)

    async def dispatch(self, request: ToolCallRequest, context: ToolContext) -> ToolCallResult:
        started = time.monotonic()
        tool = self.registry.get(request.tool_name)
        if tool is None:
            self.logger.warning(
                "tool_not_found", tool=request.tool_name, tool_use_id=request.tool_use_id
            )
            return self._failure(
                request,
                TOOL_NOT_FOUND,
                f"Tool '{request.tool_name}' is not registered",
                started,
                detail={"available": self.registry.names()},
            )

        errors = self._validate_parameters(tool, request.parameters)
        if errors:
            self.logger.info(
                "tool_parameters_invalid", tool=tool.name, errors=len(errors)
            )
            return self._failure(
                request,
                PARAMETER_VALIDATION,
                "Invalid parameters: " + "; ".join(e["message"] for e in errors),
                started,
                detail={"errors": errors},
            )

        if tool.writes:
            key = self._idempotency_key(tool, request)
            if not key:
                return self._failure(
                    request,
                    IDEMPOTENCY_KEY_REQUIRED,
                    f"Tool '{tool.name}' modifies state and requires an idempotency key "
                    f"('{tool.idempotency_key_field}' parameter or request metadata)",
                    started,
                )
            return await self._dispatch_idempotent(tool, request, context, key, started)

        return await self._invoke(tool, request, context, started)

    def _validate_parameters(self, tool: Tool, params: Dict[str, Any]) -> List[Dict[str, Any]]:
        validator = self.registry.validator(tool.name)
        if validator is None:
            return []
        errors = sorted(validator.iter_errors(params), key=lambda e: list(e.path))
        return [
            {"path": "/".join(str(p) for p in error.path), "message": error.message}
            for error in errors
        ]

    @staticmethod
    def _idempotency_key(tool: Tool, request: ToolCallRequest) -> Optional[str]:
        key = request.metadata.get("idempotency_key") or request.parameters.get(
            tool.idempotency_key_field
        )
        if key is None or key == "":
            return None
        return str(key)

    async def _dispatch_idempotent(
        self,
        tool: Tool,
        request: ToolCallRequest,
        context: ToolContext,
        key: str,
        started: float,
    ) -> ToolCallResult:
        cache_key = idempotency_cache_key(tool.name, key)
        claim = in_progress_record(context.execution_id, request.tool_use_id)
        try:
            # A claim released by a failed first writer may be taken over once.
            for _ in range(2):
                acquired, existing = await self.store.acquire_slot(
                    cache_key, claim, self.claim_ttl_seconds
                )
                if acquired:
                    break
                record = existing if is_completed(existing) else await self._await_completion(cache_key)
                if record is not None:
                    break
            if not acquired:
                if is_completed(record):
                    self.logger.info(
                        "tool_idempotent_replay",
                        tool=tool.name,
                        tool_use_id=request.tool_use_id,
                        first_tool_use_id=record.get("tool_use_id"),
                    )
                    return ToolCallResult(
                        tool_use_id=request.tool_use_id,
                        tool_name=tool.name,
                        parameters=request.parameters,
                        success=True,
                        result=record.get("result"),
                        from_cache=True,
                        duration_ms=self._elapsed_ms(started),
                    )
                return self._failure(
                    request,
                    IDEMPOTENCY_CONFLICT,
                    f"Operation with idempotency key '{key}' is still in progress",
                    started,
                )

            scoped = ToolContext(
                execution_id=context.execution_id,
                tool_use_id=context.tool_use_id,
                iteration=context.iteration,
                idempotency_key=key,
                metadata=context.metadata,
            )
            handed_off: List[asyncio.Future] = []

            def settle_later(task: asyncio.Future) -> None:
                # The handler outlived this call; the claim stays until it finishes.
                handed_off.append(task)
                self._spawn(self._settle_claim(tool, request, cache_key, claim, task))

            result = await self._invoke(tool, request, scoped, started, on_abandon=settle_later)
            if result.success:
                stored = await self.store.complete_slot(
                    cache_key,
                    claim["owner"],
                    completed_record(claim, result.result),
                    self.idempotency_ttl_seconds,
                )
                if not stored:
                    self.logger.warning(
                        "tool_result_not_stored",
                        tool=tool.name,
                        tool_use_id=request.tool_use_id,
                        idempotency_key=key,
                    )
            elif not handed_off:
                await self.store.release_slot(cache_key, claim["owner"])
            return result
        except StoreUnavailableError as exc:
            self.logger.error(
                "tool_result_store_unavailable", tool=tool.name, error=exc.message
            )
            raise DispatcherFault(
                "Tool result store unavailable",
                detail={"tool": tool.name, **exc.detail},
            ) from exc

    async def _settle_claim(
        self,
        tool: Tool,
        request: ToolCallRequest,
        cache_key: str,
        claim: Dict[str, Any],
        task: asyncio.Future,
    ) -> None:
        await asyncio.wait({task})
        try:
            if task.cancelled() or task.exception() is not None:
                await self.store.release_slot(cache_key, claim["owner"])
                outcome = "released"
            else:
                stored = await self.store.complete_slot(
                    cache_key,
                    claim["owner"],
                    completed_record(claim, task.result()),
                    self.idempotency_ttl_seconds,
                )
                outcome = "completed" if stored else "lost"
        except StoreUnavailableError as exc:
            self.logger.error(
                "tool_claim_settle_failed",
                tool=tool.name,
                tool_use_id=request.tool_use_id,
                error=exc.message,
            )
            return
        self.logger.info(
            "tool_claim_settled",
            tool=tool.name,
            tool_use_id=request.tool_use_id,
            outcome=outcome,
        )

    def _spawn(self, coro) -> None:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _await_completion(self, cache_key: str) -> Optional[Dict[str, Any]]:
        deadline = time.monotonic() + self.idempotency_wait_seconds
        while True:
            record = await self.store.get_record(cache_key)
            # None: the first writer failed and released the claim
            if record is None or is_completed(record):
                return record
            if time.monotonic() >= deadline:
                return record
            await asyncio.sleep(IDEMPOTENCY_POLL_INTERVAL_SECONDS)

    async def _invoke(
        self,
        tool: Tool,
        request: ToolCallRequest,
        context: ToolContext,
        started: float,
        *,
        on_abandon: Optional[Callable[[asyncio.Future], None]] = None,
    ) -> ToolCallResult:
        timeout = min(
            tool.timeout_seconds or self.default_timeout_seconds, MAX_TOOL_TIMEOUT_SECONDS
        )
        task = asyncio.ensure_future(
            tool.invoke(request.parameters, context, executor=self._executor)
        )
        try:
            done, _ = await asyncio.wait({task}, timeout=timeout)
        except asyncio.CancelledError:
            self._abandon(tool, task, on_abandon)
            raise
        if not done:
            self.logger.warning("tool_timeout", tool=tool.name, timeout=timeout)
            self._abandon(tool, task, on_abandon)
            return self._failure(
                request, TOOL_TIMEOUT, f"Tool '{tool.name}' timed out after {timeout}s", started
            )

        try:
            output = task.result()
        except ToolError as exc:
            self.logger.info("tool_error", tool=tool.name, code=exc.code, error=exc.message)
            return self._failure(request, exc.code, exc.message, started, detail=exc.detail)
        except Exception as exc:
            self.logger.warning(
                "tool_handler_failed",
                tool=tool.name,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return self._failure(request, TOOL_ERROR, str(exc) or type(exc).__name__, started)

        return ToolCallResult(
            tool_use_id=request.tool_use_id,
            tool_name=tool.name,
            parameters=request.parameters,
            success=True,
            result=output,
            duration_ms=self._elapsed_ms(started),
        )

    @staticmethod
    def _abandon(
        tool: Tool,
        task: asyncio.Future,
        on_abandon: Optional[Callable[[asyncio.Future], None]],
    ) -> None:
        # Sync handlers keep running in their worker thread; only coroutines can be cancelled.
        if tool.is_async:
            task.cancel()
        if on_abandon is not None:
            on_abandon(task)
        else:
            task.add_done_callback(_drop_outcome)


    def _failure(
        self,
        request: ToolCallRequest,
        code: str,
        message: str,
        started: float,
        *,
        detail: Optional[Dict[str, Any]] = None,
    ) -> ToolCallResult:
        return ToolCallResult(
            tool_use_id=request.tool_use_id,
            tool_name=request.tool_name,
            parameters=request.parameters,
            success=False,
            error=message,
            error_code=code,
            error_detail=detail,
            duration_ms=self._elapsed_ms(started),
        )

    @staticmethod
    def _elapsed_ms(started: float) -> int:
        return int((time.monotonic() - started) * 1000)


def _drop_outcome(task: asyncio.Future) -> None:
    if not task.cancelled():
        task.exception()
