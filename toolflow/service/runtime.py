from __future__ import annotations

import asyncio
import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from toolflow.config import ModelBackend, get_settings, reset_settings_cache
from toolflow.logging import get_logger
from toolflow.service.gateway import ModelGateway, OpenAIGateway, StubGateway
from toolflow.service.guardrail import GuardrailGate
from toolflow.service.orchestrator import WorkflowOrchestrator
from toolflow.service.registry import ExecutionRegistry
from toolflow.service.tools import ToolRegistry
from toolflow.storage.common import ToolResultStore
from toolflow.storage.memory import MemoryResultStore
from toolflow.storage.redis_cache import RedisResultStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password of a connection URL with ``***`` for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds the singleton engine components for the FastAPI app and CLI."""

    def __init__(self, tool_registry: Optional[ToolRegistry] = None):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
            model_backend=self.settings.model_backend.value,
        )
        self.store = self._build_store()
        self.gateway = self._build_gateway()
        self.execution_registry = ExecutionRegistry(
            grace_seconds=self.settings.registry_grace_seconds
        )
        self.guardrail_gate = GuardrailGate()
        self.orchestrator = WorkflowOrchestrator(
            self.gateway,
            tool_registry=tool_registry,
            guardrail_gate=self.guardrail_gate,
            execution_registry=self.execution_registry,
            result_store=self.store,
            settings=self.settings,
            handler_allowlist=self.settings.tool_handler_allowlist,
        )
        logger.info(
            "runtime_init_completed",
            store_type=type(self.store).__name__,
            gateway_type=type(self.gateway).__name__,
        )

    def _build_store(self) -> ToolResultStore:
        if self.settings.use_memory_store:
            return MemoryResultStore()

        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                store = RedisResultStore(self.settings.redis_url)
                store.verify_connection()
                return store
            except Exception as exc:
                redis_error = exc

        if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
            raise RuntimeError(
                "Redis is required for tool idempotency across workers; start Redis or set "
                "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
            ) from redis_error

        fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(self.settings.redis_url),
            error=str(redis_error) if redis_error else "redis_url_missing",
            message=(
                f"Running without Redis under {fallback_mode}; write-tool idempotency "
                "is in-memory only."
            ),
            mode=fallback_mode,
        )
        return MemoryResultStore()

    def _build_gateway(self) -> ModelGateway:
        if self.settings.test_mode or self.settings.model_backend == ModelBackend.STUB:
            return StubGateway()
        return OpenAIGateway(
            api_key=self.settings.model_api_key,
            base_url=self.settings.model_base_url,
            timeout_seconds=self.settings.model_timeout_seconds,
        )

    async def close(self) -> None:
        await self.orchestrator.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None:
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                asyncio.run(runtime.close())
            else:
                loop.create_task(runtime.close())

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
