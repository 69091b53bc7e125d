from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from typing import Any, Dict

from fastapi import FastAPI
from fastapi.responses import JSONResponse

from toolflow.api.error_handling import register_exception_handlers
from toolflow.api.routes import router
from toolflow.logging import get_logger, set_correlation_id
from toolflow.storage.redis_cache import RedisResultStore

logger = get_logger(__name__)

__version__ = "0.1.0"

REGISTRY_CLEANUP_INTERVAL_SECONDS = 60.0

_cleanup_task: asyncio.Task | None = None


async def _run_registry_cleanup(runtime, interval_seconds: float) -> None:
    """Periodically evict terminal executions past their grace period."""
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            runtime.orchestrator.cleanup()
        except Exception as exc:
            logger.warning("registry_cleanup_failed", error=str(exc))


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime on startup and close it on shutdown."""
    global _cleanup_task
    from toolflow.service.runtime import get_runtime

    try:
        runtime = get_runtime()
        _cleanup_task = asyncio.create_task(
            _run_registry_cleanup(runtime, REGISTRY_CLEANUP_INTERVAL_SECONDS)
        )
    except Exception as exc:
        logger.error("startup_runtime_failed", error=str(exc))

    yield

    try:
        runtime = get_runtime()
        if _cleanup_task:
            _cleanup_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await _cleanup_task
            _cleanup_task = None
        await runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="toolflow", version=__version__, lifespan=lifespan)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Take the correlation id from X-Request-ID or mint one, and echo it back."""
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    response.headers.setdefault("API-Version", __version__)
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
async def health() -> JSONResponse:
    """Report store reachability, gateway type and registry statistics."""
    from toolflow.service.runtime import get_runtime

    runtime = get_runtime()
    checks: Dict[str, Dict[str, Any]] = {}
    healthy = True

    store = runtime.store
    if isinstance(store, RedisResultStore):
        try:
            await asyncio.to_thread(store.verify_connection)
            checks["store"] = {"status": "healthy", "type": "redis"}
        except Exception as exc:
            healthy = False
            checks["store"] = {"status": "unhealthy", "type": "redis", "error": type(exc).__name__}
    else:
        checks["store"] = {"status": "healthy", "type": "memory"}

    checks["gateway"] = {"status": "healthy", "type": type(runtime.gateway).__name__}
    body = {
        "status": "healthy" if healthy else "unhealthy",
        "version": __version__,
        "checks": checks,
        "executions": runtime.orchestrator.statistics(),
    }
    return JSONResponse(status_code=200 if healthy else 503, content=body)
