from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from typing import Any, Dict

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from mira.api.error_handling import register_exception_handlers
from mira.api.routes import router
from mira.config import Settings
from mira.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 2.0

_sweeper_task: asyncio.Task | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the expired-entry sweeper; drain in-flight turns on shutdown."""
    global _sweeper_task
    from mira.service.runtime import get_runtime

    runtime = get_runtime()
    _sweeper_task = asyncio.create_task(
        runtime.cache.run_sweeper(
            runtime.settings.cache_sweep_interval, extra=runtime.admission.sweep
        )
    )
    logger.info(
        "response_cache_sweeper_started",
        interval_seconds=runtime.settings.cache_sweep_interval,
    )

    yield

    try:
        if _sweeper_task:
            _sweeper_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await _sweeper_task
            _sweeper_task = None
        await get_runtime().close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error_type=type(exc).__name__, error=str(exc))


app = FastAPI(title="Mira", version=__version__, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_allow_origins,
    allow_credentials=False,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "X-User-Id", "X-Request-ID"],
    expose_headers=[
        "X-Request-ID",
        "Retry-After",
        "X-RateLimit-Limit",
        "X-RateLimit-Remaining",
        "X-RateLimit-Reset",
    ],
    max_age=3600,
)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Bind a correlation id for logging and echo it in X-Request-ID."""
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("X-Frame-Options", "DENY")
    if request.url.path.startswith("/v1/") or request.url.path == "/healthz":
        response.headers.setdefault("Cache-Control", "no-store")
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
async def health() -> JSONResponse:
    """Liveness with store and shared-state checks."""
    from mira.service.runtime import get_runtime

    runtime = get_runtime()
    checks: Dict[str, Dict[str, Any]] = {}

    try:
        store_ok = await asyncio.wait_for(
            asyncio.to_thread(runtime.store.ping), HEALTH_CHECK_TIMEOUT_SECONDS
        )
    except Exception as exc:
        logger.error("health_check_store_failed", error_type=type(exc).__name__, error=str(exc))
        store_ok = False
    checks["store"] = {
        "status": "healthy" if store_ok else "unhealthy",
        "type": runtime.store_type,
    }

    try:
        state_ok = await asyncio.wait_for(runtime.shared_state.ping(), HEALTH_CHECK_TIMEOUT_SECONDS)
    except Exception as exc:
        logger.error("health_check_shared_state_failed", error_type=type(exc).__name__, error=str(exc))
        state_ok = False
    checks["shared_state"] = {
        "status": "healthy" if state_ok else "unhealthy",
        "backend": runtime.shared_state.backend,
    }

    healthy = store_ok and state_ok
    return JSONResponse(
        status_code=200 if healthy else 503,
        content={
            "status": "healthy" if healthy else "unhealthy",
            "version": __version__,
            "checks": checks,
            "inflight_turns": runtime.orchestrator.inflight,
        },
    )
