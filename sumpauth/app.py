from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from typing import Any, Dict

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from sumpauth.api.error_handling import register_exception_handlers
from sumpauth.api.routes import router
from sumpauth.logging import get_logger, set_correlation_id
from sumpauth.storage.errors import StorageError

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3

_cleanup_task: asyncio.Task | None = None


async def _run_periodic_cleanup(interval_seconds: int) -> None:
    """Sweep expired sessions and reset tokens until cancelled."""
    from sumpauth.service.runtime import get_runtime

    while True:
        await asyncio.sleep(interval_seconds)
        try:
            counts = await get_runtime().cleanup_expired()
        except StorageError as exc:
            # Expired rows are already refused on read; a missed sweep only delays reclamation
            logger.warning("periodic_cleanup_failed", error=exc.message)
            continue
        logger.info("periodic_cleanup_complete", **counts)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown events."""
    global _cleanup_task
    from sumpauth.service.runtime import get_runtime

    runtime = get_runtime()
    _cleanup_task = asyncio.create_task(
        _run_periodic_cleanup(runtime.settings.cleanup_interval_seconds)
    )
    logger.info(
        "cleanup_task_started", interval_seconds=runtime.settings.cleanup_interval_seconds
    )

    yield

    if _cleanup_task:
        _cleanup_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await _cleanup_task
        _cleanup_task = None
    runtime.close()
    logger.info("runtime_cleanup_complete")


app = FastAPI(title="Sump Auth", version=__version__, lifespan=lifespan)


@app.middleware("http")
async def add_correlation_id(request: Request, call_next):
    """Tag every log line of the request with X-Request-ID and echo it back."""
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_security_headers(request: Request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    if request.url.path.startswith("/v1/"):
        response.headers.setdefault("Cache-Control", "no-store")
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
async def health() -> JSONResponse:
    """Report store connectivity and version."""
    from sumpauth.service.runtime import get_runtime

    runtime = get_runtime()
    checks: Dict[str, Any] = {"store": {"type": type(runtime.store).__name__}}
    healthy = True
    check_connection = getattr(runtime.store, "verify_connection", None)
    if check_connection is not None:
        try:
            await asyncio.wait_for(
                asyncio.to_thread(check_connection), HEALTH_CHECK_TIMEOUT_SECONDS
            )
            checks["store"]["status"] = "ok"
        except (asyncio.TimeoutError, StorageError) as exc:
            logger.error("health_check_store_failed", error=type(exc).__name__)
            checks["store"]["status"] = "error"
            healthy = False
    else:
        checks["store"]["status"] = "ok"

    return JSONResponse(
        status_code=200 if healthy else 503,
        content={
            "status": "healthy" if healthy else "unhealthy",
            "version": __version__,
            "checks": checks,
        },
    )
