"""Remote Optimizer: FastAPI application entry point."""

import asyncio
import signal
import uuid
from contextlib import asynccontextmanager, suppress

# structlog caches loggers on first use, so it is configured before any
# module that calls get_logger() is imported.
from remote_optimizer.core.logging import configure_structlog
from remote_optimizer.core.config import get_settings as _get_settings_early

_early_settings = _get_settings_early()
configure_structlog(
    log_level="DEBUG" if _early_settings.debug else "INFO",
    json_logs=not _early_settings.debug,
)

import structlog

from fastapi import FastAPI, Request, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from remote_optimizer.api.routes import api_router
from remote_optimizer.core.config import get_settings
from remote_optimizer.db import close_db, get_session_factory, init_db
from remote_optimizer.middleware.correlation import (
    setup_correlation_middleware,
    get_correlation_id,
)
from remote_optimizer.services.remote_optimization_service import (
    RemoteOptimizationService,
    build_remote_optimization_service,
)

logger = structlog.get_logger(__name__)


async def _stop_background_task(task: asyncio.Task | None) -> None:
    if task is None:
        return
    task.cancel()
    with suppress(asyncio.CancelledError):
        await task


async def _close_service(service: RemoteOptimizationService) -> None:
    """Flush debounced job writes, then release the HTTP clients."""
    await service.shutdown()
    await service.hetzner.aclose()
    await service.notifier.email_client.aclose()
    if service.tasks:
        logger.warning("shutdown_with_active_drivers", active_drivers=len(service.tasks))


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the service graph on startup and tear it down on shutdown."""
    app.state.shutting_down = False

    def handle_sigterm(signum, frame):
        app.state.shutting_down = True
        logger.info("sigterm_received", action="health_check_503_draining_connections")

    signal.signal(signal.SIGTERM, handle_sigterm)

    settings = get_settings()
    logger.info("startup_begin", app_name=settings.app_name, debug=settings.debug)

    await init_db()
    service = build_remote_optimization_service(settings, get_session_factory())
    app.state.remote_optimizer = service

    # Jobs left active by a previous process are resolved right away
    service.reconciler.trigger(force=True)
    reconciler_task = None
    if settings.reconciler_enabled:
        reconciler_task = asyncio.create_task(service.reconciler.run_forever(), name="stale-job-reconciler")
    logger.info(
        "startup_complete",
        reconciler_enabled=settings.reconciler_enabled,
        reconcile_interval_seconds=settings.reconcile_interval_seconds,
    )

    yield

    logger.info("shutdown_begin")
    await _stop_background_task(reconciler_task)
    await _close_service(service)
    await close_db()
    logger.info("shutdown_complete")


def _error_response(request: Request, status_code: int, client_detail, event: str, **context) -> JSONResponse:
    """Log under a fresh debug_id and return it to the client with the detail."""
    debug_id = str(uuid.uuid4())
    logger.error(
        event,
        status_code=status_code,
        debug_id=debug_id,
        correlation_id=get_correlation_id(),
        path=request.url.path,
        method=request.method,
        **context,
    )
    return JSONResponse(status_code=status_code, content={"detail": client_detail, "debug_id": debug_id})


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    return _error_response(request, exc.status_code, exc.detail, "http_exception", detail=exc.detail)


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Unhandled errors become a generic 500; the traceback stays server-side."""
    return _error_response(
        request,
        500,
        "Internal server error",
        "unhandled_exception",
        error=str(exc),
        error_type=type(exc).__name__,
        exc_info=exc,
    )


def create_app() -> FastAPI:
    settings = get_settings()

    app = FastAPI(
        title=settings.app_name,
        description="Runs strategy optimizations on ephemeral Hetzner servers",
        version="0.1.0",
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.frontend_url],
        allow_credentials=True,
        allow_methods=["GET", "POST", "DELETE"],
        allow_headers=["*"],
    )
    setup_correlation_middleware(app)

    app.exception_handler(HTTPException)(http_exception_handler)
    app.exception_handler(Exception)(generic_exception_handler)

    app.include_router(api_router, prefix="/api")
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("remote_optimizer.main:app", host="0.0.0.0", port=8000)
