"""Capability Factory: FastAPI application entry point."""

import signal
import uuid
from contextlib import asynccontextmanager

# CRITICAL ORDER: configure_structlog MUST be called before all other package imports
# to avoid the structlog cache pitfall (structlog caches the processor chain on first use).
from capability_factory.core.logging import configure_structlog
from capability_factory.core.config import get_settings as _get_settings_early

_early_settings = _get_settings_early()
configure_structlog(
    log_level="DEBUG" if _early_settings.debug else "INFO",
    json_logs=not _early_settings.debug,
)

import structlog

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from capability_factory.api.deps import build_orchestrator, build_store
from capability_factory.api.routes import api_router
from capability_factory.core.config import get_settings
from capability_factory.core.exceptions import (
    ApprovalFailedError,
    ConcurrentUpdateError,
    FactoryError,
    NotFoundError,
    PipelineStepError,
    RemotePullRequestRequiredError,
    RemoteSyncError,
    StageMismatchError,
)
from capability_factory.db import close_db, init_db
from capability_factory.middleware.correlation import get_correlation_id, setup_correlation_middleware
from capability_factory.services.background import BackgroundTaskQueue

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown events."""
    # SIGTERM flips this so the health check returns 503 while connections drain
    app.state.shutting_down = False

    def handle_sigterm(signum, frame):
        app.state.shutting_down = True
        logger.info("sigterm_received", action="health_check_503_draining_connections")

    signal.signal(signal.SIGTERM, handle_sigterm)

    settings = get_settings()
    logger.info("startup_begin", app_name=settings.app_name, debug=settings.debug)

    if not settings.use_memory_store:
        await init_db(settings.database_url)
        logger.info("db_initialized")

    background = BackgroundTaskQueue()
    background.start()
    app.state.background = background
    app.state.orchestrator = build_orchestrator(settings, build_store(settings), background=background)
    logger.info(
        "orchestrator_initialized",
        store="memory" if settings.use_memory_store else "sql",
        local_pr_only=settings.factory_local_pr_only,
    )

    yield

    logger.info("shutdown_begin")
    await background.stop()
    if not settings.use_memory_store:
        await close_db()
    logger.info("shutdown_complete")


def status_for(exc: FactoryError) -> int:
    if isinstance(exc, PipelineStepError):
        exc = exc.cause
    match exc:
        case NotFoundError():
            return 404
        case StageMismatchError() | ConcurrentUpdateError():
            return 409
        case RemoteSyncError() | ApprovalFailedError() | RemotePullRequestRequiredError():
            return 502
        case _:
            return 400


async def factory_exception_handler(request: Request, exc: FactoryError) -> JSONResponse:
    """Render FactoryError as {error, reason, actions, correlation_id, ...}."""
    corr_id = get_correlation_id()
    status_code = status_for(exc)
    logger.warning(
        "factory_error",
        status_code=status_code,
        reason=exc.reason,
        error_type=type(exc).__name__,
        path=request.url.path,
        method=request.method,
    )
    return JSONResponse(status_code=status_code, content=exc.to_payload(corr_id))


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """HTTPException with debug_id tracking; logs server-side, returns a sanitized body."""
    debug_id = str(uuid.uuid4())
    corr_id = get_correlation_id()

    logger.error(
        "http_exception",
        status_code=exc.status_code,
        debug_id=debug_id,
        path=request.url.path,
        method=request.method,
        detail=exc.detail,
    )

    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail, "debug_id": debug_id, "correlation_id": corr_id},
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Unhandled errors: full traceback in the log, generic 500 to the client."""
    debug_id = str(uuid.uuid4())
    corr_id = get_correlation_id()

    logger.error(
        "unhandled_exception",
        debug_id=debug_id,
        path=request.url.path,
        method=request.method,
        error=str(exc),
        error_type=type(exc).__name__,
        exc_info=True,
    )

    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error", "debug_id": debug_id, "correlation_id": corr_id},
    )


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title=settings.app_name,
        description="Capability lifecycle orchestrator: gated stages, PR sync and approval gating",
        version="0.1.0",
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        lifespan=lifespan,
    )

    # Correlation ID middleware (runs first on incoming requests)
    setup_correlation_middleware(app)

    app.exception_handler(FactoryError)(factory_exception_handler)
    app.exception_handler(HTTPException)(http_exception_handler)
    app.exception_handler(Exception)(generic_exception_handler)

    app.include_router(api_router, prefix="/api/v1")

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "capability_factory.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
    )
