"""Polar billing webhook service: FastAPI application entry point."""

import signal
import threading
import uuid
from contextlib import asynccontextmanager

# CRITICAL ORDER: configure_structlog MUST be called before all other app imports
# to avoid the structlog cache pitfall (structlog caches the processor chain on first use).
from app.core.logging import configure_structlog
from app.core.config import get_settings as _get_settings_early

_early_settings = _get_settings_early()
configure_structlog(
    log_level="DEBUG" if _early_settings.debug else "INFO",
    json_logs=not _early_settings.debug,
)

import structlog

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

from app.api.routes import api_router
from app.core.config import Settings, get_settings
from app.core.exceptions import ErrorCode, MissingConfigError, PolarError
from app.db import Database, DocumentStore, SqlDocumentStore
from app.integrations.polar import PolarClient
from app.middleware.correlation import (
    setup_correlation_middleware,
    get_correlation_id,
)

logger = structlog.get_logger(__name__)

# Error codes for HTTPExceptions raised by the framework (unknown route, wrong method)
HTTP_ERROR_CODES = {
    400: ErrorCode.INVALID_INPUT,
    401: ErrorCode.UNAUTHORIZED,
    403: ErrorCode.UNAUTHORIZED,
    404: ErrorCode.INVALID_INPUT,
    405: ErrorCode.INVALID_INPUT,
    422: ErrorCode.INVALID_INPUT,
    502: ErrorCode.UPSTREAM,
}


def http_error_code(status_code: int) -> ErrorCode:
    if status_code in HTTP_ERROR_CODES:
        return HTTP_ERROR_CODES[status_code]
    return ErrorCode.INVALID_INPUT if status_code < 500 else ErrorCode.PROCESSING_FAILED


def validate_webhook_config(settings: Settings) -> None:
    """Fail fast if the webhook secret is missing at startup."""
    if settings.debug:
        return  # Skip in dev/test mode
    if not settings.polar_webhook_secret:
        raise MissingConfigError("Missing POLAR_WEBHOOK_SECRET at startup")
    if settings.polar_webhook_tolerance_seconds < 0:
        raise MissingConfigError("POLAR_WEBHOOK_TOLERANCE_SECONDS must be >= 0")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown events."""
    # Graceful shutdown flag: the SIGTERM handler flips it so the health check returns 503
    app.state.shutting_down = False

    def handle_sigterm(signum, frame):
        app.state.shutting_down = True
        logger.info("sigterm_received", action="health_check_503_draining_connections")

    if threading.current_thread() is threading.main_thread():
        signal.signal(signal.SIGTERM, handle_sigterm)

    # Startup
    settings: Settings = app.state.settings
    logger.info("startup_begin", app_name=settings.app_name, debug=settings.debug)

    validate_webhook_config(settings)
    logger.info("webhook_config_validated")

    owned = []
    if app.state.store is None:
        database = Database(settings.database_url, echo=False)
        app.state.database = database
        app.state.store = SqlDocumentStore(database)
        owned.append(database.dispose)
        logger.info("db_initialized")

    if app.state.polar_client is None:
        app.state.polar_client = PolarClient(settings)
        owned.append(app.state.polar_client.aclose)

    yield

    # Shutdown
    logger.info("shutdown_begin")
    for close in reversed(owned):
        await close()
    logger.info("shutdown_complete")


async def polar_exception_handler(request: Request, exc: PolarError) -> JSONResponse:
    """Render PolarError subclasses as ``{ok, code, error, debug_id}``."""
    debug_id = str(uuid.uuid4())
    log = logger.error if exc.status_code >= 500 else logger.warning
    log(
        "polar_error",
        code=str(exc.code),
        status_code=exc.status_code,
        debug_id=debug_id,
        correlation_id=get_correlation_id(),
        path=request.url.path,
        method=request.method,
        error=exc.message,
        reason=getattr(exc, "reason", None),
    )

    content = exc.to_response()
    content["debug_id"] = debug_id
    return JSONResponse(status_code=exc.status_code, content=content)


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Global exception handler for HTTPException with debug_id tracking.

    Logs errors server-side with full context, returns sanitized response to client.
    """
    debug_id = str(uuid.uuid4())
    corr_id = get_correlation_id()
    code = http_error_code(exc.status_code)

    logger.error(
        "http_exception",
        status_code=exc.status_code,
        code=str(code),
        debug_id=debug_id,
        correlation_id=corr_id,
        path=request.url.path,
        method=request.method,
        detail=exc.detail,
    )

    # Return sanitized response (no stack traces, no secrets)
    return JSONResponse(
        status_code=exc.status_code,
        content={"ok": False, "code": str(code), "error": exc.detail, "debug_id": debug_id},
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Global exception handler for unhandled errors with debug_id tracking.

    Logs full exception with traceback, returns generic 500 to client.
    """
    debug_id = str(uuid.uuid4())
    corr_id = get_correlation_id()

    logger.error(
        "unhandled_exception",
        debug_id=debug_id,
        correlation_id=corr_id,
        path=request.url.path,
        method=request.method,
        error=str(exc),
        error_type=type(exc).__name__,
        exc_info=True,
    )

    # Return generic 500 (no internal details leaked)
    return JSONResponse(
        status_code=500,
        content={
            "ok": False,
            "code": str(ErrorCode.PROCESSING_FAILED),
            "error": "Internal server error",
            "debug_id": debug_id,
        },
    )


def create_app(
    settings: Settings | None = None,
    store: DocumentStore | None = None,
    polar_client: PolarClient | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    ``store`` and ``polar_client`` are built in the lifespan when not given;
    tests inject in-memory or mocked ones.
    """
    settings = settings or get_settings()

    app = FastAPI(
        title=settings.app_name,
        description="Polar billing webhook ingestion and reconciliation",
        version="0.1.0",
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.store = store
    app.state.polar_client = polar_client
    app.state.database = None

    # Correlation ID middleware (runs first on incoming requests)
    setup_correlation_middleware(app)

    # Exception handlers
    app.exception_handler(PolarError)(polar_exception_handler)
    app.exception_handler(HTTPException)(http_exception_handler)
    app.exception_handler(Exception)(generic_exception_handler)

    # Include API routes
    app.include_router(api_router, prefix="/api")

    return app


# Create the app instance
app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "app.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
    )
