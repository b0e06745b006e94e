"""Storefront payments backend: FastAPI application entry point."""

import signal
import uuid
from contextlib import asynccontextmanager

# configure_structlog must run before the other storefront imports
# (structlog caches the processor chain on first use).
from storefront.core.logging import configure_structlog
from storefront.core.config import get_settings as _get_settings_early

_early_settings = _get_settings_early()
configure_structlog(
    log_level="DEBUG" if _early_settings.debug else "INFO",
    json_logs=not _early_settings.debug,
)

import structlog

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from storefront.api.routes import api_router
from storefront.core.config import get_settings
from storefront.db import close_db, close_redis, init_db, init_redis
from storefront.integrations.zoho import ZohoPaymentsClient
from storefront.middleware.correlation import get_correlation_id, setup_correlation_middleware

logger = structlog.get_logger(__name__)


def warn_on_missing_gateway_config() -> None:
    """Log missing payment credentials at startup. Webhooks fail closed without a secret."""
    settings = get_settings()
    missing = [
        name
        for name, value in {
            "zoho_account_id": settings.zoho_account_id,
            "zoho_webhook_secret": settings.zoho_webhook_secret,
            "auth_jwt_secret": settings.auth_jwt_secret,
        }.items()
        if not value
    ]
    if missing:
        logger.warning("payment_config_incomplete", missing=missing)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown events."""
    # SIGTERM flips this so /api/health returns 503 while connections drain
    app.state.shutting_down = False

    def handle_sigterm(signum, frame):
        app.state.shutting_down = True
        logger.info("sigterm_received", action="health_check_503_draining_connections")

    signal.signal(signal.SIGTERM, handle_sigterm)

    settings = get_settings()
    logger.info("startup_begin", app_name=settings.app_name, debug=settings.debug)

    await init_db(create_tables=settings.debug)
    logger.info("db_initialized")

    await init_redis()
    logger.info("redis_initialized")

    app.state.gateway = ZohoPaymentsClient(settings)
    warn_on_missing_gateway_config()

    yield

    logger.info("shutdown_begin")
    await close_redis()
    await close_db()
    logger.info("shutdown_complete")


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Log HTTPException server-side with a debug_id; return a sanitized body."""
    debug_id = str(uuid.uuid4())

    logger.error(
        "http_exception",
        status_code=exc.status_code,
        debug_id=debug_id,
        correlation_id=get_correlation_id(),
        path=request.url.path,
        method=request.method,
        user_id=getattr(request.state, "user_id", None),
        detail=exc.detail,
    )

    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail, "debug_id": debug_id},
        headers=getattr(exc, "headers", None),
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Log unhandled errors with traceback; return a generic 500."""
    debug_id = str(uuid.uuid4())

    logger.error(
        "unhandled_exception",
        debug_id=debug_id,
        correlation_id=get_correlation_id(),
        path=request.url.path,
        method=request.method,
        user_id=getattr(request.state, "user_id", None),
        error=str(exc),
        error_type=type(exc).__name__,
        exc_info=True,
    )

    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error", "debug_id": debug_id},
    )


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title=settings.app_name,
        description="Storefront payment sessions, verification and gateway webhooks",
        version="0.1.0",
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(dict.fromkeys([settings.app_url, *settings.allowed_origins])),
        allow_credentials=True,
        allow_methods=["*"],
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

    uvicorn.run(
        "storefront.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
    )
