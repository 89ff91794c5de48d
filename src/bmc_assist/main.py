"""Main FastAPI application for BMC Assist."""

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from .api.routes import router as api_router
from .assistant.completion import CompletionProvider
from .config import Settings, get_settings
from .database.connection import db_manager
from .database.migrations import create_tables
from .errors import AssistantError, MethodNotAllowed, RateLimited
from .http_client import close_http_client, get_http_client
from .middleware.rate_limit import RateLimiter, RateLimitMiddleware
from .observability.logging import configure_logging
from .observability.metrics import record_rejection
from .security.auth import IdentityVerifier
from .usage.recorder import UsageRecorder
from .usage.store import SQLAlchemyUsageStore

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    # Startup
    settings: Settings = app.state.settings

    # Configure structured logging
    configure_logging(
        environment=settings.environment,
        log_level="DEBUG" if settings.debug else "INFO",
    )

    # Initialize database and make sure the usage table exists
    db_manager.initialize(settings.get_async_database_url())
    try:
        await create_tables()
        logger.info("Database: Connected")
    except Exception as e:
        logger.warning("Database unavailable at startup: %s. Usage will not be recorded.", e)

    # Warm up HTTP client (creates connection pool)
    get_http_client()

    logger.info("%s v%s started", settings.app_name, settings.app_version)
    logger.info("Environment: %s", settings.environment)
    if not settings.enable_auth:
        logger.warning("Authentication disabled: /api/chat serves anonymous traffic")
    if not settings.anthropic_api_key:
        logger.warning("ANTHROPIC_API_KEY not set: /api/chat will answer 500")

    yield

    # Shutdown
    logger.info("Shutting down BMC Assist...")

    # Let in-flight usage writes finish before the engine goes away
    await app.state.usage_recorder.drain()

    await app.state.completion_provider.close()

    await db_manager.close()
    logger.info("Database connections closed")

    await close_http_client()
    logger.info("HTTP client closed")


async def assistant_error_handler(request: Request, exc: AssistantError) -> JSONResponse:
    headers = None
    if isinstance(exc, RateLimited) and exc.retry_after is not None:
        headers = {"Retry-After": str(int(exc.retry_after) + 1)}
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.message},
        headers=headers,
    )


async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Render framework HTTP errors with the same ``{"error": ...}`` shape."""
    message = exc.detail
    if exc.status_code == MethodNotAllowed.status_code:
        message = MethodNotAllowed.message
        record_rejection("method_not_allowed")
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": message},
        headers=getattr(exc, "headers", None),
    )


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """Create and configure FastAPI application."""
    settings = settings or get_settings()

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description="Streaming AI suggestions for the Business Model Canvas editor",
        lifespan=lifespan,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
    )

    app.state.settings = settings
    app.state.rate_limiter = RateLimiter(
        limit=settings.rate_limit_requests,
        window_seconds=settings.rate_limit_window_seconds,
    )
    app.state.identity_verifier = IdentityVerifier(
        base_url=settings.supabase_url,
        service_key=settings.supabase_service_role_key,
    )
    app.state.completion_provider = CompletionProvider(
        api_key=settings.anthropic_api_key,
        model=settings.anthropic_model,
        max_tokens=settings.max_output_tokens,
        timeout_seconds=settings.stream_timeout_seconds,
    )
    app.state.usage_recorder = UsageRecorder(SQLAlchemyUsageStore(), tool=settings.usage_tool)

    # Rate limiting runs inside CORS so 429 responses still carry CORS headers
    app.add_middleware(RateLimitMiddleware, rate_limiter=app.state.rate_limiter)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.get_cors_origins(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(AssistantError, assistant_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_error_handler)

    # Include API routes
    app.include_router(api_router, prefix="/api")

    # Root endpoint
    @app.get("/")
    async def root():
        return {
            "service": settings.app_name,
            "version": settings.app_version,
            "environment": settings.environment,
            "endpoints": {
                "health": "/health",
                "chat": "POST /api/chat",
                "usage": "GET /api/usage",
            },
        }

    @app.get("/health")
    async def health_check():
        return {
            "status": "healthy",
            "service": settings.app_name,
            "version": settings.app_version,
            "environment": settings.environment,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    @app.get("/health/live")
    async def health_live():
        """Liveness probe: the process is running."""
        return {"status": "alive"}

    @app.get("/health/ready")
    async def health_ready():
        """Readiness probe: the database answers."""
        checks = {}
        try:
            from sqlalchemy import text

            from .database.connection import get_db_context
            async with get_db_context() as session:
                await session.execute(text("SELECT 1"))
            checks["database"] = "ok"
        except Exception as e:
            checks["database"] = f"error: {e}"
            return JSONResponse(status_code=503, content={"status": "not_ready", "checks": checks})

        checks["completion_provider"] = "ok" if settings.anthropic_api_key else "not configured"
        checks["auth"] = "enabled" if settings.enable_auth else "disabled"
        return {"status": "ready", "checks": checks}

    if settings.enable_metrics:
        @app.get("/metrics")
        async def metrics_endpoint():
            """Prometheus metrics endpoint."""
            from .observability.metrics import generate_metrics_text
            text = generate_metrics_text()
            if text is None:
                return PlainTextResponse("# prometheus_client not installed\n", status_code=501)
            return PlainTextResponse(text, media_type="text/plain; version=0.0.4; charset=utf-8")

    return app


# Create app instance
app = create_app()


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "bmc_assist.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level="debug" if settings.debug else "info"
    )
