"""
Core314 Automation Engine - FastAPI Application
================================================

Main application factory with all routers and middleware.
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

import structlog
from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from starlette.exceptions import HTTPException as StarletteHTTPException

from core314.api import escalation, execution, orchestration
from core314.api.deps import DbSession
from core314.core.config import settings
from core314.core.database import close_db, init_db
from core314.core.exceptions import AuthenticationError, AutomationError
from core314.core.schemas import ErrorResponse, HealthResponse


def configure_logging() -> None:
    """Structured logging: JSON in production, console renderer otherwise."""
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer() if settings.is_production else structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging()
logger = structlog.get_logger()


# ==========================================================================
# Lifespan
# ==========================================================================

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Application lifespan handler.

    Creates tables on startup (migrations own the schema in production)
    and closes the connection pool on shutdown.
    """
    logger.info("starting_core314", version=settings.APP_VERSION, environment=settings.ENVIRONMENT)
    if not settings.is_production:
        await init_db()
        logger.info("database_initialized")

    yield

    logger.info("shutting_down_core314")
    await close_db()


# ==========================================================================
# Error rendering
# ==========================================================================

def _error(status_code: int, message: str, code: str | None = None, headers: dict | None = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=message, code=code).model_dump(),
        headers=headers,
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Every failure renders as ``{"success": false, "error": ...}``."""

    @app.exception_handler(AutomationError)
    async def automation_error_handler(request: Request, exc: AutomationError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error("request_failed", path=request.url.path, error=exc.message, code=exc.error_code)
        headers = {"WWW-Authenticate": "Bearer"} if isinstance(exc, AuthenticationError) else None
        return _error(exc.status_code, exc.message, exc.error_code, headers)

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        first = exc.errors()[0] if exc.errors() else {}
        location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
        message = first.get("msg", "Invalid request")
        return _error(
            status.HTTP_400_BAD_REQUEST,
            f"{location}: {message}" if location else message,
            "VALIDATION_ERROR",
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        return _error(exc.status_code, str(exc.detail), headers=getattr(exc, "headers", None))

    @app.exception_handler(SQLAlchemyError)
    async def database_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
        logger.error("database_error", path=request.url.path, exc_info=exc)
        return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, "Database operation failed", "PERSISTENCE_ERROR")

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Handle uncaught exceptions. The exception text is logged, never returned."""
        logger.error(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
        )
        return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, "An unexpected error occurred", "INTERNAL_ERROR")


# ==========================================================================
# App Factory
# ==========================================================================

def create_app() -> FastAPI:
    """
    Create and configure the FastAPI application.

    Returns:
        Configured FastAPI application
    """
    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        description="Core314 orchestration, execution queue and escalation engine",
        docs_url="/docs" if settings.is_development else None,
        redoc_url="/redoc" if settings.is_development else None,
        openapi_url="/openapi.json" if settings.is_development else None,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_exception_handlers(app)

    @app.get("/health", response_model=HealthResponse, tags=["Health"], summary="Health check")
    async def health_check(db: DbSession) -> HealthResponse:
        """Check application and database health."""
        try:
            await db.execute(text("SELECT 1"))
            database = "connected"
        except SQLAlchemyError:
            logger.warning("health_check_database_unreachable")
            database = "unreachable"
        return HealthResponse(
            success=database == "connected",
            status="healthy" if database == "connected" else "degraded",
            version=settings.APP_VERSION,
            environment=settings.ENVIRONMENT,
            database=database,
        )

    app.include_router(orchestration.router, prefix=settings.API_V1_PREFIX)
    app.include_router(orchestration.flows_router, prefix=settings.API_V1_PREFIX)
    app.include_router(execution.router, prefix=settings.API_V1_PREFIX)
    app.include_router(execution.queue_router, prefix=settings.API_V1_PREFIX)
    app.include_router(escalation.router, prefix=settings.API_V1_PREFIX)

    @app.get("/", tags=["Root"])
    async def root() -> dict:
        """Root endpoint with API info."""
        return {
            "success": True,
            "name": settings.APP_NAME,
            "version": settings.APP_VERSION,
            "docs": "/docs" if settings.is_development else "Disabled in production",
            "health": "/health",
            "api": settings.API_V1_PREFIX,
        }

    return app


# ==========================================================================
# Application Instance
# ==========================================================================

app = create_app()


# ==========================================================================
# Development Server
# ==========================================================================

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "core314.api.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.is_development,
        log_level="info",
    )
