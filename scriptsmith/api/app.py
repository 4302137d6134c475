"""FastAPI application factory for the Scriptsmith API.

This module provides the main application factory with OpenAPI documentation,
CORS configuration, error mapping and middleware setup.
"""

import logging
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from ..errors import (
    AuthenticationError,
    AuthorizationError,
    InsufficientResearchError,
    NotFoundError,
    PersistenceError,
    RateLimitExceededError,
    ScriptEngineError,
    ValidationError,
)
from ..metrics import MetricsMiddleware, set_system_info, update_queue_size
from ..services import ServiceContainer
from .routes import router

logger = logging.getLogger(__name__)

# Most specific classes first; the first match wins
ERROR_STATUS_CODES = (
    (InsufficientResearchError, 400),
    (ValidationError, 400),
    (AuthenticationError, 401),
    (AuthorizationError, 403),
    (NotFoundError, 404),
    (RateLimitExceededError, 429),
    (PersistenceError, 503),
)


def status_code_for(exc: ScriptEngineError) -> int:
    for error_class, code in ERROR_STATUS_CODES:
        if isinstance(exc, error_class):
            return code
    return 500


def error_response(exc: ScriptEngineError) -> JSONResponse:
    """Build the JSON error body for a pipeline error."""
    code = status_code_for(exc)
    if code == 500:
        logger.error(f"Unhandled pipeline error: {exc}")
        return JSONResponse(status_code=500, content={"detail": "Internal server error"})

    content = {"detail": exc.message, "error": type(exc).__name__}
    if exc.details:
        content["details"] = exc.details
    headers = None

    if isinstance(exc, InsufficientResearchError):
        content["recommendations"] = [r.model_dump() for r in exc.recommendations]
        content["research"] = exc.adequacy.model_dump(mode="json")
    elif isinstance(exc, RateLimitExceededError):
        headers = {"Retry-After": str(exc.retry_after)}
    elif isinstance(exc, PersistenceError):
        logger.error(f"Storage unavailable: {exc}")
        content = {"detail": "Storage temporarily unavailable", "error": type(exc).__name__}

    return JSONResponse(status_code=code, content=content, headers=headers)


def create_app(
    services: Optional[ServiceContainer] = None,
    title: str = "Scriptsmith API",
    description: str = "Asynchronous long-form script generation with outline review",
    version: str = "0.1.0",
    enable_cors: bool = True,
    cors_origins: Optional[list] = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        services: Service container (built from the environment when omitted).
        title: API title for OpenAPI docs.
        description: API description for OpenAPI docs.
        version: API version.
        enable_cors: Whether to enable CORS middleware.
        cors_origins: List of allowed CORS origins.

    Returns:
        Configured FastAPI application.
    """
    app = FastAPI(
        title=title,
        description=description,
        version=version,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        openapi_tags=[
            {"name": "requests", "description": "Script requests and research"},
            {"name": "jobs", "description": "Long-form generation jobs"},
            {"name": "outlines", "description": "Outline generation and review"},
            {"name": "worker", "description": "Scheduler trigger"},
        ],
    )
    app.state.services = services or ServiceContainer.build()

    # Add CORS middleware
    if enable_cors:
        origins = cors_origins or ["*"]
        app.add_middleware(
            CORSMiddleware,
            allow_origins=origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    app.add_middleware(MetricsMiddleware)
    app.include_router(router)
    set_system_info(version=version)

    @app.get("/", tags=["root"])
    async def root() -> dict:
        """Root endpoint with API information."""
        return {
            "name": title,
            "version": version,
            "docs": "/docs",
            "openapi": "/openapi.json",
        }

    @app.get("/health", tags=["observability"])
    async def health() -> dict:
        """Liveness probe."""
        return {"status": "ok"}

    @app.get("/ready", tags=["observability"])
    def ready() -> JSONResponse:
        """Readiness probe: both stores must answer."""
        container: ServiceContainer = app.state.services
        checks = {
            "job_store": container.store.health_check(),
            "storage": container.storage.health_check(),
        }
        is_ready = all(checks.values())
        return JSONResponse(
            status_code=200 if is_ready else 503,
            content={"status": "ready" if is_ready else "unavailable", "checks": checks},
        )

    @app.get("/metrics", tags=["observability"])
    def metrics() -> Response:
        """Prometheus metrics endpoint."""
        update_queue_size(app.state.services.store.get_stats())
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    # Exception handlers
    @app.exception_handler(ScriptEngineError)
    async def pipeline_exception_handler(request: Request, exc: ScriptEngineError) -> JSONResponse:
        """Map pipeline errors onto HTTP status codes."""
        return error_response(exc)

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Handle uncaught exceptions."""
        logger.error(f"Unhandled exception: {exc}")
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal server error"},
        )

    logger.info(f"Created FastAPI app: {title} v{version}")
    return app
