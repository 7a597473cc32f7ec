"""
Application factory for FastAPI.

The factory pattern allows for:
- Easy testing with custom settings and a prebuilt service container
- Clear separation of app creation from route definitions

Usage:
    from backend.main import create_app
    from backend.settings import Settings

    # Default app (uses get_settings(), builds the Supabase container at startup)
    app = create_app()

    # Test app with custom settings and in-memory repositories
    test_settings = Settings(environment="test", _env_file=None)
    test_app = create_app(settings=test_settings, container=build_container(...))
"""

import logging
from typing import Optional

import sentry_sdk
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from api.access import AccessDeniedError, denial_response, service_unavailable_response
from backend.container import ServiceContainer, create_container
from backend.observability import configure_observability, instrument_app, shutdown_observability
from backend.services.ai_client import AIServiceError
from backend.services.resilience import CircuitOpenError, ServiceUnavailableError
from backend.settings import Settings, get_settings

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Application Factory
# ---------------------------------------------------------------------------


def create_app(
    settings: Optional[Settings] = None,
    container: Optional[ServiceContainer] = None,
) -> FastAPI:
    """
    Create and configure a FastAPI application instance.

    Args:
        settings: Optional Settings instance. If not provided, uses get_settings()
                  which loads from environment variables.
        container: Optional prebuilt service graph. If not provided, the
                   Supabase-backed container is built on startup.

    Returns:
        Configured FastAPI application instance.
    """
    if settings is None:
        settings = get_settings()

    configure_observability(settings)
    _init_sentry(settings)

    app = FastAPI(
        title="Genealogy Access API",
        description="Access control, quotas and AI analysis tools for genealogy research",
        version="1.0.0",
    )

    app.state.settings = settings
    app.state.container = container

    instrument_app(app)
    _configure_cors(app, settings)
    _include_routers(app)
    _register_exception_handlers(app)
    _register_lifecycle(app, settings)

    return app


def _init_sentry(settings: Settings) -> None:
    """Initialize Sentry SDK if DSN is configured."""
    if settings.sentry_dsn:
        sentry_sdk.init(
            dsn=settings.sentry_dsn,
            environment=settings.environment,
            release=settings.git_commit,
            traces_sample_rate=0.1,
        )
        logger.info(
            "Sentry initialized for %s (release=%s)",
            settings.service_name,
            settings.git_commit or "unknown",
        )


def _configure_cors(app: FastAPI, settings: Settings) -> None:
    """Configure CORS middleware for the application."""
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["Retry-After", "X-Usage-Current", "X-Usage-Limit", "X-Usage-Remaining"],
    )


def _include_routers(app: FastAPI) -> None:
    """Include all API routers in the application."""
    from api.routers import health_router, identity_router, tools_router, usage_router

    # Health router (no prefix - /health at root)
    app.include_router(health_router)

    # Gated tools (/api/tools/*)
    app.include_router(tools_router)

    # Usage summary (/api/usage/*)
    app.include_router(usage_router)

    # Identity merge and cleanup (/api/identity/*, /internal/identities/*)
    app.include_router(identity_router)


def _register_exception_handlers(app: FastAPI) -> None:
    """Map domain exceptions to HTTP responses."""

    @app.exception_handler(AccessDeniedError)
    async def access_denied_handler(request: Request, exc: AccessDeniedError):
        return denial_response(exc.decision)

    @app.exception_handler(ServiceUnavailableError)
    async def service_unavailable_handler(request: Request, exc: ServiceUnavailableError):
        retry_after = None
        container: Optional[ServiceContainer] = request.app.state.container
        if isinstance(exc, CircuitOpenError) and container is not None:
            retry_after = container.data_access.breaker.retry_after_seconds()
        logger.error("%s %s unavailable (%s): %s", request.method, request.url.path, exc.operation, exc)
        return service_unavailable_response(retry_after)

    @app.exception_handler(AIServiceError)
    async def ai_service_error_handler(request: Request, exc: AIServiceError):
        logger.error("AI call failed on %s (%s): %s", request.url.path, exc.error_type, exc)
        return service_unavailable_response()


def _register_lifecycle(app: FastAPI, settings: Settings) -> None:
    """Register startup and graceful shutdown handlers."""

    @app.on_event("startup")
    async def startup_event():
        if app.state.container is None:
            try:
                app.state.container = await create_container(settings)
            except RuntimeError as e:
                if settings.is_production:
                    raise
                logger.error("Starting without a service container: %s", e)
                return
        await app.state.container.data_access.initialize(strict=settings.is_production)
        logger.info("%s started (environment=%s)", settings.service_name, settings.environment)

    @app.on_event("shutdown")
    async def shutdown_event():
        shutdown_observability()
        logger.info("%s shutdown complete", settings.service_name)


# Default app instance for uvicorn
# This allows: uvicorn backend.main:app --reload
app = create_app()
