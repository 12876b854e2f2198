"""davgate - FastAPI Application Factory."""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from davgate.api import api_router
from davgate.api.dav_gate import router as dav_router
from davgate.api.health import router as health_router
from davgate.core import settings, setup_logging
from davgate.core.logging import get_logger
from davgate.middleware import AdminAuthMiddleware

# Import all models to ensure they're registered with Base for Alembic
from davgate.models import DavBlock, DavSession, DavUser  # noqa: F401
from davgate.services.expiry_sweep import ExpirySweepService
from davgate.services.principal_cache import PrincipalCache

logger = get_logger("main")


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler for startup/shutdown."""
    setup_logging(
        level=settings.log_level,
        format_type="structured" if not settings.debug else "dev",
    )
    logger.info(f"Starting {settings.app_name} v{settings.app_version}")

    for warning in settings.check_security_configuration():
        logger.warning(f"SECURITY: {warning}")

    sweep = ExpirySweepService.get_instance()
    sweep.interval_seconds = settings.sweep_interval_seconds
    await sweep.start()

    yield

    logger.info("Shutting down...")
    await sweep.stop()
    PrincipalCache.get_instance().clear()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title=settings.app_name,
        description="Session and access-control gate for DAV endpoints",
        version=settings.app_version,
        lifespan=lifespan,
        # Docs sit outside /api and would expose the admin schema unauthenticated
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        openapi_url="/openapi.json" if settings.debug else None,
    )

    app.add_middleware(AdminAuthMiddleware)

    # CORS middleware - MUST be outermost (added last in Starlette LIFO order)
    # so that CORS headers are present on 401 responses from AdminAuth.
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type", "Accept", "X-Request-ID"],
    )

    # Prometheus metrics (before routers so /metrics endpoint is registered first)
    if settings.enable_metrics:
        from prometheus_fastapi_instrumentator import Instrumentator

        Instrumentator(
            excluded_handlers=["/health", "/metrics"],
        ).instrument(app).expose(app, endpoint="/metrics", include_in_schema=False)

    app.include_router(health_router)
    app.include_router(dav_router)
    app.include_router(api_router)

    @app.get("/")
    async def root() -> dict[str, str]:
        """Root endpoint with API information."""
        return {
            "name": settings.app_name,
            "version": settings.app_version,
        }

    return app


# Application instance
app = create_app()
