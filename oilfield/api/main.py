"""
Main FastAPI application for the Oilfield backend.
Configures the API server with routes, middleware, and error handling.
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI, status
from fastapi.responses import JSONResponse

import structlog

from oilfield.api.errors import register_exception_handlers
from oilfield.api.middleware import add_middleware
from oilfield.api.routes import game, purchases, cashout, exchange, admin
from oilfield.api.schemas.common import HealthCheckResponse, SuccessResponse
from oilfield.cache import redis_client
from oilfield.core.config import settings
from oilfield.core.database import init_database, close_database, DatabaseManager
from oilfield.core.logging import setup_logging


logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    logger.info("Starting Oilfield API server", environment=settings.environment)

    await init_database()

    if settings.config_cache_enabled:
        try:
            await redis_client.connect()
        except Exception as e:
            # Config reads fall back to the database
            logger.warning("Config cache unavailable", error=str(e))

    yield

    logger.info("Shutting down Oilfield API server")
    await redis_client.disconnect()
    await close_database()


def create_app() -> FastAPI:
    """Create and configure FastAPI application."""

    setup_logging()

    app = FastAPI(
        title="Oilfield API",
        description="""
        Settlement engine for an idle mining economy.

        ## Authentication

        ```
        Authorization: Bearer <your-wallet-address>
        ```

        Admin routes accept the admin API key in the same header.

        ## Errors

        Every error response carries a stable `error_code`, a player-safe
        `message` and optional `details`.
        """,
        version=settings.app_version,
        docs_url=None if settings.is_production else "/docs",
        redoc_url=None if settings.is_production else "/redoc",
        lifespan=lifespan,
    )

    add_middleware(app)
    register_exception_handlers(app)

    @app.get(
        "/health",
        response_model=HealthCheckResponse,
        tags=["System"],
        summary="Health Check",
        description="Check API server health and service status"
    )
    async def health_check():
        cache_state = "disabled"
        if settings.config_cache_enabled:
            cache_state = "healthy" if redis_client.is_connected else "unavailable"

        if await DatabaseManager.health_check():
            return HealthCheckResponse(
                version=settings.app_version,
                services={"database": "healthy", "cache": cache_state}
            )

        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={
                "status": "unhealthy",
                "version": settings.app_version,
                "services": {"database": "unhealthy", "cache": cache_state}
            }
        )

    @app.get(
        "/",
        response_model=SuccessResponse,
        tags=["System"],
        summary="API Information"
    )
    async def root():
        return SuccessResponse(
            message=f"Oilfield API v{settings.app_version}",
            data={
                "version": settings.app_version,
                "environment": settings.environment,
                "docs_url": app.docs_url,
            }
        )

    app.include_router(game.router, prefix=f"{settings.api_v1_prefix}/game", tags=["Game"])
    app.include_router(purchases.router, prefix=f"{settings.api_v1_prefix}/purchases", tags=["Purchases"])
    app.include_router(cashout.router, prefix=f"{settings.api_v1_prefix}/cashout", tags=["Cashout"])
    app.include_router(exchange.router, prefix=f"{settings.api_v1_prefix}/exchange", tags=["Exchange"])
    app.include_router(admin.router, prefix=f"{settings.api_v1_prefix}/admin", tags=["Admin"])

    logger.info("FastAPI application created", version=settings.app_version)
    return app


app = create_app()
