"""
Mundoctor API application
Wires settings, logging, the security container, middleware and routers
"""

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

import uvicorn
from fastapi import FastAPI
from fastapi.responses import JSONResponse

from .config import Settings, get_settings
from .container import SecurityContainer
from .logging_config import configure_logging
from .middleware.audit import AuditMiddleware
from .middleware.error_handling import install_fail_fast_hooks, register_exception_handlers
from .routes import admin, auth, webhooks

logger = logging.getLogger(__name__)


def create_app(
    settings: Optional[Settings] = None,
    container: Optional[SecurityContainer] = None,
    fail_fast: bool = True,
) -> FastAPI:
    """Build the application around one SecurityContainer"""
    settings = settings or get_settings()
    configure_logging(settings)
    container = container or SecurityContainer(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Application lifespan management."""
        logger.info(f"Starting {settings.app_name} {settings.app_version}...")
        if fail_fast:
            install_fail_fast_hooks(asyncio.get_running_loop())

        if not await container.db.check_health():
            logger.warning("Database not reachable at startup")
        await container.start()
        logger.info(f"{settings.app_name} started successfully")

        yield

        logger.info(f"Shutting down {settings.app_name}...")
        await container.stop()

    app = FastAPI(
        title=settings.app_name,
        description="Authentication, authorization and audit core of the Mundoctor marketplace",
        version=settings.app_version,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        lifespan=lifespan,
    )
    app.state.container = container

    app.add_middleware(AuditMiddleware)
    register_exception_handlers(app)

    @app.get("/health")
    async def health_check() -> JSONResponse:
        """Health check endpoint for container orchestration."""
        database_ok = await container.db.check_health()
        return JSONResponse(
            status_code=200 if database_ok else 503,
            content={
                "status": "healthy" if database_ok else "degraded",
                "timestamp": time.time(),
                "version": settings.app_version,
                "database": "healthy" if database_ok else "unreachable",
                "auth_cache_entries": len(container.cache),
            },
        )

    app.include_router(auth.router, prefix="/api")
    app.include_router(admin.router, prefix="/api")
    app.include_router(webhooks.router, prefix="/api")
    return app


if __name__ == "__main__":
    _settings = get_settings()
    uvicorn.run(
        create_app(_settings),
        host="0.0.0.0",  # nosec B104 - Intentional for Docker container binding
        port=8000,
        log_level=_settings.log_level.lower(),
    )
