"""PULSE — FastAPI Application Entry Point.

Provider metrics sync service.
"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from pulse.api.account_routes import router as account_router
from pulse.api.metric_routes import router as metric_router
from pulse.api.sync_routes import router as sync_router
from pulse.config import Settings, settings as default_settings
from pulse.core.logging import get_logger
from pulse.database import _mask_url, init_db, test_connection
from pulse.scheduler.jobs import start_scheduler, stop_scheduler
from pulse.services.container import Services, build_services

logger = get_logger("main")

VERSION = "1.0.0"


def create_app(
    settings: Optional[Settings] = None,
    services: Optional[Services] = None,
) -> FastAPI:
    """Build the app. Tests pass a prepared service container."""
    settings = settings or default_settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Startup and shutdown lifecycle."""
        logger.info("PULSE starting up...")
        container = services or build_services(settings)
        if test_connection(container.engine):
            init_db(container.engine)
            migrated = container.accounts.migrate_legacy_credentials()
            if migrated:
                logger.info(f"Encrypted {migrated} legacy credential records")
        else:
            logger.error("Database NOT connected, endpoints will fail")
        app.state.services = container
        app.state.settings = settings

        scheduler = start_scheduler(container, settings)
        yield
        stop_scheduler(scheduler)
        logger.info("PULSE shut down")

    app = FastAPI(
        title="PULSE",
        description="Pulls revenue and subscription metrics from connected providers into one store.",
        version=VERSION,
        lifespan=lifespan,
    )

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Routers
    app.include_router(account_router)
    app.include_router(sync_router)
    app.include_router(metric_router)

    @app.get("/health", tags=["System"])
    async def health_check():
        """Health check endpoint."""
        container: Services = app.state.services
        url = str(container.engine.url)
        return {
            "status": "healthy",
            "service": "pulse",
            "version": VERSION,
            "database": {
                "connected": test_connection(container.engine),
                "backend": "postgresql" if url.startswith("postgresql") else "sqlite",
                "url": _mask_url(url),
            },
            "integrations": [d.id for d in container.registry.all()],
        }

    return app


app = create_app()
