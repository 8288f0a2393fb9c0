from fastapi import FastAPI
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
import asyncio
import logging

from fm4mirror import __version__
from fm4mirror.config import Settings
from fm4mirror.startup import Services, build_services, init_storage, initial_scrape
from fm4mirror.utils.logger import setup_logging

# API Routes
from fm4mirror.api import admin, broadcasts, images


logger = logging.getLogger(__name__)


def create_app(settings: Settings = None, services: Services = None) -> FastAPI:
    """App-Factory; Tests übergeben fertig verdrahtete Services"""
    if services is not None:
        settings = services.settings
    settings = settings or Settings.from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        nonlocal services

        # Startup
        if services is None:
            setup_logging(settings.log_level, settings.log_dir, settings.log_max_lines, settings.log_backup_count)
            services = build_services(settings)
        logger.info(f"Starting FM4 Mirror {__version__}...")

        try:
            fts = init_storage(services)
            logger.info(f"✓ Database initialized (full-text search: {'on' if fts else 'off'})")
        except Exception as e:
            logger.error(f"✗ Database init failed: {e}")
            # Don't continue if database init fails
            raise

        app.state.services = services
        app.state.bootstrap = None

        if settings.scheduler_enabled:
            try:
                services.tasks.start()
            except Exception as e:
                logger.error(f"✗ Scheduler init failed: {e}")
            app.state.bootstrap = asyncio.create_task(initial_scrape(services))
        else:
            logger.info("Scheduler disabled, no background jobs")

        yield

        # Shutdown
        logger.info("Shutting down FM4 Mirror...")
        services.tasks.stop()
        if app.state.bootstrap and not app.state.bootstrap.done():
            app.state.bootstrap.cancel()
        await services.api.aclose()
        services.engine.dispose()

    app = FastAPI(
        title="FM4 Mirror",
        description="Lokaler Spiegel des FM4-Sendungsarchivs (Sendungen, Playlists, Bilder, Loopstreams)",
        version=__version__,
        lifespan=lifespan
    )

    # Routes
    app.include_router(broadcasts.router)
    app.include_router(images.router)
    app.include_router(admin.router)

    @app.get("/health")
    async def health_check():
        return {"status": "ok", "version": __version__}

    @app.get("/")
    async def root():
        return JSONResponse({
            "app": "FM4 Mirror",
            "version": __version__,
            "docs": "/docs",
            "live": "/api/live",
            "health": "/health"
        })

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
