import os
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from drasbot.config import Settings
from drasbot.logging_config import get_logger, setup_logging
from drasbot.routers import webhook
from drasbot.services.container import Services, build_services

logger = get_logger("main")


def _is_sweeper_enabled(settings: Settings) -> bool:
    if os.environ.get("PYTEST_CURRENT_TEST"):
        return False
    return settings.context_sweep_enabled


def create_app(settings: Optional[Settings] = None, services: Optional[Services] = None) -> FastAPI:
    """Build the app. Run with ``uvicorn drasbot.main:create_app --factory``."""
    settings = settings or (services.settings if services else Settings())
    setup_logging(settings.log_level)
    services = services or build_services(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        services.init_storage()
        if _is_sweeper_enabled(settings):
            services.sweeper.start()
        logger.info("DrasBot started", extra={"context": {"prefix": settings.command_prefix}})
        try:
            yield
        finally:
            await services.close()
            logger.info("DrasBot stopped")

    app = FastAPI(
        title="DrasBot",
        description="WhatsApp bot: commands, dialogue contexts and message routing",
        version="0.1.0",
        debug=settings.debug,
        lifespan=lifespan,
    )
    app.state.services = services
    app.include_router(webhook.router)

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    return app
