#!/usr/bin/env python
"""FastAPI server for the Segmentry video delivery API."""

import logging
import sys
from contextlib import asynccontextmanager
from pathlib import Path

# Add src directory to Python path for imports
src_dir = Path(__file__).parent.parent
if str(src_dir) not in sys.path:
    sys.path.insert(0, str(src_dir))

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api.dependencies import close_services, init_services
from api.routers import admin, core, notifications, validation, videos
from utils.config import load_config, validate_config
from utils.logging import setup_logging_from_config

logger = logging.getLogger(__name__)


def create_app(config: dict | None = None, start_scheduler: bool | None = None, **service_overrides) -> FastAPI:
    """Build the application.

    Args:
        config: Configuration dict (loaded from the environment when omitted)
        start_scheduler: Override ``scheduler_enabled`` from config
        **service_overrides: Passed to ``init_services`` (``transport``, ``store``)
    """
    config = config or load_config()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Startup / shutdown hooks."""
        setup_logging_from_config(config)
        errors = validate_config(config)
        if errors:
            for error in errors:
                logger.error(f"Configuration error: {error}")
            raise RuntimeError(f"Invalid configuration: {'; '.join(errors)}")

        services = await init_services(config, **service_overrides)
        run_scheduler = config.get("scheduler_enabled", True) if start_scheduler is None else start_scheduler
        if run_scheduler:
            services.scheduler.start()
        logger.info(f"Segmentry API ready (environment={config.get('environment')})")

        yield

        await close_services()
        logger.info("Segmentry API stopped")

    app = FastAPI(title="Segmentry API", version="1.0.0", lifespan=lifespan)

    # CORS middleware for development
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://localhost:5173", "http://localhost:3000"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    prefix = config.get("api_prefix", "/api")
    app.include_router(core.router)
    app.include_router(validation.router, prefix=prefix)
    app.include_router(videos.router, prefix=prefix)
    app.include_router(admin.router, prefix=prefix)
    app.include_router(notifications.router, prefix=prefix)
    app.include_router(validation.ws_router)
    app.include_router(notifications.ws_router)
    return app


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(create_app(), host="0.0.0.0", port=8000)
