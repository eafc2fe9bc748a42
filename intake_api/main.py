"""
Main application module.

This is the entry point of our FastAPI application.
It creates the app instance and sets up all configurations.
"""

import asyncio
from contextlib import asynccontextmanager
from fastapi import FastAPI
from intake_api.core.config import settings
from intake_api.core.logging import setup_logging
import logging

# STEP 1: Set up logging before anything else
# This must happen first so all other modules can use logging
setup_logging(debug=settings.debug)

# STEP 2: Create a logger for this module
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Startup: create missing tables, start the session registry sweeper.
    Shutdown: stop the sweeper.
    """
    from intake_api.db import models  # noqa: F401  (registers tables on Base)
    from intake_api.db.database import Base, engine
    from intake_api.services.session_sweeper import start_session_sweeper

    Base.metadata.create_all(bind=engine)
    logger.info("Database tables ensured")

    sweeper = None
    if settings.session_sweep_enabled:
        sweeper = asyncio.create_task(start_session_sweeper())
    else:
        logger.info("Session registry sweeper DISABLED")

    yield

    if sweeper is not None:
        sweeper.cancel()
        try:
            await sweeper
        except asyncio.CancelledError:
            pass
    logger.info("Application shutdown complete")


def create_app() -> FastAPI:
    """
    Factory function that creates and configures our FastAPI application.

    Tests build their own instance from here and swap dependencies through
    app.dependency_overrides.

    Returns:
        FastAPI: A configured FastAPI application instance
    """
    app = FastAPI(
        title="Contact Intake API",
        description="Call correlation and interview intake for Twilio/ElevenLabs voice interviews",
        version="1.0.0",
        # In production (debug=False), we hide the docs
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        lifespan=lifespan,
    )

    logger.info(f"FastAPI app created - Debug mode: {settings.debug}")

    # Register routers
    from intake_api.api import admin, elevenlabs, health, intake, twilio

    app.include_router(health.router)
    logger.info("Health endpoints registered at /health/*")

    # Twilio call start: registry + call log, then redirect to ElevenLabs
    app.include_router(twilio.router)
    logger.info("Twilio endpoints registered at /twilio/*")

    app.include_router(elevenlabs.router)
    logger.info("ElevenLabs endpoints registered at /elevenlabs/*")

    app.include_router(intake.router)
    app.include_router(intake.read_router)
    logger.info("Intake endpoints registered at /intake/* and /api/intake/*")

    app.include_router(admin.router)
    logger.info("Admin endpoints registered at /admin/*")

    return app


# STEP 3: Create the actual app instance
app = create_app()

logger.info("Main application module loaded")
