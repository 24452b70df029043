"""FastAPI application for the job application tracker.

Creates the FastAPI app with:
- Lifespan context manager that loads config and builds the orchestrator
- The API router (process-emails stream, health)

Usage:
    from jobtracker.web.app import create_app

    app = create_app()
    # Run with: uvicorn.run(app, host="127.0.0.1", port=8000)
"""

from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI

from jobtracker.core.logging import get_logger

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize dependencies on startup.

    A config that fails to load leaves app.state.config and
    app.state.orchestrator as None; the server still starts and every run
    ends with an error event explaining the problem.
    """
    from jobtracker.config import get_config
    from jobtracker.core.errors import ConfigLoadError, ConfigValidationError
    from jobtracker.engine.pipeline import PipelineOrchestrator

    try:
        config = get_config()
    except (ConfigLoadError, ConfigValidationError) as e:
        logger.error("config_load_failed", error=str(e))
        app.state.config = None
        app.state.orchestrator = None
        app.state.config_error = str(e)
        yield
        return

    app.state.config = config
    app.state.config_error = None
    app.state.orchestrator = PipelineOrchestrator(config)
    logger.info(
        "web_app_ready",
        classify_configured=bool(config.inference.classify_url),
        extract_configured=bool(config.inference.extract_url),
    )

    yield


def create_app() -> FastAPI:
    """Create and configure the FastAPI application.

    Returns:
        Configured FastAPI instance
    """
    from jobtracker.web.routes import api_router

    app = FastAPI(
        title="Job Application Tracker",
        description="Scans Gmail for job application emails and streams results",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.include_router(api_router)

    return app
