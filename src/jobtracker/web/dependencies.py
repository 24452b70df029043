"""FastAPI dependency injection helpers.

Extracts shared dependencies from app.state for use in route handlers.
All dependencies are initialized during the FastAPI lifespan.

Usage:
    from jobtracker.web.dependencies import get_orchestrator

    @router.post("/process-emails")
    async def process(orchestrator: PipelineOrchestrator = Depends(get_orchestrator)):
        ...
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from fastapi import Request

if TYPE_CHECKING:
    from jobtracker.config_schema import AppConfig
    from jobtracker.engine.pipeline import PipelineOrchestrator


def get_config(request: Request) -> AppConfig | None:
    """Get the loaded AppConfig from app state (None if loading failed)."""
    return request.app.state.config


def get_orchestrator(request: Request) -> PipelineOrchestrator | None:
    """Get the PipelineOrchestrator from app state (None if config failed)."""
    return request.app.state.orchestrator
