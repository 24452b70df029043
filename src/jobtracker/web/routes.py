"""API routes for the job application tracker.

- POST /api/process-emails: runs the pipeline and streams its events as
  line-delimited JSON (one event object per line)
- GET /api/health: liveness and configuration status

Session tokens come from the ``gmail_access_token`` and
``gmail_refresh_token`` cookies set by the sign-in flow.
"""

from __future__ import annotations

import json
from collections.abc import AsyncIterator

from fastapi import APIRouter, Depends, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from jobtracker.config_schema import AppConfig
from jobtracker.core.logging import get_logger
from jobtracker.engine.pipeline import (
    ErrorEvent,
    PipelineEvent,
    PipelineOrchestrator,
    PipelineRequest,
)
from jobtracker.gmail.models import GmailCredentials
from jobtracker.web.dependencies import get_config, get_orchestrator

logger = get_logger(__name__)

NDJSON_MEDIA_TYPE = "application/x-ndjson"

ACCESS_TOKEN_COOKIE = "gmail_access_token"
REFRESH_TOKEN_COOKIE = "gmail_refresh_token"

api_router = APIRouter(prefix="/api")


# ---------------------------------------------------------------------------
# Pydantic models for API input validation
# ---------------------------------------------------------------------------


class ProcessEmailsRequest(BaseModel):
    """Request body for a mailbox scan.

    Dates are optional strings at the schema level so that a missing or
    malformed range is reported as an error event rather than a 422.
    """

    startDate: str | None = None
    endDate: str | None = None
    excludedEmails: list[str] = Field(default_factory=list)
    jobLabels: list[str] | None = None
    confidenceThreshold: float | None = Field(default=None, ge=0.0, le=1.0)


def encode_event(event: PipelineEvent) -> str:
    """One NDJSON line for an event."""
    return json.dumps(event.to_dict()) + "\n"


async def _stream(events: AsyncIterator[PipelineEvent]) -> AsyncIterator[str]:
    async for event in events:
        yield encode_event(event)


async def _single(event: ErrorEvent) -> AsyncIterator[str]:
    yield encode_event(event)


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------


@api_router.post("/process-emails")
async def process_emails(
    request: Request,
    body: ProcessEmailsRequest,
    orchestrator: PipelineOrchestrator | None = Depends(get_orchestrator),  # noqa: B008
) -> StreamingResponse:
    """Scan the signed-in user's mailbox and stream progress and results."""
    if orchestrator is None:
        reason = request.app.state.config_error or "config.yaml could not be loaded"
        return StreamingResponse(
            _single(ErrorEvent(message=f"Server is not configured: {reason}")),
            media_type=NDJSON_MEDIA_TYPE,
        )

    access_token = request.cookies.get(ACCESS_TOKEN_COOKIE)
    credentials = None
    if access_token:
        credentials = GmailCredentials(
            access_token=access_token,
            refresh_token=request.cookies.get(REFRESH_TOKEN_COOKIE),
        )

    pipeline_request = PipelineRequest(
        credentials=credentials,
        start=body.startDate,
        end=body.endDate,
        excluded_senders=body.excludedEmails,
        job_labels=body.jobLabels,
        confidence_threshold=body.confidenceThreshold,
    )

    logger.info(
        "process_emails_requested",
        start=body.startDate,
        end=body.endDate,
        excluded_entries=len(body.excludedEmails),
    )

    return StreamingResponse(
        _stream(orchestrator.run(pipeline_request)),
        media_type=NDJSON_MEDIA_TYPE,
    )


@api_router.get("/health")
async def health_check(
    config: AppConfig | None = Depends(get_config),  # noqa: B008
):
    """Health check endpoint for Docker and monitoring."""
    if config is None:
        return {"status": "degraded", "config_loaded": False, "version": "0.1.0"}

    endpoints_ready = bool(config.inference.classify_url and config.inference.extract_url)
    return {
        "status": "healthy" if endpoints_ready else "degraded",
        "config_loaded": True,
        "inference_configured": endpoints_ready,
        "version": "0.1.0",
    }
