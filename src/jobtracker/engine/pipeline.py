"""Pipeline orchestrator: one mailbox scan from search to application records.

A run is an async iterator of events. Zero or more ProgressEvents are
followed by exactly one terminal event, a CompletionEvent or an ErrorEvent,
and nothing comes after it.

Stages and their progress values (0-100, never decreasing):
1. connecting (0): pre-flight checks, Gmail client set-up
2. listing (5-15): paginated id search, one step per page
3. fetching (20-35): chunked detail retrieval
4. filtering (38): normalization and sender exclusion
5. classifying (40-60): batched classification
6. extracting (70-90): batched company/role extraction for job mail
7. assembling (95): ApplicationRecord construction
8. complete (100): emitted right before the CompletionEvent

Every failure inside a run, expected or not, ends the stream with a single
ErrorEvent. Pre-flight failures happen before any external call.

Usage:
    from jobtracker.engine.pipeline import PipelineOrchestrator, PipelineRequest

    orchestrator = PipelineOrchestrator(config)
    async for event in orchestrator.run(request):
        print(event.to_dict())
"""

from __future__ import annotations

import asyncio
import contextlib
import threading
import time
import uuid
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from pydantic import TypeAdapter, ValidationError

from jobtracker.classifier.exclusions import ExclusionFilter
from jobtracker.classifier.extractor import UNKNOWN, ExtractionResult, JobExtractor
from jobtracker.classifier.job_classifier import BatchClassifier, is_job_related
from jobtracker.classifier.normalizer import NormalizedEmail, normalize
from jobtracker.core.errors import (
    AuthenticationError,
    ConfigurationError,
    PipelineCancelled,
    TrackerError,
)
from jobtracker.core.logging import get_logger, set_correlation_id
from jobtracker.gmail.client import GmailClient
from jobtracker.gmail.messages import MessageFetcher, build_search_query
from jobtracker.inference.client import InferenceClient

if TYPE_CHECKING:
    from jobtracker.classifier.job_classifier import ClassificationResult
    from jobtracker.config_schema import AppConfig
    from jobtracker.gmail.models import GmailCredentials

logger = get_logger(__name__)

PROGRESS_TOTAL = 100

# Stage names as they appear on the wire
STAGE_CONNECTING = "connecting"
STAGE_LISTING = "listing"
STAGE_FETCHING = "fetching"
STAGE_FILTERING = "filtering"
STAGE_CLASSIFYING = "classifying"
STAGE_EXTRACTING = "extracting"
STAGE_ASSEMBLING = "assembling"
STAGE_COMPLETE = "complete"

RECORD_ID_PREFIX = "gmail-"

_DATETIME = TypeAdapter(datetime)


# ---------------------------------------------------------------------------
# Events and records
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class ProgressEvent:
    """Advancement report on the fixed 0-100 scale."""

    stage: str
    current: int
    total: int = PROGRESS_TOTAL

    @property
    def percentage(self) -> int:
        return round(self.current * 100 / self.total) if self.total else 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": "progress",
            "stage": self.stage,
            "current": self.current,
            "total": self.total,
            "percentage": self.percentage,
        }


@dataclass(frozen=True, slots=True)
class ApplicationRecord:
    """One job-application event found in the mailbox.

    Attributes:
        id: "gmail-" followed by the Gmail message id
        company: Extracted company name or "Unknown"
        role: Extracted role or "Unknown"
        status: The classification label (e.g. "applied", "interview")
        email: Sender address from the From header
        date: Message timestamp (UTC)
        subject: Message subject
        body_preview: Leading characters of the body text
        label: Classification label
        confidence: Classification score
    """

    id: str
    company: str
    role: str
    status: str
    email: str
    date: datetime
    subject: str
    body_preview: str
    label: str
    confidence: float

    def to_dict(self) -> dict[str, Any]:
        """Wire form with camelCase keys and a nested classification."""
        return {
            "id": self.id,
            "company": self.company,
            "role": self.role,
            "status": self.status,
            "email": self.email,
            "date": self.date.isoformat(),
            "subject": self.subject,
            "bodyPreview": self.body_preview,
            "classification": {
                "label": self.label,
                "confidence": self.confidence,
            },
        }


@dataclass(frozen=True, slots=True)
class CompletionEvent:
    """Terminal event of a successful run."""

    applications: list[ApplicationRecord]
    total_emails: int
    excluded_count: int = 0

    @property
    def processed(self) -> int:
        return len(self.applications)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": "complete",
            "success": True,
            "processed": self.processed,
            "applications": [record.to_dict() for record in self.applications],
            "totalEmails": self.total_emails,
            "excludedCount": self.excluded_count,
        }


@dataclass(frozen=True, slots=True)
class ErrorEvent:
    """Terminal event of a failed run."""

    message: str

    def to_dict(self) -> dict[str, Any]:
        return {"type": "error", "message": self.message}


PipelineEvent = ProgressEvent | CompletionEvent | ErrorEvent


@dataclass
class PipelineRequest:
    """Inputs for one run.

    Attributes:
        credentials: Session tokens (None when the caller has no session)
        start: Inclusive start of the date range (datetime or ISO 8601 string)
        end: Exclusive end of the date range (datetime or ISO 8601 string)
        excluded_senders: Exclusion-list entries (addresses, @domains, substrings)
        job_labels: Labels that count as job-related (config default if None)
        confidence_threshold: Minimum score (config default if None)
        cancel_event: Set by the caller to stop the run between stages
    """

    credentials: GmailCredentials | None
    start: datetime | str | None
    end: datetime | str | None
    excluded_senders: list[str] = field(default_factory=list)
    job_labels: list[str] | None = None
    confidence_threshold: float | None = None
    cancel_event: asyncio.Event | None = None


def sender_address(from_header: str) -> str:
    """Address between the angle brackets of a From header, else the whole value."""
    start = from_header.find("<")
    end = from_header.rfind(">")
    if start != -1 and end > start + 1:
        return from_header[start + 1 : end]
    return from_header


def build_record(
    email: NormalizedEmail,
    classification: ClassificationResult,
    extraction: ExtractionResult | None,
    preview_chars: int = 200,
) -> ApplicationRecord:
    """Assemble the ApplicationRecord for one job-related email."""
    return ApplicationRecord(
        id=f"{RECORD_ID_PREFIX}{email.id}",
        company=extraction.company if extraction else UNKNOWN,
        role=extraction.role if extraction else UNKNOWN,
        status=classification.label,
        email=sender_address(email.sender),
        date=email.date.astimezone(UTC),
        subject=email.subject,
        body_preview=email.body_text[:preview_chars],
        label=classification.label,
        confidence=classification.score,
    )


# ---------------------------------------------------------------------------
# Event channel
# ---------------------------------------------------------------------------


class _EventChannel:
    """Queue between the running stages and the consuming iterator.

    Progress may be reported from worker threads (Gmail listing runs in
    one), so every event is handed to the loop with call_soon_threadsafe.
    The reported value never goes below the previous one. Closing the
    channel tells worker threads to stop at their next check.
    """

    def __init__(self, loop: asyncio.AbstractEventLoop):
        self._loop = loop
        self._queue: asyncio.Queue[PipelineEvent] = asyncio.Queue()
        self._last = 0
        self._closed = threading.Event()

    def close(self) -> None:
        self._closed.set()

    def is_closed(self) -> bool:
        return self._closed.is_set()

    def progress(self, stage: str, current: float) -> None:
        self._loop.call_soon_threadsafe(self._push_progress, stage, current)

    def finish(self, event: CompletionEvent | ErrorEvent) -> None:
        self._loop.call_soon_threadsafe(self._queue.put_nowait, event)

    def scaled(self, stage: str, low: int, high: int) -> Callable[[int, int], None]:
        """Callback mapping (done, total) onto the [low, high] band."""

        def report(done: int, total: int) -> None:
            fraction = done / total if total else 1.0
            self.progress(stage, low + (high - low) * fraction)

        return report

    async def get(self) -> PipelineEvent:
        return await self._queue.get()

    def _push_progress(self, stage: str, current: float) -> None:
        value = max(self._last, min(PROGRESS_TOTAL, int(current)))
        self._last = value
        self._queue.put_nowait(ProgressEvent(stage=stage, current=value))


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


class PipelineOrchestrator:
    """Runs the ingestion and classification pipeline.

    Collaborators default to instances built from the config; tests inject
    doubles through the constructor.

    Attributes:
        config: Application configuration
        classifier: BatchClassifier for the classification endpoint
        extractor: JobExtractor for the extraction endpoint
    """

    def __init__(
        self,
        config: AppConfig,
        gmail_client_factory: Callable[[GmailCredentials], GmailClient] | None = None,
        classifier: BatchClassifier | None = None,
        extractor: JobExtractor | None = None,
    ):
        self.config = config
        self._gmail_client_factory = gmail_client_factory or (
            lambda credentials: GmailClient.from_config(credentials, config.gmail)
        )
        self.classifier = classifier or BatchClassifier.from_config(
            InferenceClient.from_config(config.inference, "classify"),
            config.inference,
        )
        self.extractor = extractor or JobExtractor.from_config(
            InferenceClient.from_config(config.inference, "extract"),
            config.inference,
        )

    async def run(self, request: PipelineRequest) -> AsyncIterator[PipelineEvent]:
        """Execute one run, yielding events until the terminal one.

        The stages execute in a task owned by this generator. If the
        consumer stops iterating early, closing the generator cancels the
        task and waits for it, so no work outlives the stream. Cancelling
        does not interrupt a worker thread, so the listing thread also
        watches the channel and stops before its next page request.
        """
        channel = _EventChannel(asyncio.get_running_loop())
        task = asyncio.create_task(self._execute(request, channel))
        try:
            while True:
                event = await channel.get()
                yield event
                if not isinstance(event, ProgressEvent):
                    break
        finally:
            channel.close()
            if not task.done():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task

    async def _execute(self, request: PipelineRequest, channel: _EventChannel) -> None:
        """Run all stages and hand exactly one terminal event to the channel."""
        run_id = str(uuid.uuid4())
        set_correlation_id(run_id)
        start_time = time.monotonic()
        logger.info("pipeline_run_start", run_id=run_id)

        try:
            completion = await self._run_stages(request, channel)
        except TrackerError as e:
            logger.error(
                "pipeline_run_failed",
                error=str(e),
                error_type=type(e).__name__,
                duration_ms=int((time.monotonic() - start_time) * 1000),
            )
            channel.finish(ErrorEvent(message=str(e)))
        except Exception as e:
            logger.exception("pipeline_run_crashed", error=str(e))
            channel.finish(
                ErrorEvent(message=f"Email processing failed unexpectedly: {e}. Check the server logs.")
            )
        else:
            logger.info(
                "pipeline_run_complete",
                applications=completion.processed,
                total_emails=completion.total_emails,
                excluded=completion.excluded_count,
                duration_ms=int((time.monotonic() - start_time) * 1000),
            )
            channel.progress(STAGE_COMPLETE, PROGRESS_TOTAL)
            channel.finish(completion)
        finally:
            set_correlation_id(None)

    def _preflight(self, request: PipelineRequest) -> tuple[datetime, datetime]:
        """Checks that need no external call.

        Returns:
            The date range as timezone-aware datetimes

        Raises:
            ConfigurationError: Unconfigured endpoint, missing, malformed or
                inverted dates
            AuthenticationError: No access token in the session
        """
        for client in (self.classifier.client, self.extractor.client):
            client.ensure_configured()

        if not request.start or not request.end:
            raise ConfigurationError(
                "Start date and end date are required. Choose a date range and try again."
            )
        start = _parse_date(request.start, "start")
        end = _parse_date(request.end, "end")
        if start >= end:
            raise ConfigurationError(
                f"Invalid date range: start ({start.date()}) must be before end ({end.date()})."
            )

        if request.credentials is None or not request.credentials.access_token:
            raise AuthenticationError("Not authenticated with Gmail. Sign in and try again.")

        return start, end

    @staticmethod
    def _checkpoint(request: PipelineRequest) -> None:
        if request.cancel_event is not None and request.cancel_event.is_set():
            raise PipelineCancelled()

    async def _run_stages(
        self, request: PipelineRequest, channel: _EventChannel
    ) -> CompletionEvent:
        gmail_config = self.config.gmail
        pipeline_config = self.config.pipeline

        start, end = self._preflight(request)
        job_labels = request.job_labels or pipeline_config.job_labels
        threshold = (
            request.confidence_threshold
            if request.confidence_threshold is not None
            else pipeline_config.confidence_threshold
        )

        # Stage 1: connect
        channel.progress(STAGE_CONNECTING, 0)
        client = self._gmail_client_factory(request.credentials)
        fetcher = MessageFetcher(
            client,
            chunk_size=gmail_config.fetch_chunk_size,
            concurrency=gmail_config.fetch_concurrency,
            chunk_delay=gmail_config.chunk_delay_seconds,
        )
        query = build_search_query(
            start,
            end,
            keywords=gmail_config.search_keywords,
            primary_only=gmail_config.primary_only,
        )

        def listing_stopped() -> bool:
            cancelled = request.cancel_event is not None and request.cancel_event.is_set()
            return cancelled or channel.is_closed()

        # Stage 2: list ids
        self._checkpoint(request)
        channel.progress(STAGE_LISTING, 5)
        message_ids = await asyncio.to_thread(
            fetcher.search,
            query,
            gmail_config.page_size,
            lambda page, _ids: channel.progress(STAGE_LISTING, min(15, 5 + page)),
            listing_stopped,
        )
        logger.info("pipeline_ids_listed", count=len(message_ids))

        # Stage 3: fetch details
        self._checkpoint(request)
        channel.progress(STAGE_FETCHING, 20)
        raw_messages = await fetcher.fetch_details(
            message_ids, on_chunk=channel.scaled(STAGE_FETCHING, 20, 35)
        )
        total_emails = len(raw_messages)

        # Stage 4: normalize and exclude
        self._checkpoint(request)
        channel.progress(STAGE_FILTERING, 38)
        exclusions = ExclusionFilter.from_entries(
            [*pipeline_config.excluded_senders, *request.excluded_senders]
        )
        survivors: list[NormalizedEmail] = []
        excluded_count = 0
        for raw in raw_messages:
            email = normalize(raw)
            match = exclusions.match(email.sender)
            if match:
                excluded_count += 1
                logger.debug(
                    "Message excluded",
                    message_id=email.id,
                    reason=match.match_reason,
                )
                continue
            survivors.append(email)
        logger.info("pipeline_filtered", kept=len(survivors), excluded=excluded_count)

        # Stage 5: classify
        self._checkpoint(request)
        channel.progress(STAGE_CLASSIFYING, 40)
        classifications = await self.classifier.classify(
            survivors, on_progress=channel.scaled(STAGE_CLASSIFYING, 40, 60)
        )
        job_emails = [
            email
            for email in survivors
            if email.id in classifications
            and is_job_related(classifications[email.id], job_labels, threshold)
        ]
        logger.info("pipeline_job_related", count=len(job_emails), threshold=threshold)

        # Stage 6: extract
        self._checkpoint(request)
        channel.progress(STAGE_EXTRACTING, 70)
        extractions = await self.extractor.extract(
            job_emails, on_progress=channel.scaled(STAGE_EXTRACTING, 70, 90)
        )

        # Stage 7: assemble
        self._checkpoint(request)
        channel.progress(STAGE_ASSEMBLING, 95)
        records = [
            build_record(
                email,
                classifications[email.id],
                extractions.get(email.id),
                preview_chars=pipeline_config.body_preview_chars,
            )
            for email in job_emails
        ]

        return CompletionEvent(
            applications=records,
            total_emails=total_emails,
            excluded_count=excluded_count,
        )


def _as_utc(value: datetime) -> datetime:
    return value.replace(tzinfo=UTC) if value.tzinfo is None else value


def _parse_date(value: datetime | str, name: str) -> datetime:
    """Accept a datetime or an ISO 8601 string; naive values are taken as UTC."""
    if isinstance(value, datetime):
        return _as_utc(value)
    try:
        return _as_utc(_DATETIME.validate_python(value))
    except ValidationError:
        raise ConfigurationError(
            f"Invalid {name} date '{value}'. Use an ISO 8601 date such as 2024-01-31."
        ) from None
