"""Pipeline engine: sequences the mailbox scan and streams its events."""

from jobtracker.engine.pipeline import (
    ApplicationRecord,
    CompletionEvent,
    ErrorEvent,
    PipelineEvent,
    PipelineOrchestrator,
    PipelineRequest,
    ProgressEvent,
)

__all__ = [
    "ApplicationRecord",
    "CompletionEvent",
    "ErrorEvent",
    "PipelineEvent",
    "PipelineOrchestrator",
    "PipelineRequest",
    "ProgressEvent",
]
