"""Custom exception types for the job application tracker.

All exceptions follow the same error message convention:
- What failed (specific operation or component)
- Why it failed (the specific condition)
- How to fix it (actionable guidance)

The pipeline orchestrator turns any of these into a single ``error`` event,
so the message text is what the user ends up reading.
"""


class TrackerError(Exception):
    """Base exception for all job tracker errors."""

    pass


class ConfigValidationError(TrackerError):
    """Raised when config.yaml fails Pydantic validation.

    Includes specific field errors with actionable messages.
    """

    pass


class ConfigLoadError(TrackerError):
    """Raised when config.yaml cannot be loaded (file not found, YAML parse error)."""

    pass


class ConfigurationError(TrackerError):
    """Raised when a pipeline run is missing required settings or inputs.

    Covers unconfigured inference endpoints, missing date ranges and
    inverted date ranges. Always raised before any external call.
    """

    pass


class AuthenticationError(TrackerError):
    """Raised when no session token is available or a token refresh fails."""

    pass


class MailAPIError(TrackerError):
    """Raised when the Gmail API returns an error.

    Attributes:
        status_code: HTTP status code from the API
        error_code: Error reason from the Gmail error payload (if available)
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        error_code: str | None = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.error_code = error_code


class RateLimitExceeded(TrackerError):
    """Raised when an upstream API keeps answering 429 after all retries."""

    pass


class InferenceError(TrackerError):
    """Raised when a classification or extraction batch cannot be trusted.

    Covers unreachable endpoints, HTTP errors and malformed or misaligned
    result arrays. A single bad batch fails the whole run.

    Attributes:
        batch_index: Zero-based index of the failing batch (if known)
        status_code: HTTP status code from the endpoint (if any)
    """

    def __init__(
        self,
        message: str,
        batch_index: int | None = None,
        status_code: int | None = None,
    ):
        super().__init__(message)
        self.batch_index = batch_index
        self.status_code = status_code


class PipelineCancelled(TrackerError):
    """Raised between pipeline stages when the caller has cancelled the run."""

    def __init__(self, message: str = "Processing cancelled"):
        super().__init__(message)
