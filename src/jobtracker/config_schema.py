"""Pydantic configuration schema for the job application tracker.

This module defines the configuration schema that mirrors config.yaml structure.
All configuration is validated against these models on load.

Usage:
    from jobtracker.config_schema import AppConfig

    # Validate a config dict
    config = AppConfig(**yaml_data)
"""

from typing import Literal

from pydantic import BaseModel, Field, field_validator

# Current schema version - increment when adding new required fields
CURRENT_SCHEMA_VERSION = 1

# Classification labels that mark a message as part of an application lifecycle
DEFAULT_JOB_LABELS = ["applied", "rejected", "interview", "next-phase", "offer"]


class GmailConfig(BaseModel):
    """Gmail API access and fetch pacing."""

    base_url: str = Field(
        default="https://gmail.googleapis.com/gmail/v1",
        description="Gmail REST API base URL",
    )
    page_size: int = Field(
        default=100,
        ge=1,
        le=500,
        description="Message ids requested per listing page",
    )
    fetch_chunk_size: int = Field(
        default=100,
        ge=1,
        le=500,
        description="Message details fetched per chunk before pausing",
    )
    fetch_concurrency: int = Field(
        default=10,
        ge=1,
        le=50,
        description="Maximum in-flight detail requests within a chunk",
    )
    chunk_delay_seconds: float = Field(
        default=0.5,
        ge=0.0,
        le=30.0,
        description="Pause between detail-fetch chunks (provider rate limits)",
    )
    primary_only: bool = Field(
        default=True,
        description="Restrict the search to the Primary inbox category",
    )
    search_keywords: list[str] = Field(
        default_factory=list,
        description="Optional phrases OR-ed into the search query as a pre-filter",
    )
    timeout_seconds: float = Field(
        default=30.0,
        gt=0.0,
        le=300.0,
        description="Per-request timeout",
    )

    @field_validator("search_keywords")
    @classmethod
    def validate_keywords(cls, v: list[str]) -> list[str]:
        """Reject keywords that would break the quoted query syntax."""
        for keyword in v:
            if '"' in keyword:
                raise ValueError(f"Search keyword cannot contain double quotes: {keyword!r}")
        return [k for k in v if k.strip()]


class OAuthConfig(BaseModel):
    """Google OAuth client settings used only for explicit token refresh."""

    token_url: str = Field(
        default="https://oauth2.googleapis.com/token",
        description="OAuth2 token endpoint",
    )
    client_id_env: str = Field(
        default="GOOGLE_CLIENT_ID",
        description="Environment variable holding the OAuth client id",
    )
    client_secret_env: str = Field(
        default="GOOGLE_CLIENT_SECRET",
        description="Environment variable holding the OAuth client secret",
    )


class InferenceConfig(BaseModel):
    """Remote classification and extraction endpoints."""

    classify_url: str = Field(
        default="",
        description="Endpoint returning [{label, score, success}] per input text",
    )
    extract_url: str = Field(
        default="",
        description="Endpoint returning [{company, role, success}] per input text",
    )
    classify_batch_size: int = Field(
        default=100,
        ge=1,
        le=1000,
        description="Texts per classification request",
    )
    extract_batch_size: int = Field(
        default=50,
        ge=1,
        le=1000,
        description="Texts per extraction request",
    )
    batch_delay_seconds: float = Field(
        default=1.0,
        ge=0.0,
        le=60.0,
        description="Pause between inference batches (shared backend throttling)",
    )
    max_input_chars: int = Field(
        default=1000,
        ge=100,
        le=10000,
        description="Body characters sent per message (after the subject)",
    )
    timeout_seconds: float = Field(
        default=120.0,
        gt=0.0,
        le=600.0,
        description="Per-batch request timeout",
    )
    api_token_env: str = Field(
        default="INFERENCE_API_TOKEN",
        description="Environment variable holding an optional bearer token",
    )

    @field_validator("classify_url", "extract_url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Allow empty (unconfigured) or http(s) URLs only."""
        v = v.strip()
        if v and not v.startswith(("http://", "https://")):
            raise ValueError(f"Endpoint must be an http(s) URL, got {v!r}")
        return v


class PipelineConfig(BaseModel):
    """Defaults for a pipeline run (callers may override per run)."""

    job_labels: list[str] = Field(
        default_factory=lambda: list(DEFAULT_JOB_LABELS),
        description="Labels treated as job-application events",
    )
    confidence_threshold: float = Field(
        default=0.5,
        ge=0.0,
        le=1.0,
        description="Minimum classifier score (inclusive) for a job-related message",
    )
    excluded_senders: list[str] = Field(
        default_factory=list,
        description="Addresses, @domains or substrings whose mail is never classified",
    )
    body_preview_chars: int = Field(
        default=200,
        ge=0,
        le=5000,
        description="Characters of body text included in each application record",
    )

    @field_validator("job_labels")
    @classmethod
    def validate_job_labels(cls, v: list[str]) -> list[str]:
        """Ensure at least one label so the pipeline can ever produce records."""
        labels = [label.strip() for label in v if label.strip()]
        if not labels:
            raise ValueError("job_labels cannot be empty")
        return labels


class LoggingConfig(BaseModel):
    """Logging output settings."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO",
        description="Log level",
    )
    json_output: bool = Field(
        default=True,
        description="JSON logs (server) instead of console rendering",
    )


class AppConfig(BaseModel):
    """Root configuration model."""

    schema_version: int = Field(default=CURRENT_SCHEMA_VERSION, ge=1)
    gmail: GmailConfig = Field(default_factory=GmailConfig)
    oauth: OAuthConfig = Field(default_factory=OAuthConfig)
    inference: InferenceConfig = Field(default_factory=InferenceConfig)
    pipeline: PipelineConfig = Field(default_factory=PipelineConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
