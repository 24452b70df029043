"""Company and role extraction for job-related emails.

Uses the same batching loop as the classifier against a separate endpoint
that answers ``[{company, role, success}, ...]``. Missing, blank or failed
fields fall back to "Unknown" so every job-related email still yields a
record.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from jobtracker.classifier.job_classifier import DEFAULT_MAX_INPUT_CHARS, build_input_text
from jobtracker.core.logging import get_logger
from jobtracker.inference.batching import run_batched

if TYPE_CHECKING:
    from jobtracker.classifier.normalizer import NormalizedEmail
    from jobtracker.config_schema import InferenceConfig
    from jobtracker.inference.client import InferenceClient

logger = get_logger(__name__)

DEFAULT_BATCH_SIZE = 50

UNKNOWN = "Unknown"


@dataclass(frozen=True, slots=True)
class ExtractionResult:
    """Structured fields pulled from one email."""

    message_id: str
    company: str = UNKNOWN
    role: str = UNKNOWN
    success: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "message_id": self.message_id,
            "company": self.company,
            "role": self.role,
            "success": self.success,
        }


def _field(entry: dict[str, Any], name: str) -> str:
    value = entry.get(name)
    if isinstance(value, str) and value.strip():
        return value.strip()
    return UNKNOWN


def _parse_fields(entry: Any) -> tuple[str, str, bool]:
    """(company, role, success) from one raw entry."""
    if not isinstance(entry, dict) or entry.get("success", True) is not True:
        return UNKNOWN, UNKNOWN, False
    return _field(entry, "company"), _field(entry, "role"), True


class JobExtractor:
    """Extracts company and role in fixed-size batches."""

    def __init__(
        self,
        client: InferenceClient,
        batch_size: int = DEFAULT_BATCH_SIZE,
        batch_delay: float = 1.0,
        max_input_chars: int = DEFAULT_MAX_INPUT_CHARS,
    ):
        self.client = client
        self.batch_size = batch_size
        self.batch_delay = batch_delay
        self.max_input_chars = max_input_chars

    @classmethod
    def from_config(cls, client: InferenceClient, config: InferenceConfig) -> JobExtractor:
        return cls(
            client,
            batch_size=config.extract_batch_size,
            batch_delay=config.batch_delay_seconds,
            max_input_chars=config.max_input_chars,
        )

    async def extract(
        self,
        emails: Sequence[NormalizedEmail],
        on_progress: Callable[[int, int], None] | None = None,
    ) -> dict[str, ExtractionResult]:
        """Extract fields for every email.

        Args:
            emails: Job-related emails in submission order
            on_progress: Receives (submitted_so_far, total)

        Returns:
            Mapping of message id to ExtractionResult, one per email

        Raises:
            ConfigurationError: If the endpoint is not configured
            InferenceError: If any batch fails or is malformed
        """
        texts = [build_input_text(email, self.max_input_chars) for email in emails]
        fields = await run_batched(
            self.client,
            texts,
            _parse_fields,
            batch_size=self.batch_size,
            batch_delay=self.batch_delay,
            on_progress=on_progress,
        )

        results: dict[str, ExtractionResult] = {}
        for email, (company, role, success) in zip(emails, fields, strict=True):
            results[email.id] = ExtractionResult(
                message_id=email.id,
                company=company,
                role=role,
                success=success,
            )

        logger.info(
            "extraction_complete",
            extracted=len(results),
            unknown_company=sum(1 for r in results.values() if r.company == UNKNOWN),
        )
        return results
