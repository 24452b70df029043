"""Batch classification of normalized emails via the remote classifier.

Each email becomes one input text (subject, newline, truncated body). Texts
are posted in batches through the shared batching loop and results are
mapped back to message ids by position.

A batch whose response is malformed or misaligned raises InferenceError and
fails the run. An individual entry that is unusable (not an object, or a
non-numeric score) is kept as an unsuccessful result instead.

Usage:
    from jobtracker.classifier.job_classifier import BatchClassifier, is_job_related

    classifier = BatchClassifier(client)
    results = await classifier.classify(emails)
    job_ids = [mid for mid, r in results.items() if is_job_related(r, labels, 0.5)]
"""

from __future__ import annotations

from collections.abc import Callable, Collection, Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from jobtracker.core.logging import get_logger
from jobtracker.inference.batching import run_batched

if TYPE_CHECKING:
    from jobtracker.classifier.normalizer import NormalizedEmail
    from jobtracker.config_schema import InferenceConfig
    from jobtracker.inference.client import InferenceClient

logger = get_logger(__name__)

DEFAULT_BATCH_SIZE = 100
DEFAULT_MAX_INPUT_CHARS = 1000


@dataclass(frozen=True, slots=True)
class ClassificationResult:
    """Classifier verdict for one message.

    Attributes:
        message_id: Gmail message id
        label: Predicted label ("" when the entry was unusable)
        score: Confidence clamped to [0, 1]
        success: False when the endpoint reported or produced a bad entry
    """

    message_id: str
    label: str
    score: float
    success: bool

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-friendly dict."""
        return {
            "message_id": self.message_id,
            "label": self.label,
            "score": self.score,
            "success": self.success,
        }


@dataclass(frozen=True, slots=True)
class _Verdict:
    label: str
    score: float
    success: bool


def build_input_text(email: NormalizedEmail, max_chars: int = DEFAULT_MAX_INPUT_CHARS) -> str:
    """Model input for one email: subject, newline, first ``max_chars`` of the body."""
    return f"{email.subject}\n{email.body_text[:max_chars]}"


def _parse_verdict(entry: Any) -> _Verdict:
    if not isinstance(entry, dict):
        return _Verdict(label="", score=0.0, success=False)

    label = entry.get("label")
    label = label.strip() if isinstance(label, str) else ""

    score = entry.get("score")
    if isinstance(score, bool) or not isinstance(score, int | float):
        return _Verdict(label=label, score=0.0, success=False)

    return _Verdict(
        label=label,
        score=min(1.0, max(0.0, float(score))),
        success=entry.get("success", True) is True,
    )


def is_job_related(
    result: ClassificationResult,
    job_labels: Collection[str],
    threshold: float,
) -> bool:
    """True if the message should go on to extraction.

    The threshold is inclusive: a score equal to it passes.
    """
    return result.success and result.label in job_labels and result.score >= threshold


class BatchClassifier:
    """Classifies emails in fixed-size batches against one endpoint.

    Attributes:
        client: Classification endpoint client
        batch_size: Inputs per request
        batch_delay: Pause in seconds between batches
        max_input_chars: Body characters included per input
    """

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
    def from_config(cls, client: InferenceClient, config: InferenceConfig) -> BatchClassifier:
        return cls(
            client,
            batch_size=config.classify_batch_size,
            batch_delay=config.batch_delay_seconds,
            max_input_chars=config.max_input_chars,
        )

    async def classify(
        self,
        emails: Sequence[NormalizedEmail],
        on_progress: Callable[[int, int], None] | None = None,
    ) -> dict[str, ClassificationResult]:
        """Classify every email.

        Args:
            emails: Normalized emails in submission order
            on_progress: Receives (submitted_so_far, total)

        Returns:
            Mapping of message id to ClassificationResult, one per email

        Raises:
            ConfigurationError: If the endpoint is not configured
            InferenceError: If any batch fails or is malformed
        """
        texts = [build_input_text(email, self.max_input_chars) for email in emails]
        verdicts = await run_batched(
            self.client,
            texts,
            _parse_verdict,
            batch_size=self.batch_size,
            batch_delay=self.batch_delay,
            on_progress=on_progress,
        )

        results = {
            email.id: ClassificationResult(
                message_id=email.id,
                label=verdict.label,
                score=verdict.score,
                success=verdict.success,
            )
            for email, verdict in zip(emails, verdicts, strict=True)
        }

        failed = sum(1 for result in results.values() if not result.success)
        logger.info("classification_complete", classified=len(results), item_failures=failed)
        return results
