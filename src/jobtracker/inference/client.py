"""HTTP client for the remote classification and extraction endpoints.

Both endpoints take a JSON body ``{"inputs": [text, ...]}`` and answer with
a JSON array holding one result object per input, in input order. A bare
array and an object with a ``results`` array are both accepted; anything
else is an InferenceError.

Usage:
    from jobtracker.inference.client import InferenceClient

    client = InferenceClient("https://models.example.com/classify", name="classify")
    results = client.infer(["Subject\\nbody text"], batch_index=0)
"""

import os
from typing import Any

from jobtracker.config_schema import InferenceConfig
from jobtracker.core.errors import ConfigurationError, InferenceError
from jobtracker.core.http import JsonHttpClient
from jobtracker.core.logging import get_logger

logger = get_logger(__name__)


class InferenceClient(JsonHttpClient):
    """Client for one batch inference endpoint.

    Attributes:
        endpoint_url: Full URL of the endpoint ("" when unconfigured)
        name: Short task name used in logs and error messages
    """

    error_class = InferenceError
    service_name = "inference endpoint"

    def __init__(
        self,
        endpoint_url: str,
        name: str = "inference",
        api_token: str | None = None,
        timeout: float = 120.0,
        **kwargs: Any,
    ):
        """Initialize the client.

        Args:
            endpoint_url: Full endpoint URL
            name: Task name ("classify" or "extract")
            api_token: Optional bearer token
            timeout: Per-batch request timeout in seconds
            **kwargs: Retry settings and session passed to JsonHttpClient
        """
        super().__init__(timeout=timeout, **kwargs)
        self.endpoint_url = endpoint_url.strip()
        self.name = name
        self.service_name = f"{name} endpoint"
        self._api_token = api_token

    @classmethod
    def from_config(cls, config: InferenceConfig, task: str) -> "InferenceClient":
        """Create the client for ``task`` ("classify" or "extract")."""
        url = config.classify_url if task == "classify" else config.extract_url
        return cls(
            url,
            name=task,
            api_token=os.environ.get(config.api_token_env) or None,
            timeout=config.timeout_seconds,
        )

    @property
    def configured(self) -> bool:
        """Whether an endpoint URL is set."""
        return bool(self.endpoint_url)

    def _get_headers(self) -> dict[str, str]:
        headers = super()._get_headers()
        if self._api_token:
            headers["Authorization"] = f"Bearer {self._api_token}"
        return headers

    def ensure_configured(self) -> None:
        """Raise ConfigurationError if no endpoint URL is set."""
        if not self.configured:
            raise ConfigurationError(
                f"The {self.name} endpoint is not configured. "
                f"Set inference.{self.name}_url in config.yaml."
            )

    def infer(self, texts: list[str], batch_index: int = 0) -> list[Any]:
        """Submit one batch and return the raw per-item results.

        Args:
            texts: Input texts for this batch
            batch_index: Zero-based batch number (for errors and logs)

        Returns:
            Result entries aligned positionally with ``texts``

        Raises:
            ConfigurationError: If the endpoint is not configured
            InferenceError: If the call fails or the response is not a
                result array of the same length as ``texts``
        """
        self.ensure_configured()

        try:
            response = self.post(self.endpoint_url, json={"inputs": texts})
        except InferenceError as e:
            e.batch_index = batch_index
            raise

        results = response.get("results") if isinstance(response, dict) else response
        if not isinstance(results, list):
            raise InferenceError(
                f"The {self.name} endpoint returned {type(response).__name__} instead of a "
                f"result array for batch {batch_index + 1}. The batch cannot be trusted, "
                "so the run was stopped.",
                batch_index=batch_index,
            )

        if len(results) != len(texts):
            raise InferenceError(
                f"The {self.name} endpoint returned {len(results)} results for "
                f"{len(texts)} inputs in batch {batch_index + 1}. Results cannot be "
                "matched to messages, so the run was stopped.",
                batch_index=batch_index,
            )

        return results
