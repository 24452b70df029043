"""Retrying JSON-over-HTTP client shared by the Gmail and inference clients.

This module provides the request loop both remote dependencies need:
- Automatic retry with exponential backoff for transient errors
- Proper handling of rate limits (429 responses, Retry-After)
- Request/response logging for debugging
- Translation of transport failures into the caller's error type

Subclasses set ``error_class`` and ``service_name`` and override
``_get_headers`` and ``_handle_error_response`` for their API's dialect.

Usage:
    class GmailClient(JsonHttpClient):
        error_class = MailAPIError
        service_name = "Gmail API"

    client = GmailClient(credentials)
    response = client.get("/users/me/messages", params={"q": "after:1"})
"""

import random
import time
from typing import Any

import requests

from jobtracker.core.errors import RateLimitExceeded, TrackerError
from jobtracker.core.logging import get_logger

logger = get_logger(__name__)

# Default retry configuration
DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_DELAYS = [1.0, 2.0, 4.0]  # Exponential backoff delays in seconds
DEFAULT_TIMEOUT = 30.0


class JsonHttpClient:
    """Base HTTP client with retry logic and error handling.

    Wraps a requests.Session with:
    - Retry with exponential backoff (and ±20% jitter) for 5xx, 429,
      timeouts and connection errors
    - Structured logging of requests, retries and errors
    - Errors raised as ``error_class`` so callers see one exception type
      per remote service

    Attributes:
        base_url: Service base URL (no trailing slash)
        max_retries: Maximum number of retry attempts
        retry_delays: List of delay times (seconds) for each retry
        timeout: Default request timeout in seconds
    """

    error_class: type[TrackerError] = TrackerError
    service_name: str = "remote service"

    def __init__(
        self,
        base_url: str = "",
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_delays: list[float] | None = None,
        timeout: float = DEFAULT_TIMEOUT,
        session: requests.Session | None = None,
    ):
        """Initialize the client.

        Args:
            base_url: Base URL prepended to relative endpoints
            max_retries: Maximum number of retry attempts for transient errors
            retry_delays: List of delay times in seconds for each retry
            timeout: Default request timeout in seconds
            session: Optional pre-built session (tests inject a mock here)
        """
        self.base_url = base_url.rstrip("/")
        self.max_retries = max_retries
        self.retry_delays = retry_delays or DEFAULT_RETRY_DELAYS
        self.timeout = timeout

        # Create a session for connection pooling
        self.session = session or requests.Session()

    def _get_headers(self) -> dict[str, str]:
        """Get request headers. Subclasses add authorization here."""
        return {
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    def _make_url(self, endpoint: str) -> str:
        """Construct the full URL for an endpoint.

        Args:
            endpoint: API endpoint path or absolute URL

        Returns:
            Full URL including base URL
        """
        if endpoint.startswith("http"):
            return endpoint
        if not endpoint.startswith("/"):
            endpoint = "/" + endpoint
        return self.base_url + endpoint

    def _error(self, message: str, status_code: int | None = None) -> TrackerError:
        """Build an instance of this client's error type."""
        if self.error_class is TrackerError:
            return TrackerError(message)
        return self.error_class(message, status_code=status_code)  # type: ignore[call-arg]

    def _handle_error_response(
        self, response: requests.Response, method: str, endpoint: str
    ) -> None:
        """Handle a non-retryable error response.

        Args:
            response: The HTTP response object
            method: HTTP method used
            endpoint: API endpoint called

        Raises:
            RateLimitExceeded: For 429 responses after retries
            TrackerError: As ``error_class`` for everything else
        """
        error_message = response.text or f"HTTP {response.status_code}"

        logger.error(
            "http_error_response",
            service=self.service_name,
            method=method,
            endpoint=endpoint,
            status_code=response.status_code,
            error_message=error_message[:200],
        )

        if response.status_code == 429:
            retry_after = response.headers.get("Retry-After", "unknown")
            raise RateLimitExceeded(
                f"{self.service_name} rate limit exceeded (429). Retry after: {retry_after} "
                "seconds. Try a shorter date range or wait before scanning again."
            )

        raise self._error(
            f"{self.service_name} error ({response.status_code}): {error_message[:200]}",
            status_code=response.status_code,
        )

    def _should_retry(self, response: requests.Response, attempt: int) -> bool:
        """Determine if a request should be retried.

        Args:
            response: The HTTP response object
            attempt: Current attempt number (0-based)

        Returns:
            True if the request should be retried
        """
        if attempt >= self.max_retries:
            return False

        if 500 <= response.status_code < 600:
            return True

        if response.status_code == 429:
            return True

        return False

    def _get_retry_delay(self, response: requests.Response | None, attempt: int) -> float:
        """Get the delay before retrying a request.

        Includes jitter (±20%) to prevent retry storms when several runs
        hit rate limits at the same time.

        Args:
            response: The HTTP response object (None for transport errors)
            attempt: Current attempt number (0-based)

        Returns:
            Delay in seconds before retrying (with jitter)
        """
        if response is not None and response.status_code == 429:
            retry_after = response.headers.get("Retry-After")
            if retry_after:
                try:
                    base_delay = float(retry_after)
                    jitter = base_delay * 0.2 * (2 * random.random() - 1)
                    return base_delay + jitter
                except ValueError:
                    pass  # Fall through to default

        if attempt < len(self.retry_delays):
            base_delay = self.retry_delays[attempt]
        else:
            base_delay = self.retry_delays[-1]

        jitter = base_delay * 0.2 * (2 * random.random() - 1)
        return base_delay + jitter

    def request(
        self,
        method: str,
        endpoint: str,
        params: dict[str, Any] | None = None,
        json: Any = None,
        data: dict[str, Any] | None = None,
        timeout: float | None = None,
    ) -> Any:
        """Make an HTTP request with retry logic.

        Args:
            method: HTTP method (GET, POST)
            endpoint: API endpoint path or absolute URL
            params: URL query parameters
            json: JSON body for POST requests
            data: Form-encoded body (used by the OAuth token exchange)
            timeout: Request timeout in seconds (defaults to self.timeout)

        Returns:
            Parsed JSON response

        Raises:
            RateLimitExceeded: When 429 persists after all retries
            TrackerError: As ``error_class`` for API and transport errors
        """
        url = self._make_url(endpoint)
        timeout = timeout or self.timeout
        last_response = None

        for attempt in range(self.max_retries + 1):
            try:
                headers = self._get_headers()

                logger.debug(
                    "http_request",
                    service=self.service_name,
                    method=method,
                    endpoint=endpoint,
                    attempt=attempt + 1,
                    params=list(params.keys()) if params else None,
                )

                response = self.session.request(
                    method=method,
                    url=url,
                    headers=headers,
                    params=params,
                    json=json,
                    data=data,
                    timeout=timeout,
                )
                last_response = response

                if response.status_code < 400:
                    if response.status_code == 204:
                        return {}
                    try:
                        return response.json()
                    except ValueError as e:
                        raise self._error(
                            f"{self.service_name} returned a non-JSON body for {endpoint} "
                            f"(HTTP {response.status_code}).",
                            status_code=response.status_code,
                        ) from e

                if self._should_retry(response, attempt):
                    delay = self._get_retry_delay(response, attempt)
                    logger.warning(
                        "http_request_retry",
                        service=self.service_name,
                        method=method,
                        endpoint=endpoint,
                        status_code=response.status_code,
                        attempt=attempt + 1,
                        max_retries=self.max_retries,
                        delay=delay,
                    )
                    time.sleep(delay)
                    continue

                self._handle_error_response(response, method, endpoint)

            except requests.exceptions.Timeout:
                if attempt < self.max_retries:
                    delay = self._get_retry_delay(None, attempt)
                    logger.warning(
                        "http_request_timeout_retry",
                        service=self.service_name,
                        method=method,
                        endpoint=endpoint,
                        attempt=attempt + 1,
                        delay=delay,
                    )
                    time.sleep(delay)
                    continue
                raise self._error(
                    f"Request to {self.service_name} ({endpoint}) timed out after {timeout}s "
                    f"and {self.max_retries} retries. The service may be overloaded.",
                ) from None

            except requests.exceptions.ConnectionError as e:
                if attempt < self.max_retries:
                    delay = self._get_retry_delay(None, attempt)
                    logger.warning(
                        "http_connection_error_retry",
                        service=self.service_name,
                        method=method,
                        endpoint=endpoint,
                        attempt=attempt + 1,
                        error=str(e),
                        delay=delay,
                    )
                    time.sleep(delay)
                    continue
                raise self._error(
                    f"Connection to {self.service_name} failed: {e}. "
                    "Check the configured URL and your network connection.",
                ) from e

            except requests.exceptions.RequestException as e:
                # Broken bodies, bad encodings, redirect loops: not retried
                logger.error(
                    "http_request_failed",
                    service=self.service_name,
                    method=method,
                    endpoint=endpoint,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                raise self._error(
                    f"Request to {self.service_name} ({endpoint}) failed: {e}.",
                ) from e

        # All retries exhausted
        if last_response is not None:
            self._handle_error_response(last_response, method, endpoint)

        raise self._error(
            f"Request to {self.service_name} ({endpoint}) failed after "
            f"{self.max_retries} retries",
        )

    def get(
        self,
        endpoint: str,
        params: dict[str, Any] | None = None,
        timeout: float | None = None,
    ) -> Any:
        """Make a GET request.

        Args:
            endpoint: API endpoint path
            params: URL query parameters
            timeout: Request timeout in seconds

        Returns:
            Parsed JSON response
        """
        return self.request("GET", endpoint, params=params, timeout=timeout)

    def post(
        self,
        endpoint: str,
        json: Any = None,
        params: dict[str, Any] | None = None,
        timeout: float | None = None,
    ) -> Any:
        """Make a POST request.

        Args:
            endpoint: API endpoint path
            json: JSON body data
            params: URL query parameters
            timeout: Request timeout in seconds

        Returns:
            Parsed JSON response
        """
        return self.request("POST", endpoint, params=params, json=json, timeout=timeout)
