"""Gmail API client with retry logic and error handling.

This module provides the HTTP client for the Gmail REST API, including:
- Paginated message search following nextPageToken
- Single message retrieval in ``format=full``
- Explicit access-token refresh via the Google OAuth token endpoint

The client never refreshes tokens on its own; an expired token surfaces as
a 401 MailAPIError and the caller decides what to do.

Usage:
    from jobtracker.gmail.client import GmailClient
    from jobtracker.gmail.models import GmailCredentials

    client = GmailClient(GmailCredentials(access_token="ya29..."))
    ids = client.list_message_ids("after:1700000000 before:1700600000")
    message = client.get_message(ids[0])
"""

import os
from collections.abc import Callable
from typing import Any

import requests

from jobtracker.config_schema import GmailConfig, OAuthConfig
from jobtracker.core.errors import (
    AuthenticationError,
    MailAPIError,
    PipelineCancelled,
    RateLimitExceeded,
)
from jobtracker.core.http import JsonHttpClient
from jobtracker.core.logging import get_logger
from jobtracker.gmail.models import GmailCredentials, RawMessage

logger = get_logger(__name__)

# Gmail API base URL
GMAIL_BASE_URL = "https://gmail.googleapis.com/gmail/v1"

# Gmail caps maxResults at 500; the pipeline asks for 100 per page
DEFAULT_PAGE_SIZE = 100

# Listing more pages than this fails the run instead of truncating it
MAX_LIST_PAGES = 500


class GmailClient(JsonHttpClient):
    """Gmail API client bound to one user's session tokens.

    Attributes:
        credentials: Session tokens used for the Authorization header
    """

    error_class = MailAPIError
    service_name = "Gmail API"

    def __init__(
        self,
        credentials: GmailCredentials,
        base_url: str = GMAIL_BASE_URL,
        timeout: float = 30.0,
        **kwargs: Any,
    ):
        """Initialize the Gmail client.

        Args:
            credentials: Access/refresh token pair for the mailbox owner
            base_url: Gmail REST API base URL
            timeout: Request timeout in seconds
            **kwargs: Retry settings and session passed to JsonHttpClient
        """
        super().__init__(base_url=base_url, timeout=timeout, **kwargs)
        self.credentials = credentials

        logger.debug("GmailClient initialized", base_url=self.base_url)

    @classmethod
    def from_config(cls, credentials: GmailCredentials, config: GmailConfig) -> "GmailClient":
        """Create a client from the ``gmail`` config section."""
        return cls(credentials, base_url=config.base_url, timeout=config.timeout_seconds)

    def _get_headers(self) -> dict[str, str]:
        """Get request headers with the session access token.

        Raises:
            AuthenticationError: If the session has no access token
        """
        if not self.credentials.access_token:
            raise AuthenticationError(
                "Not authenticated: no Gmail access token in this session. "
                "Sign in with Google again to obtain a new token."
            )
        headers = super()._get_headers()
        headers["Authorization"] = f"Bearer {self.credentials.access_token}"
        return headers

    def _handle_error_response(
        self, response: requests.Response, method: str, endpoint: str
    ) -> None:
        """Handle error responses from the Gmail API.

        Raises:
            MailAPIError: With details from the error response
            RateLimitExceeded: For 429 after retries
        """
        try:
            error_info = response.json().get("error", {})
            error_message = error_info.get("message", response.text)
            errors = error_info.get("errors") or [{}]
            error_code = errors[0].get("reason", error_info.get("status", "unknown"))
        except (ValueError, AttributeError):
            error_code = "unknown"
            error_message = response.text or f"HTTP {response.status_code}"

        logger.error(
            "Gmail API error",
            method=method,
            endpoint=endpoint,
            status_code=response.status_code,
            error_code=error_code,
            error_message=str(error_message)[:200],
        )

        if response.status_code == 401:
            raise MailAPIError(
                f"Authentication failed (401): {error_message}. "
                "The Gmail access token has expired or was revoked. Sign in again.",
                status_code=401,
                error_code=error_code,
            )
        elif response.status_code == 403:
            raise MailAPIError(
                f"Permission denied (403): {error_message}. "
                "Check that the gmail.readonly scope was granted.",
                status_code=403,
                error_code=error_code,
            )
        elif response.status_code == 404:
            raise MailAPIError(
                f"Resource not found (404): {error_message}. "
                f"The message behind '{endpoint}' may have been deleted.",
                status_code=404,
                error_code=error_code,
            )
        elif response.status_code == 429:
            retry_after = response.headers.get("Retry-After", "unknown")
            raise RateLimitExceeded(
                f"Gmail rate limit exceeded (429). Retry after: {retry_after} seconds. "
                "Try a shorter date range or wait before scanning again."
            )
        else:
            raise MailAPIError(
                f"Gmail API error ({response.status_code}): {error_message}",
                status_code=response.status_code,
                error_code=error_code,
            )

    def list_message_ids(
        self,
        query: str,
        page_size: int = DEFAULT_PAGE_SIZE,
        on_page: Callable[[int, int], None] | None = None,
        should_stop: Callable[[], bool] | None = None,
    ) -> list[str]:
        """Collect the ids of every message matching a search query.

        Follows ``nextPageToken`` until Gmail stops returning one. All ids
        are accumulated before returning.

        Args:
            query: Gmail search syntax (see build_search_query)
            page_size: Ids requested per page
            on_page: Called after each page with (page_number, ids_so_far)
            should_stop: Checked before each page request; listing runs in
                a worker thread, so this is how the caller stops it

        Returns:
            Message ids in the order Gmail listed them

        Raises:
            MailAPIError: If any listing call fails or the listing exceeds
                MAX_LIST_PAGES (fatal for a run)
            PipelineCancelled: If should_stop returned True
        """
        message_ids: list[str] = []
        page_token: str | None = None
        page_count = 0

        while True:
            if should_stop is not None and should_stop():
                logger.info("gmail_list_stopped", pages=page_count, ids=len(message_ids))
                raise PipelineCancelled()

            if page_count >= MAX_LIST_PAGES:
                raise MailAPIError(
                    f"Gmail listing did not finish after {MAX_LIST_PAGES} pages "
                    f"({len(message_ids)} ids so far). Choose a shorter date range."
                )

            params: dict[str, Any] = {"q": query, "maxResults": page_size}
            if page_token:
                params["pageToken"] = page_token

            response = self.get("/users/me/messages", params=params)
            if not isinstance(response, dict):
                raise MailAPIError(
                    f"Gmail API returned an unexpected listing body ({type(response).__name__}) "
                    f"on page {page_count + 1}."
                )

            for item in response.get("messages") or []:
                if isinstance(item, dict) and item.get("id"):
                    message_ids.append(item["id"])

            page_count += 1
            logger.debug(
                "Listing page fetched",
                page=page_count,
                total_ids=len(message_ids),
            )
            if on_page:
                on_page(page_count, len(message_ids))

            page_token = response.get("nextPageToken")
            if not page_token:
                break

        logger.info("gmail_list_complete", pages=page_count, ids=len(message_ids))
        return message_ids

    def get_message(self, message_id: str) -> RawMessage:
        """Fetch one message with headers and the full MIME tree.

        Args:
            message_id: Gmail message id

        Returns:
            RawMessage built from the API resource

        Raises:
            MailAPIError: If the message cannot be fetched or the body is
                not a message resource
        """
        data = self.get(f"/users/me/messages/{message_id}", params={"format": "full"})
        if not isinstance(data, dict):
            raise MailAPIError(
                f"Gmail API returned an unexpected body for message '{message_id}' "
                f"({type(data).__name__})."
            )
        return RawMessage.from_api(data)


class _TokenEndpoint(JsonHttpClient):
    """OAuth token endpoint; failures surface as AuthenticationError."""

    error_class = AuthenticationError
    service_name = "Google OAuth"

    def _error(self, message: str, status_code: int | None = None) -> AuthenticationError:
        return AuthenticationError(message)

    def _get_headers(self) -> dict[str, str]:
        return {"Accept": "application/json"}


def refresh_access_token(
    credentials: GmailCredentials,
    oauth: OAuthConfig,
    session: requests.Session | None = None,
) -> GmailCredentials:
    """Exchange the refresh token for a new access token.

    The pipeline never calls this itself; callers invoke it explicitly
    before starting a run.

    Args:
        credentials: Current token pair (must include a refresh token)
        oauth: OAuth settings naming the client id/secret env vars
        session: Optional requests session (tests inject a mock)

    Returns:
        New credentials carrying the fresh access token

    Raises:
        AuthenticationError: If the refresh token or client secrets are
            missing, or the token endpoint rejects the exchange
    """
    if not credentials.refresh_token:
        raise AuthenticationError(
            "Cannot refresh Gmail access: no refresh token in this session. Sign in again."
        )

    client_id = os.environ.get(oauth.client_id_env, "")
    client_secret = os.environ.get(oauth.client_secret_env, "")
    if not client_id or not client_secret:
        raise AuthenticationError(
            f"Cannot refresh Gmail access: set {oauth.client_id_env} and "
            f"{oauth.client_secret_env} in the environment or .env file."
        )

    endpoint = _TokenEndpoint(max_retries=1, session=session)
    response = endpoint.request(
        "POST",
        oauth.token_url,
        data={
            "client_id": client_id,
            "client_secret": client_secret,
            "refresh_token": credentials.refresh_token,
            "grant_type": "refresh_token",
        },
    )

    access_token = response.get("access_token") if isinstance(response, dict) else None
    if not access_token:
        raise AuthenticationError(
            "Google OAuth token response did not include an access_token. Sign in again."
        )

    logger.info("gmail_access_token_refreshed", expires_in=response.get("expires_in"))
    return GmailCredentials(
        access_token=access_token,
        refresh_token=response.get("refresh_token") or credentials.refresh_token,
    )
