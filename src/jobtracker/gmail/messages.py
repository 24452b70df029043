"""Message search and bulk detail retrieval for the Gmail API.

This module provides:
- build_search_query(): a half-open date interval as Gmail search syntax
- MessageFetcher: chunked, bounded-concurrency detail fetching where a
  failed message is dropped instead of failing the chunk

Usage:
    from jobtracker.gmail.client import GmailClient
    from jobtracker.gmail.messages import MessageFetcher, build_search_query

    fetcher = MessageFetcher(client)
    query = build_search_query(start, end)
    ids = fetcher.search(query)
    messages = await fetcher.fetch_details(ids)
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Sequence
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from jobtracker.core.errors import MailAPIError, RateLimitExceeded
from jobtracker.core.logging import get_logger

if TYPE_CHECKING:
    from jobtracker.gmail.client import GmailClient
    from jobtracker.gmail.models import RawMessage

logger = get_logger(__name__)

DEFAULT_CHUNK_SIZE = 100
DEFAULT_CONCURRENCY = 10
DEFAULT_CHUNK_DELAY = 0.5  # seconds


def _epoch_seconds(value: datetime) -> int:
    """Whole seconds since the epoch; naive datetimes are taken as UTC."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return int(value.timestamp())


def build_search_query(
    start: datetime,
    end: datetime,
    keywords: Sequence[str] = (),
    primary_only: bool = True,
) -> str:
    """Translate a ``[start, end)`` interval into Gmail search syntax.

    Args:
        start: Inclusive lower bound
        end: Exclusive upper bound
        keywords: Optional phrases; when given, at least one must appear
        primary_only: Restrict to the Primary inbox category

    Returns:
        Query string such as ``after:1700000000 before:1700086400 category:primary``

    Example:
        >>> build_search_query(datetime(2024, 1, 1, tzinfo=UTC), datetime(2024, 1, 2, tzinfo=UTC))
        'after:1704067200 before:1704153600 category:primary'
    """
    terms: list[str] = []
    if keywords:
        terms.append("(" + " OR ".join(f'"{keyword}"' for keyword in keywords) + ")")
    terms.append(f"after:{_epoch_seconds(start)}")
    terms.append(f"before:{_epoch_seconds(end)}")
    if primary_only:
        terms.append("category:primary")
    return " ".join(terms)


class MessageFetcher:
    """Lists message ids and fetches their details in rate-limited chunks.

    Detail requests use the blocking GmailClient, so each one runs in a
    worker thread via asyncio.to_thread. A semaphore bounds how many are
    in flight; every chunk is awaited in full before the next one starts.

    Attributes:
        client: GmailClient instance for API calls
        chunk_size: Ids per chunk
        concurrency: Maximum in-flight requests within a chunk
        chunk_delay: Pause in seconds between chunks
    """

    def __init__(
        self,
        client: GmailClient,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        concurrency: int = DEFAULT_CONCURRENCY,
        chunk_delay: float = DEFAULT_CHUNK_DELAY,
    ):
        self.client = client
        self.chunk_size = max(1, chunk_size)
        self.concurrency = max(1, concurrency)
        self.chunk_delay = chunk_delay

    def search(
        self,
        query: str,
        page_size: int = 100,
        on_page: Callable[[int, int], None] | None = None,
        should_stop: Callable[[], bool] | None = None,
    ) -> list[str]:
        """List every message id matching ``query``.

        Errors propagate: a failed listing call is fatal for the run.
        """
        return self.client.list_message_ids(
            query, page_size=page_size, on_page=on_page, should_stop=should_stop
        )

    async def fetch_details(
        self,
        message_ids: Sequence[str],
        on_chunk: Callable[[int, int], None] | None = None,
    ) -> list[RawMessage]:
        """Fetch full messages for ``message_ids``, dropping any that fail.

        Args:
            message_ids: Ids to fetch
            on_chunk: Called after each chunk with (ids_attempted, total_ids)

        Returns:
            Fetched messages in the same relative order as ``message_ids``
        """
        total = len(message_ids)
        messages: list[RawMessage] = []
        failed = 0
        semaphore = asyncio.Semaphore(self.concurrency)

        async def fetch_one(message_id: str) -> RawMessage | None:
            async with semaphore:
                try:
                    return await asyncio.to_thread(self.client.get_message, message_id)
                except (MailAPIError, RateLimitExceeded) as e:
                    logger.warning(
                        "message_fetch_failed",
                        message_id=message_id,
                        error=str(e),
                    )
                    return None

        for chunk_start in range(0, total, self.chunk_size):
            chunk = message_ids[chunk_start : chunk_start + self.chunk_size]

            results = await asyncio.gather(*(fetch_one(message_id) for message_id in chunk))
            for result in results:
                if result is None:
                    failed += 1
                else:
                    messages.append(result)

            attempted = chunk_start + len(chunk)
            logger.debug(
                "Detail chunk fetched",
                attempted=attempted,
                total=total,
                fetched=len(messages),
            )
            if on_chunk:
                on_chunk(attempted, total)

            # Pause between chunks to respect provider rate limits
            if attempted < total and self.chunk_delay > 0:
                await asyncio.sleep(self.chunk_delay)

        logger.info(
            "message_details_fetched",
            requested=total,
            fetched=len(messages),
            failed=failed,
        )
        return messages
