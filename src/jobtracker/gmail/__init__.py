"""Gmail API adapter.

Provides the mailbox side of the pipeline:
- Base client with retry logic, pagination and token refresh
- Chunked, bounded-concurrency message detail fetching
- Immutable provider-native message types

Usage:
    from jobtracker.gmail import GmailClient, GmailCredentials, MessageFetcher

    client = GmailClient(GmailCredentials(access_token=token))
    fetcher = MessageFetcher(client)
"""

from jobtracker.gmail.client import GmailClient, refresh_access_token
from jobtracker.gmail.messages import MessageFetcher, build_search_query
from jobtracker.gmail.models import GmailCredentials, MessagePart, RawMessage

__all__ = [
    "GmailClient",
    "GmailCredentials",
    "MessageFetcher",
    "MessagePart",
    "RawMessage",
    "build_search_query",
    "refresh_access_token",
]
