"""Provider-native message types for the Gmail API.

RawMessage and MessagePart mirror the ``format=full`` message resource.
They are immutable once built and are handed by value to the normalizer.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True, slots=True)
class GmailCredentials:
    """Session tokens for the Gmail API.

    Attributes:
        access_token: OAuth2 bearer token
        refresh_token: Long-lived token used only by explicit refresh
    """

    access_token: str
    refresh_token: str | None = None


@dataclass(frozen=True, slots=True)
class MessagePart:
    """One node of a message's MIME tree.

    Attributes:
        mime_type: Media type of this part (e.g. 'text/html')
        body_data: Base64-encoded inline body, or None if the part has none
        parts: Child parts for multipart nodes
    """

    mime_type: str = ""
    body_data: str | None = None
    parts: tuple[MessagePart, ...] = ()

    @classmethod
    def from_api(cls, payload: dict[str, Any] | None) -> MessagePart:
        """Build a part tree from a Gmail ``payload`` dict.

        Missing or wrongly-typed keys produce empty values instead of errors.
        """
        if not isinstance(payload, dict):
            return cls()

        body = payload.get("body")
        data = body.get("data") if isinstance(body, dict) else None

        children = payload.get("parts")
        parts = (
            tuple(cls.from_api(child) for child in children) if isinstance(children, list) else ()
        )

        return cls(
            mime_type=str(payload.get("mimeType") or ""),
            body_data=data if isinstance(data, str) and data else None,
            parts=parts,
        )


@dataclass(frozen=True, slots=True)
class RawMessage:
    """A Gmail message as fetched with ``format=full``.

    Attributes:
        id: Gmail message id
        thread_id: Gmail thread id
        headers: Header (name, value) pairs in provider order
        payload: Root of the MIME part tree
        internal_date: Provider timestamp as an epoch-milliseconds string
        snippet: Short preview text supplied by Gmail
    """

    id: str
    thread_id: str = ""
    headers: tuple[tuple[str, str], ...] = ()
    payload: MessagePart = field(default_factory=MessagePart)
    internal_date: str = ""
    snippet: str = ""

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> RawMessage:
        """Build a RawMessage from a Gmail API message resource."""
        payload = data.get("payload") if isinstance(data.get("payload"), dict) else {}

        headers: list[tuple[str, str]] = []
        for header in payload.get("headers") or []:
            if isinstance(header, dict):
                headers.append((str(header.get("name", "")), str(header.get("value", ""))))

        return cls(
            id=str(data.get("id", "")),
            thread_id=str(data.get("threadId", "")),
            headers=tuple(headers),
            payload=MessagePart.from_api(payload),
            internal_date=str(data.get("internalDate") or ""),
            snippet=str(data.get("snippet") or ""),
        )
