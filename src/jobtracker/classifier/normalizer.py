"""Message normalization: Gmail MIME trees to flat text records.

normalize() is pure and total. Malformed base64, undecodable bytes and
regex timeouts only cost the offending part its text; they never raise.

CRITICAL SECURITY NOTE:
All regex operations use the `regex` library with a timeout so hostile
HTML cannot stall a run (ReDoS).

Usage:
    from jobtracker.classifier.normalizer import normalize

    email = normalize(raw_message)
    print(email.sender, email.subject, email.body_text[:80])
"""

from __future__ import annotations

import base64
import binascii
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

import regex

from jobtracker.core.logging import get_logger
from jobtracker.gmail.models import MessagePart, RawMessage

logger = get_logger(__name__)

# Regex timeout in seconds (CRITICAL: all operations MUST use this)
REGEX_TIMEOUT = 1.0

STYLE_BLOCK_PATTERN = regex.compile(r"<style[^>]*>.*?</style>", regex.IGNORECASE | regex.DOTALL)
SCRIPT_BLOCK_PATTERN = regex.compile(r"<script[^>]*>.*?</script>", regex.IGNORECASE | regex.DOTALL)
HTML_TAG_PATTERN = regex.compile(r"<[^>]+>")
WHITESPACE_RUN = regex.compile(r"\s+")

# Applied in this order; "&amp;lt;" therefore ends up as "<"
HTML_ENTITIES = (
    ("&nbsp;", " "),
    ("&amp;", "&"),
    ("&lt;", "<"),
    ("&gt;", ">"),
    ("&quot;", '"'),
    ("&#39;", "'"),
)


@dataclass(frozen=True, slots=True)
class NormalizedEmail:
    """Flat text record derived from a RawMessage.

    Attributes:
        id: Gmail message id
        sender: Raw ``From`` header value ("" if absent)
        subject: Raw ``Subject`` header value ("" if absent)
        date: Provider timestamp as an aware UTC datetime
        body_text: Plain text of every text part, unbounded length
        snippet: Gmail preview snippet
    """

    id: str
    sender: str
    subject: str
    date: datetime
    body_text: str
    snippet: str

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-friendly dict."""
        return {
            "id": self.id,
            "from": self.sender,
            "subject": self.subject,
            "date": self.date.isoformat(),
            "bodyText": self.body_text,
            "snippet": self.snippet,
        }


def get_header(raw: RawMessage, name: str) -> str:
    """Return the first header named exactly ``name``, or "" if absent."""
    for header_name, value in raw.headers:
        if header_name == name:
            return value
    return ""


def decode_body_data(data: str) -> str:
    """Decode Gmail body data (URL-safe or standard base64) to text.

    Raises:
        ValueError: If the data is not valid base64
    """
    normalized = data.strip().replace("-", "+").replace("_", "/")
    normalized += "=" * (-len(normalized) % 4)
    try:
        raw_bytes = base64.b64decode(normalized, validate=True)
    except binascii.Error as e:
        raise ValueError(f"Invalid base64 body data: {e}") from e
    return raw_bytes.decode("utf-8", errors="replace")


def html_to_text(html: str) -> str:
    """Strip markup from an HTML body.

    Removes <style> and <script> blocks with their content, replaces the
    remaining tags with spaces, decodes the common entities and collapses
    whitespace.

    Raises:
        TimeoutError: If a regex exceeds REGEX_TIMEOUT
    """
    text = STYLE_BLOCK_PATTERN.sub("", html, timeout=REGEX_TIMEOUT)
    text = SCRIPT_BLOCK_PATTERN.sub("", text, timeout=REGEX_TIMEOUT)
    text = HTML_TAG_PATTERN.sub(" ", text, timeout=REGEX_TIMEOUT)
    for entity, replacement in HTML_ENTITIES:
        text = text.replace(entity, replacement)
    text = WHITESPACE_RUN.sub(" ", text, timeout=REGEX_TIMEOUT)
    return text.strip()


def _part_text(part: MessagePart) -> str:
    """Text contributed by one part (children excluded)."""
    if not part.body_data:
        return ""

    mime_type = part.mime_type.lower()
    if "text/html" not in mime_type and "text/plain" not in mime_type:
        return ""

    try:
        decoded = decode_body_data(part.body_data)
        if "text/html" in mime_type:
            return html_to_text(decoded) + "\n"
        return decoded + "\n"
    except (ValueError, TimeoutError) as e:
        logger.debug("Part decode failed", mime_type=part.mime_type, error=str(e))
        return ""


def extract_body_text(part: MessagePart) -> str:
    """Walk the MIME tree depth-first and concatenate all text parts."""
    text = _part_text(part)
    for child in part.parts:
        text += extract_body_text(child)
    return text


def _parse_internal_date(internal_date: str) -> datetime:
    """Epoch-milliseconds string to an aware UTC datetime (epoch on failure)."""
    try:
        return datetime.fromtimestamp(int(internal_date) / 1000, tz=UTC)
    except (ValueError, OverflowError, OSError):
        return datetime.fromtimestamp(0, tz=UTC)


def normalize(raw: RawMessage) -> NormalizedEmail:
    """Convert a RawMessage into a NormalizedEmail.

    The date comes from Gmail's internalDate rather than the Date header,
    which senders control and format inconsistently.

    Args:
        raw: Message fetched with format=full

    Returns:
        NormalizedEmail; body_text falls back to the snippet when no part
        yields text
    """
    body_text = extract_body_text(raw.payload).strip()
    if not body_text:
        body_text = raw.snippet.strip()

    return NormalizedEmail(
        id=raw.id,
        sender=get_header(raw, "From"),
        subject=get_header(raw, "Subject"),
        date=_parse_internal_date(raw.internal_date),
        body_text=body_text,
        snippet=raw.snippet,
    )
