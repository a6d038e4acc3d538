"""Gmail message operations.

This module provides:
- parse_message: turn a raw Gmail message resource into a ParsedEmail
- MessageManager: search, fetch, financial-email discovery, and label changes

Usage:
    from finmail.gmail.client import GmailClient
    from finmail.gmail.messages import MessageManager

    messages = MessageManager(GmailClient(access_token))

    emails = messages.get_financial_emails(queries, max_results=100)
    messages.add_label_to_messages([e.id for e in emails], "Label_12")
"""

import base64
import binascii
from dataclasses import dataclass, field
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime
from typing import TYPE_CHECKING, Any

import regex

from finmail.classifier.categorize import categorize_email
from finmail.core.errors import GmailAPIError, RateLimitExceeded
from finmail.core.logging import get_logger

if TYPE_CHECKING:
    from finmail.gmail.client import GmailClient

logger = get_logger(__name__)

# "Name <addr@example.com>" (name may be quoted or empty)
FROM_WITH_NAME = regex.compile(r"^(.*?)\s*<(.+?)>$")


@dataclass
class ParsedEmail:
    """A Gmail message reduced to the fields finmail stores."""

    id: str
    thread_id: str
    subject: str
    from_email: str
    from_name: str
    to_email: str
    date: datetime
    has_attachments: bool
    attachment_count: int
    category: str
    labels: list[str] = field(default_factory=list)
    snippet: str = ""
    body_plain: str | None = None
    body_html: str | None = None


def _get_header(headers: list[dict[str, str]], name: str) -> str | None:
    for header in headers:
        if header.get("name") == name:
            return header.get("value")
    return None


def parse_from_header(value: str) -> tuple[str, str]:
    """Split a From header into (name, address).

    A bare address yields an empty name. Quotes around the name are removed.
    """
    value = value.strip()
    try:
        match = FROM_WITH_NAME.match(value, timeout=1)
    except TimeoutError:
        match = None
    if match:
        return match.group(1).strip().replace('"', ""), match.group(2).strip()
    return "", value


def _parse_date(date_header: str | None, internal_date: str | None) -> datetime:
    """Date header first, then internalDate (epoch ms), then now."""
    if date_header:
        try:
            parsed = parsedate_to_datetime(date_header)
            if parsed.tzinfo is None:
                parsed = parsed.replace(tzinfo=UTC)
            return parsed
        except (TypeError, ValueError):
            logger.debug("Unparseable Date header, using internalDate", date_header=date_header)
    if internal_date:
        try:
            return datetime.fromtimestamp(int(internal_date) / 1000, tz=UTC)
        except (TypeError, ValueError):
            pass
    return datetime.now(UTC)


def has_attachments(payload: dict[str, Any] | None) -> bool:
    """True if any part (at any depth) carries a filename."""
    if not payload:
        return False
    parts = payload.get("parts")
    if parts:
        return any(part.get("filename") or has_attachments(part) for part in parts)
    return bool(payload.get("filename"))


def count_attachments(payload: dict[str, Any] | None) -> int:
    """Number of parts (at any depth, including the root) with a filename."""
    if not payload:
        return 0
    count = 1 if payload.get("filename") else 0
    for part in payload.get("parts") or []:
        count += count_attachments(part)
    return count


def _decode_body(data: str) -> str:
    padded = data + "=" * (-len(data) % 4)
    try:
        return base64.urlsafe_b64decode(padded).decode("utf-8", errors="replace")
    except (binascii.Error, ValueError):
        return ""


def extract_body(payload: dict[str, Any] | None) -> tuple[str | None, str | None]:
    """Concatenate text/plain and text/html bodies across all parts.

    Returns:
        (plain, html), each None when absent
    """
    if not payload:
        return None, None

    plain = ""
    html = ""

    data = (payload.get("body") or {}).get("data")
    if data:
        mime_type = payload.get("mimeType")
        if mime_type == "text/plain":
            plain = _decode_body(data)
        elif mime_type == "text/html":
            html = _decode_body(data)

    for part in payload.get("parts") or []:
        part_plain, part_html = extract_body(part)
        if part_plain:
            plain += part_plain
        if part_html:
            html += part_html

    return plain or None, html or None


def parse_message(message: dict[str, Any]) -> ParsedEmail:
    """Parse a Gmail message resource (format=full) into a ParsedEmail."""
    payload = message.get("payload") or {}
    headers = payload.get("headers") or []

    subject = _get_header(headers, "Subject") or "No Subject"
    from_name, from_email = parse_from_header(_get_header(headers, "From") or "")
    body_plain, body_html = extract_body(payload)

    return ParsedEmail(
        id=message["id"],
        thread_id=message.get("threadId", ""),
        subject=subject,
        from_email=from_email,
        from_name=from_name,
        to_email=_get_header(headers, "To") or "",
        date=_parse_date(_get_header(headers, "Date"), message.get("internalDate")),
        has_attachments=has_attachments(payload),
        attachment_count=count_attachments(payload),
        category=categorize_email(subject, from_email, body_plain or ""),
        labels=list(message.get("labelIds") or []),
        snippet=message.get("snippet", ""),
        body_plain=body_plain,
        body_html=body_html,
    )


class MessageManager:
    """Manages Gmail message operations.

    Attributes:
        client: GmailClient instance for API calls
    """

    def __init__(self, client: "GmailClient"):
        self.client = client

    def list_messages(self, query: str = "", max_results: int = 50) -> list[dict[str, Any]]:
        """Search messages. Returns stubs with 'id' and 'threadId'."""
        params = {"q": query} if query else {}
        return self.client.paginate("/messages", "messages", params=params, max_items=max_results)

    def get_message(self, message_id: str) -> dict[str, Any]:
        """Fetch one full message resource.

        Raises:
            GmailAPIError: If the message does not exist or the request fails
        """
        return self.client.get(f"/messages/{message_id}", params={"format": "full"})

    def get_email(self, message_id: str) -> ParsedEmail:
        return parse_message(self.get_message(message_id))

    def get_emails(self, query: str = "", max_results: int = 50) -> list[ParsedEmail]:
        """Search and fetch full messages, parsed."""
        stubs = self.list_messages(query, max_results)
        return [self.get_email(stub["id"]) for stub in stubs]

    def get_financial_emails(self, queries: list[str], max_results: int = 100) -> list[ParsedEmail]:
        """Run each financial query and merge the results.

        Each query fetches max_results // len(queries) messages. A failing
        query is skipped with a warning. Duplicates are removed by message
        ID keeping the first occurrence, and the result is truncated.
        """
        if not queries:
            return []

        per_query = max(max_results // len(queries), 1)
        seen: set[str] = set()
        emails: list[ParsedEmail] = []

        for query in queries:
            try:
                results = self.get_emails(query, per_query)
            except (GmailAPIError, RateLimitExceeded) as e:
                logger.warning("financial_query_failed", query=query, error=str(e))
                continue

            for email in results:
                if email.id not in seen:
                    seen.add(email.id)
                    emails.append(email)

        logger.info("financial_emails_fetched", count=len(emails[:max_results]), queries=len(queries))
        return emails[:max_results]

    def add_label_to_messages(self, message_ids: list[str], label_id: str) -> int:
        """Add a Gmail label to each message.

        Returns:
            Number of messages modified

        Raises:
            GmailAPIError: On the first message that cannot be modified
        """
        for message_id in message_ids:
            self.client.post(f"/messages/{message_id}/modify", json={"addLabelIds": [label_id]})

        logger.info("gmail_label_applied", label_id=label_id, count=len(message_ids))
        return len(message_ids)
