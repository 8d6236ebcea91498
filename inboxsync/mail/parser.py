"""
RFC822 message parsing.

Turns the raw bytes fetched from IMAP into the handful of normalized
fields the pipeline stores: subject, from, to, date, message id, and the
best available body (plain text preferred, HTML as fallback).

Usage:
    from inboxsync.mail.parser import parse_message
    parsed = parse_message(raw_message)   # raises ParseError
"""

import email
import logging
from datetime import timezone
from email import policy
from email.message import EmailMessage
from email.utils import parsedate_to_datetime

from inboxsync.agent.schemas import ParsedMessage, RawMessage, utcnow
from inboxsync.errors import ParseError

logger = logging.getLogger(__name__)


def _header(msg: EmailMessage, name: str) -> str:
    value = msg.get(name)
    return str(value).strip() if value is not None else ""


def _parse_date(value: str):
    if not value:
        return utcnow()
    try:
        parsed = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return utcnow()
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _best_body(msg: EmailMessage) -> str:
    """Plain text if the message has any, otherwise HTML, otherwise empty."""
    part = msg.get_body(preferencelist=("plain", "html"))
    if part is None:
        return ""
    try:
        content = part.get_content()
    except (LookupError, UnicodeDecodeError):
        payload = part.get_payload(decode=True) or b""
        content = payload.decode("utf-8", errors="replace")
    return content.strip() if isinstance(content, str) else ""


def parse_message(raw: RawMessage) -> ParsedMessage:
    """
    Parse one raw message.

    Raises:
        ParseError: If the bytes are empty or carry no usable headers,
                    or if the MIME structure cannot be read.
    """
    if not raw.raw or not raw.raw.strip():
        raise ParseError(f"Message {raw.uid} is empty")

    try:
        msg = email.message_from_bytes(raw.raw, policy=policy.default)
        if not msg.keys():
            raise ParseError(f"Message {raw.uid} has no headers")

        return ParsedMessage(
            uid=raw.uid,
            message_id=_header(msg, "Message-ID"),
            subject=_header(msg, "Subject"),
            sender=_header(msg, "From"),
            to=_header(msg, "To"),
            date=_parse_date(_header(msg, "Date")),
            body=_best_body(msg),
        )
    except ParseError:
        raise
    except Exception as e:
        # The stdlib parser can fail in many ways on malformed input
        raise ParseError(f"Message {raw.uid} could not be parsed: {e}") from e
