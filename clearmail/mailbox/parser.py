"""
MIME content extraction: raw message bytes -> subject, sender, date, body.

Plain text is preferred; HTML is stripped to text as a fallback. The body is
truncated to `max_chars` since long bodies only confuse the model.
"""

import html
import logging
import re
from dataclasses import dataclass
from email import message_from_bytes, policy
from email.header import decode_header, make_header
from email.message import Message
from email.utils import parsedate_to_datetime
from typing import Tuple

from ..providers.base import ClassificationRequest

logger = logging.getLogger(__name__)

DEFAULT_MAX_CHARS = 2500

_TAG_RE = re.compile(r"<[^>]+>")
_DROP_BLOCK_RE = re.compile(r"<(script|style|head)[^>]*>.*?</\1>", re.IGNORECASE | re.DOTALL)
_WS_RE = re.compile(r"[ \t\r\f\v]+")


@dataclass(frozen=True)
class ParsedEmail:
    subject: str
    sender: str
    date: str
    body: str

    def to_request(self) -> ClassificationRequest:
        return ClassificationRequest(subject=self.subject, sender=self.sender, body=self.body, date=self.date)


def decode_mime_header(value) -> str:
    """Decode RFC 2047 encoded headers ('=?UTF-8?B?...?=') to a clean string."""
    if not value:
        return ""
    try:
        decoded = str(make_header(decode_header(str(value))))
    except (LookupError, UnicodeError, ValueError):
        decoded = str(value)
    return decoded.replace("\r\n", "").replace("\n", "").strip()


def html_to_text(markup: str) -> str:
    text = _DROP_BLOCK_RE.sub(" ", markup)
    text = re.sub(r"<br\s*/?>|</p>|</div>", "\n", text, flags=re.IGNORECASE)
    text = html.unescape(_TAG_RE.sub(" ", text))
    lines = (_WS_RE.sub(" ", line).strip() for line in text.splitlines())
    return "\n".join(line for line in lines if line)


def _decode_part(part: Message) -> str:
    payload = part.get_payload(decode=True)
    if not payload:
        return ""
    charset = part.get_content_charset() or "utf-8"
    try:
        return payload.decode(charset, errors="replace")
    except LookupError:
        return payload.decode("utf-8", errors="replace")


def _get_bodies(msg: Message) -> Tuple[str, str]:
    text_plain, text_html = [], []
    parts = msg.walk() if msg.is_multipart() else [msg]
    for part in parts:
        if part.is_multipart():
            continue
        if "attachment" in str(part.get("Content-Disposition", "")).lower():
            continue
        content_type = part.get_content_type()
        if content_type == "text/plain":
            text_plain.append(_decode_part(part))
        elif content_type == "text/html":
            text_html.append(_decode_part(part))
    return "\n".join(text_plain), "\n".join(text_html)


def parse_message(raw: bytes, max_chars: int = DEFAULT_MAX_CHARS) -> ParsedEmail:
    """
    Extract the classification fields from a raw message.

    Args:
        raw: RFC 822 message bytes
        max_chars: Maximum body length kept
    """
    msg = message_from_bytes(raw or b"", policy=policy.compat32)

    date = ""
    date_header = msg.get("Date")
    if date_header:
        try:
            date = parsedate_to_datetime(str(date_header)).isoformat()
        except (TypeError, ValueError):
            date = str(date_header)

    text_plain, text_html = _get_bodies(msg)
    body = text_plain.strip() or html_to_text(text_html)
    if len(body) > max_chars:
        body = body[:max_chars]

    return ParsedEmail(
        subject=decode_mime_header(msg.get("Subject", "")),
        sender=decode_mime_header(msg.get("From", "")),
        date=date,
        body=body,
    )
