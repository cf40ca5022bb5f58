"""
Inbound notice parsing.

Two stages:
- parse_provider_email: a forwarded payment-provider email (subject/text/html)
  becomes a loosely-typed InboundNotice
- normalize_notice: an InboundNotice becomes the strictly typed NormalizedNotice
  the matcher works on

Both raise ParseFailure on input they cannot use. The reconciliation service
turns that into an unmatched record; it never reaches the caller.
"""
import html
import logging
import re
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Optional
from app.core.exceptions import ParseFailure
from app.core.utils import round2, to_naive_utc, utcnow
from app.schemas.reconciliation import InboundNotice, NormalizedNotice, ProviderEmail

logger = logging.getLogger(__name__)

FORWARD_PREFIX = re.compile(r"^\s*((fwd|fw|re)\s*:\s*)+", re.IGNORECASE)

# Only incoming payments are notices; sent payments and requests are not
PAID_YOU = re.compile(r"(.+?) paid you \$?([\d,]+(?:\.\d+)?)", re.IGNORECASE)
OTHER_PROVIDER_SUBJECTS = (
    re.compile(r"You paid (.+?) \$?([\d,]+(?:\.\d+)?)", re.IGNORECASE),
    re.compile(r"You requested \$?([\d,]+(?:\.\d+)?) from (.+)", re.IGNORECASE),
    re.compile(r"(.+?) requests \$?([\d,]+(?:\.\d+)?)", re.IGNORECASE),
)

NOTE_PATTERNS = (
    re.compile(r'"([^"]{1,500})"'),
    re.compile(r"Note:\s*(.+?)(?:\n|$)", re.IGNORECASE),
    re.compile(r"Message:\s*(.+?)(?:\n|$)", re.IGNORECASE),
)
MARKUP_NOISE = re.compile(
    r"font-family:|font-size:|color:#[0-9a-f]{3,6}|background:|margin:|padding:|<[a-z]+|&nbsp;|style=|class=",
    re.IGNORECASE
)


def strip_html(markup: str) -> str:
    """Crude HTML to text: line breaks kept, tags dropped, entities decoded."""
    text = re.sub(r"<(script|style)[^>]*>.*?</\1>", "", markup, flags=re.IGNORECASE | re.DOTALL)
    text = re.sub(r"<br\s*/?>", "\n", text, flags=re.IGNORECASE)
    text = re.sub(r"</(p|div|tr)>", "\n", text, flags=re.IGNORECASE)
    text = re.sub(r"<[^>]+>", "", text)
    text = html.unescape(text).replace("\xa0", " ")
    text = re.sub(r"[ \t]+", " ", text)
    return re.sub(r"\n\s*\n+", "\n\n", text).strip()


def clean_subject(subject: str) -> str:
    return FORWARD_PREFIX.sub("", subject or "").strip()


def parse_amount(value) -> Decimal:
    """
    Parse a positive currency amount. Accepts '1,234.5', '$9.60', numbers.

    Raises:
        ParseFailure: missing, non-numeric, non-finite or non-positive amount
    """
    if value is None or isinstance(value, bool):
        raise ParseFailure("missing amount")
    if isinstance(value, float):
        value = repr(value)
    text = str(value).strip().replace(",", "").lstrip("$").strip()
    try:
        amount = Decimal(text)
    except InvalidOperation:
        raise ParseFailure(f"unparseable amount '{value}'")
    if not amount.is_finite() or amount <= 0:
        raise ParseFailure(f"invalid amount '{value}'")
    return round2(amount)


def _is_noise(text: str) -> bool:
    if not text or MARKUP_NOISE.search(text):
        return True
    alphanumeric = re.sub(r"[^a-z0-9]", "", text, flags=re.IGNORECASE)
    return len(alphanumeric) < len(text) * 0.3


def extract_note(body: str) -> Optional[str]:
    """The payer's note, if one can be found in the email body."""
    if not body:
        return None
    for pattern in NOTE_PATTERNS:
        match = pattern.search(body)
        if match and not _is_noise(match.group(1)):
            return match.group(1).strip()
    for line in body.splitlines():
        if "#" in line and len(line) < 500 and not _is_noise(line):
            return line.strip()
    return None


def parse_provider_email(email: ProviderEmail) -> InboundNotice:
    """
    Turn a forwarded "<Name> paid you $X" email into an InboundNotice.

    raw_text carries subject, note and body so correlation tokens are found
    wherever the provider put them.

    Raises:
        ParseFailure: not an incoming payment, or no usable amount
    """
    subject = clean_subject(email.subject)
    body = email.text or strip_html(email.html or "")

    match = PAID_YOU.search(subject)
    if not match:
        if any(pattern.search(subject) for pattern in OTHER_PROVIDER_SUBJECTS):
            raise ParseFailure(f"not an incoming payment: '{subject}'")
        raise ParseFailure(f"unrecognized subject: '{subject}'")

    sender = clean_subject(match.group(1))
    amount = parse_amount(match.group(2))
    note = extract_note(body)

    parts = [email.subject or ""]
    if note:
        parts.append(note)
    if body:
        parts.append(body)

    metadata = {"provider_from": email.sender, "subject": email.subject}
    if email.message_id:
        metadata["message_id"] = email.message_id
    if note:
        metadata["note"] = note

    logger.debug(f"Parsed provider email: {sender} paid {amount}")
    return InboundNotice(
        amount=amount,
        sender_label=sender,
        raw_text="\n".join(parts),
        received_at=email.date,
        activity_scope=email.activity_scope,
        metadata=metadata
    )


def normalize_notice(notice: InboundNotice, now: Optional[datetime] = None) -> NormalizedNotice:
    """
    Raises:
        ParseFailure: missing raw text or amount. A blank sender is kept; it only
            rules out fuzzy matching.
    """
    raw_text = (notice.raw_text or "").strip()
    if not raw_text:
        raise ParseFailure("empty notice text")
    amount = parse_amount(notice.amount)
    sender_label = (notice.sender_label or "").strip()

    return NormalizedNotice(
        amount=amount,
        sender_label=sender_label,
        raw_text=raw_text,
        received_at=to_naive_utc(notice.received_at) if notice.received_at else (now or utcnow()),
        activity_scope=notice.activity_scope,
        metadata=notice.metadata or {}
    )
