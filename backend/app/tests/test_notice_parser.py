"""
Tests for provider email parsing and notice normalization.
"""
import pytest
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from app.core.exceptions import ParseFailure
from app.schemas.reconciliation import InboundNotice, ProviderEmail
from app.services.notice_parser import (
    clean_subject, extract_note, normalize_notice, parse_amount, parse_provider_email, strip_html
)


@pytest.mark.parametrize("value, expected", [
    ("9.60", Decimal("9.60")),
    ("$9.6", Decimal("9.60")),
    ("1,234.50", Decimal("1234.50")),
    (9.6, Decimal("9.60")),
    (12, Decimal("12.00")),
    (Decimal("0.005"), Decimal("0.01")),
])
def test_parse_amount(value, expected):
    assert parse_amount(value) == expected


@pytest.mark.parametrize("value", [None, True, "", "abc", "0", "-5", "nan", "Infinity"])
def test_parse_amount_rejects(value):
    with pytest.raises(ParseFailure):
        parse_amount(value)


def test_clean_subject_drops_forward_prefixes():
    assert clean_subject("Fwd: FW: Erik Berg paid you $9.60") == "Erik Berg paid you $9.60"
    assert clean_subject("  Re: fwd:Priya paid you $5") == "Priya paid you $5"


def test_parse_forwarded_payment_email():
    email = ProviderEmail(**{
        "from": "venmo@venmo.com",
        "subject": "Fwd: Fwd: Priya Patel paid you $1,234.50",
        "text": "Priya Patel paid you $1,234.50\n\"Courts for January\"\n",
        "messageId": "<abc123@mail.venmo.com>",
    })

    notice = parse_provider_email(email)

    assert notice.sender_label == "Priya Patel"
    assert parse_amount(notice.amount) == Decimal("1234.50")
    assert notice.metadata["message_id"] == "<abc123@mail.venmo.com>"
    assert notice.metadata["note"] == "Courts for January"
    assert "Courts for January" in notice.raw_text


def test_note_and_token_found_in_html_body():
    email = ProviderEmail(
        subject="Erik Berg paid you $9.60",
        html=(
            '<div style="font-family:Arial">Erik Berg paid you $9.60</div>'
            "<p>Note: Tuesday #courtside-0f3c2a4e-1b2c-4d5e-8f90-123456789abc</p>"
        ),
    )

    notice = parse_provider_email(email)

    assert notice.metadata["note"] == "Tuesday #courtside-0f3c2a4e-1b2c-4d5e-8f90-123456789abc"
    assert "#courtside-0f3c2a4e-1b2c-4d5e-8f90-123456789abc" in notice.raw_text
    assert "font-family" not in notice.raw_text


@pytest.mark.parametrize("subject, message", [
    ("You paid Erik Berg $9.60", "not an incoming payment"),
    ("Erik Berg requests $9.60", "not an incoming payment"),
    ("Your weekly statement", "unrecognized subject"),
])
def test_non_payment_emails_are_rejected(subject, message):
    with pytest.raises(ParseFailure) as exc_info:
        parse_provider_email(ProviderEmail(subject=subject, text="body"))
    assert message in str(exc_info.value)


def test_extract_note_skips_markup():
    assert extract_note('style="color:#333"\nMessage: court fees') == "court fees"
    assert extract_note("") is None


def test_strip_html():
    markup = "<style>p {color: red}</style><p>Hello&nbsp;<b>there</b></p><br/>again"
    assert strip_html(markup) == "Hello there\n\nagain"


def test_normalize_notice():
    received = datetime(2026, 1, 10, 18, 30, tzinfo=timezone(timedelta(hours=-5)))
    normalized = normalize_notice(InboundNotice(
        amount="$9.60",
        sender_label="  erik b ",
        raw_text=" paid #courtside-x ",
        received_at=received,
        activity_scope=3,
    ))

    assert normalized.amount == Decimal("9.60")
    assert normalized.sender_label == "erik b"
    assert normalized.raw_text == "paid #courtside-x"
    assert normalized.received_at == datetime(2026, 1, 10, 23, 30)
    assert normalized.activity_scope == 3


def test_normalize_notice_defaults():
    now = datetime(2026, 2, 1, 12, 0)
    normalized = normalize_notice(InboundNotice(amount=9.6, raw_text="thanks"), now=now)
    assert normalized.sender_label == ""
    assert normalized.received_at == now
    assert normalized.metadata == {}


@pytest.mark.parametrize("notice", [
    InboundNotice(amount="9.60", sender_label="erik", raw_text="   "),
    InboundNotice(amount="abc", sender_label="erik", raw_text="paid"),
    InboundNotice(sender_label="erik", raw_text="paid"),
])
def test_normalize_notice_failures(notice):
    with pytest.raises(ParseFailure):
        normalize_notice(notice)
