"""
Tests for the reconciliation matcher.
"""
import pytest
from datetime import datetime
from decimal import Decimal
from uuid import uuid4
from app.core.exceptions import ImmutableRecord
from app.models import (
    MatchMethod, MembershipStatus, Obligation, ObligationStatus, ReconciliationRecord, SatisfactionMethod
)
from app.schemas.reconciliation import InboundNotice, ProviderEmail
from app.services import ledger_service, reconciliation_service, roster_service
from app.services.reconciliation_service import extract_tokens, sender_matches


def _obligation_for(db, activity, person):
    membership = roster_service.get_membership(activity.id, person.id, db)
    return db.query(Obligation).filter(Obligation.membership_id == membership.id).first()


def _statuses(db, activity):
    return [o.status for o in ledger_service.list_obligations(activity.id, db)]


@pytest.mark.parametrize("sender, name, handle, expected", [
    ("erik b", "Erik Berg", None, True),
    ("Erik Berg", "Erik Berg", None, True),
    ("mike", "Michael Smith", None, True),
    ("Mike S", "Michael Smith", None, True),
    ("mike jones", "Michael Smith", None, False),
    ("erikberg", "Erik Berg", "@erikberg", True),
    ("bob", "Robert Paulson", None, True),
    ("Jo", "John", None, False),
    ("", "Erik Berg", None, False),
    ("Priya Patel", "Tomas Novak", "@tnovak", False),
])
def test_sender_matches(sender, name, handle, expected):
    assert sender_matches(sender, name, handle) is expected


def test_extract_tokens_is_case_insensitive_and_deduplicated():
    token = str(uuid4())
    text = f"#courtside-{token.upper()} thanks! courtside-{token} #other-{uuid4()}"
    assert extract_tokens(text) == [token]


def test_exact_token_match_satisfies_obligation(db, locked_activity, guests):
    """The 'erik b' notice carrying Erik's tag settles Erik's obligation."""
    obligation = _obligation_for(db, locked_activity, guests[0])

    record = reconciliation_service.process_notice(InboundNotice(
        amount=Decimal("9.60"),
        sender_label="erik b",
        raw_text=f"Erik B paid you $9.60: Tuesday courts #courtside-{obligation.correlation_token}",
    ), db)

    assert record.match_method == MatchMethod.EXACT_TOKEN
    assert record.applied is True
    assert record.obligation_id == obligation.id
    assert record.correlation_token == obligation.correlation_token

    obligation = ledger_service.get_obligation(obligation.id, db)
    assert obligation.status == ObligationStatus.SATISFIED
    assert obligation.satisfied_via == SatisfactionMethod.RECONCILED
    assert _statuses(db, locked_activity).count(ObligationStatus.SATISFIED) == 1


def test_token_is_trusted_over_amount_and_sender(db, locked_activity, guests):
    obligation = _obligation_for(db, locked_activity, guests[1])

    record = reconciliation_service.process_notice(InboundNotice(
        amount="5.00",
        sender_label="S. Connor Household",
        raw_text=f"for Sarah #courtside-{obligation.correlation_token}",
    ), db)

    assert record.match_method == MatchMethod.EXACT_TOKEN
    assert record.applied is True
    assert ledger_service.get_obligation(obligation.id, db).status == ObligationStatus.SATISFIED


def test_reprocessing_a_notice_is_idempotent(db, locked_activity, guests):
    obligation = _obligation_for(db, locked_activity, guests[0])
    notice = InboundNotice(
        amount="9.60",
        sender_label="Erik Berg",
        raw_text=f"#courtside-{obligation.correlation_token}",
    )

    first = reconciliation_service.process_notice(notice, db)
    second = reconciliation_service.process_notice(notice, db)

    assert first.applied is True
    assert second.applied is False
    assert second.obligation_id == obligation.id
    assert second.detail == "already satisfied"
    assert db.query(ReconciliationRecord).count() == 2
    assert _statuses(db, locked_activity).count(ObligationStatus.SATISFIED) == 1


def test_fuzzy_match_on_single_candidate(db, locked_activity, guests):
    record = reconciliation_service.process_notice(
        InboundNotice(amount=9.6, sender_label="Mike", raw_text="Mike paid you $9.60"), db
    )

    michael = _obligation_for(db, locked_activity, guests[2])
    assert record.match_method == MatchMethod.FUZZY
    assert record.applied is True
    assert record.obligation_id == michael.id
    assert ledger_service.get_obligation(michael.id, db).status == ObligationStatus.SATISFIED


def test_fuzzy_requires_amount_within_epsilon(db, locked_activity):
    record = reconciliation_service.process_notice(
        InboundNotice(amount="9.70", sender_label="Priya Patel", raw_text="Priya Patel paid you $9.70"), db
    )

    assert record.match_method == MatchMethod.UNMATCHED
    assert record.detail == "no candidate obligation"
    assert set(_statuses(db, locked_activity)) == {ObligationStatus.PENDING}


def test_two_equal_candidates_are_never_guessed(db, factory, locked_activity, owner):
    """Two pending 'Sarah' obligations at 9.60: every attempt is logged, nothing is settled."""
    other_sarah = factory.person("Sarah Lee")
    group = factory.group(owner, [other_sarah], name="Sunday Singles")
    other = factory.activity(
        owner, group, min_participants=2, shared_pool_rate_per_unit=Decimal("9.60")
    )
    factory.commit(other, other_sarah)
    ledger_service.lock_roster(other.id, db)
    assert _obligation_for(db, other, other_sarah).amount == Decimal("9.60")

    notice = InboundNotice(amount="9.60", sender_label="sarah", raw_text="sarah paid you $9.60")
    first = reconciliation_service.process_notice(notice, db)
    second = reconciliation_service.process_notice(notice, db)

    for record in (first, second):
        assert record.match_method == MatchMethod.UNMATCHED
        assert record.applied is False
        assert record.obligation_id is None
        assert record.detail.startswith("ambiguous: 2 candidate obligations")
    assert db.query(ReconciliationRecord).count() == 2
    assert db.query(Obligation).filter(Obligation.status != ObligationStatus.PENDING).count() == 0


def test_parse_failures_become_unmatched_records(db, locked_activity):
    bad_amount = reconciliation_service.process_notice(
        InboundNotice(amount="abc", sender_label="Erik", raw_text="Erik paid you"), db
    )
    empty = reconciliation_service.process_notice(InboundNotice(amount="9.60", raw_text=""), db)

    for record in (bad_amount, empty):
        assert record.match_method == MatchMethod.UNMATCHED
        assert record.parsed_amount is None
        assert record.detail.startswith("parse failure:")
    assert set(_statuses(db, locked_activity)) == {ObligationStatus.PENDING}


def test_batch_continues_past_bad_notices(db, locked_activity, guests):
    obligation = _obligation_for(db, locked_activity, guests[3])
    records = reconciliation_service.process_notices([
        InboundNotice(amount=None, raw_text="garbled"),
        InboundNotice(amount="9.60", sender_label="Priya", raw_text=f"#courtside-{obligation.correlation_token}"),
    ], db)

    assert [r.match_method for r in records] == [MatchMethod.UNMATCHED, MatchMethod.EXACT_TOKEN]
    assert records[1].applied is True


def test_token_for_waived_obligation_is_not_applied(db, locked_activity, guests):
    obligation = _obligation_for(db, locked_activity, guests[0])
    ledger_service.waive(obligation.id, "forgiven", db)

    record = reconciliation_service.process_notice(InboundNotice(
        amount="9.60", sender_label="Erik Berg", raw_text=f"#courtside-{obligation.correlation_token}"
    ), db)

    assert record.match_method == MatchMethod.UNMATCHED
    assert record.correlation_token == obligation.correlation_token
    assert record.detail == f"token refers to waived obligation {obligation.id}"
    assert ledger_service.get_obligation(obligation.id, db).status == ObligationStatus.WAIVED


def test_redelivered_fuzzy_notice_resolves_to_the_same_obligation(db, locked_activity, guests):
    notice = InboundNotice(
        amount="9.60",
        sender_label="Mike",
        raw_text="Mike paid you $9.60",
        metadata={"message_id": "<m-1@provider>"},
    )
    first = reconciliation_service.process_notice(notice, db)
    second = reconciliation_service.process_notice(notice, db)

    assert first.match_method == MatchMethod.FUZZY
    assert second.match_method == MatchMethod.FUZZY
    assert second.obligation_id == first.obligation_id
    assert second.applied is False
    assert second.detail == f"duplicate of record {first.id}"


def test_activity_scope_limits_fuzzy_candidates(db, factory, owner, locked_activity, guests):
    other = factory.activity(owner, min_participants=1)
    notice = dict(amount="9.60", sender_label="Tomas Novak", raw_text="Tomas Novak paid you $9.60")

    out_of_scope = reconciliation_service.process_notice(InboundNotice(activity_scope=other.id, **notice), db)
    in_scope = reconciliation_service.process_notice(InboundNotice(activity_scope=locked_activity.id, **notice), db)

    assert out_of_scope.match_method == MatchMethod.UNMATCHED
    assert in_scope.match_method == MatchMethod.FUZZY
    assert in_scope.obligation_id == _obligation_for(db, locked_activity, guests[4]).id


def test_unknown_token_falls_through_to_fuzzy(db, locked_activity, guests):
    record = reconciliation_service.process_notice(InboundNotice(
        amount="9.60", sender_label="Mike", raw_text=f"#courtside-{uuid4()}"
    ), db)
    assert record.match_method == MatchMethod.FUZZY
    assert record.obligation_id == _obligation_for(db, locked_activity, guests[2]).id

    record = reconciliation_service.process_notice(InboundNotice(
        amount="3.00", sender_label="Nobody", raw_text=f"#courtside-{uuid4()}"
    ), db)
    assert record.match_method == MatchMethod.UNMATCHED
    assert record.detail == "unknown correlation token"


def test_email_is_parsed_and_reconciled(db, locked_activity, guests):
    obligation = _obligation_for(db, locked_activity, guests[0])
    email = ProviderEmail(**{
        "from": "venmo@venmo.com",
        "subject": "Fwd: Erik Berg paid you $9.60",
        "text": f'Erik Berg paid you $9.60\n"Tuesday #courtside-{obligation.correlation_token}"',
        "date": datetime(2026, 1, 9, 20, 0),
    })

    record = reconciliation_service.process_email(email, db)

    assert record.match_method == MatchMethod.EXACT_TOKEN
    assert record.applied is True
    assert record.provider_metadata["provider_from"] == "venmo@venmo.com"


def test_outgoing_payment_email_is_recorded_unmatched(db, locked_activity):
    record = reconciliation_service.process_email(
        ProviderEmail(subject="You paid Erik Berg $9.60", text="sent"), db
    )
    assert record.match_method == MatchMethod.UNMATCHED
    assert "not an incoming payment" in record.detail
    assert set(_statuses(db, locked_activity)) == {ObligationStatus.PENDING}


def test_records_are_append_only(db, locked_activity):
    record = reconciliation_service.process_notice(
        InboundNotice(amount="1.00", sender_label="Nobody", raw_text="hello"), db
    )
    record.detail = "edited"
    with pytest.raises(ImmutableRecord):
        db.commit()
    db.rollback()

    db.delete(db.get(ReconciliationRecord, record.id))
    with pytest.raises(ImmutableRecord):
        db.commit()
    db.rollback()
    assert db.query(ReconciliationRecord).count() == 1


def test_unmatched_queue_for_owner(db, factory, owner, locked_activity):
    stranger = factory.person("Stella Stranger")
    theirs = factory.activity(stranger, min_participants=1)

    unscoped = reconciliation_service.process_notice(
        InboundNotice(amount="1.00", sender_label="Nobody", raw_text="hello"), db
    )
    mine = reconciliation_service.process_notice(
        InboundNotice(amount="2.00", sender_label="Nobody", raw_text="hi", activity_scope=locked_activity.id), db
    )
    reconciliation_service.process_notice(
        InboundNotice(amount="3.00", sender_label="Nobody", raw_text="hey", activity_scope=theirs.id), db
    )

    queue = reconciliation_service.list_unmatched_for_owner(owner.id, db)
    assert [r.id for r in queue] == [mine.id, unscoped.id]

    scoped = reconciliation_service.list_records(db, activity_id=locked_activity.id)
    assert [r.id for r in scoped] == [mine.id]


def test_redelivery_after_relock_never_credits_a_new_obligation(db, factory, locked_activity, guests):
    """A payment for a voided cycle stays with its payer, even when obligation ids are reused."""
    tomas = guests[4]
    notice = InboundNotice(
        amount="9.60",
        sender_label="Tomas Novak",
        raw_text="Tomas Novak paid you $9.60",
        received_at=datetime(2026, 1, 9, 20, 0),
    )
    first = reconciliation_service.process_notice(notice, db)
    assert first.applied is True
    assert first.obligation_id == _obligation_for(db, locked_activity, tomas).id

    ledger_service.unlock_roster(locked_activity.id, db)
    roster_service.set_participation(locked_activity.id, guests[0].id, MembershipStatus.WITHDRAWN, db)
    newcomer = factory.person("Zed Newcomer")
    factory.commit(locked_activity, newcomer)
    ledger_service.lock_roster(locked_activity.id, db)

    second = reconciliation_service.process_notice(notice, db)

    assert second.match_method == MatchMethod.UNMATCHED
    assert second.applied is False
    assert second.obligation_id is None
    assert second.correlation_token == first.correlation_token
    assert second.detail == f"duplicate of record {first.id} for voided obligation {first.obligation_id}"
    assert set(_statuses(db, locked_activity)) == {ObligationStatus.PENDING}
    assert _obligation_for(db, locked_activity, newcomer).status == ObligationStatus.PENDING


def test_repeat_payment_without_delivery_identity_is_matched_afresh(db, factory, owner, locked_activity, guests):
    """Same payer, same amount, no message id or receipt time: the second payment settles the new week."""
    erik = guests[0]
    notice = InboundNotice(amount="9.60", sender_label="Erik Berg", raw_text="Erik Berg paid you $9.60")
    week_one = reconciliation_service.process_notice(notice, db)
    assert week_one.applied is True

    next_week = factory.activity(owner, min_participants=2, shared_pool_rate_per_unit=Decimal("9.60"))
    factory.commit(next_week, erik)
    ledger_service.lock_roster(next_week.id, db)

    week_two = reconciliation_service.process_notice(notice, db)

    new_obligation = _obligation_for(db, next_week, erik)
    assert week_two.match_method == MatchMethod.FUZZY
    assert week_two.applied is True
    assert week_two.obligation_id == new_obligation.id
    assert week_two.detail is None
    assert ledger_service.get_obligation(new_obligation.id, db).status == ObligationStatus.SATISFIED
    assert ledger_service.get_obligation(week_one.obligation_id, db).status == ObligationStatus.SATISFIED
