"""
Reconciliation matcher: binds inbound payment notices to pending obligations.

One deterministic pipeline per notice:
1. normalize (failure -> unmatched record)
2. tier 1: correlation token in the text; trusted over the stated amount
3. re-delivery: a notice carrying a message id or receipt time whose fingerprint
   already matched resolves to the same obligation, found by its correlation token
4. tier 2: amount within FUZZY_AMOUNT_EPSILON and sender resembling the payer;
   exactly one candidate or nothing

Every notice leaves exactly one append-only record. Nothing here raises to the
caller for bad input: the inbound channel is untrusted and must not be able to
stop a batch.
"""
import logging
import re
from datetime import datetime
from difflib import SequenceMatcher
from typing import List, Optional, Tuple
from sqlalchemy.orm import Session
from app.core.config import settings
from app.core.exceptions import AmbiguousMatch, ObligationNotPending, ParseFailure
from app.core.utils import sha256_hex, to_naive_utc, utcnow
from app.db.session import atomic
from app.models.activity import Membership
from app.models.obligation import Obligation, ObligationStatus, SatisfactionMethod
from app.models.person import Person
from app.models.reconciliation import MatchMethod, ReconciliationRecord
from app.schemas.reconciliation import InboundNotice, NormalizedNotice, ProviderEmail
from app.services.ledger_service import apply_satisfied
from app.services.notice_parser import normalize_notice, parse_provider_email, strip_html

logger = logging.getLogger(__name__)

UUID_PATTERN = r"[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}"

NICKNAMES = {
    "michael": {"mike", "mikey", "mick"},
    "john": {"jon", "johnny", "jonathan", "jack"},
    "matthew": {"matt", "matty"},
    "daniel": {"dan", "danny"},
    "robert": {"rob", "robby", "bob", "bobby"},
    "william": {"will", "bill", "billy", "liam"},
    "christopher": {"chris"},
    "elizabeth": {"liz", "beth", "lizzie", "eliza"},
    "katherine": {"kate", "katie", "kathy", "kat"},
    "jennifer": {"jen", "jenny"},
    "alexander": {"alex", "xander"},
    "nicholas": {"nick", "nicky"},
    "benjamin": {"ben", "benny"},
    "joseph": {"joe", "joey"},
    "samuel": {"sam", "sammy"},
    "thomas": {"tom", "tommy"},
    "anthony": {"tony"},
    "richard": {"rick", "rich", "dick"},
    "james": {"jim", "jimmy", "jamie"},
}
_CANONICAL = {}
for _full, _short in NICKNAMES.items():
    _CANONICAL[_full] = _full
    for _nick in _short:
        _CANONICAL.setdefault(_nick, _full)


def token_pattern():
    """Correlation tag regex; the leading '#' is optional since providers sometimes drop it."""
    return re.compile(rf"#?{re.escape(settings.CORRELATION_TOKEN_PREFIX)}-({UUID_PATTERN})", re.IGNORECASE)


def extract_tokens(text: str) -> List[str]:
    """Distinct correlation tokens in order of appearance, lowercased."""
    seen = []
    for token in token_pattern().findall(text or ""):
        token = token.lower()
        if token not in seen:
            seen.append(token)
    return seen


def _normalize_name(value: str) -> str:
    value = (value or "").lower().lstrip("@")
    value = re.sub(r"[-_.]+", " ", value)
    value = re.sub(r"[^a-z0-9 ]+", "", value)
    return " ".join(value.split())


def _first_names_agree(a: str, b: str) -> bool:
    if a == b:
        return True
    if _CANONICAL.get(a, a) == _CANONICAL.get(b, b):
        return True
    shorter, longer = sorted((a, b), key=len)
    return len(shorter) >= 3 and longer.startswith(shorter)


def sender_matches(sender_label: str, name: Optional[str], payment_handle: Optional[str] = None) -> bool:
    """
    Does the notice sender plausibly refer to this person?

    Accepts a case-insensitive substring either way, agreeing first names
    (nicknames and prefixes count) with no conflicting last part, or a
    difflib similarity of at least FUZZY_NAME_MIN_RATIO. The payment handle
    is compared the same way.
    """
    sender = _normalize_name(sender_label)
    if not sender:
        return False

    for candidate in (name, payment_handle):
        target = _normalize_name(candidate)
        if not target:
            continue
        if min(len(sender), len(target)) >= 3 and (sender in target or target in sender):
            return True

        sender_parts, target_parts = sender.split(), target.split()
        if _first_names_agree(sender_parts[0], target_parts[0]):
            if len(sender_parts) == 1 or len(target_parts) == 1:
                return True
            # "erik b" vs "erik berg": last parts must not contradict
            last_a, last_b = sender_parts[-1], target_parts[-1]
            if last_a.startswith(last_b) or last_b.startswith(last_a):
                return True

        if SequenceMatcher(None, sender, target).ratio() >= settings.FUZZY_NAME_MIN_RATIO:
            return True
    return False


def notice_fingerprint(notice: InboundNotice, normalized: NormalizedNotice) -> str:
    """
    Identity of a notice across re-deliveries: the provider message id when
    given, otherwise text, sender, amount and (if supplied) receipt time.
    """
    message_id = (normalized.metadata or {}).get("message_id")
    if message_id:
        return sha256_hex("message-id", str(message_id))
    received = to_naive_utc(notice.received_at).isoformat() if notice.received_at else ""
    return sha256_hex(
        normalized.raw_text,
        normalized.sender_label.lower(),
        f"{normalized.amount:.2f}",
        received
    )


def has_delivery_identity(notice: InboundNotice, normalized: NormalizedNotice) -> bool:
    """
    Can this notice be told apart from a new payment with the same text?

    Without a message id or receipt time, two genuine payments of the same
    amount from the same payer fingerprint identically.
    """
    return bool((normalized.metadata or {}).get("message_id")) or notice.received_at is not None


def _raw_fingerprint(notice: InboundNotice) -> str:
    return sha256_hex("unparsed", notice.raw_text or "", notice.sender_label or "", str(notice.amount))


def _tier1(tokens: List[str], db: Session) -> Optional[Obligation]:
    """Obligation referenced by the tokens, None when none is known. Raises AmbiguousMatch on several."""
    if not tokens:
        return None
    obligations = db.query(Obligation).filter(Obligation.correlation_token.in_(tokens)).all()
    if len(obligations) > 1:
        raise AmbiguousMatch([o.id for o in obligations])
    return obligations[0] if obligations else None


def _previous_match(fingerprint: str, db: Session) -> Optional[Tuple[ReconciliationRecord, Optional[Obligation]]]:
    earlier = db.query(ReconciliationRecord).filter(
        ReconciliationRecord.fingerprint == fingerprint,
        ReconciliationRecord.obligation_id.isnot(None)
    ).order_by(ReconciliationRecord.id).first()
    if not earlier:
        return None
    # Ids of obligations deleted by an unlock can be reused; the token cannot
    obligation = None
    if earlier.correlation_token:
        obligation = db.query(Obligation).filter(
            Obligation.correlation_token == earlier.correlation_token
        ).first()
    return earlier, obligation


def fuzzy_candidates(notice: NormalizedNotice, db: Session) -> List[Obligation]:
    """Pending obligations within epsilon of the amount whose payer resembles the sender."""
    if not notice.sender_label:
        return []
    query = db.query(Obligation, Person).join(
        Membership, Obligation.membership_id == Membership.id
    ).join(
        Person, Membership.person_id == Person.id
    ).filter(Obligation.status == ObligationStatus.PENDING)
    if notice.activity_scope is not None:
        query = query.filter(Obligation.activity_id == notice.activity_scope)

    candidates = []
    for obligation, person in query.order_by(Obligation.id).all():
        if abs(obligation.amount - notice.amount) >= settings.FUZZY_AMOUNT_EPSILON:
            continue
        if sender_matches(notice.sender_label, person.name, person.payment_handle):
            candidates.append(obligation)
    return candidates


def _new_record(notice: NormalizedNotice, fingerprint: str, **fields) -> ReconciliationRecord:
    return ReconciliationRecord(
        raw_text=notice.raw_text,
        provider_metadata=notice.metadata or None,
        parsed_amount=notice.amount,
        sender_label=notice.sender_label or None,
        activity_scope_id=notice.activity_scope,
        fingerprint=fingerprint,
        received_at=notice.received_at,
        **fields
    )


def _settle(
    notice: NormalizedNotice,
    fingerprint: str,
    obligation: Obligation,
    method: MatchMethod,
    db: Session,
    now: datetime,
    detail: Optional[str] = None
) -> ReconciliationRecord:
    """Apply a match. Already-satisfied targets are recorded for audit only."""
    record = _new_record(
        notice, fingerprint,
        obligation_id=obligation.id,
        correlation_token=obligation.correlation_token,
        match_method=method,
        applied=False,
        detail=detail
    )
    if obligation.status == ObligationStatus.SATISFIED:
        record.detail = detail or "already satisfied"
        return record
    try:
        apply_satisfied(
            obligation.id, SatisfactionMethod.RECONCILED, db,
            note=f"Reconciled from notice ({method.value})", now=now
        )
        record.applied = True
    except ObligationNotPending as e:
        # Lost a race with another notice or a manual mark
        record.detail = f"already {e.status}"
    return record


def _unmatched(notice: NormalizedNotice, fingerprint: str, detail: str, **fields) -> ReconciliationRecord:
    return _new_record(
        notice, fingerprint,
        match_method=MatchMethod.UNMATCHED,
        applied=False,
        detail=detail[:255],
        **fields
    )


def _match(notice: InboundNotice, normalized: NormalizedNotice, db: Session, now: datetime) -> ReconciliationRecord:
    fingerprint = notice_fingerprint(notice, normalized)

    tokens = extract_tokens(normalized.raw_text)
    try:
        obligation = _tier1(tokens, db)
    except AmbiguousMatch as e:
        return _unmatched(normalized, fingerprint, f"ambiguous: {len(e.candidate_ids)} correlation tokens")
    if obligation is not None:
        if obligation.status in (ObligationStatus.PENDING, ObligationStatus.SATISFIED):
            return _settle(normalized, fingerprint, obligation, MatchMethod.EXACT_TOKEN, db, now)
        return _unmatched(
            normalized, fingerprint,
            f"token refers to {obligation.status.value} obligation {obligation.id}",
            correlation_token=obligation.correlation_token
        )

    previous = _previous_match(fingerprint, db) if has_delivery_identity(notice, normalized) else None
    if previous is not None:
        earlier, obligation = previous
        if obligation is None:
            return _unmatched(
                normalized, fingerprint,
                f"duplicate of record {earlier.id} for voided obligation {earlier.obligation_id}",
                correlation_token=earlier.correlation_token
            )
        if obligation.status in (ObligationStatus.PENDING, ObligationStatus.SATISFIED):
            return _settle(
                normalized, fingerprint, obligation, earlier.match_method, db, now,
                detail=f"duplicate of record {earlier.id}"
            )
        return _unmatched(
            normalized, fingerprint, f"duplicate of record {earlier.id}",
            correlation_token=obligation.correlation_token
        )

    candidates = fuzzy_candidates(normalized, db)
    if len(candidates) == 1:
        return _settle(normalized, fingerprint, candidates[0], MatchMethod.FUZZY, db, now)
    if len(candidates) > 1:
        return _unmatched(
            normalized, fingerprint,
            f"ambiguous: {len(candidates)} candidate obligations "
            f"({', '.join(str(o.id) for o in candidates)})"
        )
    if tokens:
        return _unmatched(normalized, fingerprint, "unknown correlation token")
    return _unmatched(normalized, fingerprint, "no candidate obligation")


def _record_parse_failure(notice: InboundNotice, error: ParseFailure, db: Session, now: datetime) -> ReconciliationRecord:
    with atomic(db):
        record = ReconciliationRecord(
            raw_text=notice.raw_text or "",
            provider_metadata=notice.metadata or None,
            parsed_amount=None,
            sender_label=(notice.sender_label or None),
            activity_scope_id=notice.activity_scope,
            match_method=MatchMethod.UNMATCHED,
            applied=False,
            detail=f"parse failure: {error}"[:255],
            fingerprint=_raw_fingerprint(notice),
            received_at=to_naive_utc(notice.received_at) if notice.received_at else now
        )
        db.add(record)
    logger.warning(f"Unparseable notice recorded as unmatched (record {record.id}): {error}")
    return record


def process_notice(notice: InboundNotice, db: Session, now: Optional[datetime] = None) -> ReconciliationRecord:
    """
    Reconcile one notice and persist its record in its own transaction.

    Returns:
        The ReconciliationRecord; applied is True only when this notice
        moved an obligation to satisfied.
    """
    now = now or utcnow()
    try:
        normalized = normalize_notice(notice, now=now)
    except ParseFailure as e:
        return _record_parse_failure(notice, e, db, now)

    with atomic(db):
        record = _match(notice, normalized, db, now)
        db.add(record)

    if record.match_method == MatchMethod.UNMATCHED:
        logger.warning(f"Notice from '{normalized.sender_label}' for {normalized.amount} unmatched: {record.detail}")
    else:
        logger.info(
            f"Notice from '{normalized.sender_label}' matched obligation {record.obligation_id} "
            f"via {record.match_method.value} (applied={record.applied})"
        )
    return record


def process_email(email: ProviderEmail, db: Session, now: Optional[datetime] = None) -> ReconciliationRecord:
    """Parse a forwarded provider email and reconcile it. Unusable emails still leave a record."""
    now = now or utcnow()
    try:
        notice = parse_provider_email(email)
    except ParseFailure as e:
        body = email.text or strip_html(email.html or "")
        raw = InboundNotice(
            raw_text="\n".join(part for part in (email.subject, body) if part),
            received_at=email.date,
            activity_scope=email.activity_scope,
            metadata={"provider_from": email.sender, "subject": email.subject, "message_id": email.message_id}
        )
        return _record_parse_failure(raw, e, db, now)
    return process_notice(notice, db, now=now)


def process_notices(notices: List[InboundNotice], db: Session, now: Optional[datetime] = None) -> List[ReconciliationRecord]:
    """Process a batch in order. One notice never stops the rest."""
    records = []
    for notice in notices:
        try:
            records.append(process_notice(notice, db, now=now))
        except Exception as e:
            # Storage-level failure for this notice; the batch carries on
            logger.error(f"Failed to reconcile notice: {e}", exc_info=True)
    return records


def list_records(
    db: Session,
    activity_id: Optional[int] = None,
    unmatched_only: bool = False,
    limit: int = 100
) -> List[ReconciliationRecord]:
    """Records newest first, optionally for one activity's obligations or scope."""
    query = db.query(ReconciliationRecord)
    if activity_id is not None:
        obligation_ids = [
            row[0] for row in db.query(Obligation.id).filter(Obligation.activity_id == activity_id).all()
        ]
        if obligation_ids:
            query = query.filter(
                (ReconciliationRecord.activity_scope_id == activity_id)
                | ReconciliationRecord.obligation_id.in_(obligation_ids)
            )
        else:
            query = query.filter(ReconciliationRecord.activity_scope_id == activity_id)
    if unmatched_only:
        query = query.filter(ReconciliationRecord.match_method == MatchMethod.UNMATCHED)
    return query.order_by(ReconciliationRecord.id.desc()).limit(limit).all()


def list_unmatched_for_owner(owner_id: int, db: Session, limit: int = 100) -> List[ReconciliationRecord]:
    """Unmatched records an activity owner should triage: unscoped ones and those scoped to their activities."""
    from app.models.activity import Activity

    owned_ids = [row[0] for row in db.query(Activity.id).filter(Activity.owner_id == owner_id).all()]
    scope_filter = ReconciliationRecord.activity_scope_id.is_(None)
    if owned_ids:
        scope_filter = scope_filter | ReconciliationRecord.activity_scope_id.in_(owned_ids)
    return db.query(ReconciliationRecord).filter(
        ReconciliationRecord.match_method == MatchMethod.UNMATCHED,
        scope_filter
    ).order_by(ReconciliationRecord.id.desc()).limit(limit).all()
