"""
Obligation ledger: roster lock/unlock and the obligation state machine.

Every public operation runs in a single transaction (app.db.session.atomic).
Status flips that can race are done with a conditional UPDATE; a zero row
count means another request won and is reported as the matching domain error.
"""
import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Dict, List, Optional
from urllib.parse import quote, urlencode
from uuid import uuid4
from sqlalchemy.orm import Session
from app.core.config import settings
from app.core.exceptions import (
    AlreadyLocked, BelowMinimum, InvalidTransition, NotFound, NotLocked,
    ObligationNotPending
)
from app.core.utils import utcnow
from app.db.session import atomic
from app.models.activity import Activity, ActivityStatus, Membership
from app.models.notification import EventType
from app.models.obligation import Obligation, ObligationStatus, SatisfactionMethod
from app.services.cost_model import compute_cost
from app.services.events import record_event
from app.services.roster_service import committed_memberships

logger = logging.getLogger(__name__)


def get_activity(activity_id: int, db: Session, for_update: bool = False) -> Activity:
    """Load an activity or raise NotFound. for_update takes a row lock where the backend supports it."""
    query = db.query(Activity).filter(Activity.id == activity_id)
    if for_update:
        query = query.with_for_update()
    activity = query.first()
    if not activity:
        raise NotFound(f"Activity {activity_id} not found", activity_id=activity_id)
    return activity


def get_obligation(obligation_id: int, db: Session) -> Obligation:
    obligation = db.query(Obligation).filter(Obligation.id == obligation_id).first()
    if not obligation:
        raise NotFound(f"Obligation {obligation_id} not found", obligation_id=obligation_id)
    return obligation


def get_cost_summary(activity_id: int, db: Session) -> Dict:
    """
    Cost projection at the current committed headcount.

    Same shape before and after lock. After lock, per_guest_amount is still the
    live projection; frozen_guest_amount is what guests actually owe.
    """
    activity = get_activity(activity_id, db)
    committed = committed_memberships(activity.id, db)
    guest_count = len([m for m in committed if not m.is_owner])
    breakdown = compute_cost(
        activity.resource_units,
        activity.owner_rate_per_unit,
        activity.shared_pool_rate_per_unit,
        guest_count
    )
    return {
        "activity_id": activity.id,
        "total_players": len(committed),
        "guest_count": guest_count,
        "resource_units": activity.resource_units,
        "owner_total": breakdown.owner_total,
        "shared_pool_total": breakdown.shared_pool_total,
        "per_guest_amount": breakdown.per_guest_amount,
        "roster_locked": activity.roster_locked,
        "frozen_guest_amount": activity.frozen_guest_amount,
    }


def _new_obligation(activity: Activity, membership: Membership, amount: Decimal, db: Session) -> Obligation:
    obligation = Obligation(
        membership_id=membership.id,
        activity_id=activity.id,
        amount=amount,
        status=ObligationStatus.PENDING,
        correlation_token=str(uuid4())
    )
    db.add(obligation)
    return obligation


def lock_roster(activity_id: int, db: Session) -> Activity:
    """
    Freeze the per-guest amount and create one obligation per committed guest.

    Raises:
        InvalidTransition: activity is completed or cancelled
        AlreadyLocked: roster already locked (including a concurrent lock that won)
        BelowMinimum: fewer committed participants than min_participants
    """
    with atomic(db):
        activity = get_activity(activity_id, db, for_update=True)
        if activity.status in (ActivityStatus.COMPLETED, ActivityStatus.CANCELLED):
            raise InvalidTransition("activity", activity.status.value, ActivityStatus.CONFIRMED.value)
        if activity.roster_locked or activity.status != ActivityStatus.PROPOSED:
            raise AlreadyLocked(activity.id)

        committed = committed_memberships(activity.id, db)
        if len(committed) < activity.min_participants:
            raise BelowMinimum(len(committed), activity.min_participants)

        guests = [m for m in committed if not m.is_owner]
        breakdown = compute_cost(
            activity.resource_units,
            activity.owner_rate_per_unit,
            activity.shared_pool_rate_per_unit,
            len(guests)
        )
        # No guests: nothing to freeze yet, the first post-lock guest sets the amount
        frozen_amount = breakdown.per_guest_amount if guests else None

        updated = db.query(Activity).filter(
            Activity.id == activity.id,
            Activity.status == ActivityStatus.PROPOSED,
            Activity.roster_locked.is_(False)
        ).update({
            Activity.status: ActivityStatus.CONFIRMED,
            Activity.roster_locked: True,
            Activity.frozen_guest_amount: frozen_amount,
        }, synchronize_session=False)
        if not updated:
            raise AlreadyLocked(activity.id)
        db.refresh(activity)

        obligations = [_new_obligation(activity, m, frozen_amount, db) for m in guests]
        db.flush()
        for obligation in obligations:
            record_event(
                db, EventType.ROSTER_LOCKED,
                person_id=obligation.membership.person_id,
                activity_id=activity.id,
                obligation_id=obligation.id
            )

    logger.info(
        f"Locked activity {activity.id}: {len(obligations)} obligations at "
        f"{frozen_amount} (pool {breakdown.shared_pool_total})"
    )
    return activity


def unlock_roster(activity_id: int, db: Session) -> Activity:
    """
    Void the payment cycle: delete every obligation and return to proposed.

    Payment history for the cycle is lost; reconciliation records keep their
    weak reference to the deleted obligation ids.
    """
    with atomic(db):
        activity = get_activity(activity_id, db, for_update=True)
        if activity.status in (ActivityStatus.COMPLETED, ActivityStatus.CANCELLED):
            raise InvalidTransition("activity", activity.status.value, ActivityStatus.PROPOSED.value)
        if not activity.roster_locked:
            raise NotLocked(activity.id)

        obligations = db.query(Obligation).filter(Obligation.activity_id == activity.id).all()
        for obligation in obligations:
            db.delete(obligation)
        db.flush()

        updated = db.query(Activity).filter(
            Activity.id == activity.id,
            Activity.status == ActivityStatus.CONFIRMED,
            Activity.roster_locked.is_(True)
        ).update({
            Activity.status: ActivityStatus.PROPOSED,
            Activity.roster_locked: False,
            Activity.frozen_guest_amount: None,
        }, synchronize_session=False)
        if not updated:
            raise NotLocked(activity.id)
        db.refresh(activity)

    logger.info(f"Unlocked activity {activity.id}: deleted {len(obligations)} obligations")
    return activity


def issue_obligation(activity: Activity, membership: Membership, db: Session) -> Optional[Obligation]:
    """
    Create the obligation for a guest who became committed after lock.

    Uses the frozen amount, never a recomputed split. Runs inside the caller's
    transaction and does not commit. Returns the existing obligation when the
    membership already has a pending or satisfied one, and None for the owner.

    Raises:
        InvalidTransition: the existing obligation was waived or reversed
    """
    if membership.is_owner:
        return None
    existing = db.query(Obligation).filter(Obligation.membership_id == membership.id).first()
    if existing:
        if existing.status in (ObligationStatus.WAIVED, ObligationStatus.REVERSED):
            raise InvalidTransition(
                "membership", membership.status.value, "committed",
                reason=f"obligation {existing.id} is {existing.status.value}"
            )
        return existing

    if activity.frozen_guest_amount is None:
        # Locked with zero guests; the amount is frozen by whoever joins first
        guest_count = len([m for m in committed_memberships(activity.id, db) if not m.is_owner])
        breakdown = compute_cost(
            activity.resource_units,
            activity.owner_rate_per_unit,
            activity.shared_pool_rate_per_unit,
            max(guest_count, 1)
        )
        activity.frozen_guest_amount = breakdown.per_guest_amount
        logger.info(f"Froze guest amount for activity {activity.id} at {activity.frozen_guest_amount}")

    obligation = _new_obligation(activity, membership, activity.frozen_guest_amount, db)
    db.flush()
    logger.info(
        f"Issued obligation {obligation.id} for membership {membership.id} "
        f"on activity {activity.id}: {obligation.amount}"
    )
    return obligation


def apply_satisfied(
    obligation_id: int,
    via: SatisfactionMethod,
    db: Session,
    note: Optional[str] = None,
    now: Optional[datetime] = None
) -> Obligation:
    """
    pending -> satisfied inside the caller's transaction.

    The conditional UPDATE is the transition guard: two concurrent callers can
    both reach it but only one flips the row.
    """
    now = now or utcnow()
    values = {
        Obligation.status: ObligationStatus.SATISFIED,
        Obligation.satisfied_at: now,
        Obligation.satisfied_via: via,
    }
    if note is not None:
        values[Obligation.note] = note
    updated = db.query(Obligation).filter(
        Obligation.id == obligation_id,
        Obligation.status == ObligationStatus.PENDING
    ).update(values, synchronize_session=False)
    obligation = get_obligation(obligation_id, db)
    db.refresh(obligation)
    if not updated:
        raise ObligationNotPending(obligation.id, obligation.status.value, ObligationStatus.SATISFIED.value)
    return obligation


def mark_satisfied(
    obligation_id: int,
    via: SatisfactionMethod,
    db: Session,
    note: Optional[str] = None
) -> Obligation:
    """Record payment for a pending obligation."""
    with atomic(db):
        obligation = apply_satisfied(obligation_id, via, db, note=note)
    logger.info(f"Obligation {obligation_id} satisfied via {via.value}")
    return obligation


def waive(obligation_id: int, note: Optional[str], db: Session) -> Obligation:
    """pending -> waived: the owner will not collect this share."""
    with atomic(db):
        values = {
            Obligation.status: ObligationStatus.WAIVED,
            Obligation.waived_at: utcnow(),
        }
        if note is not None:
            values[Obligation.note] = note
        updated = db.query(Obligation).filter(
            Obligation.id == obligation_id,
            Obligation.status == ObligationStatus.PENDING
        ).update(values, synchronize_session=False)
        obligation = get_obligation(obligation_id, db)
        db.refresh(obligation)
        if not updated:
            raise ObligationNotPending(obligation.id, obligation.status.value, ObligationStatus.WAIVED.value)
    logger.info(f"Obligation {obligation_id} waived")
    return obligation


def reverse(obligation_id: int, reason: str, db: Session) -> Obligation:
    """
    satisfied -> reversed: the payer is owed a refund, handled outside the engine.
    """
    with atomic(db):
        updated = db.query(Obligation).filter(
            Obligation.id == obligation_id,
            Obligation.status == ObligationStatus.SATISFIED
        ).update({
            Obligation.status: ObligationStatus.REVERSED,
            Obligation.reversed_at: utcnow(),
            Obligation.note: reason,
        }, synchronize_session=False)
        obligation = get_obligation(obligation_id, db)
        db.refresh(obligation)
        if not updated:
            raise InvalidTransition(
                "obligation", obligation.status.value, ObligationStatus.REVERSED.value,
                reason="only satisfied obligations can be reversed"
            )
    logger.info(f"Obligation {obligation_id} reversed: {reason}")
    return obligation


def list_obligations(activity_id: int, db: Session) -> List[Obligation]:
    return db.query(Obligation).filter(
        Obligation.activity_id == activity_id
    ).order_by(Obligation.id).all()


def list_person_obligations(person_id: int, db: Session, status: Optional[ObligationStatus] = None) -> List[Obligation]:
    """Obligations owed by one person, newest first."""
    query = db.query(Obligation).join(Membership, Obligation.membership_id == Membership.id).filter(
        Membership.person_id == person_id
    )
    if status is not None:
        query = query.filter(Obligation.status == status)
    return query.order_by(Obligation.created_at.desc(), Obligation.id.desc()).all()


def get_payment_summary(activity_id: int, db: Session) -> Dict:
    """Totals and counts per obligation status."""
    activity = get_activity(activity_id, db)
    obligations = list_obligations(activity.id, db)

    totals = {status: Decimal("0.00") for status in ObligationStatus}
    counts = {status: 0 for status in ObligationStatus}
    for obligation in obligations:
        totals[obligation.status] += obligation.amount
        counts[obligation.status] += 1

    return {
        "activity_id": activity.id,
        "total_owed": sum(totals.values(), Decimal("0.00")),
        "total_satisfied": totals[ObligationStatus.SATISFIED],
        "total_pending": totals[ObligationStatus.PENDING],
        "total_waived": totals[ObligationStatus.WAIVED],
        "total_reversed": totals[ObligationStatus.REVERSED],
        "obligations_count": len(obligations),
        "satisfied_count": counts[ObligationStatus.SATISFIED],
        "pending_count": counts[ObligationStatus.PENDING],
    }


def collect_payment_reminders(
    activity_id: int,
    db: Session,
    now: Optional[datetime] = None,
    force: bool = False
) -> List[Obligation]:
    """
    Emit payment_reminder_due for pending obligations once the payment deadline
    is within PAYMENT_REMINDER_LEAD_HOURS.

    Each obligation is reminded once; force resends regardless of the deadline
    and of earlier reminders. Returns the obligations reminded.
    """
    now = now or utcnow()
    reminded = []
    with atomic(db):
        activity = get_activity(activity_id, db)
        if not activity.roster_locked:
            return reminded
        if not force:
            if activity.payment_deadline is None:
                return reminded
            if activity.payment_deadline - timedelta(hours=settings.PAYMENT_REMINDER_LEAD_HOURS) > now:
                return reminded

        pending = db.query(Obligation).filter(
            Obligation.activity_id == activity.id,
            Obligation.status == ObligationStatus.PENDING
        ).order_by(Obligation.id).all()
        for obligation in pending:
            if obligation.reminder_sent_at is not None and not force:
                continue
            obligation.reminder_sent_at = now
            record_event(
                db, EventType.PAYMENT_REMINDER_DUE,
                person_id=obligation.membership.person_id,
                activity_id=activity.id,
                obligation_id=obligation.id
            )
            reminded.append(obligation)

    if reminded:
        logger.info(f"Queued {len(reminded)} payment reminders for activity {activity_id}")
    return reminded


def correlation_tag(obligation: Obligation) -> str:
    """The string embedded in payment requests and matched by reconciliation."""
    return f"#{settings.CORRELATION_TOKEN_PREFIX}-{obligation.correlation_token}"


def payment_request_note(obligation: Obligation) -> str:
    """e.g. 'Courtside - Tuesday Doubles - Sat Jan 11 @ 1:00 PM #courtside-<token>'."""
    activity = obligation.activity
    when = activity.scheduled_at
    day = f"{when.strftime('%a %b')} {when.day}"
    hour = when.hour % 12 or 12
    time_text = f"{hour}:{when.strftime('%M')} {'PM' if when.hour >= 12 else 'AM'}"
    return f"{settings.APP_NAME} - {activity.group.name} - {day} @ {time_text} {correlation_tag(obligation)}"


def _provider_link(handle: Optional[str], txn: str, obligation: Obligation) -> Optional[str]:
    if not handle:
        return None
    params = urlencode(
        {"txn": txn, "amount": f"{obligation.amount:.2f}", "note": payment_request_note(obligation)},
        quote_via=quote
    )
    return f"{settings.PAYMENT_LINK_BASE_URL.rstrip('/')}/{handle.lstrip('@')}?{params}"


def payment_request_link(obligation: Obligation) -> Optional[str]:
    """Prefilled charge request against the guest's payment handle, if on file."""
    return _provider_link(obligation.membership.person.payment_handle, "charge", obligation)


def payment_pay_link(obligation: Obligation) -> Optional[str]:
    """Prefilled payment to the owner's handle, for the guest's own view."""
    return _provider_link(obligation.activity.owner.payment_handle, "pay", obligation)


def mark_request_sent(obligation_id: int, db: Session, now: Optional[datetime] = None) -> Obligation:
    """
    Record that the owner sent the payment request.

    Only pending obligations can be requested; sending again moves the timestamp.
    """
    with atomic(db):
        obligation = get_obligation(obligation_id, db)
        if obligation.status != ObligationStatus.PENDING:
            raise ObligationNotPending(obligation.id, obligation.status.value, "request_sent")
        obligation.request_sent_at = now or utcnow()
    logger.info(f"Payment request sent for obligation {obligation_id}")
    return obligation
