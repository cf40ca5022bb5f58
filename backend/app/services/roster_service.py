"""
Roster state machine: activity lifecycle, participation and the waitlist.

Activity:   proposed -> confirmed -> completed, proposed/confirmed -> cancelled
Membership: (none) -> committed|tentative, committed <-> tentative,
            committed|tentative -> withdrawn, withdrawn -> committed|tentative

Commits beyond max_participants land on the waitlist (tentative with a rank).
Ranks come from a per-activity counter and are never reused or renumbered.
"""
import logging
from datetime import datetime, timedelta
from typing import List, Optional
from sqlalchemy.orm import Session, joinedload
from app.core.config import settings
from app.core.exceptions import InvalidTransition, NotFound, ValidationFailed
from app.core.utils import to_naive_utc, utcnow
from app.db.session import atomic
from app.models.activity import (
    Activity, ActivityStatus, Membership, MembershipRole, MembershipStatus
)
from app.models.group import Group, GroupMember
from app.models.notification import EventType
from app.models.obligation import ObligationStatus
from app.models.person import Person
from app.services.events import record_event

logger = logging.getLogger(__name__)

OPEN_STATUSES = (ActivityStatus.PROPOSED, ActivityStatus.CONFIRMED)
CLOSED_OBLIGATION_STATUSES = (ObligationStatus.WAIVED, ObligationStatus.REVERSED)


def has_closed_obligation(membership: Optional[Membership]) -> bool:
    """A waived or reversed share bars the membership from committing again this cycle."""
    return (
        membership is not None
        and membership.obligation is not None
        and membership.obligation.status in CLOSED_OBLIGATION_STATUSES
    )


def active_group_members(group_id: int, db: Session) -> List[Person]:
    """Active people in a group."""
    return db.query(Person).join(GroupMember, GroupMember.person_id == Person.id).filter(
        GroupMember.group_id == group_id,
        GroupMember.is_active.is_(True),
        Person.is_active.is_(True)
    ).order_by(Person.id).all()


def is_group_member(group_id: int, person_id: int, db: Session) -> bool:
    return db.query(GroupMember).filter(
        GroupMember.group_id == group_id,
        GroupMember.person_id == person_id,
        GroupMember.is_active.is_(True)
    ).first() is not None


def get_membership(activity_id: int, person_id: int, db: Session) -> Optional[Membership]:
    return db.query(Membership).filter(
        Membership.activity_id == activity_id,
        Membership.person_id == person_id
    ).first()


def committed_memberships(activity_id: int, db: Session) -> List[Membership]:
    """Committed memberships, owner included, in join order."""
    return db.query(Membership).filter(
        Membership.activity_id == activity_id,
        Membership.status == MembershipStatus.COMMITTED
    ).order_by(Membership.joined_at, Membership.id).all()


def committed_count(activity_id: int, db: Session) -> int:
    return db.query(Membership).filter(
        Membership.activity_id == activity_id,
        Membership.status == MembershipStatus.COMMITTED
    ).count()


def waitlist(activity_id: int, db: Session) -> List[Membership]:
    """Ranked tentative memberships, lowest rank first."""
    return db.query(Membership).filter(
        Membership.activity_id == activity_id,
        Membership.status == MembershipStatus.TENTATIVE,
        Membership.waitlist_rank.isnot(None)
    ).order_by(Membership.waitlist_rank).all()


def list_participants(activity_id: int, db: Session) -> List[Membership]:
    """All memberships with their person loaded, in join order."""
    return db.query(Membership).options(joinedload(Membership.person)).filter(
        Membership.activity_id == activity_id
    ).order_by(Membership.joined_at, Membership.id).all()


def list_group_activities(group_id: int, db: Session, include_closed: bool = True) -> List[Activity]:
    query = db.query(Activity).filter(Activity.group_id == group_id)
    if not include_closed:
        query = query.filter(Activity.status.in_(OPEN_STATUSES))
    return query.order_by(Activity.scheduled_at).all()


def _get_activity(activity_id: int, db: Session) -> Activity:
    activity = db.query(Activity).filter(Activity.id == activity_id).first()
    if not activity:
        raise NotFound(f"Activity {activity_id} not found", activity_id=activity_id)
    return activity


def create_activity(owner_id: int, data, db: Session) -> Activity:
    """
    Propose an activity. The owner's committed membership is created with it.

    Args:
        owner_id: Person proposing the activity
        data: ActivityCreate; unset bounds, duration and rates use configured defaults
    """
    group = db.query(Group).filter(Group.id == data.group_id).first()
    if not group:
        raise NotFound(f"Group {data.group_id} not found", group_id=data.group_id)

    min_participants = data.min_participants or settings.DEFAULT_MIN_PARTICIPANTS
    max_participants = data.max_participants or settings.DEFAULT_MAX_PARTICIPANTS
    if min_participants > max_participants:
        raise ValidationFailed(
            "min_participants cannot exceed max_participants",
            min_participants=min_participants,
            max_participants=max_participants
        )

    with atomic(db):
        now = utcnow()
        activity = Activity(
            group_id=group.id,
            owner_id=owner_id,
            scheduled_at=to_naive_utc(data.scheduled_at),
            duration_minutes=data.duration_minutes or settings.DEFAULT_DURATION_MINUTES,
            location=data.location,
            min_participants=min_participants,
            max_participants=max_participants,
            resource_units=data.resource_units,
            owner_rate_per_unit=(
                data.owner_rate_per_unit if data.owner_rate_per_unit is not None
                else settings.DEFAULT_OWNER_RATE_PER_UNIT
            ),
            shared_pool_rate_per_unit=(
                data.shared_pool_rate_per_unit if data.shared_pool_rate_per_unit is not None
                else settings.DEFAULT_SHARED_POOL_RATE_PER_UNIT
            ),
            status=ActivityStatus.PROPOSED,
            roster_locked=False,
            lock_deadline=to_naive_utc(data.lock_deadline) if data.lock_deadline else None,
            payment_deadline=to_naive_utc(data.payment_deadline) if data.payment_deadline else None,
            next_waitlist_rank=1
        )
        db.add(activity)
        db.flush()

        db.add(Membership(
            activity_id=activity.id,
            person_id=owner_id,
            role=MembershipRole.OWNER,
            status=MembershipStatus.COMMITTED,
            status_changed_at=now,
            joined_at=now
        ))

        for person in active_group_members(group.id, db):
            if person.id != owner_id:
                record_event(db, EventType.ACTIVITY_CREATED, person_id=person.id, activity_id=activity.id)

    logger.info(f"Activity {activity.id} proposed by person {owner_id} in group {group.id}")
    return activity


def update_activity(activity_id: int, data, db: Session) -> Activity:
    """
    Edit schedule, bounds, units and rates.

    Edits never touch existing obligations: a locked activity keeps its frozen
    guest amount. Raising max_participants promotes from the waitlist.
    """
    with atomic(db):
        activity = _get_activity(activity_id, db)
        if activity.status not in OPEN_STATUSES:
            raise InvalidTransition(
                "activity", activity.status.value, activity.status.value,
                reason="closed activities cannot be edited"
            )

        update_data = data.model_dump(exclude_unset=True)
        for field in ("scheduled_at", "lock_deadline", "payment_deadline"):
            if update_data.get(field) is not None:
                update_data[field] = to_naive_utc(update_data[field])

        min_participants = update_data.get("min_participants", activity.min_participants)
        max_participants = update_data.get("max_participants", activity.max_participants)
        if min_participants is None or max_participants is None:
            raise ValidationFailed("Participant bounds cannot be cleared")
        if min_participants > max_participants:
            raise ValidationFailed(
                "min_participants cannot exceed max_participants",
                min_participants=min_participants,
                max_participants=max_participants
            )

        for field, value in update_data.items():
            if value is None and field not in ("location", "lock_deadline", "payment_deadline"):
                continue
            setattr(activity, field, value)
        db.flush()

        promoted = _promote_waitlist(activity, db)

    if promoted:
        logger.info(f"Activity {activity.id} capacity raised, promoted {len(promoted)} from waitlist")
    logger.info(f"Activity {activity.id} updated: {sorted(update_data.keys())}")
    return activity


def delete_activity(activity_id: int, db: Session) -> None:
    """Hard delete; memberships and obligations go with it."""
    with atomic(db):
        activity = _get_activity(activity_id, db)
        db.delete(activity)
    logger.info(f"Activity {activity_id} deleted")


def _next_rank(activity: Activity) -> int:
    rank = activity.next_waitlist_rank
    activity.next_waitlist_rank = rank + 1
    return rank


def _apply_transition(
    activity: Activity,
    membership: Optional[Membership],
    person_id: int,
    requested: MembershipStatus,
    db: Session,
    now: datetime
) -> Membership:
    """
    Move one membership to the requested status inside the caller's transaction.

    Handles capacity routing, waitlist ranks, post-lock obligations and the
    promotion that follows a committed participant stepping back.
    """
    from app.services.ledger_service import issue_obligation

    current = membership.status if membership else None
    current_value = current.value if current else None

    if activity.status not in OPEN_STATUSES:
        raise InvalidTransition(
            "membership", current_value, requested.value,
            reason=f"activity is {activity.status.value}"
        )
    if membership is not None and membership.is_owner:
        raise InvalidTransition(
            "membership", current_value, requested.value,
            reason="the owner's membership cannot change"
        )
    if membership is None and requested == MembershipStatus.WITHDRAWN:
        raise InvalidTransition("membership", None, requested.value)
    if current == requested:
        return membership
    if requested == MembershipStatus.COMMITTED and has_closed_obligation(membership):
        raise InvalidTransition(
            "membership", current_value, requested.value,
            reason=f"obligation {membership.obligation.id} is {membership.obligation.status.value}"
        )

    if membership is None:
        membership = Membership(
            activity_id=activity.id,
            person_id=person_id,
            role=MembershipRole.GUEST,
            status=requested,
            status_changed_at=now,
            joined_at=now
        )
        db.add(membership)
    was_committed = current == MembershipStatus.COMMITTED

    if requested == MembershipStatus.COMMITTED:
        if committed_count(activity.id, db) >= activity.max_participants:
            # Full: wait in line. A ranked tentative keeps its place.
            if membership.waitlist_rank is None or current != MembershipStatus.TENTATIVE:
                membership.waitlist_rank = _next_rank(activity)
            membership.status = MembershipStatus.TENTATIVE
            membership.status_changed_at = now
            db.flush()
            logger.info(
                f"Activity {activity.id} full, person {person_id} waitlisted at rank {membership.waitlist_rank}"
            )
            return membership
        membership.status = MembershipStatus.COMMITTED
        membership.waitlist_rank = None
        membership.status_changed_at = now
        db.flush()
        if activity.roster_locked:
            obligation = issue_obligation(activity, membership, db)
            record_event(
                db, EventType.ROSTER_LOCKED,
                person_id=person_id, activity_id=activity.id, obligation_id=obligation.id
            )
    else:
        # Voluntary tentative or withdrawal leaves the waitlist
        membership.status = requested
        membership.waitlist_rank = None
        membership.status_changed_at = now
        db.flush()

    logger.info(
        f"Membership of person {person_id} on activity {activity.id}: "
        f"{current_value or 'none'} -> {membership.status.value}"
    )

    if was_committed and membership.status != MembershipStatus.COMMITTED:
        promoted = _promote_waitlist(activity, db, now=now)
        if promoted and membership.obligation is not None:
            membership.obligation.replacement_found = True
            logger.info(
                f"Obligation {membership.obligation.id} flagged replacement_found "
                f"after person {person_id} stepped back"
            )

    return membership


def _promote_waitlist(activity: Activity, db: Session, now: Optional[datetime] = None) -> List[Membership]:
    """
    Fill open seats from the waitlist, lowest surviving rank first.

    A promotion on a locked activity issues an obligation at the frozen amount.
    """
    from app.services.ledger_service import issue_obligation

    now = now or utcnow()
    promoted = []
    if activity.status not in OPEN_STATUSES:
        return promoted

    # Waived or reversed shares keep their place in line but are passed over
    queue = [m for m in waitlist(activity.id, db) if not has_closed_obligation(m)]
    open_seats = activity.max_participants - committed_count(activity.id, db)
    for membership in queue[:max(open_seats, 0)]:
        rank = membership.waitlist_rank
        membership.status = MembershipStatus.COMMITTED
        membership.waitlist_rank = None
        membership.status_changed_at = now
        db.flush()
        obligation = issue_obligation(activity, membership, db) if activity.roster_locked else None
        record_event(
            db, EventType.WAITLISTED_PROMOTED,
            person_id=membership.person_id,
            activity_id=activity.id,
            obligation_id=obligation.id if obligation else None
        )
        promoted.append(membership)
        logger.info(f"Promoted person {membership.person_id} from rank {rank} on activity {activity.id}")
    return promoted


def set_participation(activity_id: int, person_id: int, requested: MembershipStatus, db: Session) -> Membership:
    """
    Self-service opt in, opt out, or switch to tentative.

    Raises:
        InvalidTransition: activity closed, owner's own membership, or withdrawing without a membership
    """
    with atomic(db):
        activity = db.query(Activity).filter(Activity.id == activity_id).with_for_update().first()
        if not activity:
            raise NotFound(f"Activity {activity_id} not found", activity_id=activity_id)
        membership = get_membership(activity.id, person_id, db)
        membership = _apply_transition(activity, membership, person_id, requested, db, utcnow())
    return membership


def add_participant(activity_id: int, person_id: int, requested: MembershipStatus, db: Session) -> Membership:
    """Owner adds a person. Same capacity routing as self opt-in."""
    person = db.query(Person).filter(Person.id == person_id).first()
    if not person:
        raise NotFound(f"Person {person_id} not found", person_id=person_id)
    if requested == MembershipStatus.WITHDRAWN:
        raise InvalidTransition("membership", None, requested.value, reason="cannot add as withdrawn")
    return set_participation(activity_id, person_id, requested, db)


def cancel_activity(activity_id: int, db: Session, reason: Optional[str] = None) -> Activity:
    """
    proposed/confirmed -> cancelled. Every membership is notified.

    Obligations are left as they are; waiving or reversing them is an owner decision.
    """
    with atomic(db):
        activity = _get_activity(activity_id, db)
        _cancel(activity, db, reason or "cancelled by owner")
    return activity


def _cancel(activity: Activity, db: Session, reason: str) -> None:
    if activity.status not in OPEN_STATUSES:
        raise InvalidTransition("activity", activity.status.value, ActivityStatus.CANCELLED.value)
    activity.status = ActivityStatus.CANCELLED
    activity.roster_locked = False
    for membership in activity.memberships:
        record_event(db, EventType.ACTIVITY_CANCELLED, person_id=membership.person_id, activity_id=activity.id)
    db.flush()
    logger.info(f"Activity {activity.id} cancelled: {reason}")


def apply_time_rules(activity_id: int, db: Session, now: Optional[datetime] = None) -> Activity:
    """
    Date-driven transitions, evaluated against stored timestamps at call time.

    - confirmed -> completed once scheduled_at + duration has passed
    - proposed -> cancelled once the lock deadline (scheduled_at if unset)
      has passed with fewer committed participants than the minimum
    """
    now = now or utcnow()
    with atomic(db):
        activity = _get_activity(activity_id, db)
        if activity.status == ActivityStatus.CONFIRMED:
            ends_at = activity.scheduled_at + timedelta(minutes=activity.duration_minutes)
            if now >= ends_at:
                activity.status = ActivityStatus.COMPLETED
                db.flush()
                logger.info(f"Activity {activity.id} completed")
        elif activity.status == ActivityStatus.PROPOSED:
            deadline = activity.lock_deadline or activity.scheduled_at
            if now >= deadline:
                committed = committed_count(activity.id, db)
                if committed < activity.min_participants:
                    _cancel(
                        activity, db,
                        f"only {committed} of {activity.min_participants} committed at lock deadline"
                    )
    return activity


def due_for_time_rules(db: Session, now: Optional[datetime] = None) -> List[int]:
    """Ids of open activities whose lock deadline or scheduled time has passed."""
    now = now or utcnow()
    activities = db.query(Activity).filter(Activity.status.in_(OPEN_STATUSES)).all()
    due = []
    for activity in activities:
        if activity.status == ActivityStatus.CONFIRMED:
            if activity.scheduled_at + timedelta(minutes=activity.duration_minutes) <= now:
                due.append(activity.id)
        elif (activity.lock_deadline or activity.scheduled_at) <= now:
            due.append(activity.id)
    return due
