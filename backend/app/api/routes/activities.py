"""
Activity routes: lifecycle, participation, roster lock and cost views.
"""
import logging
from fastapi import APIRouter, BackgroundTasks, Depends, Query, status
from sqlalchemy.orm import Session
from typing import List

logger = logging.getLogger(__name__)
from app.db.session import get_db
from app.core.exceptions import NotFound, PermissionDenied
from app.models.activity import Activity, Membership
from app.models.group import Group
from app.models.person import Person
from app.schemas.activity import (
    ActivityCreate, ActivityDetailResponse, ActivityResponse, ActivityUpdate,
    MembershipResponse, ParticipantAdd, ParticipationRequest
)
from app.schemas.obligation import CostSummary, ObligationResponse, PaymentSummary
from app.schemas.notification import NotificationLogResponse
from app.schemas.reconciliation import ReconciliationRecordResponse
from app.api.dependencies import get_current_person
from app.api.routes.obligations import build_obligation_response
from app.services import roster_service, ledger_service
from app.services.notification_service import announce, list_notification_log

router = APIRouter(prefix="/activities", tags=["activities"])


def check_group_access(group_id: int, person_id: int, db: Session) -> Group:
    """Check that the person belongs to the group (or owns it)."""
    group = db.query(Group).filter(Group.id == group_id).first()
    if not group:
        raise NotFound(f"Group {group_id} not found", group_id=group_id)
    if group.owner_id != person_id and not roster_service.is_group_member(group_id, person_id, db):
        raise PermissionDenied("Access denied to this group")
    return group


def check_activity_access(activity_id: int, person_id: int, db: Session) -> Activity:
    """Check that the person may see the activity: group member or participant."""
    activity = ledger_service.get_activity(activity_id, db)
    if activity.owner_id == person_id:
        return activity
    if roster_service.get_membership(activity.id, person_id, db) is not None:
        return activity
    check_group_access(activity.group_id, person_id, db)
    return activity


def require_activity_owner(activity_id: int, person_id: int, db: Session) -> Activity:
    """Check that the person owns the activity."""
    activity = ledger_service.get_activity(activity_id, db)
    if activity.owner_id != person_id:
        raise PermissionDenied("Only the activity owner can do this")
    return activity


def build_membership_response(membership: Membership) -> MembershipResponse:
    return MembershipResponse(
        id=membership.id,
        activity_id=membership.activity_id,
        person_id=membership.person_id,
        name=membership.person.name,
        role=membership.role,
        status=membership.status,
        waitlist_rank=membership.waitlist_rank,
        joined_at=membership.joined_at,
        status_changed_at=membership.status_changed_at
    )


@router.post("", response_model=ActivityResponse, status_code=status.HTTP_201_CREATED)
async def create_activity(
    activity_data: ActivityCreate,
    background_tasks: BackgroundTasks,
    current_person: Person = Depends(get_current_person),
    db: Session = Depends(get_db)
):
    """Propose a new activity. The caller becomes its owner."""
    check_group_access(activity_data.group_id, current_person.id, db)
    activity = roster_service.create_activity(current_person.id, activity_data, db)
    announce(db, background_tasks)
    db.refresh(activity)
    return activity


@router.get("/{activity_id}", response_model=ActivityDetailResponse)
async def get_activity(
    activity_id: int,
    current_person: Person = Depends(get_current_person),
    db: Session = Depends(get_db)
):
    """Get activity details with participants."""
    activity = check_activity_access(activity_id, current_person.id, db)
    participants = roster_service.list_participants(activity.id, db)
    response = ActivityDetailResponse.model_validate(activity, from_attributes=True)
    response.participants = [build_membership_response(m) for m in participants]
    return response


@router.patch("/{activity_id}", response_model=ActivityResponse)
async def update_activity(
    activity_id: int,
    activity_data: ActivityUpdate,
    background_tasks: BackgroundTasks,
    current_person: Person = Depends(get_current_person),
    db: Session = Depends(get_db)
):
    """Edit an activity (owner only)."""
    require_activity_owner(activity_id, current_person.id, db)
    activity = roster_service.update_activity(activity_id, activity_data, db)
    announce(db, background_tasks)
    db.refresh(activity)
    return activity


@router.delete("/{activity_id}")
async def delete_activity(
    activity_id: int,
    current_person: Person = Depends(get_current_person),
    db: Session = Depends(get_db)
):
    """Delete an activity and everything under it (owner only)."""
    require_activity_owner(activity_id, current_person.id, db)
    roster_service.delete_activity(activity_id, db)
    return {"message": "Activity deleted successfully"}


@router.post("/{activity_id}/participation", response_model=MembershipResponse)
async def set_participation(
    activity_id: int,
    request: ParticipationRequest,
    background_tasks: BackgroundTasks,
    current_person: Person = Depends(get_current_person),
    db: Session = Depends(get_db)
):
    """Opt in, opt out, or mark yourself tentative."""
    check_activity_access(activity_id, current_person.id, db)
    membership = roster_service.set_participation(activity_id, current_person.id, request.status, db)
    announce(db, background_tasks)
    db.refresh(membership)
    return build_membership_response(membership)


@router.get("/{activity_id}/participants", response_model=List[MembershipResponse])
async def list_participants(
    activity_id: int,
    current_person: Person = Depends(get_current_person),
    db: Session = Depends(get_db)
):
    """List participants in join order."""
    check_activity_access(activity_id, current_person.id, db)
    return [build_membership_response(m) for m in roster_service.list_participants(activity_id, db)]


@router.post("/{activity_id}/participants", response_model=MembershipResponse, status_code=status.HTTP_201_CREATED)
async def add_participant(
    activity_id: int,
    request: ParticipantAdd,
    background_tasks: BackgroundTasks,
    current_person: Person = Depends(get_current_person),
    db: Session = Depends(get_db)
):
    """Add someone to the roster (owner only)."""
    require_activity_owner(activity_id, current_person.id, db)
    membership = roster_service.add_participant(activity_id, request.person_id, request.status, db)
    announce(db, background_tasks)
    db.refresh(membership)
    return build_membership_response(membership)


@router.post("/{activity_id}/lock", response_model=ActivityResponse)
async def lock_roster(
    activity_id: int,
    background_tasks: BackgroundTasks,
    current_person: Person = Depends(get_current_person),
    db: Session = Depends(get_db)
):
    """Lock the roster and create obligations for every committed guest."""
    require_activity_owner(activity_id, current_person.id, db)
    activity = ledger_service.lock_roster(activity_id, db)
    announce(db, background_tasks)
    db.refresh(activity)
    return activity


@router.post("/{activity_id}/unlock", response_model=ActivityResponse)
async def unlock_roster(
    activity_id: int,
    current_person: Person = Depends(get_current_person),
    db: Session = Depends(get_db)
):
    """Unlock the roster. All obligations for the activity are deleted."""
    require_activity_owner(activity_id, current_person.id, db)
    activity = ledger_service.unlock_roster(activity_id, db)
    db.refresh(activity)
    return activity


@router.post("/{activity_id}/cancel", response_model=ActivityResponse)
async def cancel_activity(
    activity_id: int,
    background_tasks: BackgroundTasks,
    current_person: Person = Depends(get_current_person),
    db: Session = Depends(get_db)
):
    """Cancel the activity and notify everyone on the roster."""
    require_activity_owner(activity_id, current_person.id, db)
    activity = roster_service.cancel_activity(activity_id, db)
    announce(db, background_tasks)
    db.refresh(activity)
    return activity


@router.post("/{activity_id}/refresh-status", response_model=ActivityResponse)
async def refresh_status(
    activity_id: int,
    background_tasks: BackgroundTasks,
    current_person: Person = Depends(get_current_person),
    db: Session = Depends(get_db)
):
    """Apply date-driven transitions (completion, auto-cancel) now."""
    check_activity_access(activity_id, current_person.id, db)
    activity = roster_service.apply_time_rules(activity_id, db)
    announce(db, background_tasks)
    db.refresh(activity)
    return activity


@router.get("/{activity_id}/cost-summary", response_model=CostSummary)
async def get_cost_summary(
    activity_id: int,
    current_person: Person = Depends(get_current_person),
    db: Session = Depends(get_db)
):
    """Cost projection at the current headcount."""
    check_activity_access(activity_id, current_person.id, db)
    return ledger_service.get_cost_summary(activity_id, db)


@router.get("/{activity_id}/payment-summary", response_model=PaymentSummary)
async def get_payment_summary(
    activity_id: int,
    current_person: Person = Depends(get_current_person),
    db: Session = Depends(get_db)
):
    """Totals per obligation status (owner only)."""
    require_activity_owner(activity_id, current_person.id, db)
    return ledger_service.get_payment_summary(activity_id, db)


@router.get("/{activity_id}/obligations", response_model=List[ObligationResponse])
async def list_obligations(
    activity_id: int,
    current_person: Person = Depends(get_current_person),
    db: Session = Depends(get_db)
):
    """All obligations for the activity (owner only)."""
    require_activity_owner(activity_id, current_person.id, db)
    return [build_obligation_response(o) for o in ledger_service.list_obligations(activity_id, db)]


@router.post("/{activity_id}/payment-reminders")
async def send_payment_reminders(
    activity_id: int,
    background_tasks: BackgroundTasks,
    force: bool = Query(False, description="Resend even if already reminded or not yet due"),
    current_person: Person = Depends(get_current_person),
    db: Session = Depends(get_db)
):
    """Remind guests with pending obligations (owner only)."""
    require_activity_owner(activity_id, current_person.id, db)
    reminded = ledger_service.collect_payment_reminders(activity_id, db, force=force)
    announce(db, background_tasks)
    return {"message": f"Queued {len(reminded)} payment reminders", "reminded": len(reminded)}


@router.get("/{activity_id}/reconciliation", response_model=List[ReconciliationRecordResponse])
async def list_activity_reconciliation(
    activity_id: int,
    limit: int = Query(100, ge=1, le=500),
    current_person: Person = Depends(get_current_person),
    db: Session = Depends(get_db)
):
    """Reconciliation records tied to this activity (owner only)."""
    require_activity_owner(activity_id, current_person.id, db)
    from app.services.reconciliation_service import list_records
    return list_records(db, activity_id=activity_id, limit=limit)


@router.get("/{activity_id}/notifications", response_model=List[NotificationLogResponse])
async def list_activity_notifications(
    activity_id: int,
    limit: int = Query(100, ge=1, le=500),
    current_person: Person = Depends(get_current_person),
    db: Session = Depends(get_db)
):
    """Delivery attempts for this activity (owner only)."""
    require_activity_owner(activity_id, current_person.id, db)
    return list_notification_log(activity_id, db, limit=limit)
