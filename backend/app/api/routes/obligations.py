"""
Obligation routes: owner actions on individual obligations and the caller's own dues.
"""
from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session
from typing import List, Optional
from app.db.session import get_db
from app.core.exceptions import PermissionDenied
from app.models.obligation import Obligation, ObligationStatus, SatisfactionMethod
from app.models.person import Person
from app.schemas.obligation import ObligationResponse, ReverseRequest, SatisfyRequest, WaiveRequest
from app.api.dependencies import get_current_person
from app.services import ledger_service

router = APIRouter(prefix="/obligations", tags=["obligations"])


def build_obligation_response(obligation: Obligation) -> ObligationResponse:
    person = obligation.membership.person
    return ObligationResponse(
        id=obligation.id,
        activity_id=obligation.activity_id,
        membership_id=obligation.membership_id,
        person_id=person.id,
        person_name=person.name,
        amount=obligation.amount,
        status=obligation.status,
        correlation_token=obligation.correlation_token,
        payment_note=ledger_service.payment_request_note(obligation),
        payment_link=ledger_service.payment_request_link(obligation),
        pay_link=ledger_service.payment_pay_link(obligation),
        request_sent_at=obligation.request_sent_at,
        satisfied_at=obligation.satisfied_at,
        satisfied_via=obligation.satisfied_via,
        reversed_at=obligation.reversed_at,
        waived_at=obligation.waived_at,
        note=obligation.note,
        replacement_found=obligation.replacement_found,
        created_at=obligation.created_at
    )


def require_obligation_owner(obligation_id: int, person_id: int, db: Session) -> Obligation:
    """Check that the person owns the activity the obligation belongs to."""
    obligation = ledger_service.get_obligation(obligation_id, db)
    if obligation.activity.owner_id != person_id:
        raise PermissionDenied("Only the activity owner can change obligations")
    return obligation


@router.get("/mine", response_model=List[ObligationResponse])
async def list_my_obligations(
    status_filter: Optional[ObligationStatus] = Query(None, alias="status"),
    current_person: Person = Depends(get_current_person),
    db: Session = Depends(get_db)
):
    """What the caller owes (or has paid), newest first."""
    obligations = ledger_service.list_person_obligations(current_person.id, db, status=status_filter)
    return [build_obligation_response(o) for o in obligations]


@router.post("/{obligation_id}/satisfy", response_model=ObligationResponse)
async def satisfy_obligation(
    obligation_id: int,
    request: SatisfyRequest,
    current_person: Person = Depends(get_current_person),
    db: Session = Depends(get_db)
):
    """Mark an obligation paid by hand."""
    require_obligation_owner(obligation_id, current_person.id, db)
    obligation = ledger_service.mark_satisfied(obligation_id, SatisfactionMethod.MANUAL, db, note=request.note)
    return build_obligation_response(obligation)


@router.post("/{obligation_id}/request-sent", response_model=ObligationResponse)
async def mark_request_sent(
    obligation_id: int,
    current_person: Person = Depends(get_current_person),
    db: Session = Depends(get_db)
):
    """Record that the payment request went out."""
    require_obligation_owner(obligation_id, current_person.id, db)
    obligation = ledger_service.mark_request_sent(obligation_id, db)
    return build_obligation_response(obligation)


@router.post("/{obligation_id}/waive", response_model=ObligationResponse)
async def waive_obligation(
    obligation_id: int,
    request: WaiveRequest,
    current_person: Person = Depends(get_current_person),
    db: Session = Depends(get_db)
):
    """Forgive a pending obligation."""
    require_obligation_owner(obligation_id, current_person.id, db)
    obligation = ledger_service.waive(obligation_id, request.note, db)
    return build_obligation_response(obligation)


@router.post("/{obligation_id}/reverse", response_model=ObligationResponse)
async def reverse_obligation(
    obligation_id: int,
    request: ReverseRequest,
    current_person: Person = Depends(get_current_person),
    db: Session = Depends(get_db)
):
    """Record that a satisfied obligation is owed a refund."""
    require_obligation_owner(obligation_id, current_person.id, db)
    obligation = ledger_service.reverse(obligation_id, request.reason, db)
    return build_obligation_response(obligation)
