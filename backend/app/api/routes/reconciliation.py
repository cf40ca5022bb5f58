"""
Reconciliation routes: inbound payment notices and the unmatched queue.
"""
import logging
from fastapi import APIRouter, BackgroundTasks, Depends, Query, status
from sqlalchemy.orm import Session
from typing import List

logger = logging.getLogger(__name__)
from app.db.session import get_db
from app.models.person import Person
from app.schemas.reconciliation import InboundNotice, ProviderEmail, ReconciliationRecordResponse
from app.api.dependencies import get_current_person, verify_notice_secret
from app.services import reconciliation_service
from app.services.notification_service import announce

router = APIRouter(prefix="/reconciliation", tags=["reconciliation"])


@router.post(
    "/notices",
    response_model=ReconciliationRecordResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(verify_notice_secret)]
)
async def ingest_notice(
    notice: InboundNotice,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db)
):
    """Reconcile one notice. Malformed notices are recorded as unmatched, never rejected."""
    record = reconciliation_service.process_notice(notice, db)
    announce(db, background_tasks)
    return record


@router.post(
    "/notices/batch",
    response_model=List[ReconciliationRecordResponse],
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(verify_notice_secret)]
)
async def ingest_notices(
    notices: List[InboundNotice],
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db)
):
    """Reconcile a batch in order; one bad notice never stops the rest."""
    records = reconciliation_service.process_notices(notices, db)
    announce(db, background_tasks)
    logger.info(f"Batch of {len(notices)} notices produced {len(records)} records")
    return records


@router.post(
    "/emails",
    response_model=ReconciliationRecordResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(verify_notice_secret)]
)
async def ingest_email(
    email: ProviderEmail,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db)
):
    """Reconcile a forwarded payment-provider email."""
    record = reconciliation_service.process_email(email, db)
    announce(db, background_tasks)
    return record


@router.get("/unmatched", response_model=List[ReconciliationRecordResponse])
async def list_unmatched(
    limit: int = Query(100, ge=1, le=500),
    current_person: Person = Depends(get_current_person),
    db: Session = Depends(get_db)
):
    """Unmatched notices for manual follow-up: unscoped ones and those scoped to the caller's activities."""
    return reconciliation_service.list_unmatched_for_owner(current_person.id, db, limit=limit)
