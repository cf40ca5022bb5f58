"""
Group routes. Group administration lives in the identity service; this only
lists a group's activities.
"""
from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session
from typing import List
from app.db.session import get_db
from app.models.person import Person
from app.schemas.activity import ActivityResponse
from app.api.dependencies import get_current_person
from app.api.routes.activities import check_group_access
from app.services import roster_service

router = APIRouter(prefix="/groups", tags=["groups"])


@router.get("/{group_id}/activities", response_model=List[ActivityResponse])
async def list_group_activities(
    group_id: int,
    include_closed: bool = Query(True, description="Include completed and cancelled activities"),
    current_person: Person = Depends(get_current_person),
    db: Session = Depends(get_db)
):
    """List a group's activities by scheduled time."""
    check_group_access(group_id, current_person.id, db)
    return roster_service.list_group_activities(group_id, db, include_closed=include_closed)
