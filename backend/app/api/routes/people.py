"""
People routes.
"""
from fastapi import APIRouter, Depends
from app.models.person import Person
from app.schemas.person import PersonResponse
from app.api.dependencies import get_current_person

router = APIRouter(prefix="/people", tags=["people"])


@router.get("/me", response_model=PersonResponse)
async def get_me(current_person: Person = Depends(get_current_person)):
    """Get the person the caller's token acts for."""
    return current_person
