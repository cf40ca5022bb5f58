"""
Notification preference routes.
"""
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
from typing import List
from app.db.session import get_db
from app.core.exceptions import ValidationFailed
from app.models.notification import EventType
from app.models.person import Person
from app.schemas.notification import PreferenceResponse, PreferenceUpdate
from app.api.dependencies import get_current_person
from app.services import notification_gate

router = APIRouter(prefix="/notifications", tags=["notifications"])


@router.get("/preferences", response_model=List[PreferenceResponse])
async def get_preferences(
    current_person: Person = Depends(get_current_person),
    db: Session = Depends(get_db)
):
    """Effective preference per event type; defaults where nothing is stored."""
    return notification_gate.effective_preferences(current_person.id, db)


@router.put("/preferences/{event_type}", response_model=PreferenceResponse)
async def update_preference(
    event_type: EventType,
    preference_data: PreferenceUpdate,
    current_person: Person = Depends(get_current_person),
    db: Session = Depends(get_db)
):
    """Turn email or SMS on or off for one event type."""
    if preference_data.sms_enabled and event_type not in notification_gate.SMS_EVENT_TYPES:
        raise ValidationFailed(
            f"SMS is not available for {event_type.value}",
            event_type=event_type.value
        )
    preference = notification_gate.set_preference(
        current_person.id,
        event_type,
        db,
        email_enabled=preference_data.email_enabled,
        sms_enabled=preference_data.sms_enabled
    )
    return {
        "event_type": preference.event_type,
        "email_enabled": preference.email_enabled,
        "sms_enabled": preference.sms_enabled,
        "sms_supported": event_type in notification_gate.SMS_EVENT_TYPES,
        "is_default": False,
    }
