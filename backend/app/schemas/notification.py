"""
Pydantic schemas for notification preferences and the delivery log.
"""
from pydantic import BaseModel
from typing import Optional
from datetime import datetime
from app.models.notification import Channel, EventType


class PreferenceResponse(BaseModel):
    """Effective preference for one event type (stored row or default)."""
    event_type: EventType
    email_enabled: bool
    sms_enabled: bool
    sms_supported: bool
    is_default: bool


class PreferenceUpdate(BaseModel):
    """Schema for preference update."""
    email_enabled: Optional[bool] = None
    sms_enabled: Optional[bool] = None


class NotificationLogResponse(BaseModel):
    """Schema for one recorded delivery attempt."""
    id: int
    event_type: EventType
    channel: Channel
    person_id: int
    activity_id: Optional[int] = None
    success: bool
    error_message: Optional[str] = None
    created_at: datetime

    class Config:
        from_attributes = True
