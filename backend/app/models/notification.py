"""
Notification preference and delivery log models.
"""
from sqlalchemy import (
    Column, Boolean, Enum as SQLEnum, ForeignKey, Integer, Text, UniqueConstraint
)
from sqlalchemy.orm import relationship
from app.db.base import BaseModel
import enum


class EventType(str, enum.Enum):
    """Domain events announced to the delivery service."""
    ACTIVITY_CREATED = "activity_created"
    ROSTER_LOCKED = "roster_locked"
    PAYMENT_REMINDER_DUE = "payment_reminder_due"
    WAITLISTED_PROMOTED = "waitlisted_promoted"
    ACTIVITY_CANCELLED = "activity_cancelled"


class Channel(str, enum.Enum):
    """Delivery channel."""
    EMAIL = "email"
    SMS = "sms"


class NotificationPreference(BaseModel):
    """Per-person, per-event-type opt-in. Missing rows resolve to channel defaults."""
    __tablename__ = "notification_preferences"

    person_id = Column(Integer, ForeignKey("people.id"), nullable=False, index=True)
    event_type = Column(SQLEnum(EventType), nullable=False)
    email_enabled = Column(Boolean, default=True, nullable=False)
    sms_enabled = Column(Boolean, default=False, nullable=False)

    # Relationships
    person = relationship("Person", back_populates="notification_preferences")

    __table_args__ = (
        UniqueConstraint('person_id', 'event_type', name='uq_person_event_type'),
    )


class NotificationLog(BaseModel):
    """Outcome of one hand-off to the delivery service."""
    __tablename__ = "notification_log"

    event_type = Column(SQLEnum(EventType), nullable=False)
    channel = Column(SQLEnum(Channel), nullable=False)
    person_id = Column(Integer, ForeignKey("people.id", ondelete="CASCADE"), nullable=False, index=True)
    activity_id = Column(Integer, ForeignKey("activities.id", ondelete="CASCADE"), nullable=True, index=True)
    success = Column(Boolean, default=True, nullable=False)
    error_message = Column(Text, nullable=True)
